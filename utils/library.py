# Copyright (C) 2026 grodz
#
# This file is part of Riptide.
#
# Riptide is free software: you can redistribute it and/or modify
# it under the terms of the GNU General Public License as published by
# the Free Software Foundation, either version 3 of the License, or
# (at your option) any later version.
#
# This program is distributed in the hope that it will be useful,
# but WITHOUT ANY WARRANTY; without even the implied warranty of
# MERCHANTABILITY or FITNESS FOR A PARTICULAR PURPOSE. See the
# GNU General Public License for more details.
#
# You should have received a copy of the GNU General Public License
# along with this program. If not, see <https://www.gnu.org/licenses/>.

"""Music library and playlist discovery."""

import asyncio
from itertools import chain
from pathlib import Path
from typing import Iterator

from loguru import logger


# Glob patterns for streamable formats (Ogg container only)
AUDIO_EXTENSIONS = ['*.opus', '*.ogg']

# Maximum tracks per playlist to prevent memory issues with very large libraries
MAX_PLAYLIST_SIZE = 1000

# Internal playlist name for audio files placed directly in the music root directory
# (used when no subdirectory playlists exist).
ROOT_PLAYLIST_NAME = "_root"


class MusicLibrary:
    """Finds Ogg files in the music directory.

    Each subdirectory becomes a playlist named after the folder:

        music/
        ├── Jazz/           -> "jazz" playlist
        │   ├── track1.opus
        │   └── track2.ogg
        └── loose.opus      -> Ignored if playlists exist, or "_root" playlist

    Scanning behavior:
    - Hidden folders (starting with .) are skipped
    - Playlist names are lowercased for case-insensitive lookups
    - Tracks sorted alphabetically by filename
    - Playlists capped at MAX_PLAYLIST_SIZE tracks
    """

    def __init__(self, music_path: Path) -> None:
        self.music_path = music_path
        self._playlists: dict[str, list[Path]] | None = None

    async def scan(self) -> dict[str, list[Path]]:
        """Scan the music directory and cache the playlists found."""
        logger.info("library scan started")

        playlists, loose_files = await asyncio.to_thread(self._scan_sync)

        if loose_files:
            logger.warning(
                f"{len(loose_files)} audio file(s) in root ignored, "
                "move them to a playlist subfolder"
            )
            for filename in loose_files[:5]:
                logger.warning(f"  - {filename}")
            if len(loose_files) > 5:
                logger.warning(f"  ...and {len(loose_files) - 5} more")

        if not playlists:
            logger.warning("no playlists found")
        else:
            file_count = sum(len(tracks) for tracks in playlists.values())
            folder_count = len(playlists)
            file_word = "file" if file_count == 1 else "files"
            folder_word = "folder" if folder_count == 1 else "folders"
            logger.info(f"scanned {file_count} {file_word} in {folder_count} {folder_word}")

        self._playlists = playlists
        return playlists

    def _scan_sync(self) -> tuple[dict[str, list[Path]], list[str]]:
        """Synchronous directory scan: (playlists, loose filenames in root)."""
        playlists = {}
        loose_files = []

        if not self.music_path.exists():
            logger.warning(f"music path does not exist: {self.music_path}")
            return playlists, loose_files

        for playlist_dir in sorted(self.music_path.iterdir()):
            if not playlist_dir.is_dir() or playlist_dir.name.startswith('.'):
                continue

            audio_files = self._collect(playlist_dir)
            if audio_files:
                playlists[playlist_dir.name.lower()] = self._cap(audio_files, f"playlist '{playlist_dir.name}'")
            else:
                logger.warning(f"playlist '{playlist_dir.name}' is empty")

        root_audio = self._collect(self.music_path)
        if root_audio:
            if playlists:
                loose_files = [f.name for f in root_audio]
            else:
                playlists[ROOT_PLAYLIST_NAME] = self._cap(root_audio, "root folder")

        return playlists, loose_files

    @staticmethod
    def _collect(directory: Path) -> list[Path]:
        files = chain.from_iterable(directory.glob(ext) for ext in AUDIO_EXTENSIONS)
        return sorted(files, key=lambda p: p.name.lower())

    @staticmethod
    def _cap(files: list[Path], label: str) -> list[Path]:
        if len(files) > MAX_PLAYLIST_SIZE:
            logger.warning(f"{label} has {len(files)} tracks, truncating to {MAX_PLAYLIST_SIZE}")
            return files[:MAX_PLAYLIST_SIZE]
        return files

    @property
    def playlists(self) -> dict[str, list[Path]]:
        """Cached playlists. Empty until scan() has run."""
        if self._playlists is None:
            return {}
        return self._playlists

    def get_playlist(self, name: str) -> list[Path] | None:
        """Tracks of a playlist by case-insensitive name, or None."""
        return self.playlists.get(name.strip().lower())

    def get_playlist_names(self) -> list[str]:
        return list(self.playlists.keys())

    def files(self) -> Iterator[Path]:
        """Every track in playlist order."""
        for tracks in self.playlists.values():
            yield from tracks
