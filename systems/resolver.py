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

"""Track resolution: turns a /play query into tracks and fetches their audio.

Queries are looked up in this order:
1. http(s) URL of an Ogg file, downloaded and measured right away
2. name of a library playlist, expanded to all of its tracks
3. free text, matched against library filenames and known titles
"""

import asyncio
import io
from dataclasses import dataclass, field
from pathlib import Path
from urllib.parse import unquote, urlparse

import aiohttp
from loguru import logger

from core.decoder import CAPTURE_PATTERN, probe_duration
from core.errors import (
    ResolveError,
    RetrievalError,
    TrackNotFoundError,
    UnsupportedSourceError,
)
from core.track import Track
from utils.library import MusicLibrary
from utils.metadata import extract_metadata, extract_metadata_from_bytes

_CHUNK_SIZE = 64 * 1024


@dataclass
class Resolution:
    tracks: list[Track] = field(default_factory=list)
    failed: int = 0


class TrackResolver:
    """Resolves queries against the local library and plain HTTP links."""

    def __init__(
        self,
        library: MusicLibrary,
        http: aiohttp.ClientSession | None = None,
        http_timeout: float = 30.0,
        max_download_bytes: int = 64 * 1024 * 1024,
        metadata_timeout: float = 15.0,
    ) -> None:
        self.library = library
        self._http = http
        self.http_timeout = http_timeout
        self.max_download_bytes = max_download_bytes
        self.metadata_timeout = metadata_timeout
        # path -> (mtime, metadata)
        self._metadata: dict[Path, tuple[float, dict]] = {}

    @classmethod
    def from_config(cls, library: MusicLibrary, http: aiohttp.ClientSession, config_manager) -> "TrackResolver":
        resolver = config_manager.section("resolver")
        return cls(
            library,
            http,
            http_timeout=resolver["http_timeout"],
            max_download_bytes=int(resolver["max_download_mb"]) * 1024 * 1024,
            metadata_timeout=resolver["metadata_timeout"],
        )

    async def resolve(self, query: str) -> Resolution:
        query = query.strip()
        if not query:
            raise TrackNotFoundError("empty query")

        parsed = urlparse(query)
        if parsed.scheme in ("http", "https"):
            return Resolution([await self._resolve_url(query)])
        if parsed.scheme and parsed.netloc:
            raise UnsupportedSourceError(f"unsupported scheme {parsed.scheme!r}")

        playlist = self.library.get_playlist(query)
        if playlist:
            logger.debug(f"'{query}' matched playlist with {len(playlist)} tracks")
            results = await asyncio.gather(
                *(self._track_from_file(path) for path in playlist), return_exceptions=True
            )
            resolution = Resolution()
            for path, result in zip(playlist, results):
                if isinstance(result, (ResolveError, RetrievalError)):
                    logger.warning(f"skipping {path.name}: {result}")
                    resolution.failed += 1
                elif isinstance(result, BaseException):
                    raise result
                else:
                    resolution.tracks.append(result)
            return resolution

        path = self._search(query)
        if path is None:
            raise TrackNotFoundError(f"nothing matches {query!r}")
        return Resolution([await self._track_from_file(path)])

    async def fetch(self, track: Track) -> bytes:
        """Retrieve the audio bytes for ``track``."""
        if urlparse(track.locator).scheme in ("http", "https"):
            return await self._download(track.locator)
        try:
            return await asyncio.to_thread(Path(track.locator).read_bytes)
        except OSError as e:
            raise RetrievalError(f"cannot read {track.locator}: {e}") from e

    def _search(self, query: str) -> Path | None:
        needle = query.lower()
        for path in self.library.files():
            if needle in path.stem.lower():
                return path
            cached = self._metadata.get(path)
            if cached:
                info = cached[1]
                haystack = f"{info.get('artist') or ''} {info.get('title') or ''}".lower()
                if needle in haystack:
                    return path
        return None

    async def _track_from_file(self, path: Path) -> Track:
        try:
            magic = await asyncio.to_thread(_read_magic, path)
        except OSError as e:
            raise RetrievalError(f"cannot read {path}: {e}") from e
        if magic != CAPTURE_PATTERN:
            raise UnsupportedSourceError(f"{path.name} is not an Ogg stream")

        info = await self._file_metadata(path)
        return Track(
            id=str(path),
            title=info["title"],
            artist=info["artist"],
            album=info["album"],
            duration=info["duration"],
            locator=str(path),
        )

    async def _file_metadata(self, path: Path) -> dict:
        try:
            mtime = path.stat().st_mtime
        except OSError:
            mtime = 0.0
        cached = self._metadata.get(path)
        if cached and cached[0] == mtime:
            return cached[1]
        info = await extract_metadata(path, timeout=self.metadata_timeout)
        self._metadata[path] = (mtime, info)
        return info

    async def _resolve_url(self, url: str) -> Track:
        data = await self._download(url)
        if not data.startswith(CAPTURE_PATTERN):
            raise UnsupportedSourceError(f"{url} is not an Ogg stream")

        name = unquote(Path(urlparse(url).path).name) or url
        info = await asyncio.to_thread(extract_metadata_from_bytes, data, name)
        if not info["duration"]:
            info["duration"] = await asyncio.to_thread(probe_duration, io.BytesIO(data))

        track = Track(
            id=url,
            title=info["title"] or name,
            artist=info["artist"],
            album=info["album"],
            duration=info["duration"],
            locator=url,
        )
        track.preload(data)
        return track

    async def _download(self, url: str) -> bytes:
        if self._http is None:
            raise RetrievalError("no http session available")

        timeout = aiohttp.ClientTimeout(total=self.http_timeout)
        try:
            async with self._http.get(url, timeout=timeout) as resp:
                if resp.status != 200:
                    raise RetrievalError(f"{url} answered {resp.status}")
                if resp.content_length and resp.content_length > self.max_download_bytes:
                    raise RetrievalError(f"{url} is {resp.content_length} bytes, over the limit")
                data = bytearray()
                async for chunk in resp.content.iter_chunked(_CHUNK_SIZE):
                    data += chunk
                    if len(data) > self.max_download_bytes:
                        raise RetrievalError(f"{url} exceeds {self.max_download_bytes} bytes")
                return bytes(data)
        except (aiohttp.ClientError, asyncio.TimeoutError) as e:
            raise RetrievalError(f"download of {url} failed: {e}") from e


def _read_magic(path: Path) -> bytes:
    with path.open("rb") as f:
        return f.read(len(CAPTURE_PATTERN))
