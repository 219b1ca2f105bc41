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

"""Metadata extraction using Mutagen.

Reads title, artist, album and length from Ogg Opus / Vorbis files, either
on disk or already in memory (downloaded tracks).
"""

import asyncio
import io
from pathlib import Path

from loguru import logger
from mutagen import File, MutagenError


def _empty(name: str) -> dict:
    return {
        "filename": name,
        "title": Path(name).stem,
        "artist": None,
        "album": None,
        "duration": 0.0,
    }


def _read_tags(audio, result: dict) -> dict:
    result["title"] = _get_first(audio, "title") or result["title"]
    result["artist"] = _get_first(audio, "artist")
    result["album"] = _get_first(audio, "album")
    info = getattr(audio, "info", None)
    length = getattr(info, "length", None)
    if length:
        result["duration"] = float(length)
    return result


def extract_metadata_sync(filepath: Path) -> dict:
    """Extract metadata from an audio file (synchronous).

    Falls back to the filename stem for the title when tags are missing or
    unreadable; artist/album may be None and duration 0.0.
    """
    result = _empty(filepath.name)
    try:
        audio = File(filepath)
        if audio is None:
            return result
        return _read_tags(audio, result)
    except (MutagenError, OSError):
        logger.warning(f"error reading metadata from {filepath.name}")
        return result


def extract_metadata_from_bytes(data: bytes, name: str) -> dict:
    """Same as extract_metadata_sync for audio held in memory."""
    result = _empty(name)
    try:
        audio = File(io.BytesIO(data))
        if audio is None:
            return result
        return _read_tags(audio, result)
    except MutagenError:
        logger.warning(f"error reading metadata from {name}")
        return result


def _get_first(audio, key: str) -> str | None:
    """Get first value from tag, handling list format."""
    try:
        value = audio.get(key)
        if value is None:
            return None
        if isinstance(value, list):
            return str(value[0]) if value else None
        return str(value)
    except (KeyError, ValueError, TypeError, UnicodeError):
        return None


async def extract_metadata(filepath: Path, timeout: float = 15.0) -> dict:
    """Extract metadata asynchronously with timeout.

    A hung read returns the filename fallback; the worker thread keeps running
    until Mutagen gives up.
    """
    try:
        return await asyncio.wait_for(
            asyncio.to_thread(extract_metadata_sync, filepath),
            timeout=timeout
        )
    except asyncio.TimeoutError:
        logger.warning(f"metadata extraction timed out: {filepath.name}")
        return _empty(filepath.name)
