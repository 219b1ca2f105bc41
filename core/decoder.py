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

"""Ogg page decoder that streams Opus packets.

The decoder walks an Ogg container page by page and hands every packet to a
destination with an ``async write(packet)`` method. It keeps the playback
clock (granule position / 48 kHz), can be paused and resumed, and can seek by
rescanning the source from the start.

Page layout (little-endian):

    0   capture pattern "OggS"
    4   version
    5   header type
    6   granule position (u64)
    14  bitstream serial (u32)
    18  page sequence (u32)
    22  checksum (u32)
    26  segment count (u8)
    27  segment table, then payload

Page reads are synchronous. The only suspension points are the pause wait
and destination writes, so the source is always left on a page boundary
whenever the decoder yields.
"""

import asyncio
import struct
from dataclasses import dataclass
from enum import Enum
from typing import BinaryIO, Protocol

from loguru import logger

from core.errors import (
    BadContainerError,
    InvalidSegmentTableError,
    SeekRangeError,
    UnexpectedEndOfStreamError,
)
from core.playback import CancelScope

CAPTURE_PATTERN = b"OggS"
HEADER_SIZE = 27
MAX_SEGMENT_SIZE = 255
MAX_SEGMENT_COUNT = 255
MAX_PACKET_SIZE = MAX_SEGMENT_SIZE * MAX_SEGMENT_COUNT
MAX_PAGE_SIZE = HEADER_SIZE + MAX_SEGMENT_COUNT + MAX_PACKET_SIZE
SAMPLE_RATE = 48000

# Granule value for pages on which no packet finishes
GRANULE_UNSET = 2**64 - 1

_HEADER = struct.Struct("<4sBBQIIIB")


class PacketWriter(Protocol):
    async def write(self, packet: bytes) -> None: ...


@dataclass(slots=True, frozen=True)
class PageHeader:
    version: int
    header_type: int
    granule: int
    serial: int
    sequence: int
    checksum: int
    segment_count: int

    @classmethod
    def parse(cls, data: bytes | memoryview) -> "PageHeader":
        magic, *fields = _HEADER.unpack_from(data)
        if magic != CAPTURE_PATTERN:
            raise BadContainerError(f"bad capture pattern {bytes(magic)!r}")
        return cls(*fields)


class _EndOfStream(Exception):
    """Clean end of stream on a page boundary."""


def _read_into(src: BinaryIO, view: memoryview) -> int:
    """Fill ``view`` from ``src``; returns the byte count actually read."""
    filled = 0
    while filled < len(view):
        n = src.readinto(view[filled:])
        if not n:
            break
        filled += n
    return filled


def read_page(src: BinaryIO, buffer: memoryview) -> tuple[PageHeader, memoryview, memoryview]:
    """Read one page into ``buffer``.

    Returns the header, the segment table and the payload as views into
    ``buffer``. Raises _EndOfStream when the source is exhausted exactly on a
    page boundary and UnexpectedEndOfStreamError for any other short read.
    """
    got = _read_into(src, buffer[:HEADER_SIZE])
    if got == 0:
        raise _EndOfStream
    if got < HEADER_SIZE:
        raise UnexpectedEndOfStreamError(f"page header cut short at {got} bytes")
    header = PageHeader.parse(buffer)

    if header.segment_count < 1:
        raise InvalidSegmentTableError("page has no segments")
    table_end = HEADER_SIZE + header.segment_count
    table = buffer[HEADER_SIZE:table_end]
    if _read_into(src, table) < header.segment_count:
        raise UnexpectedEndOfStreamError("segment table cut short")

    payload_end = table_end + sum(table)
    payload = buffer[table_end:payload_end]
    if _read_into(src, payload) < len(payload):
        raise UnexpectedEndOfStreamError("page payload cut short")

    return header, table, payload


def split_packets(table: memoryview, payload: memoryview, partial: bytearray) -> list[bytes]:
    """Split a page payload into finished packets.

    ``partial`` carries an unfinished packet between pages: it is prepended to
    the first packet here, and refilled if this page ends mid-packet.
    """
    packets = []
    start = 0
    end = 0
    for lacing in table:
        end += lacing
        if lacing < MAX_SEGMENT_SIZE:
            if partial:
                partial += payload[start:end]
                packets.append(bytes(partial))
                partial.clear()
            else:
                packets.append(bytes(payload[start:end]))
            start = end
    if start < end:
        partial += payload[start:end]
    return packets


def granule_seconds(granule: int) -> float:
    return granule / SAMPLE_RATE


def probe_duration(src: BinaryIO) -> float:
    """Total duration of an Ogg stream, from the last page's granule.

    Leaves ``src`` at its original position.
    """
    buffer = memoryview(bytearray(MAX_PAGE_SIZE))
    origin = src.tell()
    duration = 0.0
    try:
        src.seek(0)
        while True:
            try:
                header, _, _ = read_page(src, buffer)
            except _EndOfStream:
                return duration
            if header.granule != GRANULE_UNSET:
                duration = granule_seconds(header.granule)
    finally:
        src.seek(origin)


class PauseState(Enum):
    RUNNING = "running"
    PAUSE_REQUESTED = "pause_requested"
    PAUSED = "paused"


class PauseController:
    """Three-state pause gate for the decode loop.

    ``pause()`` enters PAUSE_REQUESTED, lets the decoder keep writing for
    ``drain_delay`` seconds so the transport can flush, then enters PAUSED.
    ``resume()`` waits the same delay before the gate reopens.
    """

    def __init__(self, drain_delay: float = 1.0) -> None:
        self.drain_delay = drain_delay
        self.state = PauseState.RUNNING
        self._running = asyncio.Event()
        self._running.set()

    @property
    def paused(self) -> bool:
        return self.state is not PauseState.RUNNING

    async def pause(self) -> None:
        if self.state is not PauseState.RUNNING:
            return
        self.state = PauseState.PAUSE_REQUESTED
        await asyncio.sleep(self.drain_delay)
        if self.state is PauseState.PAUSE_REQUESTED:
            self.state = PauseState.PAUSED
            self._running.clear()

    async def resume(self) -> None:
        if self.state is PauseState.RUNNING:
            return
        await asyncio.sleep(self.drain_delay)
        self.state = PauseState.RUNNING
        self._running.set()

    async def wait(self, scope: CancelScope) -> bool:
        """Block while paused. Returns False if ``scope`` was cancelled instead."""
        if self._running.is_set():
            return True
        resumed = asyncio.ensure_future(self._running.wait())
        cancelled = asyncio.ensure_future(scope.wait())
        try:
            await asyncio.wait({resumed, cancelled}, return_when=asyncio.FIRST_COMPLETED)
        finally:
            resumed.cancel()
            cancelled.cancel()
        return not scope.cancelled


class Decoder:
    """Streams packets from one Ogg source at a time.

    A session keeps one decoder for its whole life. The pause state carries
    over between tracks; the source, clock and carried packet do not.
    """

    def __init__(self, drain_delay: float = 1.0, log=None) -> None:
        self.log = log or logger
        self.pause_controller = PauseController(drain_delay)
        self.time = 0.0
        self._buffer = memoryview(bytearray(MAX_PAGE_SIZE))
        self._src: BinaryIO | None = None
        self._repositioned = False
        self._seek_lock = asyncio.Lock()

    @property
    def paused(self) -> bool:
        return self.pause_controller.paused

    @property
    def active(self) -> bool:
        return self._src is not None

    async def pause(self) -> None:
        await self.pause_controller.pause()

    async def resume(self) -> None:
        await self.pause_controller.resume()

    async def decode(self, scope: CancelScope, dst: PacketWriter, src: BinaryIO) -> None:
        """Write every packet of ``src`` to ``dst``.

        Returns on natural end of stream or when ``scope`` is cancelled.
        """
        self._src = src
        self._repositioned = False
        self.time = 0.0
        partial = bytearray()
        try:
            while True:
                await asyncio.sleep(0)
                if not await self.pause_controller.wait(scope):
                    return
                if scope.cancelled:
                    return
                if self._repositioned:
                    partial.clear()
                    self._repositioned = False

                try:
                    header, table, payload = read_page(src, self._buffer)
                except _EndOfStream:
                    if partial:
                        await dst.write(bytes(partial))
                    return

                if header.granule != GRANULE_UNSET:
                    self.time = granule_seconds(header.granule)

                for packet in split_packets(table, payload, partial):
                    if scope.cancelled:
                        return
                    # The rest of this page predates the seek
                    if self._repositioned:
                        break
                    await dst.write(packet)
        finally:
            self._src = None

    async def seek(self, goal: float) -> None:
        """Reposition the active source to the page nearest ``goal`` seconds.

        Raises SeekRangeError when ``goal`` is negative or past the last page;
        the source is left where it was in that case.
        """
        if goal < 0:
            raise SeekRangeError(f"negative seek goal {goal}")

        async with self._seek_lock:
            if self._src is None:
                return
            was_running = not self.paused
            if was_running:
                await self.pause()
            try:
                src = self._src
                if src is None:
                    return
                origin = src.tell()
                try:
                    offset, position = self._scan(src, goal)
                except BaseException:
                    src.seek(origin)
                    raise
                src.seek(offset)
                self.time = position
                self._repositioned = True
                self.log.debug(f"seeked to {position:.2f}s at byte {offset}")
            finally:
                if was_running:
                    await self.resume()

    def _scan(self, src: BinaryIO, goal: float) -> tuple[int, float]:
        """Linear rescan for the page boundary closest to ``goal``."""
        src.seek(0)
        best_offset = 0
        best_position = 0.0
        best_difference = goal
        position = 0.0
        while True:
            boundary = src.tell()
            try:
                header, _, _ = read_page(src, self._buffer)
            except _EndOfStream:
                break
            # The page at ``boundary`` starts where the previous one ended
            difference = abs(goal - position)
            if difference < best_difference:
                best_difference = difference
                best_offset = boundary
                best_position = position
            if header.granule != GRANULE_UNSET:
                position = granule_seconds(header.granule)

        if goal > position:
            raise SeekRangeError(f"seek goal {goal:.2f}s past end {position:.2f}s")
        return best_offset, best_position
