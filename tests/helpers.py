"""Ogg page builders and in-memory stand-ins for voice, text and resolution."""

from __future__ import annotations

import asyncio
import struct
from contextlib import asynccontextmanager
from itertools import count

from core.errors import TrackNotFoundError
from core.track import Track
from systems.resolver import Resolution

SAMPLES_PER_SECOND = 48000
_track_ids = count(1)


def ogg_page(
    segments: list[int],
    payload: bytes | None = None,
    granule: int = 0,
    sequence: int = 0,
    magic: bytes = b"OggS",
) -> bytes:
    if payload is None:
        payload = bytes(n % 251 for n in range(sum(segments)))
    header = struct.pack("<4sBBQIIIB", magic, 0, 0, granule, 1, sequence, 0, len(segments))
    return header + bytes(segments) + payload


def lacing(size: int) -> list[int]:
    return [255] * (size // 255) + [size % 255]


def packet_page(packets: list[bytes], granule: int, sequence: int = 0) -> bytes:
    segments = []
    for packet in packets:
        segments += lacing(len(packet))
    return ogg_page(segments, b"".join(packets), granule, sequence)


def page_packets(index: int, per_page: int) -> list[bytes]:
    """Packets whose first byte names the page they came from, modulo 256."""
    return [bytes([index % 256, n]) + b"\x00" * 8 for n in range(per_page)]


def ogg_stream(pages: int, per_page: int = 5) -> bytes:
    """One second of granule per page."""
    return b"".join(
        packet_page(page_packets(i, per_page), granule=(i + 1) * SAMPLES_PER_SECOND, sequence=i)
        for i in range(pages)
    )


def make_track(title: str, duration: float = 5.0, artist: str | None = "artist") -> Track:
    return Track(
        id=f"{title}-{next(_track_ids)}",
        title=title,
        artist=artist,
        duration=duration,
        locator=f"/music/{title}.opus",
    )


async def wait_until(predicate, timeout: float = 3.0) -> None:
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while not predicate():
        if loop.time() > deadline:
            raise AssertionError("condition not reached in time")
        await asyncio.sleep(0.005)


class CollectingWriter:
    def __init__(self, delay: float = 0.0, fail_with: Exception | None = None) -> None:
        self.packets: list[bytes] = []
        self.delay = delay
        self.fail_with = fail_with

    async def write(self, packet: bytes) -> None:
        if self.fail_with is not None and self.packets:
            raise self.fail_with
        self.packets.append(packet)
        if self.delay:
            await asyncio.sleep(self.delay)


class FakeTransport:
    def __init__(self, write_delay: float = 0.0, fail_with: Exception | None = None,
                 connect_error: Exception | None = None) -> None:
        self.channel_id: int | None = None
        self.connected = False
        self.connects: list[int] = []
        self.disconnects = 0
        self.streams: list[CollectingWriter] = []
        self.write_delay = write_delay
        self.fail_with = fail_with
        self.connect_error = connect_error

    def is_connected(self) -> bool:
        return self.connected

    async def connect(self, channel_id: int) -> None:
        if self.connect_error is not None:
            raise self.connect_error
        self.channel_id = channel_id
        self.connected = True
        self.connects.append(channel_id)

    async def disconnect(self) -> None:
        self.connected = False
        self.disconnects += 1

    @asynccontextmanager
    async def stream(self, scope):
        writer = CollectingWriter(self.write_delay, self.fail_with)
        self.streams.append(writer)
        yield writer


class FakeNotifier:
    def __init__(self) -> None:
        self.sent: list[tuple[int | None, str]] = []

    async def send(self, channel_id: int | None, text: str) -> None:
        self.sent.append((channel_id, text))

    @property
    def texts(self) -> list[str]:
        return [text for _, text in self.sent]


class FakeResolver:
    """Catalog of query -> [(title, duration)], every title sharing one audio blob
    unless overridden in ``audio_by_title``. Fetches for titles in ``hold``
    wait on their event."""

    def __init__(self, catalog: dict[str, list[tuple[str, float]]] | None = None,
                 audio: bytes = b"", audio_by_title: dict[str, bytes] | None = None,
                 failed: int = 0, resolve_gate: asyncio.Event | None = None,
                 hold: dict[str, asyncio.Event] | None = None) -> None:
        self.catalog = catalog or {}
        self.audio = audio
        self.audio_by_title = audio_by_title or {}
        self.failed = failed
        self.resolve_gate = resolve_gate
        self.hold = hold or {}
        self.fetched: list[str] = []

    async def resolve(self, query: str) -> Resolution:
        if self.resolve_gate is not None:
            await self.resolve_gate.wait()
        if query not in self.catalog:
            raise TrackNotFoundError(query)
        tracks = [make_track(title, duration) for title, duration in self.catalog[query]]
        return Resolution(tracks, self.failed)

    async def fetch(self, track: Track) -> bytes:
        self.fetched.append(track.title)
        if track.title in self.hold:
            await self.hold[track.title].wait()
        await asyncio.sleep(0)
        return self.audio_by_title.get(track.title, self.audio)
