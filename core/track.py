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

"""Track handles and their background retrieval."""

import asyncio
from dataclasses import dataclass, field
from typing import Awaitable, Callable

from core.errors import RetrievalAbortedError, RetrievalError

Fetcher = Callable[["Track"], Awaitable[bytes]]


@dataclass(eq=False)
class Track:
    """A playable track.

    ``locator`` is whatever the resolver needs to fetch the audio again (a
    file path or URL). Audio bytes are cached once retrieved so a looping
    track is not fetched twice.
    """

    id: str
    title: str
    locator: str
    artist: str | None = None
    album: str | None = None
    duration: float = 0.0
    _audio: bytes | None = field(default=None, repr=False)
    _retrieval: asyncio.Task | None = field(default=None, repr=False)

    def pretty(self) -> str:
        if self.artist:
            return f"`{self.artist}` - `{self.title}`"
        return f"`{self.title}`"

    @property
    def retrieved(self) -> bool:
        return self._audio is not None

    @property
    def retrieving(self) -> bool:
        return self._retrieval is not None and not self._retrieval.done()

    def preload(self, audio: bytes) -> None:
        """Attach audio that was obtained while resolving."""
        self._audio = audio

    def prefetch(self, fetch: Fetcher, limiter: asyncio.Semaphore | None = None) -> None:
        """Start retrieval in the background if it is not running or done."""
        if self._audio is not None:
            return
        if self._retrieval is not None and not self._retrieval.cancelled():
            return
        self._retrieval = asyncio.create_task(
            self._retrieve(fetch, limiter), name=f"retrieve-{self.id}"
        )
        self._retrieval.add_done_callback(_mark_observed)

    async def _retrieve(self, fetch: Fetcher, limiter: asyncio.Semaphore | None) -> bytes:
        if limiter is None:
            audio = await fetch(self)
        else:
            async with limiter:
                audio = await fetch(self)
        self._audio = audio
        return audio

    async def audio(self) -> bytes:
        """Wait for the retrieved audio.

        Raises RetrievalAbortedError if retrieval was cancelled and
        RetrievalError if it failed or was never started.
        """
        if self._audio is not None:
            return self._audio
        task = self._retrieval
        if task is None:
            raise RetrievalError(f"retrieval for {self.id} was never started")
        await asyncio.wait({task})
        if task.cancelled():
            raise RetrievalAbortedError(f"retrieval for {self.id} aborted")
        if (error := task.exception()) is not None:
            raise RetrievalError(f"retrieval for {self.id} failed: {error}") from error
        return task.result()

    def abort(self) -> None:
        """Cancel in-flight retrieval. Safe to call repeatedly."""
        if self._retrieval is not None and not self._retrieval.done():
            self._retrieval.cancel()


def _mark_observed(task: asyncio.Task) -> None:
    # A track removed after a failed fetch is never awaited; audio() still
    # re-raises the failure for whoever plays it
    if not task.cancelled():
        task.exception()
