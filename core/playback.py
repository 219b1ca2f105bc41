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

"""Cancellation scopes for track pipes.

A CancelScope is handed to everything that takes part in piping one track
(decoder, voice stream, retrieval wait). Cancelling it makes each of them
return at its next checkpoint instead of raising.
"""

import asyncio
from dataclasses import dataclass, field
from itertools import count
from time import monotonic as _now
from typing import Awaitable, TypeVar

import discord

from core.errors import RetrievalAbortedError, ScopeCancelledError

T = TypeVar("T")

_SCOPE_IDS = count(1)


@dataclass(slots=True, eq=False)
class CancelScope:
    """Token that scopes one pipe attempt.

    ``id`` is unique per scope so log lines from overlapping attempts can be
    told apart. ``track_id`` and ``started_at`` are kept for diagnostics.
    """

    track_id: str | None = None
    id: int = field(default_factory=lambda: next(_SCOPE_IDS))
    started_at: float = field(default_factory=_now)
    _event: asyncio.Event = field(default_factory=asyncio.Event, repr=False)

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    def cancel(self) -> None:
        """Mark the scope as cancelled and wake anything waiting on it."""
        self._event.set()

    async def wait(self) -> None:
        await self._event.wait()

    async def race(self, aw: Awaitable[T]) -> T:
        """Await ``aw`` unless the scope is cancelled first.

        Raises ScopeCancelledError when the scope wins; ``aw`` is cancelled.
        """
        if self.cancelled:
            raise ScopeCancelledError(f"scope {self.id} cancelled")
        task = asyncio.ensure_future(aw)
        waiter = asyncio.ensure_future(self._event.wait())
        try:
            await asyncio.wait({task, waiter}, return_when=asyncio.FIRST_COMPLETED)
        finally:
            waiter.cancel()
            lost = not task.done()
            if lost:
                task.cancel()
        # A cancelled task only finishes on its next loop step
        if lost or task.cancelled():
            raise ScopeCancelledError(f"scope {self.id} cancelled")
        return task.result()


# Failures that mean the pipe was torn down on purpose
_EXPECTED_CANCELLATIONS = (
    RetrievalAbortedError,
    ScopeCancelledError,
    ConnectionError,
    discord.ClientException,
)


def is_expected_cancellation(error: BaseException, scope: CancelScope | None) -> bool:
    """True when ``error`` is the by-product of cancelling ``scope``."""
    if isinstance(error, ScopeCancelledError):
        return True
    return scope is not None and scope.cancelled and isinstance(error, _EXPECTED_CANCELLATIONS)
