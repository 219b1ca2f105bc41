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

"""Ordered track queue with read-ahead retrieval."""

import asyncio
import random

from loguru import logger

from core.errors import EmptyQueueError, InvalidRangeError, QueueIndexError
from core.track import Fetcher, Track

DEFAULT_PREFETCH_WINDOW = 3
DEFAULT_PREFETCH_WORKERS = 2


class TrackQueue:
    """Play-order queue. Index 0 is the next track to play.

    After every mutation the first ``window`` tracks get their retrieval
    started on a pool of at most ``workers`` concurrent fetches. Tracks that
    leave the queue other than by pop() have their retrieval aborted.
    """

    def __init__(
        self,
        fetch: Fetcher | None = None,
        window: int = DEFAULT_PREFETCH_WINDOW,
        workers: int = DEFAULT_PREFETCH_WORKERS,
        log=None,
    ) -> None:
        self.log = log or logger
        self._fetch = fetch
        self._window = window
        self._limiter = asyncio.Semaphore(max(1, workers))
        self._tracks: list[Track] = []

    def __len__(self) -> int:
        return len(self._tracks)

    def __bool__(self) -> bool:
        return bool(self._tracks)

    def tracks(self) -> list[Track]:
        """Snapshot of the queue in play order."""
        return list(self._tracks)

    def init(self) -> None:
        self.clear()

    def clear(self) -> None:
        for track in self._tracks:
            track.abort()
        self._tracks = []

    def push_front(self, *tracks: Track) -> None:
        self._tracks[0:0] = tracks
        self._refresh()

    def push_back(self, *tracks: Track) -> None:
        self._tracks.extend(tracks)
        self._refresh()

    def pop(self) -> Track:
        if not self._tracks:
            raise EmptyQueueError("queue is empty")
        track = self._tracks.pop(0)
        self._start(track)
        self._refresh()
        return track

    def remove(self, i: int, j: int) -> list[Track]:
        """Remove positions ``i`` through ``j`` inclusive and return them."""
        if j < i:
            raise InvalidRangeError(f"cannot remove in negative range {i}..{j}")
        self._check_index(i)
        self._check_index(j)

        removed = self._tracks[i:j + 1]
        if len(removed) != j - i + 1:
            raise RuntimeError(f"queue lost elements between {i} and {j}")
        del self._tracks[i:j + 1]
        for track in removed:
            track.abort()
        self._refresh()
        return removed

    def move(self, i: int, j: int) -> Track:
        """Move the track at ``i`` to position ``j``."""
        self._check_index(i)
        self._check_index(j)
        track = self._tracks[i]
        if i != j:
            del self._tracks[i]
            self._tracks.insert(j, track)
            self._refresh()
        return track

    def shuffle(self) -> None:
        random.shuffle(self._tracks)
        self._refresh()

    def _check_index(self, index: int) -> None:
        if not 0 <= index < len(self._tracks):
            raise QueueIndexError(f"element {index} does not exist", position=index + 1)

    def _start(self, track: Track) -> None:
        if self._fetch is not None:
            track.prefetch(self._fetch, self._limiter)

    def _refresh(self) -> None:
        if self._fetch is None:
            return
        for track in self._tracks[:self._window]:
            if not track.retrieved and not track.retrieving:
                self.log.trace(f"prefetching {track.id}")
                self._start(track)
