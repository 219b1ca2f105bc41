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

"""Error taxonomy for Riptide.

Every error a user can cause or observe derives from RiptideError. The
``message_key`` points into messages.yaml so the command layer can turn an
error into a reply without string matching. Keys that are None fall back to
the generic failure message.

Families:
- Malformed input: DecodeError and subclasses
- Resource absent: NoSessionError, EmptyQueueError, NothingPlayingError
- Policy violation: QueueIndexError, InvalidRangeError, InvalidPageError,
  SeekRangeError, NotSameRoomError, InvalidArgumentError
- Transport abnormal: TransportError and subclasses (tear the session down)
- Expected cancellation: RetrievalAbortedError, ScopeCancelledError
"""


class RiptideError(Exception):
    """Base class for errors surfaced by Riptide."""

    message_key: str | None = None

    def __init__(self, message: str = "", **details) -> None:
        super().__init__(message or self.__class__.__name__)
        self.details = details


# Malformed input

class DecodeError(RiptideError):
    """Container stream could not be decoded."""


class BadContainerError(DecodeError):
    """Page did not start with the capture pattern."""


class InvalidSegmentTableError(DecodeError):
    """Page declared an empty segment table."""


class UnexpectedEndOfStreamError(DecodeError):
    """Stream ended in the middle of a page."""


# Resource absent

class NoSessionError(RiptideError):
    message_key = "no_session"


class EmptyQueueError(RiptideError):
    message_key = "queue_empty"


class NothingPlayingError(RiptideError):
    message_key = "nothing_playing"


# Policy violation

class QueueIndexError(RiptideError):
    message_key = "invalid_position"


class InvalidRangeError(RiptideError):
    message_key = "invalid_range"


class InvalidPageError(RiptideError):
    message_key = "invalid_page"


class SeekRangeError(RiptideError):
    message_key = "seek_out_of_range"


class NotSameRoomError(RiptideError):
    message_key = "wrong_vc"


class InvalidArgumentError(RiptideError):
    message_key = "invalid_argument"


# Transport abnormal

class TransportError(RiptideError):
    """Voice transport failed in a way that ends the session."""

    message_key = "voice_error"


class TrackExceptionError(TransportError):
    """Audio player reported an error while consuming packets."""


class TrackStuckError(TransportError):
    """Audio player stopped consuming packets."""


class TransportClosedError(TransportError):
    """Voice connection went away mid-track."""


class VoiceConnectError(RiptideError):
    message_key = "failed_join_vc"


# Expected cancellation

class RetrievalAbortedError(RiptideError):
    """Track retrieval was cancelled before it finished."""


class ScopeCancelledError(RiptideError):
    """Work was abandoned because its cancellation scope fired."""


# Session lifecycle

class SessionClosedError(RiptideError):
    message_key = "session_closed"


# Resolution / retrieval

class ResolveError(RiptideError):
    message_key = "track_load_failed"


class TrackNotFoundError(ResolveError):
    message_key = "song_not_found"


class UnsupportedSourceError(ResolveError):
    message_key = "unsupported_source"


class ResolveTimeoutError(ResolveError):
    message_key = "resolve_timeout"


class RetrievalError(RiptideError):
    """Track audio could not be fetched."""

    message_key = "track_load_failed"


class CommandRegistryError(RuntimeError):
    """Command table and handlers are out of sync (raised at startup)."""
