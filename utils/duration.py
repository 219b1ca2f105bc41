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

"""Parse and format track positions."""

import re

from core.errors import InvalidArgumentError

_CLOCK = re.compile(r"^(?:(\d{1,2}):)?(\d{1,2}):(\d{2})$")
_SECONDS = re.compile(r"^\d+(?:\.\d+)?$")


def parse_duration(text: str) -> float:
    """Parse ``HH:MM:SS``, ``MM:SS``, ``M:SS`` or plain seconds into seconds.

    Raises InvalidArgumentError for anything else.
    """
    text = text.strip()
    if _SECONDS.match(text):
        return float(text)

    match = _CLOCK.match(text)
    if match:
        hours, minutes, seconds = (int(part) if part else 0 for part in match.groups())
        if hours < 24 and minutes < 60 and seconds < 60:
            return float(hours * 3600 + minutes * 60 + seconds)

    raise InvalidArgumentError(f"cannot parse time {text!r}", value=text)


def format_duration(seconds: float) -> str:
    """Format seconds as ``H:MM:SS`` or ``M:SS``, rounded to the second."""
    total = int(round(max(seconds, 0)))
    hours, rest = divmod(total, 3600)
    minutes, secs = divmod(rest, 60)
    if hours:
        return f"{hours}:{minutes:02d}:{secs:02d}"
    return f"{minutes}:{secs:02d}"
