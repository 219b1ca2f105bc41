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

"""Logging setup.

Everything logs through loguru. Components receive a logger bound with the
room they work for (``logger.bind(room=...)``) instead of reaching for a
module global, so one guild's log lines can be told from another's.
"""

import inspect
import logging
import sys

from loguru import logger

LOG_FORMAT = (
    "<green>{time:YYYY-MM-DD HH:mm:ss}</green> "
    "<level>{level: <6}</level> "
    "<cyan>{extra[room]}</cyan> {message}"
)

# minimal shows lifecycle notices, verbose adds user actions, debug adds internals
LEVELS = {
    "minimal": "NOTICE",
    "verbose": "INFO",
    "debug": "DEBUG",
}

# Chatty libraries routed through the intercept handler
_LIBRARY_LOGGERS = ("discord", "discord.player", "discord.voice_state", "discord.gateway", "aiohttp")


class InterceptHandler(logging.Handler):
    """Forward standard-library log records into loguru."""

    def emit(self, record: logging.LogRecord) -> None:
        try:
            level = logger.level(record.levelname).name
        except ValueError:
            level = record.levelno

        frame, depth = inspect.currentframe(), 0
        while frame and (depth == 0 or frame.f_code.co_filename == logging.__file__):
            frame = frame.f_back
            depth += 1

        logger.opt(depth=depth, exception=record.exc_info).log(level, record.getMessage())


def _ensure_notice_level() -> None:
    try:
        logger.level("NOTICE")
    except ValueError:
        logger.level("NOTICE", no=25, color="<blue><bold>")


def setup_logging(level: str = "verbose") -> None:
    """(Re)configure the loguru sink for the given verbosity name."""
    _ensure_notice_level()
    loguru_level = LEVELS.get(level, "INFO")

    logger.remove()
    logger.configure(extra={"room": "-"})
    logger.add(sys.stderr, format=LOG_FORMAT, level=loguru_level, backtrace=False, diagnose=False)

    logging.basicConfig(handlers=[InterceptHandler()], level=0, force=True)
    library_level = logging.DEBUG if level == "debug" else logging.WARNING
    for name in _LIBRARY_LOGGERS:
        logging.getLogger(name).setLevel(library_level)


def room_logger(guild_name: str, guild_id: int):
    """Logger bound to one room."""
    return logger.bind(room=f"{guild_name or 'guild'}:{guild_id}")


_ensure_notice_level()
