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

"""Configuration management for Riptide."""

import asyncio
import os
import sys
import tempfile
from pathlib import Path
from typing import Any, Callable

import yaml
from loguru import logger


# =============================================================================
# DEFAULT SETTINGS SCHEMA
# =============================================================================
# These defaults are used when settings.yaml is missing or incomplete.
# Environment variables can override any setting (see _apply_env_overrides).
#
# Playback Settings:
#   queue_page_size        - Tracks shown per page in /queue (1-100)
#   inactivity_timeout     - Minutes idle or alone in VC before leaving (1+)
#   max_track_hours        - Longest track accepted into the queue (1+)
#
# Prefetch Settings (prefetch.*):
#   window                 - Upcoming tracks retrieved ahead of time (0-10)
#   workers                - Concurrent retrievals per session (1-10)
#
# Playback Loop Settings (playback.*):
#   tick_interval          - Seconds between queue polls while idle
#   drain_delay            - Seconds the transport gets to flush on pause/resume
#   occupancy_check_interval - Seconds between empty-channel checks
#   stuck_threshold        - Seconds without packet reads before a track is stuck
#   play_timeout           - Seconds a /play lookup may take
#
# Resolver Settings (resolver.*):
#   http_timeout           - Seconds allowed for downloading a linked track
#   max_download_mb        - Largest linked file accepted
#   metadata_timeout       - Seconds allowed for reading tags from one file
#
# UI Settings (ui.*):
#   brief_auto_delete      - Seconds before auto-deleting error replies (0 = never)
#
# Logging Settings (logging.*):
#   level                  - Log verbosity: "minimal", "verbose", or "debug"
# =============================================================================

DEFAULT_SETTINGS = {
    "queue_page_size": 25,
    "inactivity_timeout": 5,
    "max_track_hours": 3,
    "prefetch": {
        "window": 3,
        "workers": 2,
    },
    "playback": {
        "tick_interval": 1.0,
        "drain_delay": 1.0,
        "occupancy_check_interval": 15.0,
        "stuck_threshold": 10.0,
        "play_timeout": 300.0,
    },
    "resolver": {
        "http_timeout": 30.0,
        "max_download_mb": 64,
        "metadata_timeout": 15.0,
    },
    "ui": {
        "brief_auto_delete": 10,  # seconds, 0 to disable
    },
    # Logging (LOG_LEVEL env var overrides this)
    "logging": {
        "level": "verbose",  # minimal, verbose, debug
    },
}

# =============================================================================
# DEFAULT MESSAGES SCHEMA
# =============================================================================
# Bot responses with per-message enable/disable control.
# Each message has two fields:
#   text    - The message template (supports {variables} for formatting)
#   enabled - Whether to show this message (True) or acknowledge silently (False)
#
# Command replies are always answered; "enabled" only mutes the unprompted
# channel notices (now playing, inactivity, playback errors).
# =============================================================================

DEFAULT_MESSAGES = {
    # Voice
    "not_in_vc": {"text": "You must be in a voice channel", "enabled": True},
    "wrong_vc": {"text": "You must be in the same voice channel", "enabled": True},
    "voice_error": {"text": "Lost the voice connection, leaving", "enabled": True},
    "failed_join_vc": {"text": "Couldn't join your voice channel", "enabled": True},
    "joined": {"text": "Hi!", "enabled": True},
    "left": {"text": "Bye!", "enabled": True},
    "inactive_leave": {"text": "Leaving voice due to inactivity", "enabled": True},
    "no_session": {"text": "I'm not in a voice channel", "enabled": True},
    "session_closed": {"text": "I'm on my way out, try again in a moment", "enabled": True},

    # Playback
    "nothing_playing": {"text": "No track currently playing", "enabled": True},
    "now_playing": {"text": "`{title}` by `{artist}` - `{elapsed}`/`{duration}`", "enabled": True},
    "now_playing_notice": {"text": "Playing: {track}", "enabled": False},
    "paused": {"text": "Paused", "enabled": True},
    "resumed": {"text": "Resumed", "enabled": True},
    "skipped": {"text": "Skipped", "enabled": True},
    "seek_to": {"text": "Seek to `{position}`", "enabled": True},
    "seek_out_of_range": {"text": "That's past the end of the track", "enabled": True},
    "loop_on": {"text": "Looping", "enabled": True},
    "loop_off": {"text": "Not looping", "enabled": True},
    "track_error": {"text": "Error playing: {track}", "enabled": True},

    # Search
    "song_not_found": {"text": "No tracks found", "enabled": True},
    "unsupported_source": {"text": "That link isn't supported", "enabled": True},
    "track_load_failed": {"text": "Couldn't load that track", "enabled": True},
    "resolve_timeout": {"text": "Looking that up took too long", "enabled": True},
    "track_too_long": {"text": "Could not queue: {track} - track is above {hours} hours", "enabled": True},

    # Queue
    "queued_first": {"text": "Queued: `1` track", "enabled": True},
    "queued_track": {"text": "Queued: {track}", "enabled": True},
    "queued_many": {"text": "Queued: `{count}` tracks", "enabled": True},
    "queued_many_failed": {"text": "Queued: `{count}` tracks - `{failed}` failed", "enabled": True},
    "queue_empty": {"text": "No items in queue", "enabled": True},
    "queue_line": {"text": "{position}. {track} ({duration})", "enabled": True},
    "queue_footer": {"text": "Page: `{page}`/`{pages}`, Length: `{length}`", "enabled": True},
    "invalid_page": {"text": "Invalid queue page", "enabled": True},
    "invalid_position": {"text": "There is no track at that position", "enabled": True},
    "invalid_range": {"text": "Cannot remove in a negative range", "enabled": True},
    "removed_one": {"text": "Removed {track}", "enabled": True},
    "removed_many": {"text": "Removed `{count}` tracks", "enabled": True},
    "moved": {"text": "Moved {track} to position `{position}`", "enabled": True},
    "cleared": {"text": "Cleared", "enabled": True},
    "shuffled": {"text": "Shuffled", "enabled": True},

    # Errors
    "invalid_argument": {"text": "Couldn't understand `{value}`", "enabled": True},
    "error_generic": {"text": "Failed...", "enabled": True},
}


def deep_merge(user: dict, defaults: dict) -> dict:
    """Merge user config with defaults, preserving nested structure.

    User values override defaults. For nested dicts, merges recursively.
    Unknown keys (not in defaults) are logged as warnings and ignored.
    """
    result = defaults.copy()
    for key, value in user.items():
        if key in result and isinstance(result[key], dict) and isinstance(value, dict):
            result[key] = deep_merge(value, result[key])
        elif key in defaults:
            result[key] = value
        else:
            logger.warning(f"unknown config key: {key}")
    return result


def load_yaml(path: Path, defaults: dict) -> dict:
    """Load YAML file merged over ``defaults``.

    A missing file or invalid YAML yields a copy of the defaults.
    """
    if not path.exists():
        return _copy_defaults(defaults)

    try:
        with open(path, 'r', encoding='utf-8') as f:
            user = yaml.safe_load(f) or {}

        if not isinstance(user, dict):
            logger.warning(f"{path.name} invalid, using defaults")
            return _copy_defaults(defaults)

        return deep_merge(user, _copy_defaults(defaults))

    except yaml.YAMLError:
        logger.opt(exception=True).error(f"failed to parse {path.name}")
        return _copy_defaults(defaults)


def _copy_defaults(defaults: dict) -> dict:
    return {k: _copy_defaults(v) if isinstance(v, dict) else v for k, v in defaults.items()}


def save_yaml(path: Path, data: dict, header: str = "") -> None:
    """Save YAML atomically with optional header comment.

    Writes to a temp file in the same directory, then renames over ``path``.
    """
    temp_path = None
    try:
        path.parent.mkdir(parents=True, exist_ok=True)
        temp_fd, temp_path = tempfile.mkstemp(dir=path.parent, suffix='.tmp')
        try:
            f = os.fdopen(temp_fd, 'w', encoding='utf-8')
        except Exception:
            os.close(temp_fd)
            raise
        with f:
            if header:
                f.write(header)
            yaml.dump(data, f, default_flow_style=False, sort_keys=False)
        Path(temp_path).replace(path)
    except Exception:
        if temp_path:
            Path(temp_path).unlink(missing_ok=True)
        raise


class ConfigManager:
    """Manages bot configuration from settings.yaml and messages.yaml.

    Loads configuration at startup with this priority (highest wins):
    1. DEFAULT_SETTINGS / DEFAULT_MESSAGES (built-in defaults)
    2. settings.yaml / messages.yaml (user customization)
    3. Environment variables (Docker/deployment override)

    Access patterns:
        config_manager.get("key")           # Get setting value
        config_manager.section("playback")  # Nested section with defaults filled
        config_manager.msg("key", **vars)   # Get formatted message
        config_manager.is_enabled("key")    # Check if a notice should show

    Before load() runs every accessor answers from the defaults, which is
    what the tests rely on.
    """

    def __init__(self, config_path: Path) -> None:
        self.config_path = config_path
        self.settings: dict = _copy_defaults(DEFAULT_SETTINGS)
        self.messages: dict = {}

    async def load(self) -> None:
        """Load settings and messages from YAML, apply env overrides, validate.

        Generates missing config files with default values and header comments.
        """
        settings_path = self.config_path / "settings.yaml"
        self.settings = await asyncio.to_thread(
            load_yaml, settings_path, DEFAULT_SETTINGS
        )

        if not settings_path.exists():
            header = "# Riptide Settings\n# Edit these values to customize behavior\n\n"
            await asyncio.to_thread(save_yaml, settings_path, DEFAULT_SETTINGS, header)
            logger.debug(f"generated {settings_path.name}")

        messages_path = self.config_path / "messages.yaml"
        self.messages = await asyncio.to_thread(
            load_yaml, messages_path, DEFAULT_MESSAGES
        )

        if not messages_path.exists():
            header = "# Riptide Responses\n# Reword replies or mute notices here\n\n"
            await asyncio.to_thread(save_yaml, messages_path, DEFAULT_MESSAGES, header)
            logger.debug(f"generated {messages_path.name}")

        self._apply_env_overrides()
        self._validate_settings()

        logger.debug("config loaded")

    def _validate_settings(self) -> None:
        """Validate and clamp settings after loading from all sources.

        Restores defaults for null values (YAML "key:" with no value), then
        clamps bounded numbers. Logs a warning for every corrected value.
        """
        for key in list(self.settings):
            if self.settings[key] is None and key in DEFAULT_SETTINGS:
                self.settings[key] = _copy_defaults(DEFAULT_SETTINGS)[key]
        for section in ("prefetch", "playback", "resolver", "ui", "logging"):
            sect = self.settings.get(section)
            defaults = DEFAULT_SETTINGS[section]
            if not isinstance(sect, dict):
                logger.warning(f"{section} invalid, using defaults")
                self.settings[section] = dict(defaults)
                continue
            for key in list(sect):
                if sect[key] is None and key in defaults:
                    sect[key] = defaults[key]

        # (key path, converter, min, max)
        validations = [
            ("queue_page_size", int, 1, 100),
            ("inactivity_timeout", int, 1, None),
            ("max_track_hours", int, 1, None),
            ("prefetch.window", int, 0, 10),
            ("prefetch.workers", int, 1, 10),
            ("playback.tick_interval", float, 0.05, 60.0),
            ("playback.drain_delay", float, 0.0, 10.0),
            ("playback.occupancy_check_interval", float, 1.0, None),
            ("playback.stuck_threshold", float, 1.0, None),
            ("playback.play_timeout", float, 1.0, None),
            ("resolver.http_timeout", float, 1.0, None),
            ("resolver.max_download_mb", int, 1, None),
            ("resolver.metadata_timeout", float, 1.0, None),
            ("ui.brief_auto_delete", int, 0, None),
        ]
        for path, convert, min_val, max_val in validations:
            *parents, leaf = path.split(".")
            target = self.settings
            defaults = DEFAULT_SETTINGS
            for part in parents:
                target = target[part]
                defaults = defaults[part]
            value = target.get(leaf)
            try:
                v = convert(value)
                clamped = max(min_val, v) if max_val is None else max(min_val, min(max_val, v))
                if clamped != v:
                    range_str = f"{min_val}+" if max_val is None else f"{min_val}-{max_val}"
                    logger.warning(f"{path}={v} out of range, clamped to {clamped} (valid: {range_str})")
                target[leaf] = clamped
            except (ValueError, TypeError):
                logger.warning(f"{path}={value!r} invalid, using default")
                target[leaf] = defaults[leaf]

        level = str(self.settings["logging"].get("level", "")).lower()
        if level not in ("minimal", "verbose", "debug"):
            logger.warning(f"logging.level={level!r} invalid, using verbose")
            level = "verbose"
        self.settings["logging"]["level"] = level

    def _apply_env_overrides(self) -> None:
        """Override settings with environment variables.

        The env_map dict maps ENV_VAR_NAME -> (setting_key, converter), with
        dot notation for nested keys. Invalid values are logged and ignored.
        """
        def non_negative(env_key: str, convert: Callable[[str], Any] = int) -> Callable[[str], Any]:
            def validate(x: str):
                v = convert(x)
                if v < 0:
                    logger.warning(f"{env_key}={v} out of range, clamped to 0 (valid: 0+)")
                    return convert("0")
                return v
            return validate

        env_map = {
            "QUEUE_PAGE_SIZE": ("queue_page_size", int),
            "INACTIVITY_TIMEOUT": ("inactivity_timeout", non_negative("INACTIVITY_TIMEOUT")),
            "MAX_TRACK_HOURS": ("max_track_hours", non_negative("MAX_TRACK_HOURS")),
            "PREFETCH_WINDOW": ("prefetch.window", non_negative("PREFETCH_WINDOW")),
            "PREFETCH_WORKERS": ("prefetch.workers", non_negative("PREFETCH_WORKERS")),
            "TICK_INTERVAL": ("playback.tick_interval", non_negative("TICK_INTERVAL", float)),
            "DRAIN_DELAY": ("playback.drain_delay", non_negative("DRAIN_DELAY", float)),
            "OCCUPANCY_CHECK_INTERVAL": (
                "playback.occupancy_check_interval", non_negative("OCCUPANCY_CHECK_INTERVAL", float)
            ),
            "STUCK_THRESHOLD": ("playback.stuck_threshold", non_negative("STUCK_THRESHOLD", float)),
            "PLAY_TIMEOUT": ("playback.play_timeout", non_negative("PLAY_TIMEOUT", float)),
            "HTTP_TIMEOUT": ("resolver.http_timeout", non_negative("HTTP_TIMEOUT", float)),
            "MAX_DOWNLOAD_MB": ("resolver.max_download_mb", non_negative("MAX_DOWNLOAD_MB")),
            "BRIEF_AUTO_DELETE": ("ui.brief_auto_delete", non_negative("BRIEF_AUTO_DELETE")),
            "LOG_LEVEL": ("logging.level", str),
        }

        for env_key, (setting_key, converter) in env_map.items():
            if value := os.getenv(env_key):
                try:
                    converted = converter(value)
                    if "." in setting_key:
                        parts = setting_key.split(".")
                        target = self.settings
                        for part in parts[:-1]:
                            target = target.setdefault(part, {})
                            if not isinstance(target, dict):
                                # Corrupted YAML: expected dict but got scalar
                                logger.warning(f"invalid config structure for {setting_key}")
                                break
                        else:
                            target[parts[-1]] = converted
                    else:
                        self.settings[setting_key] = converted
                    logger.debug(f"{env_key} overrides {setting_key}")
                except (ValueError, TypeError) as e:
                    logger.warning(f"invalid env var {env_key}: {e}")

    def get(self, key: str, default=None) -> Any:
        """Get a top-level setting value."""
        return self.settings.get(key, default)

    def section(self, name: str) -> dict:
        """Get a nested settings section with any missing keys defaulted."""
        values = dict(DEFAULT_SETTINGS.get(name, {}))
        sect = self.settings.get(name)
        if isinstance(sect, dict):
            values.update(sect)
        return values

    def msg(self, key: str, **kwargs) -> str:
        """Get formatted message text from messages.yaml.

        Returns the key itself if the message is unknown, and the raw template
        if a placeholder is missing from ``kwargs``.
        """
        entry = self.messages.get(key, DEFAULT_MESSAGES.get(key, {}))
        template = entry.get("text", key) if isinstance(entry, dict) else entry
        try:
            return template.format(**kwargs)
        except KeyError:
            return template

    def is_enabled(self, key: str) -> bool:
        """Check if an unprompted notice should be sent."""
        entry = self.messages.get(key, DEFAULT_MESSAGES.get(key, {}))
        return entry.get("enabled", True) if isinstance(entry, dict) else True


def default_config_path() -> Path:
    _default_config = Path(__file__).parent.parent / "config"
    return Path(os.getenv("CONFIG_PATH") or str(_default_config))


def default_music_path() -> Path:
    return Path(os.getenv("MUSIC_PATH", "./music"))


async def validate_configuration() -> None:
    """Validate configuration before bot starts, exit on failure.

    Checks performed:
    - DISCORD_TOKEN is set and has valid format (3 dot-separated sections)
    - Music and config directories exist (creates if missing)

    Also warns (non-fatal) if GUILD_ID is not set. On failure logs every
    error and calls sys.exit(1).
    """
    errors = []

    token = os.getenv("DISCORD_TOKEN")
    if not token:
        errors.append("DISCORD_TOKEN not set - add it to .env or the environment")
    else:
        parts = token.strip().split(".")
        if len(parts) != 3:
            errors.append(
                "DISCORD_TOKEN format appears invalid.\n"
                "Token should have three dot-separated sections.\n"
                "Get a fresh token from: https://discord.com/developers/applications"
            )
        elif any(not part for part in parts):
            errors.append(
                "DISCORD_TOKEN has empty sections.\n"
                "Get a fresh token from: https://discord.com/developers/applications"
            )

    if not os.getenv("GUILD_ID"):
        logger.warning("GUILD_ID not set - commands may take up to 1 hour to show up")

    for label, path in (("music", default_music_path()), ("config", default_config_path())):
        if path.exists():
            continue
        try:
            path.mkdir(parents=True)
            logger.warning(f"created missing {label} directory: {path}")
        except OSError as e:
            errors.append(f"cannot create {label} directory {path}: {e}")

    if errors:
        for error in errors:
            logger.error(error)
        sys.exit(1)
