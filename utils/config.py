# Copyright (C) 2026 grodz
#
# This file is part of Encore.
#
# Encore is free software: you can redistribute it and/or modify
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

"""Configuration management for Encore."""

import asyncio
import os
import shutil
import sys
import tempfile
from pathlib import Path
from typing import Any, Callable

import yaml
from loguru import logger

from systems.extractor import resolve_binary


# =============================================================================
# DEFAULT SETTINGS SCHEMA
# =============================================================================
# These defaults are used when settings.yaml is missing or incomplete.
# Environment variables can override any setting (see _apply_env_overrides).
#
# Playback Settings:
#   queue_display_size     - Upcoming tracks shown by /queue and the dashboard (1-50)
#   metadata_cache_ttl     - Seconds a title/ID lookup stays cached (1+)
#   probe_timeout          - Seconds the direct Opus stream gets to prove itself (1-60)
#   probe_bytes            - Bytes read while identifying a stream's container (4096+)
#
# Tool Settings (tools.*):
#   ytdlp_path             - yt-dlp binary (name on PATH, or path relative to the bot)
#   ffmpeg_path            - ffmpeg binary (same lookup rules)
#   warm_on_startup        - Run each tool once at startup so the first track starts fast
#
# Default Room (defaults.*):
#   guild_id               - Guild the dashboard controls (falls back to first GUILD_IDS entry)
#   voice_channel_id       - Voice channel the dashboard joins
#   text_channel_id        - Channel for announcements when no command channel is known
#
# Dashboard Settings (dashboard.*):
#   enabled                - Serve the HTTP status/control API
#   host / port            - Listen address (PORT env var overrides port)
#
# Announcements (announcements.*):
#   now_playing            - Post a "Now Playing" embed when a track starts
#   queued                 - Post a "Queued" embed when a track is added mid-playback
#
# Appearance:
#   embed_color            - Now Playing embed color as hex integer
#   queued_color           - Queued embed color as hex integer
#
# UI Settings (ui.*):
#   brief_auto_delete      - Seconds before auto-deleting simple responses (0 = never)
#
# Logging Settings (logging.*):
#   level                  - Log verbosity: "minimal", "verbose", or "debug"
# =============================================================================

DEFAULT_SETTINGS = {
    "queue_display_size": 10,
    "metadata_cache_ttl": 60,
    "probe_timeout": 5,
    "probe_bytes": 65536,
    "tools": {
        "ytdlp_path": "yt-dlp",
        "ffmpeg_path": "ffmpeg",
        "warm_on_startup": True,
    },
    "defaults": {
        "guild_id": None,
        "voice_channel_id": None,
        "text_channel_id": None,
    },
    "dashboard": {
        "enabled": True,
        "host": "0.0.0.0",
        "port": 3000,
    },
    "announcements": {
        "now_playing": True,
        "queued": True,
    },
    "embed_color": 0x5865F2,
    "queued_color": 0x2F3136,
    # UI behavior
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
# The respond() helper in ResponseMixin checks the enabled flag before sending.
# Disabled messages still acknowledge the interaction (defer + delete) to prevent
# Discord showing "interaction failed" - they just don't show text to the user.
# =============================================================================

DEFAULT_MESSAGES = {
    # Voice errors
    "not_in_vc": {"text": "You must be in a voice channel.", "enabled": True},
    "wrong_vc": {"text": "Bot is already connected elsewhere ({channel}).", "enabled": True},
    "channel_not_found": {"text": "Voice channel not found.", "enabled": True},
    "failed_join_vc": {"text": "Couldn't join that voice channel.", "enabled": True},

    # Permissions
    "no_permission": {"text": "Only DJs can do that.", "enabled": True},

    # Playback
    "nothing_playing": {"text": "Nothing is playing.", "enabled": True},
    "not_paused": {"text": "Not paused.", "enabled": True},
    "already_paused": {"text": "Already paused.", "enabled": True},
    "still_loading": {"text": "Still loading, try again in a moment.", "enabled": True},
    "now_starting": {"text": "▶️ Playing **{title}**.", "enabled": True},
    "queued": {"text": "Queued **{title}** (#{position}).", "enabled": True},
    "queued_next": {"text": "Queued **{title}** to play next.", "enabled": True},
    "skipped": {"text": "⏭️ Skipped **{title}**.", "enabled": True},
    "paused": {"text": "⏸️ Paused.", "enabled": True},
    "resumed": {"text": "▶️ Resumed.", "enabled": True},
    "stopped": {"text": "🛑 Stopped and cleared the queue.", "enabled": True},
    "left": {"text": "👋 Disconnected.", "enabled": True},

    # Lookup
    "track_load_failed": {"text": "Couldn't find or load that.", "enabled": True},
    "track_play_error": {"text": "❌ Couldn't play **{title}**, skipping.", "enabled": True},

    # Queue
    "queue_empty": {"text": "Nothing playing and nothing queued.", "enabled": True},

    # Errors
    "error_generic": {"text": "Something went wrong.", "enabled": True},
}


def deep_merge(user: dict, defaults: dict) -> dict:
    """Merge user config with defaults, preserving nested structure.

    User values override defaults. For nested dicts, merges recursively.
    Unknown keys (not in defaults) are logged as warnings and ignored.
    """
    result = {k: (v.copy() if isinstance(v, dict) else v) for k, v in defaults.items()}
    for key, value in user.items():
        if key in result and isinstance(result[key], dict) and isinstance(value, dict):
            result[key] = deep_merge(value, result[key])
        elif key in defaults:
            result[key] = value
        else:
            logger.warning(f"unknown config key: {key}")
    return result


def load_yaml(path: Path, defaults: dict) -> dict:
    """Load YAML file with defaults and error handling.

    If file doesn't exist or is invalid, returns defaults without error.
    Invalid YAML syntax is logged and defaults are used.
    """
    if not path.exists():
        return deep_merge({}, defaults)

    try:
        with open(path, 'r', encoding='utf-8') as f:
            user = yaml.safe_load(f) or {}

        if not isinstance(user, dict):
            logger.warning(f"{path.name} invalid, using defaults")
            return deep_merge({}, defaults)

        return deep_merge(user, defaults)

    except yaml.YAMLError:
        logger.opt(exception=True).error(f"failed to parse {path.name}")
        return deep_merge({}, defaults)


def save_yaml(path: Path, data: dict, header: str = "") -> None:
    """Save YAML atomically with optional header comment.

    Uses temp-file-then-rename pattern to prevent corruption if the bot
    crashes mid-write. Creates parent directories if they don't exist.
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
            yaml.dump(data, f, default_flow_style=False, sort_keys=False, allow_unicode=True)
        Path(temp_path).replace(path)
    except Exception:
        if temp_path:
            Path(temp_path).unlink(missing_ok=True)
        raise


def parse_id_list(raw: str | None) -> list[int]:
    """Parse a comma-separated list of Discord IDs ("123, 456"). Bad entries are skipped."""
    ids = []
    for part in (raw or "").split(","):
        part = part.strip()
        if not part:
            continue
        try:
            ids.append(int(part))
        except ValueError:
            logger.warning(f"ignoring invalid id: {part!r}")
    return ids


def _to_bool(x: str) -> bool:
    return x.strip().lower() == "true"


def _to_hex(x: Any) -> int:
    if isinstance(x, int):
        return x
    return int(str(x).strip().lstrip("#").removeprefix("0x").removeprefix("0X"), 16)


class ConfigManager:
    """Manages bot configuration from settings.yaml and messages.yaml.

    Loads configuration at startup with this priority (highest wins):
    1. DEFAULT_SETTINGS / DEFAULT_MESSAGES (built-in defaults)
    2. settings.yaml / messages.yaml (user customization)
    3. Environment variables (Docker/deployment override)

    Access patterns:
        config_manager.get("key")           # Get setting value
        config_manager.get("key", default)  # Get with fallback
        config_manager.msg("key", **vars)   # Get formatted message
        config_manager.is_enabled("key")    # Check if message should show

    Settings are validated after loading - invalid values are clamped or
    reset to defaults with a warning logged.

    Attributes:
        config_path: Directory containing settings.yaml and messages.yaml
        settings: Loaded settings dict (after validation)
        messages: Loaded messages dict
    """

    def __init__(self, config_path: Path) -> None:
        self.config_path = config_path
        self.settings: dict = deep_merge({}, DEFAULT_SETTINGS)
        self.messages: dict = deep_merge({}, DEFAULT_MESSAGES)

    async def load(self) -> None:
        """Load settings and messages from YAML, apply env overrides, validate.

        Generates missing config files with default values and header comments.
        """
        settings_path = self.config_path / "settings.yaml"
        self.settings = await asyncio.to_thread(load_yaml, settings_path, DEFAULT_SETTINGS)

        if not settings_path.exists():
            header = "# Encore Settings\n# Edit these values to customize behavior\n\n"
            await asyncio.to_thread(save_yaml, settings_path, DEFAULT_SETTINGS, header)
            logger.debug(f"generated {settings_path.name}")

        messages_path = self.config_path / "messages.yaml"
        self.messages = await asyncio.to_thread(load_yaml, messages_path, DEFAULT_MESSAGES)

        if not messages_path.exists():
            header = "# Encore Responses\n# Set enabled: false to acknowledge silently\n\n"
            await asyncio.to_thread(save_yaml, messages_path, DEFAULT_MESSAGES, header)
            logger.debug(f"generated {messages_path.name}")

        # Apply environment overrides and validate ranges
        self._apply_env_overrides()
        self._validate_settings()

        logger.debug("config loaded")

    def _validate_settings(self) -> None:
        """Validate and clamp settings after loading from all sources.

        Validation steps:
        1. Null-restore: YAML "key:" with no value becomes None. Restores defaults
           for null top-level keys and null nested keys (except defaults.*, where
           None means "not set").
        2. Bounded numbers: Clamps queue_display_size, metadata_cache_ttl,
           probe_timeout, probe_bytes and dashboard.port to valid ranges.
        3. Colors: Coerces string hex values to int ("5865F2", "0x5865F2", "#5865F2").
        4. Default room IDs: Coerces to int, None when unset or invalid.
        """
        for key in list(self.settings):
            if self.settings[key] is None and DEFAULT_SETTINGS.get(key) is not None:
                self.settings[key] = DEFAULT_SETTINGS[key]
        for section in ("tools", "dashboard", "announcements", "ui", "logging"):
            sect = self.settings.get(section)
            defaults = DEFAULT_SETTINGS[section]
            if not isinstance(sect, dict):
                logger.warning(f"{section} invalid, using defaults")
                self.settings[section] = dict(defaults)
                continue
            for key in list(sect):
                if sect[key] is None and key in defaults:
                    sect[key] = defaults[key]

        validations = {
            "queue_display_size": (1, 50),
            "metadata_cache_ttl": (1, None),
            "probe_timeout": (1, 60),
            "probe_bytes": (4096, None),
        }
        for key, (min_val, max_val) in validations.items():
            self.settings[key] = self._clamp(key, self.settings.get(key), min_val, max_val, DEFAULT_SETTINGS[key])

        dashboard = self.settings["dashboard"]
        dashboard["port"] = self._clamp(
            "dashboard.port", dashboard.get("port"), 1, 65535, DEFAULT_SETTINGS["dashboard"]["port"]
        )

        for key in ("embed_color", "queued_color"):
            value = self.settings.get(key)
            try:
                self.settings[key] = _to_hex(value)
            except (ValueError, TypeError):
                logger.warning(f"{key}={value!r} invalid, using default")
                self.settings[key] = DEFAULT_SETTINGS[key]

        room = self.settings.get("defaults")
        if not isinstance(room, dict):
            room = self.settings["defaults"] = dict(DEFAULT_SETTINGS["defaults"])
        for key in ("guild_id", "voice_channel_id", "text_channel_id"):
            value = room.get(key)
            if value in (None, ""):
                room[key] = None
                continue
            try:
                room[key] = int(value)
            except (ValueError, TypeError):
                logger.warning(f"defaults.{key}={value!r} invalid, ignoring")
                room[key] = None

    @staticmethod
    def _clamp(key: str, value: Any, min_val: int, max_val: int | None, default: Any) -> Any:
        try:
            v = int(value)
        except (ValueError, TypeError):
            logger.warning(f"{key}={value!r} invalid, using default")
            return default
        if max_val is not None:
            clamped = max(min_val, min(max_val, v))
            range_str = f"{min_val}-{max_val}"
        else:
            clamped = max(min_val, v)
            range_str = f"{min_val}+"
        if clamped != v:
            logger.warning(f"{key}={v} out of range, clamped to {clamped} (valid: {range_str})")
        return clamped

    def _apply_env_overrides(self) -> None:
        """Override settings with environment variables.

        The env_map dict maps ENV_VAR_NAME -> (setting_key, converter):
        - setting_key: Dot notation for nested keys (e.g., "tools.ytdlp_path")
        - converter: Function to transform string value (int, str, bool lambda, etc.)

        Range validation happens afterwards in _validate_settings.
        Invalid env var values are logged as warnings and ignored (setting unchanged).

        When no default guild is configured, the first entry of GUILD_IDS is used.
        """
        def non_negative(env_key: str) -> Callable[[str], int]:
            def validate(x: str) -> int:
                v = int(x)
                if v < 0:
                    logger.warning(f"{env_key}={v} out of range, clamped to 0 (valid: 0+)")
                    return 0
                return v
            return validate

        env_map = {
            # Playback
            "QUEUE_DISPLAY_SIZE": ("queue_display_size", int),
            "METADATA_CACHE_TTL": ("metadata_cache_ttl", int),
            "PROBE_TIMEOUT": ("probe_timeout", int),
            "PROBE_BYTES": ("probe_bytes", int),
            "LOG_LEVEL": ("logging.level", str),
            # Tools
            "YTDLP_PATH": ("tools.ytdlp_path", str),
            "FFMPEG_PATH": ("tools.ffmpeg_path", str),
            "WARM_BINARIES": ("tools.warm_on_startup", _to_bool),
            # Default room
            "DEFAULT_GUILD_ID": ("defaults.guild_id", int),
            "DEFAULT_VOICE_CHANNEL_ID": ("defaults.voice_channel_id", int),
            "DEFAULT_TEXT_CHANNEL_ID": ("defaults.text_channel_id", int),
            # Dashboard
            "DASHBOARD_ENABLED": ("dashboard.enabled", _to_bool),
            "DASHBOARD_HOST": ("dashboard.host", str),
            "PORT": ("dashboard.port", int),
            # Appearance
            "EMBED_COLOR": ("embed_color", _to_hex),
            # UI timeouts
            "BRIEF_AUTO_DELETE": ("ui.brief_auto_delete", non_negative("BRIEF_AUTO_DELETE")),
        }

        for env_key, (setting_key, converter) in env_map.items():
            if value := os.getenv(env_key):
                try:
                    converted = converter(value)
                    # Handle nested keys (e.g., "logging.level")
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

        room = self.settings.setdefault("defaults", {})
        if isinstance(room, dict) and not room.get("guild_id"):
            guild_ids = parse_id_list(os.getenv("GUILD_IDS"))
            if guild_ids:
                room["guild_id"] = guild_ids[0]

    def get(self, key: str, default=None) -> Any:
        """Get a setting value from settings.yaml.

        Args:
            key: Top-level setting key (e.g., "probe_timeout", "dashboard")
            default: Value to return if key not found
        """
        return self.settings.get(key, default)

    def msg(self, key: str, **kwargs) -> str:
        """Get formatted message text from messages.yaml.

        Returns the key itself if the message is not found, and the raw
        template if a format variable is missing.
        """
        entry = self.messages.get(key, DEFAULT_MESSAGES.get(key, {}))
        template = entry.get("text", key) if isinstance(entry, dict) else entry
        try:
            return template.format(**kwargs)
        except (KeyError, IndexError):
            return template

    def is_enabled(self, key: str) -> bool:
        """Check if a message should be shown to the user.

        When False, the respond() helper acknowledges the interaction silently
        without showing text (prevents "interaction failed" errors).
        """
        entry = self.messages.get(key, DEFAULT_MESSAGES.get(key, {}))
        return entry.get("enabled", True) if isinstance(entry, dict) else True

    @property
    def default_room(self) -> tuple[int | None, int | None]:
        """(guild_id, voice_channel_id) the dashboard controls."""
        room = self.get("defaults", {})
        return room.get("guild_id"), room.get("voice_channel_id")


def tool_available(name_or_path: str) -> bool:
    """True if the binary exists at the given path or on PATH."""
    resolved = resolve_binary(name_or_path)
    return Path(resolved).is_file() or shutil.which(resolved) is not None


def validate_configuration(config_path: Path | None = None) -> None:
    """Validate configuration before bot starts, exit on failure.

    Called in main() before bot.start(). This is a pre-flight check to catch
    common configuration errors before the bot tries to connect.

    Checks performed:
    - DISCORD_TOKEN is set and has valid format (3 dot-separated sections)
    - Config directory exists (creates if missing)
    - yt-dlp and ffmpeg can be found (YTDLP_PATH / FFMPEG_PATH or PATH)

    Also warns (non-fatal) if GUILD_IDS is not set.

    On failure: Logs all errors and calls sys.exit(1).
    """
    errors = []

    token = os.getenv("DISCORD_TOKEN")
    if not token:
        errors.append("DISCORD_TOKEN not set - add it to .env or the container environment")
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

    # Warn if GUILD_IDS not set (not an error - bot works without it)
    if not parse_id_list(os.getenv("GUILD_IDS")):
        logger.warning("GUILD_IDS not set - commands sync globally and may take up to 1 hour to show up")

    _default_config = Path(__file__).parent.parent / "config"
    config_path = config_path or Path(os.getenv("CONFIG_PATH") or str(_default_config))
    if not config_path.exists():
        try:
            config_path.mkdir(parents=True)
            logger.warning(f"created missing config directory: {config_path}")
        except OSError as e:
            errors.append(f"cannot create config directory {config_path}: {e}")

    for env_key, default in (("YTDLP_PATH", "yt-dlp"), ("FFMPEG_PATH", "ffmpeg")):
        tool = os.getenv(env_key) or default
        if not tool_available(tool):
            errors.append(f"{tool} not found - install it or set {env_key}")

    if errors:
        for error in errors:
            logger.error(error)
        sys.exit(1)
