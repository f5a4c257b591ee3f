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
import copy
import os
import shutil
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
#   default_volume         - Initial volume for new rooms (0-150)
#   queue_display_size     - Tracks shown in /queue (1-50)
#   embed_color            - Embed accent color as hex integer (e.g., 0x5865F2)
#
# Audio Settings (audio.*):
#   max_queue_size         - Tracks a room may hold, including the current one (1-500)
#   max_song_duration      - Seconds; longer tracks play but are never cached
#   bitrate                - mp3 bitrate for downloads and filter output (e.g., "96K")
#
# Cache Settings (cache.*):
#   max_size_mb            - Artifact cache size bound
#   max_age_days           - Evict files not played for this long
#
# Query Cache Settings (query_cache.*):
#   ttl_days               - Forget search resolutions after this long
#
# Acquisition Settings (acquisition.*):
#   max_concurrent_jobs    - Parallel yt-dlp/ffmpeg jobs across all rooms (1-16)
#
# UI Settings (ui.*):
#   extended_auto_delete   - Seconds before auto-deleting embeds (0 = never)
#   brief_auto_delete      - Seconds before auto-deleting simple responses (0 = never)
#
# Logging Settings (logging.*):
#   level                  - Log verbosity: "minimal", "verbose", or "debug"
# =============================================================================

DEFAULT_SETTINGS = {
    "default_volume": 100,
    "queue_display_size": 15,
    "embed_color": 0x5865F2,
    "audio": {
        "max_queue_size": 50,
        "max_song_duration": 1800,  # 30 minutes
        "bitrate": "96K",
    },
    "cache": {
        "max_size_mb": 2048,
        "max_age_days": 7,
    },
    "query_cache": {
        "ttl_days": 30,
    },
    "acquisition": {
        "max_concurrent_jobs": 4,
    },
    # UI behavior
    "ui": {
        "extended_auto_delete": 90,  # seconds, 0 to disable
        "brief_auto_delete": 10,  # seconds, 0 to disable
    },
    # Logging (LOG_LEVEL env var overrides this)
    "logging": {
        "level": "verbose",  # minimal, verbose, debug
    },
}

# Ranged integers: (section or None, key) -> (min, max or None)
_RANGES = {
    (None, "default_volume"): (0, 150),
    (None, "queue_display_size"): (1, 50),
    ("audio", "max_queue_size"): (1, 500),
    ("audio", "max_song_duration"): (1, None),
    ("cache", "max_size_mb"): (1, None),
    ("cache", "max_age_days"): (1, None),
    ("query_cache", "ttl_days"): (1, None),
    ("acquisition", "max_concurrent_jobs"): (1, 16),
    ("ui", "extended_auto_delete"): (0, None),
    ("ui", "brief_auto_delete"): (0, None),
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
    "not_in_vc": {"text": "join a voice channel first", "enabled": True},
    "wrong_vc": {"text": "i'm playing in {channel}, come over there", "enabled": True},
    "need_vc_permissions": {"text": "i can't connect or speak in that channel", "enabled": True},
    "failed_join_vc": {"text": "couldn't join your channel", "enabled": True},

    # Permissions
    "no_permission": {"text": "that one's for server admins", "enabled": True},

    # Acquisition progress
    "acquire_searching": {"text": "🔍 searching for **{query}**...", "enabled": True},
    "acquire_cached": {"text": "📂 found it in the cache", "enabled": True},
    "acquire_downloading": {"text": "⏳ downloading...", "enabled": True},
    "acquire_filtering": {"text": "🎛️ applying filters...", "enabled": True},

    # Playback
    "nothing_playing": {"text": "nothing's playing", "enabled": True},
    "now_playing": {"text": "▶️ now playing **{title}** ({duration})", "enabled": True},
    "queued": {"text": "➕ queued **{title}** ({duration}), position {position}", "enabled": True},
    "paused": {"text": "⏸️ paused", "enabled": True},
    "resumed": {"text": "▶️ resumed", "enabled": True},
    "already_paused": {"text": "already paused", "enabled": True},
    "not_paused": {"text": "not paused", "enabled": True},
    "skipped": {"text": "⏭️ skipped", "enabled": True},
    "stopped": {"text": "⏹️ stopped and cleared the queue", "enabled": True},
    "room_closed": {"text": "playback was stopped, request dropped", "enabled": True},

    # Acquisition errors
    "song_not_found": {"text": "couldn't find **{query}**", "enabled": True},
    "download_failed": {"text": "couldn't download that one, try another link", "enabled": True},
    "queue_full": {"text": "queue is full ({max} tracks)", "enabled": True},

    # Queue
    "queue_empty": {"text": "queue is empty", "enabled": True},
    "shuffled": {"text": "🔀 shuffled {count} tracks", "enabled": True},
    "nothing_to_shuffle": {"text": "need at least two upcoming tracks to shuffle", "enabled": True},

    # Settings
    "volume_set": {"text": "🔊 volume set to {level}%", "enabled": True},
    "loop_on": {"text": "🔁 loop on", "enabled": True},
    "loop_off": {"text": "loop off", "enabled": True},

    # Filters
    "filter_unknown": {"text": "no filter called `{name}`", "enabled": True},
    "filter_unknown_suggest": {"text": "no filter called `{name}`, did you mean `{suggestion}`?", "enabled": True},
    "filter_already_active": {"text": "`{name}` is already on", "enabled": True},
    "filter_applied": {"text": "🎛️ applied `{name}`", "enabled": True},
    "filter_queued": {"text": "🎛️ `{name}` will apply to the next track", "enabled": True},
    "filter_failed": {"text": "couldn't apply filters to this track, playing it without them", "enabled": True},
    "filter_reacquire_failed": {"text": "couldn't re-download the track, filters unchanged", "enabled": True},
    "filters_cleared": {"text": "🎛️ filters cleared", "enabled": True},
    "no_active_filters": {"text": "no filters are on", "enabled": True},

    # Admin
    "cache_cleared": {"text": "🧹 removed {count} cached files", "enabled": True},
    "cache_clear_failed": {"text": "couldn't clear the cache, check the logs", "enabled": True},
    "cache_stats": {"text": "📦 {count} cached files, {size_mb:.1f} / {max_mb} MB", "enabled": True},

    # Errors
    "error_generic": {"text": "something broke, try again", "enabled": True},
    "music_unavailable": {"text": "music system's down", "enabled": True},
}


def deep_merge(user: dict, defaults: dict) -> dict:
    """Merge user config with defaults, preserving nested structure.

    User values override defaults. For nested dicts, merges recursively.
    Unknown keys (not in defaults) are logged as warnings and ignored.

    Args:
        user: User-provided config from YAML file
        defaults: Default values to use for missing keys

    Returns:
        Merged config dict with all default keys present
    """
    result = copy.deepcopy(defaults)
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


class ConfigManager:
    """Manages bot configuration from settings.yaml and messages.yaml.

    Loads configuration at startup with this priority (highest wins):
    1. DEFAULT_SETTINGS / DEFAULT_MESSAGES (built-in defaults)
    2. settings.yaml / messages.yaml (user customization)
    3. Environment variables (Docker/deployment override)

    Access patterns:
        config_manager.get("key")           # Get setting value
        config_manager.section("audio")     # Get nested section (always a dict)
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
        # Settings
        settings_path = self.config_path / "settings.yaml"
        self.settings = await asyncio.to_thread(
            load_yaml, settings_path, DEFAULT_SETTINGS
        )

        # Generate if missing
        if not settings_path.exists():
            header = "# Encore Settings\n# Edit these values to customize behavior\n\n"
            await asyncio.to_thread(save_yaml, settings_path, DEFAULT_SETTINGS, header)
            logger.debug(f"generated {settings_path.name}")

        # Messages
        messages_path = self.config_path / "messages.yaml"
        self.messages = await asyncio.to_thread(
            load_yaml, messages_path, DEFAULT_MESSAGES
        )

        if not messages_path.exists():
            header = "# Encore Responses\n# Reword or disable any reply here\n\n"
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
           for null top-level keys and null nested keys.
        2. Bounded integers: Clamps every entry in _RANGES (logs warning if clamped).
        3. Embed color: Coerces string hex values to int ("5865F2", "0x5865F2", "#5865F2").
        4. Bitrate: Must look like "96K".
        5. Log level: Must be minimal, verbose or debug.
        """
        # Restore defaults for null values and non-dict sections
        for key, default in DEFAULT_SETTINGS.items():
            value = self.settings.get(key)
            if value is None:
                self.settings[key] = default.copy() if isinstance(default, dict) else default
            elif isinstance(default, dict):
                if not isinstance(value, dict):
                    logger.warning(f"{key} should be a section, using defaults")
                    self.settings[key] = default.copy()
                    continue
                for sub_key, sub_default in default.items():
                    if value.get(sub_key) is None:
                        value[sub_key] = sub_default

        # Validate and clamp ranged integers
        for (section, key), (min_val, max_val) in _RANGES.items():
            target = self.settings[section] if section else self.settings
            defaults = DEFAULT_SETTINGS[section] if section else DEFAULT_SETTINGS
            name = f"{section}.{key}" if section else key
            value = target.get(key)
            try:
                v = int(value)
                if max_val is not None:
                    clamped = max(min_val, min(max_val, v))
                    range_str = f"{min_val}-{max_val}"
                else:
                    clamped = max(min_val, v)
                    range_str = f"{min_val}+"
                if clamped != v:
                    logger.warning(f"{name}={v} out of range, clamped to {clamped} (valid: {range_str})")
                target[key] = clamped
            except (ValueError, TypeError):
                logger.warning(f"{name}={value!r} invalid, using default")
                target[key] = defaults[key]

        # Validate embed color (coerce string hex to int)
        color = self.settings.get("embed_color")
        if not isinstance(color, int):
            try:
                self.settings["embed_color"] = _parse_hex(str(color))
            except (ValueError, TypeError):
                logger.warning(f"embed_color={color!r} invalid, using default")
                self.settings["embed_color"] = DEFAULT_SETTINGS["embed_color"]

        # Validate bitrate ("96K", "128k")
        audio = self.settings["audio"]
        bitrate = str(audio.get("bitrate", "")).strip().upper()
        if not (bitrate.endswith("K") and bitrate[:-1].isdigit()):
            logger.warning(f"audio.bitrate={audio.get('bitrate')!r} invalid, using default")
            bitrate = DEFAULT_SETTINGS["audio"]["bitrate"]
        audio["bitrate"] = bitrate

        # Validate log level
        logging_config = self.settings["logging"]
        level = str(logging_config.get("level", "")).lower()
        if level not in ("minimal", "verbose", "debug"):
            logger.warning(f"logging.level={logging_config.get('level')!r} invalid, using verbose")
            level = "verbose"
        logging_config["level"] = level

    def _apply_env_overrides(self) -> None:
        """Override settings with environment variables.

        Environment variables always win over YAML settings, enabling Docker users
        to configure the bot without editing files.

        The env_map dict maps ENV_VAR_NAME -> (setting_key, converter):
        - setting_key: Dot notation for nested keys (e.g., "cache.max_size_mb")
        - converter: Function to transform string value (int, str, hex parser)

        Invalid env var values are logged as warnings and ignored (setting unchanged).
        Range validation is left to _validate_settings.
        """
        env_map: dict[str, tuple[str, Callable[[str], Any]]] = {
            # Playback
            "DEFAULT_VOLUME": ("default_volume", int),
            "QUEUE_DISPLAY_SIZE": ("queue_display_size", int),
            "EMBED_COLOR": ("embed_color", _parse_hex),
            "LOG_LEVEL": ("logging.level", str),
            # Audio
            "MAX_QUEUE_SIZE": ("audio.max_queue_size", int),
            "MAX_SONG_DURATION": ("audio.max_song_duration", int),
            "AUDIO_BITRATE": ("audio.bitrate", str),
            # Caches
            "CACHE_MAX_SIZE_MB": ("cache.max_size_mb", int),
            "CACHE_MAX_AGE_DAYS": ("cache.max_age_days", int),
            "QUERY_CACHE_TTL_DAYS": ("query_cache.ttl_days", int),
            # Acquisition
            "MAX_CONCURRENT_JOBS": ("acquisition.max_concurrent_jobs", int),
            # UI timeouts
            "EXTENDED_AUTO_DELETE": ("ui.extended_auto_delete", int),
            "BRIEF_AUTO_DELETE": ("ui.brief_auto_delete", int),
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

    def get(self, key: str, default=None) -> Any:
        """Get a top-level setting value (e.g., "default_volume", "audio")."""
        return self.settings.get(key, default)

    def section(self, name: str) -> dict:
        """Get a nested settings section, falling back to its defaults."""
        value = self.settings.get(name)
        return value if isinstance(value, dict) else dict(DEFAULT_SETTINGS.get(name, {}))

    def msg(self, key: str, **kwargs) -> str:
        """Get formatted message text from messages.yaml.

        Returns the key itself if the message is not defined anywhere.
        """
        entry = self.messages.get(key, DEFAULT_MESSAGES.get(key, {}))
        template = entry.get("text", key) if isinstance(entry, dict) else entry
        try:
            return template.format(**kwargs)
        except (KeyError, IndexError, ValueError):
            return template

    def is_enabled(self, key: str) -> bool:
        """Check if a message should be shown (False means acknowledge silently)."""
        entry = self.messages.get(key, DEFAULT_MESSAGES.get(key, {}))
        return entry.get("enabled", True) if isinstance(entry, dict) else True


def _parse_hex(value: str) -> int:
    """Parse "5865F2", "0x5865F2" or "#5865F2" into an int."""
    value = value.strip().lstrip("#").removeprefix("0x").removeprefix("0X")
    return int(value, 16)


def resolve_paths() -> tuple[Path, Path]:
    """Return (config_path, data_path) from CONFIG_PATH / DATA_PATH or repo defaults."""
    root = Path(__file__).parent.parent
    config_path = Path(os.getenv("CONFIG_PATH") or str(root / "config"))
    data_path = Path(os.getenv("DATA_PATH") or str(root / "data"))
    return config_path, data_path


def validate_configuration() -> None:
    """Validate configuration before bot starts, exit on failure.

    Called in main() before bot.start(). This is a pre-flight check to catch
    common configuration errors before the bot tries to connect.

    Checks performed:
    - DISCORD_TOKEN is set and has valid format (3 dot-separated sections)
    - Config and data directories exist (creates if missing)
    - ffmpeg is on PATH (needed by yt-dlp, filters and voice playback)

    Also warns (non-fatal) if GUILD_ID is not set.

    On failure: Logs all errors and calls sys.exit(1).
    """
    errors = []

    # Check required env vars with format validation
    token = os.getenv("DISCORD_TOKEN")
    if not token:
        errors.append("DISCORD_TOKEN not set - add it to .env or your container environment")
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

    # Warn if GUILD_ID not set (not an error - bot works without it)
    if not os.getenv("GUILD_ID"):
        logger.warning("GUILD_ID not set - commands may take up to 1 hour to show up")

    # Ensure config and data directories exist
    config_path, data_path = resolve_paths()
    for label, path in (("config", config_path), ("data", data_path)):
        if not path.exists():
            try:
                path.mkdir(parents=True)
                logger.warning(f"created missing {label} directory: {path}")
            except OSError as e:
                errors.append(f"cannot create {label} directory {path}: {e}")

    # ffmpeg is required for downloads, filters and playback
    ffmpeg = shutil.which("ffmpeg")
    if not ffmpeg:
        errors.append("ffmpeg not found on PATH - install it (https://ffmpeg.org/download.html)")
    else:
        logger.debug(f"ffmpeg found at {ffmpeg}")

    # Log all validation errors and exit if any found
    if errors:
        for error in errors:
            logger.error(error)
        sys.exit(1)
