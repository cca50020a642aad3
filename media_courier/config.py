"""Configuration management for media-courier."""

import os
import sys
import tempfile
from pathlib import Path
from typing import Any, Optional

try:
    import yaml
except ImportError:
    print("Error: PyYAML not installed", file=sys.stderr)
    print("Install with: pip install pyyaml", file=sys.stderr)
    sys.exit(1)

from .errors import ConfigError

MB = 1024 * 1024

# Environment variable -> dotted config key
ENV_OVERRIDES = {
    "BOT_TOKEN": "bot.token",
    "MAX_FILE_SIZE": "limits.max_file_size",
    "MAX_DURATION": "limits.max_duration",
    "FETCH_TIMEOUT": "limits.fetch_timeout",
    "MAX_CONCURRENT_JOBS": "limits.max_concurrent_jobs",
    "FETCH_STRATEGY": "fetch.strategy",
    "TEMP_DIR": "temp_dir",
    "SESSION_TTL": "sessions.ttl",
    "LOG_LEVEL": "log_level",
}

FETCH_STRATEGIES = ("stream", "subprocess")


class Config:
    """media-courier configuration."""

    _instance = None

    def __new__(cls, config_path: Optional[Path] = None):
        """Singleton pattern for config."""
        if cls._instance is None:
            cls._instance = super().__new__(cls)
            cls._instance._initialized = False
        return cls._instance

    @classmethod
    def reset(cls):
        """Reset singleton for testing."""
        cls._instance = None

    def __init__(self, config_path: Optional[Path] = None):
        """Load configuration from YAML file and environment."""
        if self._initialized:
            return

        self.config_path = self._locate(config_path)
        self.config = self._load_config()
        self._initialized = True

    @staticmethod
    def _locate(config_path: Optional[Path]) -> Optional[Path]:
        if config_path:
            return Path(config_path)
        env_path = os.environ.get("MEDIA_COURIER_CONFIG")
        if env_path:
            return Path(env_path)
        default = Path.cwd() / "config.yaml"
        return default if default.exists() else None

    def _load_config(self) -> dict:
        """Load and parse config file, then apply environment overrides."""
        config: dict = {}
        if self.config_path is not None:
            if not self.config_path.exists():
                raise ConfigError(f"Configuration file not found: {self.config_path}")
            with open(self.config_path) as f:
                config = yaml.safe_load(f) or {}
            if not isinstance(config, dict):
                raise ConfigError(f"Configuration file must be a mapping: {self.config_path}")

        for env_name, key in ENV_OVERRIDES.items():
            value = os.environ.get(env_name)
            if value:
                self._set(config, key, value)

        # Expand home directory in paths
        self._expand_paths(config)
        return config

    @staticmethod
    def _set(config: dict, key: str, value: Any):
        keys = key.split(".")
        node = config
        for k in keys[:-1]:
            if not isinstance(node.get(k), dict):
                node[k] = {}
            node = node[k]
        node[keys[-1]] = value

    def _expand_paths(self, config: dict):
        """Expand ~ in path values."""
        for key, value in config.items():
            if isinstance(value, str) and value.startswith("~"):
                config[key] = os.path.expanduser(value)
            elif isinstance(value, dict):
                self._expand_paths(value)

    def get(self, key: str, default: Any = None) -> Any:
        """Get config value by dot-separated key."""
        keys = key.split(".")
        value = self.config

        for k in keys:
            if isinstance(value, dict) and k in value:
                value = value[k]
            else:
                return default

        return value

    def _number(self, key: str, default, cast=int, minimum=0):
        value = self.get(key, default)
        try:
            number = cast(value)
        except (TypeError, ValueError):
            raise ConfigError(f"{key} must be a number, got {value!r}")
        if number < minimum:
            raise ConfigError(f"{key} must be >= {minimum}, got {number}")
        return number

    @property
    def bot_token(self) -> str:
        """Get transport credential. Required to run the bot."""
        token = self.get("bot.token")
        if not token:
            raise ConfigError("BOT_TOKEN is not set (environment or bot.token in config.yaml)")
        return str(token)

    @property
    def temp_dir(self) -> Path:
        """Get root directory for per-job workspaces."""
        path = self.get("temp_dir")
        if path:
            return Path(path)
        return Path(tempfile.gettempdir()) / "media-courier"

    @property
    def max_file_size(self) -> int:
        """Get delivery size ceiling in bytes."""
        return self._number("limits.max_file_size", 50 * MB, minimum=1)

    @property
    def max_duration(self) -> int:
        """Get duration ceiling in seconds."""
        return self._number("limits.max_duration", 600, minimum=1)

    @property
    def fetch_timeout(self) -> float:
        """Get deadline for one fetch + transcode sequence."""
        return self._number("limits.fetch_timeout", 120, cast=float, minimum=1)

    @property
    def delivery_timeout(self) -> float:
        return self._number("limits.delivery_timeout", 300, cast=float, minimum=1)

    @property
    def max_concurrent_jobs(self) -> int:
        """Get global ceiling on simultaneous fetch jobs."""
        return self._number("limits.max_concurrent_jobs", 4, minimum=1)

    @property
    def min_audio_bytes(self) -> int:
        return self._number("limits.min_audio_bytes", 1024)

    @property
    def min_video_bytes(self) -> int:
        return self._number("limits.min_video_bytes", 10 * 1024)

    @property
    def fetch_strategy(self) -> str:
        """Get fetch strategy name (stream or subprocess)."""
        strategy = str(self.get("fetch.strategy", "stream")).lower()
        if strategy not in FETCH_STRATEGIES:
            raise ConfigError(
                f"fetch.strategy must be one of {', '.join(FETCH_STRATEGIES)}, got {strategy!r}"
            )
        return strategy

    @property
    def ytdlp_path(self) -> str:
        """Get yt-dlp executable path."""
        return self.get("fetch.ytdlp_path") or "yt-dlp"

    @property
    def ffmpeg_path(self) -> str:
        """Get ffmpeg executable path."""
        return self.get("fetch.ffmpeg_path") or "ffmpeg"

    @property
    def video_container(self) -> str:
        return str(self.get("video.container", "mp4")).lower()

    @property
    def audio_format(self) -> str:
        return str(self.get("audio.format", "mp3")).lower()

    @property
    def audio_bitrate(self) -> int:
        """Get audio encode bitrate in kbps."""
        return self._number("audio.bitrate", 192, minimum=32)

    @property
    def session_ttl(self) -> float:
        return self._number("sessions.ttl", 900, cast=float, minimum=1)

    @property
    def resolver_retries(self) -> int:
        return self._number("resolver.retries", 1)

    @property
    def resolver_timeout(self) -> float:
        """Get the overall deadline for one link lookup, retries included."""
        return self._number("resolver.timeout", 60, cast=float, minimum=1)

    @property
    def resolver_rate(self) -> float:
        return self._number("resolver.requests_per_second", 2.0, cast=float, minimum=0.01)

    @property
    def resolver_burst(self) -> int:
        return self._number("resolver.burst", 5, minimum=1)

    @property
    def log_level(self) -> str:
        return str(self.get("log_level", "INFO")).upper()

    def validate(self):
        """Read every typed setting so bad values fail at startup.

        Raises:
            ConfigError: On the first invalid value
        """
        for name in (
            "max_file_size",
            "max_duration",
            "fetch_timeout",
            "delivery_timeout",
            "max_concurrent_jobs",
            "min_audio_bytes",
            "min_video_bytes",
            "fetch_strategy",
            "audio_bitrate",
            "session_ttl",
            "resolver_retries",
            "resolver_timeout",
            "resolver_rate",
            "resolver_burst",
        ):
            getattr(self, name)
