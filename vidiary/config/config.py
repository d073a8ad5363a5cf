import logging
import os
from functools import lru_cache
from pathlib import Path
from typing import Any, Dict, List, Optional

import toml
import yaml
from dotenv import dotenv_values
from pydantic import BaseModel, field_validator

logger = logging.getLogger(__name__)

SEED_FILE = Path(__file__).resolve().parent / "defaults.yaml"

# env var -> (config key, converter)
ENV_OVERRIDES = {
    "VIDIARY_DATA_DIR": ("data_dir", str),
    "VIDIARY_DB_FILENAME": ("db_filename", str),
    "VIDIARY_MAX_CACHE_MB": ("max_cache_bytes", lambda v: int(float(v) * 1024 * 1024)),
    "VIDIARY_MAX_SEGMENT_SECONDS": ("max_segment_seconds", float),
    "VIDIARY_RETRY_ATTEMPTS": ("retry_attempts", int),
    "VIDIARY_RETRY_DELAY_SEC": ("retry_delay_sec", float),
    "VIDIARY_LOG_FILE": ("log_file", str),
    "VIDIARY_LOG_LEVEL": ("log_level", str),
    "VIDIARY_LOG_CONSOLE": ("log_console", lambda v: v.strip().lower() in ("1", "true", "yes", "on")),
}


def get_default_config() -> Dict[str, Any]:
    """Get default configuration"""
    return {
        # Storage layout
        "data_dir": os.path.expanduser("~/.vidiary"),
        "db_filename": "videodiary.db",
        "videos_dir": "videos",
        "thumbnails_dir": "thumbnails",
        "metadata_dir": "metadata",

        # Limits
        "max_cache_bytes": 500 * 1024 * 1024,
        "max_segment_seconds": 60.0,

        # Lock / write retries
        "retry_attempts": 3,
        "retry_delay_sec": 1.0,

        # Logging
        "log_file": "logs/vidiary.log",
        "log_level": "INFO",
        "log_console": False,
    }


class StoreSettings(BaseModel):
    data_dir: str
    db_filename: str = "videodiary.db"
    videos_dir: str = "videos"
    thumbnails_dir: str = "thumbnails"
    metadata_dir: str = "metadata"
    max_cache_bytes: int = 500 * 1024 * 1024
    max_segment_seconds: float = 60.0
    retry_attempts: int = 3
    retry_delay_sec: float = 1.0
    log_file: Optional[str] = "logs/vidiary.log"
    log_level: str = "INFO"
    log_console: bool = False

    @field_validator("max_cache_bytes", "retry_attempts")
    @classmethod
    def _positive(cls, value: int) -> int:
        if value < 1:
            raise ValueError("must be positive")
        return value

    @field_validator("max_segment_seconds", "retry_delay_sec")
    @classmethod
    def _non_negative(cls, value: float) -> float:
        if value < 0:
            raise ValueError("must not be negative")
        return value

    @field_validator("log_level")
    @classmethod
    def _known_level(cls, value: str) -> str:
        level = value.upper()
        if not isinstance(logging.getLevelName(level), int):
            raise ValueError(f"unknown log level {value!r}")
        return level

    @property
    def data_path(self) -> Path:
        return Path(self.data_dir).expanduser()

    @property
    def db_path(self) -> Path:
        return self.data_path / self.db_filename

    @property
    def videos_path(self) -> Path:
        return self.data_path / self.videos_dir

    @property
    def thumbnails_path(self) -> Path:
        return self.data_path / self.thumbnails_dir

    @property
    def metadata_path(self) -> Path:
        return self.data_path / self.metadata_dir

    @property
    def log_path(self) -> Optional[Path]:
        if not self.log_file:
            return None
        path = Path(self.log_file).expanduser()
        return path if path.is_absolute() else self.data_path / path

    @property
    def log_level_value(self) -> int:
        return logging.getLevelName(self.log_level)


def _env_overrides(env_file: Optional[os.PathLike]) -> Dict[str, Any]:
    """
    Collect overrides from a .env file and the process environment.

    Process environment wins over the .env file.
    """
    env_vars: Dict[str, Optional[str]] = {}
    if env_file is not None and Path(env_file).exists():
        env_vars.update(dotenv_values(env_file))
    for name in ENV_OVERRIDES:
        if name in os.environ:
            env_vars[name] = os.environ[name]

    overrides: Dict[str, Any] = {}
    for name, raw in env_vars.items():
        if name not in ENV_OVERRIDES or raw is None or raw == "":
            continue
        key, convert = ENV_OVERRIDES[name]
        try:
            overrides[key] = convert(raw)
        except ValueError:
            logger.warning("Ignoring invalid value for %s: %r", name, raw)
    return overrides


def load_config(
    config_file: Optional[os.PathLike] = None,
    env_file: Optional[os.PathLike] = None,
) -> StoreSettings:
    """Load configuration from TOML file or create with defaults if it doesn't exist"""
    config = get_default_config()

    if config_file is not None:
        path = Path(config_file).expanduser()
        if not path.exists():
            path.parent.mkdir(parents=True, exist_ok=True)
            with open(path, "w", encoding="utf-8") as f:
                toml.dump(config, f)
        else:
            with open(path, "r", encoding="utf-8") as f:
                loaded = toml.load(f)
            # Merge with defaults to ensure all required fields exist
            for key, value in loaded.items():
                if key in config:
                    config[key] = value
                else:
                    logger.warning("Unknown config key %r in %s", key, path)

    config.update(_env_overrides(env_file))
    return StoreSettings(**config)


@lru_cache(maxsize=1)
def load_seed_data() -> Dict[str, List[Dict[str, Any]]]:
    """Default categories and built-in memory types."""
    with open(SEED_FILE, "r", encoding="utf-8") as f:
        data = yaml.safe_load(f) or {}
    return {
        "categories": list(data.get("categories") or []),
        "memory_types": list(data.get("memory_types") or []),
    }
