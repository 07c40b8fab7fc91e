from pydantic_settings import BaseSettings
import os
import logging
from pathlib import Path

# Set up logging
logger = logging.getLogger(__name__)

# Config directory location (database file lives here)
CONFIG_DIR = Path(os.environ.get("CONFIG_DIR", "/config"))

VALID_LOG_LEVELS = ("DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL")


class Settings(BaseSettings):
    """App settings from environment (for container config)."""
    config_dir: str = "/config"
    # Backend log level: DEBUG, INFO, WARNING, ERROR, CRITICAL
    log_level: str = "INFO"
    # Non-terminal jobs whose last update is older than this are reapable
    stuck_job_timeout_minutes: int = 5
    # Timeout for playlist and provider API requests
    http_timeout_seconds: float = 30.0
    # Program guide files can be large, so they get a longer timeout
    epg_timeout_seconds: float = 300.0
    # Parallel get_live_streams requests per provider sync
    provider_max_concurrency: int = 3
    user_agent: str = "IPTV-Playlist-Manager/1.0"
    # Client-side job polling (sync_client)
    job_poll_interval_seconds: float = 2.0
    job_poll_max_wait_seconds: float = 600.0

    class Config:
        env_file = ".env"
        env_file_encoding = "utf-8"


# In-memory cache of settings
_cached_settings: Settings | None = None


def ensure_config_dir():
    """Ensure config directory exists."""
    CONFIG_DIR.mkdir(parents=True, exist_ok=True)
    logger.info(f"Ensured config directory exists: {CONFIG_DIR}")


def get_settings() -> Settings:
    """Get current settings, loading them from the environment on first use."""
    global _cached_settings

    if _cached_settings is None:
        _cached_settings = Settings()
        logger.debug(
            f"Loaded settings: log_level={_cached_settings.log_level}, "
            f"stuck_job_timeout_minutes={_cached_settings.stuck_job_timeout_minutes}"
        )
    return _cached_settings


def clear_settings_cache() -> None:
    """Clear the settings cache so the next get_settings() re-reads the environment."""
    global _cached_settings
    _cached_settings = None


def set_log_level(level: str) -> None:
    """Apply a log level to the root logger. Unknown levels fall back to INFO."""
    level = (level or "INFO").upper()
    if level not in VALID_LOG_LEVELS:
        logger.warning(f"Invalid log level '{level}', using INFO")
        level = "INFO"
    logging.getLogger().setLevel(getattr(logging, level))
    logger.info(f"Log level set to {level}")
