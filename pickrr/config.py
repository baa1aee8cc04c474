"""
Configuration for Pickrr.

Process settings come from the environment (and an optional ``.env`` file)
through pydantic-settings. A small set of operator-editable values lives in
the settings table and falls back to the environment when unset.
"""

import logging
import os
from pathlib import Path
from typing import Dict, List, Optional

from pydantic_settings import BaseSettings

from .models import MediaKind

logger = logging.getLogger(__name__)


WEBHOOK_SECRET = "WEBHOOK_SECRET"
MOVIES_SAVE_PATH = "MOVIES_SAVE_PATH"
TV_SAVE_PATH = "TV_SAVE_PATH"

CONFIG_KEYS = (WEBHOOK_SECRET, MOVIES_SAVE_PATH, TV_SAVE_PATH)

DEFAULT_MOVIES_SAVE_PATH = "/downloads/movies"
DEFAULT_TV_SAVE_PATH = "/downloads/tv"


class Settings(BaseSettings):
    """Application settings loaded from environment."""

    # Request manager (Overseerr)
    overseerr_url: str = ""
    overseerr_api_key: str = ""

    # Download client (qBittorrent)
    qbit_url: str = ""
    qbit_username: str = ""
    qbit_password: str = ""
    qbit_session_ttl: float = 3600.0
    qbit_movie_category: str = "pickrr-movies"
    qbit_tv_category: str = "pickrr-tv"
    qbit_tag: str = "pickrr"

    # Library managers
    radarr_url: str = ""
    radarr_api_key: str = ""
    sonarr_url: str = ""
    sonarr_api_key: str = ""

    # Metadata provider (TMDB)
    tmdb_api_key: str = ""
    tmdb_base_url: str = "https://api.themoviedb.org/3"
    tmdb_image_base: str = "https://image.tmdb.org/t/p/w500"
    metadata_cache_ttl: float = 86400.0

    # Server settings
    host: str = "0.0.0.0"
    port: int = 8080

    # Persistence settings
    config_path: str = "/config"
    state_file: str = "pickrr.db"  # Filename only, will be joined with config_path

    # Webhook queue
    queue_max_attempts: int = 3
    queue_initial_delay: float = 5.0
    queue_max_delay: float = 300.0
    queue_poll_interval: float = 2.0

    # Reconciliation
    sync_max_pages: int = 10
    sync_page_size: int = 20

    # Completion poller
    completed_window_hours: float = 24.0

    health_check_timeout: float = 5.0

    # Logging settings
    log_level: str = "INFO"
    log_file: Optional[str] = None
    log_format: str = "text"  # "text" or "json"
    log_max_size_mb: int = 10
    log_backup_count: int = 5
    activity_log_size: int = 1000
    activity_log_max_entries: int = 10000  # persisted rows kept at startup

    class Config:
        env_file = ".env"
        env_file_encoding = "utf-8"

    @property
    def db_path(self) -> str:
        return str(Path(self.config_path) / self.state_file)


class ConfigStore:
    """
    Operator-editable configuration.

    Values stored in the settings table win; unset keys fall back to the
    process environment. Empty strings count as unset.
    """

    def __init__(self, persistence, environ: Optional[Dict[str, str]] = None):
        self.persistence = persistence
        self._environ = environ if environ is not None else os.environ

    async def get(self, key: str, default: Optional[str] = None) -> Optional[str]:
        value = await self.persistence.get_setting(key)
        if value:
            return value
        return self._environ.get(key) or default

    async def get_many(self, keys: List[str]) -> Dict[str, Optional[str]]:
        stored = await self.persistence.get_settings(list(keys))
        return {
            key: stored.get(key) or self._environ.get(key) or None
            for key in keys
        }

    async def set(self, key: str, value: str) -> None:
        await self.persistence.set_setting(key, value)
        logger.info(f"Configuration updated: {key}")

    async def save_path(self, media_kind) -> str:
        """Download directory for a media kind."""
        if MediaKind.parse(media_kind) == MediaKind.MOVIE:
            return await self.get(MOVIES_SAVE_PATH, DEFAULT_MOVIES_SAVE_PATH)
        return await self.get(TV_SAVE_PATH, DEFAULT_TV_SAVE_PATH)
