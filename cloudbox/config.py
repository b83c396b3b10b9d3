"""
Cloudbox configuration - single-owner server settings
"""
from pydantic_settings import BaseSettings
from functools import lru_cache
from pathlib import Path
from typing import Optional


def _expand(path: str) -> Path:
    return Path(path).expanduser()


class Settings(BaseSettings):
    # Storage
    data_dir: str = "~/cloudbox-data"  # Live user files (files/, photos/, videos/, ...)
    state_dir: str = "~/.cloudbox"  # Database, JWT secret
    database_url: Optional[str] = None  # Defaults to SQLite inside state_dir

    # Server
    host: str = "127.0.0.1"  # Localhost only for security
    port: int = 8790
    debug: bool = False

    # Sessions
    jwt_expiration_hours: int = 24 * 30
    max_sessions: int = 4  # Oldest sessions are pruned beyond this

    # Transfer
    activity_log_export_limit: int = 2000
    min_password_length: int = 8

    class Config:
        env_file = ".env"
        env_file_encoding = "utf-8"
        env_prefix = "CLOUDBOX_"


@lru_cache()
def get_settings() -> Settings:
    return Settings()


def get_data_dir() -> Path:
    """Get the live data directory (the tree that gets transferred)"""
    data_dir = _expand(get_settings().data_dir)
    data_dir.mkdir(parents=True, exist_ok=True)
    return data_dir


def get_state_dir() -> Path:
    """Get the server state directory"""
    state_dir = _expand(get_settings().state_dir)
    state_dir.mkdir(parents=True, exist_ok=True)
    return state_dir


def get_database_url() -> str:
    """Get database URL, falling back to SQLite in the state directory"""
    settings = get_settings()
    if settings.database_url:
        return settings.database_url
    return f"sqlite+aiosqlite:///{get_state_dir() / 'cloudbox.db'}"
