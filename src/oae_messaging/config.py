"""Application configuration loaded via python-decouple with typed helpers."""

from __future__ import annotations

from dataclasses import dataclass
from functools import lru_cache
from pathlib import Path
from typing import Final

from decouple import Config as DecoupleConfig, RepositoryEmpty, RepositoryEnv

_DOTENV_PATH: Final[Path] = Path(".env")
_decouple_config: Final[DecoupleConfig] = DecoupleConfig(
    RepositoryEnv(str(_DOTENV_PATH)) if _DOTENV_PATH.exists() else RepositoryEmpty()
)


@dataclass(slots=True, frozen=True)
class StorageSettings:
    """Filesystem/Git archive configuration."""

    root: str
    git_author_name: str
    git_author_email: str
    lock_timeout_seconds: float


@dataclass(slots=True, frozen=True)
class LayoutSettings:
    """Repository tree layout used for hashed path allocation."""

    private_root: str
    user_public_root: str
    group_public_root: str
    message_dir: str
    message_url_root: str
    user_hash_levels: int
    message_hash_levels: int


@dataclass(slots=True, frozen=True)
class Settings:
    """Top-level application settings."""

    environment: str
    storage: StorageSettings
    layout: LayoutSettings
    # Logging
    log_level: str
    log_json_enabled: bool


def _bool(value: str, *, default: bool) -> bool:
    normalized = value.strip().lower()
    if normalized in {"1", "true", "t", "yes", "y"}:
        return True
    if normalized in {"0", "false", "f", "no", "n"}:
        return False
    return default


def _int(value: str, *, default: int) -> int:
    try:
        return int(value)
    except (TypeError, ValueError):
        return default


def _float(value: str, *, default: float) -> float:
    try:
        return float(value)
    except (TypeError, ValueError):
        return default


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    """Return cached application settings."""
    environment = _decouple_config("APP_ENVIRONMENT", default="development")

    storage_settings = StorageSettings(
        root=_decouple_config("STORAGE_ROOT", default="./storage"),
        git_author_name=_decouple_config("GIT_AUTHOR_NAME", default="oae-messaging"),
        git_author_email=_decouple_config("GIT_AUTHOR_EMAIL", default="oae-messaging@example.com"),
        lock_timeout_seconds=_float(_decouple_config("LOCK_TIMEOUT_SECONDS", default="60"), default=60.0),
    )

    layout_settings = LayoutSettings(
        private_root=_decouple_config("PRIVATE_ROOT", default="/_private"),
        user_public_root=_decouple_config("USER_PUBLIC_ROOT", default="/_user/public"),
        group_public_root=_decouple_config("GROUP_PUBLIC_ROOT", default="/_group/public"),
        message_dir=_decouple_config("MESSAGE_DIR", default="messages"),
        message_url_root=_decouple_config("MESSAGE_URL_ROOT", default="/_user/message"),
        user_hash_levels=_int(_decouple_config("USER_HASH_LEVELS", default="3"), default=3),
        message_hash_levels=_int(_decouple_config("MESSAGE_HASH_LEVELS", default="4"), default=4),
    )

    return Settings(
        environment=environment,
        storage=storage_settings,
        layout=layout_settings,
        log_level=_decouple_config("LOG_LEVEL", default="INFO"),
        log_json_enabled=_bool(_decouple_config("LOG_JSON_ENABLED", default="false"), default=False),
    )


def clear_settings_cache() -> None:
    """Drop the cached settings so the next call re-reads the environment."""
    get_settings.cache_clear()
