from pathlib import Path

import pytest

from oae_messaging.config import get_settings
from oae_messaging.messaging import MessagingService
from oae_messaging.paths import PathLayout
from oae_messaging.personal import ProfileStore
from oae_messaging.serializer import MessageSearchResultProcessor
from oae_messaging.store import MemorySession


@pytest.fixture
def isolated_env(tmp_path, monkeypatch):
    """Provide an isolated archive root for tests and reset caches."""
    storage_root: Path = tmp_path / "archive"
    monkeypatch.setenv("STORAGE_ROOT", str(storage_root))
    monkeypatch.setenv("APP_ENVIRONMENT", "test")
    monkeypatch.setenv("LOG_LEVEL", "WARNING")
    monkeypatch.setenv("LOCK_TIMEOUT_SECONDS", "5")
    get_settings.cache_clear()
    try:
        yield storage_root
    finally:
        get_settings.cache_clear()


@pytest.fixture
def layout() -> PathLayout:
    return PathLayout()


@pytest.fixture
def messaging(layout) -> MessagingService:
    return MessagingService(layout)


@pytest.fixture
def profiles(layout) -> ProfileStore:
    return ProfileStore(layout)


@pytest.fixture
def processor(messaging, profiles) -> MessageSearchResultProcessor:
    return MessageSearchResultProcessor(messaging, profiles)


@pytest.fixture
def session() -> MemorySession:
    return MemorySession(user_id="alice")
