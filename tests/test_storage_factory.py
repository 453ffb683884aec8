"""Tests for settings parsing and the storage adapter factory."""

from __future__ import annotations

import pytest

from keygate.adapters.rate_limit import RateLimitStrategy
from keygate.adapters.storage import (
    InMemoryStorageAdapter,
    KVStorageAdapter,
    RedisStorageAdapter,
    SQLStorageAdapter,
)
from keygate.adapters.storage.factory import create_storage_adapter
from keygate.core.config import AuthSettings, KeySettings, StorageSettings
from keygate.core.errors import ValidationAppError
from keygate.schemas.api_key import RateLimitConfig


def test_memory_backend_is_default():
    assert isinstance(create_storage_adapter(StorageSettings()), InMemoryStorageAdapter)


def test_kv_backend(tmp_path):
    adapter = create_storage_adapter(StorageSettings(backend="kv", kv_path=str(tmp_path / "keys")))

    assert isinstance(adapter, KVStorageAdapter)


def test_backend_name_is_case_insensitive():
    assert isinstance(create_storage_adapter(StorageSettings(backend="MEMORY")), InMemoryStorageAdapter)


def test_redis_backend_requires_url():
    with pytest.raises(ValidationAppError) as exc_info:
        create_storage_adapter(StorageSettings(backend="redis"))

    assert exc_info.value.code == "storage_missing_redis_url"


def test_redis_backend_from_url():
    adapter = create_storage_adapter(
        StorageSettings(
            backend="redis",
            redis_url="redis://localhost:6379/0",
            rate_limit_strategy="fixed_bucket",
        )
    )

    assert isinstance(adapter, RedisStorageAdapter)


def test_sql_backend_requires_url():
    with pytest.raises(ValidationAppError) as exc_info:
        create_storage_adapter(StorageSettings(backend="sql"))

    assert exc_info.value.code == "storage_missing_database_url"


def test_sql_backend_from_url(tmp_path):
    adapter = create_storage_adapter(
        StorageSettings(backend="sql", database_url=f"sqlite+aiosqlite:///{tmp_path / 'keys.sqlite'}")
    )

    assert isinstance(adapter, SQLStorageAdapter)


def test_unknown_backend():
    with pytest.raises(ValidationAppError) as exc_info:
        create_storage_adapter(StorageSettings(backend="etcd"))

    assert exc_info.value.code == "storage_unknown_backend"
    assert exc_info.value.details == {"backend": "etcd"}


def test_settings_read_from_environment(monkeypatch):
    monkeypatch.setenv("KEYS_PREFIX", "sk_live_")
    monkeypatch.setenv("KEYS_RATE_LIMIT_WINDOW_MS", "1000")
    monkeypatch.setenv("KEYS_RATE_LIMIT_MAX_REQUESTS", "5")
    monkeypatch.setenv("STORAGE_BACKEND", "redis")
    monkeypatch.setenv("STORAGE_RATE_LIMIT_STRATEGY", "fixed_bucket")
    monkeypatch.setenv("AUTH_HEADER_NAME", "X-Service-Key")

    keys = KeySettings()
    storage = StorageSettings()

    assert keys.prefix == "sk_live_"
    assert keys.default_rate_limit == RateLimitConfig(window_ms=1000, max_requests=5)
    assert storage.backend == "redis"
    assert storage.rate_limit_strategy is RateLimitStrategy.FIXED_BUCKET
    assert AuthSettings().header_name == "X-Service-Key"


def test_invalid_key_length_is_rejected(monkeypatch):
    monkeypatch.setenv("KEYS_KEY_LENGTH", "0")

    with pytest.raises(ValueError):
        KeySettings()
