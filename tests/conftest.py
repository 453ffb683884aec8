"""Pytest configuration and fixtures shared across all test modules.

This file is automatically loaded by pytest before running any tests.
It pins APP_ENV to "testing" so no developer .env file leaks into the
settings, and provides storage adapters for every backend driven by a
controllable clock.
"""

import os

# CRITICAL: Set this before any imports that might load settings
os.environ["APP_ENV"] = "testing"
os.environ.setdefault("LOG_LEVEL", "DEBUG")

from datetime import UTC, datetime

import fakeredis
import pytest
import pytest_asyncio

from keygate.adapters.storage import (
    DbmNamespace,
    InMemoryStorageAdapter,
    KVStorageAdapter,
    RedisStorageAdapter,
    SQLStorageAdapter,
)
from keygate.services.key_manager import ApiKeyManager

BACKENDS = ["memory", "kv", "redis", "sql"]

START_MS = 1_800_000_000_000


class FakeClock:
    """Manually advanced clock shared by adapters (seconds) and the manager (datetime)."""

    def __init__(self, now_ms: int = START_MS) -> None:
        self.now_ms = now_ms

    def time(self) -> float:
        return self.now_ms / 1000

    def utcnow(self) -> datetime:
        return datetime.fromtimestamp(self.now_ms / 1000, UTC)

    def advance(self, *, ms: int = 0, seconds: int = 0) -> None:
        self.now_ms += seconds * 1000 + ms


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


async def build_adapter(backend: str, clock: FakeClock, tmp_path):
    if backend == "memory":
        return InMemoryStorageAdapter(clock=clock.time)
    if backend == "kv":
        return KVStorageAdapter(DbmNamespace(tmp_path / "kv" / "keys"), clock=clock.time)
    if backend == "redis":
        client = fakeredis.FakeAsyncRedis(server=fakeredis.FakeServer(), decode_responses=True)
        return RedisStorageAdapter(client, clock=clock.time)
    if backend == "sql":
        adapter = SQLStorageAdapter.from_url(
            f"sqlite+aiosqlite:///{tmp_path / 'keys.sqlite'}",
            clock=clock.time,
        )
        await adapter.create_schema()
        return adapter
    raise ValueError(backend)


@pytest_asyncio.fixture(params=BACKENDS)
async def adapter(request, clock, tmp_path):
    """One adapter per backend; contract tests run against all of them."""
    instance = await build_adapter(request.param, clock, tmp_path)
    yield instance
    await instance.close()


@pytest.fixture
def manager(adapter, clock) -> ApiKeyManager:
    return ApiKeyManager(adapter, clock=clock.utcnow)
