"""Factory for building storage adapters from configuration."""

from __future__ import annotations

import logging

from keygate.adapters.storage.base import AbstractStorageAdapter
from keygate.adapters.storage.in_memory import InMemoryStorageAdapter
from keygate.adapters.storage.kv_store import DbmNamespace, KVStorageAdapter
from keygate.adapters.storage.redis_store import RedisStorageAdapter
from keygate.adapters.storage.sql_store import SQLStorageAdapter
from keygate.core.config import StorageSettings
from keygate.core.errors import ValidationAppError

logger = logging.getLogger(__name__)

SUPPORTED_BACKENDS = ("memory", "kv", "redis", "sql")


def create_storage_adapter(storage: StorageSettings) -> AbstractStorageAdapter:
    """Instantiate the storage adapter selected by ``storage.backend``.

    Each call returns a new adapter; the caller owns it and injects it into
    ``ApiKeyManager``. The sql backend does not create its tables here; call
    ``SQLStorageAdapter.create_schema()`` at startup when needed.

    Raises:
        ValidationAppError: If the backend is unknown or its settings are incomplete.
    """
    backend = storage.backend.lower()

    if backend == "memory":
        adapter: AbstractStorageAdapter = InMemoryStorageAdapter()

    elif backend == "kv":
        adapter = KVStorageAdapter(DbmNamespace(storage.kv_path), storage.namespace)

    elif backend == "redis":
        if not storage.redis_url:
            raise ValidationAppError(
                code="storage_missing_redis_url",
                message="Redis backend requires STORAGE_REDIS_URL environment variable",
                details={"backend": backend},
            )
        adapter = RedisStorageAdapter.from_url(
            storage.redis_url,
            storage.namespace,
            strategy=storage.rate_limit_strategy,
        )

    elif backend == "sql":
        if not storage.database_url:
            raise ValidationAppError(
                code="storage_missing_database_url",
                message="SQL backend requires STORAGE_DATABASE_URL environment variable",
                details={"backend": backend},
            )
        adapter = SQLStorageAdapter.from_url(storage.database_url)

    else:
        raise ValidationAppError(
            code="storage_unknown_backend",
            message=(
                f"Unknown storage backend: '{backend}'. "
                f"Supported backends: {', '.join(SUPPORTED_BACKENDS)}"
            ),
            details={"backend": backend},
        )

    logger.info("storage.adapter_created", extra={"backend": backend})
    return adapter
