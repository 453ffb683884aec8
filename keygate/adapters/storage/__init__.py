"""Storage adapters for API key records and rate-limit state.

Four independent backends implement ``AbstractStorageAdapter``:

- ``InMemoryStorageAdapter``: strict consistency, single process.
- ``KVStorageAdapter``: any async KV namespace (``DbmNamespace`` locally);
  eventually consistent on hosted KV products.
- ``RedisStorageAdapter``: shared state with server-side atomic rate limiting.
- ``SQLStorageAdapter``: relational store via SQLAlchemy asyncio.
"""

from keygate.adapters.storage.base import AbstractStorageAdapter
from keygate.adapters.storage.in_memory import InMemoryStorageAdapter
from keygate.adapters.storage.kv_store import DbmNamespace, KVNamespace, KVStorageAdapter
from keygate.adapters.storage.redis_store import RedisStorageAdapter
from keygate.adapters.storage.sql_store import SQLStorageAdapter

__all__ = [
    "AbstractStorageAdapter",
    "DbmNamespace",
    "InMemoryStorageAdapter",
    "KVNamespace",
    "KVStorageAdapter",
    "RedisStorageAdapter",
    "SQLStorageAdapter",
]
