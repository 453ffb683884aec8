"""In-process storage adapter.

Notes:
- Per-process only: each worker process holds its own keys and limits.
- Strictly consistent: every operation runs under one re-entrant lock, so
  index updates and rate-limit checks for a credential are serialized even
  when the adapter is shared across threads.
- Rate-limit logs exist only for stored credentials; checks against an
  unknown id are answered from an empty log and leave no state behind.
"""

from __future__ import annotations

import logging
import threading
import time
from datetime import datetime
from typing import Callable

from keygate.adapters.rate_limit.sliding_log import SlidingLogLimiter
from keygate.adapters.storage.base import AbstractStorageAdapter
from keygate.schemas.api_key import ApiKeyRecord, RateLimitConfig
from keygate.utils.datetime import epoch_ms

logger = logging.getLogger(__name__)


class InMemoryStorageAdapter(AbstractStorageAdapter):
    """Dict-backed adapter for single-process deployments and tests.

    Records are copied on the way in and out so callers can never mutate
    stored state behind the adapter's back.
    """

    def __init__(self, *, clock: Callable[[], float] = time.time) -> None:
        """Initialize empty indices.

        Args:
            clock: Time source returning UNIX time in seconds.
        """
        self._clock = clock
        self._lock = threading.RLock()
        self._keys_by_id: dict[str, ApiKeyRecord] = {}
        self._id_by_secret: dict[str, str] = {}
        self._ids_by_owner: dict[str, set[str]] = {}
        self._rate_logs: dict[str, list[int]] = {}

    def __repr__(self) -> str:  # pragma: no cover - representation only
        return f"InMemoryStorageAdapter(keys={len(self._keys_by_id)}, rate_states={len(self._rate_logs)})"

    def _index_owner(self, owner_id: str, key_id: str) -> None:
        self._ids_by_owner.setdefault(owner_id, set()).add(key_id)

    def _unindex_owner(self, owner_id: str, key_id: str) -> None:
        ids = self._ids_by_owner.get(owner_id)
        if ids is None:
            return
        ids.discard(key_id)
        if not ids:
            del self._ids_by_owner[owner_id]

    async def save_key(self, record: ApiKeyRecord) -> ApiKeyRecord:
        stored = record.model_copy(deep=True)
        with self._lock:
            self._keys_by_id[stored.id] = stored
            self._id_by_secret[stored.secret] = stored.id
            self._index_owner(stored.owner_id, stored.id)
        return record

    async def get_key_by_id(self, key_id: str) -> ApiKeyRecord | None:
        with self._lock:
            record = self._keys_by_id.get(key_id)
            return record.model_copy(deep=True) if record else None

    async def get_key_by_value(self, secret: str) -> ApiKeyRecord | None:
        with self._lock:
            key_id = self._id_by_secret.get(secret)
            if key_id is None:
                return None
            record = self._keys_by_id.get(key_id)
            return record.model_copy(deep=True) if record else None

    async def get_keys_by_owner(self, owner_id: str) -> list[ApiKeyRecord]:
        with self._lock:
            ids = self._ids_by_owner.get(owner_id, set())
            return [
                self._keys_by_id[key_id].model_copy(deep=True)
                for key_id in ids
                if key_id in self._keys_by_id
            ]

    async def update_key(self, key_id: str, record: ApiKeyRecord) -> ApiKeyRecord | None:
        stored = record.model_copy(deep=True)
        with self._lock:
            existing = self._keys_by_id.get(key_id)
            if existing is None:
                return None

            if existing.secret != stored.secret:
                self._id_by_secret.pop(existing.secret, None)
            self._id_by_secret[stored.secret] = key_id

            if existing.owner_id != stored.owner_id:
                self._unindex_owner(existing.owner_id, key_id)
            self._index_owner(stored.owner_id, key_id)

            self._keys_by_id[key_id] = stored
        return record

    async def touch_key(self, key_id: str, used_at: datetime) -> ApiKeyRecord | None:
        with self._lock:
            existing = self._keys_by_id.get(key_id)
            if existing is None:
                return None
            stamped = existing.model_copy(update={"last_used_at": used_at})
            self._keys_by_id[key_id] = stamped
            return stamped.model_copy(deep=True)

    async def delete_key(self, key_id: str) -> bool:
        with self._lock:
            existing = self._keys_by_id.pop(key_id, None)
            if existing is None:
                return False
            self._id_by_secret.pop(existing.secret, None)
            self._unindex_owner(existing.owner_id, key_id)
            self._rate_logs.pop(key_id, None)
        return True

    async def check_rate_limit(self, key_id: str, config: RateLimitConfig) -> bool:
        now_ms = epoch_ms(self._clock())
        with self._lock:
            decision, log = SlidingLogLimiter.consume(self._rate_logs.get(key_id, ()), now_ms, config)
            # Only stored credentials keep a log; delete_key drops it under this lock.
            if key_id in self._keys_by_id:
                self._rate_logs[key_id] = log
            else:
                self._rate_logs.pop(key_id, None)

        if not decision.allowed:
            logger.debug(
                "rate_limit.denied",
                extra={"key_id": key_id, "limit": decision.limit, "retry_after_ms": decision.retry_after_ms},
            )
        return decision.allowed

    async def clear(self) -> None:
        """Drop every record, index entry and rate-limit state."""
        with self._lock:
            self._keys_by_id.clear()
            self._id_by_secret.clear()
            self._ids_by_owner.clear()
            self._rate_logs.clear()

    async def close(self) -> None:
        return None
