"""Key-value storage adapter.

Works over any namespace offering async ``get``/``put``/``delete`` of
string values, the shape exposed by hosted KV products. ``DbmNamespace``
is the bundled local durable implementation.

Consistency:
- The adapter issues several independent writes per operation (record,
  secret index, owner index). A KV store has no multi-key transactions, so
  a reader on another node may briefly observe a partial update, and a
  hosted KV namespace may be only eventually consistent: a ``save_key``
  followed by a ``get_key_by_id`` served by a different node is not
  guaranteed to see the write.
- Writes are ordered so that indices never point at a missing record
  (record first on save, record last on delete), and lookups tolerate
  dangling index entries.
- Records, owner lists and rate-limit logs are read-modify-write. They
  are serialized per key within one process, so an update, a delete and a
  ``last_used_at`` stamp on the same id never interleave. Writers in other
  processes are not covered and can lose updates or recreate a deleted
  record. Use the redis or sql backend when several processes share one
  store.
- Rate-limit logs are kept only while the credential record exists.
"""

from __future__ import annotations

import asyncio
import dbm
import json
import logging
import time
from concurrent.futures import ThreadPoolExecutor
from datetime import datetime
from pathlib import Path
from typing import Any, Callable, Protocol

from keygate.adapters.rate_limit.sliding_log import SlidingLogLimiter
from keygate.adapters.storage.base import AbstractStorageAdapter
from keygate.adapters.storage.locks import KeyedAsyncLock
from keygate.schemas.api_key import ApiKeyRecord, RateLimitConfig
from keygate.utils.datetime import epoch_ms

logger = logging.getLogger(__name__)


class KVNamespace(Protocol):
    """Minimal async string key-value store."""

    async def get(self, key: str) -> str | None: ...

    async def put(self, key: str, value: str) -> None: ...

    async def delete(self, key: str) -> None: ...


class DbmNamespace:
    """Durable local KV namespace backed by the standard ``dbm`` module.

    All dbm calls run on one dedicated worker thread: some dbm flavours
    (sqlite3 in particular) refuse to be used from a thread other than the
    one that opened them, and none of them are safe for concurrent access.
    """

    def __init__(self, path: str | Path) -> None:
        self._path = Path(path)
        self._executor = ThreadPoolExecutor(max_workers=1, thread_name_prefix="keygate-dbm")
        self._db: Any = None

    def _ensure_open(self) -> Any:
        if self._db is None:
            self._path.parent.mkdir(parents=True, exist_ok=True)
            self._db = dbm.open(str(self._path), "c")
        return self._db

    def _sync(self) -> None:
        sync = getattr(self._db, "sync", None)
        if sync is not None:
            sync()

    def _get(self, key: str) -> str | None:
        db = self._ensure_open()
        try:
            return db[key.encode()].decode()
        except KeyError:
            return None

    def _put(self, key: str, value: str) -> None:
        db = self._ensure_open()
        db[key.encode()] = value.encode()
        self._sync()

    def _delete(self, key: str) -> None:
        db = self._ensure_open()
        try:
            del db[key.encode()]
        except KeyError:
            return
        self._sync()

    def _close(self) -> None:
        if self._db is not None:
            self._db.close()
            self._db = None

    async def _run(self, fn: Callable[..., Any], *args: Any) -> Any:
        loop = asyncio.get_running_loop()
        return await loop.run_in_executor(self._executor, fn, *args)

    async def get(self, key: str) -> str | None:
        return await self._run(self._get, key)

    async def put(self, key: str, value: str) -> None:
        await self._run(self._put, key, value)

    async def delete(self, key: str) -> None:
        await self._run(self._delete, key)

    async def close(self) -> None:
        await self._run(self._close)
        self._executor.shutdown(wait=True)


def normalize_namespace(prefix: str) -> str:
    """Ensure a namespace prefix ends with ``:``."""
    return prefix if prefix.endswith(":") else f"{prefix}:"


class KVStorageAdapter(AbstractStorageAdapter):
    """Storage adapter over a ``KVNamespace``.

    Key layout (``ns`` defaults to ``apikey:``)::

        {ns}id:{id}           -> record JSON
        {ns}value:{secret}    -> id
        {ns}owner:{owner_id}  -> JSON list of ids
        {ns}rate:{id}         -> JSON list of admitted timestamps (ms)
    """

    def __init__(
        self,
        kv: KVNamespace,
        namespace: str = "apikey:",
        *,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self._kv = kv
        self._ns = normalize_namespace(namespace)
        self._clock = clock
        self._locks = KeyedAsyncLock()

    def _id_key(self, key_id: str) -> str:
        return f"{self._ns}id:{key_id}"

    def _value_key(self, secret: str) -> str:
        return f"{self._ns}value:{secret}"

    def _owner_key(self, owner_id: str) -> str:
        return f"{self._ns}owner:{owner_id}"

    def _rate_key(self, key_id: str) -> str:
        return f"{self._ns}rate:{key_id}"

    async def _read_owner_ids(self, owner_id: str) -> list[str]:
        raw = await self._kv.get(self._owner_key(owner_id))
        return json.loads(raw) if raw else []

    async def _add_to_owner(self, owner_id: str, key_id: str) -> None:
        owner_key = self._owner_key(owner_id)
        async with self._locks.hold(owner_key):
            ids = await self._read_owner_ids(owner_id)
            if key_id not in ids:
                ids.append(key_id)
                await self._kv.put(owner_key, json.dumps(ids))

    async def _remove_from_owner(self, owner_id: str, key_id: str) -> None:
        owner_key = self._owner_key(owner_id)
        async with self._locks.hold(owner_key):
            ids = await self._read_owner_ids(owner_id)
            if key_id not in ids:
                return
            ids.remove(key_id)
            if ids:
                await self._kv.put(owner_key, json.dumps(ids))
            else:
                await self._kv.delete(owner_key)

    async def save_key(self, record: ApiKeyRecord) -> ApiKeyRecord:
        await self._kv.put(self._id_key(record.id), record.model_dump_json())
        await self._kv.put(self._value_key(record.secret), record.id)
        await self._add_to_owner(record.owner_id, record.id)
        return record

    async def get_key_by_id(self, key_id: str) -> ApiKeyRecord | None:
        raw = await self._kv.get(self._id_key(key_id))
        return ApiKeyRecord.model_validate_json(raw) if raw else None

    async def get_key_by_value(self, secret: str) -> ApiKeyRecord | None:
        key_id = await self._kv.get(self._value_key(secret))
        if not key_id:
            return None
        record = await self.get_key_by_id(key_id)
        # A stale index entry must not resolve to a record with another secret.
        if record is None or record.secret != secret:
            return None
        return record

    async def get_keys_by_owner(self, owner_id: str) -> list[ApiKeyRecord]:
        ids = await self._read_owner_ids(owner_id)
        if not ids:
            return []
        records = await asyncio.gather(*(self.get_key_by_id(key_id) for key_id in ids))
        return [record for record in records if record is not None and record.owner_id == owner_id]

    async def update_key(self, key_id: str, record: ApiKeyRecord) -> ApiKeyRecord | None:
        async with self._locks.hold(self._id_key(key_id)):
            existing = await self.get_key_by_id(key_id)
            if existing is None:
                return None

            await self._kv.put(self._id_key(key_id), record.model_dump_json())

            if existing.secret != record.secret:
                await self._kv.delete(self._value_key(existing.secret))
                await self._kv.put(self._value_key(record.secret), key_id)

            if existing.owner_id != record.owner_id:
                await self._remove_from_owner(existing.owner_id, key_id)
                await self._add_to_owner(record.owner_id, key_id)

        return record

    async def touch_key(self, key_id: str, used_at: datetime) -> ApiKeyRecord | None:
        async with self._locks.hold(self._id_key(key_id)):
            existing = await self.get_key_by_id(key_id)
            if existing is None:
                return None
            stamped = existing.model_copy(update={"last_used_at": used_at})
            await self._kv.put(self._id_key(key_id), stamped.model_dump_json())
        return stamped

    async def delete_key(self, key_id: str) -> bool:
        async with self._locks.hold(self._id_key(key_id)):
            existing = await self.get_key_by_id(key_id)
            if existing is None:
                return False

            await self._kv.delete(self._value_key(existing.secret))
            await self._remove_from_owner(existing.owner_id, key_id)
            await self._kv.delete(self._id_key(key_id))
            # Rate log goes last; checks skip ids without a record.
            async with self._locks.hold(self._rate_key(key_id)):
                await self._kv.delete(self._rate_key(key_id))
        return True

    async def check_rate_limit(self, key_id: str, config: RateLimitConfig) -> bool:
        rate_key = self._rate_key(key_id)
        async with self._locks.hold(rate_key):
            now_ms = epoch_ms(self._clock())
            stored = await self._kv.get(self._id_key(key_id)) is not None
            raw = await self._kv.get(rate_key) if stored else None
            decision, log = SlidingLogLimiter.consume(json.loads(raw) if raw else [], now_ms, config)
            if stored and (decision.allowed or raw is not None):
                await self._kv.put(rate_key, json.dumps(log))

        if not decision.allowed:
            logger.debug(
                "rate_limit.denied",
                extra={"key_id": key_id, "limit": decision.limit, "retry_after_ms": decision.retry_after_ms},
            )
        return decision.allowed

    async def close(self) -> None:
        close = getattr(self._kv, "close", None)
        if close is not None:
            await close()
