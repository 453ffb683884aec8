"""Relational storage adapter (SQLAlchemy asyncio).

Records live in one ``api_keys`` row each, so the primary, secret and
owner indices are plain database indexes and every write updates all three
in one transaction. Rate limiting keeps a sliding log in
``api_key_rate_events``.

Consistency:
- Rate-limit checks lock the credential's ``api_keys`` row
  (``SELECT ... FOR UPDATE``) on databases that support it, which
  serializes concurrent checks across processes. SQLite has no row locks;
  there the adapter serializes checks per credential within the process
  and relies on SQLite's single-writer lock between processes.
- Rate events are only written for ids that have an ``api_keys`` row, and
  ``delete_key`` removes them in the same transaction as the row.
- ``touch_key`` updates the ``last_used_at`` column alone, so it cannot
  revert a concurrent update.
- ``create_schema`` creates missing tables; schema migrations are left to
  the deployment's own tooling.
"""

from __future__ import annotations

import logging
import time
from datetime import datetime
from typing import Any, Callable

from sqlalchemy import (
    JSON,
    BigInteger,
    Boolean,
    Column,
    DateTime,
    Integer,
    MetaData,
    String,
    Table,
    delete,
    insert,
    select,
    update,
)
from sqlalchemy.ext.asyncio import AsyncEngine, create_async_engine

from keygate.adapters.rate_limit.sliding_log import SlidingLogLimiter
from keygate.adapters.storage.base import AbstractStorageAdapter
from keygate.adapters.storage.locks import KeyedAsyncLock
from keygate.schemas.api_key import ApiKeyRecord, RateLimitConfig
from keygate.utils.datetime import epoch_ms

logger = logging.getLogger(__name__)

metadata_obj = MetaData()

api_keys_table = Table(
    "api_keys",
    metadata_obj,
    Column("id", String(36), primary_key=True),
    Column("secret", String(255), nullable=False, unique=True),
    Column("owner_id", String(255), nullable=False, index=True),
    Column("name", String(255), nullable=False),
    Column("permissions", JSON(none_as_null=True), nullable=False),
    Column("rate_limit", JSON(none_as_null=True), nullable=True),
    Column("is_active", Boolean, nullable=False, default=True),
    Column("created_at", DateTime(timezone=True), nullable=False),
    Column("last_used_at", DateTime(timezone=True), nullable=True),
    Column("expires_at", DateTime(timezone=True), nullable=True),
    Column("metadata", JSON(none_as_null=True), nullable=False),
)

rate_events_table = Table(
    "api_key_rate_events",
    metadata_obj,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("key_id", String(36), nullable=False, index=True),
    Column("requested_at_ms", BigInteger, nullable=False),
)


def _record_to_row(record: ApiKeyRecord) -> dict[str, Any]:
    return record.model_dump(mode="python")


def _row_to_record(row: Any) -> ApiKeyRecord:
    return ApiKeyRecord.model_validate(dict(row._mapping))


class SQLStorageAdapter(AbstractStorageAdapter):
    """Storage adapter over an ``AsyncEngine``."""

    def __init__(self, engine: AsyncEngine, *, clock: Callable[[], float] = time.time) -> None:
        self._engine = engine
        self._clock = clock
        self._locks = KeyedAsyncLock()

    @classmethod
    def from_url(cls, url: str, *, echo: bool = False, **kwargs: Any) -> "SQLStorageAdapter":
        """Build an adapter from an async database URL (e.g. ``sqlite+aiosqlite:///keys.db``)."""
        return cls(create_async_engine(url, echo=echo, future=True), **kwargs)

    async def create_schema(self) -> None:
        async with self._engine.begin() as conn:
            await conn.run_sync(metadata_obj.create_all)

    async def save_key(self, record: ApiKeyRecord) -> ApiKeyRecord:
        async with self._engine.begin() as conn:
            await conn.execute(insert(api_keys_table).values(**_record_to_row(record)))
        return record

    async def get_key_by_id(self, key_id: str) -> ApiKeyRecord | None:
        async with self._engine.connect() as conn:
            result = await conn.execute(select(api_keys_table).where(api_keys_table.c.id == key_id))
            row = result.first()
        return _row_to_record(row) if row else None

    async def get_key_by_value(self, secret: str) -> ApiKeyRecord | None:
        async with self._engine.connect() as conn:
            result = await conn.execute(select(api_keys_table).where(api_keys_table.c.secret == secret))
            row = result.first()
        return _row_to_record(row) if row else None

    async def get_keys_by_owner(self, owner_id: str) -> list[ApiKeyRecord]:
        async with self._engine.connect() as conn:
            result = await conn.execute(
                select(api_keys_table)
                .where(api_keys_table.c.owner_id == owner_id)
                .order_by(api_keys_table.c.created_at, api_keys_table.c.id)
            )
            rows = result.all()
        return [_row_to_record(row) for row in rows]

    async def update_key(self, key_id: str, record: ApiKeyRecord) -> ApiKeyRecord | None:
        values = _record_to_row(record)
        values.pop("id")
        async with self._engine.begin() as conn:
            result = await conn.execute(
                update(api_keys_table).where(api_keys_table.c.id == key_id).values(**values)
            )
        if result.rowcount == 0:
            return None
        return record

    async def touch_key(self, key_id: str, used_at: datetime) -> ApiKeyRecord | None:
        async with self._engine.begin() as conn:
            result = await conn.execute(
                update(api_keys_table).where(api_keys_table.c.id == key_id).values(last_used_at=used_at)
            )
            if result.rowcount == 0:
                return None
            row = (await conn.execute(select(api_keys_table).where(api_keys_table.c.id == key_id))).first()
        return _row_to_record(row) if row else None

    async def delete_key(self, key_id: str) -> bool:
        async with self._engine.begin() as conn:
            await conn.execute(delete(rate_events_table).where(rate_events_table.c.key_id == key_id))
            result = await conn.execute(delete(api_keys_table).where(api_keys_table.c.id == key_id))
        return result.rowcount > 0

    async def check_rate_limit(self, key_id: str, config: RateLimitConfig) -> bool:
        events = rate_events_table
        async with self._locks.hold(key_id):
            async with self._engine.begin() as conn:
                credential = await conn.execute(
                    select(api_keys_table.c.id).where(api_keys_table.c.id == key_id).with_for_update()
                )
                now_ms = epoch_ms(self._clock())
                if credential.first() is None:
                    # No credential row: answer from an empty log and record nothing.
                    decision, _ = SlidingLogLimiter.consume((), now_ms, config)
                else:
                    await conn.execute(
                        delete(events).where(
                            events.c.key_id == key_id,
                            events.c.requested_at_ms <= now_ms - config.window_ms,
                        )
                    )
                    result = await conn.execute(
                        select(events.c.requested_at_ms).where(events.c.key_id == key_id)
                    )
                    decision, _ = SlidingLogLimiter.consume(result.scalars().all(), now_ms, config)
                    if decision.allowed:
                        await conn.execute(insert(events).values(key_id=key_id, requested_at_ms=now_ms))

        if not decision.allowed:
            logger.debug(
                "rate_limit.denied",
                extra={"key_id": key_id, "limit": decision.limit, "retry_after_ms": decision.retry_after_ms},
            )
        return decision.allowed

    async def close(self) -> None:
        await self._engine.dispose()
