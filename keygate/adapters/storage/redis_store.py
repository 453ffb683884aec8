"""Redis storage adapter.

Key layout (``ns`` defaults to ``apikey:``)::

    {ns}id:{id}                  -> record JSON (string)
    {ns}value:{secret}           -> id (string)
    {ns}owner:{owner_id}         -> set of ids
    {ns}rate:{id}                -> sorted set of admitted requests (sliding log)
    {ns}bucket:{id}:{bucket}     -> counter (fixed bucket, opt-in)

Consistency:
- Index writes for one operation run in a single MULTI/EXEC transaction, so
  other clients never observe a half-written record.
- Updates, ``last_used_at`` stamps and deletes WATCH the record key and
  retry when another client changed it, so a stamp never reverts an update
  and never recreates a deleted record.
- Rate limiting relies on Redis for serialization; no in-process locking is
  needed. The sliding log records the request and reads the pre-insert
  count in one transaction, then removes the entry again when it was not
  admitted. Concurrent requests can therefore be over-denied for the
  instant a rejected entry is still present, but never over-admitted.
- Rate keys carry a TTL of one window, so idle or unknown ids leave no state
  behind.
"""

from __future__ import annotations

import logging
import time
import uuid
from datetime import datetime
from typing import Any, Callable

from redis.asyncio import Redis
from redis.exceptions import WatchError

from keygate.adapters.rate_limit.base import RateLimitStrategy
from keygate.adapters.rate_limit.fixed_bucket import FixedBucketLimiter
from keygate.adapters.storage.base import AbstractStorageAdapter
from keygate.adapters.storage.kv_store import normalize_namespace
from keygate.schemas.api_key import ApiKeyRecord, RateLimitConfig
from keygate.utils.datetime import epoch_ms

logger = logging.getLogger(__name__)


def _decode(value: Any) -> str:
    return value.decode() if isinstance(value, bytes) else str(value)


class RedisStorageAdapter(AbstractStorageAdapter):
    """Storage adapter over ``redis.asyncio.Redis``."""

    def __init__(
        self,
        redis: Redis,
        namespace: str = "apikey:",
        *,
        strategy: RateLimitStrategy = RateLimitStrategy.SLIDING_LOG,
        clock: Callable[[], float] = time.time,
    ) -> None:
        """Wrap an existing client.

        Args:
            redis: Async Redis client (``decode_responses`` may be on or off).
            namespace: Prefix for every key this adapter writes.
            strategy: Rate limit algorithm. FIXED_BUCKET trades accuracy at
                bucket boundaries for a single INCR per check.
            clock: Time source returning UNIX time in seconds.
        """
        self._redis = redis
        self._ns = normalize_namespace(namespace)
        self._strategy = strategy
        self._clock = clock

    @classmethod
    def from_url(cls, url: str, namespace: str = "apikey:", **kwargs: Any) -> "RedisStorageAdapter":
        return cls(Redis.from_url(url, decode_responses=True), namespace, **kwargs)

    def _id_key(self, key_id: str) -> str:
        return f"{self._ns}id:{key_id}"

    def _value_key(self, secret: str) -> str:
        return f"{self._ns}value:{secret}"

    def _owner_key(self, owner_id: str) -> str:
        return f"{self._ns}owner:{owner_id}"

    def _rate_key(self, key_id: str) -> str:
        return f"{self._ns}rate:{key_id}"

    def _bucket_key(self, key_id: str, bucket: int | str) -> str:
        return f"{self._ns}bucket:{key_id}:{bucket}"

    async def save_key(self, record: ApiKeyRecord) -> ApiKeyRecord:
        async with self._redis.pipeline(transaction=True) as pipe:
            pipe.set(self._id_key(record.id), record.model_dump_json())
            pipe.set(self._value_key(record.secret), record.id)
            pipe.sadd(self._owner_key(record.owner_id), record.id)
            await pipe.execute()
        return record

    async def get_key_by_id(self, key_id: str) -> ApiKeyRecord | None:
        raw = await self._redis.get(self._id_key(key_id))
        return ApiKeyRecord.model_validate_json(raw) if raw else None

    async def get_key_by_value(self, secret: str) -> ApiKeyRecord | None:
        key_id = await self._redis.get(self._value_key(secret))
        if not key_id:
            return None
        return await self.get_key_by_id(_decode(key_id))

    async def get_keys_by_owner(self, owner_id: str) -> list[ApiKeyRecord]:
        ids = await self._redis.smembers(self._owner_key(owner_id))
        if not ids:
            return []
        raws = await self._redis.mget([self._id_key(_decode(key_id)) for key_id in ids])
        return [ApiKeyRecord.model_validate_json(raw) for raw in raws if raw]

    async def _replace_watched(
        self, key_id: str, build: Callable[[ApiKeyRecord], ApiKeyRecord]
    ) -> ApiKeyRecord | None:
        """Replace the record at ``key_id`` with ``build(existing)``.

        The record key is WATCHed between the read and the MULTI, so a write
        or delete by another client aborts the transaction and the read is
        retried. Index entries follow secret and owner changes in the same
        transaction.
        """
        id_key = self._id_key(key_id)
        async with self._redis.pipeline(transaction=True) as pipe:
            while True:
                try:
                    await pipe.watch(id_key)
                    raw = await pipe.get(id_key)
                    if not raw:
                        return None
                    existing = ApiKeyRecord.model_validate_json(raw)
                    record = build(existing)

                    pipe.multi()
                    pipe.set(id_key, record.model_dump_json())
                    if existing.secret != record.secret:
                        pipe.delete(self._value_key(existing.secret))
                        pipe.set(self._value_key(record.secret), key_id)
                    if existing.owner_id != record.owner_id:
                        pipe.srem(self._owner_key(existing.owner_id), key_id)
                        pipe.sadd(self._owner_key(record.owner_id), key_id)
                    await pipe.execute()
                    return record
                except WatchError:
                    logger.debug("storage.redis_watch_retry", extra={"key_id": key_id})

    async def update_key(self, key_id: str, record: ApiKeyRecord) -> ApiKeyRecord | None:
        return await self._replace_watched(key_id, lambda existing: record)

    async def touch_key(self, key_id: str, used_at: datetime) -> ApiKeyRecord | None:
        return await self._replace_watched(
            key_id, lambda existing: existing.model_copy(update={"last_used_at": used_at})
        )

    async def delete_key(self, key_id: str) -> bool:
        id_key = self._id_key(key_id)
        bucket_keys = [key async for key in self._redis.scan_iter(match=self._bucket_key(key_id, "*"))]
        async with self._redis.pipeline(transaction=True) as pipe:
            while True:
                try:
                    await pipe.watch(id_key)
                    raw = await pipe.get(id_key)
                    if not raw:
                        return False
                    existing = ApiKeyRecord.model_validate_json(raw)

                    pipe.multi()
                    pipe.delete(id_key)
                    pipe.delete(self._value_key(existing.secret))
                    pipe.srem(self._owner_key(existing.owner_id), key_id)
                    pipe.delete(self._rate_key(key_id), *bucket_keys)
                    await pipe.execute()
                    return True
                except WatchError:
                    logger.debug("storage.redis_watch_retry", extra={"key_id": key_id})

    async def check_rate_limit(self, key_id: str, config: RateLimitConfig) -> bool:
        now_ms = epoch_ms(self._clock())
        if self._strategy is RateLimitStrategy.FIXED_BUCKET:
            allowed = await self._check_fixed_bucket(key_id, now_ms, config)
        else:
            allowed = await self._check_sliding_log(key_id, now_ms, config)

        if not allowed:
            logger.debug(
                "rate_limit.denied",
                extra={"key_id": key_id, "limit": config.max_requests, "strategy": self._strategy.value},
            )
        return allowed

    async def _check_sliding_log(self, key_id: str, now_ms: int, config: RateLimitConfig) -> bool:
        rate_key = self._rate_key(key_id)
        member = f"{now_ms}:{uuid.uuid4().hex}"

        async with self._redis.pipeline(transaction=True) as pipe:
            # Keep entries with now - ts < window, i.e. drop ts <= now - window.
            pipe.zremrangebyscore(rate_key, "-inf", now_ms - config.window_ms)
            pipe.zcard(rate_key)
            pipe.zadd(rate_key, {member: now_ms})
            pipe.pexpire(rate_key, config.window_ms)
            _, count_before, _, _ = await pipe.execute()

        if int(count_before) < config.max_requests:
            return True

        await self._redis.zrem(rate_key, member)
        return False

    async def _check_fixed_bucket(self, key_id: str, now_ms: int, config: RateLimitConfig) -> bool:
        bucket_key = self._bucket_key(key_id, FixedBucketLimiter.bucket_index(now_ms, config))

        async with self._redis.pipeline(transaction=True) as pipe:
            pipe.incr(bucket_key)
            pipe.pexpire(bucket_key, FixedBucketLimiter.ttl_ms(config))
            count, _ = await pipe.execute()

        return FixedBucketLimiter.decide(int(count), now_ms, config).allowed

    async def close(self) -> None:
        await self._redis.aclose()
