"""Fixed bucket rate limiting (opt-in approximation).

Requests are counted in buckets indexed by ``floor(now / window_ms)``, each
with a time-to-live of one window. This is cheaper than a sliding log on
stores that offer atomic increment-with-expiry, but it is NOT equivalent:
a client can be admitted ``max_requests`` times at the end of one bucket
and ``max_requests`` more at the start of the next, i.e. up to
``2 * max_requests`` inside any window-length interval straddling a
boundary. Only backends that explicitly select
``RateLimitStrategy.FIXED_BUCKET`` use it.
"""

from __future__ import annotations

from keygate.adapters.rate_limit.base import RateLimitDecision
from keygate.schemas.api_key import RateLimitConfig


class FixedBucketLimiter:
    """Bucket arithmetic for increment-with-expiry counters."""

    @staticmethod
    def bucket_index(now_ms: int, config: RateLimitConfig) -> int:
        return now_ms // config.window_ms

    @staticmethod
    def ttl_ms(config: RateLimitConfig) -> int:
        return config.window_ms

    @classmethod
    def decide(cls, count_after_increment: int, now_ms: int, config: RateLimitConfig) -> RateLimitDecision:
        """Admit iff the pre-increment count was below ``max_requests``.

        Args:
            count_after_increment: Counter value returned by the atomic
                increment for the current bucket.
            now_ms: Current time in milliseconds.
            config: Window policy.
        """
        previous = count_after_increment - 1
        if previous < config.max_requests:
            return RateLimitDecision(
                allowed=True,
                limit=config.max_requests,
                remaining=max(0, config.max_requests - count_after_increment),
            )

        bucket_end = (cls.bucket_index(now_ms, config) + 1) * config.window_ms
        return RateLimitDecision(
            allowed=False,
            limit=config.max_requests,
            remaining=0,
            retry_after_ms=max(0, bucket_end - now_ms),
        )
