"""Sliding log rate limiting.

A request at ``now`` is admitted iff fewer than ``max_requests`` admitted
timestamps lie in the half-open interval ``(now - window_ms, now]``. Only
admitted requests are recorded, so a client hammering a closed window does
not extend its own lockout.
"""

from __future__ import annotations

from typing import Sequence

from keygate.adapters.rate_limit.base import RateLimitDecision
from keygate.schemas.api_key import RateLimitConfig


class SlidingLogLimiter:
    """Pure sliding log algorithm over a list of millisecond timestamps."""

    @staticmethod
    def prune(timestamps: Sequence[int], now_ms: int, config: RateLimitConfig) -> list[int]:
        """Drop timestamps that fell out of the trailing window."""
        return [ts for ts in timestamps if now_ms - ts < config.window_ms]

    @classmethod
    def consume(
        cls,
        timestamps: Sequence[int],
        now_ms: int,
        config: RateLimitConfig,
    ) -> tuple[RateLimitDecision, list[int]]:
        """Decide admission for a request at ``now_ms``.

        Args:
            timestamps: Previously admitted request times (ms), any order.
            now_ms: Current time in milliseconds.
            config: Window policy.

        Returns:
            Tuple of (decision, new_log). ``new_log`` is the pruned log with
            ``now_ms`` appended when the request was admitted.
        """
        log = sorted(cls.prune(timestamps, now_ms, config))

        if len(log) < config.max_requests:
            log.append(now_ms)
            return (
                RateLimitDecision(
                    allowed=True,
                    limit=config.max_requests,
                    remaining=config.max_requests - len(log),
                ),
                log,
            )

        # The oldest entry in the window is the first to expire.
        retry_after = max(0, log[0] + config.window_ms - now_ms)
        return (
            RateLimitDecision(
                allowed=False,
                limit=config.max_requests,
                remaining=0,
                retry_after_ms=retry_after,
            ),
            log,
        )
