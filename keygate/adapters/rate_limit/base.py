"""Rate limiter result types and strategy selection."""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum


class RateLimitStrategy(str, Enum):
    """Available rate limit algorithms.

    SLIDING_LOG is the authoritative semantics and the default everywhere.
    FIXED_BUCKET is an opt-in approximation for backends with atomic
    increment-with-expiry; see ``FixedBucketLimiter``.
    """

    SLIDING_LOG = "sliding_log"
    FIXED_BUCKET = "fixed_bucket"


@dataclass(frozen=True)
class RateLimitDecision:
    """Result of a rate limit check/consume operation.

    Attributes:
        allowed: Whether the request is allowed to proceed.
        limit: Max requests per window.
        remaining: Remaining requests in the current window (0 when blocked).
        retry_after_ms: Milliseconds until a slot frees up when blocked.
    """

    allowed: bool
    limit: int
    remaining: int
    retry_after_ms: int | None = None
