"""Rate limiting strategies.

The algorithms here are pure: they decide admission from a snapshot of
per-credential state and return the new state. Storage adapters own the
state and the serialization of concurrent checks.
"""

from keygate.adapters.rate_limit.base import RateLimitDecision, RateLimitStrategy
from keygate.adapters.rate_limit.fixed_bucket import FixedBucketLimiter
from keygate.adapters.rate_limit.sliding_log import SlidingLogLimiter

__all__ = [
    "FixedBucketLimiter",
    "RateLimitDecision",
    "RateLimitStrategy",
    "SlidingLogLimiter",
]
