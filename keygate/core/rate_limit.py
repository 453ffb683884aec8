"""Rate limiting dependency for FastAPI routes.

Runs after authentication and consumes one request from the key's budget,
using the key's own ``rate_limit`` when set and the manager's default
otherwise. Disabled with ``AUTH_RATE_LIMIT_ENABLED=false``.
"""

from __future__ import annotations

import math
from typing import Annotated

from fastapi import Depends

from keygate.core.auth import authenticate_api_key, get_key_manager
from keygate.core.config import settings
from keygate.core.errors import RateLimitAppError
from keygate.schemas.api_key import SanitizedApiKeyRecord
from keygate.services.key_manager import ApiKeyManager


async def enforce_rate_limit(
    record: Annotated[SanitizedApiKeyRecord, Depends(authenticate_api_key)],
    manager: Annotated[ApiKeyManager, Depends(get_key_manager)],
) -> SanitizedApiKeyRecord:
    """FastAPI dependency enforcing per-key rate limits.

    Returns:
        The authenticated record, so routes can depend on this alone.

    Raises:
        RateLimitAppError: When the key is over its limit (rendered as 429).
    """
    if not settings.auth.rate_limit_enabled:
        return record

    policy = record.rate_limit or manager.default_rate_limit
    if await manager.check_rate_limit(record.id, policy):
        return record

    # The adapter only reports admit/deny; one full window is the upper bound.
    retry_after = math.ceil(policy.window_ms / 1000)
    raise RateLimitAppError(
        code="rate_limit_exceeded",
        message="Rate limit exceeded. Try again later.",
        details={"retry_after": retry_after, "context": {"limit": policy.max_requests}},
    )
