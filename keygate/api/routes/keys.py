from __future__ import annotations

from typing import Annotated

from fastapi import APIRouter, Depends

from keygate.core.rate_limit import enforce_rate_limit
from keygate.schemas.api_key import SanitizedApiKeyRecord

router = APIRouter(tags=["Keys"])


@router.get("/keys/me", response_model=SanitizedApiKeyRecord)
async def current_key(
    key: Annotated[SanitizedApiKeyRecord, Depends(enforce_rate_limit)],
) -> SanitizedApiKeyRecord:
    """Return the authenticated key's sanitized record."""
    return key
