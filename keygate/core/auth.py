"""API key authentication dependency for FastAPI routes.

The HTTP layer only extracts the candidate secret and maps outcomes:
- no secret in header or query -> 401 "API key is required"
- ``ApiKeyManager.validate_key`` returns None -> 401 "Invalid API key"
- success -> sanitized record on ``request.state.api_key``

The manager is injected through ``app.state.key_manager`` (see
``keygate.core.app_factory.create_app``); nothing here builds storage.

Usage:
    @router.get("/protected")
    async def protected(key: Annotated[SanitizedApiKeyRecord, Depends(authenticate_api_key)]):
        return {"owner": key.owner_id}
"""

from __future__ import annotations

import logging
from typing import Annotated

from fastapi import Depends, Request

from keygate.core.config import AuthSettings, settings
from keygate.core.errors import AuthenticationAppError
from keygate.core.logging import fingerprint
from keygate.schemas.api_key import SanitizedApiKeyRecord
from keygate.services.key_manager import ApiKeyManager

logger = logging.getLogger(__name__)


def get_key_manager(request: Request) -> ApiKeyManager:
    """Return the manager injected on the application state.

    Raises:
        RuntimeError: If the app was built without a manager.
    """
    manager = getattr(request.app.state, "key_manager", None)
    if manager is None:
        raise RuntimeError("No ApiKeyManager configured on app.state.key_manager")
    return manager


def extract_api_key(request: Request, auth: AuthSettings) -> str | None:
    """Read the candidate secret from the header, falling back to the query string."""
    value = request.headers.get(auth.header_name) or request.query_params.get(auth.query_name)
    return value.strip() if value and value.strip() else None


async def authenticate_api_key(
    request: Request,
    manager: Annotated[ApiKeyManager, Depends(get_key_manager)],
) -> SanitizedApiKeyRecord:
    """FastAPI dependency resolving the request's API key.

    Raises:
        AuthenticationAppError: Missing or invalid key (rendered as 401).
    """
    secret = extract_api_key(request, settings.auth)
    if secret is None:
        logger.warning("auth.missing_key", extra={"header": settings.auth.header_name})
        raise AuthenticationAppError(
            code="missing_api_key",
            message="API key is required",
            details={"hint": f"Provide the {settings.auth.header_name} header"},
        )

    record = await manager.validate_key(secret)
    if record is None:
        logger.warning("auth.invalid_key", extra={"secret_hash": fingerprint(secret)})
        raise AuthenticationAppError(code="invalid_api_key", message="Invalid API key")

    request.state.api_key = record
    logger.info("auth.success", extra={"key_id": record.id, "owner_id": record.owner_id})
    return record
