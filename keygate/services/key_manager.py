"""API key lifecycle manager.

Orchestrates secret generation, ownership-scoped access control and
validation, delegating all persistence and rate-limit state to an injected
storage adapter. It handles:
- Input validation (caller faults raise ValidationAppError)
- Secret/id generation
- Sanitization: only ``create_key`` ever returns a secret
- Lazy expiry evaluation and ``last_used_at`` stamping on validation

Denials (not found, owner mismatch, inactive, expired, throttled) are
returned as ``None``/``False``. Adapter errors propagate unmodified.
"""

from __future__ import annotations

import logging
import secrets
import uuid
from datetime import datetime
from typing import Any, Callable, Mapping

from pydantic import ValidationError

from keygate.adapters.storage.base import AbstractStorageAdapter
from keygate.core.config import KeySettings
from keygate.core.errors import ValidationAppError, require
from keygate.core.logging import fingerprint
from keygate.schemas.api_key import (
    ApiKeyRecord,
    ApiKeyUpdate,
    RateLimitConfig,
    SanitizedApiKeyRecord,
)
from keygate.utils.datetime import ensure_utc, utcnow

logger = logging.getLogger(__name__)

DEFAULT_KEY_LENGTH = 12
DEFAULT_RATE_LIMIT = RateLimitConfig(window_ms=60_000, max_requests=60)


class ApiKeyManager:
    """Issues, validates and retires API keys for owners.

    The manager holds no mutable state beyond its construction-time
    configuration, so one instance can be shared by concurrent callers.
    """

    def __init__(
        self,
        adapter: AbstractStorageAdapter,
        *,
        prefix: str = "",
        key_length: int = DEFAULT_KEY_LENGTH,
        rate_limit: RateLimitConfig = DEFAULT_RATE_LIMIT,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        """Initialize the manager.

        Args:
            adapter: Storage backend holding records and rate-limit state.
            prefix: String prepended to every generated secret.
            key_length: Random bytes per secret (hex-encoded).
            rate_limit: Default policy for ``check_rate_limit``.
            clock: Returns the current aware UTC datetime.

        Raises:
            ValidationAppError: If key_length is below 1.
        """
        if key_length < 1:
            raise ValidationAppError(
                code="invalid_key_length",
                message="key_length must be >= 1",
                details={"field": "key_length"},
            )
        self._adapter = adapter
        self._prefix = prefix
        self._key_length = key_length
        self._rate_limit = rate_limit
        self._clock = clock

    @classmethod
    def from_settings(cls, adapter: AbstractStorageAdapter, keys: KeySettings) -> "ApiKeyManager":
        return cls(
            adapter,
            prefix=keys.prefix,
            key_length=keys.key_length,
            rate_limit=keys.default_rate_limit,
        )

    @property
    def adapter(self) -> AbstractStorageAdapter:
        return self._adapter

    @property
    def default_rate_limit(self) -> RateLimitConfig:
        return self._rate_limit

    def _generate_secret(self) -> str:
        return f"{self._prefix}{secrets.token_hex(self._key_length)}"

    async def create_key(
        self,
        owner_id: str,
        name: str,
        *,
        permissions: Mapping[str, Any] | None = None,
        rate_limit: RateLimitConfig | Mapping[str, int] | None = None,
        expires_at: datetime | str | None = None,
        metadata: Mapping[str, Any] | None = None,
    ) -> ApiKeyRecord:
        """Issue a new key for ``owner_id``.

        This is the only operation that returns the secret; callers must
        hand it to the owner once and never expect to read it back.

        Raises:
            ValidationAppError: If owner_id or name is empty, or an optional
                argument cannot be parsed.
        """
        require(owner_id, field="owner_id", message="Owner id is required")
        require(name, field="name", message="API key name is required")

        try:
            record = ApiKeyRecord(
                id=str(uuid.uuid4()),
                secret=self._generate_secret(),
                owner_id=owner_id,
                name=name,
                permissions=dict(permissions or {}),
                rate_limit=rate_limit,
                is_active=True,
                created_at=self._clock(),
                last_used_at=None,
                expires_at=expires_at,
                metadata=dict(metadata or {}),
            )
        except ValidationError as exc:
            raise ValidationAppError(
                code="invalid_api_key_fields",
                message="Invalid API key attributes",
                details={"hint": str(exc)},
            ) from exc

        await self._adapter.save_key(record)
        logger.info(
            "api_key.created",
            extra={"key_id": record.id, "owner_id": owner_id, "has_expiry": record.expires_at is not None},
        )
        return record

    async def list_keys(
        self,
        owner_id: str,
        *,
        include_secret: bool = False,
    ) -> list[SanitizedApiKeyRecord] | list[ApiKeyRecord]:
        """Return every key owned by ``owner_id``, sanitized unless asked otherwise.

        Order is whatever the adapter returns.
        """
        require(owner_id, field="owner_id", message="Owner id is required")
        records = await self._adapter.get_keys_by_owner(owner_id)
        if include_secret:
            return records
        return [record.sanitized() for record in records]

    async def get_key_by_id(self, key_id: str, owner_id: str | None = None) -> SanitizedApiKeyRecord | None:
        """Look up a key by id.

        When ``owner_id`` is given and does not match, the result is None,
        indistinguishable from a missing key.
        """
        require(key_id, field="key_id", message="API key id is required")
        record = await self._adapter.get_key_by_id(key_id)
        if record is None:
            return None
        if owner_id is not None and record.owner_id != owner_id:
            return None
        return record.sanitized()

    async def update_key(
        self,
        key_id: str,
        owner_id: str,
        updates: ApiKeyUpdate | Mapping[str, Any],
    ) -> SanitizedApiKeyRecord | None:
        """Apply a partial update to a key owned by ``owner_id``.

        Only name, is_active, permissions, expires_at, metadata and
        rate_limit change. ``id``, ``secret``, ``owner_id`` and
        ``created_at`` always keep their stored values, whatever
        ``updates`` contains.

        Returns:
            The sanitized updated record, or None on not-found/owner mismatch.
        """
        require(key_id, field="key_id", message="API key id is required")
        require(owner_id, field="owner_id", message="Owner id is required")

        try:
            changes = ApiKeyUpdate.coerce(updates).changes()
        except ValidationError as exc:
            raise ValidationAppError(
                code="invalid_api_key_update",
                message="Invalid API key update",
                details={"hint": str(exc)},
            ) from exc

        existing = await self._adapter.get_key_by_id(key_id)
        if existing is None or existing.owner_id != owner_id:
            return None

        updated = existing.model_copy(
            update={
                **changes,
                "id": existing.id,
                "secret": existing.secret,
                "owner_id": existing.owner_id,
                "created_at": existing.created_at,
            }
        )
        saved = await self._adapter.update_key(key_id, updated)
        if saved is None:
            return None

        logger.info(
            "api_key.updated",
            extra={"key_id": key_id, "owner_id": owner_id, "fields": sorted(changes)},
        )
        return saved.sanitized()

    async def delete_key(self, key_id: str, owner_id: str) -> bool:
        """Delete a key owned by ``owner_id``; False on not-found/owner mismatch."""
        require(key_id, field="key_id", message="API key id is required")
        require(owner_id, field="owner_id", message="Owner id is required")

        existing = await self._adapter.get_key_by_id(key_id)
        if existing is None or existing.owner_id != owner_id:
            return False

        deleted = await self._adapter.delete_key(key_id)
        if deleted:
            logger.info("api_key.deleted", extra={"key_id": key_id, "owner_id": owner_id})
        return deleted

    async def validate_key(self, secret: str) -> SanitizedApiKeyRecord | None:
        """Resolve a bearer secret to its sanitized record.

        Returns None when the secret is unknown, the key is suspended, or
        ``expires_at`` is strictly in the past. On success ``last_used_at``
        is stamped on the stored record without touching any other field; a
        failure to persist the stamp is logged and does not affect the
        result. A key deleted or suspended while the stamp was pending is
        rejected.
        """
        require(secret, field="secret", message="API key value is required")

        record = await self._adapter.get_key_by_value(secret)
        if record is None:
            logger.info("api_key.validation_failed", extra={"reason": "not_found", "secret_hash": fingerprint(secret)})
            return None
        if not record.is_active:
            logger.info("api_key.validation_failed", extra={"reason": "inactive", "key_id": record.id})
            return None

        now = ensure_utc(self._clock())
        if record.is_expired(now):
            logger.info("api_key.validation_failed", extra={"reason": "expired", "key_id": record.id})
            return None

        try:
            stamped = await self._adapter.touch_key(record.id, now)
        except Exception as exc:  # noqa: BLE001 - stamping is best-effort
            logger.warning(
                "api_key.last_used_update_failed",
                extra={"key_id": record.id, "error_type": type(exc).__name__, "error_msg": str(exc)},
            )
            return record.sanitized()

        if stamped is None:
            logger.info("api_key.validation_failed", extra={"reason": "deleted", "key_id": record.id})
            return None
        if not stamped.is_active:
            logger.info("api_key.validation_failed", extra={"reason": "inactive", "key_id": record.id})
            return None

        return stamped.sanitized()

    async def check_rate_limit(
        self,
        key_id: str,
        override: RateLimitConfig | None = None,
    ) -> bool:
        """Consume one request from the key's budget.

        Uses ``override`` when given (typically the key's own
        ``rate_limit``), otherwise the manager's default policy.
        """
        require(key_id, field="key_id", message="API key id is required")
        config = override or self._rate_limit
        allowed = await self._adapter.check_rate_limit(key_id, config)
        if not allowed:
            logger.warning(
                "rate_limit.exceeded",
                extra={"key_id": key_id, "window_ms": config.window_ms, "max_requests": config.max_requests},
            )
        return allowed
