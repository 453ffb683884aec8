"""Pydantic schemas for API key records and rate limit policies."""

from __future__ import annotations

from datetime import datetime
from typing import Any, Mapping

from pydantic import BaseModel, ConfigDict, Field, field_validator

from keygate.utils.datetime import ensure_utc

# Fields an owner may change through ApiKeyManager.update_key.
MUTABLE_FIELDS: frozenset[str] = frozenset(
    {"name", "is_active", "permissions", "expires_at", "metadata", "rate_limit"}
)


class RateLimitConfig(BaseModel):
    """Sliding window policy: at most ``max_requests`` per ``window_ms``."""

    model_config = ConfigDict(frozen=True)

    window_ms: int = Field(..., ge=1, description="Window length in milliseconds.")
    max_requests: int = Field(..., ge=1, description="Requests admitted per window.")


class _ApiKeyFields(BaseModel):
    """Fields shared by full and sanitized records."""

    id: str = Field(..., description="Opaque UUID, immutable.")
    owner_id: str = Field(..., description="Principal the key acts on behalf of.")
    name: str = Field(..., description="Human label.")
    permissions: dict[str, Any] = Field(default_factory=dict)
    rate_limit: RateLimitConfig | None = Field(
        None,
        description="Per-key override of the manager's default policy.",
    )
    is_active: bool = True
    created_at: datetime
    last_used_at: datetime | None = None
    expires_at: datetime | None = None
    metadata: dict[str, Any] = Field(default_factory=dict)

    @field_validator("created_at", "last_used_at", "expires_at")
    @classmethod
    def _normalize_utc(cls, value: datetime | None) -> datetime | None:
        return ensure_utc(value) if value is not None else None

    def is_expired(self, now: datetime) -> bool:
        """True when ``expires_at`` is set and strictly before ``now``."""
        return self.expires_at is not None and self.expires_at < now


class SanitizedApiKeyRecord(_ApiKeyFields):
    """An API key record without its secret, safe to return to callers."""


class ApiKeyRecord(_ApiKeyFields):
    """The persisted credential, including its bearer secret."""

    secret: str = Field(..., description="Bearer value, globally unique.")

    def sanitized(self) -> SanitizedApiKeyRecord:
        return SanitizedApiKeyRecord.model_validate(self.model_dump(exclude={"secret"}))


class ApiKeyUpdate(BaseModel):
    """Partial update accepted by ``ApiKeyManager.update_key``.

    Only the mutable fields are declared; anything else in the input
    (``id``, ``secret``, ``owner_id``, ``created_at``...) is dropped.
    Use ``model_fields_set`` semantics: a field is applied only when it was
    explicitly provided, so ``expires_at=None`` clears the expiry.
    """

    model_config = ConfigDict(extra="ignore")

    name: str | None = None
    is_active: bool | None = None
    permissions: dict[str, Any] | None = None
    expires_at: datetime | None = None
    metadata: dict[str, Any] | None = None
    rate_limit: RateLimitConfig | None = None

    @field_validator("expires_at")
    @classmethod
    def _normalize_utc(cls, value: datetime | None) -> datetime | None:
        return ensure_utc(value) if value is not None else None

    @field_validator("name")
    @classmethod
    def _non_empty_name(cls, value: str | None) -> str | None:
        if value is not None and not value.strip():
            raise ValueError("name must be a non-empty string")
        return value

    @classmethod
    def coerce(cls, updates: "ApiKeyUpdate | Mapping[str, Any]") -> "ApiKeyUpdate":
        if isinstance(updates, ApiKeyUpdate):
            return updates
        return cls.model_validate(
            {k: v for k, v in updates.items() if k in MUTABLE_FIELDS}
        )

    def changes(self) -> dict[str, Any]:
        """Return only the explicitly provided fields.

        ``None`` is meaningful only for ``expires_at`` and ``rate_limit``;
        for the other fields it means "leave unchanged".
        """
        result: dict[str, Any] = {}
        for field in self.model_fields_set & MUTABLE_FIELDS:
            value = getattr(self, field)
            if value is None and field not in ("expires_at", "rate_limit"):
                continue
            result[field] = value
        return result
