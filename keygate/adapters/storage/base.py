"""Storage adapter interface.

The key manager depends on this abstraction only. Each backend is an
independent implementation; there is no shared base behaviour.

Every implementation maintains three indices over the same record set:
primary key (``id``), secret value, and owner membership. After
``save_key`` or ``update_key`` returns, all three reflect the new record;
when an update changes ``secret`` or ``owner_id`` the stale entries are
retired. After ``delete_key`` returns True all three are purged together
with the credential's rate-limit state. Lookups return ``None``/``[]`` on a
miss and never raise for it; backend I/O errors propagate unmodified.

Rate-limit state outlives a record only where it expires on its own
(Redis TTLs). Backends without expiry keep state for stored records only.
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from datetime import datetime

from keygate.schemas.api_key import ApiKeyRecord, RateLimitConfig


class AbstractStorageAdapter(ABC):
    """Interface for API key storage backends."""

    @abstractmethod
    async def save_key(self, record: ApiKeyRecord) -> ApiKeyRecord:
        """Persist a new record and index it by id, secret and owner."""
        raise NotImplementedError

    @abstractmethod
    async def get_key_by_id(self, key_id: str) -> ApiKeyRecord | None:
        """Return the record with ``key_id`` or None."""
        raise NotImplementedError

    @abstractmethod
    async def get_key_by_value(self, secret: str) -> ApiKeyRecord | None:
        """Return the record whose secret equals ``secret`` or None."""
        raise NotImplementedError

    @abstractmethod
    async def get_keys_by_owner(self, owner_id: str) -> list[ApiKeyRecord]:
        """Return every record owned by ``owner_id`` (order is backend-defined)."""
        raise NotImplementedError

    @abstractmethod
    async def update_key(self, key_id: str, record: ApiKeyRecord) -> ApiKeyRecord | None:
        """Replace the stored record for ``key_id``.

        Returns:
            The stored record, or None when ``key_id`` does not exist.
        """
        raise NotImplementedError

    @abstractmethod
    async def touch_key(self, key_id: str, used_at: datetime) -> ApiKeyRecord | None:
        """Set only ``last_used_at`` on the currently stored record.

        Every other field keeps its stored value, so a concurrent update or
        delete is never overwritten and a deleted record is never recreated.

        Returns:
            The stored record after the stamp, or None when ``key_id`` does
            not exist.
        """
        raise NotImplementedError

    @abstractmethod
    async def delete_key(self, key_id: str) -> bool:
        """Remove the record, its index entries and its rate-limit state.

        Returns:
            True only when a record was actually removed.
        """
        raise NotImplementedError

    @abstractmethod
    async def check_rate_limit(self, key_id: str, config: RateLimitConfig) -> bool:
        """Consume one request from ``key_id``'s budget.

        Returns:
            True when the request is admitted (and recorded), else False.
        """
        raise NotImplementedError

    @abstractmethod
    async def close(self) -> None:
        """Release backend resources (connections, file handles)."""
        raise NotImplementedError
