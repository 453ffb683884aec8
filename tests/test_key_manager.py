"""Tests for ApiKeyManager.

Lifecycle behaviour runs against every storage backend through the
``manager`` fixture; argument validation and failure handling use the
in-memory adapter directly.
"""

from __future__ import annotations

import asyncio
import logging
from datetime import timedelta
from unittest.mock import AsyncMock

import pytest

from keygate.adapters.storage import InMemoryStorageAdapter
from keygate.core.config import KeySettings
from keygate.core.errors import ValidationAppError
from keygate.core.logging import fingerprint
from keygate.schemas.api_key import ApiKeyRecord, ApiKeyUpdate, RateLimitConfig
from keygate.services.key_manager import ApiKeyManager


@pytest.fixture
def memory_manager(clock) -> ApiKeyManager:
    return ApiKeyManager(InMemoryStorageAdapter(clock=clock.time), clock=clock.utcnow)


class TestLifecycle:
    @pytest.mark.asyncio
    async def test_owner_scenario(self, manager):
        created = await manager.create_key("m1", "primary")

        listed = await manager.list_keys("m1")
        assert len(listed) == 1
        assert listed[0].id == created.id
        assert not hasattr(listed[0], "secret")

        validated = await manager.validate_key(created.secret)
        assert validated is not None
        assert validated.id == created.id

        assert await manager.delete_key(created.id, "m1") is True
        assert await manager.get_key_by_id(created.id, "m1") is None

    @pytest.mark.asyncio
    async def test_created_keys_have_unique_ids_and_secrets(self, manager):
        records = [await manager.create_key("owner", f"key-{i}") for i in range(10)]

        assert len({r.id for r in records}) == 10
        assert len({r.secret for r in records}) == 10

    @pytest.mark.asyncio
    async def test_create_returns_full_record_with_defaults(self, manager, clock):
        created = await manager.create_key("owner", "ci")

        assert isinstance(created, ApiKeyRecord)
        assert len(created.secret) == 24
        assert created.is_active is True
        assert created.created_at == clock.utcnow()
        assert created.last_used_at is None
        assert created.expires_at is None
        assert created.permissions == {}
        assert created.metadata == {}

    @pytest.mark.asyncio
    async def test_create_accepts_optional_attributes(self, manager, clock):
        expires = clock.utcnow() + timedelta(days=1)
        created = await manager.create_key(
            "owner",
            "deploy",
            permissions={"scopes": ["deploy"]},
            rate_limit={"window_ms": 1000, "max_requests": 5},
            expires_at=expires.isoformat(),
            metadata={"env": "prod"},
        )

        stored = await manager.get_key_by_id(created.id)
        assert stored.permissions == {"scopes": ["deploy"]}
        assert stored.rate_limit == RateLimitConfig(window_ms=1000, max_requests=5)
        assert stored.expires_at == expires
        assert stored.metadata == {"env": "prod"}

    @pytest.mark.asyncio
    async def test_read_paths_never_return_the_secret(self, manager):
        created = await manager.create_key("owner", "ci")

        results = [
            await manager.get_key_by_id(created.id),
            await manager.get_key_by_id(created.id, "owner"),
            await manager.validate_key(created.secret),
            await manager.update_key(created.id, "owner", {"name": "renamed"}),
            *(await manager.list_keys("owner")),
        ]

        for result in results:
            assert "secret" not in result.model_dump()

    @pytest.mark.asyncio
    async def test_list_keys_can_include_secrets(self, manager):
        created = await manager.create_key("owner", "ci")

        listed = await manager.list_keys("owner", include_secret=True)

        assert [r.secret for r in listed] == [created.secret]


class TestOwnershipIsolation:
    @pytest.mark.asyncio
    async def test_foreign_owner_sees_not_found(self, manager):
        created = await manager.create_key("alice", "ci")

        assert await manager.get_key_by_id(created.id, "mallory") is None
        assert await manager.update_key(created.id, "mallory", {"name": "pwned"}) is None
        assert await manager.delete_key(created.id, "mallory") is False

        still_there = await manager.get_key_by_id(created.id, "alice")
        assert still_there.name == "ci"

    @pytest.mark.asyncio
    async def test_get_without_owner_skips_the_check(self, manager):
        created = await manager.create_key("alice", "ci")

        assert (await manager.get_key_by_id(created.id)).owner_id == "alice"

    @pytest.mark.asyncio
    async def test_unknown_ids_are_not_found(self, manager):
        assert await manager.get_key_by_id("missing", "alice") is None
        assert await manager.update_key("missing", "alice", {"name": "x"}) is None
        assert await manager.delete_key("missing", "alice") is False

    @pytest.mark.asyncio
    async def test_delete_twice(self, manager):
        created = await manager.create_key("alice", "ci")

        assert await manager.delete_key(created.id, "alice") is True
        assert await manager.delete_key(created.id, "alice") is False


class TestUpdate:
    @pytest.mark.asyncio
    async def test_identity_fields_are_preserved(self, manager, clock):
        created = await manager.create_key("alice", "ci")

        updated = await manager.update_key(
            created.id,
            "alice",
            {
                "id": "forged-id",
                "secret": "forged-secret",
                "owner_id": "mallory",
                "created_at": clock.utcnow() - timedelta(days=365),
                "name": "renamed",
            },
        )

        assert updated.id == created.id
        assert updated.owner_id == "alice"
        assert updated.created_at == created.created_at
        assert updated.name == "renamed"
        assert (await manager.validate_key(created.secret)).id == created.id
        assert await manager.validate_key("forged-secret") is None
        assert await manager.list_keys("mallory") == []

    @pytest.mark.asyncio
    async def test_mutable_fields_change(self, manager, clock):
        created = await manager.create_key("alice", "ci", metadata={"a": 1})
        expires = clock.utcnow() + timedelta(hours=1)

        updated = await manager.update_key(
            created.id,
            "alice",
            ApiKeyUpdate(
                is_active=False,
                permissions={"scopes": ["admin"]},
                expires_at=expires,
                metadata={"b": 2},
                rate_limit=RateLimitConfig(window_ms=500, max_requests=2),
            ),
        )

        assert updated.is_active is False
        assert updated.permissions == {"scopes": ["admin"]}
        assert updated.expires_at == expires
        assert updated.metadata == {"b": 2}
        assert updated.rate_limit == RateLimitConfig(window_ms=500, max_requests=2)
        assert updated.name == "ci"

    @pytest.mark.asyncio
    async def test_explicit_none_clears_expiry(self, manager, clock):
        created = await manager.create_key("alice", "ci", expires_at=clock.utcnow() + timedelta(days=1))

        updated = await manager.update_key(created.id, "alice", {"expires_at": None})

        assert updated.expires_at is None

    @pytest.mark.asyncio
    async def test_rejects_empty_name(self, manager):
        created = await manager.create_key("alice", "ci")

        with pytest.raises(ValidationAppError) as exc_info:
            await manager.update_key(created.id, "alice", {"name": "  "})

        assert exc_info.value.code == "invalid_api_key_update"


class TestValidation:
    @pytest.mark.asyncio
    async def test_unknown_secret_is_rejected(self, manager):
        assert await manager.validate_key("sk_unknown") is None

    @pytest.mark.asyncio
    async def test_suspended_key_is_rejected_until_reactivated(self, manager):
        created = await manager.create_key("alice", "ci")

        await manager.update_key(created.id, "alice", {"is_active": False})
        assert await manager.validate_key(created.secret) is None

        await manager.update_key(created.id, "alice", {"is_active": True})
        assert await manager.validate_key(created.secret) is not None

    @pytest.mark.asyncio
    async def test_expired_key_never_validates(self, manager, clock):
        created = await manager.create_key("alice", "ci", expires_at=clock.utcnow() + timedelta(seconds=10))

        clock.advance(seconds=11)
        assert await manager.validate_key(created.secret) is None

        await manager.update_key(created.id, "alice", {"is_active": True})
        assert await manager.validate_key(created.secret) is None

    @pytest.mark.asyncio
    async def test_expiry_is_strict(self, manager, clock):
        created = await manager.create_key("alice", "ci", expires_at=clock.utcnow())

        assert await manager.validate_key(created.secret) is not None

    @pytest.mark.asyncio
    async def test_success_stamps_last_used_at(self, manager, clock):
        created = await manager.create_key("alice", "ci")
        clock.advance(seconds=30)

        validated = await manager.validate_key(created.secret)

        assert validated.last_used_at == clock.utcnow()
        stored = await manager.get_key_by_id(created.id)
        assert stored.last_used_at == clock.utcnow()


class TestConcurrentValidation:
    @pytest.mark.asyncio
    async def test_validation_racing_suspension_never_reactivates(self, manager):
        created = [await manager.create_key("alice", f"ci-{i}") for i in range(5)]

        await asyncio.gather(
            *(manager.validate_key(record.secret) for record in created),
            *(manager.update_key(record.id, "alice", {"is_active": False}) for record in created),
        )

        for record in created:
            stored = await manager.get_key_by_id(record.id, "alice")
            assert stored.is_active is False
            assert await manager.validate_key(record.secret) is None

    @pytest.mark.asyncio
    async def test_validation_racing_delete_never_resurrects(self, manager):
        created = [await manager.create_key("alice", f"ci-{i}") for i in range(5)]

        results = await asyncio.gather(
            *(manager.validate_key(record.secret) for record in created),
            *(manager.delete_key(record.id, "alice") for record in created),
        )

        assert results[len(created):] == [True] * len(created)
        for record in created:
            assert await manager.get_key_by_id(record.id, "alice") is None
            assert await manager.adapter.get_key_by_value(record.secret) is None
        assert await manager.list_keys("alice") == []


class TestRateLimit:
    @pytest.mark.asyncio
    async def test_window_behaviour(self, manager, clock):
        created = await manager.create_key("alice", "ci")
        policy = RateLimitConfig(window_ms=1000, max_requests=1)

        assert await manager.check_rate_limit(created.id, policy) is True
        assert await manager.check_rate_limit(created.id, policy) is False
        clock.advance(ms=1000)
        assert await manager.check_rate_limit(created.id, policy) is True

    @pytest.mark.asyncio
    async def test_reissued_key_starts_with_fresh_window(self, manager):
        policy = RateLimitConfig(window_ms=60_000, max_requests=1)
        first = await manager.create_key("alice", "ci")
        assert await manager.check_rate_limit(first.id, policy) is True
        assert await manager.check_rate_limit(first.id, policy) is False

        await manager.delete_key(first.id, "alice")
        second = await manager.create_key("alice", "ci")

        assert await manager.check_rate_limit(second.id, policy) is True

    @pytest.mark.asyncio
    async def test_default_policy_applies_without_override(self, clock):
        manager = ApiKeyManager(
            InMemoryStorageAdapter(clock=clock.time),
            rate_limit=RateLimitConfig(window_ms=1000, max_requests=2),
            clock=clock.utcnow,
        )
        created = await manager.create_key("alice", "ci")

        results = [await manager.check_rate_limit(created.id) for _ in range(3)]

        assert results == [True, True, False]

    @pytest.mark.asyncio
    async def test_denial_is_logged(self, memory_manager, caplog):
        created = await memory_manager.create_key("alice", "ci")
        policy = RateLimitConfig(window_ms=1000, max_requests=1)
        caplog.set_level(logging.WARNING, logger="keygate.services.key_manager")

        await memory_manager.check_rate_limit(created.id, policy)
        await memory_manager.check_rate_limit(created.id, policy)

        assert [r.getMessage() for r in caplog.records] == ["rate_limit.exceeded"]
        assert caplog.records[0].key_id == created.id


class TestConfiguration:
    @pytest.mark.asyncio
    async def test_prefix_and_length(self):
        manager = ApiKeyManager(InMemoryStorageAdapter(), prefix="sk_test_", key_length=16)

        created = await manager.create_key("alice", "ci")

        assert created.secret.startswith("sk_test_")
        assert len(created.secret) == len("sk_test_") + 32

    def test_rejects_non_positive_key_length(self):
        with pytest.raises(ValidationAppError) as exc_info:
            ApiKeyManager(InMemoryStorageAdapter(), key_length=0)

        assert exc_info.value.code == "invalid_key_length"

    @pytest.mark.asyncio
    async def test_from_settings(self):
        keys = KeySettings(prefix="pk_", key_length=4, rate_limit_window_ms=1000, rate_limit_max_requests=2)

        manager = ApiKeyManager.from_settings(InMemoryStorageAdapter(), keys)
        created = await manager.create_key("alice", "ci")

        assert manager.default_rate_limit == RateLimitConfig(window_ms=1000, max_requests=2)
        assert created.secret.startswith("pk_")
        assert len(created.secret) == 3 + 8


class TestArgumentValidation:
    @pytest.mark.asyncio
    @pytest.mark.parametrize(
        ("owner_id", "name", "field"),
        [("", "ci", "owner_id"), ("alice", "", "name"), (None, "ci", "owner_id")],
    )
    async def test_create_requires_owner_and_name(self, memory_manager, owner_id, name, field):
        with pytest.raises(ValidationAppError) as exc_info:
            await memory_manager.create_key(owner_id, name)

        assert exc_info.value.details == {"field": field}
        assert await memory_manager.adapter.get_keys_by_owner("alice") == []

    @pytest.mark.asyncio
    async def test_create_rejects_invalid_rate_limit(self, memory_manager):
        with pytest.raises(ValidationAppError) as exc_info:
            await memory_manager.create_key("alice", "ci", rate_limit={"window_ms": 0, "max_requests": 1})

        assert exc_info.value.code == "invalid_api_key_fields"

    @pytest.mark.asyncio
    async def test_empty_arguments_raise(self, memory_manager):
        with pytest.raises(ValidationAppError):
            await memory_manager.list_keys("")
        with pytest.raises(ValidationAppError):
            await memory_manager.get_key_by_id("")
        with pytest.raises(ValidationAppError):
            await memory_manager.update_key("id", "", {})
        with pytest.raises(ValidationAppError):
            await memory_manager.delete_key("", "alice")
        with pytest.raises(ValidationAppError):
            await memory_manager.validate_key("")
        with pytest.raises(ValidationAppError):
            await memory_manager.check_rate_limit("")


class TestFailureHandling:
    @pytest.mark.asyncio
    async def test_stamp_failure_does_not_fail_validation(self, memory_manager, caplog):
        created = await memory_manager.create_key("alice", "ci")
        memory_manager.adapter.touch_key = AsyncMock(side_effect=ConnectionError("store down"))
        caplog.set_level(logging.WARNING, logger="keygate.services.key_manager")

        validated = await memory_manager.validate_key(created.secret)

        assert validated.id == created.id
        assert validated.last_used_at is None
        assert "api_key.last_used_update_failed" in [r.getMessage() for r in caplog.records]

    @pytest.mark.asyncio
    async def test_key_deleted_before_stamp_is_rejected(self, memory_manager, caplog):
        created = await memory_manager.create_key("alice", "ci")
        memory_manager.adapter.touch_key = AsyncMock(return_value=None)
        caplog.set_level(logging.INFO, logger="keygate.services.key_manager")

        assert await memory_manager.validate_key(created.secret) is None

        record = caplog.records[-1]
        assert record.getMessage() == "api_key.validation_failed"
        assert record.reason == "deleted"
        assert record.key_id == created.id

    @pytest.mark.asyncio
    async def test_key_suspended_before_stamp_is_rejected(self, memory_manager, caplog):
        created = await memory_manager.create_key("alice", "ci")
        memory_manager.adapter.touch_key = AsyncMock(
            return_value=created.model_copy(update={"is_active": False})
        )
        caplog.set_level(logging.INFO, logger="keygate.services.key_manager")

        assert await memory_manager.validate_key(created.secret) is None
        assert caplog.records[-1].reason == "inactive"

    @pytest.mark.asyncio
    async def test_adapter_errors_propagate(self, memory_manager):
        memory_manager.adapter.get_key_by_value = AsyncMock(side_effect=ConnectionError("store down"))

        with pytest.raises(ConnectionError):
            await memory_manager.validate_key("sk_anything")

    @pytest.mark.asyncio
    async def test_rejected_secret_is_logged_as_fingerprint(self, memory_manager, caplog):
        caplog.set_level(logging.INFO, logger="keygate.services.key_manager")

        await memory_manager.validate_key("sk_leak_me")

        record = caplog.records[-1]
        assert record.getMessage() == "api_key.validation_failed"
        assert record.secret_hash == fingerprint("sk_leak_me")
        assert "sk_leak_me" not in caplog.text
