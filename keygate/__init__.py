"""keygate: API key issuance, validation and per-key rate limiting."""

from keygate.adapters.rate_limit import RateLimitStrategy
from keygate.adapters.storage import (
    AbstractStorageAdapter,
    DbmNamespace,
    InMemoryStorageAdapter,
    KVStorageAdapter,
    RedisStorageAdapter,
    SQLStorageAdapter,
)
from keygate.core.errors import AppError, ValidationAppError
from keygate.schemas.api_key import (
    ApiKeyRecord,
    ApiKeyUpdate,
    RateLimitConfig,
    SanitizedApiKeyRecord,
)
from keygate.services.key_manager import ApiKeyManager

__all__ = [
    "AbstractStorageAdapter",
    "ApiKeyManager",
    "ApiKeyRecord",
    "ApiKeyUpdate",
    "AppError",
    "DbmNamespace",
    "InMemoryStorageAdapter",
    "KVStorageAdapter",
    "RateLimitConfig",
    "RateLimitStrategy",
    "RedisStorageAdapter",
    "SQLStorageAdapter",
    "SanitizedApiKeyRecord",
    "ValidationAppError",
]

__version__ = "0.1.0"
