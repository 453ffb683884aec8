"""Application factory for the FastAPI app.

The key manager is built by the caller and injected; the factory only
wires middleware, exception handlers and routers around it.
"""

from __future__ import annotations

from contextlib import AbstractAsyncContextManager
from typing import Callable

from fastapi import FastAPI

from keygate.api.routes import health_router, keys_router
from keygate.core.config import settings
from keygate.core.exception_handlers import setup_exception_handlers
from keygate.core.logging import configure_logging
from keygate.core.middleware import request_id_middleware
from keygate.services.key_manager import ApiKeyManager


def create_app(
    manager: ApiKeyManager,
    *,
    lifespan: Callable[[FastAPI], AbstractAsyncContextManager[None]] | None = None,
) -> FastAPI:
    """Create and configure the FastAPI application instance.

    Args:
        manager: Key manager used by the authentication dependencies.
        lifespan: Optional startup/shutdown handler (e.g. closing the adapter).

    Returns:
        Configured FastAPI app with middleware, handlers and routers.
    """
    # Logging first so subsequent init logs are formatted as desired
    configure_logging(settings.log)

    app = FastAPI(
        title="keygate",
        description="API key issuance, validation and per-key rate limiting.",
        version="0.1.0",
        lifespan=lifespan,
    )
    app.state.key_manager = manager

    app.middleware("http")(request_id_middleware)
    setup_exception_handlers(app)

    app.include_router(keys_router, prefix="/v1")
    app.include_router(health_router)

    return app
