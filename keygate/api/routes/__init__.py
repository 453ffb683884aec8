from __future__ import annotations

from keygate.api.routes.health import router as health_router
from keygate.api.routes.keys import router as keys_router

__all__ = ["health_router", "keys_router"]
