from __future__ import annotations

from fastapi import APIRouter, Request

router = APIRouter(tags=["Health"])


@router.get("/health")
def health_check(request: Request) -> dict:
    """Liveness probe; reports which storage backend the manager uses."""
    manager = getattr(request.app.state, "key_manager", None)
    storage = type(manager.adapter).__name__ if manager is not None else None
    return {"status": "ok", "storage": storage}
