"""ASGI entrypoint: builds storage and the key manager from settings.

Run with ``uvicorn keygate.main:app``.
"""

from __future__ import annotations

from contextlib import asynccontextmanager
from typing import AsyncIterator

from fastapi import FastAPI

from keygate.adapters.storage.factory import create_storage_adapter
from keygate.adapters.storage.sql_store import SQLStorageAdapter
from keygate.core.app_factory import create_app
from keygate.core.config import settings
from keygate.services.key_manager import ApiKeyManager

adapter = create_storage_adapter(settings.storage)
manager = ApiKeyManager.from_settings(adapter, settings.keys)


@asynccontextmanager
async def lifespan(_: FastAPI) -> AsyncIterator[None]:
    if isinstance(adapter, SQLStorageAdapter):
        await adapter.create_schema()
    yield
    await adapter.close()


app = create_app(manager, lifespan=lifespan)
