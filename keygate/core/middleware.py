"""HTTP middleware for request correlation.

Every request gets a request id (taken from the incoming
``LOG_REQUEST_ID_HEADER`` header or generated), stored in a context variable
so authentication and rate-limit log lines carry it, and echoed back on the
response together with the handling duration.

Usage:
    app.middleware("http")(request_id_middleware)
"""

from __future__ import annotations

import time
import uuid

from fastapi import Request, Response

from keygate.core.config import settings
from keygate.core.logging import clear_request_id, set_request_id


async def request_id_middleware(request: Request, call_next) -> Response:
    """Bind a request id for the duration of the request.

    Side Effects:
        - Sets request_id in contextvars, cleared once the response is built
        - Adds the request id header and X-Request-Duration-ms to the response
    """
    header_name = settings.log.request_id_header
    request_id = request.headers.get(header_name) or str(uuid.uuid4())
    set_request_id(request_id)
    started = time.perf_counter()
    try:
        response: Response = await call_next(request)
    finally:
        clear_request_id()

    response.headers[header_name] = request_id
    response.headers.setdefault("X-Request-Duration-ms", f"{(time.perf_counter() - started) * 1000:.2f}")
    return response
