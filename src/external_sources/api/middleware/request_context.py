"""
Request Context Middleware
==========================
Request IDs and access logging for the external sources API.
"""

from __future__ import annotations

import logging
import time
from typing import Callable, TYPE_CHECKING
from uuid import uuid4

from starlette.middleware.base import BaseHTTPMiddleware
from starlette.requests import Request
from starlette.responses import Response

if TYPE_CHECKING:
    from starlette.types import ASGIApp

logger = logging.getLogger(__name__)


class RequestContextMiddleware(BaseHTTPMiddleware):
    """
    Tags every request with an ID and logs one access line per response.

    A caller-supplied ``X-Request-ID`` is kept so scheduler logs and ours can
    be joined; otherwise a fresh UUID is issued. Error responses read the ID
    back from ``request.state.request_id``.
    """

    header_name = "X-Request-ID"

    def __init__(self, app: "ASGIApp", header_name: str = "X-Request-ID"):
        super().__init__(app)
        self.header_name = header_name

    async def dispatch(self, request: Request, call_next: Callable) -> Response:
        request_id = request.headers.get(self.header_name) or str(uuid4())
        request.state.request_id = request_id

        started = time.perf_counter()
        response = await call_next(request)
        duration_ms = (time.perf_counter() - started) * 1000

        response.headers[self.header_name] = request_id
        logger.info(
            f"{request.method} {request.url.path} {response.status_code} "
            f"{duration_ms:.0f}ms request_id={request_id}"
        )
        return response
