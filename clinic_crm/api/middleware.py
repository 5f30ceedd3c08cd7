"""API middleware for request logging."""

import logging
import time
import uuid
from typing import Callable

from fastapi import Request, Response
from starlette.middleware.base import BaseHTTPMiddleware

logger = logging.getLogger(__name__)

REQUEST_ID_HEADER = "X-Request-Id"


class RequestLoggingMiddleware(BaseHTTPMiddleware):
    """Logs each request with its tenant, outcome and duration.

    A caller-supplied ``X-Request-Id`` is echoed back; otherwise one is generated.
    """

    async def dispatch(self, request: Request, call_next: Callable) -> Response:
        start_time = time.time()
        request_id = request.headers.get(REQUEST_ID_HEADER) or uuid.uuid4().hex[:12]
        tenant = request.headers.get("X-Tenant-Id", "-")

        logger.info(f"[{request_id}] {request.method} {request.url.path} tenant={tenant}")

        response = await call_next(request)

        duration = time.time() - start_time
        level = logging.WARNING if response.status_code >= 500 else logging.INFO
        logger.log(
            level,
            f"[{request_id}] {request.method} {request.url.path} "
            f"status={response.status_code} duration={duration:.3f}s",
        )
        response.headers[REQUEST_ID_HEADER] = request_id
        response.headers["X-Process-Time"] = f"{duration:.3f}"

        return response
