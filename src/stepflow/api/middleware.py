"""
API 中间件
"""
import time
import uuid
import logging
from typing import Callable
from fastapi import Request, Response
from starlette.middleware.base import BaseHTTPMiddleware


logger = logging.getLogger(__name__)


class RequestLoggingMiddleware(BaseHTTPMiddleware):
    """请求日志中间件"""

    async def dispatch(self, request: Request, call_next: Callable) -> Response:
        request_id = request.headers.get("X-Request-ID") or str(uuid.uuid4())
        request.state.request_id = request_id

        start_time = time.monotonic()
        logger.info(f"Request started: {request.method} {request.url.path} [request_id={request_id}]")

        response = await call_next(request)

        duration = time.monotonic() - start_time
        response.headers["X-Request-ID"] = request_id
        response.headers["X-Process-Time"] = f"{duration:.6f}"

        logger.info(
            f"Request completed: {request.method} {request.url.path} "
            f"[request_id={request_id}] "
            f"[status={response.status_code}] "
            f"[duration={duration:.3f}s]"
        )

        return response
