"""请求日志中间件"""
import logging
import time
import uuid
from typing import Callable

from fastapi import Request, Response
from starlette.middleware.base import BaseHTTPMiddleware

logger = logging.getLogger("api.request")

SKIP_PATHS = ("/health", "/docs", "/redoc", "/openapi.json", "/favicon.ico")
CALLBACK_PREFIX = "/api/payment/callback/"


class RequestLoggingMiddleware(BaseHTTPMiddleware):
    """请求日志记录中间件，支付回调单独标注来源网关"""

    async def dispatch(self, request: Request, call_next: Callable) -> Response:
        start_time = time.time()
        request_id = request.headers.get("X-Request-ID") or uuid.uuid4().hex[:16]

        method = request.method
        path = request.url.path
        client_ip = request.client.host if request.client else "unknown"
        should_log = not path.startswith(SKIP_PATHS)
        tag = f"[callback:{path[len(CALLBACK_PREFIX):]}] " if path.startswith(CALLBACK_PREFIX) else ""

        try:
            response = await call_next(request)
        except Exception:
            duration_ms = (time.time() - start_time) * 1000
            logger.exception(
                "%s%s %s - ERROR - %.2fms - %s - %s", tag, method, path, duration_ms, client_ip, request_id
            )
            raise

        duration_ms = (time.time() - start_time) * 1000
        if should_log:
            status_code = response.status_code
            log_msg = f"{tag}{method} {path} - {status_code} - {duration_ms:.2f}ms - {client_ip} - {request_id}"
            if status_code >= 500:
                logger.error(log_msg)
            elif status_code >= 400:
                logger.warning(log_msg)
            else:
                logger.info(log_msg)

        response.headers["X-Request-ID"] = request_id
        response.headers["X-Response-Time"] = f"{duration_ms:.2f}ms"
        return response
