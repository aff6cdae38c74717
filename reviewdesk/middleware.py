"""HTTP middleware for the REST API: request logging, body size limit, rate limiting."""

from __future__ import annotations

import asyncio
import logging
import time
from collections import defaultdict, deque

from fastapi.responses import JSONResponse
from starlette.middleware.base import BaseHTTPMiddleware
from starlette.requests import Request

logger = logging.getLogger("reviewdesk.http")


class RequestLoggingMiddleware(BaseHTTPMiddleware):
    """Log every request with its timing; unhandled errors become a logged 500."""

    async def dispatch(self, request: Request, call_next):
        start = time.perf_counter()
        try:
            response = await call_next(request)
        except Exception:
            logger.exception("Unhandled error on %s %s", request.method, request.url.path)
            return JSONResponse(status_code=500, content={"detail": "Internal server error"})
        logger.info(
            "%s %s -> %d (%.1f ms)",
            request.method,
            request.url.path,
            response.status_code,
            (time.perf_counter() - start) * 1000,
        )
        return response


class RequestSizeLimitMiddleware(BaseHTTPMiddleware):
    """Reject request bodies above the configured size limit; review files ride inside the body."""

    def __init__(self, app, max_bytes: int):
        super().__init__(app)
        self.max_bytes = max_bytes

    async def dispatch(self, request: Request, call_next):
        content_length = request.headers.get("content-length")
        if content_length is None:
            return await call_next(request)
        try:
            size = int(content_length)
        except ValueError:
            return JSONResponse(status_code=400, content={"detail": "Invalid Content-Length header"})
        if size > self.max_bytes:
            return JSONResponse(
                status_code=413,
                content={"detail": f"Request body too large (> {self.max_bytes} bytes)"},
            )
        return await call_next(request)


class RateLimitMiddleware(BaseHTTPMiddleware):
    """Sliding one-minute window per caller (API key, actor header, or client address)."""

    def __init__(self, app, requests_per_minute: int):
        super().__init__(app)
        self.rpm = max(1, requests_per_minute)
        self.window_seconds = 60.0
        self._hits: dict[str, deque[float]] = defaultdict(deque)
        self._lock = asyncio.Lock()

    def _caller(self, request: Request) -> str:
        return (
            request.headers.get("X-API-Key")
            or request.headers.get("X-Actor-Id")
            or (request.client.host if request.client else "unknown")
        )

    async def dispatch(self, request: Request, call_next):
        key = self._caller(request)
        now = time.monotonic()

        async with self._lock:
            bucket = self._hits[key]
            cutoff = now - self.window_seconds
            while bucket and bucket[0] < cutoff:
                bucket.popleft()

            if len(bucket) >= self.rpm:
                retry_after = int(max(1, self.window_seconds - (now - bucket[0])))
                logger.warning("Rate limit hit for %s", key[:12])
                return JSONResponse(
                    status_code=429,
                    content={"detail": "Rate limit exceeded"},
                    headers={"Retry-After": str(retry_after)},
                )
            bucket.append(now)

        return await call_next(request)
