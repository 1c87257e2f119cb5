"""Request timing, rate limiting and security header middleware for the estimate API."""
import collections
import logging
import time
import uuid
from typing import Callable, Optional

from starlette.middleware.base import BaseHTTPMiddleware
from starlette.requests import Request
from starlette.responses import JSONResponse, Response

logger = logging.getLogger("estimate-api.middleware")

SKIP_LOG_PATHS = {"/health", "/metrics"}

# (max requests, window seconds)
UPLOAD_LIMIT = (10, 15 * 60)
GENERAL_LIMIT = (60, 60)
SWEEP_SECONDS = 60.0


class RequestTimingMiddleware(BaseHTTPMiddleware):
    """
    Middleware that:
    - Assigns a unique X-Request-ID (uuid4) to every request/response.
    - Measures end-to-end request duration in milliseconds.
    - Adds X-Process-Time header to every response.
    - Emits a structured log line for every request (except /health and /metrics).
    """

    async def dispatch(self, request: Request, call_next) -> Response:
        request_id = request.headers.get("X-Request-ID") or str(uuid.uuid4())
        start_time = time.perf_counter()
        request.state.request_id = request_id

        response: Response = await call_next(request)

        duration_ms = round((time.perf_counter() - start_time) * 1000, 2)
        response.headers["X-Request-ID"] = request_id
        response.headers["X-Process-Time"] = str(duration_ms)

        if request.url.path not in SKIP_LOG_PATHS:
            logger.info(
                "request completed",
                extra={
                    "http_method": request.method,
                    "http_path": request.url.path,
                    "http_status": response.status_code,
                    "request_id": request_id,
                    "duration_ms": duration_ms,
                },
            )
        return response


class RateLimitMiddleware(BaseHTTPMiddleware):
    """
    In-memory sliding-window rate limiter, per client IP.
    Buckets:
      - upload endpoints : 10 req / 15 min
      - everything else  : 60 req / min
    Health endpoints (/health, /metrics) are never limited.
    Idle buckets are swept at most once per SWEEP_SECONDS.
    """

    def __init__(
        self,
        app,
        upload_limit: tuple = UPLOAD_LIMIT,
        general_limit: tuple = GENERAL_LIMIT,
        clock: Callable[[], float] = time.monotonic,
    ):
        super().__init__(app)
        self.upload_limit = upload_limit
        self.general_limit = general_limit
        self._clock = clock
        # {bucket_key: deque of timestamps}; empty deques are removed
        self._windows: dict[str, collections.deque] = {}
        self._last_sweep = clock()

    def _get_limit(self, path: str) -> Optional[tuple]:
        if path in SKIP_LOG_PATHS:
            return None
        if "upload" in path:
            return self.upload_limit
        return self.general_limit

    def _window_seconds(self, bucket: str) -> float:
        limit = self.upload_limit if bucket.endswith(":upload") else self.general_limit
        return limit[1]

    def _trim(self, bucket: str, now: float) -> Optional[collections.deque]:
        window = self._windows.get(bucket)
        if window is None:
            return None
        window_seconds = self._window_seconds(bucket)
        while window and now - window[0] > window_seconds:
            window.popleft()
        if not window:
            del self._windows[bucket]
            return None
        return window

    def _sweep(self, now: float) -> None:
        if now - self._last_sweep < SWEEP_SECONDS:
            return
        self._last_sweep = now
        for bucket in list(self._windows):
            self._trim(bucket, now)

    async def dispatch(self, request: Request, call_next):
        path = request.url.path
        limit = self._get_limit(path)
        if limit is None:
            return await call_next(request)

        max_requests, window_seconds = limit
        ip = request.client.host if request.client else "unknown"
        bucket = f"{ip}:{'upload' if limit is self.upload_limit else 'general'}"
        now = self._clock()
        self._sweep(now)
        window = self._trim(bucket, now)
        if window is not None and len(window) >= max_requests:
            retry_after = int(window_seconds - (now - window[0])) + 1
            logger.warning(f"Rate limit hit for {bucket} on {path}")
            return JSONResponse(
                status_code=429,
                content={"error": "rate_limited", "detail": "Too many requests. Please slow down."},
                headers={"Retry-After": str(retry_after)},
            )
        self._windows.setdefault(bucket, collections.deque()).append(now)
        return await call_next(request)

    @property
    def bucket_count(self) -> int:
        return len(self._windows)


class SecurityHeadersMiddleware(BaseHTTPMiddleware):
    """Adds standard security headers to every response."""

    async def dispatch(self, request: Request, call_next):
        response = await call_next(request)
        response.headers["X-Content-Type-Options"] = "nosniff"
        response.headers["X-Frame-Options"] = "DENY"
        response.headers["Strict-Transport-Security"] = "max-age=31536000; includeSubDomains"
        response.headers["Referrer-Policy"] = "strict-origin-when-cross-origin"
        return response
