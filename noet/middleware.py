from __future__ import annotations

import logging
import time

from fastapi import Request
from fastapi.responses import JSONResponse
from starlette.datastructures import Headers
from starlette.exceptions import HTTPException
from starlette.middleware.base import BaseHTTPMiddleware
from starlette.types import ASGIApp, Message, Receive, Scope, Send

logger = logging.getLogger(__name__)

BODY_TOO_LARGE = "Request body too large"

CONTENT_SECURITY_POLICY = "; ".join(
    [
        "default-src 'self'",
        "style-src 'self' 'unsafe-inline'",
        "script-src 'self' 'unsafe-eval' 'unsafe-inline' https://cdnjs.cloudflare.com https://unpkg.com https://cdn.jsdelivr.net",
        "img-src 'self' data: blob:",
        "worker-src 'self' blob: data: https://cdnjs.cloudflare.com https://unpkg.com https://cdn.jsdelivr.net",
        "object-src 'self' data:",
        "frame-src 'self'",
        "connect-src 'self' https://cdnjs.cloudflare.com https://unpkg.com https://cdn.jsdelivr.net",
        "font-src 'self' https://cdnjs.cloudflare.com",
    ]
)

SECURITY_HEADERS = {
    "Content-Security-Policy": CONTENT_SECURITY_POLICY,
    "X-Content-Type-Options": "nosniff",
    "X-Frame-Options": "SAMEORIGIN",
    "Referrer-Policy": "no-referrer",
    "Cross-Origin-Resource-Policy": "cross-origin",
}


class SecurityHeadersMiddleware(BaseHTTPMiddleware):
    async def dispatch(self, request: Request, call_next):
        response = await call_next(request)
        for name, value in SECURITY_HEADERS.items():
            response.headers.setdefault(name, value)
        return response


class BodySizeLimitMiddleware:
    """Rejects bodies over ``max_bytes``, declared or streamed.

    A declared Content-Length over the cap is refused before the app runs.
    Chunked bodies are counted as they are read and abort the request with
    a 413 once the running total passes the cap.
    """

    def __init__(self, app: ASGIApp, max_bytes: int):
        self.app = app
        self.max_bytes = max_bytes

    async def __call__(self, scope: Scope, receive: Receive, send: Send) -> None:
        if scope["type"] != "http":
            await self.app(scope, receive, send)
            return

        declared = Headers(scope=scope).get("content-length")
        if declared and declared.isdigit() and int(declared) > self.max_bytes:
            logger.warning("Rejected %s %s: body of %s bytes", scope["method"], scope["path"], declared)
            response = JSONResponse(status_code=413, content={"error": BODY_TOO_LARGE})
            await response(scope, receive, send)
            return

        received = 0

        async def counting_receive() -> Message:
            nonlocal received
            message = await receive()
            if message["type"] == "http.request":
                received += len(message.get("body", b""))
                if received > self.max_bytes:
                    logger.warning("Rejected %s %s: streamed body over %s bytes", scope["method"], scope["path"], self.max_bytes)
                    raise HTTPException(status_code=413, detail=BODY_TOO_LARGE)
            return message

        await self.app(scope, counting_receive, send)


class RateLimitMiddleware(BaseHTTPMiddleware):
    """Fixed-window request counter per client IP, kept in memory."""

    message = "Too many requests from this IP, please try again later."

    def __init__(self, app: ASGIApp, max_requests: int, window_seconds: int):
        super().__init__(app)
        self.max_requests = max_requests
        self.window_seconds = window_seconds
        self._windows: dict[str, tuple[float, int]] = {}

    def _hit(self, client: str, now: float) -> tuple[int, float]:
        start, count = self._windows.get(client, (now, 0))
        if now - start >= self.window_seconds:
            start, count = now, 0
        count += 1
        self._windows[client] = (start, count)
        if len(self._windows) > 10_000:
            self._windows = {k: v for k, v in self._windows.items() if now - v[0] < self.window_seconds}
        return count, start + self.window_seconds - now

    async def dispatch(self, request: Request, call_next):
        client = request.client.host if request.client else "unknown"
        count, reset_in = self._hit(client, time.monotonic())
        remaining = max(self.max_requests - count, 0)
        headers = {
            "RateLimit-Limit": str(self.max_requests),
            "RateLimit-Remaining": str(remaining),
            "RateLimit-Reset": str(max(int(reset_in), 0)),
        }
        if count > self.max_requests:
            logger.warning("Rate limit exceeded for %s on %s %s", client, request.method, request.url.path)
            headers["Retry-After"] = headers["RateLimit-Reset"]
            return JSONResponse(status_code=429, content={"error": self.message}, headers=headers)

        response = await call_next(request)
        response.headers.update(headers)
        return response
