"""
Middleware for gox HTTP servers.

`default_middlewares` returns the canonical chain, outermost first, ready to
hand to a Starlette/FastAPI application. The timeout and recovery layers come
first so they see slow and failing inner handlers.
"""

import asyncio
import itertools
import secrets
import socket
import time
from dataclasses import dataclass, field
from email.utils import formatdate
from typing import Any, List, Optional

from fastapi import Request
from starlette.middleware import Middleware
from starlette.middleware.base import BaseHTTPMiddleware, RequestResponseEndpoint
from starlette.middleware.cors import CORSMiddleware
from starlette.responses import Response
from starlette.types import ASGIApp

from gox.config import must_get_env
from gox.logging import get_logger, request_id_var

DEFAULT_REQUEST_TIMEOUT = 60.0

REQUEST_ID_HEADER = "X-Request-Id"

EPOCH = formatdate(0, usegmt=True)

NO_CACHE_HEADERS = {
    "Expires": EPOCH,
    "Cache-Control": "no-cache, no-store, no-transform, must-revalidate, private, max-age=0",
    "Pragma": "no-cache",
    "X-Accel-Expires": "0",
}

ETAG_HEADERS = (
    b"etag",
    b"if-modified-since",
    b"if-match",
    b"if-none-match",
    b"if-range",
    b"if-unmodified-since",
)


class TimeoutMiddleware(BaseHTTPMiddleware):
    """Answer 504 when the inner app takes longer than `timeout` seconds."""

    def __init__(self, app: ASGIApp, timeout: float = DEFAULT_REQUEST_TIMEOUT):
        super().__init__(app)
        self.timeout = timeout

    async def dispatch(self, request: Request, call_next: RequestResponseEndpoint) -> Response:
        try:
            return await asyncio.wait_for(call_next(request), timeout=self.timeout)
        except asyncio.TimeoutError:
            return Response(status_code=504)


def _request_id_prefix() -> str:
    hostname = socket.gethostname() or "localhost"
    return f"{hostname}/{secrets.token_urlsafe(8)[:10]}"


class RequestIDMiddleware(BaseHTTPMiddleware):
    """Tag every request with an ID, reusing the client's X-Request-Id."""

    def __init__(self, app: ASGIApp, header_name: str = REQUEST_ID_HEADER):
        super().__init__(app)
        self.header_name = header_name
        self._prefix = _request_id_prefix()
        self._counter = itertools.count(1)

    def next_id(self) -> str:
        return f"{self._prefix}-{next(self._counter):06d}"

    async def dispatch(self, request: Request, call_next: RequestResponseEndpoint) -> Response:
        request_id = request.headers.get(self.header_name) or self.next_id()
        request.state.request_id = request_id
        token = request_id_var.set(request_id)
        try:
            response = await call_next(request)
        finally:
            request_id_var.reset(token)
        response.headers.setdefault(self.header_name, request_id)
        return response


class RealIPMiddleware(BaseHTTPMiddleware):
    """Replace the peer address with the one reported by proxy headers."""

    async def dispatch(self, request: Request, call_next: RequestResponseEndpoint) -> Response:
        ip = real_ip(request)
        if ip:
            port = request.client.port if request.client else 0
            request.scope["client"] = (ip, port)
        return await call_next(request)


def real_ip(request: Request) -> Optional[str]:
    """Client IP from True-Client-IP, X-Real-IP or X-Forwarded-For."""
    for header in ("true-client-ip", "x-real-ip"):
        value = request.headers.get(header)
        if value:
            return value.strip()
    forwarded = request.headers.get("x-forwarded-for")
    if forwarded:
        return forwarded.split(",")[0].strip()
    return None


class RecovererMiddleware(BaseHTTPMiddleware):
    """Log exceptions escaping the inner app and answer 500."""

    def __init__(self, app: ASGIApp):
        super().__init__(app)
        self.logger = get_logger("gox.rest.recoverer")

    async def dispatch(self, request: Request, call_next: RequestResponseEndpoint) -> Response:
        try:
            return await call_next(request)
        except Exception:
            self.logger.error(
                "Unhandled exception",
                method=request.method,
                path=request.url.path,
                exc_info=True
            )
            return Response(status_code=500)


class SetHeaderMiddleware(BaseHTTPMiddleware):
    """Set a response header unless the handler already set it."""

    def __init__(self, app: ASGIApp, name: str, value: str):
        super().__init__(app)
        self.name = name
        self.value = value

    async def dispatch(self, request: Request, call_next: RequestResponseEndpoint) -> Response:
        response = await call_next(request)
        response.headers.setdefault(self.name, self.value)
        return response


class NoCacheMiddleware(BaseHTTPMiddleware):
    """Strip conditional request headers and forbid caching of responses."""

    async def dispatch(self, request: Request, call_next: RequestResponseEndpoint) -> Response:
        request.scope["headers"] = [
            (name, value) for name, value in request.scope["headers"]
            if name.lower() not in ETAG_HEADERS
        ]
        response = await call_next(request)
        for name, value in NO_CACHE_HEADERS.items():
            response.headers[name] = value
        return response


class RequestLoggerMiddleware(BaseHTTPMiddleware):
    """Log method, path, query, status and latency of every request."""

    def __init__(self, app: ASGIApp, logger: Any):
        super().__init__(app)
        self.logger = logger

    async def dispatch(self, request: Request, call_next: RequestResponseEndpoint) -> Response:
        method = request.method
        path = request.url.path
        query = request.url.query
        status_code = 500

        t0 = time.monotonic()
        try:
            response = await call_next(request)
            status_code = response.status_code
            return response
        finally:
            latency = time.monotonic() - t0
            log = self.logger.error if status_code >= 500 else self.logger.info
            log(
                f"request handled: {method} {path}",
                code=status_code,
                query=query,
                latency=latency
            )


@dataclass
class CorsOptions:
    """Cross-origin policy applied through Starlette's CORSMiddleware."""

    allowed_origins: List[str] = field(default_factory=lambda: ["*"])
    allowed_methods: List[str] = field(default_factory=list)
    allowed_headers: List[str] = field(default_factory=list)
    exposed_headers: List[str] = field(default_factory=list)
    allow_credentials: bool = False
    max_age: int = 600

    def middleware(self) -> Middleware:
        return Middleware(
            CORSMiddleware,
            allow_origins=self.allowed_origins,
            allow_methods=self.allowed_methods,
            allow_headers=self.allowed_headers,
            expose_headers=self.exposed_headers,
            allow_credentials=self.allow_credentials,
            max_age=self.max_age,
        )


def allowed_origins_from_env() -> List[str]:
    """Origins listed in CORS_ALLOWED_ORIGINS, separated by semicolons."""
    origins = [o.strip() for o in must_get_env("CORS_ALLOWED_ORIGINS", "*").split(";")]
    return [o for o in origins if o] or ["*"]


def default_cors_options() -> CorsOptions:
    return CorsOptions(
        allowed_origins=allowed_origins_from_env(),
        allowed_methods=["GET", "POST", "PUT", "PATCH", "DELETE", "OPTIONS"],
        allowed_headers=["Accept", "Authorization", "Content-Type", "X-CSRF-Token"],
        exposed_headers=["Link"],
        allow_credentials=True,
        max_age=300,
    )


def default_middlewares() -> List[Middleware]:
    return [
        Middleware(TimeoutMiddleware, timeout=DEFAULT_REQUEST_TIMEOUT),
        Middleware(RequestIDMiddleware),
        Middleware(RealIPMiddleware),
        Middleware(RecovererMiddleware),
        Middleware(SetHeaderMiddleware, name="X-Content-Type-Options", value="nosniff"),
        Middleware(SetHeaderMiddleware, name="X-Frame-Options", value="deny"),
        Middleware(NoCacheMiddleware),
    ]
