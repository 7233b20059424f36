# SPDX-License-Identifier: Apache-2.0

"""HTTP middleware stack; registered in order by ``main.create_app``."""

import re
import time
import uuid

from fastapi.responses import JSONResponse
from starlette.requests import Request

from .config import settings
from .metrics import http_request_duration, http_requests_total
from .telemetry import (
    bind_request_context,
    clear_request_context,
    clear_user_context,
    log_json,
    scrub_sensitive_headers,
)

_REQUEST_ID_RE = re.compile(r"[A-Za-z0-9\-]{8,64}")
_UNSAFE_METHODS = {"POST", "PUT", "PATCH", "DELETE"}
_CSRF_EXEMPT_PATHS = {"/health", "/metrics"}


def request_id_for(request: Request) -> str:
    """Client-supplied X-Request-ID when well formed, otherwise a fresh UUID."""
    cid = request.headers.get("X-Request-ID")
    if cid and _REQUEST_ID_RE.fullmatch(cid):
        return cid
    return str(uuid.uuid4())


async def correlation_id_middleware(request: Request, call_next):
    rid = request_id_for(request)
    request.state.request_id = rid
    ctx_token = bind_request_context(rid)
    clear_user_context()
    start = time.perf_counter()
    headers = scrub_sensitive_headers(dict(request.headers))
    try:
        response = await call_next(request)
    except Exception as exc:
        log_json(
            40,
            "request_failed",
            path=request.url.path,
            method=request.method,
            dur_ms=int((time.perf_counter() - start) * 1000),
            error_type=type(exc).__name__,
            request_headers=headers,
        )
        clear_request_context(ctx_token)
        clear_user_context()
        raise

    try:
        response.headers["X-Request-ID"] = rid
        # Streaming responses log here at header time, not when the body ends.
        log_json(
            20,
            "request_complete",
            path=request.url.path,
            method=request.method,
            status=response.status_code,
            dur_ms=int((time.perf_counter() - start) * 1000),
            request_headers=headers,
        )
    finally:
        clear_request_context(ctx_token)
        clear_user_context()
    return response


async def csrf_middleware(request: Request, call_next):
    """Require X-Requested-With on state-changing requests."""
    if (
        settings.REQUIRE_CSRF_HEADER
        and request.method in _UNSAFE_METHODS
        and request.url.path not in _CSRF_EXEMPT_PATHS
        and request.headers.get("X-Requested-With") != "XMLHttpRequest"
    ):
        return JSONResponse(status_code=403, content={"detail": "CSRF check failed: X-Requested-With header required"})
    return await call_next(request)


async def http_metrics_middleware(request: Request, call_next):
    start = time.perf_counter()
    response = await call_next(request)
    route = request.scope.get("route")
    endpoint = getattr(route, "path", None) or request.url.path
    http_requests_total.labels(method=request.method, endpoint=endpoint, status=str(response.status_code)).inc()
    http_request_duration.labels(method=request.method, endpoint=endpoint).observe(time.perf_counter() - start)
    return response


def _csp_directives() -> list[str]:
    allow_inline = settings.ENVIRONMENT in {"development", "test"}
    inline = " 'unsafe-inline'" if allow_inline else ""
    connect_targets = ["'self'"]
    if allow_inline:
        connect_targets.extend(str(o) for o in settings.CORS_ORIGINS or ["http://localhost:5173"])
    return [
        "default-src 'self'",
        f"script-src 'self'{inline}",
        f"style-src 'self'{inline}",
        "img-src 'self' data: https:",
        "font-src 'self' data:",
        "connect-src " + " ".join(dict.fromkeys(connect_targets)),
        "frame-ancestors 'none'",
        "base-uri 'self'",
        "form-action 'self'",
    ]


async def security_headers_middleware(request: Request, call_next):
    response = await call_next(request)
    response.headers.setdefault("X-Content-Type-Options", "nosniff")
    response.headers.setdefault("Referrer-Policy", "strict-origin-when-cross-origin")
    response.headers.setdefault("X-Frame-Options", "DENY")
    response.headers.setdefault("Content-Security-Policy", "; ".join(_csp_directives()))
    response.headers.setdefault(
        "Permissions-Policy",
        "geolocation=(),microphone=(),camera=(),payment=(),usb=()",
    )
    if request.url.scheme == "https":
        response.headers.setdefault("Strict-Transport-Security", "max-age=31536000; includeSubDomains; preload")
    return response


async def json_body_limit_middleware(request: Request, call_next):
    """Reject request bodies above MAX_JSON_MB before they reach a route."""
    max_bytes = settings.MAX_JSON_MB * 1024 * 1024
    cl = request.headers.get("content-length")
    if cl and cl.isdigit() and int(cl) > max_bytes:
        return JSONResponse(status_code=413, content={"detail": "Request body too large"})
    if request.method not in _UNSAFE_METHODS:
        return await call_next(request)

    received = 0
    chunks: list[bytes] = []
    try:
        async for chunk in request.stream():
            received += len(chunk)
            if received > max_bytes:
                return JSONResponse(status_code=413, content={"detail": "Request body too large"})
            chunks.append(chunk)
    except (RuntimeError, ValueError, TypeError):
        return JSONResponse(status_code=400, content={"detail": "Invalid request body"})

    request._body = b"".join(chunks)  # type: ignore[attr-defined]
    return await call_next(request)
