# SPDX-License-Identifier: Apache-2.0

import logging
from contextlib import asynccontextmanager
from typing import Optional

import httpx
import redis
from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse, PlainTextResponse
from pydantic import BaseModel

from .config import settings
from .db import ping_db
from .errors import ChatError
from .metrics import metrics_endpoint
from .middleware import (
    correlation_id_middleware,
    csrf_middleware,
    http_metrics_middleware,
    json_body_limit_middleware,
    security_headers_middleware,
)
from .rate_limit import rate_limit_middleware
from .routes import admin, chat
from .security_gate import run_security_gate
from .services.gateway import build_gateway_client
from .telemetry import log_json, setup_logging


class HealthStatus(BaseModel):
    database: bool
    redis: bool
    gateway_configured: bool


logger = setup_logging()


def create_app(gateway_transport: Optional[httpx.AsyncBaseTransport] = None) -> FastAPI:
    """
    Build the application.

    ``gateway_transport`` replaces the network transport of the upstream client;
    tests pass an ``httpx.MockTransport`` here.
    """

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        logger.info("Validating configuration at startup...")
        try:
            run_security_gate()
        except ValueError as exc:
            logger.error("Configuration validation failed: %s", exc)
            raise RuntimeError(f"Invalid configuration: {exc}") from exc
        app.state.gateway = build_gateway_client(settings, transport=gateway_transport)
        log_json(20, "gateway_client_ready", base_url=settings.GATEWAY_BASE_URL, model=settings.GATEWAY_MODEL)
        try:
            yield
        finally:
            await app.state.gateway.aclose()
            log_json(20, "gateway_client_closed")

    app = FastAPI(title="Dashboard Chat Backend", version="0.1.0", lifespan=lifespan)

    # Registration order is inside-out: the last middleware added runs first.
    app.middleware("http")(json_body_limit_middleware)
    app.middleware("http")(security_headers_middleware)
    app.middleware("http")(http_metrics_middleware)
    app.add_middleware(
        CORSMiddleware,
        allow_origins=[str(o) for o in settings.CORS_ORIGINS] or ["http://localhost:5173"],
        allow_credentials=settings.CORS_ALLOW_CREDENTIALS,
        allow_methods=settings.CORS_ALLOW_METHODS,
        allow_headers=settings.CORS_ALLOW_HEADERS,
        expose_headers=["X-Request-ID", "X-RateLimit-Limit", "X-RateLimit-Remaining"],
    )
    app.middleware("http")(csrf_middleware)
    app.middleware("http")(rate_limit_middleware)
    app.middleware("http")(correlation_id_middleware)

    @app.exception_handler(ChatError)
    async def _chat_error_handler(request: Request, exc: ChatError):
        return JSONResponse(status_code=exc.status_code, content={"error": exc.message})

    @app.exception_handler(Exception)
    async def _global_exc_handler(request: Request, exc: Exception):
        logger.exception(
            "Unhandled exception on %s %s",
            request.method,
            request.url.path,
            exc_info=exc,
            extra={"method": request.method, "path": request.url.path},
        )
        resp = JSONResponse(status_code=500, content={"detail": "Internal server error"})
        rid = getattr(getattr(request, "state", None), "request_id", None)
        if rid:
            resp.headers["X-Request-ID"] = rid
        return resp

    app.include_router(chat.router, prefix="/api")
    app.include_router(admin.router, prefix="/api")

    @app.get(
        "/metrics",
        response_class=PlainTextResponse,
        responses={
            200: {"content": {"text/plain": {}}},
            403: {"description": "Forbidden"},
        },
    )
    async def metrics(request: Request):
        client_ip = request.client.host if request.client else "unknown"
        if not settings.METRICS_ALLOW_ALL and client_ip not in {"127.0.0.1", "::1"}:
            return JSONResponse(status_code=403, content={"error": "Forbidden"})
        return await metrics_endpoint()

    @app.get(
        "/health",
        response_model=HealthStatus,
        responses={
            200: {"model": HealthStatus},
            503: {"model": HealthStatus},
        },
    )
    def health():
        db_ok = ping_db()
        redis_ok = True
        if settings.REDIS_URL:
            try:
                client = redis.Redis.from_url(settings.REDIS_URL, socket_connect_timeout=1, socket_timeout=1)
                redis_ok = bool(client.ping())
            except redis.RedisError as exc:
                logging.warning("Redis health check failed: %s", exc)
                redis_ok = False
        # The gateway is not probed; a chat exchange is the only meaningful check.
        status = {"database": db_ok, "redis": redis_ok, "gateway_configured": bool(settings.GATEWAY_BASE_URL)}
        code = 200 if db_ok and redis_ok else 503
        return JSONResponse(status_code=code, content=status)

    return app


app = create_app()
