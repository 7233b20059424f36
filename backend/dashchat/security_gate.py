# SPDX-License-Identifier: Apache-2.0

"""
Startup checks for prod-like environments (staging, production).

Each check raises RuntimeError on a setting that would make the deployment
unsafe; ``run_security_gate`` runs them in order and the app refuses to start
on the first failure.
"""

import logging
from urllib.parse import urlsplit

import redis

from .config import DEV_DEFAULT_JWT_SECRET, settings

logger = logging.getLogger(__name__)

PROD_LIKE = {"staging", "production"}
_LOOPBACK_HOSTS = {"localhost", "127.0.0.1", "::1"}


def _check_strict_mode(prod_like: bool) -> None:
    if prod_like and not settings.STRICT_MODE:
        raise RuntimeError("STRICT_MODE cannot be disabled in staging/production environments.")


def _check_jwt_secret(prod_like: bool) -> None:
    secret = settings.JWT_SECRET or ""
    if not secret:
        raise RuntimeError("CRITICAL SECURITY ERROR: JWT_SECRET is not set")
    weak = len(secret) < 32 or secret == DEV_DEFAULT_JWT_SECRET or "dev_secret" in secret
    if prod_like and weak:
        raise RuntimeError("CRITICAL SECURITY ERROR: Weak JWT_SECRET detected; set a unique 32+ character secret.")


def _check_csrf(prod_like: bool) -> None:
    if settings.REQUIRE_CSRF_HEADER:
        return
    if prod_like:
        raise RuntimeError(
            "CRITICAL SECURITY ERROR: CSRF protection is disabled (REQUIRE_CSRF_HEADER=false). "
            "Enable it for all staging/production environments."
        )
    logger.warning("CSRF protection is disabled (REQUIRE_CSRF_HEADER=false); development use only.")


def _check_gateway(prod_like: bool) -> None:
    if not prod_like:
        return
    parts = urlsplit(settings.GATEWAY_BASE_URL)
    if parts.scheme != "https" and (parts.hostname or "") not in _LOOPBACK_HOSTS:
        raise RuntimeError("CRITICAL SECURITY ERROR: GATEWAY_BASE_URL must use https unless it points at localhost.")
    if not settings.GATEWAY_TOKEN:
        logger.warning("GATEWAY_TOKEN is not set; upstream requests will be sent without credentials.")


def _check_redis(prod_like: bool) -> None:
    if not (prod_like and settings.REQUIRE_REDIS_IN_PRODUCTION):
        return
    if not settings.REDIS_URL:
        raise RuntimeError(
            "CRITICAL SECURITY ERROR: REDIS_URL must be set in staging/production when Redis is required."
        )
    try:
        reachable = redis.Redis.from_url(settings.REDIS_URL, socket_timeout=1, socket_connect_timeout=1).ping()
    except redis.RedisError as exc:  # pragma: no cover - startup guard
        raise RuntimeError("CRITICAL SECURITY ERROR: Redis is required but unreachable.") from exc
    if not reachable:
        raise RuntimeError("CRITICAL SECURITY ERROR: Redis is required but unreachable.")


CHECKS = (_check_strict_mode, _check_jwt_secret, _check_csrf, _check_gateway, _check_redis)


def run_security_gate() -> None:
    prod_like = settings.ENVIRONMENT.lower() in PROD_LIKE
    logger.info("Running security gate checks (environment=%s)", settings.ENVIRONMENT)
    for check in CHECKS:
        check(prod_like)
    logger.info("Security gate checks passed")
