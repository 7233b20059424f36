# SPDX-License-Identifier: Apache-2.0

import ipaddress
import logging
import time
from collections import defaultdict, deque
from typing import Deque, Optional

import redis
from fastapi import HTTPException, Request, status
from fastapi.responses import JSONResponse

from .config import settings
from .telemetry import log_json


def _limit_exceeded(limit: int, window: int) -> HTTPException:
    return HTTPException(
        status_code=status.HTTP_429_TOO_MANY_REQUESTS,
        detail="Rate limit exceeded",
        headers={
            "Retry-After": str(window),
            "X-RateLimit-Limit": str(limit),
            "X-RateLimit-Remaining": "0",
        },
    )


class InMemoryRateLimiter:
    """Sliding-window fallback for single-process dev/test use."""

    def __init__(self, max_keys: int = 5000, key_ttl_seconds: int = 900):
        self.store: dict[str, Deque[float]] = defaultdict(deque)
        self.last_seen: dict[str, float] = {}
        self.max_keys = max_keys
        self.key_ttl_seconds = key_ttl_seconds

    def _forget(self, key: str) -> None:
        self.store.pop(key, None)
        self.last_seen.pop(key, None)

    def _housekeep(self, now: float, window: int) -> None:
        cutoff = now - max(window, self.key_ttl_seconds)
        for key in [k for k, ts in self.last_seen.items() if ts < cutoff]:
            self._forget(key)
        if len(self.last_seen) >= self.max_keys:
            self._forget(min(self.last_seen, key=self.last_seen.get))

    def check(self, key: str, limit: int, window: int) -> tuple[int, int]:
        now = time.time()
        self._housekeep(now, window)
        hits = self.store[key]
        while hits and now - hits[0] > window:
            hits.popleft()
        if len(hits) >= limit:
            raise _limit_exceeded(limit, window)
        hits.append(now)
        self.last_seen[key] = now
        return limit - len(hits), limit


class RedisRateLimiter:
    """Fixed-window counter shared by every worker."""

    def __init__(self, client: redis.Redis):
        self.client = client

    def check(self, key: str, limit: int, window: int) -> tuple[int, int]:
        bucket = int(time.time()) // window
        counter_key = f"ratelimit:{key}:{bucket}"
        with self.client.pipeline() as pipe:
            pipe.incr(counter_key)
            pipe.expire(counter_key, window * 2)
            count, _ = pipe.execute()
        if count > limit:
            raise _limit_exceeded(limit, window)
        return max(0, limit - count), limit


class RateLimiter:
    def __init__(self, redis_client: Optional[redis.Redis]):
        self._memory = InMemoryRateLimiter()
        self._redis = RedisRateLimiter(redis_client) if redis_client is not None else None
        self._degraded_logged = False

    @property
    def store(self):
        return self._memory.store

    def reset(self) -> None:
        self._memory.store.clear()
        self._memory.last_seen.clear()

    def _log_degraded(self, reason: str) -> None:
        if self._degraded_logged:
            return
        self._degraded_logged = True
        log_json(30, "ratelimit_degraded", reason=reason)

    def check(self, key: str, limit: int, window: int) -> tuple[int, int]:
        if self._redis is None:
            if settings.REDIS_URL:
                self._log_degraded("redis client unavailable; using in-memory limiter")
            return self._memory.check(key, limit, window)
        try:
            return self._redis.check(key, limit, window)
        except HTTPException:
            raise
        except redis.RedisError as exc:
            self._log_degraded(f"redis error: {type(exc).__name__}")
            return self._memory.check(key, limit, window)


def _build_redis_client() -> Optional[redis.Redis]:
    if not settings.REDIS_URL:
        return None
    try:
        return redis.Redis.from_url(settings.REDIS_URL, decode_responses=True)
    except (ValueError, redis.RedisError) as exc:
        logging.warning("Failed to init Redis for rate limiting: %s", exc)
        return None


limiter = RateLimiter(_build_redis_client())

_trusted_proxy_networks = [ipaddress.ip_network(cidr, strict=False) for cidr in settings.TRUSTED_PROXY_IPS]


def _resolved_client_ip(request: Request) -> str:
    """Client IP, honoring X-Forwarded-For only from a trusted proxy."""
    client_host = request.client.host if request.client else None
    if not client_host:
        return "unknown"
    try:
        client_ip = ipaddress.ip_address(client_host)
    except ValueError:
        return client_host

    if any(client_ip in net for net in _trusted_proxy_networks):
        forwarded_for = (request.headers.get("x-forwarded-for") or "").split(",")[0].strip()
        if forwarded_for:
            try:
                return str(ipaddress.ip_address(forwarded_for))
            except ValueError:
                return str(client_ip)
    return str(client_ip)


def check_rate_limit(key: str, limit: int, window: int = 60) -> tuple[int, int]:
    """Enforce a rate limit for `key`; returns (remaining, limit) for headers."""
    return limiter.check(key, limit, window)


def _principal_key(request: Request) -> str:
    authz = request.headers.get("authorization")
    if authz and authz.lower().startswith("bearer "):
        from .auth import decode_token
        from jose import JWTError

        try:
            sub = decode_token(authz.split(" ", 1)[1]).get("sub")
        except JWTError:
            sub = None
        if sub:
            return f"user:{sub}"
    return f"ip:{_resolved_client_ip(request)}"


async def rate_limit_middleware(request: Request, call_next):
    limit = settings.RATE_LIMIT_PER_MINUTE
    try:
        remaining, _ = check_rate_limit(_principal_key(request), limit)
    except HTTPException as exc:
        # Returned rather than raised so outer middleware still decorates the response.
        return JSONResponse(status_code=exc.status_code, content={"detail": exc.detail}, headers=exc.headers)

    response = await call_next(request)
    response.headers["X-RateLimit-Limit"] = str(limit)
    response.headers["X-RateLimit-Remaining"] = str(remaining)
    return response
