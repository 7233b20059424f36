# SPDX-License-Identifier: Apache-2.0

"""
Structured JSON logging.

Call sites log a dict through ``log_json``; ``JsonFormatter`` renders it on one
line together with the request id and user id bound by the middleware and auth
dependency. Header dicts and upstream error text never reach the output as-is.
"""

import datetime
import json
import logging
import sys
import traceback
from contextvars import ContextVar, Token
from typing import Any, Dict, Optional

_request_id_ctx: ContextVar[Optional[str]] = ContextVar("request_id", default=None)
_user_id_ctx: ContextVar[Optional[int]] = ContextVar("user_id", default=None)

REDACTED = "[REDACTED]"
_SECRET_HEADERS = frozenset(
    {"authorization", "proxy-authorization", "cookie", "set-cookie", "x-api-key", "x-internal-api-key"}
)
_SECRET_SUFFIXES = ("-token", "-secret", "-key")
_HEADER_FIELDS = frozenset({"headers", "request_headers", "response_headers"})

# Attributes every LogRecord carries; anything else came in through ``extra=``.
_STANDARD_ATTRS = frozenset(vars(logging.LogRecord("", 0, "", 0, "", None, None))) | {"message", "taskName"}


def _is_secret_header(name: str) -> bool:
    lowered = name.lower()
    return lowered in _SECRET_HEADERS or lowered.endswith(_SECRET_SUFFIXES)


def scrub_sensitive_headers(headers: Dict[str, str]) -> Dict[str, str]:
    """Copy of ``headers`` with credential-bearing values replaced."""
    return {name: REDACTED if _is_secret_header(name) else value for name, value in headers.items()}


def _scrub_header_fields(payload: Dict[str, Any]) -> Dict[str, Any]:
    return {
        key: scrub_sensitive_headers(value)
        if isinstance(key, str) and key.lower() in _HEADER_FIELDS and isinstance(value, dict)
        else value
        for key, value in payload.items()
    }


def redact_upstream_error(exc: BaseException | None) -> Dict[str, Any]:
    """
    Return a scrubbed view of a gateway/transport error.

    Exception messages from HTTP clients can echo request bodies, which here means
    the user's prompt, so only the type and status are kept.
    """
    if exc is None:
        return {}
    response = getattr(exc, "response", None)
    return {
        "error_type": type(exc).__name__,
        "status_code": getattr(response, "status_code", None),
        "detail": REDACTED,
    }


class JsonFormatter(logging.Formatter):
    """One JSON object per record; dict messages are merged in as fields."""

    def format(self, record: logging.LogRecord) -> str:
        if isinstance(record.msg, dict):
            payload: Dict[str, Any] = dict(record.msg)
            payload.setdefault("message", payload.get("event"))
        else:
            payload = {"message": record.getMessage()}

        payload.setdefault("timestamp", datetime.datetime.now(datetime.timezone.utc).isoformat())
        payload.setdefault("level", record.levelname)
        payload.setdefault("logger", record.name)

        request_id = getattr(record, "request_id", None) or _request_id_ctx.get()
        if request_id:
            payload.setdefault("request_id", request_id)
        user_id = getattr(record, "user_id", None) or _user_id_ctx.get()
        if user_id is not None:
            payload.setdefault("user_id", user_id)

        extra = {
            key: value
            for key, value in vars(record).items()
            if key not in _STANDARD_ATTRS and key not in payload and not key.startswith("_")
        }
        if extra:
            payload.setdefault("context", _scrub_header_fields(extra))

        if record.exc_info:
            payload["stack"] = "".join(traceback.format_exception(*record.exc_info))
        elif record.stack_info:
            payload["stack"] = record.stack_info

        return json.dumps(_scrub_header_fields(payload), default=str)


def setup_logging(level: int = logging.INFO) -> logging.Logger:
    """Configure root logger to emit JSON structured logs."""
    root = logging.getLogger()
    if root.handlers:
        for handler in root.handlers:
            handler.setFormatter(JsonFormatter())
    else:
        handler = logging.StreamHandler(sys.stdout)
        handler.setFormatter(JsonFormatter())
        root.addHandler(handler)
    root.setLevel(level)
    # httpx logs every request line at INFO, including the gateway URL
    logging.getLogger("httpx").setLevel(logging.WARNING)
    return root


def _restore(var: ContextVar, token: Optional[Token]) -> None:
    if token is None:
        var.set(None)
        return
    try:
        var.reset(token)
    except (ValueError, RuntimeError):
        # Token from another context, or already used.
        var.set(None)


def bind_request_context(request_id: Optional[str]) -> Token:
    return _request_id_ctx.set(request_id)


def clear_request_context(token: Optional[Token] = None) -> None:
    _restore(_request_id_ctx, token)


def bind_user_context(user_id: Optional[int]) -> Token:
    return _user_id_ctx.set(user_id)


def clear_user_context(token: Optional[Token] = None) -> None:
    _restore(_user_id_ctx, token)


def log_json(level: int, event: str, **fields: Any) -> None:
    """Log ``event`` with ``fields`` as a structured record on the root logger."""
    payload: Dict[str, Any] = _scrub_header_fields({"event": event, **fields})
    request_id = _request_id_ctx.get()
    if request_id:
        payload.setdefault("request_id", request_id)
    user_id = _user_id_ctx.get()
    if user_id is not None:
        payload.setdefault("user_id", user_id)
    logging.getLogger().log(level, payload)
