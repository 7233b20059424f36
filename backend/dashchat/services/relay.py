# SPDX-License-Identifier: Apache-2.0

"""
Streaming relay between the completion gateway and one client connection.

States::

    INIT -> CONNECTING -> UPSTREAM_ERROR
                       -> STREAMING -> DONE
                                    -> ABORTED

Every upstream ``data:`` line is forwarded verbatim and, as a separate step,
parsed for ``choices[].delta.content``. A line that cannot be parsed is still
forwarded. The assistant turn is persisted only on DONE, before the final
``[DONE]`` frame is released; an aborted exchange discards what it accumulated.
"""

from __future__ import annotations

import asyncio
import enum
import json
import time
from typing import Any, AsyncIterator, Awaitable, Callable, Dict, List, Optional

import httpx
from starlette.concurrency import run_in_threadpool

from ..errors import ChatError, MalformedUpstreamFrame, TransportFailure, UpstreamRejected
from ..metrics import chat_streams_total, gateway_latency
from ..telemetry import log_json, redact_upstream_error
from .gateway import GatewayClient

DATA_PREFIX = "data: "
DONE_SENTINEL = "[DONE]"
DONE_FRAME = f"{DATA_PREFIX}{DONE_SENTINEL}\n\n"
ERROR_BODY_PREVIEW_BYTES = 512

TRANSPORT_ERRORS = (httpx.HTTPError, httpx.StreamError, OSError, asyncio.TimeoutError)


class RelayState(str, enum.Enum):
    INIT = "init"
    CONNECTING = "connecting"
    UPSTREAM_ERROR = "upstream_error"
    STREAMING = "streaming"
    DONE = "done"
    ABORTED = "aborted"


def error_frame(exc: ChatError) -> str:
    payload: Dict[str, Any] = {"error": exc.message, "code": exc.code}
    if isinstance(exc, UpstreamRejected):
        payload["status"] = exc.upstream_status
    return f"{DATA_PREFIX}{json.dumps(payload)}\n\n"


def extract_delta_text(data: str) -> List[str]:
    """
    Text deltas carried by one frame payload, in choice order.

    Frames without choices (keepalives, usage summaries) yield nothing.
    Raises MalformedUpstreamFrame for invalid JSON or an unexpected shape.
    """
    try:
        parsed = json.loads(data)
    except ValueError as exc:
        raise MalformedUpstreamFrame() from exc
    if not isinstance(parsed, dict):
        raise MalformedUpstreamFrame()
    choices = parsed.get("choices")
    if choices is None:
        return []
    if not isinstance(choices, list):
        raise MalformedUpstreamFrame()

    deltas: List[str] = []
    for choice in choices:
        if not isinstance(choice, dict):
            continue
        delta = choice.get("delta")
        if not isinstance(delta, dict):
            continue
        content = delta.get("content")
        if isinstance(content, str) and content:
            deltas.append(content)
    return deltas


class StreamRelay:
    def __init__(
        self,
        gateway: GatewayClient,
        payload: Dict[str, Any],
        *,
        persist: Callable[..., Any],
        user_id: int,
        session_key: str,
        timeout_s: float,
        is_disconnected: Optional[Callable[[], Awaitable[bool]]] = None,
    ):
        self.gateway = gateway
        self.payload = payload
        self.persist = persist
        self.user_id = user_id
        self.session_key = session_key
        self.timeout_s = timeout_s
        self.is_disconnected = is_disconnected
        self.state = RelayState.INIT
        self._parts: List[str] = []
        self._started: float | None = None

    @property
    def assistant_text(self) -> str:
        return "".join(self._parts)

    def _finish(self, state: RelayState, **fields: Any) -> None:
        self.state = state
        chat_streams_total.labels(outcome=state.value).inc()
        if self._started is not None:
            gateway_latency.labels(operation="exchange").observe(time.perf_counter() - self._started)
        if state is RelayState.DONE:
            log_json(
                20,
                "chat_stream_complete",
                user_id=self.user_id,
                session_key=self.session_key,
                chars=len(self.assistant_text),
                **fields,
            )

    def _abort(self, exc: BaseException) -> List[str]:
        partial_chars = len(self.assistant_text)
        self._parts.clear()
        log_json(
            40,
            "chat_stream_aborted",
            user_id=self.user_id,
            session_key=self.session_key,
            phase=self.state.value,
            discarded_chars=partial_chars,
            **redact_upstream_error(exc),
        )
        self._finish(RelayState.ABORTED)
        return [error_frame(TransportFailure()), DONE_FRAME]

    async def _error_preview(self, response: httpx.Response) -> str:
        try:
            body = await asyncio.wait_for(response.aread(), timeout=5.0)
        except TRANSPORT_ERRORS:
            return ""
        return body[:ERROR_BODY_PREVIEW_BYTES].decode("utf-8", errors="replace")

    async def frames(self) -> AsyncIterator[str]:
        loop = asyncio.get_running_loop()
        deadline = loop.time() + self.timeout_s

        def remaining() -> float:
            left = deadline - loop.time()
            if left <= 0:
                raise asyncio.TimeoutError()
            return left

        response: httpx.Response | None = None
        self._started = time.perf_counter()
        self.state = RelayState.CONNECTING
        log_json(20, "chat_stream_started", user_id=self.user_id, session_key=self.session_key)
        try:
            try:
                budget = remaining()
                response = await asyncio.wait_for(self.gateway.open_stream(self.payload), budget)
            except TRANSPORT_ERRORS as exc:
                for frame in self._abort(exc):
                    yield frame
                return

            if not response.is_success:
                self.state = RelayState.UPSTREAM_ERROR
                log_json(
                    40,
                    "chat_upstream_rejected",
                    user_id=self.user_id,
                    session_key=self.session_key,
                    status_code=response.status_code,
                    body_preview=await self._error_preview(response),
                )
                self._finish(RelayState.UPSTREAM_ERROR)
                yield error_frame(UpstreamRejected(response.status_code))
                yield DONE_FRAME
                return

            self.state = RelayState.STREAMING
            lines = response.aiter_lines()
            saw_sentinel = False
            while True:
                try:
                    budget = remaining()
                    line = await asyncio.wait_for(lines.__anext__(), budget)
                except StopAsyncIteration:
                    break
                except TRANSPORT_ERRORS as exc:
                    for frame in self._abort(exc):
                        yield frame
                    return

                if self.is_disconnected is not None and await self.is_disconnected():
                    log_json(
                        30,
                        "chat_client_disconnected",
                        user_id=self.user_id,
                        session_key=self.session_key,
                        discarded_chars=len(self.assistant_text),
                    )
                    self._parts.clear()
                    self._finish(RelayState.ABORTED)
                    return

                if not line.strip() or not line.startswith(DATA_PREFIX):
                    continue
                data = line[len(DATA_PREFIX) :]
                if data.strip() == DONE_SENTINEL:
                    saw_sentinel = True
                    break

                yield line + "\n\n"
                try:
                    self._parts.extend(extract_delta_text(data))
                except MalformedUpstreamFrame:
                    log_json(10, "chat_frame_unparsed", session_key=self.session_key, length=len(data))

            text = self.assistant_text
            persisted = False
            if text:
                try:
                    persisted = bool(await run_in_threadpool(self.persist, content=text))
                except Exception as exc:
                    # The final frame is [DONE] even when storage fails.
                    log_json(
                        40,
                        "chat_history_persist_failed",
                        user_id=self.user_id,
                        session_key=self.session_key,
                        error_type=type(exc).__name__,
                    )
            self._finish(RelayState.DONE, sentinel=saw_sentinel, persisted=persisted)
            yield DONE_FRAME
        except (asyncio.CancelledError, GeneratorExit):
            if self.state in (RelayState.DONE, RelayState.UPSTREAM_ERROR, RelayState.ABORTED):
                raise
            log_json(
                30,
                "chat_client_disconnected",
                user_id=self.user_id,
                session_key=self.session_key,
                phase=self.state.value,
                discarded_chars=len(self.assistant_text),
            )
            self._parts.clear()
            self._finish(RelayState.ABORTED)
            raise
        finally:
            if response is not None:
                await asyncio.shield(response.aclose())
