# SPDX-License-Identifier: Apache-2.0

"""OpenAI-compatible completion gateway transport."""

from __future__ import annotations

import time
from typing import Any, Dict, List, Optional

import httpx
from fastapi import Request

from ..config import Settings
from ..metrics import gateway_latency

COMPLETIONS_PATH = "/v1/chat/completions"


class GatewayClient:
    """
    Thin owner of one ``httpx.AsyncClient`` per upstream target.

    ``open_stream`` returns the response with its body unread; the caller must
    ``aclose()`` it. Nothing here retries.
    """

    def __init__(
        self,
        base_url: str,
        *,
        token: Optional[str] = None,
        model: str = "clawdbot",
        connect_timeout: float = 10.0,
        read_timeout: Optional[float] = 120.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        headers = {"Accept": "text/event-stream"}
        if token:
            headers["Authorization"] = f"Bearer {token}"
        self.model = model
        self._client = httpx.AsyncClient(
            base_url=base_url,
            headers=headers,
            timeout=httpx.Timeout(connect_timeout, read=read_timeout),
            transport=transport,
        )

    def build_payload(self, *, session_key: str, messages: List[Dict[str, Any]]) -> Dict[str, Any]:
        return {"model": self.model, "stream": True, "user": session_key, "messages": messages}

    async def open_stream(self, payload: Dict[str, Any]) -> httpx.Response:
        request = self._client.build_request("POST", COMPLETIONS_PATH, json=payload)
        started = time.perf_counter()
        response = await self._client.send(request, stream=True)
        gateway_latency.labels(operation="connect").observe(time.perf_counter() - started)
        return response

    async def aclose(self) -> None:
        await self._client.aclose()

    @property
    def is_closed(self) -> bool:
        return self._client.is_closed


def build_gateway_client(settings: Settings, transport: Optional[httpx.AsyncBaseTransport] = None) -> GatewayClient:
    return GatewayClient(
        settings.GATEWAY_BASE_URL,
        token=settings.GATEWAY_TOKEN,
        model=settings.GATEWAY_MODEL,
        connect_timeout=settings.GATEWAY_CONNECT_TIMEOUT_S,
        read_timeout=settings.GATEWAY_READ_TIMEOUT_S,
        transport=transport,
    )


def get_gateway(request: Request) -> GatewayClient:
    """FastAPI dependency; the client is created and closed by the app lifespan."""
    return request.app.state.gateway
