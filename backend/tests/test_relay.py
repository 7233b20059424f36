"""
Relay behaviour against a scripted gateway.

Async code is driven with asyncio.run to avoid needing pytest-asyncio.
"""

import asyncio
import json

import httpx
import pytest

from dashchat.errors import MalformedUpstreamFrame
from dashchat.services.gateway import GatewayClient
from dashchat.services.relay import DONE_FRAME, RelayState, StreamRelay, extract_delta_text
from tests.fixtures.fakes import FakeGateway, delta_line

SESSION_KEY = "dash:5:acme"


class PersistRecorder:
    def __init__(self):
        self.calls: list[str] = []

    def __call__(self, *, content: str) -> bool:
        self.calls.append(content)
        return True


def _relay(fake: FakeGateway, persist, *, token="tok", timeout_s=5.0, is_disconnected=None):
    gateway = GatewayClient("http://gateway.test", token=token, model="clawdbot", transport=fake.transport)
    payload = gateway.build_payload(session_key=SESSION_KEY, messages=[{"role": "user", "content": "hi"}])
    relay = StreamRelay(
        gateway,
        payload,
        persist=persist,
        user_id=5,
        session_key=SESSION_KEY,
        timeout_s=timeout_s,
        is_disconnected=is_disconnected,
    )
    return gateway, relay


def _collect(gateway: GatewayClient, relay: StreamRelay) -> list[str]:
    async def _run():
        try:
            return [frame async for frame in relay.frames()]
        finally:
            await gateway.aclose()

    return asyncio.run(_run())


def _error_payload(frame: str) -> dict:
    assert frame.startswith("data: ") and frame.endswith("\n\n")
    return json.loads(frame[len("data: ") : -2])


def test_deltas_are_forwarded_verbatim_and_persisted_once():
    fake = FakeGateway()
    persist = PersistRecorder()
    gateway, relay = _relay(fake, persist)

    frames = _collect(gateway, relay)

    assert frames == [delta_line("Hello") + "\n\n", delta_line(" world") + "\n\n", DONE_FRAME]
    assert persist.calls == ["Hello world"]
    assert relay.state is RelayState.DONE
    assert fake.streams[0].closed


def test_request_shape_and_credentials():
    fake = FakeGateway()
    gateway, relay = _relay(fake, PersistRecorder())
    _collect(gateway, relay)

    request = fake.requests[0]
    assert request.method == "POST"
    assert request.url.path == "/v1/chat/completions"
    assert request.headers["Authorization"] == "Bearer tok"
    assert fake.payloads[0] == {
        "model": "clawdbot",
        "stream": True,
        "user": SESSION_KEY,
        "messages": [{"role": "user", "content": "hi"}],
    }


def test_no_credential_header_without_token():
    fake = FakeGateway()
    gateway, relay = _relay(fake, PersistRecorder(), token=None)
    _collect(gateway, relay)
    assert "Authorization" not in fake.requests[0].headers


def test_malformed_frame_is_forwarded_but_not_accumulated():
    fake = FakeGateway()
    fake.lines = [delta_line("A"), "data: {not json", delta_line("B"), "data: [DONE]"]
    persist = PersistRecorder()
    gateway, relay = _relay(fake, persist)

    frames = _collect(gateway, relay)

    assert "data: {not json\n\n" in frames
    assert frames[-1] == DONE_FRAME
    assert persist.calls == ["AB"]


def test_comment_and_event_lines_are_not_forwarded():
    fake = FakeGateway()
    fake.lines = [": keepalive", "event: message", delta_line("x"), "data: [DONE]"]
    gateway, relay = _relay(fake, PersistRecorder())

    frames = _collect(gateway, relay)

    assert frames == [delta_line("x") + "\n\n", DONE_FRAME]


def test_upstream_rejection_emits_error_then_done_and_persists_nothing():
    fake = FakeGateway()
    fake.status_code = 503
    persist = PersistRecorder()
    gateway, relay = _relay(fake, persist)

    frames = _collect(gateway, relay)

    assert len(frames) == 2
    assert _error_payload(frames[0]) == {"error": "Gateway error: 503", "code": "upstream_rejected", "status": 503}
    assert frames[1] == DONE_FRAME
    assert persist.calls == []
    assert relay.state is RelayState.UPSTREAM_ERROR


def test_redirect_from_gateway_is_a_rejection():
    fake = FakeGateway()
    fake.status_code = 302
    fake.error_body = ""
    fake.error_headers = {"location": "https://gateway.test/v1/chat/completions"}
    persist = PersistRecorder()
    gateway, relay = _relay(fake, persist)

    frames = _collect(gateway, relay)

    assert _error_payload(frames[0]) == {"error": "Gateway error: 302", "code": "upstream_rejected", "status": 302}
    assert frames[1] == DONE_FRAME
    assert persist.calls == []
    assert relay.state is RelayState.UPSTREAM_ERROR


def test_connect_failure_is_a_transport_failure():
    fake = FakeGateway()
    fake.connect_error = httpx.ConnectError("connection refused")
    persist = PersistRecorder()
    gateway, relay = _relay(fake, persist)

    frames = _collect(gateway, relay)

    assert _error_payload(frames[0]) == {"error": "Internal error", "code": "transport_failure"}
    assert frames[1] == DONE_FRAME
    assert persist.calls == []
    assert relay.state is RelayState.ABORTED


def test_mid_stream_failure_discards_partial_text():
    fake = FakeGateway()
    fake.lines = [delta_line("partial")]
    fake.stream_error = httpx.ReadError("connection reset")
    persist = PersistRecorder()
    gateway, relay = _relay(fake, persist)

    frames = _collect(gateway, relay)

    assert frames[0] == delta_line("partial") + "\n\n"
    assert _error_payload(frames[1])["code"] == "transport_failure"
    assert frames[2] == DONE_FRAME
    assert persist.calls == []
    assert relay.assistant_text == ""
    assert fake.streams[0].closed


def test_end_of_body_without_sentinel_completes():
    fake = FakeGateway()
    fake.lines = [delta_line("one"), delta_line(" two")]
    persist = PersistRecorder()
    gateway, relay = _relay(fake, persist)

    frames = _collect(gateway, relay)

    assert frames[-1] == DONE_FRAME
    assert persist.calls == ["one two"]
    assert relay.state is RelayState.DONE


def test_exchange_ceiling_aborts_slow_stream():
    fake = FakeGateway()
    fake.delay = 0.5
    persist = PersistRecorder()
    gateway, relay = _relay(fake, persist, timeout_s=0.05)

    frames = _collect(gateway, relay)

    assert _error_payload(frames[0])["code"] == "transport_failure"
    assert frames[-1] == DONE_FRAME
    assert persist.calls == []


def test_client_disconnect_stops_relay_without_persisting():
    fake = FakeGateway()
    fake.lines = [delta_line("A"), delta_line("B"), "data: [DONE]"]
    persist = PersistRecorder()
    checks = {"n": 0}

    async def is_disconnected():
        checks["n"] += 1
        return checks["n"] > 1

    gateway, relay = _relay(fake, persist, is_disconnected=is_disconnected)

    frames = _collect(gateway, relay)

    assert frames == [delta_line("A") + "\n\n"]
    assert persist.calls == []
    assert relay.state is RelayState.ABORTED
    assert fake.streams[0].closed


def test_cancelled_consumer_releases_stalled_upstream():
    fake = FakeGateway()
    fake.delay = 0.3
    persist = PersistRecorder()
    gateway, relay = _relay(fake, persist)
    seen: list[str] = []

    async def _run():
        async def consume():
            async for frame in relay.frames():
                seen.append(frame)

        task = asyncio.create_task(consume())
        await asyncio.sleep(0.1)
        task.cancel()
        with pytest.raises(asyncio.CancelledError):
            await task
        await gateway.aclose()

    asyncio.run(_run())

    assert seen == []
    assert relay.state is RelayState.ABORTED
    assert fake.streams[0].closed
    assert persist.calls == []


def test_storage_failure_still_ends_with_done_frame(caplog):
    fake = FakeGateway()

    def failing_persist(*, content: str) -> bool:
        raise RuntimeError("disk full")

    gateway, relay = _relay(fake, failing_persist)

    frames = _collect(gateway, relay)

    assert frames[-1] == DONE_FRAME
    assert relay.state is RelayState.DONE
    assert "chat_history_persist_failed" in caplog.text


def test_completion_without_text_persists_nothing():
    fake = FakeGateway()
    fake.lines = ['data: {"choices": [{"delta": {"role": "assistant"}}]}', "data: [DONE]"]
    persist = PersistRecorder()
    gateway, relay = _relay(fake, persist)

    frames = _collect(gateway, relay)

    assert frames[-1] == DONE_FRAME
    assert persist.calls == []


def test_extract_delta_text_reads_every_choice():
    data = json.dumps({"choices": [{"delta": {"content": "a"}}, {"delta": {"content": "b"}}, {"delta": {}}]})
    assert extract_delta_text(data) == ["a", "b"]


def test_extract_delta_text_without_choices_is_empty():
    assert extract_delta_text(json.dumps({"usage": {"total_tokens": 3}})) == []


@pytest.mark.parametrize("data", ["{not json", "[1, 2]", '{"choices": "nope"}'])
def test_extract_delta_text_rejects_malformed(data):
    with pytest.raises(MalformedUpstreamFrame):
        extract_delta_text(data)
