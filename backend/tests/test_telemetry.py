import logging

import httpx

from dashchat.telemetry import JsonFormatter, _scrub_header_fields, redact_upstream_error, scrub_sensitive_headers


def test_scrub_sensitive_headers_redacts():
    headers = {
        "Authorization": "secret",
        "X-Api-Key": "key",
        "proxy-authorization": "proxy",
        "Set-Cookie": "session=abc",
        "custom-token": "tok",
        "x-secret": "keep",
        "okay": "value",
    }
    cleaned = scrub_sensitive_headers(headers)
    assert cleaned["Authorization"] == "[REDACTED]"
    assert cleaned["X-Api-Key"] == "[REDACTED]"
    assert cleaned["proxy-authorization"] == "[REDACTED]"
    assert cleaned["Set-Cookie"] == "[REDACTED]"
    assert cleaned["custom-token"] == "[REDACTED]"
    # x-secret matches sensitive suffix and is redacted
    assert cleaned["x-secret"] == "[REDACTED]"
    assert cleaned["okay"] == "value"


def test_scrub_header_fields_handles_nested_headers():
    payload = {"request_headers": {"Authorization": "secret", "foo": "bar"}, "other": 1}
    cleaned = _scrub_header_fields(payload)
    assert cleaned["request_headers"]["Authorization"] == "[REDACTED]"
    assert cleaned["request_headers"]["foo"] == "bar"
    assert cleaned["other"] == 1


def test_redact_upstream_error_keeps_type_and_status_only():
    request = httpx.Request("POST", "http://gateway.test/v1/chat/completions")
    response = httpx.Response(502, request=request)
    exc = httpx.HTTPStatusError("echoed prompt: tell me secrets", request=request, response=response)

    redacted = redact_upstream_error(exc)

    assert redacted == {"error_type": "HTTPStatusError", "status_code": 502, "detail": "[REDACTED]"}


def test_redact_upstream_error_without_response():
    assert redact_upstream_error(httpx.ConnectError("refused"))["status_code"] is None
    assert redact_upstream_error(None) == {}


def test_json_formatter_renders_dict_messages():
    record = logging.LogRecord("dashchat", logging.INFO, __file__, 1, {"event": "chat_stream_started"}, None, None)
    rendered = JsonFormatter().format(record)
    assert '"event": "chat_stream_started"' in rendered
