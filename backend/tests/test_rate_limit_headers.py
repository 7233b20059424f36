from dashchat.config import settings


def test_429_carries_request_id_and_limit_headers(client, monkeypatch):
    monkeypatch.setattr(settings, "RATE_LIMIT_PER_MINUTE", 1)

    first = client.get("/health")
    assert first.headers.get("X-RateLimit-Limit") == "1"
    assert first.headers.get("X-RateLimit-Remaining") == "0"

    resp = client.get("/health")
    assert resp.status_code == 429
    assert resp.headers.get("X-Request-ID")
    assert resp.headers.get("Retry-After") == "60"
    assert resp.json() == {"detail": "Rate limit exceeded"}
