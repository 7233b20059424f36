import json

from dashchat.auth import create_access_token
from dashchat.config import settings
from dashchat.models import ChatMessage
from tests.fixtures.factories import ChatMessageFactory, ProjectFactory, ProjectMemberFactory, UserFactory
from tests.fixtures.fakes import delta_line

PNG = "data:image/png;base64,iVBORw0KGgoAAAANSUhEUgAAAAEAAAABCAYAAAAfFcSJAAAADUlEQVR42mP8z/C/HwAFgwJ/lks9NwAAAABJRU5ErkJggg=="


def _auth_headers(user) -> dict[str, str]:
    return {"Authorization": f"Bearer {create_access_token(user_id=user.id)}", "X-Requested-With": "XMLHttpRequest"}


def _user_with_project(db_session, chat_access="developer", **project_kwargs):
    user = UserFactory.create(db_session, chat_access=chat_access, display_name="Dana")
    project_kwargs.setdefault("slug", "acme")
    project = ProjectFactory.create(db_session, owner=user, name="Acme Site", **project_kwargs)
    db_session.commit()
    return user, project


def _turns(db_session, session_key: str) -> list[tuple[str, str]]:
    db_session.expire_all()
    rows = (
        db_session.query(ChatMessage)
        .filter(ChatMessage.session_key == session_key)
        .order_by(ChatMessage.created_at, ChatMessage.id)
        .all()
    )
    return [(r.role, r.content) for r in rows]


def test_send_streams_frames_and_persists_both_turns(client, gateway, db_session):
    user, project = _user_with_project(db_session)

    resp = client.post("/api/chat/send", json={"message": "hi", "projectId": project.id}, headers=_auth_headers(user))

    assert resp.status_code == 200, resp.text
    assert resp.headers["content-type"].startswith("text/event-stream")
    assert resp.headers["cache-control"] == "no-cache, no-transform"
    assert resp.headers["x-accel-buffering"] == "no"
    assert resp.text == f"{delta_line('Hello')}\n\n{delta_line(' world')}\n\ndata: [DONE]\n\n"
    key = f"dash:{user.id}:acme"
    assert _turns(db_session, key) == [("user", "hi"), ("assistant", "Hello world")]
    assert gateway.payloads[0]["user"] == key
    assert gateway.payloads[0]["stream"] is True


def test_send_without_access_is_rejected_before_streaming(client, gateway, db_session):
    user, project = _user_with_project(db_session, chat_access="none")

    resp = client.post("/api/chat/send", json={"message": "hi", "projectId": project.id}, headers=_auth_headers(user))

    assert resp.status_code == 403
    assert resp.json() == {"error": "No chat access"}
    assert gateway.requests == []
    assert _turns(db_session, f"dash:{user.id}:acme") == []


def test_send_without_access_and_without_project_is_403(client, db_session):
    user = UserFactory.create(db_session, chat_access="none")
    db_session.commit()

    resp = client.post("/api/chat/send", json={"message": "hi"}, headers=_auth_headers(user))

    assert resp.status_code == 403


def test_send_without_project_is_400(client, gateway, db_session):
    user = UserFactory.create(db_session, chat_access="guide")
    db_session.commit()

    resp = client.post("/api/chat/send", json={"message": "hi"}, headers=_auth_headers(user))

    assert resp.status_code == 400
    assert resp.json() == {"error": "No project context available for chat"}
    assert gateway.requests == []
    assert _turns(db_session, f"dash:{user.id}:none") == []


def test_send_with_foreign_project_id_is_400(client, gateway, db_session):
    user, _ = _user_with_project(db_session)
    other = ProjectFactory.create(db_session, slug="elsewhere")
    db_session.commit()

    resp = client.post("/api/chat/send", json={"message": "hi", "projectId": other.id}, headers=_auth_headers(user))

    assert resp.status_code == 400
    assert gateway.requests == []


def test_send_requires_bearer_token(client):
    resp = client.post("/api/chat/send", json={"message": "hi"})
    assert resp.status_code == 401
    assert resp.json() == {"error": "Missing bearer token"}


def test_send_validates_payload(client, db_session):
    user, project = _user_with_project(db_session)
    headers = _auth_headers(user)

    assert client.post("/api/chat/send", json={"message": "  "}, headers=headers).status_code == 422
    bad_image = {"message": "x", "imageDataUrl": "https://example.com/cat.png"}
    assert client.post("/api/chat/send", json=bad_image, headers=headers).status_code == 422


def test_upstream_rejection_keeps_only_user_turn(client, gateway, db_session):
    user, project = _user_with_project(db_session)
    gateway.status_code = 500

    resp = client.post("/api/chat/send", json={"message": "hi", "projectId": project.id}, headers=_auth_headers(user))

    assert resp.status_code == 200
    frames = [f for f in resp.text.split("\n\n") if f]
    assert json.loads(frames[0][len("data: ") :]) == {
        "error": "Gateway error: 500",
        "code": "upstream_rejected",
        "status": 500,
    }
    assert frames[-1] == "data: [DONE]"
    assert _turns(db_session, f"dash:{user.id}:acme") == [("user", "hi")]


def test_context_is_system_then_history_then_new_message(client, gateway, db_session):
    user, project = _user_with_project(db_session, project_brief="Sell widgets.")
    key = f"dash:{user.id}:acme"
    ChatMessageFactory.create(db_session, user=user, session_key=key, role="user", content="earlier q")
    ChatMessageFactory.create(db_session, user=user, session_key=key, role="assistant", content="earlier a")
    db_session.commit()

    client.post("/api/chat/send", json={"message": "now"}, headers=_auth_headers(user))

    messages = gateway.payloads[0]["messages"]
    assert [m["role"] for m in messages] == ["system", "user", "assistant", "user"]
    assert "Acme Site" in messages[0]["content"]
    assert "Sell widgets." in messages[0]["content"]
    assert "Dana" in messages[0]["content"]
    assert messages[1:] == [
        {"role": "user", "content": "earlier q"},
        {"role": "assistant", "content": "earlier a"},
        {"role": "user", "content": "now"},
    ]


def test_context_window_is_bounded(client, gateway, db_session, monkeypatch):
    monkeypatch.setattr(settings, "CHAT_CONTEXT_TURNS", 2)
    user, project = _user_with_project(db_session)
    key = f"dash:{user.id}:acme"
    for i in range(5):
        ChatMessageFactory.create(db_session, user=user, session_key=key, content=f"old {i}")
    db_session.commit()

    client.post("/api/chat/send", json={"message": "latest"}, headers=_auth_headers(user))

    contents = [m["content"] for m in gateway.payloads[0]["messages"][1:]]
    assert contents == ["old 3", "old 4", "latest"]


def test_repeated_exchanges_alternate_turns(client, db_session):
    user, project = _user_with_project(db_session)
    headers = _auth_headers(user)

    for i in range(3):
        resp = client.post("/api/chat/send", json={"message": f"q{i}"}, headers=headers)
        assert resp.status_code == 200

    turns = _turns(db_session, f"dash:{user.id}:acme")
    assert len(turns) == 6
    assert [role for role, _ in turns] == ["user", "assistant"] * 3


def test_image_message_is_sent_as_parts(client, gateway, db_session):
    user, project = _user_with_project(db_session)

    resp = client.post("/api/chat/send", json={"message": "", "imageDataUrl": PNG}, headers=_auth_headers(user))

    assert resp.status_code == 200
    assert gateway.payloads[0]["messages"][-1]["content"] == [{"type": "image_url", "image_url": {"url": PNG}}]
    assert _turns(db_session, f"dash:{user.id}:acme")[0] == ("user", "[image attached]")


def test_member_override_grants_access(client, gateway, db_session):
    owner = UserFactory.create(db_session)
    member = UserFactory.create(db_session, chat_access="none")
    project = ProjectFactory.create(db_session, owner=owner, slug="shared")
    ProjectMemberFactory.create(db_session, project=project, user=member, chat_access="guide")
    db_session.commit()

    resp = client.post("/api/chat/send", json={"message": "hi", "projectId": project.id}, headers=_auth_headers(member))

    assert resp.status_code == 200
    assert "ONLY discuss" in gateway.payloads[0]["messages"][0]["content"]


def test_chat_rate_limit(client, db_session, monkeypatch):
    monkeypatch.setattr(settings, "CHAT_RATE_LIMIT_PER_MINUTE", 1)
    user, project = _user_with_project(db_session)
    headers = _auth_headers(user)

    assert client.post("/api/chat/send", json={"message": "one"}, headers=headers).status_code == 200
    assert client.post("/api/chat/send", json={"message": "two"}, headers=headers).status_code == 429


def test_history_returns_turns_and_context(client, db_session):
    user, project = _user_with_project(db_session, repo_full_name="acme/site")
    key = f"dash:{user.id}:acme"
    for i in range(4):
        ChatMessageFactory.create(db_session, user=user, session_key=key, content=f"m{i}")
    db_session.commit()

    resp = client.get("/api/chat/history", params={"limit": 3}, headers=_auth_headers(user))

    assert resp.status_code == 200
    body = resp.json()
    assert [m["content"] for m in body["messages"]] == ["m1", "m2", "m3"]
    assert body["chatAccess"] == "developer"
    assert body["projectName"] == "Acme Site"
    assert body["repoFullName"] == "acme/site"
    assert body["projectId"] == project.id


def test_clear_history_only_touches_one_session(client, db_session):
    user, project = _user_with_project(db_session)
    other = ProjectFactory.create(db_session, owner=user, slug="other")
    ChatMessageFactory.create(db_session, user=user, session_key=f"dash:{user.id}:acme")
    ChatMessageFactory.create(db_session, user=user, session_key=f"dash:{user.id}:acme")
    ChatMessageFactory.create(db_session, user=user, session_key=f"dash:{user.id}:other")
    db_session.commit()

    resp = client.delete("/api/chat/history", params={"projectId": project.id}, headers=_auth_headers(user))

    assert resp.status_code == 200
    assert resp.json() == {"message": "Chat history cleared", "deleted": 2}
    assert _turns(db_session, f"dash:{user.id}:acme") == []
    assert len(_turns(db_session, f"dash:{user.id}:{other.slug}")) == 1


def test_access_endpoint_reports_effective_tier(client, db_session):
    user, project = _user_with_project(db_session, chat_access="bug")

    resp = client.get("/api/chat/access", headers=_auth_headers(user))

    assert resp.status_code == 200
    assert resp.json() == {
        "chatAccess": "bug",
        "projectName": "Acme Site",
        "repoFullName": project.repo_full_name,
        "projectId": project.id,
    }
