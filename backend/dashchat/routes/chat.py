# SPDX-License-Identifier: Apache-2.0

import functools
from typing import Optional

from fastapi import APIRouter, Body, Depends, Query, Request
from sqlalchemy.orm import Session, sessionmaker
from starlette.responses import StreamingResponse

from ..auth import get_authorization, get_current_user
from ..config import settings
from ..db import get_db, get_session_factory, session_scope
from ..errors import MissingProjectContext, PermissionDenied
from ..models import ChatRole, Project, User
from ..rate_limit import check_rate_limit
from ..schemas import ChatAccessOut, ChatHistoryOut, ChatTurnOut, ClearHistoryOut, SendChatRequest
from ..services.context import assemble_messages
from ..services.gateway import GatewayClient, get_gateway
from ..services.history import HistoryStore, persist_assistant_turn
from ..services.permissions import PermissionResolver, Tier
from ..services.projects import resolve_chat_project
from ..services.relay import StreamRelay
from ..services.sessions import build_session_key
from ..telemetry import log_json

router = APIRouter(prefix="/chat", tags=["chat"])

IMAGE_ONLY_PLACEHOLDER = "[image attached]"
SSE_HEADERS = {
    "Cache-Control": "no-cache, no-transform",
    "Connection": "keep-alive",
    "X-Accel-Buffering": "no",
}


def _project_fields(project: Optional[Project]) -> dict:
    return {
        "project_name": project.name if project else None,
        "repo_full_name": project.repo_full_name if project else None,
        "project_id": project.id if project else None,
    }


def _session_key_for(user: User, project: Optional[Project]) -> str:
    return build_session_key(user.id, project.slug if project else None)


@router.post(
    "/send",
    response_class=StreamingResponse,
    responses={
        200: {"content": {"text/event-stream": {}}},
        400: {"description": "No project context"},
        403: {"description": "No chat access"},
    },
)
async def send_chat(
    req: Request,
    chat_req: SendChatRequest = Body(..., description="Chat message payload"),
    authorization: str = Depends(get_authorization),
    session_factory: sessionmaker = Depends(get_session_factory),
    gateway: GatewayClient = Depends(get_gateway),
):
    # Everything up to the user turn commits before the status line is sent.
    with session_scope(session_factory) as db:
        user = get_current_user(db=db, token=authorization)
        user_id = int(user.id)
        project = resolve_chat_project(db, user, chat_req.project_id)
        tier = PermissionResolver(db).chat_tier(user, project.id if project else None)
        if tier is Tier.NONE:
            log_json(30, "chat_access_denied", user_id=user_id, project_id=chat_req.project_id)
            raise PermissionDenied()
        if project is None:
            raise MissingProjectContext()
        project_id = int(project.id)

        check_rate_limit(f"user:{user_id}:chat", settings.CHAT_RATE_LIMIT_PER_MINUTE)

        session_key = _session_key_for(user, project)
        store = HistoryStore(db)
        history = store.recent(session_key, settings.CHAT_CONTEXT_TURNS)
        messages = assemble_messages(
            tier=tier,
            project=project,
            user=user,
            history=history,
            message=chat_req.message,
            image_data_url=chat_req.image_data_url,
        )
        store.append(
            user_id=user_id,
            session_key=session_key,
            role=ChatRole.USER.value,
            content=chat_req.message if chat_req.message.strip() else IMAGE_ONLY_PLACEHOLDER,
        )

    log_json(
        20,
        "chat_send_accepted",
        user_id=user_id,
        project_id=project_id,
        tier=tier.value,
        context_turns=len(history),
        has_image=bool(chat_req.image_data_url),
    )
    relay = StreamRelay(
        gateway,
        gateway.build_payload(session_key=session_key, messages=messages),
        persist=functools.partial(
            persist_assistant_turn, session_factory, user_id=user_id, session_key=session_key
        ),
        user_id=user_id,
        session_key=session_key,
        timeout_s=settings.CHAT_EXCHANGE_TIMEOUT_S,
        is_disconnected=req.is_disconnected,
    )
    return StreamingResponse(relay.frames(), media_type="text/event-stream", headers=SSE_HEADERS)


@router.get("/history", response_model=ChatHistoryOut)
def get_history(
    limit: int = Query(50, ge=1),
    project_id: Optional[int] = Query(None, alias="projectId"),
    db: Session = Depends(get_db),
    user: User = Depends(get_current_user),
) -> ChatHistoryOut:
    limit = min(limit, settings.CHAT_HISTORY_MAX_LIMIT)
    project = resolve_chat_project(db, user, project_id)
    tier = PermissionResolver(db).chat_tier(user, project.id if project else None)
    rows = HistoryStore(db).recent(_session_key_for(user, project), limit)
    return ChatHistoryOut(
        messages=[ChatTurnOut(id=r.id, role=r.role, content=r.content, created_at=r.created_at) for r in rows],
        chat_access=tier.value,
        **_project_fields(project),
    )


@router.delete("/history", response_model=ClearHistoryOut)
def clear_history(
    project_id: Optional[int] = Query(None, alias="projectId"),
    db: Session = Depends(get_db),
    user: User = Depends(get_current_user),
) -> ClearHistoryOut:
    project = resolve_chat_project(db, user, project_id)
    session_key = _session_key_for(user, project)
    deleted = HistoryStore(db).clear(session_key)
    db.commit()
    log_json(20, "chat_history_cleared", user_id=user.id, session_key=session_key, deleted=deleted)
    return ClearHistoryOut(deleted=deleted)


@router.get("/access", response_model=ChatAccessOut)
def get_access(
    project_id: Optional[int] = Query(None, alias="projectId"),
    db: Session = Depends(get_db),
    user: User = Depends(get_current_user),
) -> ChatAccessOut:
    project = resolve_chat_project(db, user, project_id)
    tier = PermissionResolver(db).chat_tier(user, project.id if project else None)
    return ChatAccessOut(chat_access=tier.value, **_project_fields(project))
