# SPDX-License-Identifier: Apache-2.0

from __future__ import annotations

from fastapi import APIRouter, Body, Depends, HTTPException, Query
from sqlalchemy.orm import Session

from ..auth import require_admin
from ..config import settings
from ..db import get_db
from ..models import Project, ProjectMember, User
from ..rate_limit import check_rate_limit
from ..schemas import ChatAccessUpdate, ProjectChatAccessOut, ProjectChatAccessUpdate, UserOut
from ..services.audit import record_admin_action
from ..services.permissions import (
    PermissionResolver,
    describe_override,
    override_from_column,
    override_to_column,
    parse_override,
)
from ..telemetry import log_json

router = APIRouter(prefix="/admin", tags=["admin"])


def _admin_rate_limit(admin_user: User, action: str) -> None:
    check_rate_limit(f"admin:{admin_user.id}:{action}", settings.RATE_LIMIT_PER_MINUTE)


def _user_out(row: User) -> UserOut:
    return UserOut(
        id=row.id,
        email=row.email,
        display_name=row.display_name,
        is_active=row.is_active,
        is_admin=row.is_admin,
        chat_access=row.chat_access,
    )


def _membership_or_404(db: Session, project_id: int, user_id: int) -> ProjectMember:
    if db.get(Project, project_id) is None:
        raise HTTPException(status_code=404, detail="Project not found")
    member = (
        db.query(ProjectMember)
        .filter(ProjectMember.project_id == project_id, ProjectMember.user_id == user_id)
        .one_or_none()
    )
    if member is None:
        raise HTTPException(status_code=404, detail="User is not a member of this project")
    return member


def _project_access_out(db: Session, member: ProjectMember) -> ProjectChatAccessOut:
    user = db.get(User, member.user_id)
    effective = PermissionResolver(db).chat_tier(user, member.project_id)
    return ProjectChatAccessOut(
        project_id=member.project_id,
        user_id=member.user_id,
        override=describe_override(override_from_column(member.chat_access)),
        effective=effective.value,
    )


@router.get("/users", response_model=list[UserOut])
def list_users(
    db: Session = Depends(get_db),
    admin_user: User = Depends(require_admin),
    limit: int = Query(100, ge=1, le=500),
) -> list[UserOut]:
    _admin_rate_limit(admin_user, "list_users")
    rows = db.query(User).order_by(User.id.desc()).limit(limit).all()
    return [_user_out(row) for row in rows]


@router.put("/users/{user_id}/chat-access", response_model=UserOut)
def set_user_chat_access(
    user_id: int,
    payload: ChatAccessUpdate = Body(...),
    db: Session = Depends(get_db),
    admin_user: User = Depends(require_admin),
) -> UserOut:
    _admin_rate_limit(admin_user, "set_chat_access")
    target = db.get(User, user_id)
    if not target:
        raise HTTPException(status_code=404, detail="User not found")

    previous = target.chat_access
    target.chat_access = payload.tier().value
    record_admin_action(
        db,
        admin_user_id=admin_user.id,
        action="set_chat_access",
        target_type="user",
        target_id=str(user_id),
        metadata={"from": previous, "to": target.chat_access},
    )
    db.commit()
    db.refresh(target)
    log_json(20, "admin_set_chat_access", admin_id=admin_user.id, target_user_id=user_id, tier=target.chat_access)
    return _user_out(target)


@router.get("/projects/{project_id}/members/{user_id}/chat-access", response_model=ProjectChatAccessOut)
def get_project_chat_access(
    project_id: int,
    user_id: int,
    db: Session = Depends(get_db),
    admin_user: User = Depends(require_admin),
) -> ProjectChatAccessOut:
    member = _membership_or_404(db, project_id, user_id)
    return _project_access_out(db, member)


@router.put("/projects/{project_id}/members/{user_id}/chat-access", response_model=ProjectChatAccessOut)
def set_project_chat_access(
    project_id: int,
    user_id: int,
    payload: ProjectChatAccessUpdate = Body(...),
    db: Session = Depends(get_db),
    admin_user: User = Depends(require_admin),
) -> ProjectChatAccessOut:
    _admin_rate_limit(admin_user, "set_project_chat_access")
    member = _membership_or_404(db, project_id, user_id)
    override = parse_override(payload.chat_access)

    previous = describe_override(override_from_column(member.chat_access))
    member.chat_access = override_to_column(override)
    record_admin_action(
        db,
        admin_user_id=admin_user.id,
        action="set_project_chat_access",
        target_type="project_member",
        target_id=f"{project_id}:{user_id}",
        metadata={"from": previous, "to": describe_override(override)},
    )
    db.commit()
    db.refresh(member)
    log_json(
        20,
        "admin_set_project_chat_access",
        admin_id=admin_user.id,
        project_id=project_id,
        target_user_id=user_id,
        override=describe_override(override),
    )
    return _project_access_out(db, member)
