# SPDX-License-Identifier: Apache-2.0

from __future__ import annotations

from typing import Optional

from sqlalchemy import or_
from sqlalchemy.orm import Session

from ..models import Project, ProjectMember, User
from ..telemetry import log_json


def _accessible_projects(db: Session, user: User):
    return (
        db.query(Project)
        .outerjoin(
            ProjectMember,
            (ProjectMember.project_id == Project.id) & (ProjectMember.user_id == user.id),
        )
        .filter(or_(ProjectMember.id.isnot(None), Project.created_by_user_id == user.id))
    )


def resolve_chat_project(db: Session, user: User, project_id: Optional[int] = None) -> Optional[Project]:
    """
    Find the project a chat is bound to.

    An explicit id must name a project the user created or belongs to (admins may
    name any project); anything else resolves to no project rather than an error.
    Without an id, the user's most recently created project is used.
    """
    if project_id is not None:
        if user.is_admin:
            project = db.get(Project, project_id)
        else:
            project = _accessible_projects(db, user).filter(Project.id == project_id).one_or_none()
        if project is None:
            log_json(20, "chat_project_unresolved", user_id=user.id, project_id=project_id)
        return project

    return _accessible_projects(db, user).order_by(Project.created_at.desc(), Project.id.desc()).first()
