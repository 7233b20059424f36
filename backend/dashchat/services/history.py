# SPDX-License-Identifier: Apache-2.0

"""Append-only conversation turn log, partitioned by session key."""

from __future__ import annotations

from typing import List

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session, sessionmaker

from ..db import session_scope
from ..models import ChatMessage, ChatRole
from ..telemetry import log_json

VALID_ROLES = {ChatRole.USER.value, ChatRole.ASSISTANT.value}


class HistoryStore:
    """
    Turn reads and writes for one database session.

    Writes only flush; the caller owns the transaction. Turns are never updated,
    so no read-modify-write coordination is needed between concurrent relays.
    """

    def __init__(self, db: Session):
        self.db = db

    def append(self, *, user_id: int, session_key: str, role: str, content: str) -> ChatMessage:
        role = str(getattr(role, "value", role))
        if role not in VALID_ROLES:
            raise ValueError(f"Unsupported chat role: {role}")
        turn = ChatMessage(user_id=user_id, session_key=session_key, role=role, content=content)
        self.db.add(turn)
        self.db.flush()
        return turn

    def recent(self, session_key: str, limit: int) -> List[ChatMessage]:
        """Last `limit` turns for the session, oldest first."""
        if limit <= 0:
            return []
        rows = (
            self.db.query(ChatMessage)
            .filter(ChatMessage.session_key == session_key)
            .order_by(ChatMessage.created_at.desc(), ChatMessage.id.desc())
            .limit(limit)
            .all()
        )
        rows.reverse()
        return rows

    def clear(self, session_key: str) -> int:
        deleted = (
            self.db.query(ChatMessage)
            .filter(ChatMessage.session_key == session_key)
            .delete(synchronize_session=False)
        )
        self.db.flush()
        return int(deleted or 0)


def persist_assistant_turn(session_factory: sessionmaker, *, user_id: int, session_key: str, content: str) -> bool:
    """
    Store the finished assistant turn in its own short-lived session.

    Runs after the response status has been sent, so a storage failure can only
    be logged. Returns whether the row was committed.
    """
    if not content:
        return False
    try:
        with session_scope(session_factory) as db:
            HistoryStore(db).append(
                user_id=user_id,
                session_key=session_key,
                role=ChatRole.ASSISTANT.value,
                content=content,
            )
        return True
    except SQLAlchemyError as exc:
        log_json(
            40,
            "chat_history_persist_failed",
            user_id=user_id,
            session_key=session_key,
            role=ChatRole.ASSISTANT.value,
            error_type=type(exc).__name__,
        )
        return False
