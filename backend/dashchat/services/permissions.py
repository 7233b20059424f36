# SPDX-License-Identifier: Apache-2.0

"""
Chat capability tiers and their resolution for a (user, project) pair.

The effective tier is:

    admin                      -> developer
    project override Explicit  -> the override
    otherwise                  -> the user's global tier

A project id that does not resolve to a membership row simply has no override.
Resolution never writes.
"""

from __future__ import annotations

import enum
from dataclasses import dataclass
from typing import Optional, Union

from sqlalchemy.orm import Session

from ..models import ProjectMember, User
from ..telemetry import log_json


class Tier(str, enum.Enum):
    NONE = "none"
    GUIDE = "guide"
    BUG = "bug"
    DEVELOPER = "developer"

    @property
    def rank(self) -> int:
        return _TIER_ORDER.index(self)

    def __lt__(self, other):
        if not isinstance(other, Tier):
            return NotImplemented
        return self.rank < other.rank

    def __le__(self, other):
        if not isinstance(other, Tier):
            return NotImplemented
        return self.rank <= other.rank

    def __gt__(self, other):
        if not isinstance(other, Tier):
            return NotImplemented
        return self.rank > other.rank

    def __ge__(self, other):
        if not isinstance(other, Tier):
            return NotImplemented
        return self.rank >= other.rank


_TIER_ORDER = (Tier.NONE, Tier.GUIDE, Tier.BUG, Tier.DEVELOPER)


def parse_tier(raw: Optional[str]) -> Tier:
    """Map a stored value to a Tier; unknown or empty values fail closed to NONE."""
    if raw is None:
        return Tier.NONE
    try:
        return Tier(str(raw).strip().lower())
    except ValueError:
        log_json(30, "chat_tier_unknown_value", value=str(raw)[:32])
        return Tier.NONE


@dataclass(frozen=True)
class Inherit:
    """No per-project override; the global tier applies."""


@dataclass(frozen=True)
class Explicit:
    tier: Tier


ChatOverride = Union[Inherit, Explicit]
INHERIT = Inherit()
INHERIT_VALUE = "inherit"


def override_from_column(value: Optional[str]) -> ChatOverride:
    if value is None:
        return INHERIT
    return Explicit(parse_tier(value))


def override_to_column(override: ChatOverride) -> Optional[str]:
    if isinstance(override, Explicit):
        return override.tier.value
    return None


def parse_override(raw: str) -> ChatOverride:
    """Parse an API value: a tier name or "inherit". Raises ValueError otherwise."""
    value = (raw or "").strip().lower()
    if value == INHERIT_VALUE:
        return INHERIT
    return Explicit(Tier(value))


def describe_override(override: ChatOverride) -> str:
    if isinstance(override, Explicit):
        return override.tier.value
    return INHERIT_VALUE


def effective_chat_tier(*, is_admin: bool, global_tier: Tier, override: ChatOverride) -> Tier:
    if is_admin:
        return Tier.DEVELOPER
    if isinstance(override, Explicit):
        return override.tier
    return global_tier


class PermissionResolver:
    def __init__(self, db: Session):
        self.db = db

    def project_override(self, user_id: int, project_id: Optional[int]) -> ChatOverride:
        if project_id is None:
            return INHERIT
        member = (
            self.db.query(ProjectMember)
            .filter(ProjectMember.project_id == project_id, ProjectMember.user_id == user_id)
            .one_or_none()
        )
        if member is None:
            return INHERIT
        return override_from_column(member.chat_access)

    def chat_tier(self, user: User, project_id: Optional[int] = None) -> Tier:
        if not getattr(user, "is_active", True):
            return Tier.NONE
        if user.is_admin:
            return Tier.DEVELOPER
        return effective_chat_tier(
            is_admin=False,
            global_tier=parse_tier(user.chat_access),
            override=self.project_override(user.id, project_id),
        )
