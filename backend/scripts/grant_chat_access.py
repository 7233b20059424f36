"""
Set a user's global chat tier, or a per-project override, from the shell.

Usage:
    python -m scripts.grant_chat_access <email> <tier>
    python -m scripts.grant_chat_access <email> <tier|inherit> --project <slug>

Writes are audited with no acting admin, like any other grant change.
"""

import argparse
import sys

from sqlalchemy import select

from dashchat.db import SessionLocal
from dashchat.models import Project, ProjectMember, User
from dashchat.services.audit import record_admin_action
from dashchat.services.permissions import (
    Tier,
    describe_override,
    override_from_column,
    override_to_column,
    parse_override,
)


def grant(db, email: str, value: str, project_slug: str | None = None) -> str:
    user = db.execute(select(User).where(User.email == email)).scalar_one_or_none()
    if user is None:
        raise LookupError(f"User {email} not found")

    if project_slug is None:
        tier = Tier(value.strip().lower())
        previous = user.chat_access
        user.chat_access = tier.value
        record_admin_action(
            db,
            admin_user_id=None,
            action="set_chat_access",
            target_type="user",
            target_id=str(user.id),
            metadata={"from": previous, "to": tier.value, "source": "cli"},
        )
        db.commit()
        return f"{email}: global chat tier {previous} -> {tier.value}"

    project = db.execute(select(Project).where(Project.slug == project_slug)).scalar_one_or_none()
    if project is None:
        raise LookupError(f"Project {project_slug} not found")
    member = db.execute(
        select(ProjectMember).where(ProjectMember.project_id == project.id, ProjectMember.user_id == user.id)
    ).scalar_one_or_none()
    if member is None:
        raise LookupError(f"{email} is not a member of {project_slug}")

    override = parse_override(value)
    previous = describe_override(override_from_column(member.chat_access))
    member.chat_access = override_to_column(override)
    record_admin_action(
        db,
        admin_user_id=None,
        action="set_project_chat_access",
        target_type="project_member",
        target_id=f"{project.id}:{user.id}",
        metadata={"from": previous, "to": describe_override(override), "source": "cli"},
    )
    db.commit()
    return f"{email} on {project_slug}: chat override {previous} -> {describe_override(override)}"


def main(argv: list[str]) -> int:
    parser = argparse.ArgumentParser(description="Grant chat access")
    parser.add_argument("email")
    parser.add_argument("tier", help="none, guide, bug, developer (or inherit with --project)")
    parser.add_argument("--project", dest="project_slug", default=None)
    args = parser.parse_args(argv)

    db = SessionLocal()
    try:
        print(grant(db, args.email, args.tier, args.project_slug))
        return 0
    except (LookupError, ValueError) as exc:
        db.rollback()
        print(f"Error: {exc}")
        return 1
    finally:
        db.close()


if __name__ == "__main__":
    sys.exit(main(sys.argv[1:]))
