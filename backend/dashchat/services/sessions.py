# SPDX-License-Identifier: Apache-2.0

from __future__ import annotations

from typing import Optional

SESSION_KEY_PREFIX = "dash"
NO_PROJECT_SLUG = "none"


def build_session_key(user_id: int, project_slug: Optional[str]) -> str:
    """
    Deterministic conversation partition key, e.g. ``dash:42:acme``.

    The same key tags the upstream ``user`` field so the gateway can correlate
    turns. The user id is an integer and cannot contain ':', so distinct slugs
    for one user never collide.
    """
    slug = project_slug or NO_PROJECT_SLUG
    return f"{SESSION_KEY_PREFIX}:{int(user_id)}:{slug}"
