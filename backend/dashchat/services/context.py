# SPDX-License-Identifier: Apache-2.0

"""Upstream message context: system instructions, recent turns, the new user turn."""

from __future__ import annotations

import textwrap
from typing import Any, Dict, List, Optional, Sequence, Union

from ..models import ChatMessage, Project, User
from ..errors import MissingProjectContext
from .permissions import Tier

ASSISTANT_NAME = "Synthia"
DEFAULT_PROMPT = f"You are {ASSISTANT_NAME}, a helpful AI assistant."

_TIER_PROMPTS = {
    Tier.GUIDE: """
        You are {assistant}, an AI assistant for the {project} project.
        Repository: {repo}

        Your role: Help the user understand their project. Answer questions about features, code structure, and how to use the application.

        Rules:
        - You can ONLY discuss the repository: {repo}
        - You cannot modify files, create tickets, or run commands
        - You have NO access to other projects, users, or system configuration
        - If asked to do something outside your scope, politely explain your access level
        - Be helpful, concise, and reference specific code when possible
        """,
    Tier.BUG: """
        You are {assistant}, an AI assistant for the {project} project.
        Repository: {repo}

        Your role: Help the user understand their project AND investigate bugs. When a user describes a problem, investigate the code, ask clarifying questions, and help document the issue.

        Rules:
        - You can read files from the repository: {repo}
        - You can help document and investigate bugs
        - You CANNOT modify code or create feature requests
        - You have NO access to other projects, users, or system configuration
        - Before documenting a bug, confirm details with the user
        - Include: steps to reproduce, expected vs actual behavior, relevant code references
        """,
    Tier.DEVELOPER: """
        You are {assistant}, an AI development assistant for the {project} project.
        Repository: {repo}

        Your role: Full development assistant. Investigate bugs, implement features, write code, and help with the project.

        Rules:
        - You can read AND write files in the repository: {repo}
        - You can help with code changes, bug fixes, and feature implementation
        - You CANNOT access other projects, users, or system configuration
        - You CANNOT access personal files, admin functions, or messaging
        - Always explain what you're doing before making changes
        - Write clean, well-documented code
        """,
}

Message = Dict[str, Any]
UserContent = Union[str, List[Dict[str, Any]]]


def _user_label(user: Optional[User]) -> Optional[str]:
    if user is None:
        return None
    name = (getattr(user, "display_name", None) or "").strip()
    email = (getattr(user, "email", None) or "").strip()
    if name and email:
        return f"{name} <{email}>"
    return name or email or None


def build_system_prompt(tier: Tier, project: Optional[Project], user: Optional[User] = None) -> str:
    template = _TIER_PROMPTS.get(tier)
    if template is None:
        return DEFAULT_PROMPT

    project_name = (project.name if project is not None else None) or "your project"
    repo = (project.repo_full_name if project is not None else None) or "your repository"
    prompt = textwrap.dedent(template).strip().format(assistant=ASSISTANT_NAME, project=project_name, repo=repo)

    brief = (project.project_brief or "").strip() if project is not None else ""
    if brief:
        prompt += f"\n\nProject Vision:\n{brief}"

    label = _user_label(user)
    if label:
        prompt += f"\n\nYou are speaking with: {label}"
    return prompt


def build_user_content(message: Optional[str], image_data_url: Optional[str] = None) -> UserContent:
    """
    Plain text, or a typed part list when an image is attached.

    The text part is omitted when the message is empty so image-only turns stay valid.
    """
    text = message or ""
    if not image_data_url:
        return text
    parts: List[Dict[str, Any]] = []
    if text.strip():
        parts.append({"type": "text", "text": text})
    parts.append({"type": "image_url", "image_url": {"url": image_data_url}})
    return parts


def assemble_messages(
    *,
    tier: Tier,
    project: Optional[Project],
    user: Optional[User],
    history: Sequence[ChatMessage],
    message: Optional[str],
    image_data_url: Optional[str] = None,
) -> List[Message]:
    if project is None:
        raise MissingProjectContext()

    messages: List[Message] = [{"role": "system", "content": build_system_prompt(tier, project, user)}]
    for turn in history:
        messages.append({"role": turn.role, "content": turn.content})
    messages.append({"role": "user", "content": build_user_content(message, image_data_url)})
    return messages
