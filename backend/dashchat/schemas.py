# SPDX-License-Identifier: Apache-2.0

import datetime
import re
from typing import List, Literal, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

from .config import settings
from .services.permissions import INHERIT_VALUE, Tier

_IMAGE_DATA_URL_RE = re.compile(r"^data:image/(png|jpe?g|gif|webp);base64,[A-Za-z0-9+/=\s]+$")
TierName = Literal["none", "guide", "bug", "developer"]


# Chat
class SendChatRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    message: str = Field(default="", max_length=settings.MAX_MESSAGE_LENGTH)
    project_id: Optional[int] = Field(default=None, alias="projectId")
    image_data_url: Optional[str] = Field(default=None, alias="imageDataUrl")

    @field_validator("image_data_url")
    @classmethod
    def validate_image_data_url(cls, v: Optional[str]) -> Optional[str]:
        if v is None or not v.strip():
            return None
        v = v.strip()
        max_chars = settings.MAX_IMAGE_DATA_URL_MB * 1024 * 1024
        if len(v) > max_chars:
            raise ValueError(f"Image too large (max {settings.MAX_IMAGE_DATA_URL_MB} MB encoded)")
        if not _IMAGE_DATA_URL_RE.match(v):
            raise ValueError("imageDataUrl must be a base64 data URL for a png, jpeg, gif or webp image")
        return v

    @model_validator(mode="after")
    def require_content(self) -> "SendChatRequest":
        if not self.message.strip() and not self.image_data_url:
            raise ValueError("message or imageDataUrl is required")
        return self


class ChatTurnOut(BaseModel):
    id: int
    role: str
    content: str
    created_at: Optional[datetime.datetime] = Field(default=None, serialization_alias="createdAt")


class ChatAccessOut(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    chat_access: TierName = Field(serialization_alias="chatAccess")
    project_name: Optional[str] = Field(default=None, serialization_alias="projectName")
    repo_full_name: Optional[str] = Field(default=None, serialization_alias="repoFullName")
    project_id: Optional[int] = Field(default=None, serialization_alias="projectId")


class ChatHistoryOut(ChatAccessOut):
    messages: List[ChatTurnOut]


class ClearHistoryOut(BaseModel):
    message: str = "Chat history cleared"
    deleted: int


# Admin
class UserOut(BaseModel):
    id: int
    email: str
    display_name: Optional[str] = None
    is_active: bool
    is_admin: bool
    chat_access: str


class ChatAccessUpdate(BaseModel):
    chat_access: TierName = Field(alias="chatAccess")

    model_config = ConfigDict(populate_by_name=True)

    def tier(self) -> Tier:
        return Tier(self.chat_access)


class ProjectChatAccessUpdate(BaseModel):
    """A tier name, or "inherit" to fall back to the user's global tier."""

    chat_access: str = Field(alias="chatAccess")

    model_config = ConfigDict(populate_by_name=True)

    @field_validator("chat_access")
    @classmethod
    def validate_override(cls, v: str) -> str:
        value = (v or "").strip().lower()
        if value != INHERIT_VALUE and value not in {t.value for t in Tier}:
            raise ValueError("chatAccess must be one of: inherit, none, guide, bug, developer")
        return value


class ProjectChatAccessOut(BaseModel):
    project_id: int
    user_id: int
    override: str
    effective: TierName
