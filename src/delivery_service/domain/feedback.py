"""Feedback rows and the immutable events derived from them."""
from __future__ import annotations

import re
from datetime import datetime
from typing import Any
from urllib.parse import urlparse
from uuid import UUID

from pydantic import BaseModel, ConfigDict, Field, field_validator

from delivery_service.domain.enums import FeedbackType

_EMAIL_RE = re.compile(r"^[^\s@]+@[^\s@]+\.[^\s@]+$")


class Project(BaseModel):
    id: UUID
    name: str
    owner_user_id: UUID | None = None
    webhooks: dict[str, Any] = Field(default_factory=dict)
    anti_spam: dict[str, Any] = Field(default_factory=dict)


class Feedback(BaseModel):
    """Stored feedback row."""

    id: UUID
    project_id: UUID
    created_at: datetime
    message: str
    email: str | None = None
    url: str | None = None
    user_agent: str | None = None
    type: str | None = None
    rating: int | None = None
    priority: str | None = None
    tags: list[str] | None = None
    screenshot_url: str | None = None
    attachments: list[Any] | None = None
    is_read: bool = False
    archived: bool = False


class FeedbackEvent(BaseModel):
    """Immutable fact about a created or updated feedback item."""

    model_config = ConfigDict(frozen=True)

    id: UUID
    project_id: UUID
    project_name: str
    created_at: datetime
    message: str
    email: str | None = None
    url: str | None = None
    type: str | None = None
    rating: int | None = None
    priority: str | None = None
    tags: list[str] | None = None
    screenshot_url: str | None = None
    attachments: list[Any] | None = None
    is_read: bool | None = None
    changes: dict[str, Any] | None = None

    @classmethod
    def from_feedback(
        cls,
        feedback: Feedback,
        *,
        project_name: str,
        changes: dict[str, Any] | None = None,
    ) -> "FeedbackEvent":
        return cls(
            id=feedback.id,
            project_id=feedback.project_id,
            project_name=project_name,
            created_at=feedback.created_at,
            message=feedback.message,
            email=feedback.email,
            url=feedback.url,
            type=feedback.type,
            rating=feedback.rating,
            priority=feedback.priority,
            tags=feedback.tags,
            screenshot_url=feedback.screenshot_url,
            attachments=feedback.attachments,
            is_read=feedback.is_read,
            changes=changes,
        )

    def feedback_fields(self) -> dict[str, Any]:
        """JSON-ready feedback body for the generic envelope."""
        return self.model_dump(mode="json", exclude={"project_id", "project_name", "changes"})


class FeedbackSubmitDTO(BaseModel):
    """Public widget submission."""

    model_config = ConfigDict(populate_by_name=True, str_strip_whitespace=True)

    api_key: str = Field(alias="apiKey", min_length=1)
    message: str = Field(min_length=2, max_length=2000)
    url: str
    email: str | None = None
    user_agent: str | None = Field(default=None, alias="userAgent")
    type: FeedbackType | None = None
    rating: int | None = Field(default=None, ge=1, le=5)
    priority: str | None = None
    tags: list[str] | None = None
    screenshot_url: str | None = None
    attachments: list[Any] | None = None
    captcha_token: str | None = Field(default=None, alias="captchaToken")

    @field_validator("email", mode="before")
    @classmethod
    def _email(cls, value: Any) -> Any:
        if value in (None, ""):
            return None
        if not isinstance(value, str) or not _EMAIL_RE.match(value.strip()):
            raise ValueError("Invalid email format")
        return value.strip()

    @field_validator("url")
    @classmethod
    def _absolute_url(cls, value: str) -> str:
        parsed = urlparse(value)
        if parsed.scheme not in ("http", "https") or not parsed.netloc:
            raise ValueError("Invalid URL")
        return value

    @field_validator("type", "rating", mode="before")
    @classmethod
    def _blank_as_none(cls, value: Any) -> Any:
        return None if value == "" else value


class FeedbackUpdateDTO(BaseModel):
    model_config = ConfigDict(extra="ignore")

    is_read: bool | None = None
    archived: bool | None = None
    add_tag: str | None = None
    remove_tag: str | None = None
