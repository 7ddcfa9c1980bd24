"""
Chat data model — users, messages and the peer list entries the UI renders.

Messages serialise with camelCase aliases so the wire shape matches the
persisted row layout: id, senderId, receiverId, message, messageType,
isDeleted, createdAt.
"""

from __future__ import annotations

import uuid
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Optional

from pydantic import BaseModel, ConfigDict, Field


class Role(str, Enum):
    """Platform roles that take part in chat."""

    ADMIN = "admin"
    EMPLOYEE = "employee"
    FAMILY = "family"


class MessageKind(str, Enum):
    TEXT = "text"
    IMAGE = "image"


IMAGE_PREFIX = "[Image]: "


def _new_uuid() -> str:
    return str(uuid.uuid4())


def _now() -> datetime:
    return datetime.now(timezone.utc)


class User(BaseModel):
    """Directory record for anyone who can log in."""

    id: str
    name: str = ""
    role: Role
    is_active: bool = True

    @property
    def display_name(self) -> str:
        return self.name or self.id


class ImageBody(BaseModel):
    """Structured image reference sent in place of free text."""

    description: str
    url: Optional[str] = None

    def render(self) -> str:
        text = f"{IMAGE_PREFIX}{self.description.strip()}"
        if self.url:
            text = f"{text} ({self.url})"
        return text


class Message(BaseModel):
    """A single direct message between two users."""

    model_config = ConfigDict(populate_by_name=True)

    id: str = Field(default_factory=_new_uuid)
    sender_id: str = Field(alias="senderId")
    receiver_id: str = Field(alias="receiverId")
    message: str
    message_type: MessageKind = Field(default=MessageKind.TEXT, alias="messageType")
    is_deleted: bool = Field(default=False, alias="isDeleted")
    created_at: datetime = Field(default_factory=_now, alias="createdAt")

    def involves(self, user_a: str, user_b: str) -> bool:
        """True if this message belongs to the conversation {user_a, user_b}."""
        return {self.sender_id, self.receiver_id} == {user_a, user_b}

    def age(self, now: datetime | None = None) -> timedelta:
        return (now or _now()) - self.created_at

    def deletable_by(
        self,
        user_id: str,
        window: timedelta,
        now: datetime | None = None,
    ) -> bool:
        """Sender-only, inside the deletion window, not already deleted."""
        return (
            self.sender_id == user_id
            and not self.is_deleted
            and self.age(now) < window
        )

    def to_wire(self) -> dict:
        return self.model_dump(mode="json", by_alias=True)


class ChatUser(BaseModel):
    """Entry in a user's available-peers list."""

    model_config = ConfigDict(populate_by_name=True)

    id: str
    name: str
    role: Role
    is_online: bool = Field(default=False, alias="isOnline")


def pair_key(user_a: str, user_b: str) -> str:
    """Order-independent identity of a two-party conversation."""
    first, second = sorted((user_a, user_b))
    return f"{first}__{second}"
