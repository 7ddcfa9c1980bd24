"""
Wire Frames — the tagged union carried over the chat WebSocket.

Client → Server:
  {"type": "chat", "senderId", "receiverId", "text", "messageType"}

Server → Client:
  {"type": "chat",      "message": Message}   push to the recipient
  {"type": "chat_sent", "message": Message}   acknowledgement to the sender
  {"type": "error",     "code", "detail"}     send rejected

Every frame is matched on its ``type`` tag.  Unknown tags are rejected with
FrameError rather than ignored.
"""

from __future__ import annotations

import json
from typing import Any, Literal, Union

from pydantic import BaseModel, ConfigDict, Field, ValidationError

from carechat.messaging.errors import FrameError
from carechat.messaging.models import Message, MessageKind


class _Frame(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    def to_json(self) -> str:
        return self.model_dump_json(by_alias=True)


# ── Client → Server ──


class ChatFrame(_Frame):
    """A send request from a client."""

    type: Literal["chat"] = "chat"
    sender_id: str = Field(default="", alias="senderId")
    receiver_id: str = Field(alias="receiverId")
    text: str
    message_type: MessageKind = Field(default=MessageKind.TEXT, alias="messageType")


InboundFrame = ChatFrame

_INBOUND: dict[str, type[_Frame]] = {
    "chat": ChatFrame,
}


# ── Server → Client ──


class ChatPushFrame(_Frame):
    """Live delivery of a new message to its recipient."""

    type: Literal["chat"] = "chat"
    message: Message


class ChatSentFrame(_Frame):
    """Acknowledgement carrying the canonical id and timestamp."""

    type: Literal["chat_sent"] = "chat_sent"
    message: Message


class ErrorFrame(_Frame):
    type: Literal["error"] = "error"
    code: str
    detail: str = ""


OutboundFrame = Union[ChatPushFrame, ChatSentFrame, ErrorFrame]

_OUTBOUND: dict[str, type[_Frame]] = {
    "chat": ChatPushFrame,
    "chat_sent": ChatSentFrame,
    "error": ErrorFrame,
}


# ── Parsing ──


def _decode(raw: str | bytes | dict[str, Any]) -> dict[str, Any]:
    if isinstance(raw, dict):
        return raw
    if isinstance(raw, (bytes, bytearray)):
        try:
            raw = raw.decode("utf-8")
        except UnicodeDecodeError as exc:
            raise FrameError("Frame is not valid UTF-8") from exc
    try:
        data = json.loads(raw)
    except (TypeError, ValueError) as exc:
        raise FrameError(f"Frame is not valid JSON: {exc}") from exc
    if not isinstance(data, dict):
        raise FrameError("Frame must be a JSON object")
    return data


def _parse(raw: str | bytes | dict[str, Any], table: dict[str, type[_Frame]]) -> _Frame:
    data = _decode(raw)
    tag = data.get("type")
    frame_cls = table.get(tag) if isinstance(tag, str) else None
    if frame_cls is None:
        raise FrameError(f"Unknown frame type: {tag!r}")
    try:
        return frame_cls.model_validate(data)
    except ValidationError as exc:
        raise FrameError(f"Invalid '{tag}' frame: {exc.error_count()} error(s)") from exc


def parse_inbound(raw: str | bytes | dict[str, Any]) -> InboundFrame:
    """Parse a client frame.  Raises FrameError on anything unusable."""
    return _parse(raw, _INBOUND)


def parse_outbound(raw: str | bytes | dict[str, Any]) -> OutboundFrame:
    """Parse a server frame (used by the client session)."""
    return _parse(raw, _OUTBOUND)
