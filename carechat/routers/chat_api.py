"""
Chat API — HTTP endpoints around the messaging core.

Endpoints:
  GET    /api/chat/users                     Eligible chat partners for the caller
  GET    /api/chat/status                    Presence summary
  GET    /api/chat/admin/conversation        Admin review of any conversation
  POST   /api/chat/messages                  Send a message over HTTP
  POST   /api/chat/notify                    System notification to a user
  DELETE /api/chat/messages/{message_id}     Soft-delete within the window
  GET    /api/chat/{peer_id}                 Conversation history with a peer

The caller is identified by the X-User-Id header.
"""

from __future__ import annotations

import logging

from fastapi import APIRouter, Depends, HTTPException, Query
from pydantic import BaseModel, ConfigDict, Field

from carechat.dependencies import get_chat_router, get_current_user
from carechat.messaging.errors import (
    AuthorizationError,
    MessageNotFoundError,
    PersistenceError,
)
from carechat.messaging.models import ChatUser, ImageBody, MessageKind, Role, User
from carechat.messaging.router import MessageRouter

logger = logging.getLogger("chat.api")

router = APIRouter(prefix="/api/chat", tags=["chat"])


# ── Request / Response Models ──


class SendMessageRequest(BaseModel):
    """Request body for POST /api/chat/messages."""

    model_config = ConfigDict(populate_by_name=True)

    receiver_id: str = Field(alias="receiverId")
    text: str = ""
    message_type: MessageKind = Field(default=MessageKind.TEXT, alias="messageType")
    image: ImageBody | None = None


class NotifyRequest(BaseModel):
    """Request body for POST /api/chat/notify."""

    model_config = ConfigDict(populate_by_name=True)

    receiver_id: str = Field(alias="receiverId")
    text: str


class ChatStatusResponse(BaseModel):
    status: str = "ok"
    online_count: int = 0
    online_users: list[str] = Field(default_factory=list)


# ── Endpoints ──


@router.get("/users", response_model=list[ChatUser], response_model_by_alias=True)
async def list_chat_users(
    user: User = Depends(get_current_user),
    chat: MessageRouter = Depends(get_chat_router),
):
    """Chat partners the caller may message, with online flags."""
    return chat.available_peers(user.id)


@router.get("/status", response_model=ChatStatusResponse)
async def chat_status(user: User = Depends(get_current_user)):
    """Presence summary; callers must be signed-in users."""
    from carechat.messaging.setup import get_presence

    presence = get_presence()
    if presence is None:
        raise HTTPException(status_code=503, detail="Messaging not initialized")
    return ChatStatusResponse(
        online_count=presence.count,
        online_users=presence.online_user_ids,
    )


@router.get("/admin/conversation")
async def review_conversation(
    user_a: str = Query(alias="userA"),
    user_b: str = Query(alias="userB"),
    user: User = Depends(get_current_user),
    chat: MessageRouter = Depends(get_chat_router),
):
    """All conversations are reviewable by admins."""
    try:
        messages = await chat.review_conversation(user.id, user_a, user_b)
    except AuthorizationError:
        raise HTTPException(status_code=403, detail="Insufficient permissions")
    except PersistenceError as exc:
        logger.error("Review of %s/%s failed: %s", user_a, user_b, exc)
        raise HTTPException(status_code=503, detail="Message store unavailable")
    return [m.to_wire() for m in messages]


@router.post("/messages", status_code=201)
async def send_message(
    request: SendMessageRequest,
    user: User = Depends(get_current_user),
    chat: MessageRouter = Depends(get_chat_router),
):
    """Send over HTTP; delivery and acknowledgement work as over the socket."""
    try:
        message = await chat.send(
            user.id,
            request.receiver_id,
            request.text,
            request.message_type,
            image=request.image,
        )
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc))
    except AuthorizationError:
        raise HTTPException(status_code=403, detail="Not allowed to message this user")
    except PersistenceError as exc:
        logger.error("Send from %s failed: %s", user.id, exc)
        raise HTTPException(status_code=503, detail="Message could not be sent")
    return message.to_wire()


@router.post("/notify", status_code=201)
async def notify_user(
    request: NotifyRequest,
    user: User = Depends(get_current_user),
    chat: MessageRouter = Depends(get_chat_router),
):
    """System notification; only admins may trigger one."""
    if user.role != Role.ADMIN:
        raise HTTPException(status_code=403, detail="Insufficient permissions")
    try:
        message = await chat.notify(request.receiver_id, request.text)
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc))
    except AuthorizationError:
        raise HTTPException(status_code=404, detail="Recipient not found")
    except PersistenceError as exc:
        logger.error("Notification to %s failed: %s", request.receiver_id, exc)
        raise HTTPException(status_code=503, detail="Notification could not be sent")
    return message.to_wire()


@router.delete("/messages/{message_id}")
async def delete_message(
    message_id: str,
    user: User = Depends(get_current_user),
    chat: MessageRouter = Depends(get_chat_router),
):
    try:
        message = await chat.soft_delete(message_id, user.id)
    except MessageNotFoundError:
        raise HTTPException(status_code=404, detail="Message not found")
    except AuthorizationError:
        raise HTTPException(status_code=403, detail="Cannot delete this message")
    except PersistenceError as exc:
        logger.error("Delete of %s failed: %s", message_id, exc)
        raise HTTPException(status_code=503, detail="Message store unavailable")
    return {"success": True, "id": message.id}


@router.get("/{peer_id}")
async def get_conversation(
    peer_id: str,
    user: User = Depends(get_current_user),
    chat: MessageRouter = Depends(get_chat_router),
):
    """Message history between the caller and a peer, oldest first."""
    try:
        messages = await chat.fetch_history(user.id, peer_id)
    except AuthorizationError:
        raise HTTPException(status_code=403, detail="Not allowed to view this conversation")
    except PersistenceError as exc:
        logger.error("History %s/%s failed: %s", user.id, peer_id, exc)
        raise HTTPException(status_code=503, detail="Message store unavailable")
    return [m.to_wire() for m in messages]
