"""
Message Router — the single authorization-and-delivery choke point.

``send`` for every message, whichever surface it came in on:
  1. Validates the request and checks chat eligibility server-side
  2. Persists via the MessageStore (the durability point)
  3. Pushes {type: chat} to the recipient if they are online
  4. Pushes {type: chat_sent} back to the sender

Persistence failure fails the whole send and nothing is delivered.  Push
failures are logged and swallowed: the message is already stored and
shows up on the recipient's next history fetch.
"""

from __future__ import annotations

import logging
from datetime import datetime, timedelta, timezone
from typing import Callable

from carechat import settings
from carechat.messaging.connections import Connection
from carechat.messaging.directory import Directory
from carechat.messaging.errors import (
    AuthorizationError,
    DeleteNotAllowedError,
    EligibilityError,
    TransportError,
)
from carechat.messaging.frames import ChatPushFrame, ChatSentFrame, OutboundFrame
from carechat.messaging.models import ChatUser, ImageBody, Message, MessageKind, Role
from carechat.messaging.permissions import EligibilityChecker
from carechat.messaging.presence import PresenceRegistry
from carechat.messaging.store import MessageStore

logger = logging.getLogger("chat.router")


def _now() -> datetime:
    return datetime.now(timezone.utc)


class MessageRouter:
    """Validates, persists and routes direct messages."""

    def __init__(
        self,
        *,
        store: MessageStore,
        presence: PresenceRegistry,
        directory: Directory,
        eligibility: EligibilityChecker | None = None,
        delete_window_seconds: int = settings.DELETE_WINDOW_SECONDS,
        max_message_length: int = settings.MAX_MESSAGE_LENGTH,
        clock: Callable[[], datetime] | None = None,
    ) -> None:
        self._store = store
        self._presence = presence
        self._directory = directory
        self._eligibility = eligibility or EligibilityChecker(directory)
        self._delete_window = timedelta(seconds=delete_window_seconds)
        self._max_length = max_message_length
        self._clock = clock or _now

    @property
    def delete_window(self) -> timedelta:
        return self._delete_window

    # ── Sending ──

    async def send(
        self,
        sender_id: str,
        receiver_id: str,
        text: str = "",
        kind: MessageKind | str = MessageKind.TEXT,
        image: ImageBody | None = None,
        origin: Connection | None = None,
    ) -> Message:
        """
        Persist a message and deliver it.

        ``origin`` is the connection the request arrived on; the
        acknowledgement goes there, else to the sender's current connection.

        Raises ValueError for an empty/invalid request, EligibilityError if
        the pair may not chat, PersistenceError if the store fails.
        """
        kind = MessageKind(kind)
        if image is not None:
            kind = MessageKind.IMAGE
            text = image.render()
        text = self._validated_text(sender_id, receiver_id, text)

        result = self._eligibility.check_ids(sender_id, receiver_id)
        if not result.allowed:
            raise EligibilityError(
                f"{sender_id} may not message {receiver_id}", reason=result.reason
            )

        return await self._deliver(sender_id, receiver_id, text, kind, origin)

    async def notify(
        self,
        receiver_id: str,
        text: str,
        sender_id: str = settings.SYSTEM_USER_ID,
    ) -> Message:
        """
        System notification from another part of the platform.

        The system sender cannot log in, so it is not subject to the
        eligibility rules; the recipient must be an active user.
        """
        text = self._validated_text(sender_id, receiver_id, text)
        if self._directory.get_active_user(receiver_id) is None:
            raise EligibilityError(
                f"No active recipient {receiver_id}", reason="unknown_user"
            )
        return await self._deliver(sender_id, receiver_id, text, MessageKind.TEXT)

    def _validated_text(self, sender_id: str, receiver_id: str, text: str) -> str:
        if not sender_id or not receiver_id:
            raise ValueError("sender_id and receiver_id are required")
        if not text or not text.strip():
            raise ValueError("Message text is empty")
        if len(text) > self._max_length:
            logger.warning(
                "Message from %s truncated from %d to %d chars",
                sender_id, len(text), self._max_length,
            )
            text = text[: self._max_length]
        return text

    async def _deliver(
        self,
        sender_id: str,
        receiver_id: str,
        text: str,
        kind: MessageKind,
        origin: Connection | None = None,
    ) -> Message:
        """Persist, push to the receiver, acknowledge to the sender."""
        message = await self._store.append(sender_id, receiver_id, text, kind)

        delivered = await self._push(receiver_id, ChatPushFrame(message=message))
        await self._push(sender_id, ChatSentFrame(message=message), connection=origin)

        logger.info(
            "Message %s %s → %s (%s)",
            message.id, sender_id, receiver_id,
            "pushed" if delivered else "stored for later fetch",
        )
        return message

    async def _push(
        self,
        user_id: str,
        frame: OutboundFrame,
        connection: Connection | None = None,
    ) -> bool:
        """Best-effort live delivery.  Never raises."""
        connection = connection or self._presence.lookup(user_id)
        if connection is None:
            return False
        try:
            await connection.send_frame(frame)
            return True
        except TransportError as exc:
            logger.warning("Push of %s to %s failed: %s", frame.type, user_id, exc)
        except Exception as exc:
            logger.warning(
                "Unexpected push failure of %s to %s: %s", frame.type, user_id, exc,
                exc_info=True,
            )
        # The registry thought this handle was live; it isn't.
        self._presence.unregister(connection)
        return False

    # ── Reading ──

    async def fetch_conversation(self, user_a: str, user_b: str) -> list[Message]:
        """Non-deleted messages between two users, oldest first."""
        return await self._store.fetch_pair(user_a, user_b)

    async def fetch_history(self, requesting_user_id: str, peer_id: str) -> list[Message]:
        """
        Conversation with a peer, only if the pair is chat-eligible.
        Anyone may read the notifications the system sent them.
        """
        if peer_id == settings.SYSTEM_USER_ID:
            return await self.fetch_conversation(requesting_user_id, peer_id)

        result = self._eligibility.check_ids(requesting_user_id, peer_id)
        if not result.allowed:
            raise EligibilityError(
                f"{requesting_user_id} may not view a conversation with {peer_id}",
                reason=result.reason,
            )
        return await self.fetch_conversation(requesting_user_id, peer_id)

    async def review_conversation(
        self, admin_id: str, user_a: str, user_b: str
    ) -> list[Message]:
        """Admin transparency view of any two users' conversation."""
        admin = self._directory.get_active_user(admin_id)
        if admin is None or admin.role != Role.ADMIN:
            raise AuthorizationError(
                f"{admin_id} is not allowed to review conversations", reason="not_admin"
            )
        return await self.fetch_conversation(user_a, user_b)

    def available_peers(self, user_id: str) -> list[ChatUser]:
        """Eligible chat partners for a user, with live presence."""
        user = self._directory.get_active_user(user_id)
        if user is None:
            return []
        peers = [
            ChatUser(
                id=peer.id,
                name=peer.display_name,
                role=peer.role,
                is_online=self._presence.is_online(peer.id),
            )
            for peer in self._eligibility.eligible_peers(user)
            if peer.id != settings.SYSTEM_USER_ID
        ]
        return sorted(peers, key=lambda p: p.name.lower())

    # ── Deleting ──

    async def soft_delete(self, message_id: str, requesting_user_id: str) -> Message:
        """
        Hide a message from conversations.

        Allowed only for the sender, within the deletion window, once.
        Raises MessageNotFoundError or DeleteNotAllowedError.
        """
        now = self._clock()

        def _check(message: Message) -> None:
            if message.deletable_by(requesting_user_id, self._delete_window, now):
                return
            if message.sender_id != requesting_user_id:
                reason = "not_sender"
            elif message.is_deleted:
                reason = "already_deleted"
            else:
                reason = "window_expired"
            raise DeleteNotAllowedError("Cannot delete this message", reason=reason)

        # The check runs against the stored row under the pair lock
        try:
            deleted = await self._store.mark_deleted(message_id, check=_check)
        except DeleteNotAllowedError as exc:
            logger.warning(
                "Delete of %s by %s refused [reason=%s]",
                message_id, requesting_user_id, exc.reason,
            )
            raise
        logger.info("Message %s soft-deleted by %s", message_id, requesting_user_id)
        return deleted
