"""
Connection Gateway — binds live connections to users.

  on_connect        validate the user, register presence (last wins)
  on_disconnect     handle-driven presence removal
  on_inbound_frame  parse, then hand chat frames to the MessageRouter

There is no ping/pong protocol; a user is online until the transport
reports a close.  Bad frames never close the connection: they are logged
and dropped.
"""

from __future__ import annotations

import logging

from carechat.messaging.connections import Connection
from carechat.messaging.directory import Directory
from carechat.messaging.errors import (
    AuthorizationError,
    FrameError,
    PersistenceError,
    TransportError,
)
from carechat.messaging.frames import ChatFrame, ErrorFrame, parse_inbound
from carechat.messaging.presence import PresenceRegistry
from carechat.messaging.router import MessageRouter

logger = logging.getLogger("chat.gateway")


class ConnectionGateway:
    """Connection lifecycle and inbound frame routing."""

    def __init__(
        self,
        *,
        presence: PresenceRegistry,
        router: MessageRouter,
        directory: Directory,
    ) -> None:
        self._presence = presence
        self._router = router
        self._directory = directory

    # ── Lifecycle ──

    def on_connect(self, user_id: str, connection: Connection) -> bool:
        """
        Register a connection for a user.

        Returns False (and registers nothing) for an empty, unknown or
        inactive user id; the caller should refuse the connection.
        """
        if not user_id:
            logger.warning("Connection %s refused: no userId", connection)
            return False

        if self._directory.get_active_user(user_id) is None:
            logger.warning("Connection %s refused: unknown or inactive user %s", connection, user_id)
            return False

        connection.user_id = user_id
        replaced = self._presence.register(user_id, connection)
        if replaced is not None:
            # Orphaned: its writes will fail and its close won't touch presence.
            logger.debug("Orphaned %s for user %s", replaced, user_id)
        logger.info("User %s connected (%d online)", user_id, self._presence.count)
        return True

    def on_disconnect(self, connection: Connection) -> None:
        user_id = self._presence.unregister(connection)
        if user_id is None:
            logger.debug("Disconnect of %s: no longer current", connection)
            return
        logger.info("User %s disconnected (%d online)", user_id, self._presence.count)

    # ── Frames ──

    async def on_inbound_frame(self, connection: Connection, raw: str | bytes) -> None:
        """Route one inbound frame.  Never raises; the connection stays open."""
        try:
            frame = parse_inbound(raw)
        except FrameError as exc:
            logger.warning("Dropped frame from %s: %s", connection, exc)
            return

        if isinstance(frame, ChatFrame):
            await self._handle_chat(connection, frame)
        else:
            logger.warning("Dropped unhandled %s frame from %s", frame.type, connection)

    async def _handle_chat(self, connection: Connection, frame: ChatFrame) -> None:
        sender_id = connection.user_id
        if frame.sender_id and frame.sender_id != sender_id:
            logger.warning(
                "Dropped chat frame on %s: senderId %s does not match connection user",
                connection, frame.sender_id,
            )
            return

        try:
            await self._router.send(
                sender_id,
                frame.receiver_id,
                frame.text,
                frame.message_type,
                origin=connection,
            )
        except ValueError as exc:
            logger.warning("Dropped chat frame from %s: %s", sender_id, exc)
        except AuthorizationError as exc:
            await self._reply_error(connection, "not_allowed", exc.reason or str(exc))
        except PersistenceError as exc:
            logger.error("Send from %s failed to persist: %s", sender_id, exc)
            await self._reply_error(connection, "not_sent", "Message could not be saved")
        except Exception as exc:
            logger.error("Unexpected error routing frame from %s: %s", sender_id, exc, exc_info=True)
            await self._reply_error(connection, "not_sent", "Message could not be sent")

    async def _reply_error(self, connection: Connection, code: str, detail: str) -> None:
        try:
            await connection.send_frame(ErrorFrame(code=code, detail=detail))
        except TransportError as exc:
            logger.debug("Error frame to %s not delivered: %s", connection, exc)

    @property
    def online_user_ids(self) -> list[str]:
        return self._presence.online_user_ids
