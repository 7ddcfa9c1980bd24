"""
Connection Handles — the transport-facing side of presence.

The gateway, presence registry and router only ever talk to the
``Connection`` ABC.  The FastAPI WebSocket adapter lives here too; tests
use a recording fake.
"""

from __future__ import annotations

import logging
from abc import ABC, abstractmethod
from datetime import datetime, timezone
from uuid import uuid4

from fastapi import WebSocket
from starlette.websockets import WebSocketState

from carechat.messaging.errors import TransportError
from carechat.messaging.frames import OutboundFrame

logger = logging.getLogger("chat.connections")


class Connection(ABC):
    """A live, bidirectional link to one client."""

    def __init__(self, user_id: str = "") -> None:
        self.connection_id = str(uuid4())
        self.user_id = user_id
        self.opened_at = datetime.now(timezone.utc)
        self.frames_sent = 0

    @property
    @abstractmethod
    def is_open(self) -> bool:
        """Whether the transport still looks usable."""

    @abstractmethod
    async def send_text(self, text: str) -> None:
        """Write one frame.  Raises TransportError if the link is gone."""

    @abstractmethod
    async def close(self, code: int = 1000, reason: str = "") -> None:
        """Close the transport.  Safe to call more than once."""

    async def send_frame(self, frame: OutboundFrame) -> None:
        if not self.is_open:
            raise TransportError(f"Connection {self.connection_id} is closed")
        await self.send_text(frame.to_json())
        self.frames_sent += 1

    def __repr__(self) -> str:
        return f"<{type(self).__name__} {self.connection_id[:8]} user={self.user_id!r}>"


class WebSocketConnection(Connection):
    """Connection backed by a FastAPI/Starlette WebSocket."""

    def __init__(self, websocket: WebSocket, user_id: str = "") -> None:
        super().__init__(user_id)
        self.websocket = websocket

    @property
    def is_open(self) -> bool:
        return (
            self.websocket.client_state == WebSocketState.CONNECTED
            and self.websocket.application_state == WebSocketState.CONNECTED
        )

    async def send_text(self, text: str) -> None:
        try:
            await self.websocket.send_text(text)
        except Exception as exc:
            raise TransportError(
                f"Send failed on connection {self.connection_id}: {exc}"
            ) from exc

    async def close(self, code: int = 1000, reason: str = "") -> None:
        if self.websocket.application_state == WebSocketState.DISCONNECTED:
            return
        try:
            await self.websocket.close(code=code, reason=reason)
        except Exception as exc:
            logger.debug("Close on %s ignored: %s", self, exc)
