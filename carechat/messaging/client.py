"""
Client Session — a reconnecting chat connection for one logged-in user.

State machine:

    DISCONNECTED ──connect()──▶ CONNECTING ──handshake──▶ CONNECTED
         ▲                          │                        │
         └──── fixed delay ◀────────┴──────── close ◀────────┘

The whole loop runs in one owned task; the reconnect delay is a sleep
inside that task, so ``disconnect()`` cancels it and nothing leaks across
rapid connect/disconnect cycles.  Retries are unbounded and the delay
never grows.

Sends while not CONNECTED are dropped (``send`` returns False).  There is
no offline send queue.
"""

from __future__ import annotations

import asyncio
import logging
from enum import Enum
from typing import Any, Callable, Iterable, Optional
from urllib.parse import quote

from websockets.asyncio.client import connect as ws_connect

from carechat import settings
from carechat.messaging.errors import FrameError
from carechat.messaging.frames import (
    ChatFrame,
    ChatPushFrame,
    ChatSentFrame,
    ErrorFrame,
    OutboundFrame,
    parse_outbound,
)
from carechat.messaging.models import Message, MessageKind

logger = logging.getLogger("chat.client")

MessageCallback = Callable[[OutboundFrame], Any]


class SessionState(str, Enum):
    DISCONNECTED = "disconnected"
    CONNECTING = "connecting"
    CONNECTED = "connected"


class ClientSession:
    """
    Usage:
        session = ClientSession("ws://localhost:8080")
        await session.connect("user-123")
        await session.send("user-456", "Hello")
        ...
        await session.disconnect()
    """

    def __init__(
        self,
        base_url: str,
        *,
        reconnect_delay: float = settings.RECONNECT_DELAY_SECONDS,
        on_message: Optional[MessageCallback] = None,
        connector: Callable[[str], Any] = ws_connect,
    ) -> None:
        self._base_url = base_url.rstrip("/")
        self._reconnect_delay = reconnect_delay
        self._on_message = on_message
        self._connector = connector

        self._user_id: str = ""
        self._state = SessionState.DISCONNECTED
        self._ws: Any = None
        self._task: asyncio.Task | None = None
        self._connected = asyncio.Event()
        self._buffer: dict[str, Message] = {}
        self.connect_attempts = 0
        self.last_error: ErrorFrame | None = None

    # ── State ──

    @property
    def state(self) -> SessionState:
        return self._state

    @property
    def is_connected(self) -> bool:
        return self._state == SessionState.CONNECTED

    @property
    def user_id(self) -> str:
        return self._user_id

    @property
    def url(self) -> str:
        return f"{self._base_url}/ws?userId={quote(self._user_id)}"

    @property
    def messages(self) -> list[Message]:
        """Everything received or merged, de-duplicated, oldest first."""
        return sorted(self._buffer.values(), key=lambda m: m.created_at)

    def conversation_with(self, peer_id: str) -> list[Message]:
        return [
            m for m in self.messages
            if m.involves(self._user_id, peer_id) and not m.is_deleted
        ]

    # ── Lifecycle ──

    async def connect(self, user_id: str) -> None:
        """Start the connect/reconnect loop.  No-op for an empty user id."""
        if not user_id:
            return
        if self._task is not None and not self._task.done():
            if user_id == self._user_id:
                return
            await self.disconnect()

        self._user_id = user_id
        self._task = asyncio.create_task(self._run())

    async def wait_connected(self, timeout: float | None = None) -> bool:
        try:
            await asyncio.wait_for(self._connected.wait(), timeout=timeout)
            return True
        except asyncio.TimeoutError:
            return False

    async def disconnect(self) -> None:
        """Stop reconnecting and close the transport (logout / teardown)."""
        task, self._task = self._task, None
        if task is not None and not task.done():
            task.cancel()
            try:
                await task
            except asyncio.CancelledError:
                pass
        if self._ws is not None:
            try:
                await self._ws.close()
            except Exception as exc:
                logger.debug("Close during disconnect ignored: %s", exc)
            self._ws = None
        self._set_disconnected()
        logger.info("Chat session for %s closed", self._user_id)

    async def _run(self) -> None:
        while True:
            self._state = SessionState.CONNECTING
            self.connect_attempts += 1
            try:
                async with self._connector(self.url) as ws:
                    self._ws = ws
                    self._state = SessionState.CONNECTED
                    self._connected.set()
                    logger.info("Chat connected as %s", self._user_id)
                    async for raw in ws:
                        self._handle(raw)
                logger.info("Chat connection closed for %s", self._user_id)
            except asyncio.CancelledError:
                raise
            except Exception as exc:
                logger.warning("Chat connection for %s dropped: %s", self._user_id, exc)
            finally:
                self._ws = None
                self._set_disconnected()

            await asyncio.sleep(self._reconnect_delay)

    def _set_disconnected(self) -> None:
        self._state = SessionState.DISCONNECTED
        self._connected.clear()

    # ── Send / receive ──

    async def send(
        self,
        receiver_id: str,
        text: str,
        kind: MessageKind | str = MessageKind.TEXT,
    ) -> bool:
        """Write a chat frame.  Returns False if dropped (not connected)."""
        ws = self._ws
        if self._state != SessionState.CONNECTED or ws is None:
            logger.debug("Send to %s dropped: session %s", receiver_id, self._state.value)
            return False

        frame = ChatFrame(
            sender_id=self._user_id,
            receiver_id=receiver_id,
            text=text,
            message_type=MessageKind(kind),
        )
        try:
            await ws.send(frame.to_json())
        except Exception as exc:
            logger.warning("Send to %s failed: %s", receiver_id, exc)
            return False
        return True

    def merge_history(self, messages: Iterable[Message]) -> None:
        """Fold fetched history into the live buffer."""
        for m in messages:
            self._buffer[m.id] = m

    def _handle(self, raw: str | bytes) -> None:
        try:
            frame = parse_outbound(raw)
        except FrameError as exc:
            logger.warning("Ignoring server frame: %s", exc)
            return

        if isinstance(frame, (ChatPushFrame, ChatSentFrame)):
            self._buffer[frame.message.id] = frame.message
        elif isinstance(frame, ErrorFrame):
            self.last_error = frame
            logger.warning("Server rejected send: %s (%s)", frame.code, frame.detail)

        if self._on_message is not None:
            try:
                self._on_message(frame)
            except Exception as exc:
                logger.error("on_message callback failed: %s", exc, exc_info=True)
