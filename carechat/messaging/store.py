"""
Message Store — durable log of direct messages.

One JSON document per conversation pair, stored in GCS, plus a small
pointer blob per message id so soft-delete can find the right document:

    gs://{bucket}/chat_messages/pair_{a}__{b}/conversation.json
    gs://{bucket}/chat_messages/index/{message_id}.json

When ``gcs_bucket_manager`` is None the store runs in memory (test mode,
local dev).  Either way the store is the only place ``created_at`` is
assigned, and it is strictly increasing across writes.
"""

from __future__ import annotations

import asyncio
import json
import logging
from contextlib import asynccontextmanager
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Callable, Optional

from google.api_core.exceptions import NotFound, PreconditionFailed
from pydantic import BaseModel, Field

from carechat.messaging.errors import (
    ChatError,
    MessageNotFoundError,
    PersistenceError,
    StoreConcurrencyError,
)
from carechat.messaging.models import Message, MessageKind, pair_key

logger = logging.getLogger("chat.store")

Clock = Callable[[], datetime]

# Optimistic-lock retries per write before giving up
MAX_WRITE_ATTEMPTS = 3

_TICK = timedelta(microseconds=1)


def _now() -> datetime:
    return datetime.now(timezone.utc)


# Called with the current row under the pair lock; raises to refuse the delete.
DeleteCheck = Callable[[Message], None]


@dataclass
class _PairLock:
    lock: asyncio.Lock = field(default_factory=asyncio.Lock)
    users: int = 0


class ConversationDocument(BaseModel):
    """Serialisable state of one conversation pair."""

    pair_key: str
    messages: list[Message] = Field(default_factory=list)

    def find(self, message_id: str) -> Message | None:
        for m in self.messages:
            if m.id == message_id:
                return m
        return None


class MessageStore:
    """
    Append / fetch-by-pair / soft-delete, backed by GCS or memory.

    Appends and deletes on the same pair are serialised in-process by a
    per-pair asyncio.Lock; across processes GCS generation matching
    rejects lost updates and the write is retried.
    """

    PREFIX = "chat_messages"

    # HTTP timeout for individual GCS operations (seconds)
    GCS_TIMEOUT = 30

    def __init__(self, gcs_bucket_manager=None, clock: Clock | None = None) -> None:
        self._gcs = gcs_bucket_manager
        self._clock = clock or _now
        self._locks: dict[str, _PairLock] = {}
        self._last_created: datetime | None = None
        # In-memory state (test mode)
        self._messages: dict[str, Message] = {}
        self._by_pair: dict[str, list[str]] = {}

    @property
    def backend(self) -> str:
        return "memory" if self._gcs is None else "gcs"

    # ── Public API ──

    async def append(
        self,
        sender_id: str,
        receiver_id: str,
        body: str,
        kind: MessageKind = MessageKind.TEXT,
    ) -> Message:
        """Persist a new message.  Raises PersistenceError on failure."""
        key = pair_key(sender_id, receiver_id)
        async with self._pair_lock(key):
            message = Message(
                sender_id=sender_id,
                receiver_id=receiver_id,
                message=body,
                message_type=kind,
                created_at=self._next_timestamp(),
            )
            if self._gcs is None:
                self._messages[message.id] = message
                self._by_pair.setdefault(key, []).append(message.id)
            else:
                await self._run(self._gcs_append, key, message)

        logger.debug("Stored message %s (%s → %s)", message.id, sender_id, receiver_id)
        return message.model_copy()

    async def get(self, message_id: str) -> Message | None:
        if self._gcs is None:
            message = self._messages.get(message_id)
            return message.model_copy() if message else None

        key = await self._run(self._gcs_lookup_pair, message_id)
        if key is None:
            return None
        doc, _ = await self._run(self._gcs_load, key)
        return doc.find(message_id)

    async def fetch_pair(
        self, user_a: str, user_b: str, *, include_deleted: bool = False
    ) -> list[Message]:
        """All messages between two users, oldest first."""
        key = pair_key(user_a, user_b)
        if self._gcs is None:
            messages = [self._messages[mid].model_copy() for mid in self._by_pair.get(key, [])]
        else:
            doc, _ = await self._run(self._gcs_load, key)
            messages = doc.messages

        if not include_deleted:
            messages = [m for m in messages if not m.is_deleted]
        return sorted(messages, key=lambda m: m.created_at)

    async def mark_deleted(
        self, message_id: str, check: Optional[DeleteCheck] = None
    ) -> Message:
        """
        Flip ``is_deleted``.  The row itself is never removed.

        ``check`` sees the row as it is at write time, inside the pair lock
        (and on every optimistic-lock retry), and may raise to refuse.
        """
        if self._gcs is None:
            message = self._messages.get(message_id)
            if message is None:
                raise MessageNotFoundError(f"No message {message_id}")
            if check is not None:
                check(message.model_copy())
            message.is_deleted = True
            return message.model_copy()

        key = await self._run(self._gcs_lookup_pair, message_id)
        if key is None:
            raise MessageNotFoundError(f"No message {message_id}")
        async with self._pair_lock(key):
            return await self._run(self._gcs_mark_deleted, key, message_id, check)

    # ── Internal ──

    @asynccontextmanager
    async def _pair_lock(self, key: str):
        """Hold the pair's lock; dropped from the table once nobody uses it."""
        entry = self._locks.get(key)
        if entry is None:
            entry = self._locks[key] = _PairLock()
        entry.users += 1
        try:
            async with entry.lock:
                yield
        finally:
            entry.users -= 1
            if entry.users == 0:
                del self._locks[key]

    def _next_timestamp(self) -> datetime:
        ts = self._clock()
        if self._last_created is not None and ts <= self._last_created:
            ts = self._last_created + _TICK
        self._last_created = ts
        return ts

    async def _run(self, fn, *args):
        """Run a blocking GCS call off the event loop, normalising errors."""
        try:
            return await asyncio.to_thread(fn, *args)
        except ChatError:
            raise
        except Exception as exc:
            logger.error("Message store failure in %s: %s", fn.__name__, exc)
            raise PersistenceError(str(exc)) from exc

    def _doc_path(self, key: str) -> str:
        return f"{self.PREFIX}/pair_{key}/conversation.json"

    def _index_path(self, message_id: str) -> str:
        return f"{self.PREFIX}/index/{message_id}.json"

    def _gcs_load(self, key: str) -> tuple[ConversationDocument, int]:
        """Returns (document, generation); generation 0 means 'does not exist yet'."""
        blob = self._gcs.bucket.blob(self._doc_path(key))
        try:
            content = blob.download_as_text(timeout=self.GCS_TIMEOUT)
        except NotFound:
            return ConversationDocument(pair_key=key), 0
        doc = ConversationDocument.model_validate(json.loads(content))
        return doc, blob.generation or 0

    def _gcs_save(self, key: str, doc: ConversationDocument, generation: int) -> None:
        blob = self._gcs.bucket.blob(self._doc_path(key))
        blob.upload_from_string(
            doc.model_dump_json(by_alias=True),
            content_type="application/json",
            if_generation_match=generation,
            timeout=self.GCS_TIMEOUT,
        )

    def _gcs_update(self, key: str, mutate: Callable[[ConversationDocument], Message]) -> Message:
        for attempt in range(1, MAX_WRITE_ATTEMPTS + 1):
            doc, generation = self._gcs_load(key)
            result = mutate(doc)
            try:
                self._gcs_save(key, doc, generation)
                return result
            except PreconditionFailed:
                logger.warning(
                    "Conversation %s changed underneath us (attempt %d/%d)",
                    key, attempt, MAX_WRITE_ATTEMPTS,
                )
        raise StoreConcurrencyError(
            f"Conversation {key} kept changing; gave up after {MAX_WRITE_ATTEMPTS} attempts"
        )

    def _gcs_append(self, key: str, message: Message) -> None:
        def _add(doc: ConversationDocument) -> Message:
            doc.messages.append(message)
            return message

        # Pointer before document: every stored message is resolvable by id.
        index = self._gcs.bucket.blob(self._index_path(message.id))
        index.upload_from_string(
            json.dumps({"pair_key": key}),
            content_type="application/json",
            timeout=self.GCS_TIMEOUT,
        )
        self._gcs_update(key, _add)

    def _gcs_lookup_pair(self, message_id: str) -> str | None:
        blob = self._gcs.bucket.blob(self._index_path(message_id))
        try:
            content = blob.download_as_text(timeout=self.GCS_TIMEOUT)
        except NotFound:
            return None
        return json.loads(content).get("pair_key")

    def _gcs_mark_deleted(
        self, key: str, message_id: str, check: Optional[DeleteCheck] = None
    ) -> Message:
        def _flag(doc: ConversationDocument) -> Message:
            message = doc.find(message_id)
            if message is None:
                raise MessageNotFoundError(f"No message {message_id}")
            if check is not None:
                check(message.model_copy())
            message.is_deleted = True
            return message

        return self._gcs_update(key, _flag)
