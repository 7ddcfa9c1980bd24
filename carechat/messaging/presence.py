"""
Presence Registry — who is reachable for live push right now.

One entry per user: the user's current connection and when it connected.
A new connection for the same user replaces the old one (last connect
wins).  Removal is handle-driven and only happens if the handle being
removed is still the current one, so a late close from an orphaned socket
cannot evict its replacement.

Process-local only.  Running several server instances fragments presence;
each instance only pushes to the clients connected to it.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone

from carechat.messaging.connections import Connection

logger = logging.getLogger("chat.presence")


@dataclass
class PresenceEntry:
    user_id: str
    connection: Connection
    connected_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))


class PresenceRegistry:
    """userId → live connection.  Single event loop, no locks."""

    def __init__(self) -> None:
        self._entries: dict[str, PresenceEntry] = {}

    def register(self, user_id: str, connection: Connection) -> Connection | None:
        """Upsert.  Returns the connection that was replaced, if any."""
        previous = self._entries.get(user_id)
        self._entries[user_id] = PresenceEntry(user_id=user_id, connection=connection)
        if previous is not None and previous.connection is not connection:
            logger.info(
                "User %s reconnected: %s replaces %s",
                user_id, connection, previous.connection,
            )
            return previous.connection
        return None

    def lookup(self, user_id: str) -> Connection | None:
        entry = self._entries.get(user_id)
        return entry.connection if entry else None

    def entry(self, user_id: str) -> PresenceEntry | None:
        return self._entries.get(user_id)

    def unregister(self, connection: Connection) -> str | None:
        """Remove the entry owned by this handle.  Returns the user id removed."""
        for user_id, entry in self._entries.items():
            if entry.connection is connection:
                del self._entries[user_id]
                return user_id
        return None

    def is_online(self, user_id: str) -> bool:
        return user_id in self._entries

    @property
    def online_user_ids(self) -> list[str]:
        return list(self._entries.keys())

    @property
    def count(self) -> int:
        return len(self._entries)
