"""
Messaging Setup — builds and wires the chat components.

Called once during app startup.  Each component receives its
collaborators explicitly; the module-level references below only exist so
routers can reach the wired instances.
"""

from __future__ import annotations

import logging

from carechat import settings
from carechat.messaging.directory import Directory
from carechat.messaging.gateway import ConnectionGateway
from carechat.messaging.models import Role, User
from carechat.messaging.permissions import EligibilityChecker
from carechat.messaging.presence import PresenceRegistry
from carechat.messaging.router import MessageRouter
from carechat.messaging.store import MessageStore

logger = logging.getLogger("chat.setup")

# Module-level references (set during initialize)
_directory: Directory | None = None
_presence: PresenceRegistry | None = None
_store: MessageStore | None = None
_router: MessageRouter | None = None
_gateway: ConnectionGateway | None = None


def build_messaging(
    *,
    directory: Directory,
    store: MessageStore,
    presence: PresenceRegistry | None = None,
) -> tuple[MessageRouter, ConnectionGateway]:
    """Wire a router and gateway around the given directory and store."""
    presence = presence or PresenceRegistry()
    _ensure_system_user(directory)
    router = MessageRouter(
        store=store,
        presence=presence,
        directory=directory,
        eligibility=EligibilityChecker(directory),
    )
    gateway = ConnectionGateway(presence=presence, router=router, directory=directory)
    return router, gateway


async def initialize_messaging(
    *,
    directory: Directory | None = None,
    store: MessageStore | None = None,
) -> ConnectionGateway:
    """
    Build the chat stack from settings and publish it for the routers.

    Returns the ConnectionGateway.
    """
    global _directory, _presence, _store, _router, _gateway

    logger.info("Initializing chat messaging...")

    gcs = None
    if settings.GCS_BUCKET_NAME and (directory is None or store is None):
        from carechat.dependencies import get_gcs
        gcs = get_gcs()

    _directory = directory or Directory.load(
        gcs_bucket_manager=gcs, seed_path=settings.DIRECTORY_SEED_PATH
    )
    _store = store or MessageStore(gcs_bucket_manager=gcs)
    _presence = PresenceRegistry()
    _router, _gateway = build_messaging(
        directory=_directory, store=_store, presence=_presence
    )

    logger.info(
        "Chat messaging initialized: store=%s, users=%d",
        _store.backend, _directory.user_count,
    )
    return _gateway


async def shutdown_messaging() -> None:
    """Close every live connection; presence does not survive a restart."""
    if _presence is None:
        return
    for user_id in _presence.online_user_ids:
        connection = _presence.lookup(user_id)
        if connection is not None:
            await connection.close(code=1001, reason="Server shutting down")
    logger.info("Chat messaging shutdown complete")


def _ensure_system_user(directory: Directory) -> None:
    """
    The notification sender exists so its messages resolve, but it is never
    active: nobody can connect or call the API as it.
    """
    existing = directory.get_user(settings.SYSTEM_USER_ID)
    if existing is not None and existing.is_active:
        logger.warning("Directory user %s deactivated: reserved for notifications", existing.id)
    directory.add_user(
        User(id=settings.SYSTEM_USER_ID, name="System", role=Role.ADMIN, is_active=False)
    )


def get_directory() -> Directory | None:
    return _directory


def get_presence() -> PresenceRegistry | None:
    return _presence


def get_store() -> MessageStore | None:
    return _store


def get_router() -> MessageRouter | None:
    return _router


def get_gateway() -> ConnectionGateway | None:
    return _gateway
