"""
Lazy-init shared dependencies used across multiple routers.
"""

import logging

from fastapi import Header, HTTPException

from carechat import settings

logger = logging.getLogger("carechat-server")

# Global singletons - initialized lazily
gcs = None


def get_gcs():
    """Lazy initialization of GCS Bucket Manager"""
    global gcs
    if gcs is None:
        from carechat.infrastructure.gcs import GCSBucketManager
        logger.info("Initializing GCS Bucket Manager (lazy)...")
        gcs = GCSBucketManager(bucket_name=settings.GCS_BUCKET_NAME)
        logger.info("GCS Bucket Manager initialized successfully")
    return gcs


def get_chat_router():
    """The wired MessageRouter, or 503 if messaging failed to start."""
    from carechat.messaging.setup import get_router
    router = get_router()
    if router is None:
        raise HTTPException(status_code=503, detail="Messaging not initialized")
    return router


def get_current_user(x_user_id: str = Header(default="", alias="X-User-Id")):
    """
    Resolve the calling user from the X-User-Id header.

    Authentication happens upstream; this only checks that the claimed
    user exists and is active.
    """
    from carechat.messaging.setup import get_directory
    directory = get_directory()
    if directory is None:
        raise HTTPException(status_code=503, detail="Messaging not initialized")
    if not x_user_id:
        raise HTTPException(status_code=401, detail="X-User-Id header required")
    user = directory.get_active_user(x_user_id)
    if user is None:
        raise HTTPException(status_code=401, detail="Unknown or inactive user")
    return user
