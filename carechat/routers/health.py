import os
from fastapi import APIRouter

router = APIRouter()


@router.get("/")
async def root():
    return {
        "status": "CareChat Server is Running",
        "features": ["chat", "presence", "history", "soft_delete"],
        "endpoints": {
            "chat_ws": "/ws?userId={user_id}",
            "chat_users": "/api/chat/users",
            "chat_history": "/api/chat/{peer_id}",
            "chat_send": "/api/chat/messages",
            "chat_delete": "/api/chat/messages/{message_id}",
            "chat_notify": "/api/chat/notify",
            "chat_review": "/api/chat/admin/conversation",
            "chat_status": "/api/chat/status"
        }
    }


@router.get("/health")
async def health_check():
    """Health check endpoint"""
    from carechat.messaging.setup import get_gateway, get_store

    store = get_store()
    return {
        "status": "healthy",
        "service": "carechat",
        "messaging": get_gateway() is not None,
        "store": store.backend if store else None,
        "port": os.environ.get("PORT", 8080)
    }
