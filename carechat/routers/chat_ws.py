import logging

from fastapi import APIRouter, Query, WebSocket, WebSocketDisconnect

from carechat.messaging.connections import WebSocketConnection

router = APIRouter()
logger = logging.getLogger("chat.ws")

# WebSocket close codes
POLICY_VIOLATION = 1008
SERVICE_UNAVAILABLE = 1011


@router.websocket("/ws")
async def chat_websocket(websocket: WebSocket, user_id: str = Query(default="", alias="userId")):
    """Real-time chat for one user; ``userId`` comes from the upstream login."""
    from carechat.messaging.setup import get_gateway

    gateway = get_gateway()
    if gateway is None:
        await websocket.close(code=SERVICE_UNAVAILABLE, reason="Service unavailable")
        return

    await websocket.accept()
    connection = WebSocketConnection(websocket)
    if not gateway.on_connect(user_id, connection):
        await connection.close(code=POLICY_VIOLATION, reason="unauthorized")
        return

    try:
        while True:
            msg = await websocket.receive()
            if msg["type"] == "websocket.disconnect":
                break
            # Text or binary; the frame parser decodes both
            raw = msg.get("text")
            if raw is None:
                raw = msg.get("bytes") or b""
            await gateway.on_inbound_frame(connection, raw)
    except WebSocketDisconnect:
        pass
    except Exception as e:
        logger.error(f"Chat socket error for {user_id}: {e}")
    finally:
        gateway.on_disconnect(connection)
