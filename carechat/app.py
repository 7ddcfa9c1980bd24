"""
CareChat Server — Application Factory
"""

import time
import logging
from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from carechat import settings

# ── 1. Configure logging ──
logging.basicConfig(level=logging.INFO)
logger = logging.getLogger("carechat-server")

_startup_time = time.time()
logger.info("Server initialization started...")

# ── 2. Create FastAPI app ──
app = FastAPI(title="CareChat Server")

app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.CORS_ORIGINS,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

# ── 3. Register routers ──
from carechat.routers import (
    health,
    chat_api,
    chat_ws,
)

app.include_router(health.router)
app.include_router(chat_api.router)
app.include_router(chat_ws.router)


# ── 4. Startup / shutdown ──
@app.on_event("startup")
async def startup_event():
    """Log startup information and wire messaging"""
    logger.info("=" * 60)
    logger.info("CareChat Server Starting")
    logger.info(f"Listening on port: {settings.PORT}")

    # Messaging (blocking, needed before serving requests)
    try:
        from carechat.messaging.setup import initialize_messaging
        await initialize_messaging()
        logger.info("Chat messaging initialized")
    except Exception as e:
        logger.error(f"Messaging failed to start, chat endpoints will return 503: {e}")

    logger.info(f"Total init time: {time.time() - _startup_time:.2f}s")
    logger.info("=" * 60)


@app.on_event("shutdown")
async def shutdown_event():
    from carechat.messaging.setup import shutdown_messaging
    await shutdown_messaging()
