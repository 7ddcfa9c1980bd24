"""
Centralized configuration for CareChat.
Env-based constants, loaded once at import time.
"""

import os
from dotenv import load_dotenv

load_dotenv()

# --- GCS ---
# Empty bucket name keeps the message store and directory in memory.
GCS_BUCKET_NAME = os.getenv("GCS_BUCKET_NAME", "")

# --- Directory ---
DIRECTORY_SEED_PATH = os.getenv("DIRECTORY_SEED_PATH", "data/directory.json")

# --- Messaging ---
DELETE_WINDOW_SECONDS = int(os.getenv("DELETE_WINDOW_SECONDS", "120"))
RECONNECT_DELAY_SECONDS = float(os.getenv("RECONNECT_DELAY_SECONDS", "3.0"))
MAX_MESSAGE_LENGTH = int(os.getenv("MAX_MESSAGE_LENGTH", "10000"))
SYSTEM_USER_ID = os.getenv("SYSTEM_USER_ID", "system")

# --- Server ---
PORT = int(os.getenv("PORT", "8080"))
CORS_ORIGINS = [o.strip() for o in os.getenv("CORS_ORIGINS", "*").split(",") if o.strip()]
