"""Configuration for the visitor queue service (read from environment at import time)."""

import os

# --- Record store ---
# "memory" keeps tickets in-process (lost on restart); "redis" persists them.
STORE_BACKEND: str = os.environ.get("STORE_BACKEND", "memory")
REDIS_URL: str = os.environ.get("REDIS_URL", "redis://localhost:6379/0")
REDIS_KEY_PREFIX: str = os.environ.get("REDIS_KEY_PREFIX", "visitor_queue:")

# --- Queue selection ---
SELECTION_WINDOW_HOURS: float = float(os.environ.get("SELECTION_WINDOW_HOURS", "12"))
APPOINTMENT_GRACE_MINUTES: float = float(os.environ.get("APPOINTMENT_GRACE_MINUTES", "30"))

# --- Live updates ---
SUBSCRIBER_BUFFER_SIZE: int = int(os.environ.get("SUBSCRIBER_BUFFER_SIZE", "100"))
SSE_PING_SECONDS: int = int(os.environ.get("SSE_PING_SECONDS", "15"))

# --- HTTP ---
CORS_ORIGINS: list[str] = [
    o.strip()
    for o in os.environ.get("CORS_ORIGINS", "http://localhost:5173,http://127.0.0.1:5173").split(",")
    if o.strip()
]
LOG_LEVEL: str = os.environ.get("LOG_LEVEL", "INFO")
