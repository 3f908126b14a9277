"""Application-wide configuration constants.

Every value can be overridden with a ``BEAMSHARE_*`` environment variable.
"""

import os


def _env(name: str, default):
    raw = os.environ.get(f"BEAMSHARE_{name}")
    if raw is None:
        return default
    return type(default)(raw)


# --- Rendezvous server ---
API_HOST = _env("API_HOST", "0.0.0.0")
API_PORT = _env("API_PORT", 8000)
MAX_PEERS_PER_ROOM = 2
CONNECTION_CODE_LENGTH = 6
ROOM_FULL_CLOSE_CODE = 4003  # application-defined WebSocket close code
ROOM_RESERVATION_TTL = _env("ROOM_RESERVATION_TTL", 600.0)  # seconds an unused code stays reserved

# --- Signaling client ---
SIGNALING_URL = _env("SIGNALING_URL", "ws://localhost:8000/ws")
MAX_RECONNECT_ATTEMPTS = _env("MAX_RECONNECT_ATTEMPTS", 5)
RECONNECT_BASE_DELAY = _env("RECONNECT_BASE_DELAY", 1.0)  # seconds
RECONNECT_MAX_DELAY = _env("RECONNECT_MAX_DELAY", 30.0)  # seconds
RECONNECT_STABLE_AFTER = _env("RECONNECT_STABLE_AFTER", 10.0)  # seconds up before the attempt count resets

# --- Negotiation ---
ICE_SERVERS = [
    "stun:stun.l.google.com:19302",
    "stun:stun1.l.google.com:19302",
]
DATA_CHANNEL_LABEL = "fileTransfer"
OFFER_MAX_ATTEMPTS = _env("OFFER_MAX_ATTEMPTS", 5)
OFFER_RETRY_DELAY = _env("OFFER_RETRY_DELAY", 0.5)  # seconds
CONNECTION_TIMEOUT = _env("CONNECTION_TIMEOUT", 30.0)  # seconds spent "checking"
DISCONNECT_GRACE = _env("DISCONNECT_GRACE", 5.0)  # seconds "disconnected" before giving up

# --- Transfer ---
CHUNK_SIZE = _env("CHUNK_SIZE", 65536)  # 64 KB
ACK_TIMEOUT = _env("ACK_TIMEOUT", 5.0)  # seconds
ACK_CHECK_INTERVAL = _env("ACK_CHECK_INTERVAL", 1.0)  # seconds
MAX_CHUNK_RETRIES = _env("MAX_CHUNK_RETRIES", 3)
MAX_IN_FLIGHT_CHUNKS = _env("MAX_IN_FLIGHT_CHUNKS", 64)
BUFFERED_AMOUNT_LOW_THRESHOLD = _env("BUFFERED_AMOUNT_LOW_THRESHOLD", 262144)  # 256 KB
SIZE_TOLERANCE = _env("SIZE_TOLERANCE", 0)  # bytes

# --- Logging ---
LOG_LEVEL = _env("LOG_LEVEL", "INFO")
