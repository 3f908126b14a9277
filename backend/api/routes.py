"""REST API routes for the Beamshare rendezvous server."""

import logging

from fastapi import APIRouter

from signaling.models import generate_connection_code

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api")

# Injected by main.py at startup
_room_manager = None


def init_routes(room_manager) -> None:
    """Inject service dependencies into the routes module."""
    global _room_manager
    _room_manager = room_manager


@router.get("/health")
async def health():
    return {"status": "ok"}


@router.post("/rooms")
async def create_room():
    """Issue a fresh connection code for an initiator to share."""
    code = generate_connection_code()
    while _room_manager.is_reserved(code):
        code = generate_connection_code()
    _room_manager.reserve(code)
    logger.info(f"Issued connection code {code}")
    return {"code": code}


@router.get("/rooms/{code}")
async def get_room(code: str):
    """Report how many peers are currently in a room."""
    return {"code": code, "peers": _room_manager.occupancy(code)}
