"""
Beamshare rendezvous server: FastAPI application entry point.

Serves the signaling WebSocket (one room per connection code) and a small
REST API for issuing codes. File data never passes through this server.
"""

import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI, WebSocket, WebSocketDisconnect
from fastapi.middleware.cors import CORSMiddleware
from pydantic import ValidationError

from api.routes import init_routes, router
from api.websocket import RoomManager
from config import API_HOST, API_PORT, LOG_LEVEL
from signaling.models import parse_signaling_message

# --- Logging ---
logging.basicConfig(
    level=LOG_LEVEL,
    format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
)
logger = logging.getLogger(__name__)

# --- Service singletons ---
room_manager = RoomManager()


@asynccontextmanager
async def lifespan(app: FastAPI):
    logger.info(f"Beamshare rendezvous ready on {API_HOST}:{API_PORT}")
    yield
    logger.info("Shutting down Beamshare rendezvous...")


# --- FastAPI app ---
app = FastAPI(
    title="Beamshare Rendezvous",
    version="1.0.0",
    lifespan=lifespan,
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_methods=["*"],
    allow_headers=["*"],
)

init_routes(room_manager)
app.include_router(router)


@app.websocket("/ws/{room_id}")
async def signaling_endpoint(websocket: WebSocket, room_id: str):
    if not await room_manager.join(room_id, websocket):
        return
    try:
        while True:
            raw = await websocket.receive_text()
            try:
                message = parse_signaling_message(raw)
            except ValidationError as e:
                logger.warning(f"Dropping invalid signaling message in room {room_id}: {e.error_count()} error(s)")
                continue
            if message.room_id != room_id:
                logger.warning(f"Dropping {message.type} addressed to room {message.room_id} from room {room_id}")
                continue
            await room_manager.relay(room_id, websocket, raw)
    except WebSocketDisconnect:
        pass
    finally:
        await room_manager.leave(room_id, websocket)


def run() -> None:
    import uvicorn

    uvicorn.run(
        app,
        host=API_HOST,
        port=API_PORT,
        log_level=LOG_LEVEL.lower(),
    )


if __name__ == "__main__":
    run()
