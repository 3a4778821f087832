import uuid
from contextlib import asynccontextmanager
from typing import Optional

from fastapi import FastAPI, Request, WebSocket, WebSocketDisconnect
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from fastapi.websockets import WebSocketState

from backend import RedisBackend, create_redis_backend
from constants import CORS_ORIGINS, DEFAULT_MAX_PARTICIPANTS, LOG_FILE, LOG_LEVEL, REDIS_ENABLED
from errors import SignallingError
from logging_config import get_logger, setup_logging
from media_engine import LocalMediaEngine, MediaEngine
from orchestrator import SessionOrchestrator, SignallingConnection
from peer_registry import PeerRegistry
from room_registry import RoomRegistry
from routers.media import media_router
from routers.rooms import rooms_router

# Setup logging
setup_logging(log_level=LOG_LEVEL, log_file=LOG_FILE)
logger = get_logger(__name__)


class WebSocketConnection(SignallingConnection):
    def __init__(self, websocket: WebSocket):
        self.websocket = websocket
        self.connection_id = uuid.uuid4().hex

    async def send(self, message: dict) -> bool:
        if self.websocket.application_state != WebSocketState.CONNECTED:
            return False
        try:
            await self.websocket.send_json(message)
            return True
        except (WebSocketDisconnect, RuntimeError, OSError) as e:
            logger.debug(f"Failed to send to connection {self.connection_id}: {e}")
            return False


def create_app(
    engine: Optional[MediaEngine] = None,
    redis_backend: Optional[RedisBackend] = None,
) -> FastAPI:
    engine = engine or LocalMediaEngine()
    rooms = RoomRegistry(engine)
    peers = PeerRegistry(engine)
    orchestrator = SessionOrchestrator(rooms, peers, engine, default_max_participants=DEFAULT_MAX_PARTICIPANTS)

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        await engine.start()
        mirror = redis_backend
        if mirror is None and REDIS_ENABLED:
            mirror = create_redis_backend()
        if mirror is not None:
            if mirror.ping():
                mirror.attach(rooms)
            else:
                logger.error("Redis unreachable, presence mirror disabled")
                mirror = None
        app.state.redis_backend = mirror
        logger.info("Signalling server started")
        yield
        await orchestrator.close()
        await rooms.drain_hooks()
        await engine.close()
        logger.info("Signalling server stopped")

    app = FastAPI(lifespan=lifespan)
    app.state.engine = engine
    app.state.rooms = rooms
    app.state.peers = peers
    app.state.orchestrator = orchestrator
    app.state.redis_backend = None

    app.add_middleware(
        CORSMiddleware,
        allow_origins=CORS_ORIGINS,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    app.include_router(rooms_router)
    app.include_router(media_router)

    @app.exception_handler(SignallingError)
    async def signalling_error_handler(request: Request, exc: SignallingError):
        logger.info(f"{request.method} {request.url.path} failed: {exc.code} {exc.message}")
        return JSONResponse(status_code=exc.status_code, content={"detail": exc.message, "code": exc.code})

    @app.get("/health")
    async def health(request: Request):
        workers = engine.worker_stats()
        mirror = request.app.state.redis_backend
        return {
            "status": "ok",
            "rooms": len(rooms.get_all_rooms()),
            "workers_alive": sum(1 for w in workers if w["alive"]),
            "redis": "connected" if mirror is not None else "disabled",
        }

    @app.websocket("/ws")
    async def websocket_endpoint(websocket: WebSocket):
        """Signalling channel: one JSON message per text frame, see schemas.signalling."""
        await websocket.accept()
        connection = WebSocketConnection(websocket)
        orchestrator.connect(connection)
        connection_id = connection.connection_id

        message_count = 0
        try:
            while True:
                data = await websocket.receive_text()
                message_count += 1
                logger.debug(f"Received message #{message_count} from connection {connection_id}")
                await orchestrator.handle_message(connection_id, data)
        except WebSocketDisconnect:
            logger.info(f"WebSocket disconnected normally for connection {connection_id}")
        except Exception as e:
            logger.error(f"WebSocket error for connection {connection_id}: {e}", exc_info=True)
        finally:
            await orchestrator.disconnect(connection_id)
            if websocket.application_state == WebSocketState.CONNECTED:
                try:
                    await websocket.close()
                except RuntimeError as e:
                    logger.debug(f"Error closing WebSocket: {e}")

    logger.info("FastAPI application initialized")
    return app


app = create_app()
