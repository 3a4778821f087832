from fastapi import APIRouter, Request

from logging_config import get_logger
from schemas.rooms import RouterCapabilitiesResponse, WorkerStatsResponse

logger = get_logger(__name__)

media_router = APIRouter(prefix="/media", tags=["media"])


@media_router.get("/workers", response_model=WorkerStatsResponse)
async def get_worker_stats(request: Request):
    workers = request.app.state.engine.worker_stats()
    logger.debug(f"Worker stats requested: {len(workers)} workers")
    return WorkerStatsResponse(workers=workers)


@media_router.get("/routers/{room_id}", response_model=RouterCapabilitiesResponse)
async def get_router_capabilities(room_id: str, request: Request):
    room = request.app.state.rooms.get_room(room_id)
    return RouterCapabilitiesResponse(room_id=room.room_id, rtp_capabilities=room.router.rtp_capabilities)
