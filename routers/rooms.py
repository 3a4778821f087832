from fastapi import APIRouter, HTTPException, Request, Response

from logging_config import get_logger
from orchestrator import peer_info
from room_registry import Room
from schemas.rooms import CreateRoomRequest, RoomListResponse, RoomPeersResponse, RoomResponse

logger = get_logger(__name__)

rooms_router = APIRouter(prefix="/rooms", tags=["rooms"])


def room_response(room: Room) -> RoomResponse:
    return RoomResponse(
        room_id=room.room_id,
        name=room.name,
        max_participants=room.max_participants,
        current_participants=room.peer_count(),
        created_at=room.created_at,
        is_full=room.is_full(),
    )


@rooms_router.post("", status_code=201, response_model=RoomResponse)
async def create_room(room: CreateRoomRequest, request: Request):
    client_host = request.client.host if request.client else "unknown"
    logger.info(f"Room creation request from {client_host}, title: {room.title}, max_participants: {room.max_participants}")
    if room.room_id is not None and not room.room_id.strip():
        raise HTTPException(status_code=400, detail="room_id must not be blank")

    created = await request.app.state.rooms.create_room(
        title=room.title,
        max_participants=room.max_participants,
        room_id=room.room_id,
    )
    logger.info(f"Room {created.room_id} created: name={created.name}, max_participants={created.max_participants}")
    return room_response(created)


@rooms_router.get("", response_model=RoomListResponse)
async def list_rooms(request: Request):
    rooms = [room_response(room) for room in request.app.state.rooms.get_all_rooms()]
    return RoomListResponse(rooms=rooms, count=len(rooms))


@rooms_router.get("/{room_id}", response_model=RoomResponse)
async def get_room(room_id: str, request: Request):
    """
    Get room details including the current participant count.

    Returns:
    - room_id: Unique room identifier
    - name: Room name
    - max_participants: Capacity of the room
    - current_participants: Peers currently in the room
    - created_at: Room creation timestamp
    - is_full: Whether the room has reached capacity
    """
    return room_response(request.app.state.rooms.get_room(room_id))


@rooms_router.get("/{room_id}/peers", response_model=RoomPeersResponse)
async def get_room_peers(room_id: str, request: Request):
    room = request.app.state.rooms.get_room(room_id)
    return RoomPeersResponse(room_id=room.room_id, peers=[peer_info(p) for p in room.get_all_peers()])


@rooms_router.delete("/{room_id}", status_code=204)
async def delete_room(room_id: str, request: Request):
    client_host = request.client.host if request.client else "unknown"
    logger.info(f"Delete room request for {room_id} from {client_host}")
    await request.app.state.rooms.delete_room(room_id)
    return Response(status_code=204)
