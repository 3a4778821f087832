from datetime import datetime
from typing import List, Optional

from pydantic import BaseModel, Field

from constants import DEFAULT_MAX_PARTICIPANTS
from schemas.signalling import PeerInfo


class CreateRoomRequest(BaseModel):
    title: Optional[str] = None
    max_participants: int = Field(DEFAULT_MAX_PARTICIPANTS, ge=1, le=100)
    room_id: Optional[str] = Field(None, min_length=1, max_length=128)


class RoomResponse(BaseModel):
    room_id: str
    name: str
    max_participants: int
    current_participants: int
    created_at: datetime
    is_full: bool


class RoomListResponse(BaseModel):
    rooms: List[RoomResponse]
    count: int


class RoomPeersResponse(BaseModel):
    room_id: str
    peers: List[PeerInfo]


class WorkerStats(BaseModel):
    worker_id: int
    alive: bool
    router_count: int


class WorkerStatsResponse(BaseModel):
    workers: List[WorkerStats]


class RouterCapabilitiesResponse(BaseModel):
    room_id: str
    rtp_capabilities: dict
