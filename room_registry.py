import asyncio
import uuid
from dataclasses import dataclass, field
from datetime import datetime
from typing import Awaitable, Callable, Dict, List, Optional, Set

from constants import DEFAULT_MAX_PARTICIPANTS
from errors import EngineUnavailable, NotFound, RoomExists, RoomFull
from logging_config import get_logger
from media_engine import MediaEngine, RouterHandle
from peer_registry import Peer

logger = get_logger(__name__)

ROOM_CREATED = "room-created"
ROOM_DELETED = "room-deleted"
PEER_ADDED = "peer-added"
PEER_REMOVED = "peer-removed"
ROOM_EVENTS = (ROOM_CREATED, ROOM_DELETED, PEER_ADDED, PEER_REMOVED)

RoomListener = Callable[..., Awaitable[None]]


@dataclass(eq=False)
class Room:
    room_id: str
    name: str
    max_participants: int
    router: RouterHandle
    created_at: datetime = field(default_factory=datetime.now)
    peers: Dict[str, Peer] = field(default_factory=dict)

    def add_peer(self, peer: Peer):
        self.peers[peer.peer_id] = peer

    def remove_peer(self, peer_id: str) -> Optional[Peer]:
        return self.peers.pop(peer_id, None)

    def get_peer(self, peer_id: str) -> Optional[Peer]:
        return self.peers.get(peer_id)

    def get_all_peers(self) -> List[Peer]:
        return list(self.peers.values())

    def peer_count(self) -> int:
        return len(self.peers)

    def is_full(self) -> bool:
        return len(self.peers) >= self.max_participants


def _log_hook_error(event: str, error: BaseException):
    logger.warning(f"Room event listener for '{event}' failed: {error!r}")


class RoomRegistry:
    def __init__(
        self,
        engine: MediaEngine,
        on_hook_error: Callable[[str, BaseException], None] = _log_hook_error,
    ):
        self.engine = engine
        self.on_hook_error = on_hook_error
        self._rooms: Dict[str, Room] = {}
        self._lock = asyncio.Lock()
        self._listeners: Dict[str, List[RoomListener]] = {event: [] for event in ROOM_EVENTS}
        self._hook_tasks: Set[asyncio.Task] = set()

    def add_listener(self, event: str, callback: RoomListener):
        if event not in self._listeners:
            raise ValueError(f"Unknown room event: {event}")
        self._listeners[event].append(callback)

    def _emit(self, event: str, *args):
        for callback in self._listeners[event]:
            task = asyncio.create_task(callback(*args))
            self._hook_tasks.add(task)
            task.add_done_callback(lambda t, e=event: self._hook_done(e, t))

    def _hook_done(self, event: str, task: asyncio.Task):
        self._hook_tasks.discard(task)
        if task.cancelled():
            return
        error = task.exception()
        if error is not None:
            self.on_hook_error(event, error)

    async def drain_hooks(self):
        """Wait until every scheduled listener has finished."""
        while self._hook_tasks:
            await asyncio.gather(*list(self._hook_tasks), return_exceptions=True)

    async def create_room(
        self,
        title: Optional[str] = None,
        max_participants: int = DEFAULT_MAX_PARTICIPANTS,
        room_id: Optional[str] = None,
    ) -> Room:
        async with self._lock:
            room = await self._create_locked(title, max_participants, room_id)
        self._emit(ROOM_CREATED, room)
        return room

    async def _create_locked(self, title, max_participants, room_id) -> Room:
        if max_participants < 1:
            raise ValueError("max_participants must be at least 1")
        room_id = room_id or uuid.uuid4().hex
        if room_id in self._rooms:
            raise RoomExists(f"Room already exists: {room_id}")

        try:
            router = await self.engine.create_router(room_id)
        except EngineUnavailable as e:
            logger.error(f"Failed to create room {room_id}: {e}")
            raise

        room = Room(
            room_id=room_id,
            name=title or f"Room {room_id}",
            max_participants=max_participants,
            router=router,
        )
        self._rooms[room_id] = room
        logger.info(f"Room created: {room_id} - {room.name} (max {max_participants})")
        return room

    def get_room(self, room_id: str) -> Room:
        room = self._rooms.get(room_id)
        if room is None:
            raise NotFound(f"Room not found: {room_id}")
        return room

    def has_room(self, room_id: str) -> bool:
        return room_id in self._rooms

    def get_all_rooms(self) -> List[Room]:
        return list(self._rooms.values())

    async def delete_room(self, room_id: str):
        async with self._lock:
            room = self._rooms.pop(room_id, None)
        if room is None:
            raise NotFound(f"Room not found: {room_id}")
        await self._close_router(room)
        logger.info(f"Room deleted: {room_id}")
        self._emit(ROOM_DELETED, room)

    async def _close_router(self, room: Room):
        # The room entry is already gone; engine teardown is best effort
        try:
            await self.engine.close_router(room.router)
        except EngineUnavailable as e:
            logger.warning(f"Failed to close router of room {room.room_id}: {e}")

    async def add_peer(self, room_id: str, peer: Peer):
        async with self._lock:
            room = self.get_room(room_id)
            self._add_locked(room, peer)
        self._emit(PEER_ADDED, room, peer)

    def _add_locked(self, room: Room, peer: Peer):
        if room.is_full():
            logger.warning(f"Room {room.room_id} is full ({room.peer_count()}/{room.max_participants})")
            raise RoomFull(f"Room is full: {room.room_id}")
        room.add_peer(peer)
        logger.info(
            f"Peer {peer.peer_id} added to room {room.room_id}. "
            f"Room has {room.peer_count()} peers"
        )

    async def join_room(
        self,
        room_id: str,
        peer: Peer,
        title: Optional[str] = None,
        max_participants: int = DEFAULT_MAX_PARTICIPANTS,
    ) -> Room:
        """Get or auto-create ``room_id`` and add ``peer`` to it atomically."""
        created = False
        async with self._lock:
            room = self._rooms.get(room_id)
            if room is None:
                room = await self._create_locked(title, max_participants, room_id)
                created = True
            try:
                self._add_locked(room, peer)
            except RoomFull:
                if created:
                    # only possible with a zero-capacity default; never keep it
                    self._rooms.pop(room_id, None)
                    await self._close_router(room)
                raise
        if created:
            self._emit(ROOM_CREATED, room)
        self._emit(PEER_ADDED, room, peer)
        return room

    async def remove_peer(self, room_id: str, peer_id: str) -> bool:
        """Remove a peer; returns True when this emptied and reaped the room."""
        async with self._lock:
            room = self._rooms.get(room_id)
            if room is None:
                return False
            peer = room.remove_peer(peer_id)
            if peer is None:
                return False
            reaped = room.peer_count() == 0
            if reaped:
                del self._rooms[room_id]

        logger.info(f"Peer {peer_id} removed from room {room_id}")
        self._emit(PEER_REMOVED, room, peer)
        if reaped:
            await self._close_router(room)
            logger.info(f"Room '{room_id}' deleted (empty)")
            self._emit(ROOM_DELETED, room)
        return reaped
