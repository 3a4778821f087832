"""Binds signalling connections to peers and drives the media engine."""
import asyncio
from abc import ABC, abstractmethod
from dataclasses import dataclass
from enum import Enum
from typing import Any, Callable, Dict, Optional, Set

from pydantic import BaseModel

from constants import DEFAULT_MAX_PARTICIPANTS
from errors import AlreadyJoined, EngineUnavailable, NotInSession, SignallingError
from logging_config import get_logger
from media_engine import MediaEngine, MediaHandle
from peer_registry import Peer, PeerRegistry
from room_registry import ROOM_DELETED, Room, RoomRegistry
from schemas.signalling import (
    AckMessage,
    ConnectTransportMessage,
    ConsumeMessage,
    CreateTransportMessage,
    ErrorMessage,
    GetRouterCapabilitiesMessage,
    JoinedRoomEvent,
    JoinMessage,
    LeaveMessage,
    NewPeerEvent,
    NewProducerEvent,
    PauseProducerMessage,
    PeerInfo,
    PeerLeftEvent,
    ProduceMessage,
    ProducerPausedEvent,
    ProducerResumedEvent,
    ResumeConsumerMessage,
    ResumeProducerMessage,
    RoomClosedEvent,
    parse_client_message,
    peek_request,
)

logger = get_logger(__name__)


class SignallingConnection(ABC):
    """A client connection the orchestrator can push JSON messages to."""

    connection_id: str

    @abstractmethod
    async def send(self, message: dict) -> bool:
        """Send one message; returns False if the connection is already gone."""


class SessionState(Enum):
    CONNECTED = "connected"
    JOINED = "joined"
    LEFT = "left"
    DISCONNECTED = "disconnected"


@dataclass(frozen=True, eq=False)
class _Binding:
    peer_id: str
    room_id: str
    room: Room


class _Session:
    def __init__(self, connection: SignallingConnection):
        self.connection = connection
        self.state = SessionState.CONNECTED
        self.binding: Optional[_Binding] = None
        self.lock = asyncio.Lock()

    @property
    def connection_id(self) -> str:
        return self.connection.connection_id


def peer_info(peer: Peer) -> PeerInfo:
    return PeerInfo(id=peer.peer_id, display_name=peer.display_name, producer_ids=peer.producer_ids())


class SessionOrchestrator:
    def __init__(
        self,
        rooms: RoomRegistry,
        peers: PeerRegistry,
        engine: MediaEngine,
        default_max_participants: int = DEFAULT_MAX_PARTICIPANTS,
    ):
        self.rooms = rooms
        self.peers = peers
        self.engine = engine
        self.default_max_participants = default_max_participants
        self._sessions: Dict[str, _Session] = {}
        # room_id -> connection ids receiving that room's broadcasts
        self._groups: Dict[str, Set[str]] = {}
        self._handlers: Dict[str, Callable[[_Session, Any], Any]] = {
            "join": self._handle_join,
            "get-router-capabilities": self._handle_get_router_capabilities,
            "create-transport": self._handle_create_transport,
            "connect-transport": self._handle_connect_transport,
            "produce": self._handle_produce,
            "consume": self._handle_consume,
            "resume-consumer": self._handle_resume_consumer,
            "pause-producer": self._handle_pause_producer,
            "resume-producer": self._handle_resume_producer,
            "leave": self._handle_leave,
        }
        rooms.add_listener(ROOM_DELETED, self._on_room_deleted)

    def connect(self, connection: SignallingConnection):
        if connection.connection_id in self._sessions:
            raise ValueError(f"Connection already registered: {connection.connection_id}")
        self._sessions[connection.connection_id] = _Session(connection)
        logger.info(f"Client connected: {connection.connection_id}")

    def session_count(self) -> int:
        return len(self._sessions)

    def session_state(self, connection_id: str) -> Optional[SessionState]:
        session = self._sessions.get(connection_id)
        return session.state if session else None

    async def disconnect(self, connection_id: str):
        session = self._sessions.pop(connection_id, None)
        if session is None:
            return
        # Unbind before waiting for the lock so an in-flight handler sees it
        binding = session.binding
        session.binding = None
        session.state = SessionState.DISCONNECTED
        if binding is None:
            logger.info(f"Client disconnected: {connection_id} (never joined)")
            return

        async with session.lock:
            await self._teardown(session, binding)
        logger.info(f"Client disconnected: {connection_id}")

    async def close(self):
        for connection_id in list(self._sessions):
            await self.disconnect(connection_id)

    async def handle_message(self, connection_id: str, raw):
        session = self._sessions.get(connection_id)
        if session is None:
            logger.warning(f"Dropping message from unknown connection {connection_id}")
            return

        async with session.lock:
            msg_type, request_id = peek_request(raw)
            try:
                message = parse_client_message(raw)
                logger.debug(f"Message '{message.type}' from connection {connection_id}")
                await self._handlers[message.type](session, message)
            except SignallingError as e:
                logger.info(f"Request '{msg_type}' from {connection_id} failed: {e.code} {e.message}")
                await self._send_error(session, e, msg_type, request_id)
            except Exception as e:
                logger.error(f"Unexpected error handling '{msg_type}' from {connection_id}: {e}", exc_info=True)
                await self._send_error(session, SignallingError("Internal server error"), msg_type, request_id)

    async def _handle_join(self, session: _Session, message: JoinMessage):
        if session.binding is not None:
            raise AlreadyJoined(f"Already joined room {session.binding.room_id}")
        if session.state is not SessionState.CONNECTED:
            raise NotInSession("Connection has already left its room")

        peer_id = session.connection_id
        peer = await self.peers.create_peer(peer_id, message.display_name, message.room_id)
        try:
            room = await self.rooms.join_room(
                message.room_id, peer, max_participants=self.default_max_participants
            )
        except BaseException:
            await self.peers.remove_peer(peer_id)
            raise

        if session.state is not SessionState.CONNECTED:
            # Disconnected while the join was in flight
            await self.rooms.remove_peer(room.room_id, peer_id)
            await self.peers.remove_peer(peer_id)
            raise NotInSession("Connection closed during join")

        session.binding = _Binding(peer_id=peer_id, room_id=room.room_id, room=room)
        session.state = SessionState.JOINED
        self._groups.setdefault(room.room_id, set()).add(session.connection_id)
        logger.info(f"Peer {peer_id} ({peer.display_name}) joined room {room.room_id}")

        others = [peer_info(p) for p in room.get_all_peers() if p.peer_id != peer_id]
        await self._send(session, JoinedRoomEvent(
            request_id=message.request_id,
            peer_id=peer_id,
            room_id=room.room_id,
            peers=others,
        ))
        await self._broadcast(room, NewPeerEvent(peer=peer_info(peer)), exclude=session.connection_id)

    async def _handle_get_router_capabilities(self, session: _Session, message: GetRouterCapabilitiesMessage):
        binding, _ = self._bound_peer(session)
        room = binding.room
        await self._ack(session, message, {"rtp_capabilities": room.router.rtp_capabilities})

    async def _handle_create_transport(self, session: _Session, message: CreateTransportMessage):
        binding, peer = self._bound_peer(session)
        room = binding.room
        transport = await self.engine.create_transport(room.router, message.role)
        await self._ensure_still_bound(session, binding, transport)
        peer.add_transport(transport)
        logger.debug(f"Transport {transport.id} ({message.role}) created for peer {peer.peer_id}")
        await self._ack(session, message, transport.connection_parameters())

    async def _handle_connect_transport(self, session: _Session, message: ConnectTransportMessage):
        _, peer = self._bound_peer(session)
        transport = peer.get_transport(message.transport_id)
        await self.engine.connect_transport(transport, message.dtls_parameters)
        await self._ack(session, message, {"connected": True})

    async def _handle_produce(self, session: _Session, message: ProduceMessage):
        binding, peer = self._bound_peer(session)
        transport = peer.get_transport(message.transport_id)
        producer = await self.engine.produce(
            transport, message.kind, message.rtp_parameters, message.app_data
        )
        await self._ensure_still_bound(session, binding, producer)
        peer.add_producer(producer)
        logger.info(f"Peer {peer.peer_id} producing {producer.kind} ({producer.id}) in room {binding.room_id}")
        await self._ack(session, message, {"id": producer.id})
        await self._broadcast(
            binding.room,
            NewProducerEvent(peer_id=peer.peer_id, producer_id=producer.id, kind=producer.kind),
            exclude=session.connection_id,
        )

    async def _handle_consume(self, session: _Session, message: ConsumeMessage):
        binding, peer = self._bound_peer(session)
        transport = peer.get_transport(message.transport_id)
        room = binding.room
        consumer = await self.engine.consume(
            room.router, transport, message.producer_id, message.rtp_capabilities, paused=True
        )
        await self._ensure_still_bound(session, binding, consumer)
        peer.add_consumer(consumer)
        logger.debug(f"Peer {peer.peer_id} consuming producer {message.producer_id} ({consumer.id})")
        await self._ack(session, message, {
            "id": consumer.id,
            "producer_id": consumer.producer_id,
            "kind": consumer.kind,
            "rtp_parameters": consumer.rtp_parameters,
            "paused": consumer.paused,
        })

    async def _handle_resume_consumer(self, session: _Session, message: ResumeConsumerMessage):
        _, peer = self._bound_peer(session)
        consumer = peer.get_consumer(message.consumer_id)
        await self.engine.resume(consumer)
        await self._ack(session, message, {"resumed": True})

    async def _handle_pause_producer(self, session: _Session, message: PauseProducerMessage):
        binding, peer = self._bound_peer(session)
        producer = peer.get_producer(message.producer_id)
        await self.engine.pause(producer)
        await self._ack(session, message, {"paused": True})
        await self._broadcast(
            binding.room,
            ProducerPausedEvent(peer_id=peer.peer_id, producer_id=producer.id),
            exclude=session.connection_id,
        )

    async def _handle_resume_producer(self, session: _Session, message: ResumeProducerMessage):
        binding, peer = self._bound_peer(session)
        producer = peer.get_producer(message.producer_id)
        await self.engine.resume(producer)
        await self._ack(session, message, {"resumed": True})
        await self._broadcast(
            binding.room,
            ProducerResumedEvent(peer_id=peer.peer_id, producer_id=producer.id),
            exclude=session.connection_id,
        )

    async def _handle_leave(self, session: _Session, message: LeaveMessage):
        binding, _ = self._bound_peer(session)
        session.binding = None
        session.state = SessionState.LEFT
        await self._teardown(session, binding)
        logger.info(f"Peer {binding.peer_id} left room {binding.room_id}")
        await self._ack(session, message, {"left": True})

    async def _on_room_deleted(self, room: Room):
        # A reaped room has no peers left; only explicit deletion evicts anyone
        for peer_id in list(room.peers):
            session = self._sessions.get(peer_id)
            if session is None or session.binding is None or session.binding.room is not room:
                continue
            binding = session.binding
            session.binding = None
            session.state = SessionState.LEFT
            async with session.lock:
                self._leave_group(binding.room_id, session.connection_id)
                await self.peers.remove_peer(binding.peer_id)
                await self._send(session, RoomClosedEvent(room_id=room.room_id))
            logger.info(f"Peer {peer_id} evicted: room {room.room_id} was deleted")

    def _bound_peer(self, session: _Session):
        binding = session.binding
        if binding is None:
            raise NotInSession("Join a room first")
        if not self._room_is_live(binding):
            raise NotInSession(f"Room {binding.room_id} has been closed")
        return binding, self.peers.get_peer(binding.peer_id)

    def _room_is_live(self, binding: _Binding) -> bool:
        # The registry drops a deleted room before its eviction listener runs,
        # and a later join may already have reused the id
        return self.rooms.has_room(binding.room_id) and self.rooms.get_room(binding.room_id) is binding.room

    async def _ensure_still_bound(self, session: _Session, binding: _Binding, handle: MediaHandle):
        if session.binding is binding:
            return
        try:
            await self.engine.close_handle(handle)
        except EngineUnavailable as e:
            logger.warning(f"Failed to close orphaned {type(handle).__name__} {handle.id}: {e}")
        raise NotInSession("Connection left its room while the request was in flight")

    async def _teardown(self, session: _Session, binding: _Binding):
        self._leave_group(binding.room_id, session.connection_id)
        if not self._room_is_live(binding):
            await self.peers.remove_peer(binding.peer_id)
            return
        reaped = await self.rooms.remove_peer(binding.room_id, binding.peer_id)
        await self.peers.remove_peer(binding.peer_id)
        if not reaped:
            await self._broadcast(binding.room, PeerLeftEvent(peer_id=binding.peer_id))

    def _leave_group(self, room_id: str, connection_id: str):
        group = self._groups.get(room_id)
        if group is None:
            return
        group.discard(connection_id)
        if not group:
            del self._groups[room_id]

    async def _send(self, session: _Session, message: BaseModel) -> bool:
        return await session.connection.send(message.model_dump(mode="json"))

    async def _ack(self, session: _Session, message, data: dict):
        await self._send(session, AckMessage(request=message.type, request_id=message.request_id, data=data))

    async def _send_error(self, session: _Session, error: SignallingError, msg_type, request_id):
        if session.state is SessionState.DISCONNECTED:
            return
        await self._send(session, ErrorMessage(
            code=error.code,
            message=error.message,
            request=msg_type,
            request_id=request_id,
        ))

    def _is_member(self, connection_id: str, room: Room) -> bool:
        # Members of an earlier room under the same id stay grouped until evicted
        session = self._sessions.get(connection_id)
        return session is not None and session.binding is not None and session.binding.room is room

    async def _broadcast(self, room: Room, message: BaseModel, exclude: Optional[str] = None):
        room_id = room.room_id
        payload = message.model_dump(mode="json")
        targets = [
            self._sessions[conn_id].connection
            for conn_id in self._groups.get(room_id, ())
            if conn_id != exclude and self._is_member(conn_id, room)
        ]
        if not targets:
            return
        await asyncio.gather(*(conn.send(payload) for conn in targets), return_exceptions=True)
        logger.debug(f"Broadcast '{payload['type']}' to {len(targets)} connections in room {room_id}")
