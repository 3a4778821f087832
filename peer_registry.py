import asyncio
from dataclasses import dataclass, field
from datetime import datetime
from typing import Dict, List, Optional

from errors import EngineUnavailable, NotFound
from logging_config import get_logger
from media_engine import ConsumerHandle, MediaEngine, ProducerHandle, TransportHandle

logger = get_logger(__name__)


@dataclass(eq=False)
class Peer:
    """One participant in a room and the media handles it owns.

    Handles are looked up only through the peer's own maps, so a peer can
    never reach another peer's transport, producer or consumer even when
    ids collide. A handle the engine already closed counts as absent.
    """

    peer_id: str
    display_name: str
    room_id: str
    joined_at: datetime = field(default_factory=datetime.now)
    transports: Dict[str, TransportHandle] = field(default_factory=dict)
    producers: Dict[str, ProducerHandle] = field(default_factory=dict)
    consumers: Dict[str, ConsumerHandle] = field(default_factory=dict)

    def add_transport(self, transport: TransportHandle):
        self.transports[transport.id] = transport

    def get_transport(self, transport_id: str) -> TransportHandle:
        return self._owned(self.transports, transport_id, "Transport")

    def add_producer(self, producer: ProducerHandle):
        self.producers[producer.id] = producer

    def get_producer(self, producer_id: str) -> ProducerHandle:
        return self._owned(self.producers, producer_id, "Producer")

    def add_consumer(self, consumer: ConsumerHandle):
        self.consumers[consumer.id] = consumer

    def get_consumer(self, consumer_id: str) -> ConsumerHandle:
        return self._owned(self.consumers, consumer_id, "Consumer")

    def producer_ids(self) -> List[str]:
        return [pid for pid, producer in self.producers.items() if not producer.closed]

    def clear(self):
        self.transports.clear()
        self.producers.clear()
        self.consumers.clear()

    @staticmethod
    def _owned(handles: dict, handle_id: str, label: str):
        handle = handles.get(handle_id)
        if handle is not None and handle.closed:
            del handles[handle_id]
            handle = None
        if handle is None:
            raise NotFound(f"{label} not found: {handle_id}")
        return handle


class PeerRegistry:
    """Owns every Peer of the process, keyed by peer id.

    Inserts and removals run under one lock so no caller ever sees a
    half-registered or half-removed peer.
    """

    def __init__(self, engine: MediaEngine):
        self.engine = engine
        self._peers: Dict[str, Peer] = {}
        self._lock = asyncio.Lock()

    async def create_peer(self, peer_id: str, display_name: str, room_id: str) -> Peer:
        async with self._lock:
            if peer_id in self._peers:
                # peer ids come from connection ids, a clash is a bug upstream
                raise ValueError(f"Peer already registered: {peer_id}")
            peer = Peer(peer_id=peer_id, display_name=display_name, room_id=room_id)
            self._peers[peer_id] = peer
        logger.info(f"Peer created: {peer_id} - {display_name} in room {room_id}")
        return peer

    def get_peer(self, peer_id: str) -> Peer:
        peer = self._peers.get(peer_id)
        if peer is None:
            raise NotFound(f"Peer not found: {peer_id}")
        return peer

    def has_peer(self, peer_id: str) -> bool:
        return peer_id in self._peers

    def list_by_room(self, room_id: str) -> List[Peer]:
        return [peer for peer in self._peers.values() if peer.room_id == room_id]

    def count(self) -> int:
        return len(self._peers)

    async def remove_peer(self, peer_id: str) -> Optional[Peer]:
        async with self._lock:
            peer = self._peers.pop(peer_id, None)
        if peer is None:
            return None

        # Closing a transport closes its producers and consumers with it
        for transport in list(peer.transports.values()):
            try:
                await self.engine.close_handle(transport)
            except EngineUnavailable as e:
                logger.warning(f"Failed to close transport {transport.id} of peer {peer_id}: {e}")
        peer.clear()
        logger.info(f"Peer removed: {peer_id}")
        return peer
