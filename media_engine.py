"""Media engine capability interface and an in-process implementation."""
import hashlib
import random
import secrets
import uuid
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Dict, List, Optional, Set, Union

from constants import (
    ANNOUNCED_IP,
    INITIAL_AVAILABLE_OUTGOING_BITRATE,
    MAX_INCOMING_BITRATE,
    MEDIA_CODECS,
    MEDIA_WORKERS,
    RTC_MAX_PORT,
    RTC_MIN_PORT,
)
from errors import EngineUnavailable, Incompatible
from logging_config import get_logger

logger = get_logger(__name__)

TRANSPORT_ROLES = ("send", "receive")
MEDIA_KINDS = ("audio", "video")


@dataclass(eq=False)
class RouterHandle:
    id: str
    room_id: str
    rtp_capabilities: dict
    closed: bool = False


@dataclass(eq=False)
class TransportHandle:
    id: str
    role: str
    ice_parameters: dict
    ice_candidates: list
    dtls_parameters: dict
    paused: bool = False
    closed: bool = False

    def connection_parameters(self) -> dict:
        return {
            "id": self.id,
            "role": self.role,
            "ice_parameters": self.ice_parameters,
            "ice_candidates": self.ice_candidates,
            "dtls_parameters": self.dtls_parameters,
        }


@dataclass(eq=False)
class ProducerHandle:
    id: str
    kind: str
    rtp_parameters: dict
    app_data: dict = field(default_factory=dict)
    paused: bool = False
    closed: bool = False


@dataclass(eq=False)
class ConsumerHandle:
    id: str
    producer_id: str
    kind: str
    rtp_parameters: dict
    paused: bool = True
    closed: bool = False


MediaHandle = Union[TransportHandle, ProducerHandle, ConsumerHandle]


class MediaEngine(ABC):
    """What the orchestration layer needs from a media engine."""

    async def start(self):
        pass

    async def close(self):
        pass

    @abstractmethod
    async def create_router(self, room_id: str) -> RouterHandle:
        ...

    @abstractmethod
    async def close_router(self, router: RouterHandle):
        ...

    @abstractmethod
    async def create_transport(self, router: RouterHandle, role: str) -> TransportHandle:
        ...

    @abstractmethod
    async def connect_transport(self, transport: TransportHandle, dtls_parameters: dict):
        ...

    @abstractmethod
    async def produce(
        self,
        transport: TransportHandle,
        kind: str,
        rtp_parameters: dict,
        app_data: Optional[dict] = None,
    ) -> ProducerHandle:
        ...

    @abstractmethod
    async def consume(
        self,
        router: RouterHandle,
        transport: TransportHandle,
        producer_id: str,
        rtp_capabilities: dict,
        paused: bool = True,
    ) -> ConsumerHandle:
        """Raises Incompatible when the router cannot serve this receiver."""

    @abstractmethod
    async def pause(self, handle: MediaHandle):
        ...

    @abstractmethod
    async def resume(self, handle: MediaHandle):
        ...

    @abstractmethod
    async def close_handle(self, handle: MediaHandle):
        """Close a transport, producer or consumer. Closing twice is a no-op."""

    def worker_stats(self) -> List[dict]:
        return []


@dataclass
class _Worker:
    worker_id: int
    min_port: int
    max_port: int
    alive: bool = True
    next_port: int = 0
    router_ids: Set[str] = field(default_factory=set)

    def allocate_port(self) -> int:
        if not self.next_port or self.next_port > self.max_port:
            self.next_port = self.min_port
        port = self.next_port
        self.next_port += 1
        return port


@dataclass
class _RouterRecord:
    handle: RouterHandle
    worker: _Worker
    transport_ids: Set[str] = field(default_factory=set)
    producer_ids: Set[str] = field(default_factory=set)


@dataclass
class _TransportRecord:
    handle: TransportHandle
    router_id: str
    connected: bool = False
    remote_dtls: Optional[dict] = None
    producer_ids: Set[str] = field(default_factory=set)
    consumer_ids: Set[str] = field(default_factory=set)


@dataclass
class _ProducerRecord:
    handle: ProducerHandle
    transport_id: str
    router_id: str
    mime_type: str
    consumer_ids: Set[str] = field(default_factory=set)


@dataclass
class _ConsumerRecord:
    handle: ConsumerHandle
    transport_id: str
    producer_id: str


class LocalMediaEngine(MediaEngine):
    def __init__(
        self,
        num_workers: int = MEDIA_WORKERS,
        media_codecs: Optional[List[dict]] = None,
        announced_ip: str = ANNOUNCED_IP,
        rtc_min_port: int = RTC_MIN_PORT,
        rtc_max_port: int = RTC_MAX_PORT,
    ):
        if num_workers < 1:
            raise ValueError("num_workers must be at least 1")
        self.num_workers = num_workers
        self.media_codecs = media_codecs if media_codecs is not None else MEDIA_CODECS
        self.announced_ip = announced_ip
        self.rtc_min_port = rtc_min_port
        self.rtc_max_port = rtc_max_port

        self._workers: List[_Worker] = []
        self._next_worker_index = 0
        self._routers: Dict[str, _RouterRecord] = {}
        self._transports: Dict[str, _TransportRecord] = {}
        self._producers: Dict[str, _ProducerRecord] = {}
        self._consumers: Dict[str, _ConsumerRecord] = {}
        self._mid = 0

    async def start(self):
        if self._workers:
            return
        span = max(1, (self.rtc_max_port - self.rtc_min_port + 1) // self.num_workers)
        for i in range(self.num_workers):
            low = self.rtc_min_port + i * span
            high = min(self.rtc_max_port, low + span - 1)
            self._workers.append(_Worker(worker_id=i, min_port=low, max_port=high))
            logger.info(f"Media worker {i} started (rtc ports {low}-{high})")
        logger.info(f"{self.num_workers} media workers created")

    async def close(self):
        for router_id in list(self._routers):
            self._close_router_record(self._routers[router_id])
        self._workers.clear()
        logger.info("Media engine closed")

    def kill_worker(self, worker_id: int):
        """Mark a worker as dead; routers placed on it stop answering."""
        for worker in self._workers:
            if worker.worker_id == worker_id:
                worker.alive = False
                logger.error(f"Media worker {worker_id} died ({len(worker.router_ids)} routers affected)")
                return
        raise ValueError(f"Unknown worker: {worker_id}")

    def worker_stats(self) -> List[dict]:
        return [
            {"worker_id": w.worker_id, "alive": w.alive, "router_count": len(w.router_ids)}
            for w in self._workers
        ]

    def _get_next_worker(self) -> _Worker:
        # Round-robin over live workers only
        for _ in range(len(self._workers)):
            worker = self._workers[self._next_worker_index]
            self._next_worker_index = (self._next_worker_index + 1) % len(self._workers)
            if worker.alive:
                return worker
        logger.critical("No live media workers left")
        raise EngineUnavailable("No media worker available")

    def _router_record(self, router: RouterHandle) -> _RouterRecord:
        record = self._routers.get(router.id)
        if record is None or router.closed:
            raise EngineUnavailable(f"Router {router.id} is closed")
        if not record.worker.alive:
            raise EngineUnavailable(f"Router {router.id} lost its worker")
        return record

    def _transport_record(self, transport: TransportHandle) -> _TransportRecord:
        record = self._transports.get(transport.id)
        if record is None or transport.closed:
            raise EngineUnavailable(f"Transport {transport.id} is closed")
        self._router_record(self._routers[record.router_id].handle)
        return record

    def _live_record(self, handle: MediaHandle):
        if isinstance(handle, TransportHandle):
            return self._transport_record(handle)
        table = self._producers if isinstance(handle, ProducerHandle) else self._consumers
        record = table.get(handle.id)
        if record is None or handle.closed:
            raise EngineUnavailable(f"{type(handle).__name__} {handle.id} is closed")
        self._transport_record(self._transports[record.transport_id].handle)
        return record

    def _router_codec(self, mime_type: str) -> Optional[dict]:
        for codec in self.media_codecs:
            if codec["mimeType"].lower() == mime_type.lower():
                return codec
        return None

    def _rtp_capabilities(self) -> dict:
        codecs = []
        for index, codec in enumerate(self.media_codecs):
            codecs.append(dict(codec, preferredPayloadType=100 + index))
        return {"codecs": codecs, "headerExtensions": []}

    async def create_router(self, room_id: str) -> RouterHandle:
        worker = self._get_next_worker()
        handle = RouterHandle(
            id=uuid.uuid4().hex,
            room_id=room_id,
            rtp_capabilities=self._rtp_capabilities(),
        )
        self._routers[handle.id] = _RouterRecord(handle=handle, worker=worker)
        worker.router_ids.add(handle.id)
        logger.info(f"Router {handle.id} created for room {room_id}")
        return handle

    async def close_router(self, router: RouterHandle):
        record = self._routers.get(router.id)
        if record is None:
            router.closed = True
            return
        if not record.worker.alive:
            raise EngineUnavailable(f"Router {router.id} lost its worker")
        self._close_router_record(record)
        logger.info(f"Router closed for room: {router.room_id}")

    def _close_router_record(self, record: _RouterRecord):
        for transport_id in list(record.transport_ids):
            self._close_transport(self._transports[transport_id])
        record.handle.closed = True
        record.worker.router_ids.discard(record.handle.id)
        self._routers.pop(record.handle.id, None)

    def can_consume(self, router: RouterHandle, producer_id: str, rtp_capabilities: dict) -> bool:
        producer = self._producers.get(producer_id)
        if producer is None or producer.handle.closed or producer.router_id != router.id:
            return False
        for codec in (rtp_capabilities or {}).get("codecs") or []:
            if str(codec.get("mimeType", "")).lower() == producer.mime_type.lower():
                return True
        return False

    async def create_transport(self, router: RouterHandle, role: str) -> TransportHandle:
        if role not in TRANSPORT_ROLES:
            raise Incompatible(f"Unknown transport role: {role}")
        record = self._router_record(router)
        port = record.worker.allocate_port()
        candidates = []
        for protocol, priority in (("udp", 1076302079), ("tcp", 1076276479)):
            candidates.append({
                "foundation": f"{protocol}{secrets.token_hex(4)}",
                "ip": self.announced_ip,
                "port": port,
                "priority": priority,
                "protocol": protocol,
                "type": "host",
                "tcpType": "passive" if protocol == "tcp" else None,
            })
        fingerprint = hashlib.sha256(secrets.token_bytes(32)).hexdigest().upper()
        handle = TransportHandle(
            id=uuid.uuid4().hex,
            role=role,
            ice_parameters={
                "usernameFragment": secrets.token_hex(8),
                "password": secrets.token_hex(16),
                "iceLite": True,
            },
            ice_candidates=candidates,
            dtls_parameters={
                "role": "auto",
                "fingerprints": [{
                    "algorithm": "sha-256",
                    "value": ":".join(fingerprint[i:i + 2] for i in range(0, len(fingerprint), 2)),
                }],
            },
        )
        self._transports[handle.id] = _TransportRecord(handle=handle, router_id=router.id)
        record.transport_ids.add(handle.id)
        logger.debug(
            f"Transport {handle.id} ({role}) created on router {router.id}, "
            f"initial bitrate {INITIAL_AVAILABLE_OUTGOING_BITRATE}, max incoming {MAX_INCOMING_BITRATE}"
        )
        return handle

    async def connect_transport(self, transport: TransportHandle, dtls_parameters: dict):
        record = self._transport_record(transport)
        if not isinstance(dtls_parameters, dict) or not dtls_parameters.get("fingerprints"):
            raise Incompatible("DTLS parameters must include fingerprints")
        if record.connected:
            logger.debug(f"Transport {transport.id} already connected")
            return
        record.connected = True
        record.remote_dtls = dtls_parameters
        logger.debug(f"Transport {transport.id} connected")

    def _close_transport(self, record: _TransportRecord):
        for producer_id in list(record.producer_ids):
            self._close_producer(self._producers[producer_id])
        for consumer_id in list(record.consumer_ids):
            self._close_consumer(self._consumers[consumer_id])
        record.handle.closed = True
        router = self._routers.get(record.router_id)
        if router:
            router.transport_ids.discard(record.handle.id)
        self._transports.pop(record.handle.id, None)

    async def produce(
        self,
        transport: TransportHandle,
        kind: str,
        rtp_parameters: dict,
        app_data: Optional[dict] = None,
    ) -> ProducerHandle:
        record = self._transport_record(transport)
        if transport.role != "send":
            raise Incompatible("Cannot produce on a receive transport")
        if kind not in MEDIA_KINDS:
            raise Incompatible(f"Unsupported media kind: {kind}")

        offered = [c.get("mimeType", "") for c in (rtp_parameters or {}).get("codecs") or []]
        for mime_type in offered:
            if self._router_codec(mime_type) is None:
                raise Incompatible(f"Unsupported codec: {mime_type}")
        if offered:
            mime_type = offered[0]
        else:
            matching = [c["mimeType"] for c in self.media_codecs if c["kind"] == kind]
            if not matching:
                raise Incompatible(f"Router has no {kind} codec")
            mime_type = matching[0]
        if self._router_codec(mime_type)["kind"] != kind:
            raise Incompatible(f"Codec {mime_type} is not a {kind} codec")

        handle = ProducerHandle(
            id=uuid.uuid4().hex,
            kind=kind,
            rtp_parameters=rtp_parameters or {},
            app_data=app_data or {},
        )
        self._producers[handle.id] = _ProducerRecord(
            handle=handle,
            transport_id=transport.id,
            router_id=record.router_id,
            mime_type=mime_type,
        )
        record.producer_ids.add(handle.id)
        self._routers[record.router_id].producer_ids.add(handle.id)
        logger.debug(f"Producer {handle.id} ({kind}, {mime_type}) created on transport {transport.id}")
        return handle

    async def consume(
        self,
        router: RouterHandle,
        transport: TransportHandle,
        producer_id: str,
        rtp_capabilities: dict,
        paused: bool = True,
    ) -> ConsumerHandle:
        self._router_record(router)
        record = self._transport_record(transport)
        if record.router_id != router.id:
            raise Incompatible("Transport does not belong to this router")
        if transport.role != "receive":
            raise Incompatible("Cannot consume on a send transport")
        if not self.can_consume(router, producer_id, rtp_capabilities):
            raise Incompatible(f"Cannot consume producer {producer_id}")

        producer = self._producers[producer_id]
        codec = self._router_codec(producer.mime_type)
        payload_type = 100 + self.media_codecs.index(codec)
        self._mid += 1
        handle = ConsumerHandle(
            id=uuid.uuid4().hex,
            producer_id=producer_id,
            kind=producer.handle.kind,
            rtp_parameters={
                "codecs": [dict(codec, payloadType=payload_type)],
                "encodings": [{"ssrc": random.randint(100000000, 999999999)}],
                "mid": str(self._mid),
            },
            paused=paused,
        )
        self._consumers[handle.id] = _ConsumerRecord(
            handle=handle,
            transport_id=transport.id,
            producer_id=producer_id,
        )
        record.consumer_ids.add(handle.id)
        producer.consumer_ids.add(handle.id)
        logger.debug(f"Consumer {handle.id} of producer {producer_id} created (paused={paused})")
        return handle

    def _close_producer(self, record: _ProducerRecord):
        for consumer_id in list(record.consumer_ids):
            self._close_consumer(self._consumers[consumer_id])
        record.handle.closed = True
        transport = self._transports.get(record.transport_id)
        if transport:
            transport.producer_ids.discard(record.handle.id)
        router = self._routers.get(record.router_id)
        if router:
            router.producer_ids.discard(record.handle.id)
        self._producers.pop(record.handle.id, None)

    def _close_consumer(self, record: _ConsumerRecord):
        record.handle.closed = True
        transport = self._transports.get(record.transport_id)
        if transport:
            transport.consumer_ids.discard(record.handle.id)
        producer = self._producers.get(record.producer_id)
        if producer:
            producer.consumer_ids.discard(record.handle.id)
        self._consumers.pop(record.handle.id, None)

    async def pause(self, handle: MediaHandle):
        self._live_record(handle)
        handle.paused = True

    async def resume(self, handle: MediaHandle):
        self._live_record(handle)
        handle.paused = False

    async def close_handle(self, handle: MediaHandle):
        if isinstance(handle, TransportHandle):
            record = self._transports.get(handle.id)
            if record:
                self._close_transport(record)
        elif isinstance(handle, ProducerHandle):
            record = self._producers.get(handle.id)
            if record:
                self._close_producer(record)
        elif isinstance(handle, ConsumerHandle):
            record = self._consumers.get(handle.id)
            if record:
                self._close_consumer(record)
        else:
            raise TypeError(f"Not a media handle: {handle!r}")
        handle.closed = True
