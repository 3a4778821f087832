"""Signalling protocol messages exchanged over the ``/ws`` WebSocket.

Every inbound frame is a JSON object with a ``type`` discriminator and an
optional ``request_id`` that is echoed back on the reply.
"""
import json
from datetime import datetime
from typing import Annotated, Any, Dict, List, Literal, Optional, Union

from pydantic import BaseModel, Field, TypeAdapter, ValidationError

from errors import InvalidMessage

RequestId = Optional[Union[str, int]]


class ClientMessage(BaseModel):
    request_id: RequestId = None


class JoinMessage(ClientMessage):
    type: Literal["join"]
    room_id: str = Field(min_length=1, max_length=128)
    display_name: str = "Anonymous"


class GetRouterCapabilitiesMessage(ClientMessage):
    type: Literal["get-router-capabilities"]


class CreateTransportMessage(ClientMessage):
    type: Literal["create-transport"]
    role: Literal["send", "receive"]


class ConnectTransportMessage(ClientMessage):
    type: Literal["connect-transport"]
    transport_id: str
    dtls_parameters: Dict[str, Any]


class ProduceMessage(ClientMessage):
    type: Literal["produce"]
    transport_id: str
    kind: Literal["audio", "video"]
    rtp_parameters: Dict[str, Any]
    app_data: Optional[Dict[str, Any]] = None


class ConsumeMessage(ClientMessage):
    type: Literal["consume"]
    transport_id: str
    producer_id: str
    rtp_capabilities: Dict[str, Any]


class ResumeConsumerMessage(ClientMessage):
    type: Literal["resume-consumer"]
    consumer_id: str


class PauseProducerMessage(ClientMessage):
    type: Literal["pause-producer"]
    producer_id: str


class ResumeProducerMessage(ClientMessage):
    type: Literal["resume-producer"]
    producer_id: str


class LeaveMessage(ClientMessage):
    type: Literal["leave"]


InboundMessage = Annotated[
    Union[
        JoinMessage,
        GetRouterCapabilitiesMessage,
        CreateTransportMessage,
        ConnectTransportMessage,
        ProduceMessage,
        ConsumeMessage,
        ResumeConsumerMessage,
        PauseProducerMessage,
        ResumeProducerMessage,
        LeaveMessage,
    ],
    Field(discriminator="type"),
]

_inbound_adapter = TypeAdapter(InboundMessage)


def parse_client_message(raw: Union[str, bytes, dict]):
    """Validate one inbound frame.

    Raises InvalidMessage for malformed JSON, unknown types and shape errors.
    """
    if isinstance(raw, (str, bytes)):
        try:
            raw = json.loads(raw)
        except (json.JSONDecodeError, UnicodeDecodeError) as e:
            raise InvalidMessage(f"Malformed JSON: {e}")
    if not isinstance(raw, dict):
        raise InvalidMessage("Message must be a JSON object")
    try:
        return _inbound_adapter.validate_python(raw)
    except ValidationError as e:
        errors = "; ".join(
            f"{'.'.join(str(p) for p in err['loc']) or 'message'}: {err['msg']}" for err in e.errors()
        )
        raise InvalidMessage(f"Invalid message: {errors}")


def peek_request(raw: Any):
    """Best-effort (type, request_id) of a frame that may have failed validation."""
    if isinstance(raw, (str, bytes)):
        try:
            raw = json.loads(raw)
        except (json.JSONDecodeError, UnicodeDecodeError):
            return None, None
    if not isinstance(raw, dict):
        return None, None
    msg_type = raw.get("type")
    request_id = raw.get("request_id")
    if not isinstance(msg_type, str):
        msg_type = None
    if not isinstance(request_id, (str, int)) or isinstance(request_id, bool):
        request_id = None
    return msg_type, request_id


class PeerInfo(BaseModel):
    id: str
    display_name: str
    producer_ids: List[str] = []


class JoinedRoomEvent(BaseModel):
    type: Literal["joined-room"] = "joined-room"
    request_id: RequestId = None
    peer_id: str
    room_id: str
    peers: List[PeerInfo]


class NewPeerEvent(BaseModel):
    type: Literal["new-peer"] = "new-peer"
    peer: PeerInfo


class PeerLeftEvent(BaseModel):
    type: Literal["peer-left"] = "peer-left"
    peer_id: str


class NewProducerEvent(BaseModel):
    type: Literal["new-producer"] = "new-producer"
    peer_id: str
    producer_id: str
    kind: str


class ProducerPausedEvent(BaseModel):
    type: Literal["producer-paused"] = "producer-paused"
    peer_id: str
    producer_id: str


class ProducerResumedEvent(BaseModel):
    type: Literal["producer-resumed"] = "producer-resumed"
    peer_id: str
    producer_id: str


class RoomClosedEvent(BaseModel):
    type: Literal["room-closed"] = "room-closed"
    room_id: str
    timestamp: datetime = Field(default_factory=datetime.now)


class AckMessage(BaseModel):
    type: Literal["ack"] = "ack"
    request: str
    request_id: RequestId = None
    data: Dict[str, Any] = {}


class ErrorMessage(BaseModel):
    type: Literal["error"] = "error"
    code: str
    message: str
    request: Optional[str] = None
    request_id: RequestId = None
