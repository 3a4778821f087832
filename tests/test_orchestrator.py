import asyncio

import pytest

from helpers import (
    CLIENT_DTLS_PARAMETERS,
    CLIENT_RTP_CAPABILITIES,
    OPUS_RTP_PARAMETERS,
    FakeConnection,
    GatedEngine,
    join,
    send,
)
from orchestrator import SessionOrchestrator, SessionState
from peer_registry import PeerRegistry
from room_registry import RoomRegistry

pytestmark = pytest.mark.asyncio


async def publish_audio(orchestrator, connection):
    transport = await send(orchestrator, connection, "create-transport", role="send")
    transport_id = transport["data"]["id"]
    await send(orchestrator, connection, "connect-transport",
               transport_id=transport_id, dtls_parameters=CLIENT_DTLS_PARAMETERS)
    produced = await send(orchestrator, connection, "produce",
                          transport_id=transport_id, kind="audio", rtp_parameters=OPUS_RTP_PARAMETERS)
    return produced["data"]["id"]


async def subscribe(orchestrator, connection, producer_id):
    transport = await send(orchestrator, connection, "create-transport", role="receive")
    return await send(orchestrator, connection, "consume",
                      transport_id=transport["data"]["id"],
                      producer_id=producer_id,
                      rtp_capabilities=CLIENT_RTP_CAPABILITIES)


class TestJoin:
    """Joining rooms."""

    async def test_join_auto_creates_room(self, orchestrator, rooms):
        c1 = FakeConnection("c1")
        reply = await join(orchestrator, c1, "R", "Alice")

        assert reply["type"] == "joined-room"
        assert reply["peer_id"] == "c1"
        assert reply["room_id"] == "R"
        assert reply["peers"] == []
        room = rooms.get_room("R")
        assert room.max_participants == 5
        assert orchestrator.session_state("c1") is SessionState.JOINED

    async def test_join_lists_existing_peers_and_notifies_them(self, orchestrator):
        c1, c2 = FakeConnection("c1"), FakeConnection("c2")
        await join(orchestrator, c1, "R", "Alice")
        reply = await join(orchestrator, c2, "R", "Bob")

        assert [p["id"] for p in reply["peers"]] == ["c1"]
        assert reply["peers"][0]["display_name"] == "Alice"
        new_peer = c1.of_type("new-peer")
        assert len(new_peer) == 1
        assert new_peer[0]["peer"]["id"] == "c2"
        assert c2.of_type("new-peer") == []

    async def test_join_echoes_request_id(self, orchestrator):
        c1 = FakeConnection("c1")
        orchestrator.connect(c1)
        reply = await send(orchestrator, c1, "join", room_id="R", request_id=7)
        assert reply["request_id"] == 7
        assert reply["type"] == "joined-room"

    async def test_room_capacity(self, orchestrator, rooms, peers):
        connections = [FakeConnection(f"c{i}") for i in range(6)]
        for connection in connections[:5]:
            await join(orchestrator, connection, "R")

        reply = await join(orchestrator, connections[5], "R")

        assert reply["type"] == "error"
        assert reply["code"] == "ROOM_FULL"
        assert reply["request"] == "join"
        assert rooms.get_room("R").peer_count() == 5
        assert not peers.has_peer("c5")
        assert orchestrator.session_state("c5") is SessionState.CONNECTED

    async def test_join_twice(self, orchestrator, rooms):
        c1 = FakeConnection("c1")
        await join(orchestrator, c1, "R")
        reply = await send(orchestrator, c1, "join", room_id="S")
        assert reply["code"] == "ALREADY_JOINED"
        assert not rooms.has_room("S")

    async def test_join_after_leave(self, orchestrator):
        c1 = FakeConnection("c1")
        await join(orchestrator, c1, "R")
        await send(orchestrator, c1, "leave")
        reply = await send(orchestrator, c1, "join", room_id="R")
        assert reply["code"] == "NOT_IN_SESSION"


class TestProtocolErrors:
    """Invalid and out-of-session messages."""

    async def test_message_before_join(self, orchestrator):
        c1 = FakeConnection("c1")
        orchestrator.connect(c1)
        reply = await send(orchestrator, c1, "create-transport", role="send", request_id="abc")
        assert reply == {
            "type": "error",
            "code": "NOT_IN_SESSION",
            "message": reply["message"],
            "request": "create-transport",
            "request_id": "abc",
        }

    async def test_malformed_json(self, orchestrator):
        c1 = FakeConnection("c1")
        orchestrator.connect(c1)
        await orchestrator.handle_message("c1", "{not json")
        assert c1.last()["code"] == "INVALID_MESSAGE"
        assert c1.last()["request"] is None

    async def test_unknown_message_type(self, orchestrator):
        c1 = FakeConnection("c1")
        orchestrator.connect(c1)
        reply = await send(orchestrator, c1, "teleport", request_id=3)
        assert reply["code"] == "INVALID_MESSAGE"
        assert reply["request"] == "teleport"
        assert reply["request_id"] == 3

    async def test_missing_field(self, orchestrator):
        c1 = FakeConnection("c1")
        await join(orchestrator, c1, "R")
        reply = await send(orchestrator, c1, "create-transport")
        assert reply["code"] == "INVALID_MESSAGE"
        assert "role" in reply["message"]

    async def test_message_from_unknown_connection_is_dropped(self, orchestrator):
        await orchestrator.handle_message("ghost", '{"type": "leave"}')
        assert orchestrator.session_count() == 0


class TestMediaFlow:
    """Transports, producers and consumers through the protocol."""

    async def test_router_capabilities(self, orchestrator):
        c1 = FakeConnection("c1")
        await join(orchestrator, c1, "R")
        reply = await send(orchestrator, c1, "get-router-capabilities")
        assert reply["type"] == "ack"
        assert reply["request"] == "get-router-capabilities"
        codecs = reply["data"]["rtp_capabilities"]["codecs"]
        assert "audio/opus" in [c["mimeType"] for c in codecs]

    async def test_two_party_call(self, orchestrator, rooms, engine):
        c1, c2 = FakeConnection("c1"), FakeConnection("c2")
        await join(orchestrator, c1, "R", "Alice")
        producer_id = await publish_audio(orchestrator, c1)
        assert rooms.get_room("R").peer_count() == 1

        joined = await join(orchestrator, c2, "R", "Bob")
        assert [p["id"] for p in joined["peers"]] == ["c1"]
        assert joined["peers"][0]["producer_ids"] == [producer_id]
        assert c1.of_type("new-peer")[0]["peer"]["id"] == "c2"

        consumed = await subscribe(orchestrator, c2, producer_id)
        assert consumed["type"] == "ack"
        assert consumed["data"]["paused"] is True
        assert consumed["data"]["producer_id"] == producer_id
        assert consumed["data"]["kind"] == "audio"

        resumed = await send(orchestrator, c2, "resume-consumer", consumer_id=consumed["data"]["id"])
        assert resumed["data"] == {"resumed": True}

        router_id = rooms.get_room("R").router.id
        await orchestrator.disconnect("c1")
        assert rooms.get_room("R").peer_count() == 1
        assert c2.of_type("peer-left") == [{"type": "peer-left", "peer_id": "c1"}]

        await orchestrator.disconnect("c2")
        assert not rooms.has_room("R")
        assert engine.closed_routers == [router_id]

    async def test_new_producer_is_broadcast_to_others(self, orchestrator):
        c1, c2 = FakeConnection("c1"), FakeConnection("c2")
        await join(orchestrator, c1, "R")
        await join(orchestrator, c2, "R")
        producer_id = await publish_audio(orchestrator, c1)

        notices = c2.of_type("new-producer")
        assert notices == [{"type": "new-producer", "peer_id": "c1", "producer_id": producer_id, "kind": "audio"}]
        assert c1.of_type("new-producer") == []

    async def test_foreign_handle_is_not_found(self, orchestrator):
        c1, c2 = FakeConnection("c1"), FakeConnection("c2")
        await join(orchestrator, c1, "R")
        await join(orchestrator, c2, "R")
        producer_id = await publish_audio(orchestrator, c1)

        reply = await send(orchestrator, c2, "pause-producer", producer_id=producer_id)

        assert reply["code"] == "NOT_FOUND"
        assert c1.of_type("producer-paused") == []

    async def test_consume_unknown_producer(self, orchestrator, peers):
        c1 = FakeConnection("c1")
        await join(orchestrator, c1, "R")
        reply = await subscribe(orchestrator, c1, "no-such-producer")
        assert reply["code"] == "INCOMPATIBLE"
        assert peers.get_peer("c1").consumers == {}

    async def test_produce_on_unknown_transport(self, orchestrator):
        c1 = FakeConnection("c1")
        await join(orchestrator, c1, "R")
        reply = await send(orchestrator, c1, "produce",
                           transport_id="nope", kind="audio", rtp_parameters=OPUS_RTP_PARAMETERS)
        assert reply["code"] == "NOT_FOUND"

    async def test_pause_producer_twice(self, orchestrator):
        c1, c2 = FakeConnection("c1"), FakeConnection("c2")
        await join(orchestrator, c1, "R")
        await join(orchestrator, c2, "R")
        producer_id = await publish_audio(orchestrator, c1)

        first = await send(orchestrator, c1, "pause-producer", producer_id=producer_id)
        second = await send(orchestrator, c1, "pause-producer", producer_id=producer_id)

        assert first["data"] == second["data"] == {"paused": True}
        assert len(c2.of_type("producer-paused")) == 2

    async def test_resume_producer(self, orchestrator):
        c1, c2 = FakeConnection("c1"), FakeConnection("c2")
        await join(orchestrator, c1, "R")
        await join(orchestrator, c2, "R")
        producer_id = await publish_audio(orchestrator, c1)
        await send(orchestrator, c1, "pause-producer", producer_id=producer_id)

        reply = await send(orchestrator, c1, "resume-producer", producer_id=producer_id)

        assert reply["data"] == {"resumed": True}
        assert c2.of_type("producer-resumed") == [
            {"type": "producer-resumed", "peer_id": "c1", "producer_id": producer_id}
        ]

    async def test_consumer_of_departed_producer_is_gone(self, orchestrator):
        c1, c2 = FakeConnection("c1"), FakeConnection("c2")
        await join(orchestrator, c1, "R")
        await join(orchestrator, c2, "R")
        producer_id = await publish_audio(orchestrator, c1)
        consumed = await subscribe(orchestrator, c2, producer_id)

        await orchestrator.disconnect("c1")
        reply = await send(orchestrator, c2, "resume-consumer", consumer_id=consumed["data"]["id"])

        assert reply["code"] == "NOT_FOUND"


class TestLeaveAndDisconnect:
    """Session teardown."""

    async def test_disconnect_never_joined(self, orchestrator, rooms):
        c1, c2 = FakeConnection("c1"), FakeConnection("c2")
        await join(orchestrator, c1, "R")
        orchestrator.connect(c2)

        await orchestrator.disconnect("c2")
        await orchestrator.disconnect("c2")

        assert c1.of_type("peer-left") == []
        assert rooms.get_room("R").peer_count() == 1
        assert orchestrator.session_count() == 1

    async def test_leave(self, orchestrator, rooms, peers):
        c1, c2 = FakeConnection("c1"), FakeConnection("c2")
        await join(orchestrator, c1, "R")
        await join(orchestrator, c2, "R")

        reply = await send(orchestrator, c2, "leave", request_id="bye")

        assert reply == {"type": "ack", "request": "leave", "request_id": "bye", "data": {"left": True}}
        assert c1.of_type("peer-left") == [{"type": "peer-left", "peer_id": "c2"}]
        assert orchestrator.session_state("c2") is SessionState.LEFT
        assert not peers.has_peer("c2")
        assert rooms.get_room("R").peer_count() == 1

    async def test_disconnect_releases_resources(self, orchestrator, peers):
        c1 = FakeConnection("c1")
        await join(orchestrator, c1, "R")
        await publish_audio(orchestrator, c1)
        peer = peers.get_peer("c1")
        handles = list(peer.transports.values()) + list(peer.producers.values())

        await orchestrator.disconnect("c1")

        assert all(handle.closed for handle in handles)
        assert peers.count() == 0

    async def test_room_deleted_while_occupied(self, orchestrator, rooms, peers):
        c1, c2 = FakeConnection("c1"), FakeConnection("c2")
        await join(orchestrator, c1, "R")
        await join(orchestrator, c2, "R")

        await rooms.delete_room("R")
        await rooms.drain_hooks()

        for connection in (c1, c2):
            assert connection.of_type("room-closed")[0]["room_id"] == "R"
            assert orchestrator.session_state(connection.connection_id) is SessionState.LEFT
        assert peers.count() == 0
        reply = await send(orchestrator, c1, "get-router-capabilities")
        assert reply["code"] == "NOT_IN_SESSION"

    async def test_requests_after_room_deleted_before_eviction(self, orchestrator, rooms):
        c1 = FakeConnection("c1")
        await join(orchestrator, c1, "R")

        await rooms.delete_room("R")
        await orchestrator.handle_message("c1", '{"type": "get-router-capabilities", "request_id": 7}')

        error = c1.of_type("error")[-1]
        assert error["code"] == "NOT_IN_SESSION"
        assert error["request_id"] == 7


class TestConcurrency:
    """Disconnects racing in-flight requests."""

    @pytest.fixture
    def gated(self):
        engine = GatedEngine(num_workers=1)
        rooms = RoomRegistry(engine)
        peers = PeerRegistry(engine)
        return engine, rooms, peers, SessionOrchestrator(rooms, peers, engine)

    async def test_disconnect_during_create_transport(self, gated):
        engine, rooms, peers, orchestrator = gated
        await engine.start()
        c1 = FakeConnection("c1")
        await join(orchestrator, c1, "R")
        engine.gated.add("create_transport")

        request = asyncio.create_task(
            orchestrator.handle_message("c1", '{"type": "create-transport", "role": "send"}')
        )
        await engine.entered.wait()
        teardown = asyncio.create_task(orchestrator.disconnect("c1"))
        await asyncio.sleep(0)
        engine.gate.set()
        await asyncio.gather(request, teardown)
        await rooms.drain_hooks()

        assert len(engine.created_transports) == 1
        assert engine.created_transports[0].closed
        assert c1.of_type("ack") == []
        assert c1.of_type("error") == []
        assert peers.count() == 0
        assert not rooms.has_room("R")

    async def test_disconnect_during_join(self, gated):
        engine, rooms, peers, orchestrator = gated
        await engine.start()
        engine.gated.add("create_router")
        c1 = FakeConnection("c1")
        orchestrator.connect(c1)

        request = asyncio.create_task(orchestrator.handle_message("c1", '{"type": "join", "room_id": "R"}'))
        await engine.entered.wait()
        await orchestrator.disconnect("c1")
        engine.gate.set()
        await request
        await rooms.drain_hooks()

        assert not rooms.has_room("R")
        assert peers.count() == 0
        assert len(engine.closed_routers) == 1
        assert c1.sent == []

    async def test_messages_of_one_connection_run_in_order(self, gated):
        engine, rooms, peers, orchestrator = gated
        await engine.start()
        c1 = FakeConnection("c1")
        await join(orchestrator, c1, "R")
        engine.gated.add("create_transport")

        first = asyncio.create_task(
            orchestrator.handle_message("c1", '{"type": "create-transport", "role": "send", "request_id": 1}')
        )
        await engine.entered.wait()
        second = asyncio.create_task(
            orchestrator.handle_message("c1", '{"type": "get-router-capabilities", "request_id": 2}')
        )
        await asyncio.sleep(0)
        assert c1.of_type("ack") == []
        engine.gate.set()
        await asyncio.gather(first, second)

        assert [m["request_id"] for m in c1.of_type("ack")] == [1, 2]

    async def test_reaped_room_listener_keeps_recreated_room_group(self, orchestrator, rooms):
        c1, c2, c3 = FakeConnection("c1"), FakeConnection("c2"), FakeConnection("c3")
        await join(orchestrator, c1, "R")
        orchestrator.connect(c2)

        await orchestrator.disconnect("c1")
        assert not rooms.has_room("R")
        await orchestrator.handle_message("c2", '{"type": "join", "room_id": "R", "display_name": "Bob"}')
        await rooms.drain_hooks()
        await join(orchestrator, c3, "R", "Carol")

        assert [m["peer"]["id"] for m in c2.of_type("new-peer")] == ["c3"]

    async def test_recreated_room_skips_members_awaiting_eviction(self, orchestrator, rooms):
        c1, c2, c3 = FakeConnection("c1"), FakeConnection("c2"), FakeConnection("c3")
        await join(orchestrator, c1, "R")

        await rooms.delete_room("R")
        await join(orchestrator, c2, "R")
        await join(orchestrator, c3, "R")
        await rooms.drain_hooks()

        assert c1.of_type("new-peer") == []
        assert [m["room_id"] for m in c1.of_type("room-closed")] == ["R"]
        assert [m["peer"]["id"] for m in c2.of_type("new-peer")] == ["c3"]
        assert orchestrator.session_state("c2") is SessionState.JOINED
        assert rooms.get_room("R").peer_count() == 2
