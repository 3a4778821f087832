import asyncio
import json

from errors import EngineUnavailable
from media_engine import LocalMediaEngine
from orchestrator import SignallingConnection

OPUS_RTP_PARAMETERS = {
    "codecs": [{"mimeType": "audio/opus", "payloadType": 100, "clockRate": 48000, "channels": 2}],
    "encodings": [{"ssrc": 11111111}],
}

VP9_RTP_PARAMETERS = {
    "codecs": [{"mimeType": "video/VP9", "payloadType": 101, "clockRate": 90000}],
    "encodings": [{"ssrc": 22222222}],
}

CLIENT_RTP_CAPABILITIES = {
    "codecs": [
        {"kind": "audio", "mimeType": "audio/opus", "clockRate": 48000, "channels": 2},
        {"kind": "video", "mimeType": "video/VP9", "clockRate": 90000},
    ],
    "headerExtensions": [],
}

CLIENT_DTLS_PARAMETERS = {
    "role": "client",
    "fingerprints": [{"algorithm": "sha-256", "value": "AB:CD:EF:01"}],
}


class FakeConnection(SignallingConnection):
    def __init__(self, connection_id: str):
        self.connection_id = connection_id
        self.sent = []

    async def send(self, message: dict) -> bool:
        self.sent.append(message)
        return True

    def of_type(self, msg_type: str):
        return [m for m in self.sent if m["type"] == msg_type]

    def last(self):
        return self.sent[-1]


class CountingEngine(LocalMediaEngine):
    """Counts router closes so tests can assert exactly-once teardown."""

    def __init__(self, **kwargs):
        super().__init__(**kwargs)
        self.closed_routers = []

    async def close_router(self, router):
        self.closed_routers.append(router.id)
        await super().close_router(router)


class BrokenCloseEngine(LocalMediaEngine):
    async def close_handle(self, handle):
        raise EngineUnavailable("engine went away")


class GatedEngine(CountingEngine):
    """Blocks selected calls until the test opens the gate."""

    def __init__(self, **kwargs):
        super().__init__(**kwargs)
        self.gate = asyncio.Event()
        self.entered = asyncio.Event()
        self.gated = set()
        self.created_transports = []

    async def _wait(self, name):
        if name in self.gated:
            self.entered.set()
            await self.gate.wait()

    async def create_router(self, room_id):
        await self._wait("create_router")
        return await super().create_router(room_id)

    async def create_transport(self, router, role):
        await self._wait("create_transport")
        transport = await super().create_transport(router, role)
        self.created_transports.append(transport)
        return transport


async def send(orchestrator, connection: FakeConnection, msg_type: str, **fields):
    await orchestrator.handle_message(connection.connection_id, json.dumps({"type": msg_type, **fields}))
    return connection.last()


async def join(orchestrator, connection: FakeConnection, room_id: str, display_name: str = "Anonymous"):
    orchestrator.connect(connection)
    return await send(orchestrator, connection, "join", room_id=room_id, display_name=display_name)
