import pytest_asyncio

from helpers import CountingEngine
from orchestrator import SessionOrchestrator
from peer_registry import PeerRegistry
from room_registry import RoomRegistry


@pytest_asyncio.fixture
async def engine():
    engine = CountingEngine(num_workers=2, rtc_min_port=40000, rtc_max_port=40099)
    await engine.start()
    yield engine
    await engine.close()


@pytest_asyncio.fixture
async def rooms(engine):
    registry = RoomRegistry(engine)
    yield registry
    await registry.drain_hooks()


@pytest_asyncio.fixture
async def peers(engine):
    return PeerRegistry(engine)


@pytest_asyncio.fixture
async def orchestrator(rooms, peers, engine):
    orchestrator = SessionOrchestrator(rooms, peers, engine, default_max_participants=5)
    yield orchestrator
    await orchestrator.close()
