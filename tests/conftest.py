import json
from typing import Any, Dict, List, Optional

import pytest

from roomsync.collaborators import InMemoryChatHistory
from roomsync.config import Settings
from roomsync.transport import Connection, MemoryTransport
from roomsync.websocket import ConnectionManager


class Peer:
    """A connected test client driving the manager through raw frames"""

    def __init__(self, manager: ConnectionManager, connection: Connection, transport: MemoryTransport):
        self.manager = manager
        self.connection = connection
        self.transport = transport

    @property
    def connection_id(self) -> str:
        return self.connection.connection_id

    async def send(self, event_type: str, **data: Any):
        await self.manager.dispatch(self.connection, json.dumps({"type": event_type, "data": data}))
        await self.settle()

    async def send_frame(self, frame: Dict[str, Any]):
        await self.manager.dispatch(self.connection, json.dumps(frame))

    async def join(self, room_id: str):
        await self.send("join_room", roomId=room_id)

    async def settle(self):
        await self.connection.drain()

    def events(self, event_type: str) -> List[Dict[str, Any]]:
        return self.transport.events(event_type)

    def last(self, event_type: str):
        return self.transport.last(event_type)

    def types(self) -> List[str]:
        return self.transport.types()


@pytest.fixture
def settings():
    return Settings(whiteboard_throttle_ms=50, chat_log_limit=200)


@pytest.fixture
def history():
    return InMemoryChatHistory()


@pytest.fixture
def manager_kwargs(history):
    return {"history": history}


@pytest.fixture
async def manager(settings, manager_kwargs):
    manager = ConnectionManager(settings, **manager_kwargs)
    yield manager
    await manager.stop()


@pytest.fixture
async def make_manager(settings, history):
    """Build extra managers with custom collaborators, stopped at teardown"""
    managers = []

    def _make(**kwargs) -> ConnectionManager:
        kwargs.setdefault("history", history)
        manager = ConnectionManager(kwargs.pop("settings", settings), **kwargs)
        managers.append(manager)
        return manager

    yield _make
    for manager in managers:
        await manager.stop()


@pytest.fixture
def connect(manager):
    async def _connect(identity: str, display_name: str = "", via: Optional[ConnectionManager] = None) -> Peer:
        target = via or manager
        transport = MemoryTransport()
        token = f"{identity}:{display_name}" if display_name else identity
        connection = await target.connect(transport, token)
        peer = Peer(target, connection, transport)
        await peer.settle()
        return peer
    return _connect
