import asyncio
import json
import os
import sys
from typing import List

import pytest
import pytest_asyncio

# Add the project root to the Python path
sys.path.insert(0, os.path.join(os.path.dirname(__file__), '..'))

from chatrelay.config import Config
from chatrelay.server.errors import StoreError
from chatrelay.server.models import ChatMessage
from chatrelay.server.store import AbstractMessageStore, InMemoryMessageStore
from chatrelay.server.web_resource import build_app


class FakeConnection:
    """Stands in for a WebSocketResponse: records frames sent while open."""

    def __init__(self, name: str = "conn"):
        self.name = name
        self.closed = False
        self.sent: List[str] = []

    async def send_str(self, data: str) -> None:
        if self.closed:
            raise ConnectionResetError("Cannot write to closing transport")
        self.sent.append(data)

    @property
    def frames(self) -> List[dict]:
        return [json.loads(data) for data in self.sent]

    def frames_of(self, frame_type: str) -> List[dict]:
        return [frame for frame in self.frames if frame.get("type") == frame_type]


class BlockingConnection(FakeConnection):
    """A receiver that never finishes a send until released."""

    def __init__(self, name: str = "slow"):
        super().__init__(name)
        self.release = asyncio.Event()

    async def send_str(self, data: str) -> None:
        await self.release.wait()
        await super().send_str(data)


class FailingStore(AbstractMessageStore):
    """A durable store that is down."""

    def __init__(self):
        self.insert_attempts = 0

    async def insert_one(self, message: ChatMessage) -> None:
        self.insert_attempts += 1
        raise StoreError("store unavailable")

    async def find_recent(self, limit: int) -> List[ChatMessage]:
        raise StoreError("store unavailable")


class HangingStore(AbstractMessageStore):
    """A durable store whose writes never complete until released."""

    def __init__(self):
        self.release = asyncio.Event()
        self.inserted: List[ChatMessage] = []

    async def insert_one(self, message: ChatMessage) -> None:
        await self.release.wait()
        self.inserted.append(message)

    async def find_recent(self, limit: int) -> List[ChatMessage]:
        return []


async def wait_until(predicate, timeout: float = 2.0, interval: float = 0.01):
    """Poll until predicate() is truthy or fail the test."""
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while not predicate():
        if loop.time() > deadline:
            pytest.fail("condition not met before timeout")
        await asyncio.sleep(interval)


async def receive(ws, timeout: float = 2.0) -> dict:
    return await asyncio.wait_for(ws.receive_json(), timeout=timeout)


@pytest.fixture
def relay_config():
    return Config(max_history=5, history_file=None, log_level="DEBUG")


@pytest.fixture
def message_store():
    return InMemoryMessageStore()


@pytest_asyncio.fixture
async def client(aiohttp_client, relay_config, message_store):
    """Test client for an app backed by an in-memory durable store."""
    app = build_app(relay_config, store=message_store)
    return await aiohttp_client(app)


@pytest.fixture
def relay(client):
    return client.server.app["relay"]
