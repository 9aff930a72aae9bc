"""Pytest configuration for all tests."""

import asyncio
import json
from typing import Any

import pytest
import pytest_asyncio

from pipelinerpc.dispatcher import MethodDispatcher
from pipelinerpc.session import RpcSession
from pipelinerpc.types import RpcTarget


class MockTransport:
    """In-memory transport for testing."""

    def __init__(self) -> None:
        self.peer: "MockTransport | None" = None
        self.inbox: asyncio.Queue[str | None] = asyncio.Queue()
        self.closed = False
        self.sent: list[str] = []

    async def send(self, message: str) -> None:
        """Send message to peer."""
        if self.closed:
            raise ConnectionError("Transport closed")
        self.sent.append(message)
        if self.peer and not self.peer.closed:
            await self.peer.inbox.put(message)

    async def receive(self) -> str:
        """Receive message from inbox."""
        if self.closed and self.inbox.empty():
            raise ConnectionError("Transport closed")
        message = await self.inbox.get()
        if message is None:
            raise ConnectionError("Peer closed")
        return message

    def abort(self, reason: Exception) -> None:
        """Close this end and let the peer's reader see the disconnect."""
        if self.closed:
            return
        self.closed = True
        if self.peer and not self.peer.closed:
            self.peer.inbox.put_nowait(None)


def create_transport_pair() -> tuple[MockTransport, MockTransport]:
    """Create a pair of connected transports."""
    a = MockTransport()
    b = MockTransport()
    a.peer = b
    b.peer = a
    return a, b


class RawPeer:
    """Speaks raw frames to a session, for wire-level assertions."""

    def __init__(self, transport: MockTransport) -> None:
        self.transport = transport

    async def send_raw(self, frame: str) -> None:
        await self.transport.send(frame)

    async def send_json(self, obj: Any) -> None:
        await self.transport.send(json.dumps(obj))

    async def call(self, question_id: int, method: str, params: list[Any]) -> None:
        await self.send_json({
            "type": "call",
            "questionId": question_id,
            "method": method,
            "params": params,
        })

    async def recv_json(self, timeout: float = 2.0) -> dict[str, Any]:
        frame = await asyncio.wait_for(self.transport.receive(), timeout)
        return json.loads(frame)

    async def recv_many(self, count: int, timeout: float = 2.0) -> list[dict[str, Any]]:
        return [await self.recv_json(timeout) for _ in range(count)]

    async def recv_by_id(self, count: int, timeout: float = 2.0) -> dict[int, dict[str, Any]]:
        return {msg["answerId"]: msg for msg in await self.recv_many(count, timeout)}

    def nothing_pending(self) -> bool:
        return self.transport.inbox.empty()


class Greeter(RpcTarget):
    """Demo and test methods."""

    def __init__(self) -> None:
        self.calls: list[str] = []

    async def makeGreeting(self, name: str) -> str:
        self.calls.append("makeGreeting")
        await asyncio.sleep(0.01)
        return f"Hello, {name}!"

    async def appendSuffix(self, text: str, suffix: str) -> str:
        self.calls.append("appendSuffix")
        await asyncio.sleep(0.01)
        return text + suffix

    def echo(self, value: Any) -> Any:
        self.calls.append("echo")
        return value

    def concat(self, *values: Any) -> str:
        self.calls.append("concat")
        return "".join(str(v) for v in values)

    async def slow(self, value: Any, delay: float) -> Any:
        self.calls.append("slow")
        await asyncio.sleep(delay)
        return value

    def fail(self, message: str) -> None:
        self.calls.append("fail")
        raise ValueError(message)

    def unserializable(self) -> object:
        return object()


@pytest.fixture
def greeter() -> Greeter:
    return Greeter()


@pytest.fixture
def dispatcher(greeter: Greeter) -> MethodDispatcher:
    return MethodDispatcher.from_target(greeter)


@pytest_asyncio.fixture
async def server_and_raw(dispatcher: MethodDispatcher):
    """A started server session and a raw peer wired to it."""
    server_transport, raw_transport = create_transport_pair()
    server = RpcSession(server_transport, dispatcher, name="server")
    server.start()
    yield server, RawPeer(raw_transport)
    await server.close()


@pytest_asyncio.fixture
async def session_pair(dispatcher: MethodDispatcher):
    """A started (client, server) session pair."""
    client_transport, server_transport = create_transport_pair()
    server = RpcSession(server_transport, dispatcher, name="server")
    client = RpcSession(client_transport, name="client")
    server.start()
    client.start()
    yield client, server
    await client.close()
    await server.close()
