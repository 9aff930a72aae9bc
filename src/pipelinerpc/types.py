"""Core type definitions for pipelined RPC."""

from __future__ import annotations

from abc import ABC
from typing import Protocol


class RpcTarget(ABC):
    """Base class for objects whose public methods are exposed as RPC methods.

    Usage:
        class Greeter(RpcTarget):
            async def makeGreeting(self, name: str) -> str:
                return f"Hello, {name}!"

            def appendSuffix(self, text: str, suffix: str) -> str:
                return text + suffix

        dispatcher = MethodDispatcher.from_target(Greeter())

    Methods starting with '_' and the names in ``_rpc_reserved_methods`` are
    never exposed. Both sync and async methods are supported.
    """

    _rpc_reserved_methods = frozenset({
        'rpc_methods',
        '__init__', '__new__', '__del__', '__repr__', '__str__',
        '__hash__', '__eq__', '__ne__', '__lt__', '__le__', '__gt__', '__ge__',
        '__getattr__', '__setattr__', '__delattr__', '__getattribute__',
        '__class__', '__dict__', '__doc__', '__module__', '__weakref__',
    })

    def rpc_methods(self) -> dict[str, object]:
        """Return the exposed methods of this target by name."""
        methods: dict[str, object] = {}
        for name in dir(self):
            if name.startswith('_') or name in self._rpc_reserved_methods:
                continue
            func = getattr(self, name, None)
            if callable(func):
                methods[name] = func
        return methods


class RpcTransport(Protocol):
    """Interface for a full-duplex, message-oriented connection.

    Implement this for WebSocket, in-memory queues, etc.
    """

    async def send(self, message: str) -> None:
        """Send one frame to the peer."""
        ...

    async def receive(self) -> str | bytes:
        """Receive one frame from the peer. Raises ConnectionError on disconnect."""
        ...

    def abort(self, reason: Exception) -> None:
        """Signal that the session has failed and the connection should close."""
        ...
