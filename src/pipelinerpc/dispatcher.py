"""Method dispatch for the resolving side of a connection."""

from __future__ import annotations

import inspect
import logging
from typing import Any, Callable, Mapping, Sequence

from pipelinerpc.error import HandlerError, RpcError, UnknownMethod
from pipelinerpc.types import RpcTarget

logger = logging.getLogger(__name__)

Handler = Callable[..., Any]


class MethodDispatcher:
    """Maps method names to handlers and invokes them with resolved arguments.

    Handlers may be plain functions or coroutine functions. They receive the
    resolved params positionally.

    Example:
        dispatcher = MethodDispatcher()

        @dispatcher.method("makeGreeting")
        async def make_greeting(name: str) -> str:
            return f"Hello, {name}!"
    """

    def __init__(self, handlers: Mapping[str, Handler] | None = None) -> None:
        self._handlers: dict[str, Handler] = dict(handlers or {})

    @classmethod
    def from_target(cls, target: RpcTarget) -> "MethodDispatcher":
        """Build a dispatcher exposing the public methods of ``target``."""
        return cls(target.rpc_methods())  # type: ignore[arg-type]

    def __contains__(self, method: object) -> bool:
        return method in self._handlers

    @property
    def methods(self) -> list[str]:
        return sorted(self._handlers)

    def register(self, name: str, handler: Handler) -> None:
        if not callable(handler):
            msg = f"Handler for {name!r} is not callable"
            raise TypeError(msg)
        self._handlers[name] = handler

    def method(self, name: str | None = None) -> Callable[[Handler], Handler]:
        """Decorator registering a handler, by default under its own name."""
        def decorator(func: Handler) -> Handler:
            self.register(name or func.__name__, func)
            return func
        return decorator

    async def dispatch(self, method: str, args: Sequence[Any]) -> Any:
        """Invoke ``method`` with ``args``.

        Raises:
            UnknownMethod: If no handler is registered under ``method``
            HandlerError: If the handler raised anything other than an RpcError
            RpcError: Raised by the handler itself, passed through unchanged
        """
        handler = self._handlers.get(method)
        if handler is None:
            raise UnknownMethod(method)

        try:
            result = handler(*args)
            if inspect.isawaitable(result):
                result = await result
            return result
        except RpcError:
            raise
        except Exception as e:
            logger.debug("Handler %r failed: %r", method, e)
            raise HandlerError(str(e) or type(e).__name__) from e
