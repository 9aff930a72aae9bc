"""WebSocket transport, server and client for ``RpcSession``.

The server upgrades ``GET <path>`` to a WebSocket and runs one session per
connection; anything else on that path gets a plain 404. The client wraps an
aiohttp client WebSocket in a session and exposes the issuing API.
"""

from __future__ import annotations

import asyncio
import logging
from typing import Any, Callable, Iterable, Self

import aiohttp
from aiohttp import web

from pipelinerpc.config import ClientConfig, RpcSessionConfig, WebSocketServerConfig
from pipelinerpc.dispatcher import MethodDispatcher
from pipelinerpc.session import RpcSession
from pipelinerpc.wire import Reference

logger = logging.getLogger(__name__)

DispatcherSource = MethodDispatcher | Callable[[], MethodDispatcher]


class WebSocketTransport:
    """RpcTransport over either side of an aiohttp WebSocket."""
    __slots__ = ('_ws', '_closed')

    def __init__(self, ws: aiohttp.ClientWebSocketResponse | web.WebSocketResponse) -> None:
        self._ws = ws
        self._closed = False

    async def send(self, message: str) -> None:
        """Send one frame to the peer."""
        if self._closed:
            raise ConnectionError("WebSocket is closed")
        await self._ws.send_str(message)

    async def receive(self) -> str | bytes:
        """Receive one frame from the peer.

        Binary frames come back as bytes; the session decodes them and answers
        bytes that are not UTF-8 JSON with "Invalid JSON".
        """
        if self._closed:
            raise ConnectionError("WebSocket is closed")

        msg = await self._ws.receive()

        if msg.type == aiohttp.WSMsgType.TEXT:
            return msg.data
        elif msg.type == aiohttp.WSMsgType.BINARY:
            return msg.data
        elif msg.type in (
            aiohttp.WSMsgType.CLOSE,
            aiohttp.WSMsgType.CLOSING,
            aiohttp.WSMsgType.CLOSED,
        ):
            self._closed = True
            raise ConnectionError("WebSocket closed")
        elif msg.type == aiohttp.WSMsgType.ERROR:
            self._closed = True
            raise ConnectionError(f"WebSocket error: {self._ws.exception()}")
        else:
            raise ValueError(f"Unexpected message type: {msg.type}")

    def abort(self, reason: Exception) -> None:
        """Close the WebSocket in the background."""
        self._closed = True
        if not self._ws.closed:
            asyncio.create_task(self._close_ws())

    async def _close_ws(self) -> None:
        try:
            await self._ws.close()
        except Exception:
            logger.debug("Error closing WebSocket", exc_info=True)


def _make_dispatcher(source: DispatcherSource) -> MethodDispatcher:
    if isinstance(source, MethodDispatcher):
        return source
    return source()


async def handle_websocket_rpc(
    request: web.Request,
    dispatcher: DispatcherSource,
    config: RpcSessionConfig | None = None,
    sessions: set[RpcSession] | None = None,
) -> web.StreamResponse:
    """Handle one WebSocket RPC connection on the server side.

    Call this from an aiohttp route handler. Requests that are not WebSocket
    upgrades get ``404 Not found``.

    Example:
        ```python
        async def rpc_handler(request):
            return await handle_websocket_rpc(request, dispatcher)

        app.router.add_get("/rpc", rpc_handler)
        ```

    If ``sessions`` is given, the session is kept in it while it is open.
    """
    ws = web.WebSocketResponse()
    if not ws.can_prepare(request).ok:
        logger.debug("Non-WebSocket request to %s", request.path)
        return web.Response(status=404, text="Not found")

    await ws.prepare(request)
    session = RpcSession(
        transport=WebSocketTransport(ws),
        dispatcher=_make_dispatcher(dispatcher),
        config=config,
        name=f"server[{request.remote}]",
    )
    if sessions is not None:
        sessions.add(session)
    session.start()
    logger.debug("WebSocket session opened from %s", request.remote)

    try:
        await session.wait_closed()
    finally:
        await session.close()
        if sessions is not None:
            sessions.discard(session)
        logger.debug("WebSocket session closed from %s", request.remote)
    return ws


class WebSocketRpcServer:
    """WebSocket RPC server.

    Each connection gets its own session and question tables. ``dispatcher``
    is either one dispatcher shared by all connections or a factory called
    once per connection.

    Example:
        ```python
        server = WebSocketRpcServer(dispatcher, WebSocketServerConfig(port=8080))
        await server.start()
        # ... server is running ...
        await server.stop()
        ```
    """

    def __init__(
        self,
        dispatcher: DispatcherSource,
        config: WebSocketServerConfig | None = None,
    ) -> None:
        self._dispatcher = dispatcher
        self._config = config or WebSocketServerConfig()
        self._app: web.Application | None = None
        self._runner: web.AppRunner | None = None
        self._site: web.TCPSite | None = None
        self._sessions: set[RpcSession] = set()

    @property
    def port(self) -> int:
        """The bound port; useful when configured with port 0."""
        if self._runner is None or not self._runner.addresses:
            raise RuntimeError("Server not started")
        return self._runner.addresses[0][1]

    @property
    def url(self) -> str:
        return f"ws://{self._config.host}:{self.port}{self._config.path}"

    @property
    def session_count(self) -> int:
        return len(self._sessions)

    async def __aenter__(self) -> Self:
        await self.start()
        return self

    async def __aexit__(self, *args: object) -> None:
        await self.stop()

    async def start(self) -> None:
        """Start the server."""
        self._app = web.Application()
        self._app.router.add_get(self._config.path, self._handle_ws)

        self._runner = web.AppRunner(self._app)
        await self._runner.setup()

        self._site = web.TCPSite(self._runner, self._config.host, self._config.port)
        await self._site.start()

        logger.info("WebSocket RPC server started on %s", self.url)

    async def stop(self) -> None:
        """Stop the server, closing every open session."""
        for session in list(self._sessions):
            await session.close("Server shutting down")
        self._sessions.clear()

        if self._site:
            await self._site.stop()
            self._site = None
        if self._runner:
            await self._runner.cleanup()
            self._runner = None
        self._app = None

    async def _handle_ws(self, request: web.Request) -> web.StreamResponse:
        """Handle an incoming request on the RPC path."""
        return await handle_websocket_rpc(
            request,
            self._dispatcher,
            config=self._config.session,
            sessions=self._sessions,
        )


class WebSocketRpcClient:
    """WebSocket RPC client.

    Example:
        ```python
        async with WebSocketRpcClient("ws://localhost:8080/rpc") as client:
            first = client.call_pipelined("makeGreeting", ["Alice"])
            result = await client.call_immediate("appendSuffix", [first, "!!!"])
            print(result)  # "Hello, Alice!!!!"
        ```
    """

    def __init__(
        self,
        url: str | ClientConfig,
        dispatcher: MethodDispatcher | None = None,
    ) -> None:
        """Initialize the client.

        Args:
            url: WebSocket URL to connect to, or a full client configuration
            dispatcher: Optional handlers for calls the server makes on us
        """
        self._config = url if isinstance(url, ClientConfig) else ClientConfig(url=url)
        self._dispatcher = dispatcher
        self._http_session: aiohttp.ClientSession | None = None
        self._ws: aiohttp.ClientWebSocketResponse | None = None
        self._session: RpcSession | None = None

    @property
    def url(self) -> str:
        return self._config.url

    @property
    def session(self) -> RpcSession:
        if self._session is None:
            raise RuntimeError("Not connected")
        return self._session

    async def __aenter__(self) -> Self:
        await self.connect()
        return self

    async def __aexit__(self, *args: object) -> None:
        await self.close()

    async def connect(self) -> None:
        """Connect to the server and start the session."""
        self._http_session = aiohttp.ClientSession()
        try:
            self._ws = await asyncio.wait_for(
                self._http_session.ws_connect(self._config.url),
                timeout=self._config.connect_timeout,
            )
        except BaseException:
            await self._http_session.close()
            self._http_session = None
            raise

        self._session = RpcSession(
            transport=WebSocketTransport(self._ws),
            dispatcher=self._dispatcher,
            config=self._config.session,
            name="client",
        )
        self._session.start()

    async def close(self) -> None:
        """Close the connection."""
        if self._session:
            await self._session.close()
            self._session = None
        if self._ws:
            await self._ws.close()
            self._ws = None
        if self._http_session:
            await self._http_session.close()
            self._http_session = None

    def call_pipelined(self, method: str, params: Iterable[Any] = ()) -> Reference:
        """Send a call and return a reference to its result at once."""
        return self.session.call_pipelined(method, params)

    def call_immediate(self, method: str, params: Iterable[Any] = ()) -> asyncio.Future[Any]:
        """Send a call and return a future for its result."""
        return self.session.call_immediate(method, params)

    async def await_reference(self, reference: Reference | int) -> Any:
        return await self.session.await_reference(reference)

    async def call(self, method: str, *params: Any) -> Any:
        """Send a call and wait for its result."""
        return await self.session.call(method, *params)

    def release(self, reference: Reference | int) -> bool:
        return self.session.release(reference)

    def get_stats(self) -> dict[str, int]:
        """Get session statistics."""
        if self._session:
            return self._session.get_stats()
        return {"questions": 0, "answers": 0, "in_flight": 0}
