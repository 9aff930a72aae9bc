"""Tests for the WebSocket server and client.

These tests run a real aiohttp server on an ephemeral port.
"""

import asyncio
import json

import aiohttp
import pytest
import pytest_asyncio

from pipelinerpc.config import ClientConfig, WebSocketServerConfig
from pipelinerpc.dispatcher import MethodDispatcher
from pipelinerpc.error import ConnectionClosed, RemoteError
from pipelinerpc.ws_session import WebSocketRpcClient, WebSocketRpcServer


@pytest_asyncio.fixture
async def server(dispatcher: MethodDispatcher):
    config = WebSocketServerConfig(host="127.0.0.1", port=0)
    server = WebSocketRpcServer(dispatcher, config)
    await server.start()
    yield server
    await server.stop()


@pytest.mark.asyncio
class TestWebSocketRpc:

    async def test_pipelined_greeting(self, server: WebSocketRpcServer) -> None:
        async with WebSocketRpcClient(server.url) as client:
            greeting = client.call_pipelined("makeGreeting", ["Alice"])
            result = await client.call_immediate("appendSuffix", [greeting, "!!!"])
            assert result == "Hello, Alice!!!!"
            assert await client.await_reference(greeting) == "Hello, Alice!"

    async def test_simple_call_and_error(self, server: WebSocketRpcServer) -> None:
        async with WebSocketRpcClient(ClientConfig(url=server.url)) as client:
            assert await client.call("echo", {"nested": [1, 2]}) == {"nested": [1, 2]}
            with pytest.raises(RemoteError, match='Unknown method "missing"'):
                await client.call("missing")

    async def test_concurrent_calls(self, server: WebSocketRpcServer) -> None:
        async with WebSocketRpcClient(server.url) as client:
            futures = [client.call_immediate("slow", [i, (5 - i) * 0.01]) for i in range(5)]
            assert await asyncio.gather(*futures) == [0, 1, 2, 3, 4]
            assert client.get_stats()["questions"] == 5

    async def test_connections_are_isolated(self, server: WebSocketRpcServer) -> None:
        async with WebSocketRpcClient(server.url) as first, WebSocketRpcClient(server.url) as second:
            a = first.call_pipelined("slow", ["first", 0.05])
            b = second.call_pipelined("echo", ["second"])
            # Both use question id 1 on their own connection
            assert a.question_id == b.question_id == 1
            assert await second.await_reference(b) == "second"
            assert await first.await_reference(a) == "first"
            assert server.session_count == 2

    async def test_raw_invalid_frame(self, server: WebSocketRpcServer) -> None:
        async with aiohttp.ClientSession() as http:
            async with http.ws_connect(server.url) as ws:
                await ws.send_str("{not json")
                assert await ws.receive_json(timeout=2) == {
                    "type": "exception",
                    "answerId": 0,
                    "error": "Invalid JSON",
                }

                await ws.send_str(json.dumps({
                    "type": "call",
                    "questionId": 1,
                    "method": "makeGreeting",
                    "params": ["Alice"],
                }))
                await ws.send_str(json.dumps({
                    "type": "call",
                    "questionId": 2,
                    "method": "appendSuffix",
                    "params": [{"resultOf": 1}, "!!!"],
                }))
                replies = [await ws.receive_json(timeout=2) for _ in range(2)]
                by_id = {r["answerId"]: r["result"] for r in replies}
                assert by_id == {1: "Hello, Alice!", 2: "Hello, Alice!!!!"}

    async def test_raw_binary_frames(self, server: WebSocketRpcServer) -> None:
        async with aiohttp.ClientSession() as http:
            async with http.ws_connect(server.url) as ws:
                await ws.send_bytes(b"\x80 not utf-8")
                assert await ws.receive_json(timeout=2) == {
                    "type": "exception",
                    "answerId": 0,
                    "error": "Invalid JSON",
                }

                await ws.send_bytes(json.dumps({
                    "type": "call",
                    "questionId": 1,
                    "method": "echo",
                    "params": ["bytes"],
                }).encode("utf-8"))
                assert await ws.receive_json(timeout=2) == {
                    "type": "return",
                    "answerId": 1,
                    "result": "bytes",
                }

    async def test_plain_get_is_not_found(self, server: WebSocketRpcServer) -> None:
        async with aiohttp.ClientSession() as http:
            async with http.get(f"http://127.0.0.1:{server.port}/rpc") as response:
                assert response.status == 404
                assert await response.text() == "Not found"
            async with http.get(f"http://127.0.0.1:{server.port}/other") as response:
                assert response.status == 404

    async def test_server_stop_fails_pending_calls(self, dispatcher: MethodDispatcher) -> None:
        server = WebSocketRpcServer(dispatcher, WebSocketServerConfig(host="127.0.0.1", port=0))
        await server.start()
        client = WebSocketRpcClient(server.url)
        await client.connect()
        try:
            pending = client.call_immediate("slow", ["never", 10])
            await asyncio.sleep(0.05)
            await server.stop()
            with pytest.raises(ConnectionClosed):
                await asyncio.wait_for(pending, timeout=2.0)
        finally:
            await client.close()

    async def test_not_connected(self) -> None:
        client = WebSocketRpcClient("ws://127.0.0.1:1/rpc")
        with pytest.raises(RuntimeError, match="Not connected"):
            client.call_pipelined("echo", [1])
        assert client.get_stats() == {"questions": 0, "answers": 0, "in_flight": 0}


@pytest.mark.asyncio
async def test_handle_websocket_rpc_in_custom_app(dispatcher: MethodDispatcher) -> None:
    from aiohttp import web

    from pipelinerpc.ws_session import handle_websocket_rpc

    async def rpc_handler(request: web.Request) -> web.StreamResponse:
        return await handle_websocket_rpc(request, lambda: dispatcher)

    app = web.Application()
    app.router.add_get("/custom/rpc", rpc_handler)
    runner = web.AppRunner(app)
    await runner.setup()
    site = web.TCPSite(runner, "127.0.0.1", 0)
    await site.start()
    port = runner.addresses[0][1]

    try:
        async with WebSocketRpcClient(f"ws://127.0.0.1:{port}/custom/rpc") as client:
            first = client.call_pipelined("makeGreeting", ["Carol"])
            assert await client.call_immediate("appendSuffix", [first, "?"]) == "Hello, Carol!?"
    finally:
        await runner.cleanup()
