"""Greeting server demonstrating promise pipelining over WebSocket.

Run:
    python examples/greeting/server.py
"""

import asyncio
import logging

from pipelinerpc import MethodDispatcher, RpcTarget, WebSocketRpcServer, WebSocketServerConfig

# Each method sleeps a little so the pipelining effect is visible
METHOD_DELAY_SECONDS = 0.01


class Greeter(RpcTarget):
    """The demo methods, exposed under their own names."""

    async def makeGreeting(self, name: str) -> str:
        await asyncio.sleep(METHOD_DELAY_SECONDS)
        return f"Hello, {name}!"

    async def appendSuffix(self, text: str, suffix: str) -> str:
        await asyncio.sleep(METHOD_DELAY_SECONDS)
        return text + suffix


async def main() -> None:
    """Run the greeting server."""
    logging.basicConfig(level=logging.INFO)
    dispatcher = MethodDispatcher.from_target(Greeter())
    config = WebSocketServerConfig(host="127.0.0.1", port=8080, path="/rpc")

    async with WebSocketRpcServer(dispatcher, config) as server:
        print(f"Greeting server running on {server.url}")
        print("Run client with: python examples/greeting/client.py")
        print("Press Ctrl+C to stop")
        await asyncio.Event().wait()


if __name__ == "__main__":
    try:
        asyncio.run(main())
    except KeyboardInterrupt:
        print("\nShutting down...")
