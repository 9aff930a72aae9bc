"""Client comparing sequential calls with a pipelined chain.

Usage (separate terminal from server):
    python examples/greeting/client.py
"""

import asyncio
import time

from pipelinerpc import RemoteError, WebSocketRpcClient

URL = "ws://127.0.0.1:8080/rpc"


async def run_sequential(client: WebSocketRpcClient) -> dict:
    """Two round trips: wait for the greeting, then send it back."""
    t0 = time.perf_counter()
    greeting = await client.call("makeGreeting", "Alice")
    result = await client.call("appendSuffix", greeting, "!!!")
    t1 = time.perf_counter()
    return {"result": result, "ms": (t1 - t0) * 1000}


async def run_pipelined(client: WebSocketRpcClient) -> dict:
    """One round trip: the second call references the first's result."""
    t0 = time.perf_counter()
    greeting = client.call_pipelined("makeGreeting", ["Alice"])
    result = await client.call_immediate("appendSuffix", [greeting, "!!!"])
    first = await client.await_reference(greeting)
    t1 = time.perf_counter()
    return {"result": result, "first": first, "ms": (t1 - t0) * 1000}


async def main() -> None:
    print("=" * 60)
    print("Promise pipelining demo")
    print("=" * 60)

    async with WebSocketRpcClient(URL) as client:
        sequential = await run_sequential(client)
        print(f"\nSequential: {sequential['result']!r} in {sequential['ms']:.1f} ms")

        pipelined = await run_pipelined(client)
        print(f"Pipelined:  {pipelined['result']!r} in {pipelined['ms']:.1f} ms")
        print(f"            (call #1 returned {pipelined['first']!r})")

        try:
            await client.call("noSuchMethod")
        except RemoteError as e:
            print(f"\nExpected error: {e}")


if __name__ == "__main__":
    try:
        asyncio.run(main())
    except OSError as e:
        print(f"\nError: {e}")
        print("Make sure the server is running: python examples/greeting/server.py")
