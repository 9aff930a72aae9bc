"""Symmetric RPC session for one connection.

Both peers use the same session class. Each side:

- answers calls the peer sends (``call`` frames), tracked in ``answers``
- issues its own calls, tracked in ``questions``, and demultiplexes the
  ``return``/``exception`` frames that come back

The read loop only ever waits on the transport. Every inbound call is
registered synchronously, in arrival order, and then resolved, dispatched and
answered by its own task. That is what makes pipelining work: a second call
that references the first can be read and registered while the first is still
running, and its params simply wait on the first question's entry.

Outbound frames go through a single writer task so they reach the wire in the
order they were issued; a pipelined call never overtakes the call it
references.

Failures never stop the loop. A failed call is answered with an
``exception`` frame and its question is rejected, so pipelined dependents fail
too instead of waiting forever. Closing the session rejects everything still
pending in both tables with ``ConnectionClosed``.
"""

from __future__ import annotations

import asyncio
import logging
from typing import Any, Iterable, Self

from pipelinerpc.config import RpcSessionConfig
from pipelinerpc.dispatcher import MethodDispatcher
from pipelinerpc.error import (
    ConnectionClosed,
    DecodeError,
    HandlerError,
    RemoteError,
    RpcError,
)
from pipelinerpc.ids import IdAllocator
from pipelinerpc.questions import QuestionTable
from pipelinerpc.resolver import ParameterResolver
from pipelinerpc.types import RpcTransport
from pipelinerpc.wire import (
    CONNECTION_ANSWER_ID,
    LiteralParam,
    Reference,
    WireCall,
    WireException,
    WireMessage,
    WireReturn,
    parse_wire_message,
    serialize_wire_message,
)

logger = logging.getLogger(__name__)


class RpcSession:
    """One peer's view of a pipelined RPC connection.

    Example:
        ```python
        async with RpcSession(transport) as session:
            greeting = session.call_pipelined("makeGreeting", ["Alice"])
            shouted = session.call_immediate("appendSuffix", [greeting, "!!!"])
            print(await shouted)  # "Hello, Alice!!!!"
        ```
    """

    def __init__(
        self,
        transport: RpcTransport,
        dispatcher: MethodDispatcher | None = None,
        config: RpcSessionConfig | None = None,
        name: str = "session",
    ) -> None:
        """Initialize the session.

        Args:
            transport: The message transport
            dispatcher: Handlers for calls the peer makes on us. Without one,
                every inbound call fails with an unknown method error.
            config: Optional session configuration
            name: Label used in log messages
        """
        self.transport = transport
        self.name = name
        self._config = config or RpcSessionConfig()
        self._dispatcher = dispatcher or MethodDispatcher()

        max_settled = self._config.max_settled_questions
        # Calls the peer asked us, keyed by the peer's ids
        self._answers = QuestionTable(max_settled, name=f"{name}.answers")
        # Calls we asked the peer, keyed by our ids
        self._questions = QuestionTable(max_settled, name=f"{name}.questions")
        self._resolver = ParameterResolver(self._answers)
        self._ids = IdAllocator()

        self._outbox: asyncio.Queue[str | None] = asyncio.Queue()
        self._read_loop_task: asyncio.Task[None] | None = None
        self._write_loop_task: asyncio.Task[None] | None = None
        self._call_tasks: set[asyncio.Task[None]] = set()

        self._close_reason: ConnectionClosed | None = None
        self._closed_event = asyncio.Event()
        self.last_connection_error: str | None = None

    async def __aenter__(self) -> Self:
        self.start()
        return self

    async def __aexit__(self, *args: object) -> None:
        await self.close()

    @property
    def closed(self) -> bool:
        return self._close_reason is not None

    @property
    def answers(self) -> QuestionTable:
        return self._answers

    @property
    def questions(self) -> QuestionTable:
        return self._questions

    def start(self) -> None:
        """Start the read and write loops."""
        if self._read_loop_task is None:
            self._read_loop_task = asyncio.create_task(self._read_loop())
            self._write_loop_task = asyncio.create_task(self._write_loop())

    async def close(self, reason: str = "Session closed") -> None:
        """Close the session and abort the transport.

        Every pending question on either side fails with ``ConnectionClosed``.
        """
        self._shutdown(ConnectionClosed(reason))
        current = asyncio.current_task()
        tasks = [
            t for t in (self._read_loop_task, self._write_loop_task, *self._call_tasks)
            if t is not None and t is not current
        ]
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)

        if hasattr(self.transport, 'abort') and self.transport.abort:
            try:
                self.transport.abort(self._close_reason)  # type: ignore[arg-type]
            except Exception:
                logger.debug("%s: transport abort failed", self.name, exc_info=True)

    async def wait_closed(self) -> None:
        """Wait until the connection goes away or ``close()`` is called."""
        await self._closed_event.wait()

    async def drain(self) -> None:
        """Wait for all in-flight inbound calls to be answered and sent."""
        while self._call_tasks:
            await asyncio.gather(*self._call_tasks, return_exceptions=True)
        if not self.closed:
            await self._outbox.join()

    def get_stats(self) -> dict[str, int]:
        """Get statistics about the session.

        Returns:
            Dict with 'questions', 'answers' and 'in_flight' counts
        """
        return {
            "questions": len(self._questions),
            "answers": len(self._answers),
            "in_flight": len(self._call_tasks),
        }

    # -------------------------------------------------------------------------
    # Issuing calls
    # -------------------------------------------------------------------------

    def call_pipelined(self, method: str, params: Iterable[Any] = ()) -> Reference:
        """Send a call and return a reference to its result without waiting.

        The reference can be passed as a top-level param of later calls, or
        awaited with ``await_reference``.

        Raises:
            ConnectionClosed: If the session is closed
            TypeError, ValueError: If the params cannot be encoded as JSON
        """
        self._check_open()
        question_id = self._ids.allocate()
        encoded = tuple(
            p if isinstance(p, (LiteralParam, Reference)) else LiteralParam(p)
            for p in params
        )
        frame = serialize_wire_message(WireCall(question_id, method, encoded))
        self._questions.register(question_id)
        logger.debug("%s: -> call #%d %s", self.name, question_id, method)
        self._send_frame(frame)
        return Reference(question_id)

    def call_immediate(self, method: str, params: Iterable[Any] = ()) -> asyncio.Future[Any]:
        """Send a call and return a future for its result."""
        reference = self.call_pipelined(method, params)
        return asyncio.ensure_future(self.await_reference(reference))

    async def call(self, method: str, *params: Any) -> Any:
        """Send a call and wait for its result."""
        return await self.call_immediate(method, params)

    async def await_reference(self, reference: Reference | int) -> Any:
        """Wait for the result of a call this side issued.

        Returns at once if the answer has already arrived.

        Raises:
            RemoteError: The peer answered with an exception
            UnknownQuestion: The reference was never issued, or was released
            ConnectionClosed: The connection closed before the answer arrived
        """
        question_id = reference.question_id if isinstance(reference, Reference) else reference
        return await self._questions.wait(question_id)

    def release(self, reference: Reference | int) -> bool:
        """Forget the settled result of a call this side issued.

        Only affects local bookkeeping; the peer keeps its own entry.
        """
        question_id = reference.question_id if isinstance(reference, Reference) else reference
        return self._questions.discard(question_id)

    # -------------------------------------------------------------------------
    # Message handling
    # -------------------------------------------------------------------------

    async def _read_loop(self) -> None:
        """Main message processing loop.

        This loop must never block on anything other than receiving frames,
        otherwise a pipelined call could not be registered while the call it
        references is still running.
        """
        while self._close_reason is None:
            try:
                frame = await self.transport.receive()
            except ConnectionError as e:
                logger.debug("%s: connection closed: %s", self.name, e)
                self._shutdown(ConnectionClosed(f"Connection closed: {e}"))
                break
            except Exception as e:
                logger.exception("%s: error in read loop", self.name)
                self._shutdown(ConnectionClosed(f"Connection failed: {e}"))
                break
            self._handle_frame(frame)

    async def _write_loop(self) -> None:
        """Send queued frames one at a time, in order."""
        try:
            while True:
                frame = await self._outbox.get()
                try:
                    if frame is None:
                        break
                    await self.transport.send(frame)
                except Exception as e:
                    logger.debug("%s: send failed: %s", self.name, e)
                    self._shutdown(ConnectionClosed(f"Send failed: {e}"))
                    break
                finally:
                    self._outbox.task_done()
        finally:
            # Nothing else will be sent; unblock drain()
            while not self._outbox.empty():
                self._outbox.get_nowait()
                self._outbox.task_done()

    def _handle_frame(self, frame: str | bytes) -> None:
        try:
            msg = parse_wire_message(frame)
        except DecodeError as e:
            logger.warning("%s: rejecting frame: %s", self.name, e.message)
            answer_id = e.question_id
            if answer_id in self._answers:
                answer_id = CONNECTION_ANSWER_ID
            self._send(WireException(answer_id, e.message))
            return

        match msg:
            case WireCall():
                self._handle_call(msg)
            case WireReturn(answer_id, result):
                self._handle_return(answer_id, result)
            case WireException(answer_id, error):
                self._handle_exception(answer_id, error)

    def _handle_call(self, msg: WireCall) -> None:
        """Register the question now, run the call in the background."""
        question_id = msg.question_id
        logger.debug("%s: <- call #%d %s", self.name, question_id, msg.method)

        if question_id in self._answers:
            logger.warning("%s: duplicate question id #%d", self.name, question_id)
            self._send(WireException(question_id, f"Duplicate question id {question_id}"))
            return

        if self._answers.closed:
            return
        self._answers.register(question_id)
        try:
            self._resolver.check_references(msg.params)
        except RpcError as e:
            self._fail_answer(question_id, e)
            return

        task = asyncio.create_task(self._run_call(msg))
        self._call_tasks.add(task)
        task.add_done_callback(self._call_tasks.discard)

    async def _run_call(self, msg: WireCall) -> None:
        """Resolve params, dispatch and answer one call."""
        question_id = msg.question_id
        try:
            args = await self._resolver.resolve_params(question_id, msg.params)
            result = await self._dispatcher.dispatch(msg.method, args)
        except RpcError as e:
            self._fail_answer(question_id, e)
            return
        except Exception as e:
            logger.exception("%s: error handling call #%d", self.name, question_id)
            self._fail_answer(question_id, HandlerError(str(e)))
            return

        try:
            frame = serialize_wire_message(WireReturn(question_id, result))
        except (TypeError, ValueError) as e:
            self._fail_answer(question_id, HandlerError(f"Result is not serializable: {e}"))
            return

        if self._answers.closed:
            return
        self._answers.resolve(question_id, result)
        logger.debug("%s: -> return #%d", self.name, question_id)
        self._send_frame(frame)

    def _fail_answer(self, question_id: int, error: RpcError) -> None:
        """Answer a failed call and reject its question for any dependents."""
        logger.debug("%s: -> exception #%d: %s", self.name, question_id, error.message)
        if self._answers.closed:
            return
        question = self._answers.get(question_id)
        if question is not None and not question.settled:
            self._answers.reject(question_id, error)
        self._send(WireException(question_id, self._error_text(error)))

    def _handle_return(self, answer_id: int, result: Any) -> None:
        question = self._questions.get(answer_id)
        if question is None or question.settled:
            logger.warning(
                "%s: dropping return for unknown or settled question #%d",
                self.name, answer_id,
            )
            return
        logger.debug("%s: <- return #%d", self.name, answer_id)
        self._questions.resolve(answer_id, result)

    def _handle_exception(self, answer_id: int, error: str) -> None:
        if answer_id == CONNECTION_ANSWER_ID:
            logger.warning("%s: peer reported connection error: %s", self.name, error)
            self.last_connection_error = error
            return

        question = self._questions.get(answer_id)
        if question is None or question.settled:
            logger.warning(
                "%s: dropping exception for unknown or settled question #%d",
                self.name, answer_id,
            )
            return
        logger.debug("%s: <- exception #%d: %s", self.name, answer_id, error)
        self._questions.reject(answer_id, RemoteError(error))

    # -------------------------------------------------------------------------
    # Sending
    # -------------------------------------------------------------------------

    def _error_text(self, error: RpcError) -> str:
        """Apply the on_send_error hook, if any."""
        hook = self._config.on_send_error
        if hook is None:
            return error.message
        try:
            replacement = hook(error)
        except Exception:
            logger.exception("%s: on_send_error hook failed", self.name)
            return error.message
        return error.message if replacement is None else replacement

    def _send(self, msg: WireMessage) -> None:
        self._send_frame(serialize_wire_message(msg))

    def _send_frame(self, frame: str) -> None:
        if self._close_reason is not None:
            return  # Don't send after close
        self._outbox.put_nowait(frame)

    def _check_open(self) -> None:
        if self._close_reason is not None:
            raise self._close_reason

    def _shutdown(self, reason: ConnectionClosed) -> None:
        """Fail everything pending and stop the loops. Idempotent."""
        if self._close_reason is not None:
            return
        logger.debug("%s: shutting down: %s", self.name, reason.message)
        self._close_reason = reason
        self._questions.close(reason)
        self._answers.close(reason)
        current = asyncio.current_task()
        for task in (self._read_loop_task, *self._call_tasks):
            if task is not None and task is not current:
                task.cancel()
        self._outbox.put_nowait(None)
        self._closed_event.set()
