"""Per-connection question bookkeeping.

A ``QuestionTable`` tracks every call one side of a connection knows about,
keyed by the id the call's sender assigned. The resolving side registers an
entry the moment a call frame arrives; the issuing side registers one the
moment it sends a call. Either way, anything that needs the call's result
waits on the table:

- a fulfilled question answers ``wait()`` without suspending
- a pending question parks the waiter on its FIFO wait list
- ``resolve``/``reject`` wake the whole list in arrival order
- ``close`` rejects everything still pending with ``ConnectionClosed``; values
  that already settled stay readable

Settled entries stay around so that later calls can still reference them.
The number kept is bounded by ``max_settled``; the oldest settled entries are
evicted first.
"""

from __future__ import annotations

import asyncio
import logging
from enum import Enum
from typing import Any

from pipelinerpc.error import (
    ConnectionClosed,
    ProtocolViolation,
    ReferenceCycle,
    RpcError,
    UnknownQuestion,
)

logger = logging.getLogger(__name__)


class QuestionState(str, Enum):
    PENDING = "pending"
    FULFILLED = "fulfilled"
    REJECTED = "rejected"


class Question:
    """State of one call, scoped to a single connection and sender."""

    __slots__ = ("question_id", "state", "value", "error", "waiters", "depends_on")

    def __init__(self, question_id: int) -> None:
        self.question_id = question_id
        self.state = QuestionState.PENDING
        self.value: Any = None
        self.error: RpcError | None = None
        self.waiters: list[asyncio.Future[Any]] = []
        # Pending questions this one is currently waiting on
        self.depends_on: set[int] = set()

    @property
    def settled(self) -> bool:
        return self.state is not QuestionState.PENDING

    def __repr__(self) -> str:
        return f"Question(id={self.question_id}, state={self.state.value})"


class QuestionTable:
    """Registry of questions for one connection.

    Not shared between connections; create one per session and close it when
    the connection goes away.
    """

    def __init__(self, max_settled: int | None = None, name: str = "questions") -> None:
        """Initialize the table.

        Args:
            max_settled: How many settled questions to keep for later
                references. ``None`` keeps them until the table is closed.
            name: Label used in log messages
        """
        if max_settled is not None and max_settled < 1:
            msg = f"max_settled must be positive, got {max_settled}"
            raise ValueError(msg)
        self.name = name
        self._max_settled = max_settled
        self._questions: dict[int, Question] = {}
        # Settled ids in settle order; dict keeps insertion order
        self._settled: dict[int, None] = {}
        self._closed: ConnectionClosed | None = None

    def __contains__(self, question_id: object) -> bool:
        return question_id in self._questions

    def __len__(self) -> int:
        return len(self._questions)

    @property
    def closed(self) -> bool:
        return self._closed is not None

    @property
    def pending_count(self) -> int:
        return len(self._questions) - len(self._settled)

    def get(self, question_id: int) -> Question | None:
        return self._questions.get(question_id)

    def register(self, question_id: int) -> Question:
        """Create a pending entry for ``question_id``.

        Registering an id that is already pending returns the existing entry.

        Raises:
            ProtocolViolation: If the id has already settled
            ConnectionClosed: If the table has been closed
        """
        if self._closed is not None:
            raise self._closed

        question = self._questions.get(question_id)
        if question is not None:
            if question.settled:
                raise ProtocolViolation(
                    f"Question #{question_id} already {question.state.value}"
                )
            return question

        question = Question(question_id)
        self._questions[question_id] = question
        logger.debug("%s: registered #%d", self.name, question_id)
        return question

    def resolve(self, question_id: int, value: Any) -> None:
        """Fulfil a pending question and wake its waiters in FIFO order.

        Raises:
            UnknownQuestion: If the id is not registered
            ProtocolViolation: If the question has already settled
        """
        question = self._pending(question_id)
        question.state = QuestionState.FULFILLED
        question.value = value
        self._settle(question)
        for waiter in question.waiters:
            if not waiter.done():
                waiter.set_result(value)
        question.waiters.clear()

    def reject(self, question_id: int, error: RpcError) -> None:
        """Reject a pending question and fail its waiters in FIFO order.

        Raises:
            UnknownQuestion: If the id is not registered
            ProtocolViolation: If the question has already settled
        """
        question = self._pending(question_id)
        question.state = QuestionState.REJECTED
        question.error = error
        self._settle(question)
        for waiter in question.waiters:
            if not waiter.done():
                waiter.set_exception(error)
        question.waiters.clear()

    async def wait(self, question_id: int, waiter_id: int | None = None) -> Any:
        """Return the value of ``question_id``, suspending while it is pending.

        Args:
            question_id: The question whose value is wanted
            waiter_id: The question doing the waiting, if any. Used to refuse
                waits that would close a reference cycle.

        Raises:
            UnknownQuestion: Immediately, if the id is not registered
            ReferenceCycle: Immediately, if ``question_id`` already depends on
                ``waiter_id``
            RpcError: The question's rejection error
        """
        question = self._questions.get(question_id)
        if question is None:
            if self._closed is not None:
                raise self._closed
            raise UnknownQuestion(question_id)

        if question.state is QuestionState.FULFILLED:
            return question.value
        if question.state is QuestionState.REJECTED:
            raise question.error  # type: ignore[misc]

        if waiter_id is not None:
            self._add_dependency(waiter_id, question_id)

        waiter: asyncio.Future[Any] = asyncio.get_running_loop().create_future()
        question.waiters.append(waiter)
        try:
            return await waiter
        finally:
            if waiter in question.waiters:
                question.waiters.remove(waiter)

    def discard(self, question_id: int) -> bool:
        """Drop a settled question. Returns False if it was not there.

        Raises:
            ProtocolViolation: If the question is still pending
        """
        question = self._questions.get(question_id)
        if question is None:
            return False
        if not question.settled:
            raise ProtocolViolation(f"Question #{question_id} is still pending")
        del self._questions[question_id]
        self._settled.pop(question_id, None)
        return True

    def close(self, error: ConnectionClosed | None = None) -> None:
        """Reject every pending question and refuse new registrations.

        Settled entries, including the ones rejected here, stay readable.
        """
        if self._closed is not None:
            return
        reason = error or ConnectionClosed()
        pending = [q for q in self._questions.values() if not q.settled]
        if pending:
            logger.debug(
                "%s: closing with %d pending question(s)", self.name, len(pending)
            )
        for question in pending:
            self.reject(question.question_id, reason)
        self._closed = reason

    def _pending(self, question_id: int) -> Question:
        question = self._questions.get(question_id)
        if question is None:
            raise UnknownQuestion(question_id)
        if question.settled:
            raise ProtocolViolation(
                f"Question #{question_id} already {question.state.value}"
            )
        return question

    def _settle(self, question: Question) -> None:
        logger.debug(
            "%s: #%d %s", self.name, question.question_id, question.state.value
        )
        question.depends_on.clear()
        self._settled[question.question_id] = None
        if self._max_settled is not None:
            while len(self._settled) > self._max_settled:
                oldest = next(iter(self._settled))
                del self._settled[oldest]
                self._questions.pop(oldest, None)

    def _add_dependency(self, waiter_id: int, target_id: int) -> None:
        """Record that ``waiter_id`` waits on ``target_id``, refusing cycles."""
        stack = [target_id]
        seen: set[int] = set()
        while stack:
            current = stack.pop()
            if current == waiter_id:
                raise ReferenceCycle(waiter_id, target_id)
            if current in seen:
                continue
            seen.add(current)
            question = self._questions.get(current)
            if question is not None and not question.settled:
                stack.extend(question.depends_on)

        waiter = self._questions.get(waiter_id)
        if waiter is not None and not waiter.settled:
            waiter.depends_on.add(target_id)
