"""Parameter resolution for pipelined calls.

A call's params arrive already decoded into ``LiteralParam | Reference``.
Literals pass straight through; each ``Reference`` is replaced by the value of
the question it names, waiting on the question table if that call is still
running. References are awaited concurrently so independent dependencies do
not queue up behind each other.

References are checked against the table when the call arrives, via
``check_references``, so a call can only name calls that arrived before it.
"""

from __future__ import annotations

import asyncio
import logging
from typing import Any, Sequence

from pipelinerpc.error import ParamResolutionError, RpcError, UnknownQuestion
from pipelinerpc.questions import QuestionState, QuestionTable
from pipelinerpc.wire import LiteralParam, Param, Reference

logger = logging.getLogger(__name__)


class ParameterResolver:
    """Resolves the params of calls against one connection's question table."""

    __slots__ = ("_table",)

    def __init__(self, table: QuestionTable) -> None:
        self._table = table

    def check_references(self, params: Sequence[Param]) -> None:
        """Fail if any reference names a call the table has not seen.

        Must run synchronously as the call frame is handled, before any later
        frame is registered.

        Raises:
            ParamResolutionError: For the first unknown reference
        """
        for param in params:
            if isinstance(param, Reference) and param.question_id not in self._table:
                error = UnknownQuestion(param.question_id)
                raise ParamResolutionError(error.message) from error

    async def resolve_params(
        self,
        question_id: int,
        params: Sequence[Param],
    ) -> list[Any]:
        """Resolve ``params`` for the call ``question_id``, preserving order.

        Raises:
            ParamResolutionError: If any reference fails to resolve. Carries
                the upstream failure's message; the other pending waits are
                cancelled.
        """
        if not any(isinstance(p, Reference) for p in params):
            return [p.value for p in params]  # type: ignore[union-attr]

        resolved: list[Any] = [None] * len(params)
        waits: dict[int, asyncio.Task[Any]] = {}
        for index, param in enumerate(params):
            match param:
                case LiteralParam(value):
                    resolved[index] = value
                case Reference(target):
                    question = self._table.get(target)
                    if question is not None and question.state is QuestionState.FULFILLED:
                        resolved[index] = question.value
                    else:
                        logger.debug("#%d waits on #%d", question_id, target)
                        waits[index] = asyncio.ensure_future(
                            self._table.wait(target, waiter_id=question_id)
                        )

        if not waits:
            return resolved

        try:
            values = await asyncio.gather(*waits.values())
        except RpcError as e:
            raise ParamResolutionError(e.message) from e
        finally:
            for task in waits.values():
                if not task.done():
                    task.cancel()

        for index, value in zip(waits, values):
            resolved[index] = value
        return resolved
