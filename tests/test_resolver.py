"""Tests for parameter resolution against a question table."""

import asyncio

import pytest

from pipelinerpc.error import HandlerError, ParamResolutionError
from pipelinerpc.questions import QuestionTable
from pipelinerpc.resolver import ParameterResolver
from pipelinerpc.wire import LiteralParam, Reference


def run_without_suspending(coro):
    try:
        coro.send(None)
    except StopIteration as e:
        return e.value
    coro.close()
    raise AssertionError("coroutine suspended")


@pytest.fixture
def table() -> QuestionTable:
    return QuestionTable()


@pytest.fixture
def resolver(table: QuestionTable) -> ParameterResolver:
    return ParameterResolver(table)


class TestLiterals:

    def test_literals_pass_through_in_order(self, resolver: ParameterResolver) -> None:
        params = [LiteralParam("a"), LiteralParam(1), LiteralParam([1, 2]), LiteralParam(None)]
        assert run_without_suspending(resolver.resolve_params(5, params)) == ["a", 1, [1, 2], None]

    def test_nested_reference_is_not_resolved(
        self, table: QuestionTable, resolver: ParameterResolver
    ) -> None:
        table.register(1)
        table.resolve(1, "value")
        nested = LiteralParam({"inner": {"resultOf": 1}})
        result = run_without_suspending(resolver.resolve_params(2, [nested]))
        assert result == [{"inner": {"resultOf": 1}}]


class TestReferences:

    def test_fulfilled_reference_does_not_suspend(
        self, table: QuestionTable, resolver: ParameterResolver
    ) -> None:
        table.register(1)
        table.resolve(1, "Hello, Alice!")
        params = [Reference(1), LiteralParam("!!!")]
        assert run_without_suspending(resolver.resolve_params(2, params)) == [
            "Hello, Alice!",
            "!!!",
        ]

    @pytest.mark.asyncio
    async def test_pending_reference_waits(
        self, table: QuestionTable, resolver: ParameterResolver
    ) -> None:
        table.register(1)
        table.register(2)
        task = asyncio.create_task(resolver.resolve_params(2, [Reference(1), LiteralParam("!")]))
        await asyncio.sleep(0.01)
        assert not task.done()

        table.resolve(1, "Hello")
        assert await task == ["Hello", "!"]

    @pytest.mark.asyncio
    async def test_references_resolve_concurrently(
        self, table: QuestionTable, resolver: ParameterResolver
    ) -> None:
        for question_id in (1, 2, 3):
            table.register(question_id)
        task = asyncio.create_task(
            resolver.resolve_params(3, [Reference(1), LiteralParam("-"), Reference(2)])
        )
        await asyncio.sleep(0.01)
        # Both dependencies are being waited on at the same time
        assert len(table.get(1).waiters) == 1
        assert len(table.get(2).waiters) == 1

        table.resolve(2, "second")
        table.resolve(1, "first")
        assert await task == ["first", "-", "second"]

    @pytest.mark.asyncio
    async def test_same_reference_twice(
        self, table: QuestionTable, resolver: ParameterResolver
    ) -> None:
        table.register(1)
        table.register(2)
        task = asyncio.create_task(resolver.resolve_params(2, [Reference(1), Reference(1)]))
        await asyncio.sleep(0)
        table.resolve(1, "x")
        assert await task == ["x", "x"]


class TestFailures:

    @pytest.mark.asyncio
    async def test_unknown_reference(self, table: QuestionTable, resolver: ParameterResolver) -> None:
        table.register(2)
        with pytest.raises(ParamResolutionError, match="Reference to unknown call #9"):
            await resolver.resolve_params(2, [LiteralParam("a"), Reference(9)])

    def test_check_references_on_arrival(self, table: QuestionTable, resolver: ParameterResolver) -> None:
        table.register(1)
        table.register(2)
        resolver.check_references([Reference(1), LiteralParam("x"), Reference(2)])

        with pytest.raises(ParamResolutionError, match="Reference to unknown call #3"):
            resolver.check_references([Reference(1), Reference(3)])

    @pytest.mark.asyncio
    async def test_rejected_dependency(self, table: QuestionTable, resolver: ParameterResolver) -> None:
        table.register(1)
        table.register(2)
        task = asyncio.create_task(resolver.resolve_params(2, [Reference(1)]))
        await asyncio.sleep(0)
        table.reject(1, HandlerError("upstream broke"))

        with pytest.raises(ParamResolutionError, match="upstream broke") as exc_info:
            await task
        assert isinstance(exc_info.value.__cause__, HandlerError)

    @pytest.mark.asyncio
    async def test_one_failure_cancels_other_waits(
        self, table: QuestionTable, resolver: ParameterResolver
    ) -> None:
        table.register(1)
        table.register(3)
        with pytest.raises(ParamResolutionError):
            await resolver.resolve_params(3, [Reference(1), Reference(2)])
        await asyncio.sleep(0.01)
        assert table.get(1).waiters == []

    @pytest.mark.asyncio
    async def test_self_reference_is_a_cycle(
        self, table: QuestionTable, resolver: ParameterResolver
    ) -> None:
        table.register(4)
        with pytest.raises(ParamResolutionError, match="depends on it"):
            await asyncio.wait_for(resolver.resolve_params(4, [Reference(4)]), timeout=1.0)
