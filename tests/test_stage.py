"""Tests for lazily created, memoized stages."""

from __future__ import annotations

import asyncio

import pytest

from llm_boot.core.stage import LazyStage, StageResetError, StageState


def test_concurrent_callers_share_one_creation() -> None:
    async def _test() -> None:
        calls = 0

        async def _factory() -> str:
            nonlocal calls
            calls += 1
            await asyncio.sleep(0.01)
            return "weights"

        stage: LazyStage[str] = LazyStage("weights")
        results = await asyncio.gather(*(stage.get(_factory) for _ in range(4)))
        assert results == ["weights"] * 4
        assert calls == 1
        assert stage.state is StageState.READY
        assert stage.peek() == "weights"

        # Memoized: the factory is not invoked again
        assert await stage.get(_factory) == "weights"
        assert calls == 1

    asyncio.run(_test())


def test_failed_creation_is_retried() -> None:
    async def _test() -> None:
        attempts = 0

        async def _factory() -> int:
            nonlocal attempts
            attempts += 1
            if attempts == 1:
                raise RuntimeError("first attempt fails")
            return attempts

        stage: LazyStage[int] = LazyStage("context")
        with pytest.raises(RuntimeError, match="first attempt fails"):
            await stage.get(_factory)
        assert stage.state is StageState.FAILED
        assert isinstance(stage.error, RuntimeError)

        assert await stage.get(_factory) == 2
        assert stage.state is StageState.READY
        assert stage.error is None

    asyncio.run(_test())


def test_reset_disposes_value() -> None:
    async def _test() -> None:
        disposed: list[str] = []

        async def _dispose(value: str) -> None:
            disposed.append(value)

        async def _factory() -> str:
            return "sequence"

        stage: LazyStage[str] = LazyStage("sequence", dispose=_dispose)
        await stage.get(_factory)
        await stage.reset()
        assert disposed == ["sequence"]
        assert stage.state is StageState.NOT_STARTED
        assert stage.peek() is None

        # Resetting an empty stage disposes nothing
        await stage.reset()
        assert disposed == ["sequence"]

    asyncio.run(_test())


def test_reset_during_creation_disposes_late_value() -> None:
    """A value finished after a reset is released and never published."""

    async def _test() -> None:
        disposed: list[str] = []
        release = asyncio.Event()

        async def _dispose(value: str) -> None:
            disposed.append(value)

        async def _factory() -> str:
            await release.wait()
            return "late"

        stage: LazyStage[str] = LazyStage("weights", dispose=_dispose)
        waiter = asyncio.create_task(stage.get(_factory))
        await asyncio.sleep(0)
        assert stage.state is StageState.IN_PROGRESS

        reset = asyncio.create_task(stage.reset())
        await asyncio.sleep(0)
        release.set()
        await reset

        with pytest.raises(StageResetError):
            await waiter
        assert disposed == ["late"]
        assert stage.state is StageState.NOT_STARTED

    asyncio.run(_test())


def test_cancelled_caller_does_not_cancel_shared_creation() -> None:
    async def _test() -> None:
        release = asyncio.Event()

        async def _factory() -> str:
            await release.wait()
            return "ready"

        stage: LazyStage[str] = LazyStage("chat_session")
        impatient = asyncio.create_task(stage.get(_factory))
        patient = asyncio.create_task(stage.get(_factory))
        await asyncio.sleep(0)

        impatient.cancel()
        await asyncio.gather(impatient, return_exceptions=True)
        release.set()
        assert await patient == "ready"

    asyncio.run(_test())
