"""Explicit memoization slots for lazily created model resources.

Each :class:`LazyStage` holds one of four states. The first caller moves the
slot from ``NOT_STARTED`` (or ``FAILED``) to ``IN_PROGRESS`` synchronously,
before any ``await``, so concurrent first accesses on the event loop always
share a single creation task.
"""

from __future__ import annotations

import asyncio
from collections.abc import Awaitable, Callable
from enum import Enum
from typing import Generic, TypeVar

from loguru import logger

T = TypeVar("T")


class StageState(str, Enum):
    """Lifecycle of a memoized stage."""

    NOT_STARTED = "not_started"
    IN_PROGRESS = "in_progress"
    READY = "ready"
    FAILED = "failed"


class StageResetError(RuntimeError):
    """Raised to waiters whose in-flight creation was invalidated by a reset."""


class LazyStage(Generic[T]):
    """At-most-once asynchronous creation of a single resource.

    Parameters
    ----------
    name : str
        Stage label used for logging.
    dispose : Callable[[T], Awaitable[None]] or None, optional
        Coroutine function releasing a created value. Called by
        :meth:`reset` and for values whose creation finished after a reset.
    """

    def __init__(
        self,
        name: str,
        dispose: Callable[[T], Awaitable[None]] | None = None,
    ) -> None:
        self.name = name
        self._dispose = dispose
        self._state = StageState.NOT_STARTED
        self._task: asyncio.Task[T] | None = None
        self._value: T | None = None
        self._error: BaseException | None = None

    def __repr__(self) -> str:
        return f"<LazyStage {self.name} {self._state.value}>"

    @property
    def state(self) -> StageState:
        return self._state

    @property
    def is_ready(self) -> bool:
        return self._state is StageState.READY

    @property
    def error(self) -> BaseException | None:
        """Error of the last failed creation, if the stage is ``FAILED``."""
        return self._error

    def peek(self) -> T | None:
        """Return the created value without triggering creation."""
        return self._value if self._state is StageState.READY else None

    async def get(self, factory: Callable[[], Awaitable[T]]) -> T:
        """Return the memoized value, creating it with ``factory`` if needed.

        A ``FAILED`` stage is retried on the next call. Cancelling a caller
        does not cancel the shared creation task, which other callers may
        still be awaiting.

        Parameters
        ----------
        factory : Callable[[], Awaitable[T]]
            Coroutine function producing the value. Only invoked when the
            stage is not ready and no creation is in flight.

        Returns
        -------
        T
            The created value.
        """
        if self._state is StageState.READY:
            return self._value  # type: ignore[return-value]
        if self._task is None:
            self._state = StageState.IN_PROGRESS
            self._error = None
            self._task = asyncio.create_task(self._build(factory), name=f"stage:{self.name}")
            self._task.add_done_callback(_consume_task_error)
        return await asyncio.shield(self._task)

    async def _build(self, factory: Callable[[], Awaitable[T]]) -> T:
        try:
            value = await factory()
        except BaseException as exc:
            if self._task is asyncio.current_task():
                self._state = StageState.FAILED
                self._error = exc
                self._task = None
            raise

        if self._task is not asyncio.current_task():
            # The slot was reset while this creation was running
            await self._dispose_value(value)
            raise StageResetError(f"stage {self.name} was reset while being created")

        self._value = value
        self._state = StageState.READY
        self._task = None
        return value

    async def reset(self) -> None:
        """Dispose the value (if any) and return the slot to ``NOT_STARTED``.

        An in-flight creation is awaited first; its value is disposed as
        soon as it finishes and its waiters receive :class:`StageResetError`.
        """
        task = self._task
        value = self._value if self._state is StageState.READY else None

        self._state = StageState.NOT_STARTED
        self._task = None
        self._value = None
        self._error = None

        if task is not None:
            await asyncio.wait([task])
        if value is not None:
            await self._dispose_value(value)

    async def _dispose_value(self, value: T) -> None:
        if self._dispose is None:
            return
        logger.debug(f"Disposing stage {self.name}")
        await self._dispose(value)


def _consume_task_error(task: asyncio.Task) -> None:
    # Creation failures are delivered to awaiting callers; mark them retrieved
    # so a creation nobody waits for anymore does not warn at shutdown.
    if not task.cancelled():
        task.exception()
