"""FIFO asyncio mutex with scoped leases.

``asyncio.Lock`` does not promise that a waiter woken by ``release`` gets the
lock before a task that calls ``acquire`` in the meantime. The admission
gates and per-model sequence locks need strict arrival order, so ownership
is handed directly from the releasing task to the oldest waiter without ever
clearing the locked flag in between.
"""

from __future__ import annotations

import asyncio
from collections import deque
from contextlib import suppress
from types import TracebackType


class MutexLease:
    """Capability representing ownership of an :class:`AsyncMutex`.

    The lease is an async context manager. Leaving the ``async with`` block
    releases the mutex on every exit path; releasing an already released
    lease does nothing, so cleanup code may call :meth:`release` freely.
    """

    __slots__ = ("_mutex", "_released")

    def __init__(self, mutex: AsyncMutex) -> None:
        self._mutex = mutex
        self._released = False

    @property
    def released(self) -> bool:
        """Whether ownership has already been given back."""
        return self._released

    def release(self) -> None:
        """Give ownership back to the mutex exactly once."""
        if self._released:
            return
        self._released = True
        self._mutex._handoff()

    async def __aenter__(self) -> MutexLease:
        return self

    async def __aexit__(
        self,
        exc_type: type[BaseException] | None,
        exc: BaseException | None,
        tb: TracebackType | None,
    ) -> None:
        self.release()


class AsyncMutex:
    """Non-reentrant mutex granting ownership in strict FIFO order.

    Parameters
    ----------
    name : str, optional
        Label used in ``repr`` and log messages.
    """

    def __init__(self, name: str = "mutex") -> None:
        self.name = name
        self._locked = False
        self._waiters: deque[asyncio.Future[None]] = deque()

    def __repr__(self) -> str:
        state = "locked" if self._locked else "unlocked"
        return f"<AsyncMutex {self.name} {state} waiters={len(self._waiters)}>"

    def locked(self) -> bool:
        """Return ``True`` while some task owns the mutex."""
        return self._locked

    @property
    def waiting(self) -> int:
        """Number of tasks currently queued for ownership."""
        return sum(1 for fut in self._waiters if not fut.done())

    async def acquire(self) -> MutexLease:
        """Wait for ownership and return the lease that releases it.

        Returns
        -------
        MutexLease
            Scoped capability; release it (or leave its ``async with``
            block) to pass ownership on.

        Raises
        ------
        asyncio.CancelledError
            If the waiting task is cancelled. A cancelled waiter never
            keeps the mutex: it leaves the queue, or if ownership already
            reached it, hands ownership to the next waiter.
        """
        if not self._locked:
            self._locked = True
            return MutexLease(self)

        fut: asyncio.Future[None] = asyncio.get_running_loop().create_future()
        self._waiters.append(fut)
        try:
            await fut
        except asyncio.CancelledError:
            if fut.done() and not fut.cancelled():
                self._handoff()
            else:
                with suppress(ValueError):
                    self._waiters.remove(fut)
            raise
        return MutexLease(self)

    def _handoff(self) -> None:
        while self._waiters:
            fut = self._waiters.popleft()
            if not fut.done():
                fut.set_result(None)
                return
        self._locked = False
