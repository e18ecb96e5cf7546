"""Shared lifecycle of one API request bound to one model."""

from __future__ import annotations

import asyncio
from collections.abc import Awaitable, Callable
import inspect
import random
import time
from types import TracebackType
from typing import Any, ClassVar, Generic, TypeVar

from loguru import logger

from ..core.cancellation import CancellationToken
from ..core.model_handle import ModelHandle
from ..core.model_registry import ModelRegistry
from ..core.mutex import AsyncMutex, MutexLease
from ..models.errors import ModelNotLoadedError, RequestCancelledError
from ..models.llama_cpp import GenerationOptions, StopReason

RequestT = TypeVar("RequestT")
ResponseT = TypeVar("ResponseT")

ChunkCallback = Callable[[Any], Awaitable[None] | None]


def get_id(prefix: str = "chatcmpl") -> str:
    """Generate a unique response ID with timestamp and random component.

    Returns
    -------
    str
        Unique ID such as ``chatcmpl_1700000000123456``.
    """
    timestamp = int(time.time())
    random_suffix = random.randint(0, 999999)
    return f"{prefix}_{timestamp}{random_suffix:06d}"


def finish_reason_for(stop_reason: StopReason) -> str:
    """Map an engine stop reason onto an OpenAI ``finish_reason``."""
    return "length" if stop_reason == "length" else "stop"


async def emit_chunk(on_chunk: ChunkCallback | None, chunk: Any) -> None:
    if on_chunk is None:
        return
    result = on_chunk(chunk)
    if inspect.isawaitable(result):
        await result


class RequestSession(Generic[RequestT, ResponseT]):
    """One request's claim on a model, from admission to release.

    Creating a session starts its context build in the background: the
    model is resolved, its sequence lock acquired, memory made available
    and the engine stages driven up to the consumer the variant needs.
    :meth:`request` waits for that build and runs generation. Closing the
    session (``aclose`` or ``async with``) cancels outstanding work and
    releases the sequence lock exactly once.

    Subclasses declare their own ``admission`` gate, which the HTTP layer
    holds for the whole request so requests of one kind run in arrival
    order.

    Parameters
    ----------
    registry : ModelRegistry
        Registry used to resolve the model and make room for it.
    request : RequestT
        Validated request body.
    """

    admission: ClassVar[AsyncMutex]
    id_prefix: ClassVar[str] = "req"

    def __init__(self, registry: ModelRegistry, request: RequestT) -> None:
        self.id = get_id(self.id_prefix)
        self.created = int(time.time())
        self.registry = registry
        self.body = request
        self.token = CancellationToken()

        self.prompt_tokens = 0
        self.completion_tokens = 0

        self.handle: ModelHandle | None = None
        self.options = GenerationOptions()
        self._lease: MutexLease | None = None
        self._closed = False

        # Fails before any lock is taken
        self.validate()
        self._build_task: asyncio.Task[None] = asyncio.create_task(
            self._build(), name=f"session:{self.id}"
        )

    def __repr__(self) -> str:
        return f"<{type(self).__name__} {self.id}>"

    @property
    def model_name(self) -> str:
        return self.body.model  # type: ignore[attr-defined]

    @property
    def total_tokens(self) -> int:
        return self.prompt_tokens + self.completion_tokens

    @property
    def lease(self) -> MutexLease | None:
        """The sequence lock lease, once acquired."""
        return self._lease

    def validate(self) -> None:
        """Check the request before any resource is claimed."""

    async def _build(self) -> None:
        handle = self.registry.get(self.model_name)
        self.handle = handle
        self._lease = await handle.sequence_lock.acquire()
        self.token.raise_if_cancelled()
        await self.prepare(handle)

    async def prepare(self, handle: ModelHandle) -> None:
        """Load what the variant needs and compute prompt usage."""
        raise NotImplementedError

    async def context(self) -> None:
        """Wait for the context build; re-raises its failure."""
        if self._build_task.cancelled():
            raise RequestCancelledError(self.token.reason or "session closed")
        await self._build_task

    async def request(self, on_chunk: ChunkCallback | None = None) -> ResponseT:
        """Run the request, forwarding chunks, and return the full response."""
        await self.context()
        self.token.raise_if_cancelled()
        return await self.generate(on_chunk)

    async def generate(self, on_chunk: ChunkCallback | None) -> ResponseT:
        raise NotImplementedError

    def count_completion(self, text: str) -> None:
        if self.handle is None:
            raise ModelNotLoadedError(self.model_name)
        self.completion_tokens += len(self.handle.encode(text))

    def cancel(self, reason: str = "cancelled") -> None:
        """Signal cancellation to the build and any running generation."""
        self.token.cancel(reason)

    async def aclose(self) -> None:
        """Cancel outstanding work and release the sequence lock once."""
        if self._closed:
            return
        self._closed = True
        self.token.cancel("session closed")
        task = self._build_task
        if not task.done():
            task.cancel()
        await asyncio.wait([task])
        if not task.cancelled() and task.exception() is not None:
            logger.debug(f"{self!r} context build failed: {task.exception()!r}")
        try:
            await self.release_resources()
        finally:
            if self._lease is not None:
                self._lease.release()

    async def release_resources(self) -> None:
        """Close per-request engine resources; runs before the lock is released."""

    async def __aenter__(self) -> RequestSession[RequestT, ResponseT]:
        return self

    async def __aexit__(
        self,
        exc_type: type[BaseException] | None,
        exc: BaseException | None,
        tb: TracebackType | None,
    ) -> None:
        await self.aclose()
