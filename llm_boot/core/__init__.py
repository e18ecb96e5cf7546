"""Concurrency primitives and model lifecycle for the llm-boot server."""

from .cancellation import CancellationToken
from .mutex import AsyncMutex, MutexLease
from .sse import StreamEncoder
from .stage import LazyStage

__all__ = ["AsyncMutex", "CancellationToken", "LazyStage", "MutexLease", "StreamEncoder"]
