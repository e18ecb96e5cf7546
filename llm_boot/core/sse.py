"""Server-sent event encoding with a single terminal write."""

from __future__ import annotations

import asyncio
import json
from typing import Any

from pydantic import BaseModel

from ..models.errors import StreamClosedError

DONE_FRAME = "data: [DONE]\n\n"

_END = object()


def format_sse_frame(data: str | dict[str, Any] | BaseModel) -> str:
    """Format one payload as an SSE ``data:`` frame.

    Parameters
    ----------
    data : str, dict[str, Any] or BaseModel
        Pre-serialized JSON text, a JSON-compatible mapping, or a pydantic
        model (serialized without ``None`` fields).

    Returns
    -------
    str
        Frame terminated by a blank line.
    """
    if isinstance(data, BaseModel):
        return f"data: {data.model_dump_json(exclude_none=True)}\n\n"
    if isinstance(data, str):
        return f"data: {data}\n\n"
    return f"data: {json.dumps(data)}\n\n"


class StreamEncoder:
    """One outbound SSE response: ``open`` until :meth:`done` or :meth:`abort`.

    Producers call :meth:`write` while the encoder is open; the HTTP layer
    consumes frames by iterating the encoder (``async for frame in enc``).
    :meth:`done` appends the ``[DONE]`` sentinel before closing,
    :meth:`abort` closes immediately and drops frames not yet delivered.
    Once closed, every further call raises :class:`StreamClosedError`.
    """

    def __init__(self) -> None:
        self._queue: asyncio.Queue[Any] = asyncio.Queue()
        self._closed = False
        self._aborted = False

    @property
    def closed(self) -> bool:
        return self._closed

    @property
    def aborted(self) -> bool:
        return self._aborted

    def write(self, data: str | dict[str, Any] | BaseModel) -> None:
        if self._closed:
            raise StreamClosedError("Already done")
        self._queue.put_nowait(format_sse_frame(data))

    def done(self) -> None:
        """Write the ``[DONE]`` sentinel and close."""
        if self._closed:
            raise StreamClosedError("Already done")
        self._queue.put_nowait(DONE_FRAME)
        self._close()

    def abort(self) -> None:
        """Close without the sentinel, dropping undelivered frames."""
        if self._closed:
            raise StreamClosedError("Already done")
        self._aborted = True
        self._close()

    def _close(self) -> None:
        self._closed = True
        self._queue.put_nowait(_END)

    def __aiter__(self) -> StreamEncoder:
        return self

    async def __anext__(self) -> str:
        if self._aborted:
            raise StopAsyncIteration
        item = await self._queue.get()
        if item is _END or self._aborted:
            raise StopAsyncIteration
        return item
