"""Cooperative cancellation shared between the event loop and engine threads."""

from __future__ import annotations

import threading

from ..models.errors import RequestCancelledError


class CancellationToken:
    """Thread-safe, one-way cancellation flag.

    Engine calls run on worker threads, so the flag is backed by a
    :class:`threading.Event` and may be polled from any thread. Once
    cancelled a token stays cancelled.
    """

    __slots__ = ("_event", "reason")

    def __init__(self) -> None:
        self._event = threading.Event()
        self.reason: str | None = None

    def __repr__(self) -> str:
        return f"<CancellationToken cancelled={self.cancelled}>"

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    def cancel(self, reason: str = "cancelled") -> None:
        """Fire the token. Later calls keep the first reason."""
        if not self._event.is_set():
            self.reason = reason
            self._event.set()

    def raise_if_cancelled(self) -> None:
        """Raise :class:`RequestCancelledError` if the token has fired."""
        if self._event.is_set():
            raise RequestCancelledError(self.reason or "cancelled")
