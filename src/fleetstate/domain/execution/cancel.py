"""Cooperative cancellation passed to every handler invocation."""

from __future__ import annotations

import threading
from enum import StrEnum

from .errors import HandlerCancelled


class CancelReason(StrEnum):
    STOP = "stop"
    TIMEOUT = "timeout"
    ABORT = "abort"


class CancelToken:
    """Signal a running handler should poll or wait on during blocking work."""

    __slots__ = ("_event", "_reason")

    def __init__(self) -> None:
        self._event = threading.Event()
        self._reason: CancelReason | None = None

    def cancel(self, reason: CancelReason) -> None:
        # The first reason wins: a timeout stays a timeout even if stop follows.
        if self._reason is None:
            self._reason = reason
        self._event.set()

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    @property
    def reason(self) -> CancelReason | None:
        return self._reason

    def wait(self, timeout: float | None = None) -> bool:
        """Sleep up to ``timeout`` seconds, returning early (``True``) on cancellation."""

        return self._event.wait(timeout)

    def raise_if_cancelled(self) -> None:
        if self._event.is_set():
            raise HandlerCancelled(str(self._reason))
