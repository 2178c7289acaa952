"""Errors raised by handlers and the task runner."""

from __future__ import annotations

from datetime import timedelta

from fleetstate.config.errors import ConfigurationError


class HandlerRegistrationError(ConfigurationError):
    """Raised when the handler registry is misconfigured."""


class DuplicateHandlerError(HandlerRegistrationError):
    """Raised when a task kind is registered twice."""


class MissingHandlerError(HandlerRegistrationError):
    """Raised when tasks exist for a kind without a registered handler."""


class RegistryFrozenError(HandlerRegistrationError):
    """Raised when registering handlers after startup has finished."""


class Retry(Exception):  # noqa: N818
    """Raised by a handler to ask for the task to be run again later.

    The task moves to ``Wait`` and becomes runnable again after ``after``.
    """

    def __init__(self, after: timedelta | float = 0.0, reason: str = "") -> None:
        self.after = after if isinstance(after, timedelta) else timedelta(seconds=after)
        self.reason = reason
        super().__init__(reason or f"retry in {self.after}")


class HandlerCancelled(Exception):  # noqa: N818
    """Raised by a handler that stopped early because its token was cancelled."""


class SettleTimeoutError(TimeoutError):
    """Raised when tasks are still pending after the settle deadline."""
