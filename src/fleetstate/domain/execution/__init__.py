"""Handler registry, cancellation and the task runner."""

from __future__ import annotations

from .cancel import CancelReason, CancelToken
from .errors import (
    DuplicateHandlerError,
    HandlerCancelled,
    HandlerRegistrationError,
    MissingHandlerError,
    RegistryFrozenError,
    Retry,
    SettleTimeoutError,
)
from .handlers import Handler, HandlerRegistry, HandlerSpec
from .runner import DEFAULT_SETTLE_TIMEOUT, TaskRunner

__all__ = [
    "DEFAULT_SETTLE_TIMEOUT",
    "CancelReason",
    "CancelToken",
    "DuplicateHandlerError",
    "Handler",
    "HandlerCancelled",
    "HandlerRegistrationError",
    "HandlerRegistry",
    "HandlerSpec",
    "MissingHandlerError",
    "RegistryFrozenError",
    "Retry",
    "SettleTimeoutError",
    "TaskRunner",
]
