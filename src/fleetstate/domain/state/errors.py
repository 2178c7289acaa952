"""Errors raised by the state store and the task/change graph."""

from __future__ import annotations


class StateError(RuntimeError):
    """Base class for state store failures."""


class StateLockError(StateError):
    """Raised when state contents are accessed without holding the state lock."""


class CheckpointError(StateError):
    """Raised when the state could not be written to durable storage.

    The in-memory state stays dirty so the next checkpoint retries the same data.
    """


class StateDocumentError(StateError):
    """Raised when a persisted state document is structurally invalid."""


class TaskGraphError(StateError):
    """Raised when a prerequisite edge would break the task graph."""


class NoSuchChangeError(StateError, KeyError):
    """Raised when a change id is not known to the state."""


class NoSuchTaskError(StateError, KeyError):
    """Raised when a task id is not known to the state."""
