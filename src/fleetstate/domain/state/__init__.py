"""State store and the task/change graph it persists."""

from __future__ import annotations

from .document import FORMAT_VERSION, ChangeRecord, StateDocument, TaskRecord
from .errors import (
    CheckpointError,
    NoSuchChangeError,
    NoSuchTaskError,
    StateDocumentError,
    StateError,
    StateLockError,
    TaskGraphError,
)
from .model import DEFAULT_LANE, Change, Task
from .sections import Section
from .state import Clock, State, utcnow
from .status import Status, aggregate_status

__all__ = [
    "DEFAULT_LANE",
    "FORMAT_VERSION",
    "Change",
    "ChangeRecord",
    "CheckpointError",
    "Clock",
    "NoSuchChangeError",
    "NoSuchTaskError",
    "Section",
    "State",
    "StateDocument",
    "StateDocumentError",
    "StateError",
    "StateLockError",
    "Status",
    "Task",
    "TaskGraphError",
    "TaskRecord",
    "aggregate_status",
    "utcnow",
]
