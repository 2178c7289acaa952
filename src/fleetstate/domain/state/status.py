"""Task status values and the change-level aggregation rule."""

from __future__ import annotations

from enum import StrEnum
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from collections.abc import Iterable


class Status(StrEnum):
    """Lifecycle status of a task (and, derived, of a change).

    ``UNDO`` marks a completed task that is queued for rollback.
    ``HOLD`` marks a task parked by its owner; the runner never dispatches it.
    """

    DO = "Do"
    DOING = "Doing"
    DONE = "Done"
    ABORT = "Abort"
    UNDO = "Undo"
    UNDOING = "Undoing"
    UNDONE = "Undone"
    ERROR = "Error"
    WAIT = "Wait"
    HOLD = "Hold"

    @property
    def ready(self) -> bool:
        """Whether no further work will happen for an item in this status."""

        return self in _READY

    @property
    def pending(self) -> bool:
        return self in _PENDING


_READY = frozenset({Status.DONE, Status.UNDONE, Status.ERROR, Status.ABORT})
_PENDING = frozenset({Status.DO, Status.DOING, Status.WAIT, Status.UNDO, Status.UNDOING})
_ROLLED_BACK = frozenset({Status.UNDONE, Status.ABORT})


def aggregate_status(statuses: Iterable[Status]) -> Status:
    """Derive a change status from the statuses of its tasks.

    Rules apply in order: any ``Error`` wins; then any pending work
    (``Do``, ``Doing``, ``Wait``, ``Undo``, ``Undoing``) reports ``Doing``; all
    ``Done`` reports ``Done``; all ``Undone``/``Abort`` reports ``Undone``.
    Anything left over contains held tasks and reports ``Hold``. A change
    without tasks is ``Done``.
    """

    seen = set(statuses)
    if Status.ERROR in seen:
        return Status.ERROR
    if seen & _PENDING:
        return Status.DOING
    if not seen or seen == {Status.DONE}:
        return Status.DONE
    if seen <= _ROLLED_BACK:
        return Status.UNDONE
    if Status.HOLD in seen:
        return Status.HOLD
    # Done mixed with rolled-back tasks and no error: the rollback was partial
    # by lane, report what was undone.
    return Status.UNDONE
