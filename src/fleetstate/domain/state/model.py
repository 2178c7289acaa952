"""Tasks and changes: the persisted graph of pending and completed work.

Both types are handles into a :class:`~fleetstate.domain.state.state.State`.
They hold ids, never object references, to other graph members, and every
accessor requires the caller to hold the state lock.
"""

from __future__ import annotations

import copy
from collections import deque
from typing import TYPE_CHECKING, Any

from .document import ChangeRecord, TaskRecord, to_json_value
from .errors import StateError, TaskGraphError
from .status import Status, aggregate_status

if TYPE_CHECKING:
    from collections.abc import Iterable, Iterator
    from datetime import datetime

    from .state import State

DEFAULT_LANE = 0

_NOT_STARTED = frozenset({Status.DO, Status.HOLD, Status.WAIT})


class Task:
    """Atomic, retryable and undoable unit of work."""

    __slots__ = (
        "_at",
        "_change_id",
        "_data",
        "_done_seq",
        "_halt_ids",
        "_id",
        "_kind",
        "_lanes",
        "_log",
        "_ready_time",
        "_retries",
        "_spawn_time",
        "_state",
        "_status",
        "_summary",
        "_wait_ids",
    )

    def __init__(
        self,
        state: State,
        task_id: str,
        kind: str,
        summary: str,
        spawn_time: datetime,
    ) -> None:
        self._state = state
        self._id = task_id
        self._kind = kind
        self._summary = summary
        self._status = Status.DO
        self._change_id: str | None = None
        self._wait_ids: list[str] = []
        self._halt_ids: list[str] = []
        self._lanes: list[int] = []
        self._retries = 0
        self._at: datetime | None = None
        self._done_seq: int | None = None
        self._data: dict[str, Any] = {}
        self._log: list[str] = []
        self._spawn_time = spawn_time
        self._ready_time: datetime | None = None

    def __repr__(self) -> str:
        return f"<Task {self._id} {self._kind} {self._status}>"

    @property
    def state(self) -> State:
        return self._state

    @property
    def id(self) -> str:
        return self._id

    @property
    def kind(self) -> str:
        return self._kind

    @property
    def summary(self) -> str:
        self._state.require_locked()
        return self._summary

    @property
    def status(self) -> Status:
        self._state.require_locked()
        return self._status

    @property
    def change_id(self) -> str | None:
        self._state.require_locked()
        return self._change_id

    @property
    def lanes(self) -> tuple[int, ...]:
        """Lanes the task belongs to; tasks that never joined one are in the default lane."""

        self._state.require_locked()
        return tuple(self._lanes) if self._lanes else (DEFAULT_LANE,)

    @property
    def retries(self) -> int:
        self._state.require_locked()
        return self._retries

    @property
    def at(self) -> datetime | None:
        """Earliest time the task may be dispatched again, if deferred."""

        self._state.require_locked()
        return self._at

    @property
    def done_seq(self) -> int | None:
        """Position of this task in the global completion order."""

        self._state.require_locked()
        return self._done_seq

    @property
    def spawn_time(self) -> datetime:
        return self._spawn_time

    @property
    def ready_time(self) -> datetime | None:
        self._state.require_locked()
        return self._ready_time

    @property
    def log(self) -> tuple[str, ...]:
        self._state.require_locked()
        return tuple(self._log)

    @property
    def wait_ids(self) -> tuple[str, ...]:
        self._state.require_locked()
        return tuple(self._wait_ids)

    @property
    def halt_ids(self) -> tuple[str, ...]:
        self._state.require_locked()
        return tuple(self._halt_ids)

    def change(self) -> Change | None:
        self._state.require_locked()
        if self._change_id is None:
            return None
        return self._state.change(self._change_id)

    def wait_tasks(self) -> tuple[Task, ...]:
        self._state.require_locked()
        return tuple(self._state.task(task_id) for task_id in self._wait_ids)

    def halt_tasks(self) -> tuple[Task, ...]:
        self._state.require_locked()
        return tuple(self._state.task(task_id) for task_id in self._halt_ids)

    # Data ----------------------------------------------------------------

    def get(self, key: str, default: Any = None) -> Any:
        self._state.require_locked()
        if key not in self._data:
            return default
        return copy.deepcopy(self._data[key])

    def has(self, key: str) -> bool:
        self._state.require_locked()
        return key in self._data

    def set(self, key: str, value: object) -> None:
        self._state.require_locked()
        self._data[key] = to_json_value(value)
        self._state.mark_dirty()

    def unset(self, key: str) -> None:
        self._state.require_locked()
        if key in self._data:
            del self._data[key]
            self._state.mark_dirty()

    def logf(self, message: str, *args: object) -> None:
        """Append an informational line to the task log."""

        self._append_log("INFO", message, args)

    def errorf(self, message: str, *args: object) -> None:
        """Append an error line to the task log."""

        self._append_log("ERROR", message, args)

    def _append_log(self, level: str, message: str, args: tuple[object, ...]) -> None:
        self._state.require_locked()
        text = message % args if args else message
        stamp = self._state.now().strftime("%Y-%m-%dT%H:%M:%SZ")
        self._log.append(f"{stamp} {level} {text}")
        self._state.mark_dirty()

    # Status and scheduling -------------------------------------------------

    def set_status(self, status: Status) -> None:
        self._state.require_locked()
        if status is self._status:
            return
        self._status = status
        if status.ready:
            self._ready_time = self._state.now()
        else:
            self._ready_time = None
        self._state.mark_dirty()
        change = self.change()
        if change is not None:
            change.refresh_ready_time()

    def set_at(self, when: datetime | None) -> None:
        self._state.require_locked()
        if when == self._at:
            return
        self._at = when
        self._state.mark_dirty()

    def increment_retries(self) -> int:
        self._state.require_locked()
        self._retries += 1
        self._state.mark_dirty()
        return self._retries

    def mark_done(self) -> None:
        """Set ``Done`` and stamp the task with the next completion sequence number."""

        self._state.require_locked()
        self._done_seq = self._state.next_done_seq()
        self._at = None
        self.set_status(Status.DONE)

    def join_lane(self, lane: int) -> None:
        self._state.require_locked()
        if lane not in self._lanes:
            self._lanes.append(lane)
            self._state.mark_dirty()

    def wait_for(self, other: Task) -> None:
        """Make ``other`` a prerequisite of this task."""

        self._state.require_locked()
        if other._id == self._id or self._id in _upstream(other):
            raise TaskGraphError(
                f"task {self._id} cannot wait for task {other._id}: cycle in task graph"
            )
        if other._id in self._wait_ids:
            return
        self._wait_ids.append(other._id)
        other._halt_ids.append(self._id)
        self._state.mark_dirty()

    def wait_all(self, others: Iterable[Task]) -> None:
        for other in others:
            self.wait_for(other)

    # Serialization -----------------------------------------------------------

    def to_record(self) -> TaskRecord:
        return TaskRecord(
            id=self._id,
            kind=self._kind,
            summary=self._summary,
            status=self._status,
            change=self._change_id,
            wait_tasks=list(self._wait_ids),
            lanes=list(self._lanes),
            retries=self._retries,
            at=self._at,
            done_seq=self._done_seq,
            data=copy.deepcopy(self._data),
            log=list(self._log),
            spawn_time=self._spawn_time,
            ready_time=self._ready_time,
        )

    @classmethod
    def from_record(cls, state: State, record: TaskRecord) -> Task:
        task = cls(state, record.id, record.kind, record.summary, record.spawn_time)
        task._status = record.status
        task._change_id = record.change
        task._wait_ids = list(record.wait_tasks)
        task._lanes = list(record.lanes)
        task._retries = record.retries
        task._at = record.at
        task._done_seq = record.done_seq
        task._data = copy.deepcopy(record.data)
        task._log = list(record.log)
        task._ready_time = record.ready_time
        return task

    def _link_halts(self) -> None:
        for task_id in self._wait_ids:
            halts = self._state.task(task_id)._halt_ids  # noqa: SLF001
            if self._id not in halts:
                halts.append(self._id)

    def _unlink(self) -> None:
        for task_id in self._wait_ids:
            other = self._state.find_task(task_id)
            if other is not None and self._id in other._halt_ids:
                other._halt_ids.remove(self._id)
        for task_id in self._halt_ids:
            other = self._state.find_task(task_id)
            if other is not None and self._id in other._wait_ids:
                other._wait_ids.remove(self._id)


def _upstream(task: Task) -> set[str]:
    """Ids of every task ``task`` depends on, directly or transitively."""

    seen: set[str] = set()
    queue = deque(task._wait_ids)  # noqa: SLF001
    while queue:
        task_id = queue.popleft()
        if task_id in seen:
            continue
        seen.add(task_id)
        queue.extend(task.state.task(task_id)._wait_ids)  # noqa: SLF001
    return seen


class Change:
    """Named, persisted unit of intent composed of tasks.

    The status is derived from the tasks on every read; it is never stored.
    """

    __slots__ = (
        "_data",
        "_id",
        "_kind",
        "_ready_time",
        "_spawn_time",
        "_state",
        "_summary",
        "_task_ids",
    )

    def __init__(
        self,
        state: State,
        change_id: str,
        kind: str,
        summary: str,
        spawn_time: datetime,
    ) -> None:
        self._state = state
        self._id = change_id
        self._kind = kind
        self._summary = summary
        self._task_ids: list[str] = []
        self._data: dict[str, Any] = {}
        self._spawn_time = spawn_time
        self._ready_time: datetime | None = None

    def __repr__(self) -> str:
        return f"<Change {self._id} {self._kind}>"

    @property
    def state(self) -> State:
        return self._state

    @property
    def id(self) -> str:
        return self._id

    @property
    def kind(self) -> str:
        return self._kind

    @property
    def summary(self) -> str:
        self._state.require_locked()
        return self._summary

    @property
    def spawn_time(self) -> datetime:
        return self._spawn_time

    @property
    def ready_time(self) -> datetime | None:
        self._state.require_locked()
        return self._ready_time

    @property
    def task_ids(self) -> tuple[str, ...]:
        self._state.require_locked()
        return tuple(self._task_ids)

    @property
    def status(self) -> Status:
        self._state.require_locked()
        return aggregate_status(task._status for task in self._iter_tasks())  # noqa: SLF001

    @property
    def is_ready(self) -> bool:
        """Whether no task of the change is still runnable or running."""

        self._state.require_locked()
        return not any(task._status.pending for task in self._iter_tasks())  # noqa: SLF001

    def tasks(self) -> tuple[Task, ...]:
        self._state.require_locked()
        return tuple(self._iter_tasks())

    def _iter_tasks(self) -> Iterator[Task]:
        for task_id in self._task_ids:
            yield self._state.task(task_id)

    def get(self, key: str, default: Any = None) -> Any:
        self._state.require_locked()
        if key not in self._data:
            return default
        return copy.deepcopy(self._data[key])

    def set(self, key: str, value: object) -> None:
        self._state.require_locked()
        self._data[key] = to_json_value(value)
        self._state.mark_dirty()

    def add_task(self, task: Task) -> None:
        self._state.require_locked()
        if task._change_id is not None:  # noqa: SLF001
            if task._change_id == self._id:  # noqa: SLF001
                return
            raise StateError(
                f"task {task.id} already belongs to change {task._change_id}"  # noqa: SLF001
            )
        task._change_id = self._id  # noqa: SLF001
        self._task_ids.append(task.id)
        self._state.mark_dirty()
        self.refresh_ready_time()

    def add_all(self, tasks: Iterable[Task]) -> None:
        for task in tasks:
            self.add_task(task)

    def refresh_ready_time(self) -> None:
        self._state.require_locked()
        ready = self.is_ready
        if ready and self._ready_time is None:
            self._ready_time = self._state.now()
            self._state.mark_dirty()
        elif not ready and self._ready_time is not None:
            self._ready_time = None
            self._state.mark_dirty()

    def err(self) -> str | None:
        """Summarise the errors of failed tasks, or ``None`` if nothing failed."""

        self._state.require_locked()
        lines: list[str] = []
        for task in self._iter_tasks():
            if task._status is not Status.ERROR:  # noqa: SLF001
                continue
            messages = [line for line in task._log if " ERROR " in line]  # noqa: SLF001
            detail = messages[-1].split(" ERROR ", 1)[1] if messages else "unknown error"
            lines.append(f"- {task._summary or task.kind} ({detail})")  # noqa: SLF001
        if not lines:
            return None
        return "cannot perform the following tasks:\n" + "\n".join(lines)

    # Failure cascade -----------------------------------------------------------

    def abort_dependents(self, failed: Task) -> list[Task]:
        """Abort every not-yet-started task downstream of ``failed``."""

        self._state.require_locked()
        aborted: list[Task] = []
        seen: set[str] = set()
        queue = deque(failed._halt_ids)  # noqa: SLF001
        while queue:
            task_id = queue.popleft()
            if task_id in seen:
                continue
            seen.add(task_id)
            task = self._state.task(task_id)
            if task._status in _NOT_STARTED:  # noqa: SLF001
                task.set_status(Status.ABORT)
                task.set_at(None)
                aborted.append(task)
            queue.extend(task._halt_ids)  # noqa: SLF001
        return aborted

    def abort_lanes(self, lanes: Iterable[int]) -> list[Task]:
        """Abort unstarted work and queue completed work for undo in ``lanes``.

        Running tasks are marked ``Abort``; the runner cancels them and moves
        them to ``Undo`` if their handler still completes successfully. Returns
        the tasks whose status changed.
        """

        self._state.require_locked()
        wanted = set(lanes)
        touched: list[Task] = []
        for task in self._iter_tasks():
            if not wanted.intersection(task.lanes):
                continue
            status = task._status  # noqa: SLF001
            if status in _NOT_STARTED or status is Status.DOING:
                task.set_status(Status.ABORT)
                task.set_at(None)
                touched.append(task)
            elif status is Status.DONE:
                task.set_status(Status.UNDO)
                touched.append(task)
        return touched

    def abort(self) -> list[Task]:
        """Abort the whole change, rolling back every lane."""

        self._state.require_locked()
        lanes: set[int] = set()
        for task in self._iter_tasks():
            lanes.update(task.lanes)
        return self.abort_lanes(lanes)

    # Serialization -----------------------------------------------------------

    def to_record(self) -> ChangeRecord:
        return ChangeRecord(
            id=self._id,
            kind=self._kind,
            summary=self._summary,
            tasks=list(self._task_ids),
            data=copy.deepcopy(self._data),
            spawn_time=self._spawn_time,
            ready_time=self._ready_time,
        )

    @classmethod
    def from_record(cls, state: State, record: ChangeRecord) -> Change:
        change = cls(state, record.id, record.kind, record.summary, record.spawn_time)
        change._task_ids = list(record.tasks)
        change._data = copy.deepcopy(record.data)
        change._ready_time = record.ready_time
        return change
