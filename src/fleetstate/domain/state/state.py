"""The lock-protected state document shared by all managers.

All reads and writes of changes, tasks and manager sections happen while the
caller holds the state lock::

    with state:
        change = state.new_change("create-quota", "Create quota group foo")

Leaving the outermost ``with`` block checkpoints the document when it was
modified, so a crash never loses more than the work of the current critical
section.
"""

from __future__ import annotations

import copy
import logging
import threading
from datetime import UTC, datetime
from typing import TYPE_CHECKING, Any

from pydantic import ValidationError

from .document import FORMAT_VERSION, StateDocument, to_json_value
from .errors import (
    CheckpointError,
    NoSuchChangeError,
    NoSuchTaskError,
    StateDocumentError,
    StateLockError,
)
from .model import Change, Task
from .sections import Section

if TYPE_CHECKING:
    from collections.abc import Callable
    from datetime import timedelta
    from types import TracebackType

    from fleetstate.domain.ports.persistence import StateBackend

log = logging.getLogger(__name__)

type Clock = Callable[[], datetime]


def utcnow() -> datetime:
    return datetime.now(UTC)


class State:
    """Durable document holding changes, tasks and manager sections."""

    def __init__(self, backend: StateBackend | None = None, *, clock: Clock = utcnow) -> None:
        self._backend = backend
        self._clock = clock
        self._lock = threading.RLock()
        self._owner: int | None = None
        self._depth = 0

        self._data: dict[str, Any] = {}
        self._changes: dict[str, Change] = {}
        self._tasks: dict[str, Task] = {}
        self._last_id = 0
        self._last_lane_id = 0
        self._last_done_seq = 0

        self._modified = 0
        self._checkpointed = 0

    # Construction ---------------------------------------------------------

    @classmethod
    def load(cls, backend: StateBackend, *, clock: Clock = utcnow) -> State:
        """Restore the state persisted in ``backend`` (empty if nothing was written)."""

        state = cls(backend, clock=clock)
        raw = backend.read()
        if raw is None:
            return state
        try:
            document = StateDocument.model_validate_json(raw)
        except ValidationError as exc:
            raise StateDocumentError(f"cannot load state document: {exc}") from exc
        if document.format_version > FORMAT_VERSION:
            raise StateDocumentError(
                f"state document format {document.format_version} is newer than "
                f"supported format {FORMAT_VERSION}"
            )
        state._restore(document)
        return state

    def _restore(self, document: StateDocument) -> None:
        self._data = copy.deepcopy(document.data)
        self._last_id = document.last_id
        self._last_lane_id = document.last_lane_id
        self._last_done_seq = document.last_done_seq
        for record in document.tasks:
            self._tasks[record.id] = Task.from_record(self, record)
        for record in document.changes:
            self._changes[record.id] = Change.from_record(self, record)
        with self:
            for task in self._tasks.values():
                task._link_halts()  # noqa: SLF001

    def snapshot(self) -> StateDocument:
        """Return the serializable form of the current contents."""

        self.require_locked()
        return StateDocument(
            format_version=FORMAT_VERSION,
            data=copy.deepcopy(self._data),
            changes=[change.to_record() for change in self._changes.values()],
            tasks=[task.to_record() for task in self._tasks.values()],
            last_id=self._last_id,
            last_lane_id=self._last_lane_id,
            last_done_seq=self._last_done_seq,
        )

    # Locking ----------------------------------------------------------------

    def lock(self) -> None:
        self._lock.acquire()
        if self._depth == 0:
            self._owner = threading.get_ident()
        self._depth += 1

    def unlock(self) -> None:
        """Release the lock, checkpointing first when this is the outermost hold."""

        self.require_locked()
        if self._depth > 1:
            self._depth -= 1
            self._lock.release()
            return
        try:
            self.checkpoint()
        finally:
            self._depth = 0
            self._owner = None
            self._lock.release()

    def __enter__(self) -> State:
        self.lock()
        return self

    def __exit__(
        self,
        exc_type: type[BaseException] | None,
        exc_value: BaseException | None,
        traceback: TracebackType | None,
    ) -> None:
        self.unlock()

    @property
    def locked(self) -> bool:
        """Whether the calling thread holds the state lock."""

        return self._owner == threading.get_ident()

    def require_locked(self) -> None:
        if self._owner != threading.get_ident():
            raise StateLockError("state accessed without holding its lock")

    # Checkpointing ----------------------------------------------------------------

    @property
    def modified(self) -> int:
        """Dirty counter; moves on every mutation."""

        return self._modified

    @property
    def dirty(self) -> bool:
        return self._modified != self._checkpointed

    def mark_dirty(self) -> None:
        self.require_locked()
        self._modified += 1

    def checkpoint(self) -> None:
        """Write the document to the backend if it changed since the last write."""

        self.require_locked()
        if self._backend is None or not self.dirty:
            return
        target = self._modified
        payload = self.snapshot().model_dump_json()
        try:
            self._backend.write(payload, dirty_count=target)
        except Exception as exc:
            log.exception("State checkpoint failed")
            raise CheckpointError(f"cannot checkpoint state: {exc}") from exc
        self._checkpointed = target

    # Clock and counters ---------------------------------------------------------

    def now(self) -> datetime:
        return self._clock()

    def _next_id(self) -> str:
        self._last_id += 1
        return str(self._last_id)

    def new_lane(self) -> int:
        """Allocate a lane id for grouping tasks that are undone together."""

        self.require_locked()
        self._last_lane_id += 1
        self.mark_dirty()
        return self._last_lane_id

    def next_done_seq(self) -> int:
        self.require_locked()
        self._last_done_seq += 1
        self.mark_dirty()
        return self._last_done_seq

    # Sections -------------------------------------------------------------------

    def get(self, name: str, default: Any = None) -> Any:
        """Return a copy of the raw section ``name``, or ``default`` if absent."""

        self.require_locked()
        if name not in self._data:
            return default
        return copy.deepcopy(self._data[name])

    def has(self, name: str) -> bool:
        self.require_locked()
        return name in self._data

    def set(self, name: str, value: object) -> None:
        """Store ``value`` as section ``name``; ``None`` removes the section."""

        self.require_locked()
        if value is None:
            if name in self._data:
                del self._data[name]
                self.mark_dirty()
            return
        encoded = value.encode() if isinstance(value, Section) else to_json_value(value)
        self._data[name] = encoded
        self.mark_dirty()

    def section[TSection: Section](self, name: str, model: type[TSection]) -> TSection:
        """Decode section ``name`` with ``model``, defaulting when absent or outdated."""

        self.require_locked()
        return model.decode(self._data.get(name))

    # Changes and tasks --------------------------------------------------------

    def new_change(self, kind: str, summary: str) -> Change:
        self.require_locked()
        change = Change(self, self._next_id(), kind, summary, self.now())
        self._changes[change.id] = change
        self.mark_dirty()
        return change

    def new_task(self, kind: str, summary: str) -> Task:
        """Create a task; it is not run until added to a change."""

        self.require_locked()
        task = Task(self, self._next_id(), kind, summary, self.now())
        self._tasks[task.id] = task
        self.mark_dirty()
        return task

    def change(self, change_id: str) -> Change:
        self.require_locked()
        try:
            return self._changes[change_id]
        except KeyError:
            raise NoSuchChangeError(change_id) from None

    def task(self, task_id: str) -> Task:
        self.require_locked()
        try:
            return self._tasks[task_id]
        except KeyError:
            raise NoSuchTaskError(task_id) from None

    def find_task(self, task_id: str) -> Task | None:
        self.require_locked()
        return self._tasks.get(task_id)

    def changes(self) -> tuple[Change, ...]:
        """All changes in creation order."""

        self.require_locked()
        return tuple(self._changes.values())

    def tasks(self) -> tuple[Task, ...]:
        self.require_locked()
        return tuple(self._tasks.values())

    # Retention ---------------------------------------------------------------

    def prune(self, *, prune_wait: timedelta, max_ready_changes: int) -> int:
        """Drop old ready changes and orphan tasks, returning how many changes went.

        Changes that never became ready are kept for inspection regardless of age.
        """

        self.require_locked()
        now = self.now()
        ready = [change for change in self._changes.values() if change.ready_time is not None]
        ready.sort(key=lambda change: change.ready_time or now)
        excess = max(0, len(ready) - max_ready_changes)

        doomed: list[Change] = []
        for index, change in enumerate(ready):
            ready_time = change.ready_time
            if index < excess or (ready_time is not None and now - ready_time > prune_wait):
                doomed.append(change)

        for change in doomed:
            for task_id in change.task_ids:
                self._drop_task(task_id)
            del self._changes[change.id]

        for task in list(self._tasks.values()):
            if task.change_id is None and now - task.spawn_time > prune_wait:
                self._drop_task(task.id)

        if doomed:
            self.mark_dirty()
            log.debug("Pruned %d ready changes", len(doomed))
        return len(doomed)

    def _drop_task(self, task_id: str) -> None:
        task = self._tasks.pop(task_id, None)
        if task is not None:
            task._unlink()  # noqa: SLF001
            self.mark_dirty()
