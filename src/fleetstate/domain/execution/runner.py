"""Execution engine for the task graph.

Each :meth:`TaskRunner.ensure` call is one tick: under the state lock the
runner promotes due ``Wait`` tasks, parks tasks whose prerequisites can no
longer finish, and dispatches every ready task to a worker thread. Handlers
run outside the lock and report back by returning, raising :class:`Retry`, or
raising any other exception. Failures abort downstream work and roll back the
completed tasks of the failed task's lanes in reverse completion order.
"""

from __future__ import annotations

import logging
import threading
import time
from concurrent.futures import Future, ThreadPoolExecutor
from dataclasses import dataclass, field
from enum import StrEnum
from typing import TYPE_CHECKING

from fleetstate.config.runner import RunnerConfig
from fleetstate.domain.state import Status

from .cancel import CancelReason, CancelToken
from .errors import HandlerCancelled, MissingHandlerError, Retry, SettleTimeoutError

if TYPE_CHECKING:
    from collections.abc import Callable
    from datetime import datetime, timedelta

    from fleetstate.domain.state import Change, State, Task

    from .handlers import Handler, HandlerRegistry, HandlerSpec

log = logging.getLogger(__name__)

DEFAULT_SETTLE_TIMEOUT = 15.0

# Statuses of prerequisites that will never become Done.
_DEAD_END = frozenset(
    {Status.ERROR, Status.ABORT, Status.UNDO, Status.UNDOING, Status.UNDONE}
)
_UNDO_BLOCKERS = frozenset({Status.DOING, Status.UNDO, Status.UNDOING})


class _Outcome(StrEnum):
    SUCCESS = "success"
    RETRY = "retry"
    CANCELLED = "cancelled"
    ERROR = "error"


@dataclass(slots=True)
class _Running:
    task_id: str
    kind: str
    undo: bool
    token: CancelToken
    started: datetime
    timeout: timedelta | None
    future: Future[None] | None = None


@dataclass(slots=True)
class _TickResult:
    dispatched: int = 0
    next_wakeup: datetime | None = None
    progressed: bool = False


@dataclass(slots=True)
class _Result:
    outcome: _Outcome
    message: str = ""
    retry: Retry | None = field(default=None)


class TaskRunner:
    """Dispatch ready tasks to handlers and drive their status transitions.

    The runner is itself a state manager: ``init`` performs crash recovery,
    ``ensure`` runs one tick and ``stop`` cancels and drains running handlers.
    ``stop`` must not be called while holding the state lock.
    """

    def __init__(
        self,
        registry: HandlerRegistry,
        config: RunnerConfig | None = None,
    ) -> None:
        self._registry = registry
        self._config = config or RunnerConfig()
        self._state: State | None = None
        self._executor: ThreadPoolExecutor | None = None
        self._running: dict[str, _Running] = {}
        self._mutex = threading.Lock()
        self._idle = threading.Condition(self._mutex)
        self._stopping = False
        self._completed = 0
        self._last_prune: datetime | None = None
        self._next_wakeup: datetime | None = None
        self._on_task_done: Callable[[], None] | None = None

    @property
    def registry(self) -> HandlerRegistry:
        return self._registry

    def on_task_done(self, hook: Callable[[], None] | None) -> None:
        """Install a callback invoked (without locks held) after every handler returns."""

        self._on_task_done = hook

    def next_wakeup(self) -> datetime | None:
        """Earliest time a deferred task becomes runnable, as of the last tick."""

        return self._next_wakeup

    def running(self) -> tuple[str, ...]:
        with self._mutex:
            return tuple(self._running)

    # Manager protocol -----------------------------------------------------------

    def init(self, state: State) -> None:
        self._state = state
        with self._mutex:
            self._stopping = False
        kinds: set[str] = set()
        with state:
            for task in state.tasks():
                if task.status is Status.DOING:
                    task.logf("restarted: handler was interrupted")
                    task.set_status(Status.DO)
                elif task.status is Status.UNDOING:
                    task.logf("restarted: undo was interrupted")
                    task.set_status(Status.UNDO)
            for change in state.changes():
                if not change.is_ready:
                    kinds.update(task.kind for task in change.tasks())
        self._registry.validate(kinds)
        self._registry.freeze()
        if self._executor is None:
            self._executor = ThreadPoolExecutor(
                max_workers=self._config.max_workers,
                thread_name_prefix="fleetstate-task",
            )

    def ensure(self) -> None:
        self._tick()

    def stop(self) -> None:
        with self._mutex:
            self._stopping = True
            for item in self._running.values():
                item.token.cancel(CancelReason.STOP)
            if self._running:
                log.info("Waiting for %d running tasks to stop", len(self._running))
            while self._running:
                self._idle.wait()
        if self._executor is not None:
            self._executor.shutdown(wait=True)
            self._executor = None

    # Ticks ------------------------------------------------------------------------

    def _require_state(self) -> State:
        if self._state is None:
            raise RuntimeError("task runner used before init")
        return self._state

    def _tick(self) -> _TickResult:
        state = self._require_state()
        result = _TickResult()
        with state:
            before = state.modified
            now = state.now()
            self._cancel_stale(now)
            with self._mutex:
                stopping = self._stopping
            if not stopping:
                self._maybe_prune(now)
                for change in state.changes():
                    if change.is_ready:
                        continue
                    self._schedule_change(change, now, result)
            self._next_wakeup = result.next_wakeup
            result.progressed = state.modified != before
        return result

    def _schedule_change(self, change: Change, now: datetime, result: _TickResult) -> None:
        tasks = change.tasks()

        # Rollbacks first, latest completion first, so one tick can walk a lane
        # of no-op undos to the end.
        undos = [task for task in tasks if task.status is Status.UNDO]
        undos.sort(key=lambda task: task.done_seq or 0, reverse=True)
        for task in undos:
            if task.status is not Status.UNDO:
                continue
            if not _due(task, now, result):
                continue
            if self._undo_ready(change, task):
                self._dispatch(task, undo=True, now=now, result=result)

        for task in tasks:
            status = task.status
            if status is Status.WAIT:
                if not _due(task, now, result):
                    continue
                task.set_at(None)
                task.set_status(Status.DO)
                status = Status.DO
            if status is not Status.DO or task.id in self._running:
                continue
            prerequisites = task.wait_tasks()
            if any(pre.status in _DEAD_END for pre in prerequisites):
                task.logf("held: a prerequisite can no longer complete")
                task.set_status(Status.HOLD)
                continue
            if all(pre.status is Status.DONE for pre in prerequisites):
                self._dispatch(task, undo=False, now=now, result=result)

    def _undo_ready(self, change: Change, task: Task) -> bool:
        if task.id in self._running:
            return False
        if any(dependent.status in _UNDO_BLOCKERS for dependent in task.halt_tasks()):
            return False
        lanes = set(task.lanes)
        seq = task.done_seq or 0
        for other in change.tasks():
            if other.id == task.id or not lanes.intersection(other.lanes):
                continue
            if other.id in self._running:
                return False
            if other.status in {Status.UNDO, Status.UNDOING} and (other.done_seq or 0) > seq:
                return False
        return True

    def _has_capacity(self, spec: HandlerSpec) -> bool:
        if len(self._running) >= self._config.max_workers:
            return False
        limits = [
            limit
            for limit in (spec.max_concurrent, self._config.kind_concurrency.get(spec.kind))
            if limit is not None
        ]
        if not limits:
            return True
        same_kind = sum(1 for item in self._running.values() if item.kind == spec.kind)
        return same_kind < min(limits)

    def _dispatch(self, task: Task, *, undo: bool, now: datetime, result: _TickResult) -> None:
        try:
            spec = self._registry.handler(task.kind)
        except MissingHandlerError as exc:
            log.error("Cannot run task %s: %s", task.id, exc)  # noqa: TRY400
            if undo:
                task.errorf("%s", exc)
                task.set_status(Status.ERROR)
            else:
                self._fail(task, str(exc))
            return

        handler: Handler | None = spec.undo if undo else spec.do
        if handler is None:
            task.logf("nothing to undo")
            task.set_status(Status.UNDONE)
            return

        with self._mutex:
            if not self._has_capacity(spec):
                return
            executor = self._executor
            if executor is None:
                raise RuntimeError("task runner used before init")
            token = CancelToken()
            running = _Running(
                task_id=task.id,
                kind=task.kind,
                undo=undo,
                token=token,
                started=now,
                timeout=spec.timeout,
            )
            self._running[task.id] = running

        task.set_status(Status.UNDOING if undo else Status.DOING)
        log.debug("Dispatching %s of task %s (%s)", "undo" if undo else "do", task.id, task.kind)
        try:
            running.future = executor.submit(self._execute, task, handler, running)
        except RuntimeError:
            log.warning("Cannot dispatch task %s (%s)", task.id, task.kind, exc_info=True)
            with self._mutex:
                self._running.pop(task.id, None)
                self._idle.notify_all()
            task.set_status(Status.UNDO if undo else Status.DO)
            return
        result.dispatched += 1

    def _cancel_stale(self, now: datetime) -> None:
        state = self._require_state()
        with self._mutex:
            running = list(self._running.values())
        for item in running:
            if item.token.cancelled:
                continue
            task = state.find_task(item.task_id)
            if task is not None and task.status is Status.ABORT:
                item.token.cancel(CancelReason.ABORT)
            elif item.timeout is not None and now - item.started > item.timeout:
                log.warning("Task %s (%s) timed out", item.task_id, item.kind)
                item.token.cancel(CancelReason.TIMEOUT)

    def _maybe_prune(self, now: datetime) -> None:
        if self._last_prune is not None and now - self._last_prune < self._config.prune_interval:
            return
        self._last_prune = now
        self._require_state().prune(
            prune_wait=self._config.prune_wait,
            max_ready_changes=self._config.max_ready_changes,
        )

    # Handler execution -------------------------------------------------------------

    def _execute(self, task: Task, handler: Handler, running: _Running) -> None:
        try:
            handler(task, running.token)
        except Retry as exc:
            result = _Result(_Outcome.RETRY, str(exc), retry=exc)
        except HandlerCancelled as exc:
            result = _Result(_Outcome.CANCELLED, str(exc))
        except Exception as exc:  # noqa: BLE001
            result = _Result(_Outcome.ERROR, str(exc) or exc.__class__.__name__)
        else:
            result = _Result(_Outcome.SUCCESS)

        state = self._require_state()
        try:
            with state:
                if running.undo:
                    self._finish_undo(task, running, result)
                else:
                    self._finish_do(task, running, result)
        except Exception:
            log.exception("Cannot record result of task %s", running.task_id)
        finally:
            with self._mutex:
                self._running.pop(running.task_id, None)
                self._completed += 1
                self._idle.notify_all()
            hook = self._on_task_done
            if hook is not None:
                hook()

    def _finish_do(self, task: Task, running: _Running, result: _Result) -> None:
        reason = running.token.reason
        if task.status is Status.ABORT:
            if result.outcome is _Outcome.SUCCESS:
                task.logf("completed after abort, scheduling undo")
                task.mark_done()
                task.set_status(Status.UNDO)
            elif result.outcome is _Outcome.ERROR:
                task.errorf("%s", result.message)
                task.set_status(Status.ERROR)
            return

        match result.outcome:
            case _Outcome.SUCCESS:
                task.mark_done()
            case _ if reason is CancelReason.STOP:
                task.logf("interrupted, will run again: %s", result.message or "stopped")
                task.set_status(Status.DO)
            case _Outcome.CANCELLED if reason is CancelReason.TIMEOUT:
                self._fail(task, f"timed out after {running.timeout}")
            case _Outcome.RETRY:
                self._retry(task, result, pending=Status.WAIT)
            case _:
                self._fail(task, result.message)

    def _finish_undo(self, task: Task, running: _Running, result: _Result) -> None:
        reason = running.token.reason
        match result.outcome:
            case _Outcome.SUCCESS:
                task.set_status(Status.UNDONE)
            case _ if reason is CancelReason.STOP:
                task.logf("undo interrupted, will run again: %s", result.message or "stopped")
                task.set_status(Status.UNDO)
            case _Outcome.RETRY:
                self._retry(task, result, pending=Status.UNDO)
            case _Outcome.CANCELLED if reason is CancelReason.TIMEOUT:
                self._undo_failed(task, f"undo timed out after {running.timeout}")
            case _:
                self._undo_failed(task, result.message)

    def _retry(self, task: Task, result: _Result, *, pending: Status) -> None:
        spec = self._registry.handler(task.kind)
        limit = spec.max_retries if spec.max_retries is not None else self._config.max_retries
        if task.retries >= limit:
            message = f"giving up after {task.retries} retries: {result.message}"
            if pending is Status.UNDO:
                self._undo_failed(task, message)
            else:
                self._fail(task, message)
            return
        retry = result.retry or Retry()
        state = self._require_state()
        task.increment_retries()
        task.set_at(state.now() + retry.after)
        task.logf("will retry in %s: %s", retry.after, result.message)
        task.set_status(pending)
        log.debug("Task %s (%s) will retry in %s", task.id, task.kind, retry.after)

    def _fail(self, task: Task, message: str) -> None:
        task.errorf("%s", message)
        task.set_status(Status.ERROR)
        log.warning("Task %s (%s) failed: %s", task.id, task.kind, message)
        change = task.change()
        if change is None:
            return
        change.abort_dependents(task)
        change.abort_lanes(task.lanes)
        self._cancel_stale(task.state.now())

    def _undo_failed(self, task: Task, message: str) -> None:
        task.errorf("undo failed: %s", message)
        task.set_status(Status.ERROR)
        log.warning("Undo of task %s (%s) failed: %s", task.id, task.kind, message)

    # Settling ---------------------------------------------------------------------

    def settle(self, timeout: float = DEFAULT_SETTLE_TIMEOUT) -> None:
        """Run ticks until no task is running or runnable.

        Waits for deferred tasks whose resume time falls within ``timeout``;
        raises :class:`SettleTimeoutError` if work is still pending at the deadline.
        """

        state = self._require_state()
        deadline = time.monotonic() + timeout
        while True:
            with self._mutex:
                completed = self._completed
            tick = self._tick()
            with self._mutex:
                busy = bool(self._running)
                # A handler that finished after the tick may have unblocked more work.
                finished = self._completed != completed
            remaining = deadline - time.monotonic()
            quiet = not tick.progressed and tick.dispatched == 0 and not finished
            if not busy and quiet:
                if tick.next_wakeup is None:
                    return
                delay = (tick.next_wakeup - state.now()).total_seconds()
                if delay > remaining:
                    raise SettleTimeoutError(
                        f"tasks still waiting to retry after {timeout} seconds"
                    )
                time.sleep(max(delay, 0.01))
                continue
            if remaining <= 0:
                raise SettleTimeoutError(f"tasks still running after {timeout} seconds")
            if busy:
                with self._mutex:
                    if self._running:
                        self._idle.wait(timeout=min(remaining, 0.1))


def _due(task: Task, now: datetime, result: _TickResult) -> bool:
    at = task.at
    if at is None or at <= now:
        return True
    if result.next_wakeup is None or at < result.next_wakeup:
        result.next_wakeup = at
    return False
