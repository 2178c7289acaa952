"""Application wiring: the overlord owns the state, managers and ensure loop."""

from __future__ import annotations

import threading
import time
from logging import getLogger
from typing import TYPE_CHECKING

from fleetstate.adapters.slices import LoggingSliceController
from fleetstate.adapters.sqlalchemy import build_state_backend, is_started, startup
from fleetstate.config import RunnerConfig, get_runner_config, get_trust_config
from fleetstate.domain.engine import StateEngine
from fleetstate.domain.execution import DEFAULT_SETTLE_TIMEOUT, HandlerRegistry, TaskRunner
from fleetstate.domain.quota import QuotaManager
from fleetstate.domain.state import State
from fleetstate.domain.trust import TrustedSet

if TYPE_CHECKING:
    from pathlib import Path

    from fleetstate.domain.engine import StateManager
    from fleetstate.domain.ports.slices import SliceController

log = getLogger(__name__)


class Overlord:
    """Compose the state engine: managers first, the task runner last."""

    def __init__(
        self,
        state: State,
        *,
        controller: SliceController | None = None,
        trusted: TrustedSet | None = None,
        config: RunnerConfig | None = None,
        extra_managers: tuple[StateManager, ...] = (),
    ) -> None:
        self._config = config or RunnerConfig()
        self.registry = HandlerRegistry()
        self.trusted = trusted or TrustedSet(())
        self.quota = QuotaManager(self.registry, controller or LoggingSliceController())
        self.runner = TaskRunner(self.registry, self._config)
        self.runner.on_task_done(lambda: self.ensure_before(0))

        self.engine = StateEngine(state)
        self.engine.add_manager(self.quota)
        for manager in extra_managers:
            self.engine.add_manager(manager)
        self.engine.add_manager(self.runner)

        self._ensure_lock = threading.Lock()
        self._schedule_lock = threading.Lock()
        self._ensure_at: float | None = None
        self._wake = threading.Event()
        self._stopping = threading.Event()
        self._thread: threading.Thread | None = None

    @property
    def state(self) -> State:
        return self.engine.state

    def ensure(self) -> None:
        """Run one reconciliation pass over every manager."""

        with self._ensure_lock:
            self.engine.ensure()

    def settle(self, timeout: float = DEFAULT_SETTLE_TIMEOUT) -> None:
        """Run one pass, then keep executing tasks until nothing is left to do."""

        self.ensure()
        self.runner.settle(timeout)

    def ensure_before(self, delay: float) -> None:
        """Ask the background loop to run an ensure pass within ``delay`` seconds."""

        when = time.monotonic() + max(delay, 0.0)
        with self._schedule_lock:
            if self._ensure_at is None or when < self._ensure_at:
                self._ensure_at = when
        self._wake.set()

    def loop(self) -> None:
        """Start the background ensure loop."""

        if self._thread is not None:
            raise RuntimeError("ensure loop already running")
        self._stopping.clear()
        self._thread = threading.Thread(
            target=self._run_loop, name="fleetstate-ensure", daemon=True
        )
        self._thread.start()
        log.info("Started ensure loop (interval %s)", self._config.ensure_interval)

    def _next_delay(self) -> float:
        delay = self._config.ensure_interval.total_seconds()
        with self._schedule_lock:
            if self._ensure_at is not None:
                delay = min(delay, self._ensure_at - time.monotonic())
        wakeup = self.runner.next_wakeup()
        if wakeup is not None:
            delay = min(delay, (wakeup - self.state.now()).total_seconds())
        return max(delay, 0.0)

    def _run_loop(self) -> None:
        while not self._stopping.is_set():
            with self._schedule_lock:
                self._ensure_at = None
            self._wake.clear()
            try:
                self.ensure()
            except Exception:
                log.exception("Ensure pass failed")
            self._wake.wait(self._next_delay())

    def stop(self) -> None:
        """Stop the loop, then every manager; running tasks are drained."""

        self._stopping.set()
        self._wake.set()
        if self._thread is not None:
            self._thread.join()
            self._thread = None
        with self._ensure_lock:
            self.engine.stop()
        log.info("Stopped state engine")


def build_overlord(
    *,
    database_uri: str | None = None,
    controller: SliceController | None = None,
    config: RunnerConfig | None = None,
    trust_dir: Path | None = None,
) -> Overlord:
    """Open the persisted state and assemble an :class:`Overlord` around it."""

    if not is_started():
        startup(database_uri=database_uri)
    backend = build_state_backend()
    state = State.load(backend)

    trust_config = get_trust_config()
    directory = trust_dir or trust_config.directory
    trusted = (
        TrustedSet.from_directory(directory, use_staging=trust_config.use_staging)
        if directory is not None
        else TrustedSet((), use_staging=trust_config.use_staging)
    )
    with state:
        log.info("Loaded state with %d changes", len(state.changes()))
    return Overlord(
        state,
        controller=controller,
        trusted=trusted,
        config=config or get_runner_config(),
    )
