"""Manager dispatcher driving ``init``/``ensure``/``stop`` across subsystems.

The engine composes managers but does not know what they do. Each manager
owns its section of the state and enqueues changes for the task runner,
which is itself registered as the last manager.
"""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING, Protocol, runtime_checkable

if TYPE_CHECKING:
    from fleetstate.domain.state import State

log = logging.getLogger(__name__)


@runtime_checkable
class StateManager(Protocol):
    """Capability contract of a subsystem driven by the engine."""

    def init(self, state: State) -> None: ...

    def ensure(self) -> None: ...

    def stop(self) -> None: ...


class EngineStartedError(RuntimeError):
    """Raised when managers are added after the engine started ensuring."""


class StateEngine:
    """Ordered list of managers plus the ``inited`` flag.

    ``ensure`` is not reentrant; callers serialize invocations.
    """

    def __init__(self, state: State) -> None:
        self._state = state
        self._managers: list[StateManager] = []
        self._inited = False
        self._started = False

    @property
    def state(self) -> State:
        return self._state

    @property
    def inited(self) -> bool:
        return self._inited

    @property
    def managers(self) -> tuple[StateManager, ...]:
        return tuple(self._managers)

    def add_manager(self, manager: StateManager) -> None:
        if self._started:
            raise EngineStartedError("managers must be added before the first ensure")
        self._managers.append(manager)

    def _init(self) -> None:
        for manager in self._managers:
            try:
                manager.init(self._state)
            except Exception:
                log.exception("Manager %s failed to initialise", type(manager).__name__)
                raise
        self._inited = True

    def ensure(self) -> None:
        """Run one reconciliation pass, initialising managers first if needed.

        The first failing manager aborts the pass; its exception propagates and
        the managers after it are skipped until the next call.
        """

        self._started = True
        if not self._inited:
            self._init()
        for manager in self._managers:
            try:
                manager.ensure()
            except Exception:
                log.warning("Manager %s failed to ensure", type(manager).__name__, exc_info=True)
                raise

    def stop(self) -> None:
        """Stop every manager, re-raising the first failure once all have stopped."""

        if not self._inited:
            return
        first: Exception | None = None
        for manager in self._managers:
            try:
                manager.stop()
            except Exception as exc:
                log.warning("Manager %s failed to stop", type(manager).__name__, exc_info=True)
                if first is None:
                    first = exc
        self._inited = False
        if first is not None:
            raise first
