from __future__ import annotations

import os
from typing import TYPE_CHECKING

import pytest

from fleetstate.adapters.sqlalchemy import shutdown
from fleetstate.config import RunnerConfig
from fleetstate.domain.execution import HandlerRegistry, TaskRunner
from fleetstate.domain.state import State
from tests.helpers.fleet import FakeClock, MemoryBackend, RecordingHandlers

if TYPE_CHECKING:
    from collections.abc import Callable, Iterator


@pytest.fixture(autouse=True)
def _isolated_environment(monkeypatch: pytest.MonkeyPatch) -> Iterator[None]:
    for name in list(os.environ):
        if name.startswith("FLEETSTATE_"):
            monkeypatch.delenv(name, raising=False)
    yield
    shutdown()


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def backend() -> MemoryBackend:
    return MemoryBackend()


@pytest.fixture
def state(backend: MemoryBackend, clock: FakeClock) -> State:
    return State(backend, clock=clock)


@pytest.fixture
def registry() -> HandlerRegistry:
    return HandlerRegistry()


@pytest.fixture
def recorder() -> RecordingHandlers:
    return RecordingHandlers()


@pytest.fixture
def make_runner(
    state: State,
    registry: HandlerRegistry,
) -> Iterator[Callable[..., TaskRunner]]:
    runners: list[TaskRunner] = []

    def factory(**config: object) -> TaskRunner:
        runner = TaskRunner(registry, RunnerConfig(**config))  # type: ignore[arg-type]
        runner.init(state)
        runners.append(runner)
        return runner

    try:
        yield factory
    finally:
        for runner in runners:
            runner.stop()
