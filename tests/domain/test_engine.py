from __future__ import annotations

from typing import TYPE_CHECKING

import pytest

from fleetstate.domain.engine import EngineStartedError, StateEngine, StateManager

if TYPE_CHECKING:
    from fleetstate.domain.state import State


class RecordingManager:
    def __init__(self, name: str, calls: list[str], *, fail_on: set[str] | None = None) -> None:
        self.name = name
        self.calls = calls
        self.fail_on = fail_on if fail_on is not None else set()

    def _record(self, action: str) -> None:
        self.calls.append(f"{self.name}.{action}")
        if action in self.fail_on:
            raise RuntimeError(f"{self.name} {action} failed")

    def init(self, state: State) -> None:
        self._record("init")

    def ensure(self) -> None:
        self._record("ensure")

    def stop(self) -> None:
        self._record("stop")


def test_recording_manager_satisfies_protocol() -> None:
    assert isinstance(RecordingManager("m", []), StateManager)


def test_ensure_inits_once_then_ensures_in_order(state: State) -> None:
    calls: list[str] = []
    engine = StateEngine(state)
    engine.add_manager(RecordingManager("a", calls))
    engine.add_manager(RecordingManager("b", calls))

    engine.ensure()
    engine.ensure()

    assert engine.inited
    assert calls == ["a.init", "b.init", "a.ensure", "b.ensure", "a.ensure", "b.ensure"]


def test_init_failure_is_retried_on_next_ensure(state: State) -> None:
    calls: list[str] = []
    flaky = RecordingManager("b", calls, fail_on={"init"})
    engine = StateEngine(state)
    engine.add_manager(RecordingManager("a", calls))
    engine.add_manager(flaky)

    with pytest.raises(RuntimeError, match="b init failed"):
        engine.ensure()
    assert not engine.inited

    flaky.fail_on.clear()
    engine.ensure()

    assert engine.inited
    assert calls[-4:] == ["a.init", "b.init", "a.ensure", "b.ensure"]


def test_failing_ensure_skips_later_managers(state: State) -> None:
    calls: list[str] = []
    engine = StateEngine(state)
    engine.add_manager(RecordingManager("a", calls, fail_on={"ensure"}))
    engine.add_manager(RecordingManager("b", calls))

    with pytest.raises(RuntimeError, match="a ensure failed"):
        engine.ensure()

    assert "b.ensure" not in calls


def test_stop_reaches_every_manager_and_raises_first_error(state: State) -> None:
    calls: list[str] = []
    engine = StateEngine(state)
    engine.add_manager(RecordingManager("a", calls, fail_on={"stop"}))
    engine.add_manager(RecordingManager("b", calls, fail_on={"stop"}))
    engine.add_manager(RecordingManager("c", calls))
    engine.ensure()

    with pytest.raises(RuntimeError, match="a stop failed"):
        engine.stop()

    assert calls[-3:] == ["a.stop", "b.stop", "c.stop"]
    assert not engine.inited


def test_stop_before_init_is_a_no_op(state: State) -> None:
    calls: list[str] = []
    engine = StateEngine(state)
    engine.add_manager(RecordingManager("a", calls))

    engine.stop()

    assert calls == []


def test_managers_cannot_be_added_after_first_ensure(state: State) -> None:
    engine = StateEngine(state)
    engine.ensure()

    with pytest.raises(EngineStartedError):
        engine.add_manager(RecordingManager("late", []))
