from __future__ import annotations

import pytest

from fleetstate.domain.state import (
    DEFAULT_LANE,
    State,
    StateError,
    Status,
    TaskGraphError,
    aggregate_status,
)


@pytest.mark.parametrize(
    ("statuses", "expected"),
    [
        ([], Status.DONE),
        ([Status.DONE, Status.DONE], Status.DONE),
        ([Status.DONE, Status.DO], Status.DOING),
        ([Status.WAIT, Status.DONE], Status.DOING),
        ([Status.UNDOING, Status.ABORT], Status.DOING),
        ([Status.UNDONE, Status.ABORT], Status.UNDONE),
        ([Status.ERROR, Status.DOING], Status.ERROR),
        ([Status.ERROR, Status.UNDONE, Status.ABORT], Status.ERROR),
        ([Status.DONE, Status.HOLD], Status.HOLD),
    ],
)
def test_aggregate_status(statuses: list[Status], expected: Status) -> None:
    assert aggregate_status(statuses) is expected


def test_wait_for_rejects_cycles(state: State) -> None:
    with state:
        first = state.new_task("k", "first")
        second = state.new_task("k", "second")
        third = state.new_task("k", "third")
        second.wait_for(first)
        third.wait_for(second)

        with pytest.raises(TaskGraphError):
            first.wait_for(third)
        with pytest.raises(TaskGraphError):
            first.wait_for(first)


def test_task_cannot_join_two_changes(state: State) -> None:
    with state:
        task = state.new_task("k", "task")
        state.new_change("a", "A").add_task(task)

        with pytest.raises(StateError):
            state.new_change("b", "B").add_task(task)


def test_tasks_default_to_the_default_lane(state: State) -> None:
    with state:
        task = state.new_task("k", "task")
        assert task.lanes == (DEFAULT_LANE,)

        lane = state.new_lane()
        task.join_lane(lane)
        assert task.lanes == (lane,)


def test_change_status_and_ready_time_follow_tasks(state: State) -> None:
    with state:
        change = state.new_change("k", "change")
        task = state.new_task("k", "task")
        change.add_task(task)

        assert change.status is Status.DOING
        assert change.ready_time is None

        task.mark_done()

        assert change.status is Status.DONE
        assert change.is_ready
        assert change.ready_time == state.now()


def test_abort_dependents_is_transitive(state: State) -> None:
    with state:
        change = state.new_change("k", "change")
        failed = state.new_task("k", "failed")
        child = state.new_task("k", "child")
        grandchild = state.new_task("k", "grandchild")
        unrelated = state.new_task("k", "unrelated")
        child.wait_for(failed)
        grandchild.wait_for(child)
        change.add_all([failed, child, grandchild, unrelated])
        failed.set_status(Status.ERROR)

        aborted = change.abort_dependents(failed)

        assert {task.id for task in aborted} == {child.id, grandchild.id}
        assert unrelated.status is Status.DO


def test_abort_lanes_only_touches_given_lanes(state: State) -> None:
    with state:
        change = state.new_change("k", "change")
        lane_a, lane_b = state.new_lane(), state.new_lane()
        done_a = state.new_task("k", "done a")
        todo_a = state.new_task("k", "todo a")
        done_b = state.new_task("k", "done b")
        for task, lane in ((done_a, lane_a), (todo_a, lane_a), (done_b, lane_b)):
            task.join_lane(lane)
        change.add_all([done_a, todo_a, done_b])
        done_a.mark_done()
        done_b.mark_done()

        change.abort_lanes([lane_a])

        assert done_a.status is Status.UNDO
        assert todo_a.status is Status.ABORT
        assert done_b.status is Status.DONE


def test_err_summarises_failed_tasks(state: State) -> None:
    with state:
        change = state.new_change("k", "change")
        task = state.new_task("start-slice", "Start slice for quota group 'foo'")
        change.add_task(task)

        assert change.err() is None

        task.errorf("slice failed to start")
        task.set_status(Status.ERROR)

        assert change.err() == (
            "cannot perform the following tasks:\n"
            "- Start slice for quota group 'foo' (slice failed to start)"
        )
