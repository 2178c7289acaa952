from __future__ import annotations

from typing import TYPE_CHECKING

import pytest

from fleetstate.domain.quota import (
    GiB,
    MiB,
    QuotaConflictError,
    QuotaError,
    QuotaManager,
    all_quotas,
    create_quota,
    ensure_snap_absent_from_quota,
    format_memory_size,
    parse_memory_size,
    remove_quota,
    update_quota,
)
from fleetstate.domain.state import Status
from tests.helpers.fleet import RecordingSliceController

if TYPE_CHECKING:
    from collections.abc import Callable

    from fleetstate.domain.execution import HandlerRegistry, TaskRunner
    from fleetstate.domain.state import Change, State


@pytest.fixture
def controller() -> RecordingSliceController:
    return RecordingSliceController()


@pytest.fixture
def runner(
    registry: HandlerRegistry,
    controller: RecordingSliceController,
    make_runner: Callable[..., TaskRunner],
) -> TaskRunner:
    QuotaManager(registry, controller)
    return make_runner()


def _create_foo(state: State, runner: TaskRunner) -> Change:
    with state:
        change = create_quota(state, "foo", ["test-snap"], GiB)
    runner.settle(5)
    return change


def test_create_quota_runs_three_ordered_tasks(state: State, runner: TaskRunner) -> None:
    change = _create_foo(state, runner)

    with state:
        tasks = change.tasks()
        assert [task.kind for task in tasks] == [
            "create-slice",
            "start-slice",
            "restart-member-service",
        ]
        assert [task.done_seq for task in tasks] == [1, 2, 3]
        assert change.status is Status.DONE
        group = all_quotas(state)["foo"]
    assert group.memory_limit == GiB
    assert group.snaps == ["test-snap"]


def test_create_quota_drives_slice_controller(
    state: State, runner: TaskRunner, controller: RecordingSliceController
) -> None:
    _create_foo(state, runner)

    assert controller.calls == [
        ("write_slice", "foo", str(GiB)),
        ("daemon_reload",),
        ("start_slice", "foo"),
        ("restart_services", "test-snap"),
    ]


def test_failed_start_rolls_back_created_slice(
    state: State, runner: TaskRunner, controller: RecordingSliceController
) -> None:
    controller.fail_on["start_slice"] = RuntimeError("systemd said no")

    change = _create_foo(state, runner)

    with state:
        create, start, restart = change.tasks()
        assert change.status is Status.ERROR
        assert create.status is Status.UNDONE
        assert start.status is Status.ERROR
        assert restart.status is Status.ABORT
        assert "foo" not in all_quotas(state)
        assert change.err() is not None
        assert "systemd said no" in change.err()  # type: ignore[operator]
    assert "remove_slice" in controller.operations()
    assert "restart_services" not in controller.operations()


def test_update_quota_enqueues_only_update_slice(state: State, runner: TaskRunner) -> None:
    _create_foo(state, runner)

    with state:
        change = update_quota(state, "foo", memory_limit=2 * GiB)
        assert change is not None
        assert [task.kind for task in change.tasks()] == ["update-slice"]
    runner.settle(5)

    with state:
        assert change.status is Status.DONE
        assert all_quotas(state)["foo"].memory_limit == 2 * GiB


def test_update_quota_adds_members_and_restarts_them(
    state: State, runner: TaskRunner, controller: RecordingSliceController
) -> None:
    _create_foo(state, runner)

    with state:
        change = update_quota(state, "foo", add_snaps=["other-snap"])
        assert change is not None
        assert [task.kind for task in change.tasks()] == [
            "update-slice",
            "restart-member-service",
        ]
    runner.settle(5)

    with state:
        assert all_quotas(state)["foo"].snaps == ["test-snap", "other-snap"]
    assert controller.calls[-1] == ("restart_services", "other-snap")


def test_update_quota_without_changes_is_a_no_op(state: State, runner: TaskRunner) -> None:
    _create_foo(state, runner)

    with state:
        count = len(state.changes())
        assert update_quota(state, "foo", memory_limit=GiB, add_snaps=["test-snap"]) is None
        assert len(state.changes()) == count


def test_update_quota_refuses_to_shrink(state: State, runner: TaskRunner) -> None:
    _create_foo(state, runner)

    with state, pytest.raises(QuotaError, match="cannot decrease memory limit"):
        update_quota(state, "foo", memory_limit=512 * MiB)


def test_failed_update_restores_previous_limit(
    state: State, runner: TaskRunner, controller: RecordingSliceController
) -> None:
    _create_foo(state, runner)
    with state:
        change = update_quota(state, "foo", memory_limit=2 * GiB, add_snaps=["other-snap"])
        assert change is not None
    controller.fail_on["restart_services"] = RuntimeError("restart failed")

    runner.settle(5)

    with state:
        assert change.status is Status.ERROR
        group = all_quotas(state)["foo"]
    assert group.memory_limit == GiB
    assert group.snaps == ["test-snap"]
    assert controller.calls[-2:] == [("write_slice", "foo", str(GiB)), ("daemon_reload",)]


def test_removing_member_twice_is_idempotent(
    state: State, runner: TaskRunner, controller: RecordingSliceController
) -> None:
    _create_foo(state, runner)

    with state:
        first = ensure_snap_absent_from_quota(state, "test-snap")
        assert first is not None
        (restart,) = first.tasks()
        assert restart.kind == "restart-member-service"
        assert restart.get("snap") == "test-snap"
        assert all_quotas(state)["foo"].snaps == []
        count = len(state.tasks())

        assert ensure_snap_absent_from_quota(state, "test-snap") is None
        assert len(state.tasks()) == count
    runner.settle(5)

    with state:
        assert first.status is Status.DONE
    assert controller.calls[-2:] == [("daemon_reload",), ("restart_services", "test-snap")]


def test_remove_quota_stops_and_removes_slice(
    state: State, runner: TaskRunner, controller: RecordingSliceController
) -> None:
    _create_foo(state, runner)

    with state:
        change = remove_quota(state, "foo")
    runner.settle(5)

    with state:
        assert change.status is Status.DONE
        assert all_quotas(state) == {}
    assert controller.operations()[-4:] == [
        "stop_slice",
        "remove_slice",
        "daemon_reload",
        "restart_services",
    ]


def test_conflicting_change_is_rejected(state: State, runner: TaskRunner) -> None:
    _create_foo(state, runner)

    with state:
        change = update_quota(state, "foo", memory_limit=2 * GiB)
        assert change is not None
        with pytest.raises(QuotaConflictError) as excinfo:
            remove_quota(state, "foo")
        with pytest.raises(QuotaConflictError):
            create_quota(state, "bar", [], GiB, parent="foo")
    assert excinfo.value.change_id == change.id


def test_sub_group_slice_path_and_removal_order(
    state: State, runner: TaskRunner, controller: RecordingSliceController
) -> None:
    _create_foo(state, runner)
    with state:
        create_quota(state, "bar", ["bar-snap"], 512 * MiB, parent="foo")
    runner.settle(5)

    assert ("write_slice", "foo/bar", str(512 * MiB)) in controller.calls
    with state:
        assert all_quotas(state)["foo"].sub_groups == ["bar"]
        with pytest.raises(QuotaError, match="with sub-groups"):
            remove_quota(state, "foo")
        remove_quota(state, "bar")
    runner.settle(5)

    with state:
        assert all_quotas(state)["foo"].sub_groups == []
        assert "bar" not in all_quotas(state)


def test_sub_group_cannot_exceed_parent(state: State, runner: TaskRunner) -> None:
    _create_foo(state, runner)

    with state, pytest.raises(QuotaError, match="too large"):
        create_quota(state, "bar", [], 2 * GiB, parent="foo")


@pytest.mark.parametrize(
    ("name", "snaps", "memory_limit", "message"),
    [
        ("Foo", [], GiB, "invalid quota group name"),
        ("", [], GiB, "must not be empty"),
        ("foo", [], 1024, "too small"),
        ("foo", ["a", "a"], GiB, "duplicate snap"),
    ],
)
def test_create_quota_validation(
    state: State, name: str, snaps: list[str], memory_limit: int, message: str
) -> None:
    with state, pytest.raises(QuotaError, match=message):
        create_quota(state, name, snaps, memory_limit)


def test_snap_cannot_join_two_groups(state: State, runner: TaskRunner) -> None:
    _create_foo(state, runner)

    with state, pytest.raises(QuotaError, match="more than one quota group"):
        create_quota(state, "bar", ["test-snap"], GiB)


@pytest.mark.parametrize(
    ("raw", "expected"),
    [
        ("4096", 4096),
        ("512MiB", 512 * MiB),
        ("1G", GiB),
        ("2gb", 2 * GiB),
        (" 64 KiB ", 64 * 1024),
    ],
)
def test_parse_memory_size(raw: str, expected: int) -> None:
    assert parse_memory_size(raw) == expected


def test_parse_memory_size_rejects_garbage() -> None:
    with pytest.raises(QuotaError):
        parse_memory_size("lots")


def test_format_memory_size() -> None:
    assert format_memory_size(GiB) == "1GiB"
    assert format_memory_size(1536 * MiB) == "1536MiB"
    assert format_memory_size(1000) == "1000B"
