from __future__ import annotations

import threading
from datetime import timedelta
from typing import TYPE_CHECKING

import pytest

from fleetstate.adapters.sqlalchemy import build_state_backend
from fleetstate.app import Overlord, build_overlord
from fleetstate.config import RunnerConfig
from fleetstate.domain.execution import RegistryFrozenError
from fleetstate.domain.quota import GiB, all_quotas, create_quota
from fleetstate.domain.state import State, Status
from tests.helpers.fleet import RecordingSliceController

if TYPE_CHECKING:
    from collections.abc import Iterator
    from pathlib import Path


@pytest.fixture
def controller() -> RecordingSliceController:
    return RecordingSliceController()


@pytest.fixture
def overlord(tmp_path: Path, controller: RecordingSliceController) -> Iterator[Overlord]:
    overlord = build_overlord(
        database_uri=f"sqlite+pysqlite:///{tmp_path / 'state.db'}",
        controller=controller,
        config=RunnerConfig(ensure_interval=timedelta(seconds=30)),
    )
    try:
        yield overlord
    finally:
        overlord.stop()


def test_overlord_orders_runner_last(overlord: Overlord) -> None:
    assert overlord.engine.managers == (overlord.quota, overlord.runner)


def test_settle_applies_quota_change_and_persists_it(
    overlord: Overlord, controller: RecordingSliceController
) -> None:
    with overlord.state as state:
        change = create_quota(state, "foo", ["test-snap"], GiB)

    overlord.settle(5)

    with overlord.state:
        assert change.status is Status.DONE
    restored = State.load(build_state_backend())
    with restored:
        assert all_quotas(restored)["foo"].snaps == ["test-snap"]
    assert controller.operations()[-1] == "restart_services"


def test_registry_is_frozen_after_first_ensure(overlord: Overlord) -> None:
    overlord.ensure()

    with pytest.raises(RegistryFrozenError):
        overlord.registry.register("late", lambda task, token: None)


def test_background_loop_picks_up_new_changes(
    overlord: Overlord, controller: RecordingSliceController
) -> None:
    restarted = threading.Event()

    def restart(snap: str) -> None:
        controller.calls.append(("restart_services", snap))
        restarted.set()

    controller.restart_services = restart  # type: ignore[method-assign]
    overlord.loop()
    with overlord.state as state:
        create_quota(state, "foo", ["test-snap"], GiB)
    overlord.ensure_before(0)

    assert restarted.wait(5)


def test_loop_cannot_start_twice(overlord: Overlord) -> None:
    overlord.loop()

    with pytest.raises(RuntimeError, match="already running"):
        overlord.loop()


def test_build_overlord_reads_trusted_documents(
    tmp_path: Path, monkeypatch: pytest.MonkeyPatch
) -> None:
    trust_dir = tmp_path / "trust"
    trust_dir.mkdir()
    (trust_dir / "root").write_bytes(b"root")
    monkeypatch.setenv("FLEETSTATE_TRUST_DIR", str(trust_dir))

    overlord = build_overlord(database_uri=f"sqlite+pysqlite:///{tmp_path / 'state.db'}")
    try:
        assert [doc.name for doc in overlord.trusted.documents()] == ["root"]
    finally:
        overlord.stop()
