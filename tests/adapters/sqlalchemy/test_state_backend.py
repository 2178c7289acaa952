from __future__ import annotations

import threading
from typing import TYPE_CHECKING

import pytest
from sqlalchemy import event, func, select

from fleetstate.adapters.sqlalchemy import (
    SqlAlchemyStateBackend,
    StartupError,
    build_state_backend,
    configured_engine,
    is_started,
    shutdown,
    startup,
    state_document_table,
)
from fleetstate.adapters.sqlalchemy.migrations import current_revision
from fleetstate.domain.state import CheckpointError, State, Status

if TYPE_CHECKING:
    from pathlib import Path

    from sqlalchemy.engine import Engine


@pytest.fixture
def engine(tmp_path: Path) -> Engine:
    return startup(database_uri=f"sqlite+pysqlite:///{tmp_path / 'state.db'}")


def test_startup_migrates_to_head(engine: Engine) -> None:
    assert is_started()
    assert configured_engine() is engine
    assert current_revision(engine) == "0001_state_document"


def test_startup_twice_requires_force(engine: Engine, tmp_path: Path) -> None:
    with pytest.raises(StartupError):
        startup(database_uri=f"sqlite+pysqlite:///{tmp_path / 'other.db'}")

    replacement = startup(database_uri=f"sqlite+pysqlite:///{tmp_path / 'other.db'}", force=True)

    assert configured_engine() is replacement


def test_build_backend_before_startup_fails() -> None:
    shutdown()

    with pytest.raises(StartupError):
        build_state_backend()


def test_empty_database_reads_nothing(engine: Engine) -> None:
    assert SqlAlchemyStateBackend(engine).read() is None


def test_state_round_trips_through_database(engine: Engine) -> None:
    state = State(build_state_backend())
    with state:
        change = state.new_change("create-quota", "Create quota group 'foo'")
        task = state.new_task("create-slice", "Create slice")
        task.set("group", {"memory_limit": 1024})
        change.add_task(task)
        task.set_status(Status.DOING)

    restored = State.load(SqlAlchemyStateBackend(engine))

    with restored:
        (loaded,) = restored.changes()
        (loaded_task,) = loaded.tasks()
        assert loaded.id == change.id
        assert loaded_task.status is Status.DOING
        assert loaded_task.get("group") == {"memory_limit": 1024}


def test_writes_replace_the_single_document_row(engine: Engine) -> None:
    backend = SqlAlchemyStateBackend(engine)

    backend.write('{"first": true}', dirty_count=1)
    backend.write('{"second": true}', dirty_count=2)

    with engine.connect() as connection:
        rows = connection.execute(select(func.count()).select_from(state_document_table))
        assert rows.scalar_one() == 1
    assert backend.read() == '{"second": true}'


def test_in_memory_database_is_shared_across_threads() -> None:
    engine = startup(database_uri="sqlite+pysqlite:///:memory:")
    backend = SqlAlchemyStateBackend(engine)
    worker = threading.Thread(target=backend.write, args=("{}",), kwargs={"dirty_count": 1})

    worker.start()
    worker.join()

    assert backend.read() == "{}"


def test_failed_write_keeps_previous_document(engine: Engine) -> None:
    state = State(build_state_backend())
    with state:
        state.set("quotas", {"groups": {"foo": {"memory_limit": 1024}}})

    def reject_writes(
        conn: object,
        cursor: object,
        statement: str,
        parameters: object,
        context: object,
        executemany: bool,
    ) -> None:
        if statement.lstrip().upper().startswith(("UPDATE", "INSERT")):
            raise OSError("disk full")

    event.listen(engine, "before_cursor_execute", reject_writes)
    try:
        with pytest.raises(CheckpointError), state:
            state.set("quotas", {"groups": {}})
    finally:
        event.remove(engine, "before_cursor_execute", reject_writes)

    assert state.dirty
    restored = State.load(SqlAlchemyStateBackend(engine))
    with restored:
        assert restored.get("quotas") == {"groups": {"foo": {"memory_limit": 1024}}}
