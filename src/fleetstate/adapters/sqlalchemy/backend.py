"""SQLAlchemy-backed persistence for the state document."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import UTC, datetime
from typing import TYPE_CHECKING

from sqlalchemy import create_engine, insert, select, update
from sqlalchemy.pool import StaticPool

from fleetstate.adapters.sqlalchemy.migrations import upgrade_head
from fleetstate.adapters.sqlalchemy.tables import STATE_DOCUMENT_ID, state_document_table
from fleetstate.config import get_database_config
from fleetstate.domain.state import FORMAT_VERSION

if TYPE_CHECKING:
    from sqlalchemy.engine import Engine

log = logging.getLogger(__name__)


class StartupError(RuntimeError):
    """Raised when the SQLAlchemy backend is used before initialisation."""


class SqlAlchemyStateBackend:
    """Store the state document as the single row of ``state_document``.

    Each write replaces the row inside one transaction, so a failed write
    leaves the previous document in place.
    """

    def __init__(self, engine: Engine) -> None:
        self._engine = engine

    @property
    def engine(self) -> Engine:
        return self._engine

    def read(self) -> str | None:
        statement = select(state_document_table.c.data).where(
            state_document_table.c.id == STATE_DOCUMENT_ID
        )
        with self._engine.connect() as connection:
            return connection.execute(statement).scalar_one_or_none()

    def write(self, document: str, *, dirty_count: int) -> None:
        values = {
            "format_version": FORMAT_VERSION,
            "data": document,
            "dirty_count": dirty_count,
            "updated_at": datetime.now(UTC),
        }
        with self._engine.begin() as connection:
            result = connection.execute(
                update(state_document_table)
                .where(state_document_table.c.id == STATE_DOCUMENT_ID)
                .values(**values)
            )
            if result.rowcount == 0:
                connection.execute(
                    insert(state_document_table).values(id=STATE_DOCUMENT_ID, **values)
                )
        log.debug("Checkpointed state document (dirty count %d)", dirty_count)


@dataclass(slots=True)
class _AdapterState:
    engine: Engine | None = None


_STATE = _AdapterState()


def _is_memory_uri(uri: str) -> bool:
    return uri.startswith("sqlite") and (":memory:" in uri or uri.rstrip("/").endswith(":"))


def create_state_engine(database_uri: str) -> Engine:
    """Create an engine usable from the task runner's worker threads."""

    if _is_memory_uri(database_uri):
        # One shared connection, or every thread would see its own empty database.
        return create_engine(
            database_uri,
            poolclass=StaticPool,
            connect_args={"check_same_thread": False},
            future=True,
        )
    return create_engine(database_uri, future=True)


def startup(
    *,
    engine: Engine | None = None,
    database_uri: str | None = None,
    force: bool = False,
) -> Engine:
    """Initialise the engine and bring the schema to the latest revision."""

    if _STATE.engine is not None and not force:
        raise StartupError(
            "SQLAlchemy adapter already initialised. Pass force=True to reconfigure."
        )
    resolved_engine = engine or create_state_engine(database_uri or get_database_config().uri)
    upgrade_head(engine=resolved_engine)
    _STATE.engine = resolved_engine
    return resolved_engine


def configured_engine() -> Engine | None:
    """Return the engine currently managed by the adapter (if any)."""

    return _STATE.engine


def is_started() -> bool:
    return _STATE.engine is not None


def shutdown() -> None:
    """Dispose the managed engine and reset state (primarily for tests)."""

    if _STATE.engine is not None:
        _STATE.engine.dispose()
    _STATE.engine = None


def build_state_backend() -> SqlAlchemyStateBackend:
    engine = _STATE.engine
    if engine is None:
        raise StartupError(
            "SQLAlchemy adapter not initialised. Call fleetstate.adapters.sqlalchemy."
            "backend.startup() before building the state backend."
        )
    return SqlAlchemyStateBackend(engine)
