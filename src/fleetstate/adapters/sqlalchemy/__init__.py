"""SQLAlchemy adapter package for fleetstate."""

from __future__ import annotations

from .backend import (
    SqlAlchemyStateBackend,
    StartupError,
    build_state_backend,
    configured_engine,
    create_state_engine,
    is_started,
    shutdown,
    startup,
)
from .tables import metadata, state_document_table

__all__ = [
    "SqlAlchemyStateBackend",
    "StartupError",
    "build_state_backend",
    "configured_engine",
    "create_state_engine",
    "is_started",
    "metadata",
    "shutdown",
    "startup",
    "state_document_table",
]
