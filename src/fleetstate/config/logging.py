"""Root logger setup for the fleetstate daemon and CLI."""

from __future__ import annotations

import logging
import os
from typing import Final

from .errors import ConfigurationError

LOG_LEVEL_ENV: Final[str] = "FLEETSTATE_LOG_LEVEL"

# Library loggers that drown out task lifecycle lines at INFO.
_QUIET_LOGGERS: Final[tuple[str, ...]] = ("alembic", "sqlalchemy.engine")


def resolve_log_level(value: str | None = None) -> int:
    """Map a level name such as ``debug`` or ``WARNING`` to its numeric value.

    Reads ``FLEETSTATE_LOG_LEVEL`` when ``value`` is omitted and falls back to INFO.
    """

    raw = value if value is not None else os.getenv(LOG_LEVEL_ENV)
    if raw is None or not raw.strip():
        return logging.INFO
    level = logging.getLevelName(raw.strip().upper())
    if not isinstance(level, int):
        msg = f"{LOG_LEVEL_ENV} must be a logging level name, got {raw!r}"
        raise ConfigurationError(msg, variable=LOG_LEVEL_ENV)
    return level


def configure_logging(*, level: int | None = None, force: bool = False) -> None:
    """Send task and change lifecycle records to stderr.

    ``level`` defaults to the environment setting. Alembic and the SQLAlchemy engine
    stay at WARNING unless fleetstate itself runs at DEBUG.
    """

    resolved = resolve_log_level() if level is None else level
    logging.basicConfig(
        level=resolved,
        format="%(asctime)s %(levelname)s [%(name)s] %(message)s",
        datefmt="%H:%M:%S",
        force=force,
    )
    quiet = resolved if resolved <= logging.DEBUG else logging.WARNING
    for name in _QUIET_LOGGERS:
        logging.getLogger(name).setLevel(quiet)
