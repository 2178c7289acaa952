"""Where the state checkpoint lives on disk.

The whole state document is stored in one SQLite file inside the data directory.
``FLEETSTATE_DATABASE_URI`` bypasses the file layout entirely, which tests use to
point at a temporary database.
"""

from __future__ import annotations

import os
from dataclasses import dataclass
from pathlib import Path
from typing import Final

from .errors import ConfigurationError

APP_DIR_NAME: Final[str] = "fleetstate"
DEFAULT_STATE_FILENAME: Final[str] = "state.db"
DATA_DIR_MODE: Final[int] = 0o700


@dataclass(frozen=True, slots=True)
class StorageConfig:
    data_dir: Path
    state_filename: str = DEFAULT_STATE_FILENAME

    def __post_init__(self) -> None:
        name = self.state_filename
        if not name or Path(name).name != name or name in {".", ".."}:
            msg = f"state file must be a bare file name, got {name!r}"
            raise ConfigurationError(msg, variable="FLEETSTATE_STATE_FILE")

    def resolve_data_dir(self) -> Path:
        return self.data_dir.expanduser().resolve()

    def ensure_data_dir(self) -> Path:
        # The checkpoint holds every pending change, so keep it private to the owner.
        data_dir = self.resolve_data_dir()
        data_dir.mkdir(mode=DATA_DIR_MODE, parents=True, exist_ok=True)
        return data_dir

    def state_path(self, *, ensure: bool = True) -> Path:
        base = self.ensure_data_dir() if ensure else self.resolve_data_dir()
        return base / self.state_filename

    def database_uri(self) -> str:
        return f"sqlite+pysqlite:///{self.state_path()}"


@dataclass(frozen=True, slots=True)
class DatabaseConfig:
    uri: str


def _default_data_dir() -> Path:
    base = os.getenv("XDG_STATE_HOME") or os.getenv("XDG_DATA_HOME")
    base_path = Path(base) if base else (Path.home() / ".local" / "state")
    return (base_path / APP_DIR_NAME).expanduser().resolve()


def get_storage_config() -> StorageConfig:
    """Read ``FLEETSTATE_DATA_DIR`` and ``FLEETSTATE_STATE_FILE``."""

    env_dir = os.getenv("FLEETSTATE_DATA_DIR")
    data_dir = Path(env_dir) if env_dir else _default_data_dir()
    filename = os.getenv("FLEETSTATE_STATE_FILE", "").strip() or DEFAULT_STATE_FILENAME
    return StorageConfig(data_dir=data_dir, state_filename=filename)


def get_database_config(*, storage: StorageConfig | None = None) -> DatabaseConfig:
    env_uri = os.getenv("FLEETSTATE_DATABASE_URI")
    if env_uri:
        return DatabaseConfig(uri=env_uri)
    storage_config = storage or get_storage_config()
    return DatabaseConfig(uri=storage_config.database_uri())
