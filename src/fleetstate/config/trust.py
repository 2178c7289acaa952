"""Trusted document source configuration."""

from __future__ import annotations

import os
from dataclasses import dataclass
from pathlib import Path

_TRUE_VALUES = frozenset({"1", "true", "yes", "on"})


@dataclass(frozen=True, slots=True)
class TrustConfig:
    directory: Path | None = None
    use_staging: bool = False


def get_trust_config() -> TrustConfig:
    raw_dir = os.getenv("FLEETSTATE_TRUST_DIR")
    directory = Path(raw_dir).expanduser() if raw_dir and raw_dir.strip() else None
    use_staging = os.getenv("FLEETSTATE_USE_STAGING", "").strip().lower() in _TRUE_VALUES
    return TrustConfig(directory=directory, use_staging=use_staging)
