"""Task runner and ensure-loop defaults."""

from __future__ import annotations

import os
from dataclasses import dataclass, field
from datetime import timedelta
from types import MappingProxyType
from typing import TYPE_CHECKING

from .env import positive_float_env, positive_int_env
from .errors import ConfigurationError

if TYPE_CHECKING:
    from collections.abc import Mapping

DEFAULT_MAX_WORKERS = 8
DEFAULT_MAX_RETRIES = 10
DEFAULT_ENSURE_INTERVAL = timedelta(minutes=5)
DEFAULT_PRUNE_INTERVAL = timedelta(minutes=10)
DEFAULT_PRUNE_WAIT = timedelta(hours=24)
DEFAULT_MAX_READY_CHANGES = 500


@dataclass(frozen=True, slots=True)
class RunnerConfig:
    max_workers: int = DEFAULT_MAX_WORKERS
    max_retries: int = DEFAULT_MAX_RETRIES
    kind_concurrency: Mapping[str, int] = field(default_factory=lambda: MappingProxyType({}))
    ensure_interval: timedelta = DEFAULT_ENSURE_INTERVAL
    prune_interval: timedelta = DEFAULT_PRUNE_INTERVAL
    prune_wait: timedelta = DEFAULT_PRUNE_WAIT
    max_ready_changes: int = DEFAULT_MAX_READY_CHANGES

    def __post_init__(self) -> None:
        if self.max_workers <= 0:
            raise ConfigurationError("max_workers must be positive")
        if self.max_retries < 0:
            raise ConfigurationError("max_retries must not be negative")
        for kind, limit in self.kind_concurrency.items():
            if limit <= 0:
                raise ConfigurationError(f"concurrency limit for {kind!r} must be positive")


def parse_kind_concurrency(raw: str) -> dict[str, int]:
    """Parse ``kind=n,kind=n`` into a mapping of per-kind worker caps."""

    limits: dict[str, int] = {}
    for item in raw.split(","):
        item = item.strip()
        if not item:
            continue
        kind, sep, value = item.partition("=")
        if not sep or not kind.strip():
            raise ConfigurationError(f"Invalid kind concurrency entry: {item!r}")
        try:
            limits[kind.strip()] = int(value)
        except ValueError as exc:
            raise ConfigurationError(f"Invalid kind concurrency limit: {item!r}") from exc
    return limits


def get_runner_config() -> RunnerConfig:
    return RunnerConfig(
        max_workers=positive_int_env("FLEETSTATE_MAX_WORKERS", DEFAULT_MAX_WORKERS),
        max_retries=positive_int_env("FLEETSTATE_MAX_RETRIES", DEFAULT_MAX_RETRIES),
        kind_concurrency=MappingProxyType(
            parse_kind_concurrency(os.getenv("FLEETSTATE_KIND_CONCURRENCY", ""))
        ),
        ensure_interval=timedelta(
            seconds=positive_float_env(
                "FLEETSTATE_ENSURE_INTERVAL", DEFAULT_ENSURE_INTERVAL.total_seconds()
            )
        ),
    )
