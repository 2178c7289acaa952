"""Slice controller that records intended resource-control operations in the log."""

from __future__ import annotations

import logging

log = logging.getLogger(__name__)


class LoggingSliceController:
    """Dry-run :class:`~fleetstate.domain.ports.slices.SliceController`.

    Used when no OS resource-control integration is configured.
    """

    def write_slice(self, path: str, memory_limit: int) -> None:
        log.info("Would write slice %s with memory limit %d", path, memory_limit)

    def remove_slice(self, path: str) -> None:
        log.info("Would remove slice %s", path)

    def start_slice(self, path: str) -> None:
        log.info("Would start slice %s", path)

    def stop_slice(self, path: str) -> None:
        log.info("Would stop slice %s", path)

    def daemon_reload(self) -> None:
        log.info("Would reload the service manager")

    def restart_services(self, snap: str) -> None:
        log.info("Would restart services of snap %s", snap)
