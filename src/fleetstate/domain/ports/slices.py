"""Ports for materialising quota groups as OS resource slices."""

from __future__ import annotations

from typing import Protocol, runtime_checkable


@runtime_checkable
class SliceController(Protocol):
    """Resource-control collaborator driven by the quota task handlers.

    Slices are addressed by their quota group path (``parent/child`` for
    sub-groups). Implementations raise on failure; the task runner records the
    error and rolls the change back.
    """

    def write_slice(self, path: str, memory_limit: int) -> None: ...

    def remove_slice(self, path: str) -> None: ...

    def start_slice(self, path: str) -> None: ...

    def stop_slice(self, path: str) -> None: ...

    def daemon_reload(self) -> None: ...

    def restart_services(self, snap: str) -> None: ...


__all__ = ["SliceController"]
