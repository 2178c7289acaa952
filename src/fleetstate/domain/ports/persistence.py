"""Ports for persisting the state document."""

from __future__ import annotations

from typing import Protocol, runtime_checkable


@runtime_checkable
class StateBackend(Protocol):
    """Durable home of the serialized state document.

    ``write`` must replace the stored document atomically: after a failed write
    the previous document is still the one ``read`` returns.
    """

    def read(self) -> str | None: ...

    def write(self, document: str, *, dirty_count: int) -> None: ...
