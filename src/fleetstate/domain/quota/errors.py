"""Errors raised when requesting quota group changes."""

from __future__ import annotations


class QuotaError(ValueError):
    """Raised for invalid quota group requests."""


class QuotaConflictError(QuotaError):
    """Raised when another unfinished change already targets the quota group."""

    def __init__(self, name: str, change_id: str, kind: str) -> None:
        self.name = name
        self.change_id = change_id
        self.kind = kind
        super().__init__(
            f"quota group {name!r} has {kind!r} change in progress (change {change_id})"
        )
