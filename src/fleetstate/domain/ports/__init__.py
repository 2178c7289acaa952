"""Domain port definitions for adapters."""

from __future__ import annotations

from .persistence import StateBackend
from .slices import SliceController

__all__ = ["SliceController", "StateBackend"]
