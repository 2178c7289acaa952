"""Quota groups: named memory limits applied to a set of snaps."""

from __future__ import annotations

from .control import (
    TASK_KINDS,
    all_quotas,
    create_quota,
    ensure_snap_absent_from_quota,
    remove_quota,
    update_quota,
)
from .errors import QuotaConflictError, QuotaError
from .handlers import QuotaHandlers
from .manager import QuotaManager
from .models import (
    GiB,
    KiB,
    MiB,
    QUOTAS_SECTION,
    QuotaGroup,
    QuotaSection,
    format_memory_size,
    parse_memory_size,
)

__all__ = [
    "QUOTAS_SECTION",
    "TASK_KINDS",
    "GiB",
    "KiB",
    "MiB",
    "QuotaConflictError",
    "QuotaError",
    "QuotaGroup",
    "QuotaHandlers",
    "QuotaManager",
    "QuotaSection",
    "all_quotas",
    "create_quota",
    "ensure_snap_absent_from_quota",
    "format_memory_size",
    "parse_memory_size",
    "remove_quota",
    "update_quota",
]
