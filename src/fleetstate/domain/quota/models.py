"""Quota group records kept in the ``quotas`` state section."""

from __future__ import annotations

import re
from typing import ClassVar, Final

from pydantic import BaseModel, Field, PositiveInt

from fleetstate.domain.state import Section

from .errors import QuotaError

QUOTAS_SECTION: Final[str] = "quotas"

KiB: Final[int] = 1 << 10
MiB: Final[int] = 1 << 20
GiB: Final[int] = 1 << 30

# Smallest limit a slice can usefully enforce.
MIN_MEMORY_LIMIT: Final[int] = 4 * KiB

_NAME_RE = re.compile(r"^[a-z0-9](?:-?[a-z0-9])*$")
_MAX_NAME_LENGTH = 40
_SIZE_RE = re.compile(r"^\s*(\d+)\s*([KMG]i?B?|B)?\s*$", re.IGNORECASE)
_UNITS = {"": 1, "B": 1, "K": KiB, "M": MiB, "G": GiB}


class QuotaGroup(BaseModel):
    memory_limit: PositiveInt
    snaps: list[str] = Field(default_factory=list)
    parent: str | None = None
    sub_groups: list[str] = Field(default_factory=list)


class QuotaSection(Section):
    schema_version: ClassVar[int] = 1

    groups: dict[str, QuotaGroup] = Field(default_factory=dict)

    def group_of(self, snap: str) -> str | None:
        """Name of the group ``snap`` belongs to, if any."""

        for name, group in self.groups.items():
            if snap in group.snaps:
                return name
        return None

    def path(self, name: str) -> str:
        """Slice path of group ``name``: its ancestors joined by ``/``."""

        parts = [name]
        group = self.groups.get(name)
        while group is not None and group.parent is not None:
            parts.append(group.parent)
            group = self.groups.get(group.parent)
        return "/".join(reversed(parts))


def validate_group_name(name: str) -> None:
    if not name:
        raise QuotaError("quota group name must not be empty")
    if len(name) > _MAX_NAME_LENGTH:
        raise QuotaError(f"invalid quota group name {name!r}: longer than {_MAX_NAME_LENGTH}")
    if not _NAME_RE.match(name):
        raise QuotaError(
            f"invalid quota group name {name!r}: use lowercase letters, digits and dashes"
        )


def validate_memory_limit(memory_limit: int) -> None:
    if memory_limit < MIN_MEMORY_LIMIT:
        raise QuotaError(
            f"memory limit {memory_limit} is too small: size must be at least {MIN_MEMORY_LIMIT}"
        )


def parse_memory_size(raw: str) -> int:
    """Parse ``512MiB``, ``1G`` or a plain byte count into bytes."""

    match = _SIZE_RE.match(raw)
    if match is None:
        raise QuotaError(f"invalid memory size {raw!r}")
    number, unit = match.groups()
    return int(number) * _UNITS[(unit or "")[:1].upper()]


def format_memory_size(size: int) -> str:
    for unit, factor in (("GiB", GiB), ("MiB", MiB), ("KiB", KiB)):
        if size >= factor and size % factor == 0:
            return f"{size // factor}{unit}"
    return f"{size}B"
