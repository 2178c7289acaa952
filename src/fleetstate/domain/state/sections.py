"""Typed, versioned manager sections stored inside the state document."""

from __future__ import annotations

import logging
from typing import Any, ClassVar, Self

from pydantic import BaseModel, ConfigDict, ValidationError

log = logging.getLogger(__name__)


class Section(BaseModel):
    """Base class for the private section a manager keeps in the state.

    Subclasses bump ``schema_version`` when their layout changes and may
    override :meth:`upgrade` to carry older data forward. Absent, older or
    undecodable sections decode to defaults rather than failing, so managers
    can evolve their layout independently.
    """

    model_config = ConfigDict(extra="ignore")

    schema_version: ClassVar[int] = 1

    version: int = 0

    @classmethod
    def upgrade(cls, raw: dict[str, Any], from_version: int) -> dict[str, Any] | None:
        """Return ``raw`` migrated to the current layout, or ``None`` to start fresh."""

        _ = from_version
        return raw

    @classmethod
    def decode(cls, raw: object) -> Self:
        if raw is None:
            return cls(version=cls.schema_version)
        if not isinstance(raw, dict):
            log.warning("Discarding %s section: expected an object", cls.__name__)
            return cls(version=cls.schema_version)

        stored_version = raw.get("version", 0)
        payload: dict[str, Any] | None = raw
        if stored_version != cls.schema_version:
            payload = cls.upgrade(dict(raw), stored_version)
            if payload is None:
                return cls(version=cls.schema_version)
        try:
            section = cls.model_validate(payload)
        except ValidationError:
            log.warning("Discarding undecodable %s section", cls.__name__, exc_info=True)
            return cls(version=cls.schema_version)
        section.version = cls.schema_version
        return section

    def encode(self) -> dict[str, Any]:
        data = self.model_dump(mode="json")
        data["version"] = self.schema_version
        return data
