"""SQLAlchemy Core table holding the serialized state document."""

from __future__ import annotations

from typing import Final

from sqlalchemy import Column, DateTime, Integer, MetaData, Table, Text

STATE_DOCUMENT_ID: Final[int] = 1

metadata = MetaData()

state_document_table = Table(
    "state_document",
    metadata,
    Column("id", Integer, primary_key=True),
    Column("format_version", Integer, nullable=False),
    Column("data", Text, nullable=False),
    Column("dirty_count", Integer, nullable=False, server_default="0"),
    Column("updated_at", DateTime(timezone=True), nullable=False),
)

