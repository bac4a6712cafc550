"""
Record Store — SQLAlchemy model for the document table.

All collections share one ``records`` table keyed by (collection, record_id).
The payload is JSON (JSONB on PostgreSQL) and ``revision`` backs the
conditional writes the optimistic writer relies on.
"""

from __future__ import annotations

from sqlalchemy import JSON, Column, DateTime, Index, Integer, String, func
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import DeclarativeBase


class Base(DeclarativeBase):
    """SQLAlchemy declarative base for the record store."""
    pass


class RecordDB(Base):
    """One governance document (role, user role, dispute, loan, ...)."""

    __tablename__ = "records"

    collection = Column(
        String(64),
        primary_key=True,
        comment="Logical collection, e.g. 'disputes' or 'loans'",
    )
    record_id = Column(
        String(128),
        primary_key=True,
        comment="Document id within the collection",
    )
    revision = Column(
        Integer,
        nullable=False,
        default=1,
        comment="Incremented on every write; compared by conditional updates",
    )
    data = Column(
        JSON().with_variant(JSONB(), "postgresql"),
        nullable=False,
        comment="Document body with camelCase keys",
    )
    created_at = Column(DateTime(timezone=True), nullable=False, server_default=func.now())
    updated_at = Column(
        DateTime(timezone=True),
        nullable=False,
        server_default=func.now(),
        onupdate=func.now(),
    )

    __table_args__ = (
        Index("ix_records_collection", "collection"),
    )

    def __repr__(self) -> str:
        return f"<RecordDB {self.collection}/{self.record_id} rev={self.revision}>"
