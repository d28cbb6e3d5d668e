"""SQLAlchemy ORM models for the Focal FinOps key-value store.

All tables use the `focal_` prefix.

Domain model:
  KeyValueEntry: one namespaced blob (cache envelope or metadata document)
"""
from __future__ import annotations

from datetime import datetime

from sqlalchemy import DateTime, Index, LargeBinary, String
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column


class Base(DeclarativeBase):
    """Declarative base holding the metadata for every focal_ table."""


class KeyValueEntry(Base):
    """A single blob in the namespaced key-value store.

    The aggregation cache stores its JSON envelopes here under the cache
    namespace; other components use their own namespaces. A (namespace, key)
    pair maps to exactly one row and writes replace the row atomically.

    Table: focal_kv_entries
    """

    __tablename__ = "focal_kv_entries"

    namespace: Mapped[str] = mapped_column(
        String(128),
        primary_key=True,
        comment="Owning component namespace (e.g. focal_cache)",
    )
    key: Mapped[str] = mapped_column(
        String(512),
        primary_key=True,
        comment="Caller-defined key, unique within the namespace",
    )
    blob: Mapped[bytes] = mapped_column(
        LargeBinary,
        nullable=False,
        comment="Opaque payload (JSON-encoded cache envelope for the aggregation cache)",
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        comment="Last write time (UTC)",
    )

    __table_args__ = (Index("ix_focal_kv_entries_namespace", "namespace"),)
