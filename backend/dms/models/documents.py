"""
SQLAlchemy ORM Models — Documents & Tags

Using SQLAlchemy mapped classes (2.x style) for full async support.
Column types are the generic ones (Uuid, Text, DateTime(timezone=True)) so the
same metadata runs on PostgreSQL in production and SQLite in tests.

Pipeline columns on Document:
    ocr_text        — written only by the OCR worker (overwrite, idempotent)
    summary         — written only by the summarisation worker, once
    ocr_enqueued_at — stamped when the OCR job was published; the
                      reconciliation sweep picks up PDFs where it stays NULL
"""

from __future__ import annotations

import uuid
from datetime import datetime, timezone
from typing import Optional

from sqlalchemy import (
    Column,
    DateTime,
    ForeignKey,
    Index,
    String,
    Table,
    Text,
    Uuid,
)
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column, relationship


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


# ---------------------------------------------------------------------------
# Declarative base: shared across all models
# ---------------------------------------------------------------------------

class Base(DeclarativeBase):
    pass


# ---------------------------------------------------------------------------
# Association table: documents <-> tags (set semantics)
# ---------------------------------------------------------------------------

document_tags = Table(
    "document_tags",
    Base.metadata,
    Column("document_id", Uuid, ForeignKey("documents.id", ondelete="CASCADE"), primary_key=True),
    Column("tag_id",      Uuid, ForeignKey("tags.id",      ondelete="CASCADE"), primary_key=True),
)


# ---------------------------------------------------------------------------
# Tag model: tags
# ---------------------------------------------------------------------------

class Tag(Base):
    """
    A normalised label. Created lazily on first use and never deleted;
    orphaned tags are allowed.

    name_key is the lower-cased name and carries the UNIQUE constraint, so
    "Invoice" and "invoice" resolve to the same row.
    """

    __tablename__ = "tags"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    name: Mapped[str] = mapped_column(
        String(64),
        nullable=False,
        comment="Display form: trimmed, internal whitespace collapsed",
    )
    name_key: Mapped[str] = mapped_column(
        String(64),
        nullable=False,
        unique=True,
        comment="Lower-cased name used for case-insensitive lookup",
    )

    def __repr__(self) -> str:
        return f"<Tag id={self.id} name={self.name!r}>"


# ---------------------------------------------------------------------------
# Document model: documents
# ---------------------------------------------------------------------------

class Document(Base):
    """
    Metadata for one uploaded file plus the two pipeline outputs.

    Lifecycle:
        created   — row inserted, blob stored under <id>.pdf, job published
        ocr'd     — ocr_text set by the OCR worker
        summarised— summary set by the summarisation worker

    The id is generated client-side so the storage key is known before the
    row exists.
    """

    __tablename__ = "documents"
    __table_args__ = (
        Index("idx_documents_created_at", "created_at"),
    )

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)

    title: Mapped[str] = mapped_column(String(255), nullable=False)
    description: Mapped[Optional[str]] = mapped_column(Text, nullable=True)

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        default=_utcnow,
    )

    # Stored upload
    s3_key: Mapped[Optional[str]] = mapped_column(
        Text,
        nullable=True,
        comment="Object key of the uploaded file: <id>.pdf or <id><ext>",
    )
    content_type: Mapped[Optional[str]] = mapped_column(
        Text,
        nullable=True,
        comment="MIME type detected server-side",
    )

    # Pipeline outputs
    ocr_text: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    summary: Mapped[Optional[str]] = mapped_column(Text, nullable=True)

    ocr_enqueued_at: Mapped[Optional[datetime]] = mapped_column(
        DateTime(timezone=True),
        nullable=True,
        comment="Set once the OCR job was accepted by the broker",
    )

    tags: Mapped[list[Tag]] = relationship(
        secondary=document_tags,
        lazy="selectin",
        order_by=Tag.name,
    )

    @property
    def tag_names(self) -> list[str]:
        return [t.name for t in self.tags]

    def __repr__(self) -> str:
        return f"<Document id={self.id} title={self.title!r}>"
