"""
Document persistence.

The pipeline writes go through narrow column updates instead of loading the
ORM object, so the OCR worker and the summariser never clobber each other's
columns or a concurrent metadata edit:

    set_ocr_text   UPDATE documents SET ocr_text=:t WHERE id=:id
    set_summary    UPDATE documents SET summary=:s  WHERE id=:id AND summary IS NULL
"""

from __future__ import annotations

import logging
import uuid
from dataclasses import dataclass
from datetime import datetime
from typing import Iterable, Sequence

from sqlalchemy import and_, func, or_, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from dms.models.documents import Document, Tag, document_tags

logger = logging.getLogger(__name__)

PDF_CONTENT_TYPE = "application/pdf"


@dataclass(frozen=True)
class PendingSummary:
    """One row awaiting a summary — only the columns the summariser needs."""
    document_id: uuid.UUID
    ocr_text:    str


@dataclass(frozen=True)
class DocumentPage:
    items: list[Document]
    total: int
    page:  int
    size:  int


class DocumentRepository:
    def __init__(self, session: AsyncSession) -> None:
        self._session = session

    # ------------------------------------------------------------------
    # CRUD
    # ------------------------------------------------------------------

    async def add(self, document: Document) -> Document:
        self._session.add(document)
        await self._session.flush()
        return document

    async def get(self, document_id: uuid.UUID) -> Document | None:
        return await self._session.get(Document, document_id)

    async def list_page(
        self,
        page: int = 1,
        size: int = 20,
        *,
        query: str | None = None,
        tag_key: str | None = None,
    ) -> DocumentPage:
        """Newest first, with optional substring search and tag filter."""
        conditions = []
        if query:
            pattern = f"%{query}%"
            conditions.append(
                or_(Document.title.ilike(pattern), Document.description.ilike(pattern))
            )
        if tag_key:
            tagged = (
                select(document_tags.c.document_id)
                .join(Tag, Tag.id == document_tags.c.tag_id)
                .where(Tag.name_key == tag_key)
            )
            conditions.append(Document.id.in_(tagged))

        where = and_(*conditions) if conditions else None

        count_stmt = select(func.count()).select_from(Document)
        items_stmt = (
            select(Document)
            .order_by(Document.created_at.desc(), Document.id)
            .offset((page - 1) * size)
            .limit(size)
        )
        if where is not None:
            count_stmt = count_stmt.where(where)
            items_stmt = items_stmt.where(where)

        total = (await self._session.execute(count_stmt)).scalar_one()
        items = list((await self._session.execute(items_stmt)).scalars().all())
        return DocumentPage(items=items, total=total, page=page, size=size)

    async def delete(self, document: Document) -> None:
        await self._session.delete(document)
        await self._session.flush()

    async def delete_many(self, document_ids: Iterable[uuid.UUID]) -> Sequence[Document]:
        """Delete the rows that exist and return them."""
        ids = list(dict.fromkeys(document_ids))
        if not ids:
            return []
        result = await self._session.execute(select(Document).where(Document.id.in_(ids)))
        docs = result.scalars().all()
        for doc in docs:
            await self._session.delete(doc)
        await self._session.flush()
        return docs

    # ------------------------------------------------------------------
    # OCR pipeline
    # ------------------------------------------------------------------

    async def set_ocr_text(self, document_id: uuid.UUID, text: str) -> bool:
        """Overwrite ocr_text; False when the row no longer exists."""
        result = await self._session.execute(
            update(Document)
            .where(Document.id == document_id)
            .values(ocr_text=text)
            .execution_options(synchronize_session=False)
        )
        return result.rowcount > 0

    async def mark_enqueued(self, document_id: uuid.UUID, at: datetime) -> None:
        await self._session.execute(
            update(Document)
            .where(Document.id == document_id)
            .values(ocr_enqueued_at=at)
            .execution_options(synchronize_session=False)
        )

    async def find_unenqueued(self, created_before: datetime, limit: int) -> Sequence[Document]:
        """PDFs whose OCR job never reached the broker, oldest first."""
        result = await self._session.execute(
            select(Document)
            .where(
                Document.content_type == PDF_CONTENT_TYPE,
                Document.s3_key.is_not(None),
                Document.ocr_text.is_(None),
                Document.ocr_enqueued_at.is_(None),
                Document.created_at < created_before,
            )
            .order_by(Document.created_at.asc())
            .limit(limit)
        )
        return result.scalars().all()

    # ------------------------------------------------------------------
    # Summarisation pipeline
    # ------------------------------------------------------------------

    async def next_pending_summary(self) -> PendingSummary | None:
        """Oldest document that has OCR text but no summary yet."""
        result = await self._session.execute(
            select(Document.id, Document.ocr_text)
            .where(
                Document.ocr_text.is_not(None),
                Document.ocr_text != "",
                Document.summary.is_(None),
            )
            .order_by(Document.created_at.asc())
            .limit(1)
        )
        row = result.first()
        if row is None:
            return None
        return PendingSummary(document_id=row.id, ocr_text=row.ocr_text)

    async def set_summary(self, document_id: uuid.UUID, summary: str) -> bool:
        """Write the summary once; False if the row is gone or already summarised."""
        result = await self._session.execute(
            update(Document)
            .where(Document.id == document_id, Document.summary.is_(None))
            .values(summary=summary)
            .execution_options(synchronize_session=False)
        )
        return result.rowcount > 0
