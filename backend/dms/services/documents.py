"""
Document Service — upload producer and metadata CRUD.

Upload flow:
  1. Validate metadata (title length, tag count)
  2. Resolve tags (get-or-create, case-insensitive)
  3. Insert the document row (id generated here, so the key is known)
  4. Store the file under <id>.pdf (PDF) or <id><ext> (anything else)
  5. Commit metadata + blob reference
  6. PDF only: publish one OCR job, then stamp ocr_enqueued_at

Step 6 is best-effort: the upload already succeeded, so a broker failure is
logged and the reconciliation sweep re-publishes the job later. A storage
failure in step 4 rolls the row back and surfaces as a STORAGE error.
A database error while stamping ocr_enqueued_at after a successful publish is
logged too; the upload still returns the document.

Deletes remove the rows first, then the stored file and its OCR text; an
object that cannot be removed is logged and left behind. requeue_ocr
publishes a fresh job for a stored PDF on request (CONFLICT for anything
else, MESSAGING when the broker refuses it).
"""

from __future__ import annotations

import logging
import mimetypes
import uuid
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Iterable, Protocol, Sequence

from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm.attributes import set_committed_value

from dms.core.config import settings
from dms.core.errors import DmsError, ErrorKind
from dms.models.documents import Document
from dms.repositories.documents import PDF_CONTENT_TYPE, DocumentPage, DocumentRepository
from dms.repositories.tags import MAX_TAG_LENGTH, TagRepository, normalize_tag_name, normalize_tag_names
from dms.messaging.publisher import PublishError
from dms.storage.s3 import ObjectStore, ObjectStoreError, text_key_for, upload_key

logger = logging.getLogger(__name__)

MIN_TITLE_LENGTH = 3
MAX_TITLE_LENGTH = 255
MAX_PAGE_SIZE = 100

PDF_MAGIC = b"%PDF"


class JobPublisher(Protocol):
    async def publish_job(
        self,
        document_id: uuid.UUID,
        s3_key: str,
        content_type: str = ...,
        uploaded_at: datetime | None = ...,
    ): ...


@dataclass(frozen=True)
class UploadedFile:
    filename:     str | None
    content:      bytes
    content_type: str | None = None


# ---------------------------------------------------------------------------
# Validation helpers
# ---------------------------------------------------------------------------

def is_pdf(upload: UploadedFile) -> bool:
    """Magic bytes first; fall back to the declared type and the extension."""
    if upload.content.startswith(PDF_MAGIC):
        return True
    if (upload.content_type or "").split(";")[0].strip().lower() == PDF_CONTENT_TYPE:
        return True
    return (upload.filename or "").lower().endswith(".pdf")


def _detect_content_type(upload: UploadedFile, pdf: bool) -> str:
    if pdf:
        return PDF_CONTENT_TYPE
    declared = (upload.content_type or "").split(";")[0].strip()
    if declared and declared != "application/octet-stream":
        return declared
    return mimetypes.guess_type(upload.filename or "")[0] or "application/octet-stream"


def _clean_title(title: str | None) -> str:
    cleaned = (title or "").strip()
    if len(cleaned) < MIN_TITLE_LENGTH:
        raise DmsError.validation(f"Title must be at least {MIN_TITLE_LENGTH} characters.", field="title")
    if len(cleaned) > MAX_TITLE_LENGTH:
        raise DmsError.validation(f"Title must be at most {MAX_TITLE_LENGTH} characters.", field="title")
    return cleaned


def _clean_tags(tags: Iterable[str] | None) -> list[str]:
    names = normalize_tag_names(tags or [])
    if len(names) > settings.max_tags_per_document:
        raise DmsError.validation(
            f"At most {settings.max_tags_per_document} tags are allowed.", field="tags",
        )
    too_long = [n for n in names if len(n) > MAX_TAG_LENGTH]
    if too_long:
        raise DmsError.validation(
            f"Tags must be at most {MAX_TAG_LENGTH} characters: {too_long[0][:20]}…", field="tags",
        )
    return names


# ---------------------------------------------------------------------------
# Service
# ---------------------------------------------------------------------------

class DocumentService:
    def __init__(
        self,
        db: AsyncSession,
        storage: ObjectStore,
        publisher: JobPublisher,
    ) -> None:
        self._db = db
        self._storage = storage
        self._publisher = publisher
        self._docs = DocumentRepository(db)
        self._tags = TagRepository(db)

    # ------------------------------------------------------------------
    # Create (upload producer)
    # ------------------------------------------------------------------

    async def create(
        self,
        title: str,
        description: str | None = None,
        tags: Iterable[str] | None = None,
        upload: UploadedFile | None = None,
    ) -> Document:
        # --- Step 1: Validate ----------------------------------------------
        clean_title = _clean_title(title)
        tag_names = _clean_tags(tags)
        if upload is not None and not upload.content:
            raise DmsError.validation("Uploaded file is empty.", field="file")

        document_id = uuid.uuid4()
        pdf = upload is not None and is_pdf(upload)

        try:
            # --- Step 2: Tags ----------------------------------------------
            tag_rows = await self._tags.get_or_create(tag_names)

            # --- Step 3: Row -----------------------------------------------
            doc = Document(
                id=document_id,
                title=clean_title,
                description=(description or "").strip() or None,
                tags=tag_rows,
            )
            if upload is not None:
                doc.s3_key = upload_key(document_id, upload.filename, pdf)
                doc.content_type = _detect_content_type(upload, pdf)
            await self._docs.add(doc)

            # --- Step 4: Blob ----------------------------------------------
            if upload is not None:
                await self._storage.put_object(doc.s3_key, upload.content, doc.content_type)

            # --- Step 5: Commit --------------------------------------------
            await self._db.commit()
        except ObjectStoreError as exc:
            await self._db.rollback()
            logger.error("Upload storage failed | doc=%s error=%s", document_id, exc)
            raise DmsError(ErrorKind.STORAGE, "Failed to store the uploaded file. Please retry.") from exc
        except IntegrityError as exc:
            await self._db.rollback()
            logger.warning("Document insert conflict | doc=%s error=%s", document_id, exc.orig)
            raise DmsError(ErrorKind.CONFLICT, "Document conflicts with an existing record.") from exc
        except SQLAlchemyError as exc:
            await self._db.rollback()
            logger.exception("Document insert failed | doc=%s", document_id)
            raise DmsError(ErrorKind.REPOSITORY, "Failed to save document metadata.") from exc

        logger.info(
            "Document created | doc=%s key=%s pdf=%s tags=%d",
            doc.id, doc.s3_key, pdf, len(tag_rows),
        )

        # --- Step 6: Publish OCR job (non-fatal) ---------------------------
        if pdf:
            await self._enqueue_ocr(doc)

        return doc

    async def _enqueue_ocr(self, doc: Document) -> None:
        try:
            await self._publisher.publish_job(doc.id, doc.s3_key, PDF_CONTENT_TYPE, uploaded_at=doc.created_at)
        except Exception as exc:
            # Reconciliation sweep picks it up once the broker is back
            logger.error("OCR job publish failed (non-fatal) | doc=%s error=%s", doc.id, exc)
            return

        stamp = datetime.now(timezone.utc)
        try:
            await self._docs.mark_enqueued(doc.id, stamp)
            await self._db.commit()
        except SQLAlchemyError as exc:
            # The upload is durable and the job is out; the sweep may publish it once more
            self._db.expunge_all()
            await self._db.rollback()
            logger.warning("Enqueue stamp not saved | doc=%s error=%s", doc.id, exc)
            return
        set_committed_value(doc, "ocr_enqueued_at", stamp)

    # ------------------------------------------------------------------
    # Read
    # ------------------------------------------------------------------

    async def get(self, document_id: uuid.UUID) -> Document:
        doc = await self._docs.get(document_id)
        if doc is None:
            raise DmsError.not_found("Document", document_id)
        return doc

    async def list_documents(
        self,
        page: int = 1,
        size: int = 20,
        *,
        query: str | None = None,
        tag: str | None = None,
    ) -> DocumentPage:
        if page < 1:
            raise DmsError.validation("page must be >= 1", field="page")
        if not 1 <= size <= MAX_PAGE_SIZE:
            raise DmsError.validation(f"size must be between 1 and {MAX_PAGE_SIZE}", field="size")

        tag_key = normalize_tag_name(tag).lower() if tag else None
        return await self._docs.list_page(
            page, size, query=(query or "").strip() or None, tag_key=tag_key or None,
        )

    # ------------------------------------------------------------------
    # Update / delete
    # ------------------------------------------------------------------

    async def update(
        self,
        document_id: uuid.UUID,
        *,
        title: str | None = None,
        description: str | None = None,
        tags: Sequence[str] | None = None,
    ) -> Document:
        doc = await self.get(document_id)

        if title is not None:
            doc.title = _clean_title(title)
        if description is not None:
            doc.description = description.strip() or None
        if tags is not None:
            doc.tags = await self._tags.get_or_create(_clean_tags(tags))

        await self._db.commit()
        logger.info("Document updated | doc=%s", document_id)
        return doc

    async def delete(self, document_id: uuid.UUID) -> None:
        doc = await self.get(document_id)
        s3_key = doc.s3_key
        await self._docs.delete(doc)
        await self._db.commit()
        logger.info("Document deleted | doc=%s", document_id)
        await self._remove_objects([s3_key])

    async def delete_many(self, document_ids: Iterable[uuid.UUID]) -> int:
        deleted = await self._docs.delete_many(document_ids)
        s3_keys = [doc.s3_key for doc in deleted]
        await self._db.commit()
        logger.info("Documents deleted | count=%d", len(deleted))
        await self._remove_objects(s3_keys)
        return len(deleted)

    async def _remove_objects(self, s3_keys: Iterable[str | None]) -> None:
        """Drop the file and its OCR text. The rows are gone already, so failures only leave orphans."""
        for s3_key in filter(None, s3_keys):
            keys = [s3_key]
            if s3_key.lower().endswith(".pdf"):
                keys.append(text_key_for(s3_key))
            for key in keys:
                try:
                    await self._storage.delete_object(key)
                except ObjectStoreError as exc:
                    logger.warning("Object not removed | key=%s error=%s", key, exc)

    # ------------------------------------------------------------------
    # OCR re-run
    # ------------------------------------------------------------------

    async def requeue_ocr(self, document_id: uuid.UUID) -> Document:
        """Publish a fresh OCR job for a stored PDF; the worker overwrites ocr_text."""
        doc = await self.get(document_id)
        if doc.content_type != PDF_CONTENT_TYPE or not doc.s3_key:
            raise DmsError(
                ErrorKind.CONFLICT,
                "Only documents with a stored PDF can be sent to OCR.",
                details={"id": str(document_id), "content_type": doc.content_type},
            )

        try:
            await self._publisher.publish_job(doc.id, doc.s3_key, PDF_CONTENT_TYPE, uploaded_at=doc.created_at)
        except PublishError as exc:
            logger.error("OCR re-queue failed | doc=%s error=%s", doc.id, exc)
            raise DmsError(ErrorKind.MESSAGING, "OCR queue is unavailable. Please retry later.") from exc

        stamp = datetime.now(timezone.utc)
        await self._docs.mark_enqueued(doc.id, stamp)
        await self._db.commit()
        set_committed_value(doc, "ocr_enqueued_at", stamp)
        logger.info("OCR re-queued | doc=%s key=%s", doc.id, doc.s3_key)
        return doc
