"""
Pydantic v2 schemas for the documents API.

Design principles:
  - Request schemas validate input shape; business rules (title length,
    tag limits) live in DocumentService so the API and any other caller
    share them.
  - Response schemas expose the pipeline outputs (ocr_text, summary) as
    nullable fields; null means "not produced yet".
  - Error schemas carry machine-readable error codes.
"""

from __future__ import annotations

from datetime import datetime
from uuid import UUID

from pydantic import BaseModel, ConfigDict, Field

from dms.models.documents import Document


# ---------------------------------------------------------------------------
# Requests
# ---------------------------------------------------------------------------

class DocumentUpdateRequest(BaseModel):
    """PATCH body — omitted fields are left unchanged; tags replace the set."""
    title:       str | None       = Field(None, max_length=255)
    description: str | None       = None
    tags:        list[str] | None = None


class BulkDeleteRequest(BaseModel):
    ids: list[UUID] = Field(..., min_length=1, max_length=500)


# ---------------------------------------------------------------------------
# Responses
# ---------------------------------------------------------------------------

class DocumentResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id:              UUID
    title:           str
    description:     str | None
    tags:            list[str]
    created_at:      datetime
    content_type:    str | None
    s3_key:          str | None
    ocr_text:        str | None
    summary:         str | None
    ocr_enqueued_at: datetime | None = Field(
        None,
        description="When the OCR job was accepted by the broker; null for non-PDFs or pending re-publish",
    )

    @classmethod
    def from_document(cls, doc: Document) -> "DocumentResponse":
        return cls(
            id=doc.id,
            title=doc.title,
            description=doc.description,
            tags=doc.tag_names,
            created_at=doc.created_at,
            content_type=doc.content_type,
            s3_key=doc.s3_key,
            ocr_text=doc.ocr_text,
            summary=doc.summary,
            ocr_enqueued_at=doc.ocr_enqueued_at,
        )


class DocumentListResponse(BaseModel):
    items: list[DocumentResponse]
    total: int
    page:  int
    size:  int


class BulkDeleteResponse(BaseModel):
    deleted: int


# ---------------------------------------------------------------------------
# Structured error bodies
# ---------------------------------------------------------------------------

class ErrorDetail(BaseModel):
    """Single structured error — may appear in a list."""
    field:   str | None = Field(None, description="Request field that caused the error, if applicable")
    message: str
    code:    str         = Field(..., description="Machine-readable error code for client handling")


class ErrorResponse(BaseModel):
    """
    Uniform error envelope for all 4xx/5xx responses.
    Clients should check `error_code` for programmatic handling.
    """
    error_code: str               = Field(..., description="Stable machine-readable code")
    message:    str               = Field(..., description="Human-readable summary")
    details:    list[ErrorDetail] = Field(default_factory=list)
    request_id: str | None        = Field(None, description="Trace ID for log correlation")
