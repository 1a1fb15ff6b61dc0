"""
OCR job message — the wire contract between the upload API and the OCR worker.

    {"documentId": "<uuid>", "s3Key": "<id>.pdf",
     "contentType": "application/pdf", "uploadedAt": "<ISO-8601>"}

Keys are matched case-insensitively on the way in ("DocumentId" and
"documentid" are both accepted). Anything that cannot be turned into a job —
bad JSON, a non-object, a missing / nil document id, a blank key — raises
MalformedJobError; the consumer acks and drops such deliveries.
"""

from __future__ import annotations

import json
import uuid
from datetime import datetime, timezone
from typing import Any

from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator

PDF_CONTENT_TYPE = "application/pdf"

_NIL_UUID = uuid.UUID(int=0)

# lower-cased wire key -> canonical alias
_CANONICAL_KEYS = {
    "documentid":  "documentId",
    "s3key":       "s3Key",
    "contenttype": "contentType",
    "uploadedat":  "uploadedAt",
}


class MalformedJobError(ValueError):
    """Delivery body is not a usable OCR job; never worth retrying."""


class OcrJobMessage(BaseModel):
    model_config = ConfigDict(populate_by_name=True, frozen=True)

    document_id:  uuid.UUID = Field(..., alias="documentId")
    s3_key:       str       = Field(..., alias="s3Key", min_length=1)
    content_type: str       = Field(PDF_CONTENT_TYPE, alias="contentType")
    uploaded_at:  datetime  = Field(
        default_factory=lambda: datetime.now(timezone.utc),
        alias="uploadedAt",
    )

    @field_validator("document_id")
    @classmethod
    def _not_nil(cls, v: uuid.UUID) -> uuid.UUID:
        if v == _NIL_UUID:
            raise ValueError("documentId must not be the nil UUID")
        return v

    @field_validator("s3_key")
    @classmethod
    def _not_blank(cls, v: str) -> str:
        if not v.strip():
            raise ValueError("s3Key must not be blank")
        return v

    @field_validator("content_type", mode="before")
    @classmethod
    def _default_content_type(cls, v: Any) -> Any:
        return v or PDF_CONTENT_TYPE

    def to_wire(self) -> bytes:
        return self.model_dump_json(by_alias=True).encode("utf-8")


def parse_job_message(body: bytes | str) -> OcrJobMessage:
    """Decode a delivery body into a job, or raise MalformedJobError."""
    try:
        payload = json.loads(body)
    except (TypeError, ValueError) as exc:
        raise MalformedJobError(f"body is not valid JSON: {exc}") from exc

    if not isinstance(payload, dict):
        raise MalformedJobError(f"expected a JSON object, got {type(payload).__name__}")

    normalised: dict[str, Any] = {}
    for key, value in payload.items():
        canonical = _CANONICAL_KEYS.get(str(key).lower())
        if canonical is not None and value is not None:
            normalised[canonical] = value

    try:
        return OcrJobMessage.model_validate(normalised)
    except ValidationError as exc:
        fields = ", ".join(".".join(str(p) for p in err["loc"]) for err in exc.errors())
        raise MalformedJobError(f"invalid job fields: {fields}") from exc
