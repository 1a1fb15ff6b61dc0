"""
S3 Object Store — one bucket, flat keys

Key scheme:
    <document_id>.pdf   — the uploaded PDF (other uploads keep their extension)
    <document_id>.txt   — OCR text, same base name with the extension swapped

Targets any S3-compatible endpoint (Garage in the default deployment), so the
client is configured for path-style addressing and only computes request
checksums when an operation requires them; several non-AWS servers reject
the newer default CRC headers and chunked uploads. Every put carries an
explicit ContentLength for the same reason.

Objects are overwritten freely; the pipeline relies on that for idempotent
redelivery.
"""

from __future__ import annotations

import logging
import posixpath
import uuid
from dataclasses import dataclass

import aioboto3
from botocore.config import Config
from botocore.exceptions import BotoCoreError, ClientError

from dms.core.config import Settings, settings

logger = logging.getLogger(__name__)

TEXT_CONTENT_TYPE = "text/plain; charset=utf-8"

_NOT_FOUND_CODES = ("NoSuchKey", "404", "NotFound")


class ObjectStoreError(Exception):
    """Transport or server-side failure talking to the object store."""


class ObjectNotFoundError(ObjectStoreError, FileNotFoundError):
    """Requested key does not exist."""


# ---------------------------------------------------------------------------
# Key helpers
# ---------------------------------------------------------------------------

def pdf_key(document_id: uuid.UUID) -> str:
    return f"{document_id}.pdf"


def upload_key(document_id: uuid.UUID, filename: str | None, is_pdf: bool) -> str:
    """Storage key for an upload: <id>.pdf for PDFs, <id><original ext> otherwise."""
    if is_pdf:
        return pdf_key(document_id)
    ext = posixpath.splitext((filename or "").replace("\\", "/"))[1].lower()
    return f"{document_id}{ext}"


def text_key_for(key: str) -> str:
    """Swap the key's extension for .txt; append .txt when there is none."""
    head, tail = posixpath.split(key)
    stem, ext = posixpath.splitext(tail)
    base = stem if ext else tail
    return posixpath.join(head, f"{base}.txt") if head else f"{base}.txt"


# ---------------------------------------------------------------------------
# Data classes
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class StoredObject:
    """Returned by put_object."""
    key:          str
    bucket:       str
    size_bytes:   int
    content_type: str
    etag:         str


# ---------------------------------------------------------------------------
# Object store client
# ---------------------------------------------------------------------------

class ObjectStore:
    """
    Async get/put against a single bucket.

    Each call opens a short-lived aioboto3 client; the session (credentials,
    config) is reused for the life of the store.
    """

    def __init__(self, cfg: Settings = settings) -> None:
        self._cfg = cfg
        self._bucket = cfg.s3_bucket
        self._session = aioboto3.Session()
        self._client_config = Config(
            signature_version="s3v4",
            s3={"addressing_style": "path"},
            request_checksum_calculation="when_required",
            response_checksum_validation="when_required",
        )

    @property
    def bucket(self) -> str:
        return self._bucket

    def _client(self):
        """Return a scoped async S3 client context manager."""
        return self._session.client(
            "s3",
            endpoint_url=self._cfg.s3_endpoint_url or None,
            region_name=self._cfg.s3_region,
            aws_access_key_id=self._cfg.s3_access_key_id or None,
            aws_secret_access_key=self._cfg.s3_secret_access_key or None,
            config=self._client_config,
        )

    async def put_object(self, key: str, body: bytes, content_type: str) -> StoredObject:
        try:
            async with self._client() as s3:
                resp = await s3.put_object(
                    Bucket=self._bucket,
                    Key=key,
                    Body=body,
                    ContentType=content_type,
                    ContentLength=len(body),
                )
        except (ClientError, BotoCoreError) as exc:
            raise ObjectStoreError(f"put {key} failed: {exc}") from exc

        logger.info("S3 upload ok | key=%s size=%d type=%s", key, len(body), content_type)
        return StoredObject(
            key=key,
            bucket=self._bucket,
            size_bytes=len(body),
            content_type=content_type,
            etag=resp.get("ETag", "").strip('"'),
        )

    async def get_object(self, key: str) -> bytes:
        try:
            async with self._client() as s3:
                resp = await s3.get_object(Bucket=self._bucket, Key=key)
                data = await resp["Body"].read()
        except ClientError as exc:
            code = exc.response.get("Error", {}).get("Code", "")
            if code in _NOT_FOUND_CODES:
                raise ObjectNotFoundError(f"Object not found: {key}") from exc
            raise ObjectStoreError(f"get {key} failed: {exc}") from exc
        except BotoCoreError as exc:
            raise ObjectStoreError(f"get {key} failed: {exc}") from exc

        logger.debug("S3 download ok | key=%s size=%d", key, len(data))
        return data

    async def delete_object(self, key: str) -> None:
        try:
            async with self._client() as s3:
                await s3.delete_object(Bucket=self._bucket, Key=key)
        except (ClientError, BotoCoreError) as exc:
            raise ObjectStoreError(f"delete {key} failed: {exc}") from exc
        logger.info("S3 delete | key=%s", key)
