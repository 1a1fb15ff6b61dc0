"""
Root conftest.py — Shared fixtures for ALL tests (unit + integration + e2e)

Fixture hierarchy (all function-scoped):
  db_engine        in-memory SQLite (aiosqlite) with the ORM tables created
  session_factory  async_sessionmaker bound to db_engine
  db_session       one open session for direct repository tests
  worker_loop      private event loop for sync tests that drive the OCR consumer
  worker_session_factory  session_factory bound to worker_loop
  object_store     FakeObjectStore — dict-backed stand-in for ObjectStore
  mock_publisher   OcrJobPublisher-shaped MagicMock, AsyncMock publish_job
  ocr_round_trip   publish → consume → handle one PDF job over memory://, report ack/reject
  sample_pdf_bytes single-page PDF that Ghostscript can render

Environment strategy:
  - DATABASE_URL points at SQLite so importing dms.* never needs PostgreSQL.
  - The broker is kombu's in-process "memory://" transport.
  - S3 calls are either faked (FakeObjectStore) or aioboto3.Session is patched.

How to run:
  pytest                  # all tests
  pytest -m unit          # unit tests only (fast, no I/O)
  pytest -m integration   # ASGI-level API tests
  pytest -m e2e           # needs gs + tesseract on PATH, skipped otherwise
"""

from __future__ import annotations

import asyncio
import os
import uuid
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import AsyncGenerator, Generator
from unittest.mock import AsyncMock, MagicMock, patch

import pytest
import pytest_asyncio

# ─────────────────────────────────────────────────────────────────────────────
# Patch settings BEFORE any dms imports so modules read test config
# ─────────────────────────────────────────────────────────────────────────────

os.environ.setdefault("DATABASE_URL",         "sqlite+aiosqlite://")
os.environ.setdefault("BROKER_URL_OVERRIDE",  "memory://")
os.environ.setdefault("S3_ENDPOINT_URL",      "http://localhost:3900")
os.environ.setdefault("S3_BUCKET",            "test-bucket")
os.environ.setdefault("S3_ACCESS_KEY_ID",     "test")
os.environ.setdefault("S3_SECRET_ACCESS_KEY", "test")
os.environ.setdefault("OPENAI_API_KEY",       "sk-test-key")
os.environ.setdefault("APP_ENV",              "development")
os.environ.setdefault("DEBUG",                "false")

from sqlalchemy import event  # noqa: E402
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, create_async_engine  # noqa: E402
from sqlalchemy.pool import StaticPool  # noqa: E402

from dms.db.session import SessionFactory, build_session_factory  # noqa: E402
from dms.models.documents import Base, Document  # noqa: E402
from dms.storage.s3 import ObjectNotFoundError, StoredObject  # noqa: E402


# ─────────────────────────────────────────────────────────────────────────────
# Database: in-memory SQLite shared by every session of one test
# ─────────────────────────────────────────────────────────────────────────────

def _create_test_engine() -> AsyncEngine:
    engine = create_async_engine(
        "sqlite+aiosqlite://",
        poolclass=StaticPool,
        connect_args={"check_same_thread": False},
    )

    # pysqlite's implicit transactions break SAVEPOINT; let SQLAlchemy emit BEGIN itself
    @event.listens_for(engine.sync_engine, "connect")
    def _disable_implicit_begin(dbapi_connection, _record):
        dbapi_connection.isolation_level = None

    @event.listens_for(engine.sync_engine, "begin")
    def _explicit_begin(conn):
        conn.exec_driver_sql("BEGIN")

    return engine


async def _create_schema(engine: AsyncEngine) -> None:
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)


@pytest_asyncio.fixture
async def db_engine() -> AsyncGenerator[AsyncEngine, None]:
    engine = _create_test_engine()
    await _create_schema(engine)

    yield engine

    await engine.dispose()


@pytest.fixture
def session_factory(db_engine) -> SessionFactory:
    return build_session_factory(db_engine)


@pytest_asyncio.fixture
async def db_session(session_factory) -> AsyncGenerator[AsyncSession, None]:
    async with session_factory() as session:
        yield session


@pytest.fixture
def worker_loop() -> Generator[asyncio.AbstractEventLoop, None, None]:
    """
    Private loop for sync tests that drive OcrQueueConsumer, which runs each
    job with run_until_complete and so cannot share pytest-asyncio's loop.
    """
    loop = asyncio.new_event_loop()
    yield loop
    if not loop.is_closed():
        loop.close()


@pytest.fixture
def worker_session_factory(worker_loop) -> Generator[SessionFactory, None, None]:
    """Same in-memory schema as session_factory, bound to worker_loop."""
    engine = _create_test_engine()
    worker_loop.run_until_complete(_create_schema(engine))
    yield build_session_factory(engine)
    worker_loop.run_until_complete(engine.dispose())


@pytest.fixture
def make_document(session_factory):
    """
    Factory fixture: inserts a Document and returns it.

    Usage:
        doc = await make_document(ocr_text="hello", age_seconds=60)
    """
    async def _make(
        title:        str = "Quarterly report",
        ocr_text:     str | None = None,
        summary:      str | None = None,
        content_type: str | None = "application/pdf",
        age_seconds:  float = 0,
        enqueued:     bool = False,
        **extra,
    ) -> Document:
        doc_id = extra.pop("id", None) or uuid.uuid4()
        created = datetime.now(timezone.utc) - timedelta(seconds=age_seconds)
        doc = Document(
            id=doc_id,
            title=title,
            ocr_text=ocr_text,
            summary=summary,
            content_type=content_type,
            s3_key=f"{doc_id}.pdf" if content_type == "application/pdf" else None,
            created_at=created,
            ocr_enqueued_at=created if enqueued else None,
            **extra,
        )
        async with session_factory() as session:
            async with session.begin():
                session.add(doc)
        return doc

    return _make


@pytest.fixture
def fetch_document(session_factory):
    """Read a fresh copy of a row (new session, nothing cached)."""
    async def _fetch(document_id: uuid.UUID) -> Document | None:
        async with session_factory() as session:
            return await session.get(Document, document_id)

    return _fetch


# ─────────────────────────────────────────────────────────────────────────────
# Object store fake
# ─────────────────────────────────────────────────────────────────────────────

class FakeObjectStore:
    """Dict-backed object store with the same async surface as ObjectStore."""

    def __init__(self) -> None:
        self.objects: dict[str, tuple[bytes, str]] = {}
        self.bucket = "test-bucket"
        self.put_calls = 0
        self.get_calls = 0
        self.deleted: list[str] = []

    async def put_object(self, key: str, body: bytes, content_type: str) -> StoredObject:
        self.put_calls += 1
        self.objects[key] = (bytes(body), content_type)
        return StoredObject(key=key, bucket=self.bucket, size_bytes=len(body), content_type=content_type, etag="etag")

    async def get_object(self, key: str) -> bytes:
        self.get_calls += 1
        if key not in self.objects:
            raise ObjectNotFoundError(f"Object not found: {key}")
        return self.objects[key][0]

    async def delete_object(self, key: str) -> None:
        self.deleted.append(key)
        self.objects.pop(key, None)


@pytest.fixture
def object_store() -> FakeObjectStore:
    return FakeObjectStore()


# ─────────────────────────────────────────────────────────────────────────────
# Mock job publisher
# ─────────────────────────────────────────────────────────────────────────────

@pytest.fixture
def mock_publisher():
    """Mocked OcrJobPublisher — records calls without touching the broker."""
    from dms.messaging.publisher import OcrJobPublisher
    publisher = MagicMock(spec=OcrJobPublisher)
    publisher.publish_job = AsyncMock(return_value=None)
    return publisher


# ─────────────────────────────────────────────────────────────────────────────
# Sample file bytes
# ─────────────────────────────────────────────────────────────────────────────

def _build_text_pdf(text: str) -> bytes:
    """One-page Letter PDF with `text` in 36pt Helvetica; xref offsets computed."""
    stream = f"BT /F1 36 Tf 72 600 Td ({text}) Tj ET".encode("latin-1")
    objects = [
        b"<< /Type /Catalog /Pages 2 0 R >>",
        b"<< /Type /Pages /Kids [3 0 R] /Count 1 >>",
        b"<< /Type /Page /Parent 2 0 R /MediaBox [0 0 612 792] "
        b"/Resources << /Font << /F1 5 0 R >> >> /Contents 4 0 R >>",
        b"<< /Length " + str(len(stream)).encode() + b" >>\nstream\n" + stream + b"\nendstream",
        b"<< /Type /Font /Subtype /Type1 /BaseFont /Helvetica >>",
    ]

    out = bytearray(b"%PDF-1.4\n")
    offsets = []
    for number, body in enumerate(objects, start=1):
        offsets.append(len(out))
        out += f"{number} 0 obj\n".encode() + body + b"\nendobj\n"

    xref_at = len(out)
    out += f"xref\n0 {len(objects) + 1}\n".encode()
    out += b"0000000000 65535 f \n"
    for off in offsets:
        out += f"{off:010d} 00000 n \n".encode()
    out += f"trailer\n<< /Size {len(objects) + 1} /Root 1 0 R >>\nstartxref\n{xref_at}\n%%EOF\n".encode()
    return bytes(out)


@pytest.fixture
def sample_pdf_bytes() -> bytes:
    """Valid PDF (passes the %PDF magic check and renders with Ghostscript)."""
    return _build_text_pdf("Hello OCR 123")


@pytest.fixture
def sample_txt_bytes() -> bytes:
    return b"Plain text notes.\nSecond line.\n"
