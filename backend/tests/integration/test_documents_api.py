"""
Integration Tests — /api/v1/documents
═════════════════════════════════════
These tests exercise the FULL FastAPI routing stack, including:
  - Multipart form parsing (title, description, repeated tags, file)
  - Dependency injection chain (DB, object store and publisher overridden)
  - DmsError → HTTP status translation and the ErrorResponse envelope

What is mocked vs real
──────────────────────
  ✅ Real: FastAPI routing, request parsing, DocumentService, repositories,
           SQLAlchemy against in-memory SQLite
  🔲 Fake: object store  (FakeObjectStore)
  🔲 Mock: broker        (mock_publisher)

How to run
──────────
  pytest -m integration tests/integration/test_documents_api.py -v
"""

from __future__ import annotations

import io
import uuid
from typing import AsyncGenerator

import pytest
import pytest_asyncio
from httpx import ASGITransport, AsyncClient

from dms.api.dependencies import get_publisher, get_storage
from dms.db.session import get_db
from dms.main import create_app
from dms.messaging.publisher import PublishError


@pytest_asyncio.fixture
async def async_client(session_factory, object_store, mock_publisher) -> AsyncGenerator[AsyncClient, None]:
    """ASGI client with the DB, object store and publisher swapped for test doubles."""
    app = create_app()

    async def _override_db():
        async with session_factory() as session:
            try:
                yield session
            except Exception:
                await session.rollback()
                raise

    app.dependency_overrides[get_db] = _override_db
    app.dependency_overrides[get_storage] = lambda: object_store
    app.dependency_overrides[get_publisher] = lambda: mock_publisher

    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as client:
        yield client


def _upload(content: bytes, filename: str = "scan.pdf", title: str = "Scanned invoice", tags=()) -> dict:
    return {
        "files": [("file", (filename, io.BytesIO(content), "application/octet-stream"))],
        "data":  {"title": title, "description": "from the scanner", "tags": list(tags)},
    }


async def _create(client: AsyncClient, title: str, tags=()) -> dict:
    resp = await client.post("/api/v1/documents", data={"title": title, "tags": list(tags)})
    assert resp.status_code == 201, resp.text
    return resp.json()


# ─────────────────────────────────────────────────────────────────────────────
# Upload
# ─────────────────────────────────────────────────────────────────────────────

@pytest.mark.integration
class TestUploadEndpoint:

    async def test_upload_pdf_returns_201(self, async_client, object_store, mock_publisher, sample_pdf_bytes):
        form = _upload(sample_pdf_bytes, tags=["Finance", "finance", "2024"])

        resp = await async_client.post("/api/v1/documents", files=form["files"], data=form["data"])

        assert resp.status_code == 201, resp.text
        body = resp.json()
        assert body["title"] == "Scanned invoice"
        assert body["content_type"] == "application/pdf"
        assert body["s3_key"] == f"{body['id']}.pdf"
        assert sorted(body["tags"]) == ["2024", "Finance"]
        assert body["ocr_text"] is None
        assert body["summary"] is None
        assert body["ocr_enqueued_at"] is not None
        assert body["s3_key"] in object_store.objects
        mock_publisher.publish_job.assert_awaited_once()

    async def test_upload_survives_broker_outage(self, async_client, mock_publisher, sample_pdf_bytes):
        mock_publisher.publish_job.side_effect = PublishError("connection refused")
        form = _upload(sample_pdf_bytes)

        resp = await async_client.post("/api/v1/documents", files=form["files"], data=form["data"])

        assert resp.status_code == 201
        assert resp.json()["ocr_enqueued_at"] is None

    async def test_upload_text_file_not_enqueued(self, async_client, mock_publisher, sample_txt_bytes):
        form = _upload(sample_txt_bytes, filename="notes.txt", title="Meeting notes")

        resp = await async_client.post("/api/v1/documents", files=form["files"], data=form["data"])

        assert resp.status_code == 201
        assert resp.json()["s3_key"].endswith(".txt")
        mock_publisher.publish_job.assert_not_awaited()

    async def test_tags_field_is_optional(self, async_client):
        resp = await async_client.post("/api/v1/documents", data={"title": "Untagged"})

        assert resp.status_code == 201
        assert resp.json()["tags"] == []

    async def test_short_title_is_400(self, async_client, object_store):
        resp = await async_client.post("/api/v1/documents", data={"title": "ab"})

        assert resp.status_code == 400
        body = resp.json()
        assert body["error_code"] == "VALIDATION"
        assert body["details"][0]["field"] == "title"
        assert object_store.put_calls == 0

    async def test_missing_title_is_422(self, async_client):
        resp = await async_client.post("/api/v1/documents", data={"description": "no title"})

        assert resp.status_code == 422
        assert resp.json()["error_code"] == "VALIDATION"

    async def test_storage_failure_is_502(self, async_client, object_store, sample_pdf_bytes):
        from dms.storage.s3 import ObjectStoreError

        async def _down(*_args, **_kwargs):
            raise ObjectStoreError("endpoint unreachable")

        object_store.put_object = _down
        form = _upload(sample_pdf_bytes)

        resp = await async_client.post("/api/v1/documents", files=form["files"], data=form["data"])

        assert resp.status_code == 502
        assert resp.json()["error_code"] == "STORAGE"


# ─────────────────────────────────────────────────────────────────────────────
# Read / update / delete
# ─────────────────────────────────────────────────────────────────────────────

@pytest.mark.integration
class TestDocumentCrud:

    async def test_get_returns_pipeline_fields(self, async_client, make_document):
        doc = await make_document(title="Lease", ocr_text="Mietvertrag", summary="A lease.")

        resp = await async_client.get(f"/api/v1/documents/{doc.id}")

        assert resp.status_code == 200
        body = resp.json()
        assert body["ocr_text"] == "Mietvertrag"
        assert body["summary"] == "A lease."

    async def test_unknown_id_is_404(self, async_client):
        resp = await async_client.get(f"/api/v1/documents/{uuid.uuid4()}")

        assert resp.status_code == 404
        assert resp.json()["error_code"] == "NOT_FOUND"

    async def test_list_newest_first_and_filter_by_tag(self, async_client):
        first = await _create(async_client, "First one", tags=["Tax"])
        second = await _create(async_client, "Second one")

        listing = (await async_client.get("/api/v1/documents")).json()
        tagged = (await async_client.get("/api/v1/documents", params={"tag": "tax"})).json()

        assert listing["total"] == 2
        assert [d["id"] for d in listing["items"]] == [second["id"], first["id"]]
        assert [d["id"] for d in tagged["items"]] == [first["id"]]

    async def test_patch_updates_metadata(self, async_client):
        created = await _create(async_client, "Draft budget", tags=["Draft"])

        resp = await async_client.patch(
            f"/api/v1/documents/{created['id']}",
            json={"title": "Final budget", "tags": ["Final"]},
        )

        assert resp.status_code == 200
        assert resp.json()["title"] == "Final budget"
        assert resp.json()["tags"] == ["Final"]

    async def test_delete_then_404(self, async_client, object_store, sample_pdf_bytes):
        form = _upload(sample_pdf_bytes, title="Throwaway")
        created = (await async_client.post("/api/v1/documents", files=form["files"], data=form["data"])).json()

        resp = await async_client.delete(f"/api/v1/documents/{created['id']}")
        again = await async_client.get(f"/api/v1/documents/{created['id']}")

        assert resp.status_code == 204
        assert again.status_code == 404
        assert created["s3_key"] not in object_store.objects

    async def test_bulk_delete(self, async_client):
        a = await _create(async_client, "Alpha doc")
        b = await _create(async_client, "Beta doc")

        resp = await async_client.post(
            "/api/v1/documents/bulk-delete",
            json={"ids": [a["id"], b["id"], str(uuid.uuid4())]},
        )

        assert resp.status_code == 200
        assert resp.json() == {"deleted": 2}


@pytest.mark.integration
class TestRequeueOcr:

    async def test_requeue_pdf_returns_202(self, async_client, mock_publisher, make_document):
        doc = await make_document(ocr_text="stale text")

        resp = await async_client.post(f"/api/v1/documents/{doc.id}/ocr")

        assert resp.status_code == 202
        assert resp.json()["ocr_enqueued_at"] is not None
        mock_publisher.publish_job.assert_awaited_once()

    async def test_requeue_non_pdf_is_409(self, async_client, make_document):
        doc = await make_document(content_type="text/plain")

        resp = await async_client.post(f"/api/v1/documents/{doc.id}/ocr")

        assert resp.status_code == 409
        assert resp.json()["error_code"] == "CONFLICT"

    async def test_requeue_with_broker_down_is_503(self, async_client, mock_publisher, make_document):
        doc = await make_document()
        mock_publisher.publish_job.side_effect = PublishError("connection refused")

        resp = await async_client.post(f"/api/v1/documents/{doc.id}/ocr")

        assert resp.status_code == 503
        assert resp.json()["error_code"] == "MESSAGING"

@pytest.mark.integration
class TestOperations:

    async def test_health(self, async_client):
        resp = await async_client.get("/health")

        assert resp.status_code == 200
        assert resp.json()["status"] == "ok"

    async def test_request_id_echoed(self, async_client):
        resp = await async_client.get("/health", headers={"X-Request-ID": "req-123"})

        assert resp.headers["x-request-id"] == "req-123"
