"""
Celery Tasks — pipeline maintenance

Task: reconcile_unenqueued_documents
  Beat task (every reconcile_interval_seconds). The upload API commits the
  document row before publishing the OCR job and treats a publish failure as
  non-fatal, so a broker outage leaves PDFs that will never be OCR'd. This
  sweep finds PDFs with no OCR text and no enqueue stamp that are older than
  the grace period, publishes their job and stamps ocr_enqueued_at.

  Documents whose job was published but later dead-lettered carry the stamp
  and are left alone; replaying ocr-dead is an operator decision.
"""

from __future__ import annotations

import asyncio
import logging
from datetime import datetime, timedelta, timezone

from dms.core.config import settings
from dms.db.session import SessionFactory, build_engine, build_session_factory, session_scope
from dms.messaging.publisher import OcrJobPublisher, PublishError
from dms.messaging.topology import build_topology
from dms.repositories.documents import PDF_CONTENT_TYPE, DocumentRepository
from dms.workers.celery_app import celery_app

logger = logging.getLogger(__name__)


def run_async(coro):
    """Execute an async coroutine from a synchronous Celery task on a fresh loop."""
    return asyncio.run(coro)


# ---------------------------------------------------------------------------
# Reconciliation sweep
# ---------------------------------------------------------------------------

@celery_app.task(
    name="dms.workers.tasks.reconcile_unenqueued_documents",
    acks_late=True,
    soft_time_limit=55,
    time_limit=60,
)
def reconcile_unenqueued_documents() -> dict[str, int]:
    return run_async(_reconcile_task_async())


async def _reconcile_task_async() -> dict[str, int]:
    engine = build_engine(settings)
    try:
        with celery_app.connection_for_write() as connection:
            publisher = OcrJobPublisher(connection, build_topology(settings))
            return await reconcile_unenqueued(
                build_session_factory(engine),
                publisher,
                grace_seconds=settings.reconcile_grace_seconds,
                batch_size=settings.reconcile_batch_size,
            )
    finally:
        await engine.dispose()


async def reconcile_unenqueued(
    session_factory: SessionFactory,
    publisher: OcrJobPublisher,
    grace_seconds: int,
    batch_size: int,
    now: datetime | None = None,
) -> dict[str, int]:
    now = now or datetime.now(timezone.utc)
    cutoff = now - timedelta(seconds=grace_seconds)

    async with session_scope(session_factory) as session:
        stale = await DocumentRepository(session).find_unenqueued(cutoff, batch_size)
        candidates = [(doc.id, doc.s3_key, doc.created_at) for doc in stale]

    published = failed = 0
    for document_id, s3_key, created_at in candidates:
        try:
            await publisher.publish_job(document_id, s3_key, PDF_CONTENT_TYPE, uploaded_at=created_at)
        except PublishError:
            # Broker still down; the next run tries again
            logger.exception("Re-publish failed | doc=%s", document_id)
            failed += 1
            break

        async with session_scope(session_factory) as session:
            await DocumentRepository(session).mark_enqueued(document_id, datetime.now(timezone.utc))
        published += 1
        logger.info("Re-published OCR job | doc=%s key=%s", document_id, s3_key)

    if candidates:
        logger.info(
            "Reconciliation done | candidates=%d published=%d failed=%d",
            len(candidates), published, failed,
        )
    return {"candidates": len(candidates), "published": published, "failed": failed}
