"""
OCR job publisher — used by the upload API and the reconciliation sweep.

Owns one kombu Connection for its lifetime and publishes through kombu's
producer pool. kombu is synchronous, so the async entry point hands the
publish to a thread executor to keep the event loop free.
"""

from __future__ import annotations

import asyncio
import logging
import uuid
from datetime import datetime, timezone

from kombu import Connection
from kombu.pools import producers

from dms.messaging.topology import OcrTopology, build_topology
from dms.schemas.jobs import PDF_CONTENT_TYPE, OcrJobMessage

logger = logging.getLogger(__name__)


class PublishError(Exception):
    """The broker did not accept the job."""


class OcrJobPublisher:
    def __init__(self, connection: Connection, topology: OcrTopology | None = None) -> None:
        self._connection = connection
        self._topology = topology or build_topology()

    @property
    def topology(self) -> OcrTopology:
        return self._topology

    def publish(self, job: OcrJobMessage) -> None:
        """Publish one persistent job message (blocking)."""
        try:
            with producers[self._connection].acquire(block=True, timeout=10) as producer:
                producer.publish(
                    job.to_wire(),
                    exchange=self._topology.exchange,
                    routing_key=self._topology.routing_key,
                    content_type="application/json",
                    content_encoding="utf-8",
                    delivery_mode=2,   # persistent
                    declare=self._topology.declarations(),
                    retry=True,
                    retry_policy={"max_retries": 2, "interval_start": 0, "interval_step": 1},
                )
        except Exception as exc:
            raise PublishError(f"publish failed for doc={job.document_id}: {exc}") from exc

        logger.info(
            "OCR job published | doc=%s key=%s queue=%s",
            job.document_id, job.s3_key, self._topology.queue.name,
        )

    async def publish_job(
        self,
        document_id: uuid.UUID,
        s3_key: str,
        content_type: str = PDF_CONTENT_TYPE,
        uploaded_at: datetime | None = None,
    ) -> OcrJobMessage:
        job = OcrJobMessage(
            document_id=document_id,
            s3_key=s3_key,
            content_type=content_type,
            uploaded_at=uploaded_at or datetime.now(timezone.utc),
        )
        loop = asyncio.get_running_loop()
        await loop.run_in_executor(None, self.publish, job)
        return job

    def close(self) -> None:
        self._connection.release()
