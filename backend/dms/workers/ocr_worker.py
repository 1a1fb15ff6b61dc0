"""
OCR Worker — consumes ocr-queue and writes OCR text back.

Per job:
  1. Download the PDF from the object store (key from the message)
  2. Rasterise + recognise (OcrEngine)
  3. Upload the text next to the PDF (<id>.pdf → <id>.txt)
  4. UPDATE documents SET ocr_text WHERE id — a missing row is only a warning
     (the document was deleted after upload), the job still succeeds

Every step is an overwrite, so a redelivered job converges on the same state.
Any exception propagates to the consumer, which rejects the delivery.

Run:  dms-ocr-worker     (or: python -m dms.workers.ocr_worker)
"""

from __future__ import annotations

import asyncio
import logging
import signal

from dms.core.config import settings
from dms.core.logging import configure_logging
from dms.db.session import SessionFactory, build_engine, build_session_factory, session_scope
from dms.messaging.consumer import OcrQueueConsumer, open_consumer_connection
from dms.messaging.topology import build_topology
from dms.processing.ocr import OcrEngine
from dms.repositories.documents import DocumentRepository
from dms.schemas.jobs import OcrJobMessage
from dms.storage.s3 import TEXT_CONTENT_TYPE, ObjectStore, text_key_for

logger = logging.getLogger(__name__)


class OcrJobHandler:
    def __init__(
        self,
        storage: ObjectStore,
        engine: OcrEngine,
        session_factory: SessionFactory,
    ) -> None:
        self._storage = storage
        self._engine = engine
        self._session_factory = session_factory

    async def handle(self, job: OcrJobMessage) -> None:
        logger.info("OCR job received | doc=%s key=%s", job.document_id, job.s3_key)

        # --- 1. Download -------------------------------------------------
        pdf_bytes = await self._storage.get_object(job.s3_key)
        logger.info("Downloaded | doc=%s size=%d", job.document_id, len(pdf_bytes))

        # --- 2. OCR ------------------------------------------------------
        text = await self._engine.extract_text(pdf_bytes)

        # --- 3. Upload text ----------------------------------------------
        txt_key = text_key_for(job.s3_key)
        await self._storage.put_object(txt_key, text.encode("utf-8"), TEXT_CONTENT_TYPE)

        # --- 4. Persist --------------------------------------------------
        async with session_scope(self._session_factory) as session:
            updated = await DocumentRepository(session).set_ocr_text(job.document_id, text)

        if not updated:
            logger.warning(
                "OCR text not persisted, document row missing | doc=%s text_key=%s",
                job.document_id, txt_key,
            )
            return

        logger.info("OCR stored | doc=%s text_key=%s chars=%d", job.document_id, txt_key, len(text))


# ---------------------------------------------------------------------------
# Process entry point
# ---------------------------------------------------------------------------

def main() -> None:
    configure_logging(settings.debug)

    db_engine = build_engine(settings)
    handler = OcrJobHandler(
        storage=ObjectStore(settings),
        engine=OcrEngine.from_settings(settings),
        session_factory=build_session_factory(db_engine),
    )
    topology = build_topology(settings)

    logger.info(
        "Starting OCR worker | queue=%s prefetch=%d langs=%s dpi=%d",
        topology.queue.name, topology.prefetch_count, settings.ocr_languages, settings.ocr_dpi,
    )

    # Handler coroutines and the DB pool share this loop for the life of the process
    loop = asyncio.new_event_loop()

    with open_consumer_connection(settings) as connection:
        consumer = OcrQueueConsumer(connection, topology, handler, loop=loop)

        def _stop(signum, _frame) -> None:
            # Finish the in-flight delivery, then leave the drain loop
            logger.info("Shutdown requested | signal=%s", signal.Signals(signum).name)
            consumer.should_stop = True

        signal.signal(signal.SIGTERM, _stop)
        signal.signal(signal.SIGINT, _stop)

        try:
            consumer.run()
        finally:
            loop.run_until_complete(db_engine.dispose())
            consumer.close()

    logger.info("OCR worker stopped")


if __name__ == "__main__":
    main()
