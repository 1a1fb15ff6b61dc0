"""
Summarisation Worker — polls the database for OCR'd documents without a summary.

Loop:
    pick    oldest row WHERE ocr_text non-empty AND summary IS NULL
    none    → sleep poll_interval (5 s)
    found   → summarize(ocr_text)
              non-empty → UPDATE … SET summary WHERE id AND summary IS NULL
              empty     → warning, sleep poll_interval; row stays eligible
    error   → logged, sleep error_backoff (10 s)

The select and the write use separate short sessions; no transaction is held
open while the model is thinking. A document that keeps yielding no summary
is retried every cycle and holds the head of the FIFO.

Run:  dms-summarizer     (or: python -m dms.workers.summarizer)
"""

from __future__ import annotations

import asyncio
import logging
import signal

from dms.core.config import settings
from dms.core.logging import configure_logging
from dms.db.session import SessionFactory, build_engine, build_session_factory, session_scope
from dms.llm.summarizer import Summarizer, build_summarizer
from dms.repositories.documents import DocumentRepository

logger = logging.getLogger(__name__)


class SummarizationPoller:
    def __init__(
        self,
        session_factory: SessionFactory,
        summarizer: Summarizer,
        poll_interval: float = 5.0,
        error_backoff: float = 10.0,
    ) -> None:
        self._session_factory = session_factory
        self._summarizer = summarizer
        self.poll_interval = poll_interval
        self.error_backoff = error_backoff

    async def run_once(self) -> bool:
        """Process at most one document; True when a summary was stored."""
        async with session_scope(self._session_factory) as session:
            pending = await DocumentRepository(session).next_pending_summary()

        if pending is None:
            return False

        logger.info("Summarising | doc=%s chars=%d", pending.document_id, len(pending.ocr_text))
        summary = await self._summarizer.summarize(pending.ocr_text)

        if not summary or not summary.strip():
            logger.warning("Summariser returned nothing, will retry | doc=%s", pending.document_id)
            return False

        async with session_scope(self._session_factory) as session:
            written = await DocumentRepository(session).set_summary(pending.document_id, summary.strip())

        if written:
            logger.info("Summary stored | doc=%s words=%d", pending.document_id, len(summary.split()))
        else:
            logger.info("Summary skipped, row gone or already summarised | doc=%s", pending.document_id)
        return written

    async def run(self, stop: asyncio.Event) -> None:
        logger.info(
            "Summariser loop started | poll=%.0fs backoff=%.0fs",
            self.poll_interval, self.error_backoff,
        )
        while not stop.is_set():
            try:
                progressed = await self.run_once()
            except Exception:
                logger.exception("Summariser cycle failed | backoff=%.0fs", self.error_backoff)
                delay = self.error_backoff
            else:
                # Drain back-to-back while summaries are being produced
                delay = 0.0 if progressed else self.poll_interval

            if delay:
                await _sleep_until(stop, delay)
        logger.info("Summariser loop stopped")


async def _sleep_until(stop: asyncio.Event, seconds: float) -> None:
    """Sleep for `seconds`, waking early when stop is set."""
    try:
        await asyncio.wait_for(stop.wait(), timeout=seconds)
    except asyncio.TimeoutError:
        pass


# ---------------------------------------------------------------------------
# Process entry point
# ---------------------------------------------------------------------------

async def _amain() -> None:
    engine = build_engine(settings)
    poller = SummarizationPoller(
        session_factory=build_session_factory(engine),
        summarizer=build_summarizer(settings),
        poll_interval=settings.summary_poll_interval_seconds,
        error_backoff=settings.summary_error_backoff_seconds,
    )

    stop = asyncio.Event()
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGTERM, signal.SIGINT):
        loop.add_signal_handler(sig, stop.set)

    try:
        await poller.run(stop)
    finally:
        await engine.dispose()


def main() -> None:
    configure_logging(settings.debug)
    logger.info("Starting summariser | model=%s max_words=%d", settings.llm_model, settings.summary_max_words)
    asyncio.run(_amain())


if __name__ == "__main__":
    main()
