"""
OCR queue consumer — manual acknowledgement with dead-lettering.

Delivery outcomes (exactly one settle call per delivery):

    malformed body          ack       — dropped, retrying cannot help
    handler succeeded       ack
    handler raised          reject(requeue=False) when dead-lettering is on
                                      → broker routes it to ocr-dead
                            reject(requeue=True)  when it is off
                                      → redelivered, possibly forever

Prefetch bounds the unacknowledged deliveries per consumer (default 1), so a
worker handles one PDF at a time; scale by running more worker processes.

The job handler is a coroutine. kombu drains on the calling thread, so the
consumer owns a private event loop and runs each job to completion on it.
"""

from __future__ import annotations

import asyncio
import logging
from typing import Protocol

from kombu import Connection, Consumer
from kombu.message import Message
from kombu.mixins import ConsumerMixin

from dms.core.config import Settings, settings
from dms.messaging.topology import OcrTopology
from dms.schemas.jobs import MalformedJobError, OcrJobMessage, parse_job_message

logger = logging.getLogger(__name__)


class JobHandler(Protocol):
    async def handle(self, job: OcrJobMessage) -> None: ...


def open_consumer_connection(cfg: Settings = settings) -> Connection:
    """
    Broker connection for the OCR consumer, with AMQP heartbeats disabled.

    kombu only services heartbeats between deliveries, and on_message holds
    the drain loop for the whole OCR run (up to one subprocess timeout per
    page). With heartbeats on, a long job gets the connection closed by the
    broker and the delivery redelivered without ever being settled. A dead
    peer is still noticed through py-amqp's TCP keepalive.
    """
    return Connection(cfg.broker_url, heartbeat=0)


class OcrQueueConsumer(ConsumerMixin):
    def __init__(
        self,
        connection: Connection,
        topology: OcrTopology,
        handler: JobHandler,
        loop: asyncio.AbstractEventLoop | None = None,
    ) -> None:
        self.connection = connection
        self._topology = topology
        self._handler = handler
        self._loop = loop or asyncio.new_event_loop()

    # ------------------------------------------------------------------
    # ConsumerMixin hooks
    # ------------------------------------------------------------------

    def get_consumers(self, Consumer: type[Consumer], channel) -> list[Consumer]:
        if self._topology.dead_letter_queue is not None:
            self._topology.dead_letter_queue(channel).declare()

        consumer = Consumer(
            queues=[self._topology.queue],
            on_message=self.on_message,
            accept=["json"],
        )
        consumer.qos(prefetch_count=self._topology.prefetch_count)
        return [consumer]

    def on_consume_ready(self, connection, channel, consumers, **kwargs) -> None:
        logger.info(
            "OCR consumer ready | queue=%s prefetch=%d dead_letter=%s",
            self._topology.queue.name,
            self._topology.prefetch_count,
            self._topology.dead_letter_enabled,
        )

    def on_connection_error(self, exc, interval) -> None:
        logger.warning("Broker connection lost, retrying in %.1fs | error=%s", interval, exc)

    # ------------------------------------------------------------------
    # Delivery handling
    # ------------------------------------------------------------------

    def on_message(self, message: Message) -> None:
        try:
            job = parse_job_message(message.body)
        except MalformedJobError as exc:
            logger.warning(
                "Dropping malformed OCR job | delivery_tag=%s error=%s",
                message.delivery_tag, exc,
            )
            message.ack()
            return

        try:
            self._loop.run_until_complete(self._handler.handle(job))
        except Exception:
            requeue = not self._topology.dead_letter_enabled
            logger.exception(
                "OCR job failed | doc=%s key=%s redelivered=%s requeue=%s",
                job.document_id, job.s3_key, message.delivery_info.get("redelivered", False), requeue,
            )
            message.reject(requeue=requeue)
            return

        message.ack()
        logger.info("OCR job acknowledged | doc=%s", job.document_id)

    def close(self) -> None:
        if not self._loop.is_closed():
            self._loop.run_until_complete(self._loop.shutdown_asyncgens())
            self._loop.close()
