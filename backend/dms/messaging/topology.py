"""
OCR queue topology — declared identically by the producer and the consumer.

    exchange  ocr        (direct, durable)
      └── queue ocr-queue   routing_key=ocr-queue   durable
              x-dead-letter-exchange    = ocr-dlx      (when dead-lettering is on)
              x-dead-letter-routing-key = ocr-dead

    exchange  ocr-dlx    (direct, durable)
      └── queue ocr-dead    routing_key=ocr-dead    durable

RabbitMQ refuses to redeclare a queue with different arguments, so both sides
must build it from the same settings. Toggling dead-lettering on an existing
queue requires deleting the queue first.
"""

from __future__ import annotations

from dataclasses import dataclass

from kombu import Exchange, Queue

from dms.core.config import Settings, settings


@dataclass(frozen=True)
class OcrTopology:
    exchange:           Exchange
    queue:              Queue
    dead_letter_enabled: bool
    dead_letter_exchange: Exchange | None = None
    dead_letter_queue:    Queue | None = None
    prefetch_count:      int = 1

    @property
    def routing_key(self) -> str:
        return self.queue.routing_key

    def declarations(self) -> list[Queue]:
        """Queues to declare (dead-letter queue first so it exists before messages arrive)."""
        queues = []
        if self.dead_letter_queue is not None:
            queues.append(self.dead_letter_queue)
        queues.append(self.queue)
        return queues


def build_topology(cfg: Settings = settings) -> OcrTopology:
    exchange = Exchange(cfg.ocr_exchange, type="direct", durable=True)

    queue_arguments: dict[str, str] = {}
    dlx = dlq = None
    if cfg.ocr_dead_letter_enabled:
        dlx = Exchange(cfg.ocr_dead_letter_exchange, type="direct", durable=True)
        dlq = Queue(
            cfg.ocr_dead_letter_queue,
            exchange=dlx,
            routing_key=cfg.ocr_dead_letter_queue,
            durable=True,
        )
        queue_arguments = {
            "x-dead-letter-exchange":    cfg.ocr_dead_letter_exchange,
            "x-dead-letter-routing-key": cfg.ocr_dead_letter_queue,
        }

    queue = Queue(
        cfg.ocr_queue,
        exchange=exchange,
        routing_key=cfg.ocr_queue,
        durable=True,
        queue_arguments=queue_arguments or None,
    )

    return OcrTopology(
        exchange=exchange,
        queue=queue,
        dead_letter_enabled=cfg.ocr_dead_letter_enabled,
        dead_letter_exchange=dlx,
        dead_letter_queue=dlq,
        prefetch_count=max(1, cfg.ocr_prefetch),
    )
