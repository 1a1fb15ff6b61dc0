"""
Celery Application Factory

Celery only runs periodic maintenance here; the OCR jobs themselves travel on
the dedicated ocr-queue (see dms.messaging). Broker: the same RabbitMQ.

Queue topology:
  maintenance   — reconciliation sweep (beat-scheduled)

Run:
  celery -A dms.workers.celery_app worker -Q maintenance
  celery -A dms.workers.celery_app beat
"""

from __future__ import annotations

import logging

from celery import Celery
from celery.signals import task_failure, task_postrun, task_prerun
from kombu import Exchange, Queue

from dms.core.config import settings

logger = logging.getLogger(__name__)

MAINTENANCE_QUEUE = "maintenance"

TASK_QUEUES = (
    Queue(
        MAINTENANCE_QUEUE,
        Exchange("maintenance", type="direct", durable=True),
        routing_key=MAINTENANCE_QUEUE,
        durable=True,
    ),
)


def create_celery_app() -> Celery:
    app = Celery("dms")

    app.conf.update(
        broker_url=settings.broker_url,

        # --- Serialization (reject non-JSON messages) ---
        task_serializer="json",
        result_serializer="json",
        accept_content=["json"],
        event_serializer="json",

        # --- Queues ---
        task_queues=TASK_QUEUES,
        task_default_queue=MAINTENANCE_QUEUE,
        task_default_exchange="maintenance",
        task_default_routing_key=MAINTENANCE_QUEUE,

        # --- Reliability ---
        task_acks_late=True,
        task_reject_on_worker_lost=True,
        worker_prefetch_multiplier=1,
        task_ignore_result=True,    # state lives in PostgreSQL

        # --- Timezone ---
        timezone="UTC",
        enable_utc=True,

        # --- Beat schedule ---
        beat_schedule={
            "reconcile-unenqueued-documents": {
                "task":     "dms.workers.tasks.reconcile_unenqueued_documents",
                "schedule": settings.reconcile_interval_seconds,
                "options":  {"queue": MAINTENANCE_QUEUE},
            },
        },

        worker_max_tasks_per_child=200,
    )

    app.autodiscover_tasks(["dms.workers"])

    return app


celery_app = create_celery_app()


# ---------------------------------------------------------------------------
# Celery signals: task lifecycle logging
# ---------------------------------------------------------------------------

@task_prerun.connect
def on_task_prerun(task_id, task, args, kwargs, **_):
    logger.info("Task start | task_id=%s task=%s", task_id, task.name)


@task_postrun.connect
def on_task_postrun(task_id, task, args, kwargs, retval, state, **_):
    logger.info("Task end | task_id=%s task=%s state=%s result=%s", task_id, task.name, state, retval)


@task_failure.connect
def on_task_failure(task_id, exception, args, kwargs, traceback, einfo, **_):
    logger.error("Task failed | task_id=%s error=%s", task_id, exception, exc_info=True)
