"""
Celery Application Factory

Drives the pipeline from Celery Beat instead of an external cron: beat
publishes pipeline.tick every TICK_INTERVAL_SECONDS and a worker runs one
tick per message. Overlapping ticks are safe; the Job Record Store arbitrates.

Queue topology:
  pipeline.tick    : scheduler ticks
  pipeline.admin   : out-of-band metadata repair

Result backend: Redis (optional: job state lives in PostgreSQL).
"""

from __future__ import annotations

import logging

from celery import Celery
from celery.signals import after_setup_logger, task_failure, task_postrun, task_prerun
from kombu import Exchange, Queue

from docpipeline.core.config import settings

logger = logging.getLogger(__name__)

# ---------------------------------------------------------------------------
# Queue and exchange definitions
# ---------------------------------------------------------------------------

PIPELINE_EXCHANGE = Exchange("pipeline", type="direct", durable=True)

TASK_QUEUES = (
    Queue("pipeline.tick",  exchange=PIPELINE_EXCHANGE, routing_key="pipeline.tick",  durable=True),
    Queue("pipeline.admin", exchange=PIPELINE_EXCHANGE, routing_key="pipeline.admin", durable=True),
)

TASK_ROUTES = {
    "pipeline.tick":            {"queue": "pipeline.tick"},
    "pipeline.repair_metadata": {"queue": "pipeline.admin"},
}

# ---------------------------------------------------------------------------
# Celery app factory
# ---------------------------------------------------------------------------

def create_celery_app() -> Celery:
    app = Celery("docpipeline")

    app.conf.update(
        # --- Broker / Backend ---
        broker_url=settings.celery_broker_url,
        result_backend=settings.celery_result_backend,

        # --- Serialization (reject non-JSON messages) ---
        task_serializer="json",
        result_serializer="json",
        accept_content=["json"],
        event_serializer="json",

        # --- Queues ---
        task_queues=TASK_QUEUES,
        task_routes=TASK_ROUTES,
        task_default_queue="pipeline.tick",
        task_default_exchange="pipeline",
        task_default_routing_key="pipeline.tick",

        # --- Reliability ---
        # A lost tick is harmless (the next one picks up), so ack early
        task_acks_late=False,
        worker_prefetch_multiplier=1,

        # --- Timeouts ---
        task_soft_time_limit=600,
        task_time_limit=660,

        # --- Result TTL ---
        result_expires=3600,

        # --- Timezone ---
        timezone="UTC",
        enable_utc=True,

        # --- Beat schedule ---
        beat_schedule={
            "pipeline-tick": {
                "task":     "pipeline.tick",
                "schedule": settings.tick_interval_seconds,
                "options":  {"queue": "pipeline.tick", "expires": settings.tick_interval_seconds},
            },
        },

        # --- Worker ---
        worker_max_tasks_per_child=200,
    )

    app.autodiscover_tasks(["docpipeline.workers"])

    return app


celery_app = create_celery_app()


# ---------------------------------------------------------------------------
# Celery signals: structured task logging
# ---------------------------------------------------------------------------

@after_setup_logger.connect
def on_setup_logger(logger, *args, **kwargs):
    logging.getLogger("docpipeline").setLevel(logging.DEBUG if settings.debug else logging.INFO)


@task_prerun.connect
def on_task_prerun(task_id, task, args, kwargs, **_):
    logger.info(
        "Task start | task_id=%s task=%s doc=%s",
        task_id, task.name, kwargs.get("document_id", "-"),
    )


@task_postrun.connect
def on_task_postrun(task_id, task, args, kwargs, retval, state, **_):
    logger.info(
        "Task end | task_id=%s task=%s state=%s",
        task_id, task.name, state,
    )


@task_failure.connect
def on_task_failure(task_id, exception, args, kwargs, traceback, einfo, **_):
    logger.error(
        "Task failed | task_id=%s doc=%s error=%s",
        task_id, kwargs.get("document_id", "-"), exception,
        exc_info=True,
    )
