"""
Celery Application Factory

Configures the Celery app for the import pipeline.
Broker: Redis (redis://). Result backend: Redis (optional; job state is
tracked in the job_records table, not in Celery results).

Queue topology (one kombu Queue per catalogue entry):
  file-import         uploaded files → extract → match → persist
  invoice-import      transfer-drop files, same pipeline
  bulk-parsing-test   extraction-only test runs
  email               notification delivery, rate limited per provider
  scheduled-tasks     retention sweep, job pruning, transfer scan, cleanup
  hierarchy-reindex   company nested-set recomputation

Each queue runs its own worker so its concurrency is independent:

  celery -A docpipe.workers.celery_app worker -Q file-import -c 1
  celery -A docpipe.workers.celery_app worker -Q email -c <Σ provider concurrency>
  celery -A docpipe.workers.celery_app beat

Task payloads carry ids only, never file bytes; workers load from storage.
"""

from __future__ import annotations

import logging

from celery import Celery
from celery.schedules import crontab
from celery.signals import (
    task_failure,
    task_postrun,
    task_prerun,
    worker_process_init,
    worker_process_shutdown,
)
from kombu import Exchange, Queue

from docpipe.core.config import settings
from docpipe.queue.catalogue import QUEUE_CATALOGUE, QueueName

logger = logging.getLogger(__name__)

# ---------------------------------------------------------------------------
# Queue and exchange definitions
# ---------------------------------------------------------------------------

PIPELINE_EXCHANGE = Exchange("docpipe", type="direct", durable=True)

TASK_QUEUES = tuple(
    Queue(
        name.value,
        exchange=PIPELINE_EXCHANGE,
        routing_key=name.value,
        queue_arguments={"x-max-priority": 10},
        durable=True,
    )
    for name in QUEUE_CATALOGUE
)

TASK_ROUTES = {
    config.task_name: {"queue": name.value, "routing_key": name.value}
    for name, config in QUEUE_CATALOGUE.items()
}

# Longest task time limit; a job unacked for longer than this plus the lock
# window is considered lost and redelivered.
TASK_TIME_LIMIT = 600

# ---------------------------------------------------------------------------
# Celery app factory
# ---------------------------------------------------------------------------

def create_celery_app() -> Celery:
    app = Celery("docpipe")

    app.conf.update(
        # --- Broker / Backend ---
        broker_url=settings.celery_broker_url,
        result_backend=settings.celery_result_backend,
        broker_connection_timeout=settings.broker_connect_timeout,
        broker_connection_retry_on_startup=True,
        broker_transport_options={
            "socket_timeout": settings.broker_request_timeout,
            "socket_connect_timeout": settings.broker_connect_timeout,
            "visibility_timeout": TASK_TIME_LIMIT + settings.job_lock_seconds,
            "priority_steps": list(range(10)),
            "queue_order_strategy": "priority",
        },

        # --- Serialization ---
        task_serializer="json",
        result_serializer="json",
        accept_content=["json"],
        event_serializer="json",

        # --- Queues ---
        task_queues=TASK_QUEUES,
        task_routes=TASK_ROUTES,
        task_default_queue=QueueName.FILE_IMPORT.value,
        task_default_exchange=PIPELINE_EXCHANGE.name,
        task_default_routing_key=QueueName.FILE_IMPORT.value,

        # --- Reliability ---
        task_acks_late=True,          # ack only after the task returns
        task_reject_on_worker_lost=True,
        worker_prefetch_multiplier=1,

        # --- Timeouts ---
        task_soft_time_limit=TASK_TIME_LIMIT - 60,
        task_time_limit=TASK_TIME_LIMIT,

        # --- Result TTL ---
        result_expires=3600,

        # --- Timezone ---
        timezone="UTC",
        enable_utc=True,

        # --- Beat schedule ---
        beat_schedule={
            "retention-sweep-daily": {
                "task":     QUEUE_CATALOGUE[QueueName.SCHEDULED_TASKS].task_name,
                "schedule": crontab(hour=0, minute=0),
                "kwargs":   {"name": "retention-sweep"},
                "options":  {"queue": QueueName.SCHEDULED_TASKS.value},
            },
            "prune-jobs-hourly": {
                "task":     QUEUE_CATALOGUE[QueueName.SCHEDULED_TASKS].task_name,
                "schedule": crontab(minute=0),
                "kwargs":   {"name": "prune-jobs"},
                "options":  {"queue": QueueName.SCHEDULED_TASKS.value},
            },
            "transfer-scan-every-5m": {
                "task":     QUEUE_CATALOGUE[QueueName.SCHEDULED_TASKS].task_name,
                "schedule": 300,
                "kwargs":   {"name": "transfer-scan"},
                "options":  {"queue": QueueName.SCHEDULED_TASKS.value},
            },
            "bulk-test-cleanup-hourly": {
                "task":     QUEUE_CATALOGUE[QueueName.SCHEDULED_TASKS].task_name,
                "schedule": crontab(minute=30),
                "kwargs":   {"name": "bulk-test-cleanup"},
                "options":  {"queue": QueueName.SCHEDULED_TASKS.value},
            },
            "hierarchy-reindex-nightly": {
                "task":     QUEUE_CATALOGUE[QueueName.HIERARCHY_REINDEX].task_name,
                "schedule": crontab(hour=1, minute=0),
                "options":  {"queue": QueueName.HIERARCHY_REINDEX.value},
            },
        },

        # --- Worker ---
        worker_max_tasks_per_child=200,
    )

    app.autodiscover_tasks(["docpipe.workers"])

    return app


celery_app = create_celery_app()


# ---------------------------------------------------------------------------
# Worker process lifecycle
# ---------------------------------------------------------------------------

@worker_process_init.connect
def on_worker_process_init(**_):
    from docpipe.queue.broker import QueueBroker, set_broker

    set_broker(QueueBroker.connect(celery_app))
    logger.info("Worker process ready")


@worker_process_shutdown.connect
def on_worker_process_shutdown(**_):
    from docpipe.notifications.providers import close_rate_limit_store
    from docpipe.queue.broker import get_broker, set_broker
    from docpipe.workers.tasks import run_async

    run_async(close_rate_limit_store())
    try:
        broker = get_broker()
    except RuntimeError:
        return
    run_async(broker.close())
    set_broker(None)


# ---------------------------------------------------------------------------
# Celery signals: one log line per job lifecycle event
# ---------------------------------------------------------------------------

def _queue_of(task) -> str:
    delivery = getattr(task.request, "delivery_info", None) or {}
    return delivery.get("routing_key") or "?"


@task_prerun.connect
def on_task_prerun(task_id, task, args, kwargs, **_):
    logger.info(
        "Task start | queue=%s job=%s task=%s attempt=%d",
        _queue_of(task), task_id, task.name, task.request.retries + 1,
    )


@task_postrun.connect
def on_task_postrun(task_id, task, args, kwargs, retval, state, **_):
    logger.info(
        "Task end | queue=%s job=%s task=%s state=%s",
        _queue_of(task), task_id, task.name, state,
    )


@task_failure.connect
def on_task_failure(task_id, exception, args, kwargs, traceback, einfo, sender=None, **_):
    logger.error(
        "Task failed | queue=%s job=%s task=%s error=%s",
        _queue_of(sender) if sender is not None else "?", task_id,
        getattr(sender, "name", "?"), exception,
        exc_info=True,
    )
