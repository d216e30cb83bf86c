"""
Celery Tasks — one per named queue

  process_file_import     file-import       uploaded file → document
  process_invoice_import  invoice-import    transfer-drop file → document
  process_bulk_test_file  bulk-parsing-test extract one file of a bulk test
  send_email              email             deliver one EmailDeliveryLog
  run_scheduled_task      scheduled-tasks   retention / pruning / scans
  reindex_hierarchy       hierarchy-reindex company nested-set bounds

Every task is a PipelineTask: its job_records row follows the task through
active → completed / failed, retries use the queue's own attempt ceiling and
exponential backoff, and a job that exhausts its attempts is kept in the
dead_letter state for operators.

Only TransientError (and unclassified errors such as driver or socket
failures) is retried. Data and permanent errors are recorded on the
FileRecord / EmailDeliveryLog by the service layer and the task returns.
"""

from __future__ import annotations

import asyncio
import logging
import uuid
from typing import Any, Optional

from celery import Task

from docpipe.core.exceptions import PermanentDeliveryError, TransientError, is_retryable
from docpipe.queue import tracking
from docpipe.queue.broker import QueueBroker, get_broker, set_broker
from docpipe.queue.catalogue import QueueName, get_queue_config
from docpipe.workers.celery_app import celery_app

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Async task helper
# Run async coroutines inside Celery's synchronous task context.
# ---------------------------------------------------------------------------

_loop: Optional[asyncio.AbstractEventLoop] = None


def run_async(coro):
    """
    Execute an async coroutine from a synchronous Celery task.

    One event loop per worker process, reused across tasks: the database
    pool's connections are bound to the loop that opened them.
    """
    global _loop
    if _loop is None or _loop.is_closed():
        _loop = asyncio.new_event_loop()
        asyncio.set_event_loop(_loop)
    return _loop.run_until_complete(coro)


def _broker() -> QueueBroker:
    try:
        return get_broker()
    except RuntimeError:
        # solo / threads pools never fire worker_process_init
        broker = QueueBroker.connect(celery_app)
        set_broker(broker)
        return broker


# ---------------------------------------------------------------------------
# Base task
# ---------------------------------------------------------------------------

class PipelineTask(Task):
    """Keeps job_records in step with the Celery task lifecycle."""

    queue_name: QueueName = QueueName.FILE_IMPORT

    @property
    def attempt(self) -> int:
        return self.request.retries + 1

    def _mark(self, task_id: str, state: str, error: Optional[str] = None) -> None:
        try:
            run_async(tracking.mark_job(task_id, state, attempts_made=self.attempt, error=error))
        except Exception as exc:
            # bookkeeping must never change the task's outcome
            logger.warning("Job record not updated | job=%s state=%s error=%s", task_id, state, exc)

    def before_start(self, task_id, args, kwargs):
        self._mark(task_id, "active")

    def on_success(self, retval, task_id, args, kwargs):
        failed = isinstance(retval, dict) and retval.get("status") == "failed"
        self._mark(task_id, "failed" if failed else "completed",
                   error=retval.get("error") if failed else None)

    def on_retry(self, exc, task_id, args, kwargs, einfo):
        self._mark(task_id, "delayed", error=f"{type(exc).__name__}: {exc}")

    def on_failure(self, exc, task_id, args, kwargs, einfo):
        exhausted = self.request.retries >= get_queue_config(self.queue_name).max_retries
        self._mark(task_id, "dead_letter" if exhausted else "failed", error=f"{type(exc).__name__}: {exc}")

    def retry_with_backoff(self, exc: BaseException):
        config = get_queue_config(self.queue_name)
        countdown = config.backoff_seconds(self.attempt)
        logger.warning("Retrying | queue=%s job=%s attempt=%d/%d countdown=%.0fs error=%s",
                       config.name.value, self.request.id, self.attempt, config.attempts, countdown, exc)
        return self.retry(exc=exc, countdown=countdown, max_retries=config.max_retries)

    @property
    def final_attempt(self) -> bool:
        return self.attempt >= get_queue_config(self.queue_name).attempts


# ---------------------------------------------------------------------------
# Import tasks
# ---------------------------------------------------------------------------

def _import(task: PipelineTask, file_id: str) -> dict[str, Any]:
    from docpipe.workers.imports import import_file

    try:
        outcome = run_async(import_file(
            uuid.UUID(file_id), broker=_broker(), final_attempt=task.final_attempt,
        ))
    except Exception as exc:
        if not is_retryable(exc):
            raise
        raise task.retry_with_backoff(exc)
    return outcome.as_dict()


@celery_app.task(
    name="docpipe.workers.tasks.process_file_import",
    base=PipelineTask,
    bind=True,
    queue_name=QueueName.FILE_IMPORT,
    acks_late=True,
    reject_on_worker_lost=True,
    soft_time_limit=270,
    time_limit=330,
)
def process_file_import(self: PipelineTask, *, file_id: str) -> dict[str, Any]:
    return _import(self, file_id)


@celery_app.task(
    name="docpipe.workers.tasks.process_invoice_import",
    base=PipelineTask,
    bind=True,
    queue_name=QueueName.INVOICE_IMPORT,
    acks_late=True,
    reject_on_worker_lost=True,
    soft_time_limit=270,
    time_limit=330,
)
def process_invoice_import(self: PipelineTask, *, file_id: str) -> dict[str, Any]:
    return _import(self, file_id)


@celery_app.task(
    name="docpipe.workers.tasks.process_bulk_test_file",
    base=PipelineTask,
    bind=True,
    queue_name=QueueName.BULK_PARSING_TEST,
    acks_late=True,
    soft_time_limit=270,
    time_limit=330,
)
def process_bulk_test_file(self: PipelineTask, *, test_id: str, index: int) -> dict[str, Any]:
    from docpipe.ingestion import BulkTestStore, run_bulk_test_file

    try:
        return run_async(run_bulk_test_file(BulkTestStore(), test_id, index))
    except Exception as exc:
        if not is_retryable(exc):
            raise
        raise self.retry_with_backoff(exc)


# ---------------------------------------------------------------------------
# Email
# ---------------------------------------------------------------------------

@celery_app.task(
    name="docpipe.workers.tasks.send_email",
    base=PipelineTask,
    bind=True,
    queue_name=QueueName.EMAIL,
    acks_late=True,
    reject_on_worker_lost=True,
    soft_time_limit=90,
    time_limit=120,
)
def send_email(self: PipelineTask, **payload: Any) -> dict[str, Any]:
    from docpipe.notifications import process_email_job

    config = get_queue_config(QueueName.EMAIL)
    try:
        return run_async(process_email_job(payload, attempt=self.attempt, max_attempts=config.attempts))
    except PermanentDeliveryError as exc:
        return {"status": "failed", "email_log_id": payload.get("email_log_id"), "error": exc.message}
    except TransientError as exc:
        raise self.retry_with_backoff(exc)


# ---------------------------------------------------------------------------
# Scheduled maintenance
# ---------------------------------------------------------------------------

@celery_app.task(
    name="docpipe.workers.tasks.run_scheduled_task",
    base=PipelineTask,
    bind=True,
    queue_name=QueueName.SCHEDULED_TASKS,
    acks_late=True,
    soft_time_limit=540,
    time_limit=600,
)
def run_scheduled_task(self: PipelineTask, *, name: str) -> dict[str, Any]:
    from docpipe.workers.scheduled import run_scheduled

    try:
        return run_async(run_scheduled(name, broker=_broker()))
    except ValueError:
        raise
    except Exception as exc:
        if not is_retryable(exc):
            raise
        raise self.retry_with_backoff(exc)


@celery_app.task(
    name="docpipe.workers.tasks.reindex_hierarchy",
    base=PipelineTask,
    bind=True,
    queue_name=QueueName.HIERARCHY_REINDEX,
    acks_late=True,
    soft_time_limit=270,
    time_limit=330,
)
def reindex_hierarchy(self: PipelineTask, **_: Any) -> dict[str, Any]:
    from docpipe.db.hierarchy import reindex_company_hierarchy

    return {"companies": run_async(reindex_company_hierarchy())}
