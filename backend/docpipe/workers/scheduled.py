"""
Scheduled maintenance jobs (scheduled-tasks queue).

  retention-sweep     delete documents past their retention expiry and
                      queue document-deleted notices
  prune-jobs          drop finished job records outside each queue's window
  transfer-scan       ingest the transfer drop folder, then requeue files
                      whose import job never reached the broker
  bulk-test-cleanup   remove bulk test directories older than 24 hours
"""

from __future__ import annotations

import logging
from functools import partial
from typing import Any, Optional

from sqlalchemy.ext.asyncio import async_sessionmaker

from docpipe.ingestion import BulkTestStore, IngestionService, scan_transfer_drop
from docpipe.notifications.notices import notify_document_deleted
from docpipe.queue.broker import QueueBroker
from docpipe.queue.tracking import prune_finished_jobs
from docpipe.retention.sweep import run_retention_sweep

logger = logging.getLogger(__name__)


async def _retention_sweep(broker: QueueBroker, session_factory: Optional[async_sessionmaker]) -> dict[str, Any]:
    notify = partial(notify_document_deleted, broker, session_factory=session_factory)
    result = await run_retention_sweep(session_factory=session_factory, notify=notify)
    return result.as_dict()


async def _prune_jobs(broker: QueueBroker, session_factory: Optional[async_sessionmaker]) -> dict[str, Any]:
    return {"removed": await prune_finished_jobs(session_factory=session_factory)}


async def _transfer_scan(broker: QueueBroker, session_factory: Optional[async_sessionmaker]) -> dict[str, Any]:
    service = IngestionService(broker, session_factory=session_factory)
    result = await scan_transfer_drop(service)
    requeued = await service.requeue_stalled_files()
    return {**result.as_dict(), "requeued": requeued}


async def _bulk_test_cleanup(broker: QueueBroker, session_factory: Optional[async_sessionmaker]) -> dict[str, Any]:
    return {"removed": BulkTestStore().cleanup()}


SCHEDULED_TASKS = {
    "retention-sweep":   _retention_sweep,
    "prune-jobs":        _prune_jobs,
    "transfer-scan":     _transfer_scan,
    "bulk-test-cleanup": _bulk_test_cleanup,
}


async def run_scheduled(
    name: str,
    *,
    broker: QueueBroker,
    session_factory: Optional[async_sessionmaker] = None,
) -> dict[str, Any]:
    try:
        job = SCHEDULED_TASKS[name]
    except KeyError:
        raise ValueError(f"Unknown scheduled task: {name!r}") from None
    logger.info("Scheduled task start | name=%s", name)
    result = await job(broker, session_factory)
    logger.info("Scheduled task done | name=%s result=%s", name, result)
    return {"task": name, **result}
