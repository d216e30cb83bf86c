"""
Named queue catalogue.

Every queue is tuned on its own: how often a job is attempted, how the
retry delay grows, and how long finished jobs are kept around. Failed jobs
are kept longer than completed ones because they are what operators debug.

  queue               attempts  backoff  keep completed   keep failed   workers
  ─────────────────── ────────  ───────  ───────────────  ────────────  ───────
  file-import            3      2 s      24 h / 1000      7 d               1
  bulk-parsing-test      2      1 s       1 h /  100      1 h               2
  invoice-import         2      2 s      24 h /  500      7 d               2
  email                 10      60 s      7 d / 5000      30 d        Σ provider
  scheduled-tasks        3      5 s       7 d /  100      30 d              1
  hierarchy-reindex      1      none     removed          last 100          1

Backoff is exponential: attempt n waits base * 2**(n-1).
"""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import Optional

HOUR = 3600
DAY = 24 * HOUR


class QueueName(str, Enum):
    FILE_IMPORT       = "file-import"
    BULK_PARSING_TEST = "bulk-parsing-test"
    INVOICE_IMPORT    = "invoice-import"
    EMAIL             = "email"
    SCHEDULED_TASKS   = "scheduled-tasks"
    HIERARCHY_REINDEX = "hierarchy-reindex"


@dataclass(frozen=True)
class QueueConfig:
    name:            QueueName
    task_name:       str               # default Celery task consuming this queue
    attempts:        int
    backoff_base_ms: Optional[int]     # None = no retry delay curve
    keep_completed_seconds: int
    keep_completed_count:   Optional[int]
    keep_failed_seconds:    Optional[int]
    keep_failed_count:      Optional[int] = None
    concurrency:     int = 1

    def __post_init__(self) -> None:
        if self.attempts < 1:
            raise ValueError(f"{self.name.value}: attempts must be >= 1")

    @property
    def max_retries(self) -> int:
        return self.attempts - 1

    def backoff_delay_ms(self, attempt: int) -> int:
        """Delay before attempt `attempt + 1`, given `attempt` attempts already made."""
        if not self.backoff_base_ms or attempt < 1:
            return 0
        return self.backoff_base_ms * 2 ** (attempt - 1)

    def backoff_seconds(self, attempt: int) -> float:
        return self.backoff_delay_ms(attempt) / 1000.0


_TASKS = "docpipe.workers.tasks"

QUEUE_CATALOGUE: dict[QueueName, QueueConfig] = {
    QueueName.FILE_IMPORT: QueueConfig(
        name=QueueName.FILE_IMPORT,
        task_name=f"{_TASKS}.process_file_import",
        attempts=3,
        backoff_base_ms=2000,
        keep_completed_seconds=DAY,
        keep_completed_count=1000,
        keep_failed_seconds=7 * DAY,
        concurrency=1,
    ),
    QueueName.BULK_PARSING_TEST: QueueConfig(
        name=QueueName.BULK_PARSING_TEST,
        task_name=f"{_TASKS}.process_bulk_test_file",
        attempts=2,
        backoff_base_ms=1000,
        keep_completed_seconds=HOUR,
        keep_completed_count=100,
        keep_failed_seconds=HOUR,
        concurrency=2,
    ),
    QueueName.INVOICE_IMPORT: QueueConfig(
        name=QueueName.INVOICE_IMPORT,
        task_name=f"{_TASKS}.process_invoice_import",
        attempts=2,
        backoff_base_ms=2000,
        keep_completed_seconds=DAY,
        keep_completed_count=500,
        keep_failed_seconds=7 * DAY,
        concurrency=2,
    ),
    QueueName.EMAIL: QueueConfig(
        name=QueueName.EMAIL,
        task_name=f"{_TASKS}.send_email",
        attempts=10,
        backoff_base_ms=60_000,
        keep_completed_seconds=7 * DAY,
        keep_completed_count=5000,
        keep_failed_seconds=30 * DAY,
        concurrency=10,   # replaced at worker start by the active provider's concurrency
    ),
    QueueName.SCHEDULED_TASKS: QueueConfig(
        name=QueueName.SCHEDULED_TASKS,
        task_name=f"{_TASKS}.run_scheduled_task",
        attempts=3,
        backoff_base_ms=5000,
        keep_completed_seconds=7 * DAY,
        keep_completed_count=100,
        keep_failed_seconds=30 * DAY,
        concurrency=1,
    ),
    QueueName.HIERARCHY_REINDEX: QueueConfig(
        name=QueueName.HIERARCHY_REINDEX,
        task_name=f"{_TASKS}.reindex_hierarchy",
        attempts=1,
        backoff_base_ms=None,
        keep_completed_seconds=0,
        keep_completed_count=0,
        keep_failed_seconds=None,
        keep_failed_count=100,
        concurrency=1,
    ),
}


def get_queue_config(name: QueueName | str) -> QueueConfig:
    try:
        return QUEUE_CATALOGUE[QueueName(name)]
    except ValueError:
        raise KeyError(f"Unknown queue: {name!r}") from None
