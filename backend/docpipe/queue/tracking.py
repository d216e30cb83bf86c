"""
Job bookkeeping over the job_records table.

The broker itself (Redis) only knows about jobs that are still in flight.
job_records keeps one row per job id so that

  - a repeated enqueue with the same job id is detected (unique index),
  - per-queue counts (waiting / active / completed / failed / delayed) can
    be answered without scanning broker internals,
  - finished jobs are pruned on each queue's own age / count window.

All writes are single-row atomic updates; nothing is read-modify-written in
application memory.
"""

from __future__ import annotations

import logging
from datetime import datetime, timedelta, timezone
from typing import Any, Optional

from sqlalchemy import delete, func, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from docpipe.models import JobRecord, utcnow
from docpipe.queue.catalogue import QUEUE_CATALOGUE, QueueConfig, QueueName

logger = logging.getLogger(__name__)

COUNT_STATES = ("waiting", "active", "completed", "failed", "delayed")


def _factory(session_factory: Optional[async_sessionmaker]) -> async_sessionmaker:
    if session_factory is not None:
        return session_factory
    from docpipe.db.session import AsyncSessionLocal
    return AsyncSessionLocal


async def register_job(
    *,
    job_id:     str,
    config:     QueueConfig,
    task_name:  str,
    payload:    dict[str, Any],
    priority:   int,
    session_factory: Optional[async_sessionmaker] = None,
) -> bool:
    """
    Insert the bookkeeping row. Returns False when the job id already exists
    (the caller must then skip publishing).
    """
    async with _factory(session_factory)() as session:
        try:
            async with session.begin():
                session.add(JobRecord(
                    job_id=job_id,
                    queue_name=config.name.value,
                    task_name=task_name,
                    state="waiting",
                    priority=priority,
                    max_attempts=config.attempts,
                    payload=payload,
                ))
        except IntegrityError:
            logger.info("Duplicate enqueue ignored | queue=%s job=%s", config.name.value, job_id)
            return False
    return True


async def forget_job(job_id: str, *, session_factory: Optional[async_sessionmaker] = None) -> None:
    """Remove a bookkeeping row whose publish never reached the broker."""
    async with _factory(session_factory)() as session:
        async with session.begin():
            await session.execute(delete(JobRecord).where(JobRecord.job_id == job_id))


async def mark_job(
    job_id: str,
    state:  str,
    *,
    attempts_made: Optional[int] = None,
    error:         Optional[str] = None,
    session_factory: Optional[async_sessionmaker] = None,
) -> None:
    values: dict[str, Any] = {"state": state, "updated_at": utcnow()}
    if attempts_made is not None:
        values["attempts_made"] = attempts_made
    if error is not None:
        values["last_error"] = error[:2000]
    if state in ("completed", "failed", "dead_letter"):
        values["finished_at"] = utcnow()

    async with _factory(session_factory)() as session:
        async with session.begin():
            await session.execute(
                update(JobRecord).where(JobRecord.job_id == job_id).values(**values)
            )


async def get_job(job_id: str, *, session_factory: Optional[async_sessionmaker] = None) -> Optional[JobRecord]:
    async with _factory(session_factory)() as session:
        result = await session.execute(select(JobRecord).where(JobRecord.job_id == job_id))
        return result.scalars().first()


async def count_jobs(
    queue_name: QueueName,
    *,
    session_factory: Optional[async_sessionmaker] = None,
) -> dict[str, int]:
    counts = {state: 0 for state in COUNT_STATES}
    async with _factory(session_factory)() as session:
        result = await session.execute(
            select(JobRecord.state, func.count())
            .where(JobRecord.queue_name == queue_name.value)
            .group_by(JobRecord.state)
        )
        for state, n in result.all():
            if state == "dead_letter":
                counts["failed"] += n
            elif state in counts:
                counts[state] = n
    return counts


# ---------------------------------------------------------------------------
# Retention pruning
# ---------------------------------------------------------------------------

async def _prune_state(
    session: AsyncSession,
    config:  QueueConfig,
    states:  tuple[str, ...],
    max_age: Optional[int],
    max_count: Optional[int],
    now:     datetime,
) -> int:
    removed = 0
    base = (JobRecord.queue_name == config.name.value, JobRecord.state.in_(states))

    if max_age is not None:
        cutoff = now - timedelta(seconds=max_age)
        result = await session.execute(
            delete(JobRecord).where(*base, JobRecord.finished_at <= cutoff)
        )
        removed += result.rowcount or 0

    if max_count is not None:
        keep = (
            select(JobRecord.id)
            .where(*base)
            .order_by(JobRecord.finished_at.desc(), JobRecord.created_at.desc())
            .limit(max_count)
        )
        result = await session.execute(
            delete(JobRecord).where(*base, JobRecord.id.not_in(keep.scalar_subquery()))
        )
        removed += result.rowcount or 0

    return removed


async def prune_finished_jobs(
    now: Optional[datetime] = None,
    *,
    session_factory: Optional[async_sessionmaker] = None,
) -> dict[str, int]:
    """Apply every queue's completed / failed retention window. Returns rows removed per queue."""
    now = now or datetime.now(timezone.utc)
    removed: dict[str, int] = {}

    async with _factory(session_factory)() as session:
        async with session.begin():
            for config in QUEUE_CATALOGUE.values():
                n = await _prune_state(
                    session, config, ("completed",),
                    config.keep_completed_seconds, config.keep_completed_count, now,
                )
                n += await _prune_state(
                    session, config, ("failed", "dead_letter"),
                    config.keep_failed_seconds, config.keep_failed_count, now,
                )
                removed[config.name.value] = n

    logger.info("Job records pruned | removed=%s", removed)
    return removed
