"""
Retention sweep.

Runs once a day at 00:00 UTC (Celery beat → scheduled-tasks queue). For
every invoice, credit note and statement whose retention expiry has passed
and which is not yet deleted:

  1. remove the stored file (a missing file is not an error)
  2. stamp retention_deleted_at / deleted_at / deleted_reason="retention"
     with a single guarded UPDATE, so a second sweep in the same window
     finds nothing left to do
  3. notify the company contacts, unless the company receives documents
     over EDI

One document failing never stops the sweep; it is counted in `errors`.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Awaitable, Callable, Optional

from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from docpipe.models import DOCUMENT_MODELS, Company, TenantSettings
from docpipe.retention.policy import RetentionPolicy, should_delete_document
from docpipe.storage.files import FileStore

logger = logging.getLogger(__name__)

# (company, document, document_type) → awaitable
DeletionNotifier = Callable[[Company, Any, str], Awaitable[Any]]


@dataclass
class SweepResult:
    deleted: int = 0
    errors:  int = 0
    total:   int = 0
    failed_ids: list[str] = field(default_factory=list)

    def as_dict(self) -> dict[str, int]:
        return {"deleted": self.deleted, "errors": self.errors, "total": self.total}


async def _load_policy(session_factory: async_sessionmaker) -> RetentionPolicy:
    async with session_factory() as session:
        row = await session.get(TenantSettings, 1)
        return RetentionPolicy.from_settings(row)


async def _due_documents(session: AsyncSession, model: Any, now: datetime) -> list[Any]:
    result = await session.execute(
        select(model)
        .where(
            model.retention_expiry_date.is_not(None),
            model.retention_expiry_date <= now,
            model.retention_deleted_at.is_(None),
            model.deleted_at.is_(None),
        )
        .order_by(model.retention_expiry_date, model.id)
    )
    return list(result.scalars().all())


async def _mark_deleted(session: AsyncSession, model: Any, document_id: Any, now: datetime) -> bool:
    result = await session.execute(
        update(model)
        .where(model.id == document_id, model.retention_deleted_at.is_(None))
        .values(retention_deleted_at=now, deleted_at=now, deleted_reason="retention")
    )
    return (result.rowcount or 0) == 1


async def run_retention_sweep(
    *,
    now:             Optional[datetime] = None,
    session_factory: Optional[async_sessionmaker] = None,
    file_store:      Optional[FileStore] = None,
    notify:          Optional[DeletionNotifier] = None,
) -> SweepResult:
    if session_factory is None:
        from docpipe.db.session import AsyncSessionLocal
        session_factory = AsyncSessionLocal
    now = now or datetime.now(timezone.utc)
    store = file_store or FileStore()
    result = SweepResult()

    # Policy is read fresh on every run
    policy = await _load_policy(session_factory)
    if not policy.enabled:
        logger.info("Retention sweep skipped | reason=retention disabled")
        return result

    for document_type, model in DOCUMENT_MODELS.items():
        async with session_factory() as session:
            documents = await _due_documents(session, model, now)

        result.total += len(documents)
        for document in documents:
            if not should_delete_document(document, policy, now):
                continue
            try:
                if document.file_url:
                    try:
                        await store.delete(document.file_url)
                    except (OSError, ValueError) as exc:
                        logger.warning("Stored file not removed | document=%s path=%s error=%s",
                                       document.id, document.file_url, exc)

                async with session_factory() as session:
                    async with session.begin():
                        changed = await _mark_deleted(session, model, document.id, now)
                        company = await session.get(Company, document.company_id) if changed else None
                if not changed:
                    continue
                result.deleted += 1
                logger.info("Document retention-deleted | type=%s id=%s number=%s",
                            document_type, document.id, document.document_number)

                if notify is not None and company is not None and not company.edi_enabled:
                    await notify(company, document, document_type)
            except Exception as exc:
                result.errors += 1
                result.failed_ids.append(str(document.id))
                logger.error("Retention delete failed | type=%s id=%s error=%s",
                             document_type, document.id, exc, exc_info=True)

    logger.info("Retention sweep done | deleted=%d errors=%d total=%d",
                result.deleted, result.errors, result.total)
    return result
