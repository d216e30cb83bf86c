"""
Atomic persistence for multi-record writes.

with_transaction(fn) runs `fn(session)` inside one transaction: commit on
success, rollback on any exception, then re-raise. Callers never observe a
half-committed state.

The two composite operations built on it keep a FileRecord and its derived
document in lock-step:

  create_file_with_document      new file + (optional) document
  update_file_and_create_document existing file updated + document created

Retention dates are stamped on the document inside the same transaction,
from the tenant policy as it reads at that moment.
"""

from __future__ import annotations

import logging
import uuid
from typing import Any, Awaitable, Callable, Optional, TypeVar

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from docpipe.models import (
    DocumentRecord,
    FileRecord,
    TenantSettings,
    document_model_for,
    utcnow,
)

logger = logging.getLogger(__name__)

T = TypeVar("T")


def _default_factory() -> async_sessionmaker:
    from docpipe.db.session import AsyncSessionLocal
    return AsyncSessionLocal


async def with_transaction(
    fn: Callable[[AsyncSession], Awaitable[T]],
    *,
    session_factory: Optional[async_sessionmaker] = None,
) -> T:
    """Run `fn` in a fresh session/transaction; rollback and re-raise on error."""
    factory = session_factory or _default_factory()
    async with factory() as session:
        try:
            async with session.begin():
                return await fn(session)
        except Exception as exc:
            logger.warning("Transaction rolled back | error=%s", exc)
            raise


# ---------------------------------------------------------------------------
# Document helpers
# ---------------------------------------------------------------------------

async def load_tenant_settings(session: AsyncSession) -> Optional[TenantSettings]:
    """Read the singleton settings row; never cached across invocations."""
    result = await session.execute(select(TenantSettings).where(TenantSettings.id == 1))
    return result.scalars().first()


async def _add_document(
    session:       AsyncSession,
    file:          FileRecord,
    document_data: dict[str, Any],
    document_type: Optional[str],
) -> DocumentRecord:
    from docpipe.retention.policy import stamp_retention

    model = document_model_for(document_type)
    data = dict(document_data)
    metadata = dict(data.pop("metadata", None) or {})
    metadata["fileId"] = str(file.id)

    doc = model(
        **data,
        file_id=file.id,
        file_hash=file.file_hash,
        file_url=file.file_path,
        doc_metadata=metadata,
    )
    if doc.id is None:
        doc.id = uuid.uuid4()
    if doc.created_at is None:
        doc.created_at = utcnow()

    stamp_retention(doc, await load_tenant_settings(session))

    session.add(doc)
    await session.flush()   # surfaces UNIQUE(file_hash, company_id) inside the transaction
    logger.info(
        "Document created | type=%s doc=%s file=%s company=%s expiry=%s",
        model.document_type, doc.id, file.id, doc.company_id, doc.retention_expiry_date,
    )
    return doc


# ---------------------------------------------------------------------------
# Composite operations
# ---------------------------------------------------------------------------

async def create_file_with_document(
    file_data:     dict[str, Any],
    document_data: Optional[dict[str, Any]] = None,
    document_type: Optional[str] = None,
    *,
    session_factory: Optional[async_sessionmaker] = None,
) -> tuple[FileRecord, Optional[DocumentRecord]]:
    """
    Insert a FileRecord and, only when document_data is given, its document.
    Both rows commit together or neither does.
    """

    async def _work(session: AsyncSession) -> tuple[FileRecord, Optional[DocumentRecord]]:
        file = FileRecord(**file_data)
        if file.id is None:
            file.id = uuid.uuid4()
        session.add(file)
        await session.flush()

        doc = None
        if document_data is not None:
            doc = await _add_document(session, file, document_data, document_type)
        return file, doc

    return await with_transaction(_work, session_factory=session_factory)


async def update_file_and_create_document(
    file_id:       uuid.UUID,
    file_updates:  dict[str, Any],
    document_data: dict[str, Any],
    document_type: Optional[str] = None,
    *,
    session_factory: Optional[async_sessionmaker] = None,
) -> tuple[FileRecord, DocumentRecord]:
    """
    Apply `file_updates` to an already-persisted FileRecord and create its
    document in the same transaction. The file row is locked for the
    duration so two workers cannot both promote it.
    """

    async def _work(session: AsyncSession) -> tuple[FileRecord, DocumentRecord]:
        result = await session.execute(
            select(FileRecord).where(FileRecord.id == file_id).with_for_update()
        )
        file = result.scalars().first()
        if file is None:
            raise LookupError(f"File {file_id} not found")

        for key, value in file_updates.items():
            setattr(file, key, value)
        await session.flush()

        doc = await _add_document(session, file, document_data, document_type)
        return file, doc

    return await with_transaction(_work, session_factory=session_factory)
