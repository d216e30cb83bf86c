"""
Document Ingestion Service

Entry point for every file that arrives (HTTP upload, transfer drop):
  1. Validate name, size and type (extension / MIME)
  2. Compute the sha256 used for deduplication
  3. Same hash already imported (for the same company, when known)
     → FileRecord with status=duplicate, nothing stored, no job
  4. Store the bytes under settings.storage_root
  5. Insert the FileRecord (status=uploaded)
  6. Enqueue the import job: uploads go to file-import, transfer drops to
     invoice-import; job id "{queue}_{file id}"

Step 6 uses enqueue_safe: a broker outage leaves the file in `uploaded`
and returns queued=False instead of failing the upload. Those files are
picked up again by requeue_stalled_files() on the next scheduled scan.
"""

from __future__ import annotations

import logging
import uuid
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Any, Optional

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from docpipe.core.exceptions import UnsupportedDocument, UploadRejected
from docpipe.extraction import document_kind
from docpipe.models import FileRecord
from docpipe.queue.broker import JobHandle, QueueBroker
from docpipe.queue.catalogue import QueueName
from docpipe.storage.files import FileStore, StorageArea, safe_file_name, sha256_hex

logger = logging.getLogger(__name__)

SOURCES = ("upload", "transfer", "bulk_test")


IMPORT_QUEUES = {
    "upload":    QueueName.FILE_IMPORT,
    "transfer":  QueueName.INVOICE_IMPORT,
    "bulk_test": QueueName.FILE_IMPORT,
}


def file_import_job_id(file_id: uuid.UUID | str, queue: QueueName = QueueName.FILE_IMPORT) -> str:
    return f"{queue.value}_{file_id}"


@dataclass(frozen=True)
class IngestResult:
    file_id:   uuid.UUID
    status:    str
    file_hash: str
    queued:    bool = False
    job_id:    Optional[str] = None
    duplicate_of: Optional[uuid.UUID] = None


# ---------------------------------------------------------------------------
# Duplicate detection
# ---------------------------------------------------------------------------

async def find_duplicate(
    session:     AsyncSession,
    file_hash:   str,
    customer_id: Optional[uuid.UUID] = None,
) -> Optional[FileRecord]:
    """
    Most recent live FileRecord with this hash. When the owning company is
    already known only that company's files count.
    """
    stmt = select(FileRecord).where(
        FileRecord.file_hash == file_hash,
        FileRecord.deleted_at.is_(None),
        FileRecord.status != "duplicate",
    )
    if customer_id is not None:
        stmt = stmt.where(FileRecord.customer_id == customer_id)
    result = await session.execute(stmt.order_by(FileRecord.uploaded_at.desc()).limit(1))
    return result.scalars().first()


# ---------------------------------------------------------------------------
# Service
# ---------------------------------------------------------------------------

class IngestionService:
    """
    Stateless; all collaborators injected so tests can swap them.
    """

    def __init__(
        self,
        broker:     QueueBroker,
        *,
        file_store: Optional[FileStore] = None,
        session_factory: Optional[async_sessionmaker] = None,
        max_bytes:  Optional[int] = None,
    ) -> None:
        from docpipe.core.config import settings

        self._broker = broker
        self._store = file_store or FileStore()
        if session_factory is None:
            from docpipe.db.session import AsyncSessionLocal
            session_factory = AsyncSessionLocal
        self._session_factory = session_factory
        self._max_bytes = max_bytes or settings.max_upload_bytes

    # ------------------------------------------------------------------
    # Validation
    # ------------------------------------------------------------------

    def validate(self, file_name: str, data: bytes, mime_type: Optional[str] = None) -> str:
        """Return the file kind (excel | pdf) or raise UploadRejected."""
        if not file_name or not file_name.strip():
            raise UploadRejected("A file name is required", code="MISSING_FILE")
        if not data:
            raise UploadRejected(f"'{file_name}' is empty", code="MISSING_FILE")
        if len(data) > self._max_bytes:
            raise UploadRejected(
                f"Received {len(data):,} bytes; limit is {self._max_bytes:,} bytes",
                code="FILE_TOO_LARGE",
            )
        try:
            return document_kind(file_name, mime_type)
        except UnsupportedDocument as exc:
            raise UploadRejected(str(exc), code="UNSUPPORTED_FILE_TYPE") from exc

    # ------------------------------------------------------------------
    # Public entry point
    # ------------------------------------------------------------------

    async def ingest(
        self,
        file_name: str,
        data:      bytes,
        *,
        source:      str = "upload",
        mime_type:   Optional[str] = None,
        customer_id: Optional[uuid.UUID] = None,
        template_id: Optional[uuid.UUID] = None,
        metadata:    Optional[dict[str, Any]] = None,
    ) -> IngestResult:
        if source not in SOURCES:
            raise ValueError(f"Unknown source: {source!r}")

        kind = self.validate(file_name, data, mime_type)
        file_hash = sha256_hex(data)
        name = safe_file_name(file_name)
        metadata = dict(metadata or {})
        metadata.setdefault("originalFileName", file_name)

        logger.info("Ingest start | source=%s file=%s size=%d hash=%s",
                    source, name, len(data), file_hash[:16])

        async with self._session_factory() as session:
            existing = await find_duplicate(session, file_hash, customer_id)

        if existing is not None:
            record = FileRecord(
                id=uuid.uuid4(),
                file_name=name,
                file_path="",
                file_hash=file_hash,
                file_size=len(data),
                mime_type=mime_type,
                file_type=kind,
                source=source,
                customer_id=customer_id,
                template_id=template_id,
                status="duplicate",
                failure_reason="duplicate",
                error_message=f"Duplicate of file {existing.id}",
                file_metadata={**metadata, "duplicateOf": str(existing.id)},
            )
            await self._insert(record)
            logger.info("Duplicate file | file=%s hash=%s duplicate_of=%s",
                        record.id, file_hash[:16], existing.id)
            return IngestResult(record.id, "duplicate", file_hash, duplicate_of=existing.id)

        stored = await self._store.save(data, name, StorageArea.UPLOADS)
        record = FileRecord(
            id=uuid.uuid4(),
            file_name=name,
            file_path=stored.path,
            file_hash=file_hash,
            file_size=stored.size_bytes,
            mime_type=mime_type,
            file_type=kind,
            source=source,
            customer_id=customer_id,
            template_id=template_id,
            status="uploaded",
            file_metadata=metadata,
        )
        try:
            await self._insert(record)
        except Exception:
            await self._store.delete(stored.path)
            raise

        handle = await self.enqueue_import(record.id, IMPORT_QUEUES[source])
        return IngestResult(
            record.id, "uploaded", file_hash,
            queued=not handle.degraded, job_id=handle.job_id,
        )

    async def enqueue_import(self, file_id: uuid.UUID, queue: QueueName = QueueName.FILE_IMPORT) -> JobHandle:
        handle = await self._broker.enqueue_safe(
            queue,
            {"file_id": str(file_id)},
            job_id=file_import_job_id(file_id, queue),
        )
        if handle.degraded:
            logger.error("Import not queued, will be retried by the scanner | file=%s", file_id)
        return handle

    async def requeue_stalled_files(self, *, older_than: timedelta = timedelta(minutes=5)) -> int:
        """Re-enqueue files still `uploaded` after `older_than` (lost or never-published jobs)."""
        cutoff = datetime.now(timezone.utc) - older_than
        async with self._session_factory() as session:
            result = await session.execute(
                select(FileRecord.id, FileRecord.source).where(
                    FileRecord.status == "uploaded",
                    FileRecord.deleted_at.is_(None),
                    FileRecord.uploaded_at <= cutoff,
                )
            )
            stalled = result.all()

        queued = 0
        for file_id, source in stalled:
            handle = await self.enqueue_import(file_id, IMPORT_QUEUES.get(source, QueueName.FILE_IMPORT))
            if not handle.degraded and not handle.deduplicated:
                queued += 1
        if stalled:
            logger.info("Stalled files requeued | found=%d queued=%d", len(stalled), queued)
        return queued

    async def _insert(self, record: FileRecord) -> None:
        async with self._session_factory() as session:
            async with session.begin():
                session.add(record)
