"""
File import pipeline (file-import and invoice-import queues)

import_file(file_id)
  1. Load the FileRecord; a terminal status means a redelivered job → skip
  2. status → processing (single-row UPDATE)
  3. Resolve the template (explicit, else the default for the file type);
     a spreadsheet template with no cell mapping fails here, before I/O
  4. Read the stored bytes and extract fields
  5. Check the template's mandatory fields
  6. Match the owning entity
  7. Matched   → update_file_and_create_document (file parsed + document
                 row + retention stamp, one transaction), then queue the
                 document-ready notice
     Unmatched → status unallocated with the matcher's explanation

Data and permanent errors end on the FileRecord (status failed +
failure_reason) and the job completes normally; one bad file never
poisons the queue. Transient errors propagate so the task retries; on the
last attempt the file is marked failed first.
"""

from __future__ import annotations

import logging
import uuid
from dataclasses import dataclass
from typing import Any, Optional

from sqlalchemy import select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import async_sessionmaker

from docpipe.core.exceptions import (
    DataError,
    EntityNotMatched,
    MissingMandatoryFields,
    NoMappingDefined,
    PermanentError,
    PipelineError,
    UnsupportedDocument,
)
from docpipe.db.transaction import load_tenant_settings, update_file_and_create_document
from docpipe.extraction import FieldMapping, document_kind, extract_document
from docpipe.extraction.fields import ExtractedFieldSet, canonical_field_name, field_label, missing_fields
from docpipe.extraction.transforms import parse_amount, parse_document_date
from docpipe.extraction.workbook import Recalculator, pycel_recalculate
from docpipe.matching import MatchResult, match_entity
from docpipe.models import Company, FileRecord, Template, utcnow
from docpipe.notifications.notices import notify_document_ready
from docpipe.queue.broker import QueueBroker
from docpipe.storage.files import FileStore

logger = logging.getLogger(__name__)

TERMINAL_FILE_STATUSES = frozenset({"parsed", "unallocated", "duplicate", "failed"})


@dataclass(frozen=True)
class ImportOutcome:
    file_id: uuid.UUID
    status:  str
    document_id:   Optional[uuid.UUID] = None
    document_type: Optional[str] = None
    company_id:    Optional[uuid.UUID] = None
    reason:  Optional[str] = None
    message: Optional[str] = None

    def as_dict(self) -> dict[str, Any]:
        return {
            "file_id": str(self.file_id),
            "status": self.status,
            "document_id": str(self.document_id) if self.document_id else None,
            "document_type": self.document_type,
            "company_id": str(self.company_id) if self.company_id else None,
            "reason": self.reason,
            "message": self.message,
        }


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------

async def _set_file(file_id: uuid.UUID, session_factory: async_sessionmaker, **values: Any) -> None:
    async with session_factory() as session:
        async with session.begin():
            await session.execute(update(FileRecord).where(FileRecord.id == file_id).values(**values))


async def mark_file_failed(
    file_id: uuid.UUID,
    reason:  str,
    message: str,
    *,
    session_factory: async_sessionmaker,
    parsed_data: Optional[dict[str, Any]] = None,
) -> None:
    values: dict[str, Any] = {
        "status": "failed",
        "failure_reason": reason,
        "error_message": message[:2000],
        "processed_at": utcnow(),
    }
    if parsed_data is not None:
        values["parsed_data"] = parsed_data
    await _set_file(file_id, session_factory, **values)
    logger.warning("Import failed | file=%s reason=%s error=%s", file_id, reason, message)


async def resolve_template(session, file: FileRecord) -> Optional[Template]:
    if file.template_id is not None:
        template = await session.get(Template, file.template_id)
        if template is not None:
            return template
        logger.warning("Template missing, falling back to default | file=%s template=%s",
                       file.id, file.template_id)
    result = await session.execute(
        select(Template)
        .where(Template.file_type == file.file_type, Template.is_default.is_(True))
        .order_by(Template.created_at)
        .limit(1)
    )
    return result.scalars().first()


def document_data_from(fields: ExtractedFieldSet, company_id: uuid.UUID, match: MatchResult,
                       extra_metadata: Optional[dict[str, Any]] = None) -> dict[str, Any]:
    number_field = "creditNumber" if fields.document_type == "credit_note" else "invoiceNumber"
    number = fields.get(number_field) or fields.get("invoiceNumber") or fields.get("creditNumber")
    metadata = {
        "confidence": fields.confidence,
        "processingMethod": fields.processing_method,
        "matchMethod": match.method,
        "matchConfidence": match.confidence,
        "accountNumber": fields.get("accountNumber"),
        "customerPO": fields.get("customerPO"),
        "goodsAmount": fields.get("goodsAmount"),
    }
    if fields.fallback_fields:
        metadata["fallbackFields"] = list(fields.fallback_fields)
    metadata.update(extra_metadata or {})
    return {
        "company_id": company_id,
        "document_number": number,
        "issue_date": parse_document_date(fields.get("invoiceDate")),
        "amount": parse_amount(fields.get("totalAmount")),
        "tax_amount": parse_amount(fields.get("vatAmount")),
        "metadata": {k: v for k, v in metadata.items() if v is not None},
    }


def _required_fields(template: Optional[Template]) -> list[str]:
    if template is None:
        return []
    code = template.code or ""
    return [canonical_field_name(name, code) or name for name in template.mandatory_fields or []]


# ---------------------------------------------------------------------------
# Pipeline
# ---------------------------------------------------------------------------

async def import_file(
    file_id: uuid.UUID,
    *,
    broker:       QueueBroker,
    session_factory: Optional[async_sessionmaker] = None,
    file_store:   Optional[FileStore] = None,
    recalculator: Optional[Recalculator] = pycel_recalculate,
    final_attempt: bool = True,
) -> ImportOutcome:
    if session_factory is None:
        from docpipe.db.session import AsyncSessionLocal
        session_factory = AsyncSessionLocal
    store = file_store or FileStore()

    async with session_factory() as session:
        file = await session.get(FileRecord, file_id)
        if file is None:
            logger.error("Import file not found | file=%s", file_id)
            return ImportOutcome(file_id, "not_found")
        if file.status in TERMINAL_FILE_STATUSES:
            logger.info("Import skipped, file already %s | file=%s", file.status, file_id)
            return ImportOutcome(file_id, "skipped", reason=file.status)
        template = await resolve_template(session, file)

    await _set_file(file_id, session_factory, status="processing")
    logger.info("Import start | file=%s name=%s template=%s",
                file_id, file.file_name, template.code if template else None)

    fields: Optional[ExtractedFieldSet] = None
    try:
        kind = document_kind(file.file_name, file.mime_type)
        if kind == "excel" and (template is None or not FieldMapping.from_template(template).cells):
            raise NoMappingDefined(
                f"No cell mapping defined for {'template ' + template.code if template else 'excel files'}"
            )

        try:
            data = await store.read(file.file_path)
        except (FileNotFoundError, ValueError) as exc:
            raise UnsupportedDocument(f"Stored file unavailable: {exc}", reason="other") from exc

        fields = await extract_document(
            data, file.file_name, template, mime_type=file.mime_type, recalculator=recalculator,
        )
        parsed_data = fields.as_parsed_data()

        missing = missing_fields(fields.fields, _required_fields(template))
        if missing:
            raise MissingMandatoryFields([field_label(name) for name in missing])

        target = template.match_target if template is not None else "company"
        async with session_factory() as session:
            match = await match_entity(session, parsed_data, target=target)

        company_id, extra = _owner(file, target, match)
        if company_id is None:
            raise EntityNotMatched(match.error or "No owning company could be determined")

        try:
            _, document = await update_file_and_create_document(
                file_id,
                {
                    "status": "parsed",
                    "customer_id": company_id,
                    "parsed_data": parsed_data,
                    "confidence": fields.confidence,
                    "processing_method": fields.processing_method,
                    "failure_reason": None,
                    "error_message": None,
                    "processed_at": utcnow(),
                },
                document_data_from(fields, company_id, match, extra),
                fields.document_type,
                session_factory=session_factory,
            )
        except IntegrityError as exc:
            if not _is_duplicate_document(exc):
                logger.error("Import integrity error | file=%s company=%s error=%s", file_id, company_id, exc.orig)
                message = f"Document could not be saved: {exc.orig}"
                await mark_file_failed(file_id, "other", message, session_factory=session_factory,
                                       parsed_data=fields.as_parsed_data())
                return ImportOutcome(file_id, "failed", reason="other", message=message)
            await _set_file(
                file_id, session_factory,
                status="duplicate", failure_reason="duplicate",
                error_message="A document for this file already exists for this company",
                processed_at=utcnow(),
            )
            logger.info("Import duplicate at commit | file=%s company=%s", file_id, company_id)
            return ImportOutcome(file_id, "duplicate", reason="duplicate")

    except EntityNotMatched as exc:
        await _set_file(
            file_id, session_factory,
            status="unallocated",
            failure_reason=exc.reason,
            error_message=exc.message,
            parsed_data=fields.as_parsed_data(),
            confidence=fields.confidence,
            processing_method=fields.processing_method,
            processed_at=utcnow(),
        )
        logger.info("Import unallocated | file=%s error=%s", file_id, exc.message)
        return ImportOutcome(file_id, "unallocated", reason=exc.reason, message=exc.message)
    except (DataError, PermanentError) as exc:
        await mark_file_failed(
            file_id, exc.reason, exc.message, session_factory=session_factory,
            parsed_data=fields.as_parsed_data() if fields is not None else None,
        )
        return ImportOutcome(file_id, "failed", reason=exc.reason, message=exc.message)
    except Exception as exc:
        if final_attempt:
            await mark_file_failed(file_id, "other", f"{type(exc).__name__}: {exc}",
                                   session_factory=session_factory)
        raise

    logger.info("Import done | file=%s document=%s type=%s company=%s confidence=%d",
                file_id, document.id, fields.document_type, company_id, fields.confidence)
    await _notify(broker, company_id, document, fields.document_type, session_factory)
    return ImportOutcome(file_id, "parsed", document_id=document.id,
                         document_type=fields.document_type, company_id=company_id)


def _is_duplicate_document(exc: IntegrityError) -> bool:
    """Only the (file_hash, company_id) unique constraint means "already imported"."""
    text = str(exc.orig)
    if "_hash_company" in text:
        return True
    # SQLite names the columns rather than the constraint
    return "UNIQUE constraint failed" in text and ".file_hash" in text


def _owner(file: FileRecord, target: str, match: MatchResult) -> tuple[Optional[uuid.UUID], dict[str, Any]]:
    """
    Company-matched templates take the matched company. Supplier-matched
    templates keep the company the file was uploaded for and record the
    supplier on the document.
    """
    if target == "supplier":
        if not match.matched or file.customer_id is None:
            return None, {}
        return file.customer_id, {"supplierId": str(match.entity_id)}
    if match.matched:
        return match.entity_id, {}
    return None, {}


async def _notify(broker: QueueBroker, company_id: uuid.UUID, document: Any, document_type: str,
                  session_factory: async_sessionmaker) -> None:
    async with session_factory() as session:
        tenant = await load_tenant_settings(session)
        company = await session.get(Company, company_id)
    if company is None or (tenant is not None and not tenant.send_import_notifications):
        return
    try:
        await notify_document_ready(broker, company, document, document_type,
                                    session_factory=session_factory)
    except PipelineError as exc:
        # the import stands; the delivery log already records the failure
        logger.error("Document notice not queued | document=%s error=%s", document.id, exc)
