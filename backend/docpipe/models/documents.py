"""
SQLAlchemy ORM Models — Files & Business Documents

FileRecord is the raw artefact that arrived from a source (upload, transfer
drop, bulk test). Invoice / CreditNote / Statement are the business documents
derived from it once extraction and matching succeed.

Coupling rule: a FileRecord only reaches status='parsed' in the same
transaction that inserts its document row (see docpipe.db.transaction).

Concurrent double-processing of the same file is blocked at the database:
every document table carries UNIQUE(file_hash, company_id).

Column types are the portable SQLAlchemy ones (Uuid, JSON) so the same
models run on PostgreSQL in production and SQLite in tests.
"""

from __future__ import annotations

import uuid
from datetime import date, datetime, timezone
from decimal import Decimal
from typing import Optional

from sqlalchemy import (
    JSON,
    BigInteger,
    CheckConstraint,
    Date,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    Numeric,
    String,
    Text,
    UniqueConstraint,
    Uuid,
)
from sqlalchemy.orm import DeclarativeBase, Mapped, declared_attr, mapped_column


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


# ---------------------------------------------------------------------------
# Declarative base — shared across all models
# ---------------------------------------------------------------------------

class Base(DeclarativeBase):
    pass


# ---------------------------------------------------------------------------
# File status / failure reason vocabularies
# ---------------------------------------------------------------------------

FILE_STATUSES = ("uploaded", "processing", "parsed", "unallocated", "duplicate", "failed")

FAILURE_REASONS = ("unallocated", "parsing_error", "validation_error", "duplicate", "other")

DOCUMENT_TYPES = ("invoice", "credit_note", "statement")


# ---------------------------------------------------------------------------
# FileRecord — files
# ---------------------------------------------------------------------------

class FileRecord(Base):
    """
    One received file.

    State machine (status column):
        uploaded     — stored on disk, import job queued
        processing   — a worker has claimed the import job
        parsed       — document row created in the same transaction
        unallocated  — extracted, but no owning company could be matched
        duplicate    — same sha256 already imported for this company
        failed       — extraction / validation error (see failure_reason)
    """

    __tablename__ = "files"
    __table_args__ = (
        CheckConstraint(
            "status IN ('uploaded', 'processing', 'parsed', 'unallocated', 'duplicate', 'failed')",
            name="files_status_check",
        ),
        Index("idx_files_hash",     "file_hash"),
        Index("idx_files_status",   "status"),
        Index("idx_files_customer", "customer_id"),
    )

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)

    file_name: Mapped[str] = mapped_column(Text, nullable=False)
    file_path: Mapped[str] = mapped_column(
        Text,
        nullable=False,
        comment="Absolute path under settings.storage_root",
    )
    file_hash: Mapped[str] = mapped_column(String(64), nullable=False, comment="sha256 hex digest")
    file_size: Mapped[int] = mapped_column(BigInteger, nullable=False, default=0)
    mime_type: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    file_type: Mapped[str] = mapped_column(
        String(16),
        nullable=False,
        default="excel",
        comment="excel | pdf",
    )
    source: Mapped[str] = mapped_column(
        String(16),
        nullable=False,
        default="upload",
        comment="upload | transfer | bulk_test",
    )

    customer_id: Mapped[Optional[uuid.UUID]] = mapped_column(
        Uuid,
        ForeignKey("companies.id", ondelete="SET NULL"),
        nullable=True,
    )
    template_id: Mapped[Optional[uuid.UUID]] = mapped_column(
        Uuid,
        ForeignKey("templates.id", ondelete="SET NULL"),
        nullable=True,
    )

    status: Mapped[str] = mapped_column(String(16), nullable=False, default="uploaded")
    failure_reason: Mapped[Optional[str]] = mapped_column(String(32), nullable=True)
    error_message: Mapped[Optional[str]] = mapped_column(Text, nullable=True)

    processing_method: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    parsed_data: Mapped[Optional[dict]] = mapped_column(JSON, nullable=True)
    confidence: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)

    file_metadata: Mapped[dict] = mapped_column(
        "metadata",
        JSON,
        nullable=False,
        default=dict,
        comment="Source metadata (remote path, uploader, job id, ...)",
    )

    uploaded_at:  Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=utcnow)
    processed_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    deleted_at:   Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)

    def __repr__(self) -> str:
        return f"<FileRecord id={self.id} status={self.status} file={self.file_name!r}>"


# ---------------------------------------------------------------------------
# Business documents — invoices / credit_notes / statements
# ---------------------------------------------------------------------------

class _DocumentColumns:
    """Columns shared by every derived document table."""

    document_type = ""

    @declared_attr.directive
    def __table_args__(cls):
        return (
            UniqueConstraint("file_hash", "company_id", name=f"uq_{cls.__tablename__}_hash_company"),
            Index(f"idx_{cls.__tablename__}_retention", "retention_expiry_date", "retention_deleted_at"),
            Index(f"idx_{cls.__tablename__}_company", "company_id"),
        )

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)

    company_id: Mapped[uuid.UUID] = mapped_column(
        Uuid,
        ForeignKey("companies.id", ondelete="CASCADE"),
        nullable=False,
    )
    file_id: Mapped[Optional[uuid.UUID]] = mapped_column(
        Uuid,
        ForeignKey("files.id", ondelete="SET NULL"),
        nullable=True,
    )
    file_hash: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)
    file_url: Mapped[Optional[str]] = mapped_column(Text, nullable=True)

    document_number: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    issue_date: Mapped[Optional[date]] = mapped_column(Date, nullable=True)
    amount: Mapped[Optional[Decimal]] = mapped_column(Numeric(14, 2), nullable=True)
    tax_amount: Mapped[Optional[Decimal]] = mapped_column(Numeric(14, 2), nullable=True)

    status: Mapped[str] = mapped_column(String(16), nullable=False, default="ready")
    viewed_at:     Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    downloaded_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)

    # Retention: stamped once at creation, see docpipe.retention.policy
    retention_start_date:  Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    retention_expiry_date: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    retention_deleted_at:  Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)

    deleted_at:     Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    deleted_reason: Mapped[Optional[str]] = mapped_column(Text, nullable=True)

    doc_metadata: Mapped[dict] = mapped_column("metadata", JSON, nullable=False, default=dict)

    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=utcnow)

    def __repr__(self) -> str:
        return (
            f"<{type(self).__name__} id={self.id} company={self.company_id} "
            f"number={self.document_number!r}>"
        )


class Invoice(_DocumentColumns, Base):
    __tablename__ = "invoices"
    document_type = "invoice"


class CreditNote(_DocumentColumns, Base):
    __tablename__ = "credit_notes"
    document_type = "credit_note"


class Statement(_DocumentColumns, Base):
    __tablename__ = "statements"
    document_type = "statement"

    period_start: Mapped[Optional[date]] = mapped_column(Date, nullable=True)
    period_end:   Mapped[Optional[date]] = mapped_column(Date, nullable=True)


DOCUMENT_MODELS: dict[str, type[_DocumentColumns]] = {
    "invoice":     Invoice,
    "credit_note": CreditNote,
    "statement":   Statement,
}


def document_model_for(document_type: Optional[str]) -> type[_DocumentColumns]:
    """Map an extracted document type to its table; unknown types are invoices."""
    return DOCUMENT_MODELS.get((document_type or "").lower(), Invoice)


DocumentRecord = _DocumentColumns

__all__ = [
    "Base",
    "FileRecord",
    "Invoice",
    "CreditNote",
    "Statement",
    "DocumentRecord",
    "DOCUMENT_MODELS",
    "document_model_for",
    "utcnow",
]

