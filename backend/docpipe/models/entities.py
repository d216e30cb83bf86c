"""
ORM Models — Owning entities, templates and tenant settings

Company / Supplier rows are owned by the administrative surface; the
pipeline only reads them (matching) and, for companies, rewrites the
nested-set columns during a hierarchy reindex.

Template holds the per-layout field mapping consumed by the extraction
engine. TenantSettings is a singleton row (id=1) carrying the retention
policy and the active email provider.
"""

from __future__ import annotations

import uuid
from datetime import datetime
from typing import Optional

from sqlalchemy import (
    JSON,
    Boolean,
    CheckConstraint,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    Uuid,
)
from sqlalchemy.orm import Mapped, mapped_column

from docpipe.models.documents import Base, utcnow


# ---------------------------------------------------------------------------
# Company — companies
# ---------------------------------------------------------------------------

class Company(Base):
    """
    Customer-side entity that owns invoices / credit notes / statements.

    account_number is the code the matcher resolves exactly. lft / rgt are
    the nested-set bounds maintained by the hierarchy-reindex queue.
    """

    __tablename__ = "companies"
    __table_args__ = (
        Index("idx_companies_account_number", "account_number"),
        Index("idx_companies_nested_set", "lft", "rgt"),
    )

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    name: Mapped[str] = mapped_column(Text, nullable=False)
    account_number: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)

    is_active: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)
    edi_enabled: Mapped[bool] = mapped_column(
        Boolean,
        nullable=False,
        default=False,
        comment="EDI customers receive documents electronically; no deletion notices",
    )
    notification_emails: Mapped[list] = mapped_column(JSON, nullable=False, default=list)

    parent_id: Mapped[Optional[uuid.UUID]] = mapped_column(
        Uuid,
        ForeignKey("companies.id", ondelete="SET NULL"),
        nullable=True,
    )
    lft: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)
    rgt: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)

    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=utcnow)
    deleted_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)

    @property
    def code(self) -> Optional[str]:
        return self.account_number

    def __repr__(self) -> str:
        return f"<Company id={self.id} name={self.name!r} account={self.account_number!r}>"


# ---------------------------------------------------------------------------
# Supplier — suppliers
# ---------------------------------------------------------------------------

class Supplier(Base):
    __tablename__ = "suppliers"
    __table_args__ = (
        Index("idx_suppliers_code", "code"),
    )

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    name: Mapped[str] = mapped_column(Text, nullable=False)
    code: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)
    is_active: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)

    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=utcnow)
    deleted_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)

    def __repr__(self) -> str:
        return f"<Supplier id={self.id} name={self.name!r} code={self.code!r}>"


# ---------------------------------------------------------------------------
# Template — templates
# ---------------------------------------------------------------------------

class Template(Base):
    """
    Field mapping for one document layout.

    excel_cells      {field: {"column": "B", "row": 4, "endColumn"?: "D", "endRow"?: 9}}
    transformations  {field: {"remove": [...], "trim": true, "uppercase": true, ...}}
    custom_fields    {name: {"dataType": "text" | "number" | "currency" | "date"}}
    text_patterns    {field: "regex with one capture group"}  (PDF templates)
    mandatory_fields [field, ...]
    """

    __tablename__ = "templates"
    __table_args__ = (
        CheckConstraint(
            "extraction_backend IN ('local', 'auto', 'vision', 'documentai')",
            name="templates_backend_check",
        ),
        CheckConstraint("match_target IN ('company', 'supplier')", name="templates_target_check"),
    )

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    code: Mapped[str] = mapped_column(String(64), nullable=False, default="")
    name: Mapped[str] = mapped_column(Text, nullable=False)

    file_type: Mapped[str] = mapped_column(String(16), nullable=False, default="excel")
    extraction_backend: Mapped[str] = mapped_column(String(16), nullable=False, default="local")
    match_target: Mapped[str] = mapped_column(String(16), nullable=False, default="company")

    excel_cells:      Mapped[dict] = mapped_column(JSON, nullable=False, default=dict)
    transformations:  Mapped[dict] = mapped_column(JSON, nullable=False, default=dict)
    custom_fields:    Mapped[dict] = mapped_column(JSON, nullable=False, default=dict)
    text_patterns:    Mapped[dict] = mapped_column(JSON, nullable=False, default=dict)
    mandatory_fields: Mapped[list] = mapped_column(JSON, nullable=False, default=list)

    is_default: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=utcnow)

    def __repr__(self) -> str:
        return f"<Template id={self.id} code={self.code!r} type={self.file_type}>"


# ---------------------------------------------------------------------------
# TenantSettings — tenant_settings (singleton)
# ---------------------------------------------------------------------------

class TenantSettings(Base):
    __tablename__ = "tenant_settings"
    __table_args__ = (
        CheckConstraint(
            "retention_date_trigger IN ('upload_date', 'invoice_date')",
            name="tenant_settings_trigger_check",
        ),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True, default=1)

    # NULL period = retention disabled
    retention_period_days:  Mapped[Optional[int]] = mapped_column(Integer, nullable=True)
    retention_date_trigger: Mapped[str] = mapped_column(String(16), nullable=False, default="upload_date")

    email_provider: Mapped[Optional[str]] = mapped_column(String(16), nullable=True)
    provider_limits: Mapped[dict] = mapped_column(
        JSON,
        nullable=False,
        default=dict,
        comment='Per-provider overrides: {"smtp2go": {"max": 40, "window_ms": 1000, "concurrency": 20}}',
    )
    send_import_notifications: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)

    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        default=utcnow,
        onupdate=utcnow,
    )
