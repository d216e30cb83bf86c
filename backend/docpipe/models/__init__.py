from docpipe.models.delivery import EmailDeliveryLog, JobRecord
from docpipe.models.documents import (
    DOCUMENT_MODELS,
    Base,
    CreditNote,
    DocumentRecord,
    FileRecord,
    Invoice,
    Statement,
    document_model_for,
    utcnow,
)
from docpipe.models.entities import Company, Supplier, Template, TenantSettings

__all__ = [
    "Base",
    "FileRecord",
    "Invoice",
    "CreditNote",
    "Statement",
    "DocumentRecord",
    "DOCUMENT_MODELS",
    "document_model_for",
    "Company",
    "Supplier",
    "Template",
    "TenantSettings",
    "EmailDeliveryLog",
    "JobRecord",
    "utcnow",
]
