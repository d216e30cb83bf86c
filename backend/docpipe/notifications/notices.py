"""
Pipeline notices: "document ready" after an import, "document deleted"
after a retention sweep. Both go to the company's notification contacts
through the dispatcher; a company without contacts gets nothing.
"""

from __future__ import annotations

import html
import logging
from typing import Any, Optional

from sqlalchemy.ext.asyncio import async_sessionmaker

from docpipe.models import Company
from docpipe.notifications.dispatcher import EmailQueued, queue_batch_email
from docpipe.queue.broker import QueueBroker

logger = logging.getLogger(__name__)

DOCUMENT_LABELS = {"invoice": "Invoice", "credit_note": "Credit Note", "statement": "Statement"}


def _label(document_type: str) -> str:
    return DOCUMENT_LABELS.get(document_type, "Document")


def _amount(value: Any) -> str:
    return f"{value:,.2f}" if value is not None else "n/a"


def _page(title: str, rows: list[tuple[str, str]], footer: str) -> str:
    body = "".join(
        f"<tr><td><strong>{html.escape(k)}</strong></td><td>{html.escape(v)}</td></tr>"
        for k, v in rows
    )
    return (
        f"<h2>{html.escape(title)}</h2>"
        f"<table>{body}</table>"
        f"<p>{html.escape(footer)}</p>"
    )


def _text(title: str, rows: list[tuple[str, str]], footer: str) -> str:
    lines = [title, ""] + [f"{k}: {v}" for k, v in rows] + ["", footer]
    return "\n".join(lines)


async def notify_document_ready(
    broker:   QueueBroker,
    company:  Company,
    document: Any,
    document_type: str,
    *,
    session_factory: Optional[async_sessionmaker] = None,
) -> list[EmailQueued]:
    recipients = list(company.notification_emails or [])
    if not recipients:
        logger.info("No contacts for document notice | company=%s", company.id)
        return []

    label = _label(document_type)
    title = f"New {label} available: {document.document_number or 'unnumbered'}"
    rows = [
        ("Company", company.name),
        (f"{label} number", document.document_number or "n/a"),
        ("Date", document.issue_date.isoformat() if document.issue_date else "n/a"),
        ("Amount", _amount(document.amount)),
    ]
    footer = "Log in to the portal to view and download it."

    return await queue_batch_email(
        broker,
        recipients=recipients,
        subject=title,
        html=_page(title, rows, footer),
        text=_text(title, rows, footer),
        template_name="document-ready",
        metadata={"company_id": company.id, "document_id": str(document.id),
                  "document_type": document_type},
        session_factory=session_factory,
    )


async def notify_document_deleted(
    broker:   QueueBroker,
    company:  Company,
    document: Any,
    document_type: str,
    *,
    session_factory: Optional[async_sessionmaker] = None,
) -> list[EmailQueued]:
    recipients = list(company.notification_emails or [])
    if not recipients:
        return []

    label = _label(document_type)
    title = f"{label} {document.document_number or ''} removed under retention policy".replace("  ", " ")
    rows = [
        ("Company", company.name),
        (f"{label} number", document.document_number or "n/a"),
        ("Retention expiry", document.retention_expiry_date.date().isoformat()
            if document.retention_expiry_date else "n/a"),
    ]
    footer = "The document has reached the end of its retention period and was deleted."

    return await queue_batch_email(
        broker,
        recipients=recipients,
        subject=title,
        html=_page(title, rows, footer),
        text=_text(title, rows, footer),
        template_name="document-deleted",
        metadata={"company_id": company.id, "document_id": str(document.id),
                  "document_type": document_type},
        session_factory=session_factory,
    )
