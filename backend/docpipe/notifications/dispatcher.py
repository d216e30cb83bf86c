"""
Notification Dispatcher
═══════════════════════

queue_email()
  1. validate to / subject / html
  2. write the EmailDeliveryLog row (QUEUED) and commit it, before the
     broker is touched
  3. job id = "email_{log id}"; enqueueing the same log twice therefore
     publishes one job only
  4. enqueue on the email queue; if that fails the row goes straight to
     FAILED_PERMANENT with the error, and EnqueueFailed is raised

queue_batch_email()
  Identical content for several recipients. Providers with native batch
  submission get one job carrying the whole list; the others get one job
  per recipient, so a bad address only fails its own send.

process_email_job()
  Worker side. Skips rows already SENT, marks SENDING, sends through the
  provider's rate limiter, then records SENT or classifies the failure:
  PERMANENT (or last attempt) → FAILED_PERMANENT, anything else →
  FAILED_RETRYING and a TransientError for the task to retry.
"""

from __future__ import annotations

import logging
import uuid
from dataclasses import dataclass
from typing import Any, Optional, Sequence

from sqlalchemy import update
from sqlalchemy.ext.asyncio import async_sessionmaker

from docpipe.core.exceptions import (
    EmailValidationError,
    EnqueueFailed,
    PermanentDeliveryError,
    TransientError,
)
from docpipe.models import EmailDeliveryLog, TenantSettings, utcnow
from docpipe.notifications.errors import SendErrorType, classify_send_error
from docpipe.notifications.providers import ProviderProfile, get_provider_profile, get_rate_limiter
from docpipe.notifications.transports import Attachment, OutgoingEmail, Transport, build_transport
from docpipe.queue.broker import JobHandle, QueueBroker
from docpipe.queue.catalogue import QueueName, get_queue_config

logger = logging.getLogger(__name__)

EMAIL_QUEUE = get_queue_config(QueueName.EMAIL)


def _factory(session_factory: Optional[async_sessionmaker]) -> async_sessionmaker:
    if session_factory is not None:
        return session_factory
    from docpipe.db.session import AsyncSessionLocal
    return AsyncSessionLocal


def email_job_id(log_id: uuid.UUID | str) -> str:
    return f"email_{log_id}"


def _as_uuid(value: Any) -> Optional[uuid.UUID]:
    if value is None or isinstance(value, uuid.UUID):
        return value
    return uuid.UUID(str(value))


def _recipients(to: str | Sequence[str]) -> list[str]:
    if isinstance(to, str):
        return [addr.strip() for addr in to.split(",") if addr.strip()]
    return [str(addr).strip() for addr in to if str(addr).strip()]


async def _update_log(log_id: uuid.UUID, session_factory: async_sessionmaker, **values: Any) -> None:
    values.setdefault("updated_at", utcnow())
    async with session_factory() as session:
        async with session.begin():
            await session.execute(
                update(EmailDeliveryLog).where(EmailDeliveryLog.id == log_id).values(**values)
            )


async def active_provider(session_factory: Optional[async_sessionmaker] = None) -> ProviderProfile:
    """Provider and limits as configured right now (tenant row, else app settings)."""
    from docpipe.core.config import settings

    async with _factory(session_factory)() as session:
        row = await session.get(TenantSettings, 1)
    name = (row.email_provider if row is not None else None) or settings.email_provider
    return get_provider_profile(name, row.provider_limits if row is not None else None)


# ---------------------------------------------------------------------------
# Enqueue side
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class EmailQueued:
    log_id: uuid.UUID
    job_id: str
    handle: JobHandle


async def queue_email(
    broker: QueueBroker,
    *,
    to:            str | Sequence[str],
    subject:       str,
    html:          str,
    text:          Optional[str] = None,
    attachments:   Optional[list[dict[str, Any]]] = None,
    template_name: Optional[str] = None,
    metadata:      Optional[dict[str, Any]] = None,
    priority:      int = 0,
    log_id:        Optional[uuid.UUID] = None,
    session_factory: Optional[async_sessionmaker] = None,
) -> EmailQueued:
    """
    Persist the delivery log, then enqueue. Pass `log_id` to re-submit an
    existing log: the job id is the same, so the broker sees one job.
    """
    recipients = _recipients(to) if to else []
    if not recipients or not subject or not html:
        raise EmailValidationError("Email queue: to, subject, and html are required")

    factory = _factory(session_factory)
    metadata = dict(metadata or {})
    json_metadata = {k: str(v) if isinstance(v, uuid.UUID) else v for k, v in metadata.items()}

    if log_id is None:
        log = EmailDeliveryLog(
            id=uuid.uuid4(),
            to=", ".join(recipients),
            subject=subject,
            template_name=template_name,
            status="QUEUED",
            max_attempts=EMAIL_QUEUE.attempts,
            recipient_count=len(recipients),
            company_id=_as_uuid(metadata.get("company_id")),
            log_metadata=json_metadata,
        )
        log.job_id = email_job_id(log.id)
        async with factory() as session:
            async with session.begin():
                session.add(log)
        log_id = log.id
    job_id = email_job_id(log_id)

    payload = {
        "email_log_id": str(log_id),
        "to": recipients,
        "subject": subject,
        "html": html,
        "text": text,
        "attachments": attachments or [],
        "metadata": json_metadata,
    }

    try:
        handle = await broker.enqueue(QueueName.EMAIL, payload, job_id=job_id, priority=priority)
    except Exception as exc:
        await _update_log(log_id, factory, status="FAILED_PERMANENT", last_error=str(exc)[:1000],
                          error_type="ENQUEUE")
        logger.error("Email enqueue failed | log=%s to=%s error=%s", log_id, recipients, exc)
        raise EnqueueFailed(f"Could not enqueue email {log_id}: {exc}") from exc

    if handle.degraded:
        await _update_log(log_id, factory, status="FAILED_PERMANENT",
                          last_error="Broker unavailable: email was not queued", error_type="ENQUEUE")
        logger.error("Email not queued, broker degraded | log=%s to=%s", log_id, recipients)
        raise EnqueueFailed(f"Broker unavailable: email {log_id} was not queued")

    logger.info("Email queued | log=%s job=%s recipients=%d dedup=%s",
                log_id, job_id, len(recipients), handle.deduplicated)
    return EmailQueued(log_id=log_id, job_id=job_id, handle=handle)


async def queue_batch_email(
    broker: QueueBroker,
    *,
    recipients: Sequence[str],
    subject:    str,
    html:       str,
    provider:   Optional[ProviderProfile] = None,
    session_factory: Optional[async_sessionmaker] = None,
    **options:  Any,
) -> list[EmailQueued]:
    """
    One job for the whole list when the provider batches natively, else one
    job per recipient. Per-recipient enqueue failures are logged and skipped.
    """
    addresses = _recipients(recipients)
    if not addresses:
        raise EmailValidationError("Email queue: at least one recipient is required")

    profile = provider or await active_provider(session_factory)
    if profile.supports_batch and len(addresses) > 1:
        logger.info("Batch email | provider=%s recipients=%d", profile.name, len(addresses))
        return [await queue_email(broker, to=addresses, subject=subject, html=html,
                                  session_factory=session_factory, **options)]

    queued: list[EmailQueued] = []
    for address in addresses:
        try:
            queued.append(await queue_email(broker, to=address, subject=subject, html=html,
                                            session_factory=session_factory, **options))
        except EnqueueFailed as exc:
            logger.warning("Recipient skipped | to=%s error=%s", address, exc)
    return queued


# ---------------------------------------------------------------------------
# Worker side
# ---------------------------------------------------------------------------

async def process_email_job(
    payload: dict[str, Any],
    *,
    attempt:   int,
    max_attempts: int = EMAIL_QUEUE.attempts,
    transport: Optional[Transport] = None,
    provider:  Optional[ProviderProfile] = None,
    session_factory: Optional[async_sessionmaker] = None,
) -> dict[str, Any]:
    """
    attempt is 1-based. Raises TransientError to ask for a retry and
    PermanentDeliveryError when the send can never succeed.
    """
    factory = _factory(session_factory)
    log_id = uuid.UUID(str(payload["email_log_id"]))

    async with factory() as session:
        log = await session.get(EmailDeliveryLog, log_id)
    if log is None:
        raise PermanentDeliveryError(f"Email log {log_id} not found")
    if log.status == "SENT":
        logger.info("Email already sent, skipping | log=%s", log_id)
        return {"already_sent": True, "email_log_id": str(log_id)}

    await _update_log(log_id, factory, status="SENDING", attempts_made=attempt)

    profile = provider or await active_provider(factory)
    email = OutgoingEmail(
        to=_recipients(payload["to"]),
        subject=payload["subject"],
        html=payload["html"],
        text=payload.get("text"),
        attachments=[Attachment.from_payload(a) for a in payload.get("attachments") or []],
    )

    try:
        sender = transport or build_transport(profile.name)
        await get_rate_limiter(profile).acquire()
        result = await sender.send(email)
    except Exception as exc:
        cls = classify_send_error(exc)
        final = cls.type is SendErrorType.PERMANENT or attempt >= max_attempts
        await _update_log(
            log_id, factory,
            status="FAILED_PERMANENT" if final else "FAILED_RETRYING",
            last_error=str(exc)[:1000],
            error_code=str(cls.code) if cls.code is not None else None,
            error_type=cls.type.value,
            provider=profile.name,
        )
        logger.warning(
            "Email send failed | log=%s provider=%s attempt=%d/%d type=%s code=%s error=%s",
            log_id, profile.name, attempt, max_attempts, cls.type.value, cls.code, exc,
        )
        if final:
            raise PermanentDeliveryError(
                f"Permanent failure ({cls.code}): {exc}", reason=cls.type.value.lower()
            ) from exc
        raise TransientError(f"{cls.type.value}: {exc}", reason=cls.type.value.lower()) from exc

    await _update_log(
        log_id, factory,
        status="SENT",
        message_id=result.message_id,
        provider=result.provider,
        recipient_count=result.recipient_count,
        sent_at=utcnow(),
        last_error=None,
        error_code=None,
        error_type=None,
    )
    logger.info("Email sent | log=%s provider=%s message_id=%s recipients=%d",
                log_id, result.provider, result.message_id, result.recipient_count)
    return {
        "success": True,
        "email_log_id": str(log_id),
        "message_id": result.message_id,
        "provider": result.provider,
        "recipient_count": result.recipient_count,
    }
