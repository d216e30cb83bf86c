"""
Email transports.

  smtp, office365   stdlib smtplib (STARTTLS), run in a worker thread
  smtp2go, resend   JSON HTTP APIs through httpx

Every transport takes an OutgoingEmail and returns a SendResult, or raises.
Errors are left as the library raised them (smtplib / httpx / OSError) or as
SendError for API-level failures; classification happens in errors.py.
"""

from __future__ import annotations

import asyncio
import base64
import logging
import mimetypes
import smtplib
import uuid
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from email.message import EmailMessage
from email.utils import formataddr, make_msgid
from pathlib import Path
from typing import Any, Optional

import httpx

from docpipe.notifications.errors import SendError

logger = logging.getLogger(__name__)


@dataclass
class Attachment:
    filename:     str
    content:      bytes
    content_type: str = "application/octet-stream"

    @classmethod
    def from_payload(cls, data: dict[str, Any]) -> "Attachment":
        """{"filename", "content" (base64) | "path", "contentType"?}"""
        if data.get("path"):
            content = Path(data["path"]).read_bytes()
        elif data.get("content") is not None:
            content = base64.b64decode(data["content"])
        else:
            raise ValueError("Attachment must have either path or content")
        filename = data.get("filename") or Path(data.get("path") or "attachment").name
        content_type = (
            data.get("contentType")
            or mimetypes.guess_type(filename)[0]
            or "application/octet-stream"
        )
        return cls(filename=filename, content=content, content_type=content_type)


@dataclass
class OutgoingEmail:
    to:          list[str]
    subject:     str
    html:        str
    text:        Optional[str] = None
    attachments: list[Attachment] = field(default_factory=list)


@dataclass(frozen=True)
class SendResult:
    message_id:      str
    provider:        str
    recipient_count: int


class Transport(ABC):

    name: str = ""

    def __init__(self, *, from_address: str, from_name: str = "", timeout: float = 30.0) -> None:
        self.from_address = from_address
        self.from_name = from_name
        self.timeout = timeout

    @property
    def sender(self) -> str:
        return formataddr((self.from_name, self.from_address)) if self.from_name else self.from_address

    @abstractmethod
    async def send(self, email: OutgoingEmail) -> SendResult:
        ...


# ---------------------------------------------------------------------------
# SMTP
# ---------------------------------------------------------------------------

class SMTPTransport(Transport):

    name = "smtp"

    def __init__(
        self,
        *,
        host: str,
        port: int,
        username: str = "",
        password: str = "",
        use_tls: bool = True,
        **kwargs: Any,
    ) -> None:
        super().__init__(**kwargs)
        self.host = host
        self.port = port
        self.username = username
        self.password = password
        self.use_tls = use_tls

    def _build(self, email: OutgoingEmail, message_id: str) -> EmailMessage:
        msg = EmailMessage()
        msg["From"] = self.sender
        msg["To"] = ", ".join(email.to)
        msg["Subject"] = email.subject
        msg["Message-ID"] = message_id
        msg.set_content(email.text or "")
        msg.add_alternative(email.html, subtype="html")
        for att in email.attachments:
            maintype, _, subtype = att.content_type.partition("/")
            msg.add_attachment(att.content, maintype=maintype, subtype=subtype or "octet-stream",
                               filename=att.filename)
        return msg

    def _send_sync(self, email: OutgoingEmail) -> SendResult:
        message_id = make_msgid(domain=self.from_address.rpartition("@")[2] or None)
        msg = self._build(email, message_id)
        with smtplib.SMTP(self.host, self.port, timeout=self.timeout) as smtp:
            if self.use_tls:
                smtp.starttls()
            if self.username:
                smtp.login(self.username, self.password)
            refused = smtp.send_message(msg)
        if refused and len(refused) == len(email.to):
            code, reason = next(iter(refused.values()))
            raise SendError(f"All recipients refused: {reason!r}", response_code=code)
        return SendResult(message_id=message_id, provider=self.name,
                          recipient_count=len(email.to) - len(refused))

    async def send(self, email: OutgoingEmail) -> SendResult:
        return await asyncio.to_thread(self._send_sync, email)


class Office365Transport(SMTPTransport):
    name = "office365"


# ---------------------------------------------------------------------------
# HTTP APIs
# ---------------------------------------------------------------------------

class _HTTPTransport(Transport):

    def __init__(self, *, api_key: str, base_url: str, client: Optional[httpx.AsyncClient] = None, **kwargs: Any) -> None:
        super().__init__(**kwargs)
        if not api_key:
            raise SendError(f"{self.name} configuration is incomplete: missing api key", code="ECONFIG")
        self.api_key = api_key
        self.base_url = base_url.rstrip("/")
        self._client = client

    async def _post(self, path: str, payload: dict[str, Any], headers: dict[str, str]) -> dict[str, Any]:
        if self._client is not None:
            response = await self._client.post(f"{self.base_url}{path}", json=payload, headers=headers)
        else:
            async with httpx.AsyncClient(timeout=self.timeout) as client:
                response = await client.post(f"{self.base_url}{path}", json=payload, headers=headers)
        response.raise_for_status()
        return response.json()


class SMTP2GoTransport(_HTTPTransport):

    name = "smtp2go"

    async def send(self, email: OutgoingEmail) -> SendResult:
        payload: dict[str, Any] = {
            "to": email.to,
            "sender": self.sender,
            "subject": email.subject,
            "html_body": email.html,
        }
        if email.text:
            payload["text_body"] = email.text
        if email.attachments:
            payload["attachments"] = [
                {"filename": a.filename, "fileblob": base64.b64encode(a.content).decode(),
                 "mimetype": a.content_type}
                for a in email.attachments
            ]
        body = await self._post("/email/send", payload, {"X-Smtp2go-Api-Key": self.api_key})
        data = body.get("data") or {}
        if data.get("error_code"):
            raise SendError(f"SMTP2Go error: {data.get('error')}", code=str(data["error_code"]))
        return SendResult(message_id=data.get("email_id") or "unknown", provider=self.name,
                          recipient_count=int(data.get("succeeded") or len(email.to)))


class ResendTransport(_HTTPTransport):

    name = "resend"

    async def send(self, email: OutgoingEmail) -> SendResult:
        payload: dict[str, Any] = {
            "from": self.sender,
            "to": email.to,
            "subject": email.subject,
            "html": email.html,
        }
        if email.text:
            payload["text"] = email.text
        if email.attachments:
            payload["attachments"] = [
                {"filename": a.filename, "content": base64.b64encode(a.content).decode(),
                 "content_type": a.content_type}
                for a in email.attachments
            ]
        body = await self._post("/emails", payload, {"Authorization": f"Bearer {self.api_key}"})
        return SendResult(message_id=body.get("id") or str(uuid.uuid4()), provider=self.name,
                          recipient_count=len(email.to))


def build_transport(provider: str, settings: Any = None) -> Transport:
    """Construct the transport for `provider` from application settings."""
    if settings is None:
        from docpipe.core.config import settings as app_settings
        settings = app_settings

    common = {
        "from_address": settings.email_from_address,
        "from_name": settings.email_from_name,
        "timeout": settings.email_send_timeout,
    }
    if provider == "smtp":
        return SMTPTransport(host=settings.smtp_host, port=settings.smtp_port,
                             username=settings.smtp_username, password=settings.smtp_password,
                             use_tls=settings.smtp_use_tls, **common)
    if provider == "office365":
        return Office365Transport(host=settings.office365_host, port=settings.office365_port,
                                  username=settings.smtp_username, password=settings.smtp_password,
                                  use_tls=True, **common)
    if provider == "smtp2go":
        return SMTP2GoTransport(api_key=settings.smtp2go_api_key, base_url=settings.smtp2go_base_url, **common)
    if provider == "resend":
        return ResendTransport(api_key=settings.resend_api_key, base_url=settings.resend_base_url, **common)
    raise ValueError(f"Unknown email provider: {provider!r}")
