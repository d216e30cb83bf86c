"""
Send-error classification.

  RATE_LIMITED  provider throttled us              → retry with backoff
  TEMPORARY     4xx reply, network failure,
                "try again" style text             → retry with backoff
  PERMANENT     5xx reply, unknown user, bad key…  → FAILED_PERMANENT, no retry
  UNKNOWN       anything else                      → retry with backoff

Checks run in that order, so a throttling text inside a 5xx reply still
counts as RATE_LIMITED.
"""

from __future__ import annotations

import errno
import re
import smtplib
import socket
from dataclasses import dataclass
from enum import Enum
from typing import Optional, Union

import httpx


class SendErrorType(str, Enum):
    RATE_LIMITED = "RATE_LIMITED"
    TEMPORARY    = "TEMPORARY"
    PERMANENT    = "PERMANENT"
    UNKNOWN      = "UNKNOWN"


@dataclass(frozen=True)
class SendErrorClass:
    type: SendErrorType
    code: Optional[Union[int, str]] = None

    @property
    def retryable(self) -> bool:
        return self.type is not SendErrorType.PERMANENT


class SendError(Exception):
    """Raised by transports; carries the provider's reply code when there is one."""

    def __init__(self, message: str, *, response_code: Optional[int] = None, code: Optional[str] = None) -> None:
        super().__init__(message)
        self.response_code = response_code
        self.code = code


_RATE_LIMIT_PATTERNS = [
    re.compile(p, re.IGNORECASE) for p in (
        r"exceeded", r"rate.?limit", r"messages.per.*hour", r"too many",
        r"quota exceeded", r"sending.?limit", r"throttl", r"429",
        r"daily.?limit", r"4\.7\.1",
    )
]

_RESPONSE_CODE_RE = re.compile(r"\b([45]\d{2})\b")

TRANSIENT_CODES = frozenset({
    "ETIMEDOUT", "ECONNRESET", "EAI_AGAIN", "ENOTFOUND", "ECONNREFUSED",
    "ESOCKET", "EPIPE", "EHOSTUNREACH", "ENETUNREACH", "EPROTO", "ECONNABORTED",
})

_TRANSIENT_TEXT = (
    "timeout", "timed out", "connection", "network", "temporarily", "try again",
    "service unavailable", "busy", "overload", "please retry", "server too busy",
    "temporary failure", "system not available", "resources temporarily unavailable",
)

_PERMANENT_TEXT = (
    "user unknown", "mailbox not found", "does not exist", "invalid recipient",
    "rejected", "blocked", "blacklisted", "authentication failed", "relay denied",
    "not allowed", "invalid api key", "unauthorized", "forbidden",
    "domain not verified", "sender not verified", "unsubscribed", "invalid_email",
    "email_invalid", "bounced", "complaint", "mailbox unavailable", "permanent",
    "fatal", "bad address", "mailbox disabled", "no such user", "user disabled",
    "account disabled", "configuration is incomplete",
)


def _response_code(exc: BaseException, message: str) -> Optional[int]:
    if isinstance(exc, SendError) and exc.response_code:
        return exc.response_code
    if isinstance(exc, smtplib.SMTPResponseException):
        return exc.smtp_code
    if isinstance(exc, httpx.HTTPStatusError):
        return exc.response.status_code
    match = _RESPONSE_CODE_RE.search(message)
    return int(match.group(1)) if match else None


def _error_code(exc: BaseException) -> str:
    if isinstance(exc, SendError) and exc.code:
        return exc.code.upper()
    if isinstance(exc, (socket.timeout, TimeoutError, httpx.TimeoutException)):
        return "ETIMEDOUT"
    if isinstance(exc, socket.gaierror):
        return "ENOTFOUND"
    if isinstance(exc, (smtplib.SMTPServerDisconnected, httpx.TransportError)):
        return "ESOCKET"
    if isinstance(exc, OSError) and exc.errno:
        return errno.errorcode.get(exc.errno, "")
    return ""


def classify_send_error(exc: BaseException) -> SendErrorClass:
    message = str(exc) or type(exc).__name__
    lowered = message.lower()
    response_code = _response_code(exc, message)

    if any(p.search(message) for p in _RATE_LIMIT_PATTERNS) or response_code == 429:
        return SendErrorClass(SendErrorType.RATE_LIMITED, response_code or 450)

    if response_code is not None:
        if 500 <= response_code < 600:
            return SendErrorClass(SendErrorType.PERMANENT, response_code)
        if 400 <= response_code < 500:
            return SendErrorClass(SendErrorType.TEMPORARY, response_code)

    error_code = _error_code(exc)
    if error_code in TRANSIENT_CODES:
        return SendErrorClass(SendErrorType.TEMPORARY, error_code)

    if any(text in lowered for text in _TRANSIENT_TEXT):
        return SendErrorClass(SendErrorType.TEMPORARY, error_code or "NETWORK")

    if any(text in lowered for text in _PERMANENT_TEXT):
        return SendErrorClass(SendErrorType.PERMANENT, 550)

    return SendErrorClass(SendErrorType.UNKNOWN)
