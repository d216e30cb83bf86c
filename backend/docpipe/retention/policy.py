"""
Document retention rules.

  calculate_retention_expiry_date(period_days, start)
      start + period_days, truncated to 00:00 UTC of that day, so the
      once-daily midnight sweep catches everything due that day.

  get_retention_start_date(document, trigger)
      invoice_date → issue date (statements: period end), else creation time
      upload_date  → creation time

  should_delete_document(document, policy, now)
      true only when retention is enabled, the document is not yet deleted,
      an expiry is stamped and expiry <= now (boundary inclusive).
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import date, datetime, time, timedelta, timezone
from typing import Any, Optional

DATE_TRIGGERS = ("upload_date", "invoice_date")


@dataclass(frozen=True)
class RetentionPolicy:
    period_days:  Optional[int] = None        # None = retention disabled
    date_trigger: str = "upload_date"

    @property
    def enabled(self) -> bool:
        return bool(self.period_days)

    @classmethod
    def from_settings(cls, row: Any) -> "RetentionPolicy":
        """Build from a TenantSettings row (or None → disabled)."""
        if row is None:
            return cls()
        trigger = row.retention_date_trigger or "upload_date"
        if trigger not in DATE_TRIGGERS:
            trigger = "upload_date"
        return cls(period_days=row.retention_period_days, date_trigger=trigger)


def as_utc(value: Optional[date | datetime]) -> Optional[datetime]:
    """Normalise a date / naive datetime / aware datetime to aware UTC."""
    if value is None:
        return None
    if not isinstance(value, datetime):
        return datetime.combine(value, time.min, tzinfo=timezone.utc)
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def calculate_retention_expiry_date(
    period_days: Optional[int],
    start_date:  Optional[date | datetime],
) -> Optional[datetime]:
    if not period_days or start_date is None:
        return None
    expiry = as_utc(start_date) + timedelta(days=period_days)
    return expiry.replace(hour=0, minute=0, second=0, microsecond=0)


def get_retention_start_date(document: Any, date_trigger: str) -> Optional[datetime]:
    if document is None:
        return None

    created = as_utc(getattr(document, "created_at", None))

    if date_trigger == "invoice_date":
        issue_date = getattr(document, "issue_date", None)
        if issue_date is not None:
            return as_utc(issue_date)
        period_end = getattr(document, "period_end", None)
        if period_end is not None:
            return as_utc(period_end)

    return created or datetime.now(timezone.utc)


def calculate_document_retention_dates(
    document: Any,
    policy:   RetentionPolicy,
) -> tuple[Optional[datetime], Optional[datetime]]:
    """Return (start, expiry); both None when retention is disabled."""
    if not policy.enabled:
        return None, None
    start = get_retention_start_date(document, policy.date_trigger)
    return start, calculate_retention_expiry_date(policy.period_days, start)


def stamp_retention(document: Any, settings_row: Any) -> None:
    """Set retention_start_date / retention_expiry_date on a new document."""
    start, expiry = calculate_document_retention_dates(
        document, RetentionPolicy.from_settings(settings_row)
    )
    document.retention_start_date = start
    document.retention_expiry_date = expiry


def should_delete_document(
    document: Any,
    policy:   RetentionPolicy,
    now:      Optional[datetime] = None,
) -> bool:
    if not policy.enabled:
        return False
    if getattr(document, "retention_deleted_at", None) or getattr(document, "deleted_at", None):
        return False

    expiry = as_utc(getattr(document, "retention_expiry_date", None))
    if expiry is None:
        return False

    now = as_utc(now) if now is not None else datetime.now(timezone.utc)
    return expiry <= now
