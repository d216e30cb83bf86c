"""
Per-field post-processing: remove → trim → case → parseFloat / parseInt.

Also the value parsers used when an extracted field set becomes a document
row (amounts, UK-first dates).
"""

from __future__ import annotations

import math
import re
from datetime import date, datetime
from decimal import Decimal, InvalidOperation
from typing import Any, Optional

from dateutil.parser import parse as parse_datetime

from docpipe.extraction.workbook import format_number

_FLOAT_STRIP_RE = re.compile(r"[^\d.-]")
_INT_STRIP_RE = re.compile(r"[^\d-]")
_LEADING_FLOAT_RE = re.compile(r"^[+-]?(?:\d+\.?\d*|\.\d+)")
_LEADING_INT_RE = re.compile(r"^[+-]?\d+")

_AMOUNT_SYMBOLS_RE = re.compile(r"[£$€¥₹,\s]")


def _leading_number(text: str, pattern: re.Pattern) -> Optional[str]:
    match = pattern.match(text)
    return match.group(0) if match else None


def parse_float(text: str) -> Optional[float]:
    """Strip everything but digits, '.', '-' and read the leading number."""
    token = _leading_number(_FLOAT_STRIP_RE.sub("", text), _LEADING_FLOAT_RE)
    if token is None:
        return None
    value = float(token)
    return None if math.isnan(value) else value


def parse_int(text: str) -> Optional[int]:
    token = _leading_number(_INT_STRIP_RE.sub("", text), _LEADING_INT_RE)
    return int(token) if token is not None else None


def apply_transformations(value: str, transformations: Optional[dict[str, Any]]) -> str:
    """
    transformations: {"remove": ["£", ","], "trim": true, "uppercase": true,
                      "lowercase": false, "parseFloat": true, "parseInt": false}

    A numeric parse that finds no number leaves the text unchanged.
    """
    if not transformations:
        return value

    result = value
    remove = transformations.get("remove") or []
    if isinstance(remove, str):
        remove = [remove]
    for chars in remove:
        result = result.replace(str(chars), "")

    if transformations.get("trim"):
        result = result.strip()
    if transformations.get("uppercase"):
        result = result.upper()
    if transformations.get("lowercase"):
        result = result.lower()

    if transformations.get("parseFloat"):
        number = parse_float(result)
        if number is not None:
            result = format_number(number)
    if transformations.get("parseInt"):
        integer = parse_int(result)
        if integer is not None:
            result = str(integer)

    return result


def clean_amount(value: str) -> str:
    """"£1,234.50" → "1234.50". Returns the input when nothing numeric remains."""
    cleaned = _FLOAT_STRIP_RE.sub("", _AMOUNT_SYMBOLS_RE.sub("", value))
    if cleaned.startswith("."):
        cleaned = "0" + cleaned
    if not cleaned or cleaned == "-":
        return value
    return cleaned


def parse_amount(value: Any) -> Optional[Decimal]:
    """"£1,234.50" → Decimal("1234.50"); None when no amount can be read."""
    if value is None or value == "":
        return None
    try:
        return Decimal(clean_amount(str(value))).quantize(Decimal("0.01"))
    except InvalidOperation:
        return None


# ---------------------------------------------------------------------------
# Dates
# ---------------------------------------------------------------------------

# Day-first unless the text leads with a four-digit year
_YEAR_FIRST_RE = re.compile(r"^\d{4}[/.-]")


def parse_document_date(value: Any) -> Optional[date]:
    """
    "05/12/2025", "05-12-25", "2025-12-05 00:00:00+00", "5 Dec 2025",
    "05 December, 2025", "Dec 5, 2025". Impossible dates (31/02) give None.
    """
    if value is None:
        return None
    if isinstance(value, datetime):
        return value.date()
    if isinstance(value, date):
        return value
    text = str(value).strip()
    year_first = bool(_YEAR_FIRST_RE.match(text))
    try:
        return parse_datetime(text, dayfirst=not year_first, yearfirst=year_first).date()
    except (ValueError, OverflowError):
        return None
