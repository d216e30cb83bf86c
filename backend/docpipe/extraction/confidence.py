"""
Confidence score (0–100) for one extraction.

  backend confidence            40 %   reported by the backend, else a default per method
  template field match          35 %   share of mapped fields that produced a value
  mandatory field bonus         10 %   share of the template's mandatory fields present
  text length                   10 %   saturates at 2000 characters
  amount present                 5 %
  value quality checks     up to 10 %

Without a template the two template terms are replaced by invoice number
(15 %) and date (10 %) presence.
"""

from __future__ import annotations

import re
from typing import Any, Iterable, Mapping, Optional

DEFAULT_BACKEND_CONFIDENCE = {
    "vision":     0.85,
    "documentai": 0.90,
    "local":      0.80,
}
FALLBACK_BACKEND_CONFIDENCE = 0.70

_AMOUNT_LIKE_RE = re.compile(r"[\d.,£$€]")


def _present(value: Any) -> bool:
    return value is not None and value != ""


def calculate_confidence(
    fields:             Mapping[str, Any],
    *,
    full_text:          str = "",
    processing_method:  str = "",
    backend_confidence: Optional[float] = None,
    template_fields:    Optional[Iterable[str]] = None,
    mandatory_fields:   Optional[Iterable[str]] = None,
) -> int:
    score = 0.0

    if backend_confidence is not None:
        score += min(max(float(backend_confidence), 0.0), 1.0) * 0.40
    else:
        score += DEFAULT_BACKEND_CONFIDENCE.get(processing_method, FALLBACK_BACKEND_CONFIDENCE) * 0.40

    template_fields = list(template_fields or [])
    if template_fields:
        matched = sum(1 for name in template_fields if _present(fields.get(name)))
        score += matched / len(template_fields) * 0.35

        mandatory = list(mandatory_fields or [])
        if mandatory:
            found = sum(1 for name in mandatory if _present(fields.get(name)))
            score += found / len(mandatory) * 0.10
    else:
        score += 0.15 if _present(fields.get("invoiceNumber")) else 0.0
        score += 0.10 if _present(fields.get("invoiceDate")) else 0.0

    amount = fields.get("totalAmount")
    if full_text:
        score += min(len(full_text) / 2000, 0.10)
        if _present(amount):
            score += 0.05

    quality = 0.0
    if _present(fields.get("invoiceNumber")):
        quality += 0.03
    if _present(fields.get("invoiceDate")):
        quality += 0.03
    if isinstance(amount, (int, float)) or (isinstance(amount, str) and _AMOUNT_LIKE_RE.search(amount)):
        quality += 0.04
    score += min(quality, 0.10)

    return round(min(score, 1.0) * 100)
