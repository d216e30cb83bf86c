"""
PDF Field Extraction
════════════════════

Backends (selected per template by `extraction_backend`)
────────────────────────────────────────────────────────
  local       PyMuPDF text layer, in-process, no API calls
  vision      cloud OCR, registered at runtime
  documentai  cloud document parser, registered at runtime
  auto        local first; if the text layer is sparse (scanned document)
              fall through to the first registered cloud backend

A cloud backend that has not been registered raises
ExtractionBackendUnavailable, which is transient: the import job retries
rather than failing the file.

Field hints
───────────
Text is mined with the template's own `text_patterns` first (one capture
group each), then with the built-in patterns below for the standard
fields a template did not cover.
"""

from __future__ import annotations

import asyncio
import logging
import re
import time
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any, Mapping, Optional

from docpipe.core.exceptions import ExtractionBackendUnavailable, UnsupportedDocument
from docpipe.extraction.confidence import calculate_confidence
from docpipe.extraction.excel import infer_document_type, normalise_document_type
from docpipe.extraction.fields import ExtractedFieldSet, canonical_field_name
from docpipe.extraction.transforms import apply_transformations, clean_amount

logger = logging.getLogger(__name__)

# Below this many characters per page the document is treated as scanned.
MIN_CHARS_PER_PAGE = 50

OCR_TIMEOUT_SECONDS = 120


# ---------------------------------------------------------------------------
# Backend results
# ---------------------------------------------------------------------------

@dataclass
class TextLayer:
    """
    pages        : text per page, 1-based order
    backend      : "local" | "vision" | "documentai"
    confidence   : backend-reported confidence 0.0–1.0, None if not reported
    hints        : fields the backend recognised itself (cloud parsers)
    """
    pages:      list[str]
    backend:    str
    confidence: Optional[float] = None
    hints:      dict[str, str] = field(default_factory=dict)

    @property
    def full_text(self) -> str:
        return "\n".join(p for p in self.pages if p.strip())

    @property
    def avg_chars_per_page(self) -> float:
        if not self.pages:
            return 0.0
        return sum(len(p) for p in self.pages) / len(self.pages)

    def is_sparse(self, threshold: int = MIN_CHARS_PER_PAGE) -> bool:
        return self.avg_chars_per_page < threshold


class TextBackend(ABC):

    name: str = ""

    @abstractmethod
    async def read(self, pdf_bytes: bytes) -> TextLayer:
        """Return the document's text. Raise ExtractionBackendUnavailable on outage."""


class LocalTextBackend(TextBackend):
    """PyMuPDF text layer. Blocking work runs in the default executor."""

    name = "local"

    async def read(self, pdf_bytes: bytes) -> TextLayer:
        loop = asyncio.get_running_loop()
        t0 = time.monotonic()
        layer = await loop.run_in_executor(None, self._read_sync, pdf_bytes)
        logger.info(
            "PyMuPDF | pages=%d avg_chars_per_page=%.0f elapsed_ms=%.0f",
            len(layer.pages), layer.avg_chars_per_page, (time.monotonic() - t0) * 1000,
        )
        return layer

    def _read_sync(self, pdf_bytes: bytes) -> TextLayer:
        import fitz  # PyMuPDF

        try:
            doc = fitz.open(stream=pdf_bytes, filetype="pdf")
        except (fitz.FileDataError, RuntimeError, ValueError) as exc:
            raise UnsupportedDocument(f"Failed to read PDF: {exc}") from exc
        with doc:
            pages = [(page.get_text("text") or "").strip() for page in doc]
        return TextLayer(pages=pages, backend=self.name)


_BACKENDS: dict[str, TextBackend] = {"local": LocalTextBackend()}
CLOUD_BACKENDS = ("documentai", "vision")


def register_backend(name: str, backend: TextBackend) -> None:
    """Install a cloud backend (vision / documentai) at process start."""
    _BACKENDS[name] = backend
    logger.info("PDF backend registered | name=%s", name)


def unregister_backend(name: str) -> None:
    if name != "local":
        _BACKENDS.pop(name, None)


def _backend(name: str) -> TextBackend:
    backend = _BACKENDS.get(name)
    if backend is None:
        raise ExtractionBackendUnavailable(f"PDF extraction backend '{name}' is not configured")
    return backend


async def read_text_layer(
    pdf_bytes: bytes,
    backend: str = "local",
    *,
    min_chars_per_page: int = MIN_CHARS_PER_PAGE,
) -> TextLayer:
    if backend != "auto":
        return await asyncio.wait_for(_backend(backend).read(pdf_bytes), timeout=OCR_TIMEOUT_SECONDS)

    layer = await _backend("local").read(pdf_bytes)
    if not layer.is_sparse(min_chars_per_page):
        return layer

    for name in CLOUD_BACKENDS:
        if name in _BACKENDS:
            logger.info("Sparse text layer, using cloud backend | backend=%s", name)
            return await asyncio.wait_for(_BACKENDS[name].read(pdf_bytes), timeout=OCR_TIMEOUT_SECONDS)

    logger.warning("Sparse text layer and no cloud backend registered | avg_chars=%.0f",
                   layer.avg_chars_per_page)
    return layer


# ---------------------------------------------------------------------------
# Built-in hint patterns
# ---------------------------------------------------------------------------

_NOT_A_VALUE_RE = re.compile(r"^(no|yes|na|n/a)$", re.IGNORECASE)

_INVOICE_NUMBER_PATTERNS = [
    re.compile(r"invoice\s+no\.?\s+:?\s*(\d{4,}[A-Z0-9\-_]*)", re.IGNORECASE),
    re.compile(r"invoice\s*#\s*:?\s*([A-Z0-9\-_]+)", re.IGNORECASE),
    re.compile(r"invoice\s+number\s*:?\s*([A-Z0-9\-_]+)", re.IGNORECASE),
    re.compile(r"(?:^|\s)(INV[-\s]?[A-Z0-9\-_]+)", re.IGNORECASE),
    re.compile(r"invoice\s+([A-Z0-9\-_]+)", re.IGNORECASE),
    re.compile(r"(?:^|\s)(\d{7,}[A-Z0-9\-_]*)"),
]

_DATE_PATTERNS = [
    re.compile(r"(\d{1,2}[/\-]\d{1,2}[/\-]\d{2,4})"),
    re.compile(r"(\d{4}[/\-]\d{1,2}[/\-]\d{1,2})"),
    re.compile(r"(\d{1,2}\s+(?:Jan|Feb|Mar|Apr|May|Jun|Jul|Aug|Sep|Oct|Nov|Dec)[a-z]*\s+\d{2,4})", re.IGNORECASE),
    re.compile(r"((?:Jan|Feb|Mar|Apr|May|Jun|Jul|Aug|Sep|Oct|Nov|Dec)[a-z]*\s+\d{1,2},?\s+\d{2,4})", re.IGNORECASE),
]

_AMOUNT = r"[£$€]?\s*([\d,]+\.?\d{2})"

_TOTAL_PATTERNS = [
    re.compile(rf"invoice\s+total\s*:?\s*{_AMOUNT}", re.IGNORECASE),
    re.compile(rf"(?:^|\s)total\s*:?\s*{_AMOUNT}", re.IGNORECASE),
    re.compile(rf"(?:amount\s+due|balance\s+due|grand\s+total)\s*:?\s*{_AMOUNT}", re.IGNORECASE),
]
_CURRENCY_AMOUNT_RE = re.compile(r"[£$€]\s*([\d,]+\.?\d{2})")

_GOODS_PATTERNS = [
    re.compile(rf"goods\s*:?\s*{_AMOUNT}", re.IGNORECASE),
    re.compile(rf"net\s+amount\s*:?\s*{_AMOUNT}", re.IGNORECASE),
    re.compile(rf"subtotal\s*:?\s*{_AMOUNT}", re.IGNORECASE),
]

_VAT_PATTERNS = [
    re.compile(rf"vat\s*:?\s*{_AMOUNT}", re.IGNORECASE),
    re.compile(rf"vat\s+amount\s*:?\s*{_AMOUNT}", re.IGNORECASE),
    re.compile(rf"tax\s+amount\s*:?\s*{_AMOUNT}", re.IGNORECASE),
]

_ACCOUNT_PATTERNS = [
    re.compile(r"account\s+no\.?\s*:?\s*(\d{4,}[A-Z0-9\-]*)", re.IGNORECASE),
    re.compile(r"account\s*#\s*:?\s*([A-Z0-9\-]+)", re.IGNORECASE),
    re.compile(r"account\s+number\s*:?\s*([A-Z0-9\-]+)", re.IGNORECASE),
    re.compile(r"acc\s+no\.?\s*:?\s*(\d{4,}[A-Z0-9\-]*)", re.IGNORECASE),
    re.compile(r"account\s+code\s*:?\s*([A-Z0-9\-]+)", re.IGNORECASE),
    re.compile(r"customer\s+account\s*:?\s*([A-Z0-9\-]+)", re.IGNORECASE),
]

_CUSTOMER_NAME_PATTERNS = [
    re.compile(r"(?:bill\s*to|customer|client)[\s:]*\n?([A-Z][A-Za-z &,.\-']+)", re.IGNORECASE),
    re.compile(r"(?:sold\s*to)[\s:]*\n?([A-Z][A-Za-z &,.\-']+)", re.IGNORECASE),
]

_PO_PATTERNS = [
    re.compile(r"customer\s+po\s*:?\s*([A-Z0-9 \-_]{2,50})", re.IGNORECASE),
    re.compile(r"purchase\s+order\s*:?\s*([A-Z0-9 \-_]{2,50})", re.IGNORECASE),
]


def _first(patterns: list[re.Pattern], text: str, min_len: int = 1, max_len: int = 50) -> Optional[str]:
    for pattern in patterns:
        match = pattern.search(text)
        if not match:
            continue
        value = match.group(1).strip()
        if min_len <= len(value) <= max_len and not _NOT_A_VALUE_RE.match(value):
            return value
    return None


def _amount(patterns: list[re.Pattern], text: str) -> Optional[str]:
    value = _first(patterns, text)
    return value.replace(",", "") if value else None


def hint_fields(text: str) -> dict[str, str]:
    """Best-effort standard fields from unstructured invoice text."""
    hints: dict[str, Optional[str]] = {}
    hints["invoiceNumber"] = _first(_INVOICE_NUMBER_PATTERNS, text, min_len=4)
    hints["invoiceDate"] = _first(_DATE_PATTERNS, text)

    total = _amount(_TOTAL_PATTERNS, text)
    if total is None:
        amounts = _CURRENCY_AMOUNT_RE.findall(text)
        total = amounts[-1].replace(",", "") if amounts else None
    hints["totalAmount"] = total
    hints["goodsAmount"] = _amount(_GOODS_PATTERNS, text)
    hints["vatAmount"] = _amount(_VAT_PATTERNS, text)

    # Bank account numbers follow "Bank Details"; customer accounts come first
    bank_at = text.lower().find("bank details")
    before_bank = text[:bank_at] if bank_at > 0 else text
    hints["accountNumber"] = _first(_ACCOUNT_PATTERNS, before_bank, min_len=4, max_len=20)

    name = _first(_CUSTOMER_NAME_PATTERNS, text, max_len=200)
    hints["customerName"] = name.split("\n")[0].strip() if name else None
    hints["customerPO"] = _first(_PO_PATTERNS, text, min_len=2)

    return {k: v for k, v in hints.items() if v}


def apply_text_patterns(text: str, patterns: Mapping[str, str]) -> dict[str, str]:
    """Template-defined regexes; group 1 (or the whole match) is the value."""
    found = {}
    for name, pattern in patterns.items():
        try:
            match = re.search(pattern, text, re.IGNORECASE | re.MULTILINE)
        except re.error as exc:
            logger.warning("Invalid text pattern skipped | field=%s error=%s", name, exc)
            continue
        if match:
            found[name] = (match.group(1) if match.groups() else match.group(0)).strip()
    return found


# ---------------------------------------------------------------------------
# Extraction
# ---------------------------------------------------------------------------

async def extract_fields_from_pdf(
    pdf_bytes: bytes,
    template:  Any = None,
    *,
    min_chars_per_page: int = MIN_CHARS_PER_PAGE,
) -> ExtractedFieldSet:
    backend = getattr(template, "extraction_backend", None) or "local"
    code = getattr(template, "code", "") or ""
    text_patterns = getattr(template, "text_patterns", None) or {}
    transformations = getattr(template, "transformations", None) or {}
    mandatory = list(getattr(template, "mandatory_fields", None) or [])

    layer = await read_text_layer(pdf_bytes, backend, min_chars_per_page=min_chars_per_page)
    text = layer.full_text
    warnings: list[str] = []
    if not text.strip():
        warnings.append("Document has no readable text")

    raw = apply_text_patterns(text, text_patterns)
    fields: dict[str, str] = {}
    for name, value in raw.items():
        value = apply_transformations(value, transformations.get(name))
        std = canonical_field_name(name, code) or name
        if std in ("totalAmount", "vatAmount", "goodsAmount"):
            value = clean_amount(value)
        fields.setdefault(std, value)

    for name, value in {**layer.hints, **hint_fields(text)}.items():
        fields.setdefault(name, value)

    if "documentType" in fields:
        document_type = normalise_document_type(fields["documentType"])
    else:
        document_type = infer_document_type(text)
    fields["documentType"] = document_type

    confidence = calculate_confidence(
        fields,
        full_text=text,
        processing_method=layer.backend,
        backend_confidence=layer.confidence,
        template_fields=[canonical_field_name(n, code) or n for n in text_patterns] if template else None,
        mandatory_fields=[canonical_field_name(n, code) or n for n in mandatory],
    )
    logger.info(
        "PDF extraction done | backend=%s pages=%d fields=%d confidence=%d type=%s",
        layer.backend, len(layer.pages), len(fields), confidence, document_type,
    )
    return ExtractedFieldSet(
        fields=fields,
        full_text=text,
        confidence=confidence,
        document_type=document_type,
        warnings=tuple(warnings),
        processing_method=layer.backend,
        raw_fields=raw,
    )
