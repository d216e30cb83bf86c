"""
Standard field names and the extracted-field result type.

Templates name their mapped cells freely, usually prefixed with the template
code ("makita_invoice_total", "acme_account_no."). Every such name resolves
to one canonical field through ALIAS_TO_CANONICAL, a static table built once
at import time.
"""

from __future__ import annotations

import re
from dataclasses import dataclass, field
from types import MappingProxyType
from typing import Any, Mapping, Optional


@dataclass(frozen=True)
class StandardField:
    name:         str
    display_name: str
    aliases:      tuple[str, ...]


STANDARD_FIELDS: tuple[StandardField, ...] = (
    StandardField("documentType", "Document Type",
                  ("document_type", "documenttype", "doc_type", "type")),
    StandardField("accountNumber", "Account Number / Supplier Code",
                  ("account_number", "account_no", "accountno", "customer_number", "customer_no",
                   "account", "supplier_code", "vendor_code")),
    StandardField("invoiceDate", "Date / Tax Point",
                  ("date", "invoice_date", "tax_point", "taxpoint", "date_tax_point", "tax_point_date")),
    StandardField("invoiceNumber", "Invoice Number",
                  ("invoice_number", "invoice_no", "invoicenumber", "inv_no", "invoice_ref")),
    StandardField("creditNumber", "Credit Number",
                  ("credit_number", "credit_no", "creditnumber", "credit_note_number", "credit_ref")),
    StandardField("customerPO", "PO Number",
                  ("customer_po", "customerpo", "po_number", "po_no", "purchase_order", "po")),
    StandardField("totalAmount", "Total",
                  ("total", "amount", "invoice_total", "invoicetotal", "total_amount", "grand_total")),
    StandardField("vatAmount", "VAT Amount",
                  ("vat_amount", "vat_total", "vatamount", "tax_amount", "tax")),
    StandardField("goodsAmount", "Goods Amount",
                  ("goods_amount", "goods", "goodsamount", "subtotal", "net_amount")),
    StandardField("supplierName", "Supplier Name",
                  ("supplier_name", "vendor_name", "vendor", "supplier")),
    StandardField("customerName", "Customer Name",
                  ("customer_name", "customername", "company_name", "company")),
    StandardField("invoiceTo", "Invoice To",
                  ("invoice_to", "invoiceto", "bill_to", "billto")),
    StandardField("deliveryAddress", "Delivery Address",
                  ("delivery_address", "deliveryaddress", "ship_to", "shipto", "shipping_address")),
)

FIELDS_BY_NAME: Mapping[str, StandardField] = MappingProxyType({f.name: f for f in STANDARD_FIELDS})


def _build_alias_table() -> Mapping[str, str]:
    table: dict[str, str] = {}
    for std in STANDARD_FIELDS:
        table[std.name.lower()] = std.name
        for alias in std.aliases:
            table.setdefault(alias.lower(), std.name)
    return MappingProxyType(table)


ALIAS_TO_CANONICAL: Mapping[str, str] = _build_alias_table()

_TRAILING_PUNCT_RE = re.compile(r"[.:]+$")

AMOUNT_FIELDS = frozenset({"totalAmount", "vatAmount", "goodsAmount"})


def canonical_field_name(name: str, template_code: Optional[str] = None) -> Optional[str]:
    """
    "makita_invoice_total" → "totalAmount"; "Account_No." → "accountNumber".
    Returns None when no standard field matches.
    """
    if not name:
        return None
    if name in FIELDS_BY_NAME:
        return name

    normalized = _TRAILING_PUNCT_RE.sub("", name).strip().lower()
    if template_code:
        prefix = template_code.lower() + "_"
        if normalized.startswith(prefix):
            normalized = normalized[len(prefix):]

    direct = ALIAS_TO_CANONICAL.get(normalized)
    if direct:
        return direct

    # Unknown prefix: try the trailing 3, 2, 1 underscore-separated parts
    parts = normalized.split("_")
    for size in range(min(3, len(parts) - 1), 0, -1):
        hit = ALIAS_TO_CANONICAL.get("_".join(parts[-size:]))
        if hit:
            return hit
    return None


def field_label(name: str) -> str:
    """"customerPO" → "PO Number (customerPO)"; custom fields are returned as is."""
    std = FIELDS_BY_NAME.get(name)
    return f"{std.display_name} ({name})" if std else name


def missing_fields(values: Mapping[str, Any], required: list[str]) -> list[str]:
    """Names in `required` with no non-blank value."""
    missing = []
    for name in required:
        value = values.get(name)
        if value is None or (isinstance(value, str) and not value.strip()):
            missing.append(name)
    return missing


# ---------------------------------------------------------------------------
# Result
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class ExtractedFieldSet:
    """
    Immutable output of one extraction attempt.

    fields           : canonical / custom field name → string value
    full_text        : linearised document text (rows newline-joined)
    confidence       : 0–100
    document_type    : invoice | credit_note | statement
    fallback_fields  : fields whose value came from text mining
    warnings         : non-fatal problems (missing cells, recalculation failure)
    processing_method: excel | local | vision | documentai
    raw_fields       : template field name → value, before alias resolution
    """
    fields:            Mapping[str, str]
    full_text:         str
    confidence:        int
    document_type:     str = "invoice"
    fallback_fields:   tuple[str, ...] = ()
    warnings:          tuple[str, ...] = ()
    processing_method: str = "excel"
    raw_fields:        Mapping[str, str] = field(default_factory=dict)

    def __post_init__(self) -> None:
        object.__setattr__(self, "fields", MappingProxyType(dict(self.fields)))
        object.__setattr__(self, "raw_fields", MappingProxyType(dict(self.raw_fields)))

    def get(self, name: str, default: Any = None) -> Any:
        return self.fields.get(name, default)

    @property
    def used_fallback(self) -> bool:
        return bool(self.fallback_fields)

    def as_parsed_data(self) -> dict[str, Any]:
        """JSON-able form stored on FileRecord.parsed_data and fed to the matcher."""
        data: dict[str, Any] = dict(self.raw_fields)
        data.update(self.fields)
        data["documentType"] = self.document_type
        data["fullText"] = self.full_text
        data["_confidence"] = self.confidence
        data["_processingMethod"] = self.processing_method
        if self.fallback_fields:
            data["_fallbackFields"] = list(self.fallback_fields)
        if self.warnings:
            data["_warnings"] = list(self.warnings)
        return data
