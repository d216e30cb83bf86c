"""
Spreadsheet field extraction.

    mapping  = FieldMapping.from_template(template)
    fieldset = extract_fields_from_workbook(data, mapping)

Fields are read from the LAST sheet only; multi-page exports put the final
totals on the trailing page. Single cells go through the strategy chain in
strategies.py; ranges are joined row-major (tab within a row, newline
between rows) from display values.
"""

from __future__ import annotations

import logging
import os
import re
from dataclasses import dataclass, field
from typing import Any, Mapping, Optional

from docpipe.core.exceptions import NoMappingDefined
from docpipe.extraction.confidence import calculate_confidence
from docpipe.extraction.fields import ExtractedFieldSet, canonical_field_name
from docpipe.extraction.strategies import StrategyContext, resolve_cell
from docpipe.extraction.transforms import apply_transformations, clean_amount
from docpipe.extraction.workbook import (
    Recalculator,
    SheetView,
    column_to_number,
    load_workbook_view,
    pycel_recalculate,
    render_value,
)

logger = logging.getLogger(__name__)

_CN_RE = re.compile(r"\bCN\b")


@dataclass(frozen=True)
class CellRef:
    column:     str
    row:        int
    end_column: Optional[str] = None
    end_row:    Optional[int] = None

    @classmethod
    def parse(cls, spec: Mapping[str, Any]) -> "CellRef":
        column = spec.get("column")
        row = spec.get("row")
        if not column or row is None:
            raise ValueError(f"Cell mapping needs column and row: {dict(spec)!r}")
        return cls(
            column=str(column).upper(),
            row=int(row),
            end_column=str(spec["endColumn"]).upper() if spec.get("endColumn") else None,
            end_row=int(spec["endRow"]) if spec.get("endRow") else None,
        )

    @property
    def is_range(self) -> bool:
        return self.end_column is not None or self.end_row is not None

    def __str__(self) -> str:
        start = f"{self.column}{self.row}"
        if not self.is_range:
            return start
        return f"{start}:{self.end_column or self.column}{self.end_row or self.row}"


@dataclass(frozen=True)
class FieldMapping:
    """The parts of a template the spreadsheet extractor needs."""
    cells:           Mapping[str, CellRef]
    code:            str = ""
    transformations: Mapping[str, Mapping[str, Any]] = field(default_factory=dict)
    custom_fields:   Mapping[str, Mapping[str, Any]] = field(default_factory=dict)
    mandatory_fields: tuple[str, ...] = ()

    @classmethod
    def from_template(cls, template: Any) -> "FieldMapping":
        raw = getattr(template, "excel_cells", None) or {}
        cells = {}
        for name, spec in raw.items():
            try:
                cells[name] = CellRef.parse(spec)
            except (TypeError, ValueError) as exc:
                logger.warning("Invalid cell mapping skipped | field=%s error=%s", name, exc)
        return cls(
            cells=cells,
            code=getattr(template, "code", "") or "",
            transformations=getattr(template, "transformations", None) or {},
            custom_fields=getattr(template, "custom_fields", None) or {},
            mandatory_fields=tuple(getattr(template, "mandatory_fields", None) or ()),
        )


# ---------------------------------------------------------------------------
# Cell reading
# ---------------------------------------------------------------------------

def _read_range(sheet: SheetView, ref: CellRef) -> Optional[str]:
    first_col = column_to_number(ref.column)
    last_col = column_to_number(ref.end_column or ref.column)
    last_row = ref.end_row or ref.row
    rows = []
    found = False
    for r in range(ref.row, last_row + 1):
        values = []
        for c in range(first_col, last_col + 1):
            cell = sheet.cell(c, r)
            found = found or cell.exists
            values.append(render_value(cell.best_value))
        rows.append("\t".join(values))
    return "\n".join(rows) if found else None


def _read_field(sheet: SheetView, ref: CellRef, context: StrategyContext) -> tuple[Optional[str], float, bool]:
    """(value, confidence, used_fallback)"""
    if ref.is_range:
        value = _read_range(sheet, ref)
        return value, 1.0, False

    cell = sheet.cell(ref.column, ref.row)
    if not cell.exists:
        return None, 0.0, False
    result = resolve_cell(cell, context)
    if result is None:
        return None, 0.0, False
    return result.value, result.confidence, result.used_fallback


# ---------------------------------------------------------------------------
# Document type
# ---------------------------------------------------------------------------

def infer_document_type(full_text: str) -> str:
    upper = full_text.upper()
    if "CREDIT" in upper or _CN_RE.search(upper):
        return "credit_note"
    if "STATEMENT" in upper:
        return "statement"
    return "invoice"


def normalise_document_type(value: str) -> str:
    lowered = value.strip().lower()
    if "credit" in lowered or lowered == "cn":
        return "credit_note"
    if "statement" in lowered:
        return "statement"
    return "invoice"


def _has_document_type_field(names) -> bool:
    return any("document_type" in n.lower() or "documenttype" in n.lower() for n in names)


# ---------------------------------------------------------------------------
# Extraction
# ---------------------------------------------------------------------------

def extract_fields_from_workbook(
    source:       bytes | str | os.PathLike,
    mapping:      FieldMapping,
    *,
    recalculator: Optional[Recalculator] = pycel_recalculate,
) -> ExtractedFieldSet:
    if not mapping.cells:
        raise NoMappingDefined("Template has no Excel cell mappings defined")

    workbook = load_workbook_view(source, recalculator=recalculator)
    sheet = workbook.last_sheet
    full_text = workbook.full_text
    logger.info(
        "Excel extraction start | sheets=%d sheet=%s fields=%d recalculated=%s",
        len(workbook.sheets), sheet.title, len(mapping.cells), workbook.recalculated,
    )

    warnings: list[str] = []
    if workbook.recalc_error:
        warnings.append(f"Formula recalculation failed: {workbook.recalc_error}")

    raw: dict[str, str] = {}
    canonical: dict[str, str] = {}
    fallback: list[str] = []
    strategy_confidence: list[float] = []
    custom_names = set(mapping.custom_fields)

    for name, ref in mapping.cells.items():
        if name in custom_names or _strip_code(name, mapping.code) in custom_names:
            continue
        value, confidence, used_fallback = _read_field(
            sheet, ref, StrategyContext(field_name=name, full_text=full_text)
        )
        if value is None:
            logger.warning("Mapped cell empty or missing | field=%s cell=%s", name, ref)
            warnings.append(f"No value at {ref} for {name}")
            continue

        value = apply_transformations(value, mapping.transformations.get(name))
        raw[name] = value
        strategy_confidence.append(confidence)
        std = canonical_field_name(name, mapping.code)
        if used_fallback:
            fallback.append(std or name)
        if std == "totalAmount" or std == "vatAmount" or std == "goodsAmount":
            value = clean_amount(value)
        if std:
            canonical.setdefault(std, value)

    # Custom fields: same cell logic, stored under their own unprefixed name
    for name, config in mapping.custom_fields.items():
        prefixed = f"{mapping.code}_{name}" if mapping.code else name
        ref = mapping.cells.get(prefixed) or mapping.cells.get(name)
        if ref is None:
            logger.info("Custom field has no cell mapping | field=%s", name)
            continue
        value, _, used_fallback = _read_field(
            sheet, ref, StrategyContext(field_name=name, full_text=full_text)
        )
        if value is None:
            warnings.append(f"No value at {ref} for custom field {name}")
            continue
        value = apply_transformations(
            value, mapping.transformations.get(prefixed) or mapping.transformations.get(name)
        )
        if (config or {}).get("dataType") in ("currency", "number"):
            value = clean_amount(value)
        canonical[name] = value
        if used_fallback:
            fallback.append(name)

    if _has_document_type_field(raw):
        document_type = normalise_document_type(canonical.get("documentType", ""))
    else:
        document_type = infer_document_type(full_text)
    canonical["documentType"] = document_type

    confidence = calculate_confidence(
        canonical,
        full_text=full_text,
        processing_method="excel",
        backend_confidence=(
            sum(strategy_confidence) / len(strategy_confidence) if strategy_confidence else None
        ),
        template_fields=[canonical_field_name(n, mapping.code) or n for n in mapping.cells],
        mandatory_fields=[canonical_field_name(n, mapping.code) or n for n in mapping.mandatory_fields],
    )

    logger.info(
        "Excel extraction done | fields=%d fallback=%s confidence=%d type=%s",
        len(canonical), fallback or "-", confidence, document_type,
    )
    return ExtractedFieldSet(
        fields=canonical,
        full_text=full_text,
        confidence=confidence,
        document_type=document_type,
        fallback_fields=tuple(fallback),
        warnings=tuple(warnings),
        processing_method="excel",
        raw_fields=raw,
    )


def _strip_code(name: str, code: str) -> str:
    prefix = f"{code}_"
    return name[len(prefix):] if code and name.startswith(prefix) else name
