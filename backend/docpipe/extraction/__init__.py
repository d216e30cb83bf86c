"""
Field Extraction Engine
═══════════════════════

Turns raw document bytes plus a template into an ExtractedFieldSet.

Modules
───────
  workbook.py    openpyxl loading + pycel recalculation → plain cell views
  strategies.py  ordered cell-value strategies (calculated → display → text mining)
  transforms.py  per-field remove / trim / case / parse pipeline
  fields.py      standard field names, alias table, ExtractedFieldSet
  excel.py       spreadsheet extraction against a template's cell mapping
  pdf.py         text-layer backends and pattern hints for PDFs
  confidence.py  0–100 confidence score
"""

from __future__ import annotations

import asyncio
import os
from typing import Any, Optional

from docpipe.core.exceptions import UnsupportedDocument
from docpipe.extraction.excel import FieldMapping, extract_fields_from_workbook
from docpipe.extraction.fields import ExtractedFieldSet
from docpipe.extraction.pdf import extract_fields_from_pdf
from docpipe.extraction.workbook import Recalculator, get_workbook_preview, pycel_recalculate

SPREADSHEET_EXTENSIONS = frozenset({".xlsx", ".xlsm"})
PDF_EXTENSIONS = frozenset({".pdf"})


def document_kind(file_name: str, mime_type: Optional[str] = None) -> str:
    ext = os.path.splitext(file_name or "")[1].lower()
    if ext in SPREADSHEET_EXTENSIONS or (mime_type or "").endswith("spreadsheetml.sheet"):
        return "excel"
    if ext in PDF_EXTENSIONS or mime_type == "application/pdf":
        return "pdf"
    raise UnsupportedDocument(f"Unsupported file type: {ext or mime_type or 'unknown'}")


async def extract_document(
    data:      bytes,
    file_name: str,
    template:  Any,
    *,
    mime_type: Optional[str] = None,
    recalculator: Optional[Recalculator] = pycel_recalculate,
) -> ExtractedFieldSet:
    """Dispatch on file type. Spreadsheet extraction runs in a worker thread."""
    if document_kind(file_name, mime_type) == "excel":
        mapping = FieldMapping.from_template(template)
        return await asyncio.to_thread(
            extract_fields_from_workbook, data, mapping, recalculator=recalculator,
        )
    return await extract_fields_from_pdf(data, template)


__all__ = [
    "ExtractedFieldSet",
    "FieldMapping",
    "document_kind",
    "extract_document",
    "extract_fields_from_pdf",
    "extract_fields_from_workbook",
    "get_workbook_preview",
]
