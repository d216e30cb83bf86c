"""
Workbook loading and formula recalculation.

A workbook is read twice with openpyxl: once with formulas (to know which
cells are formulas) and once with data_only=True (the values Excel cached
when the file was last saved). Formulas are then recalculated eagerly with
pycel so calculated values exist even for files saved without a cache.

Recalculation is best-effort: if pycel cannot compile the workbook, or a
single formula cannot be evaluated, the affected cells simply have no
calculated value and the extraction strategies fall through.

Everything downstream sees plain `CellView` objects; nothing outside this
module touches openpyxl or pycel.
"""

from __future__ import annotations

import io
import logging
import os
import tempfile
import zipfile
from dataclasses import dataclass, field
from datetime import date, datetime, time
from typing import Any, Callable, Optional

from openpyxl import load_workbook
from openpyxl.utils import get_column_letter
from openpyxl.utils.exceptions import InvalidFileException

from docpipe.core.exceptions import MalformedWorkbook

logger = logging.getLogger(__name__)

EXCEL_ERRORS = frozenset(
    {"#NULL!", "#DIV/0!", "#VALUE!", "#REF!", "#NAME?", "#NUM!", "#N/A", "#GETTING_DATA"}
)

# (sheet title, "A1") -> calculated value
Recalculator = Callable[[bytes, list[tuple[str, str]]], dict[tuple[str, str], Any]]


# ---------------------------------------------------------------------------
# Cell addressing
# ---------------------------------------------------------------------------

def column_to_number(column: str) -> int:
    """A → 1, Z → 26, AA → 27."""
    result = 0
    for ch in column.strip().upper():
        if not "A" <= ch <= "Z":
            raise ValueError(f"Invalid column letter: {column!r}")
        result = result * 26 + (ord(ch) - ord("A") + 1)
    return result


def number_to_column(number: int) -> str:
    """1 → A, 26 → Z, 27 → AA."""
    if number < 1:
        raise ValueError(f"Column number must be >= 1, got {number}")
    return get_column_letter(number)


# ---------------------------------------------------------------------------
# Value rendering
# ---------------------------------------------------------------------------

def format_number(value: float | int) -> str:
    """Shortest human form: 33.0 → "33", 27.6 + 5.52 → "33.12"."""
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, int):
        return str(value)
    value = round(float(value), 9)
    if value.is_integer():
        return str(int(value))
    return repr(value)


def render_value(value: Any) -> str:
    if value is None:
        return ""
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, (int, float)):
        return format_number(value)
    if isinstance(value, datetime):
        return value.date().isoformat() if value.time() == time.min else value.isoformat()
    if isinstance(value, date):
        return value.isoformat()
    return str(value)


def is_excel_error(value: Any) -> bool:
    return isinstance(value, str) and value.strip().upper() in EXCEL_ERRORS


# ---------------------------------------------------------------------------
# Cell / sheet views
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class CellView:
    """
    address     : "B7"
    formula     : formula text ("=SUM(A1:A3)") or None
    cached      : value Excel stored on last save (data_only read), or None
    calculated  : value produced by recalculation, or None
    """
    address:    str
    formula:    Optional[str] = None
    cached:     Any = None
    calculated: Any = None

    @property
    def is_formula(self) -> bool:
        return self.formula is not None

    @property
    def exists(self) -> bool:
        return self.formula is not None or self.cached is not None

    @property
    def best_value(self) -> Any:
        """The value a reader of the sheet would see."""
        if self.calculated is not None and not is_excel_error(self.calculated):
            return self.calculated
        return self.cached


@dataclass
class SheetView:
    title: str
    cells: dict[str, CellView] = field(default_factory=dict)
    max_row: int = 0
    max_column: int = 0

    def cell(self, column: str | int, row: int) -> CellView:
        col = column if isinstance(column, int) else column_to_number(column)
        address = f"{number_to_column(col)}{row}"
        return self.cells.get(address) or CellView(address=address)

    def rows_text(self) -> list[str]:
        lines = []
        for r in range(1, self.max_row + 1):
            lines.append(" ".join(
                render_value(self.cell(c, r).best_value) for c in range(1, self.max_column + 1)
            ))
        return lines


@dataclass
class WorkbookView:
    sheets: list[SheetView]
    recalculated: bool = False
    recalc_error: Optional[str] = None

    @property
    def last_sheet(self) -> SheetView:
        return self.sheets[-1]

    @property
    def full_text(self) -> str:
        """All sheets, cells space-joined within a row, rows newline-joined."""
        lines: list[str] = []
        for sheet in self.sheets:
            lines.extend(sheet.rows_text())
        return "\n".join(lines)


# ---------------------------------------------------------------------------
# Recalculation (pycel)
# ---------------------------------------------------------------------------

def _quote_sheet(title: str) -> str:
    return title if title.isalnum() else "'" + title.replace("'", "''") + "'"


def pycel_recalculate(data: bytes, targets: list[tuple[str, str]]) -> dict[tuple[str, str], Any]:
    """
    Evaluate each formula cell with pycel. pycel reads from a path, so the
    bytes are spilled to a temporary .xlsx for the duration of the call.
    """
    from pycel import ExcelCompiler

    results: dict[tuple[str, str], Any] = {}
    fd, path = tempfile.mkstemp(suffix=".xlsx")
    try:
        with os.fdopen(fd, "wb") as fh:
            fh.write(data)
        compiler = ExcelCompiler(filename=path)
        for sheet, address in targets:
            try:
                value = compiler.evaluate(f"{_quote_sheet(sheet)}!{address}")
            except Exception as exc:
                logger.warning("Formula not evaluable | cell=%s!%s error=%s", sheet, address, exc)
                continue
            if value is None or value == "" or is_excel_error(value):
                continue
            results[(sheet, address)] = value
    finally:
        os.unlink(path)
    return results


# ---------------------------------------------------------------------------
# Loading
# ---------------------------------------------------------------------------

def _read_bytes(source: bytes | str | os.PathLike) -> bytes:
    if isinstance(source, (bytes, bytearray)):
        return bytes(source)
    if isinstance(source, (str, os.PathLike)):
        with open(source, "rb") as fh:
            return fh.read()
    raise MalformedWorkbook("Invalid workbook source. Expected bytes or file path.")


def load_workbook_view(
    source:       bytes | str | os.PathLike,
    recalculator: Optional[Recalculator] = pycel_recalculate,
) -> WorkbookView:
    data = _read_bytes(source)

    try:
        wb_formulas = load_workbook(io.BytesIO(data), data_only=False)
        wb_values = load_workbook(io.BytesIO(data), data_only=True)
    except (InvalidFileException, zipfile.BadZipFile, KeyError, ValueError, OSError) as exc:
        raise MalformedWorkbook(f"Could not read workbook: {exc}") from exc

    if not wb_formulas.sheetnames:
        raise MalformedWorkbook("Excel file has no sheets")

    sheets: list[SheetView] = []
    targets: list[tuple[str, str]] = []
    for ws_f in wb_formulas.worksheets:
        ws_v = wb_values[ws_f.title]
        view = SheetView(title=ws_f.title, max_row=ws_f.max_row or 0, max_column=ws_f.max_column or 0)
        for row in ws_f.iter_rows():
            for cell in row:
                if cell.value is None:
                    continue
                formula = None
                if cell.data_type == "f" or (isinstance(cell.value, str) and cell.value.startswith("=")):
                    formula = str(cell.value)
                    targets.append((ws_f.title, cell.coordinate))
                cached = ws_v[cell.coordinate].value
                view.cells[cell.coordinate] = CellView(
                    address=cell.coordinate,
                    formula=formula,
                    cached=cached if formula else cell.value,
                )
        sheets.append(view)

    workbook = WorkbookView(sheets=sheets)

    if targets and recalculator is not None:
        try:
            calculated = recalculator(data, targets)
        except Exception as exc:
            # Degrades the extraction; never aborts it
            workbook.recalc_error = str(exc)
            logger.warning("Formula recalculation failed | error=%s", exc)
        else:
            workbook.recalculated = True
            for (title, address), value in calculated.items():
                sheet = next(s for s in sheets if s.title == title)
                cell = sheet.cells[address]
                sheet.cells[address] = CellView(
                    address=address,
                    formula=cell.formula,
                    cached=cell.cached,
                    calculated=value,
                )
            logger.info("Formulas recalculated | formulas=%d evaluated=%d", len(targets), len(calculated))

    return workbook


def get_workbook_preview(source: bytes | str | os.PathLike) -> dict[str, Any]:
    """Every sheet as a grid of display values, for template authoring."""
    workbook = load_workbook_view(source, recalculator=None)
    return {
        "sheetNames": [s.title for s in workbook.sheets],
        "sheets": {
            s.title: [
                [render_value(s.cell(c, r).best_value) for c in range(1, s.max_column + 1)]
                for r in range(1, s.max_row + 1)
            ]
            for s in workbook.sheets
        },
    }
