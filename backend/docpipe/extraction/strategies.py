"""
Cell value strategies.

Each strategy is a pure function

    (cell: CellView, context: StrategyContext) -> StrategyResult | None

and the chain is an ordered tuple tried until one returns a non-empty value.
Keeping them separate means each step of the fallback chain can be tested
on its own.

  1. calculated_value  — a formula produced a value (recalculated or cached)
  2. display_numeric   — the cell's display text, currency and separators
                         stripped down to a numeric token
  3. full_text_mining  — regex over the workbook's linearised text, anchored
                         on "Invoice Total" / a registration number, picking
                         goods / VAT / total by field name

Non-formula cells are rendered by `literal_value` directly.
"""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass
from typing import Callable, Optional

from docpipe.extraction.workbook import CellView, is_excel_error, render_value

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class StrategyContext:
    field_name: str
    full_text:  str


@dataclass(frozen=True)
class StrategyResult:
    value:         str
    confidence:    float
    used_fallback: bool
    strategy:      str


Strategy = Callable[[CellView, StrategyContext], Optional[StrategyResult]]


# ---------------------------------------------------------------------------
# 1. Calculated value
# ---------------------------------------------------------------------------

def calculated_value(cell: CellView, context: StrategyContext) -> Optional[StrategyResult]:
    for value in (cell.calculated, cell.cached):
        if value is None or value == "" or isinstance(value, str):
            continue
        return StrategyResult(render_value(value), 1.0, False, "calculated")
    return None


# ---------------------------------------------------------------------------
# 2. Display string → numeric token
# ---------------------------------------------------------------------------

_DISPLAY_STRIP_RE = re.compile(r"[£$€,\s]")
_NUMERIC_TOKEN_RE = re.compile(r"\d+(?:\.\d+)?|\.\d+")


def display_numeric(cell: CellView, context: StrategyContext) -> Optional[StrategyResult]:
    display = cell.cached if isinstance(cell.cached, str) else None
    if display is None or not display.strip() or is_excel_error(display):
        return None

    token = _NUMERIC_TOKEN_RE.search(_DISPLAY_STRIP_RE.sub("", display))
    if token:
        return StrategyResult(render_value(float(token.group(0))), 0.8, False, "display")
    return StrategyResult(display, 0.6, False, "display")


# ---------------------------------------------------------------------------
# 3. Full-text mining
# ---------------------------------------------------------------------------

_NUM = r"(\d[\d,]*(?:\.\d+)?)"

# "... Invoice Total 27.6 5.52 33.12 Note" / "... NPWD123 0 0 0"
_ANCHORED_TRIPLE_RE = re.compile(
    rf"(?:Invoice\s+Total|NPWD\d+)\s+{_NUM}\s+{_NUM}\s+{_NUM}(?:\s+Note|\s*$)",
    re.IGNORECASE,
)
# Any later run of three numbers closing the totals block
_TRAILING_TRIPLE_RE = re.compile(
    rf"(?<![\w.,]){_NUM}\s+{_NUM}\s+{_NUM}(?=\s+Note\b|\s*$)",
    re.IGNORECASE,
)
_ANCHOR_RE = re.compile(r"Invoice\s+Total", re.IGNORECASE)


def _totals_triple(full_text: str) -> Optional[tuple[str, str, str]]:
    match = _ANCHORED_TRIPLE_RE.search(full_text)
    if match is None:
        anchor = _ANCHOR_RE.search(full_text)
        if anchor is None:
            return None
        match = _TRAILING_TRIPLE_RE.search(full_text, anchor.end())
        if match is None:
            return None
    goods, vat, total = (g.replace(",", "") for g in match.groups())
    return goods, vat, total


def totals_position(field_name: str) -> Optional[int]:
    """0 = goods, 1 = VAT, 2 = total; None when the field is none of those."""
    name = field_name.lower()
    if "invoice_total" in name or "total" in name:
        return 2
    if "vat_amount" in name or ("vat" in name and "rate" not in name):
        return 1
    if "goods" in name or "net" in name:
        return 0
    return None


def full_text_mining(cell: CellView, context: StrategyContext) -> Optional[StrategyResult]:
    position = totals_position(context.field_name)
    if position is None:
        return None
    triple = _totals_triple(context.full_text)
    if triple is None:
        return None

    value = triple[position]
    logger.warning(
        "Text-mining fallback used | field=%s cell=%s formula=%s value=%s",
        context.field_name, cell.address, cell.formula, value,
    )
    return StrategyResult(value, 0.5, True, "text_mining")


FORMULA_STRATEGIES: tuple[Strategy, ...] = (
    calculated_value,
    display_numeric,
    full_text_mining,
)


# ---------------------------------------------------------------------------
# Non-formula cells
# ---------------------------------------------------------------------------

def literal_value(cell: CellView, context: StrategyContext) -> Optional[StrategyResult]:
    if cell.cached is None:
        return None
    if is_excel_error(cell.cached):
        logger.warning("Cell contains an error | field=%s cell=%s value=%s",
                       context.field_name, cell.address, cell.cached)
        return StrategyResult(str(cell.cached), 0.2, False, "error")
    return StrategyResult(render_value(cell.cached), 1.0, False, "literal")


def resolve_cell(
    cell:       CellView,
    context:    StrategyContext,
    strategies: tuple[Strategy, ...] = FORMULA_STRATEGIES,
) -> Optional[StrategyResult]:
    """Run the chain for one cell; first non-empty result wins."""
    if not cell.is_formula:
        return literal_value(cell, context)
    for strategy in strategies:
        result = strategy(cell, context)
        if result is not None and result.value != "":
            return result
    logger.warning("No value derivable | field=%s cell=%s formula=%s",
                   context.field_name, cell.address, cell.formula)
    return None
