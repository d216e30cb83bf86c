"""
Identity Matcher
════════════════

Resolves the code / name found on a document to one internal entity
(a supplier, or a customer company).

Resolution order
────────────────
  1. Exact code, case-insensitive, against active non-deleted entities.
     O(1) through a dict built once per index.
  2. Fuzzy name (difflib ratio) against every active entity name. Accepted
     only at or above the threshold (default 0.70). Highest score wins;
     equal scores go to the earliest-created entity, then the lowest id.

A code hit always wins, whatever the name says. When nothing matches, the
result carries an operator-readable error naming the missing signal.
"""

from __future__ import annotations

import logging
import re
import uuid
from dataclasses import dataclass
from datetime import datetime
from difflib import SequenceMatcher
from typing import Any, Iterable, Mapping, Optional

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from docpipe.models import Company, Supplier

logger = logging.getLogger(__name__)

DEFAULT_NAME_THRESHOLD = 0.70

SUPPLIER_CODE_FIELDS = (
    "supplierCode", "supplier_code", "suppliercode",
    "accountNumber", "account_number", "account_no",
    "customerNumber", "customer_number", "customer_no",
    "ourRef", "our_ref", "ourReference", "our_reference",
    "yourRef", "your_ref", "yourReference", "your_reference",
)
SUPPLIER_NAME_FIELDS = (
    "supplierName", "supplier_name", "suppliername",
    "companyName", "company_name", "company",
    "vendorName", "vendor_name", "vendor",
    "fromName", "from_name", "from",
)
COMPANY_CODE_FIELDS = (
    "accountNumber", "account_number", "account_no",
    "customerCode", "customer_code",
    "customerNumber", "customer_number", "customer_no",
)
COMPANY_NAME_FIELDS = (
    "customerName", "customer_name",
    "companyName", "company_name", "company",
)

_PUNCT_RE = re.compile(r"[.,;:!@#$%^&*()\[\]{}|\\/<>\"']")
_SPACE_RE = re.compile(r"\s+")


def normalize_name(name: str) -> str:
    n = _PUNCT_RE.sub(" ", name.lower())
    return _SPACE_RE.sub(" ", n).strip()


def name_similarity(a: str, b: str) -> float:
    na, nb = normalize_name(a), normalize_name(b)
    if not na or not nb:
        return 0.0
    if na == nb:
        return 1.0
    return SequenceMatcher(None, na, nb).ratio()


# ---------------------------------------------------------------------------
# Data types
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class MatchCandidate:
    id:         uuid.UUID
    name:       str
    code:       Optional[str]
    created_at: datetime


@dataclass(frozen=True)
class MatchResult:
    """
    entity_id  : matched supplier / company id, None when unmatched
    method     : "code" | "name_fuzzy" | "none"
    confidence : 1.0 for a code hit, the similarity score for a name hit
    error      : operator-facing reason when unmatched
    """
    entity_id:      Optional[uuid.UUID]
    method:         str
    confidence:     float = 0.0
    error:          Optional[str] = None
    extracted_code: Optional[str] = None
    extracted_name: Optional[str] = None
    matched_name:   Optional[str] = None

    @property
    def matched(self) -> bool:
        return self.entity_id is not None


def _first_present(data: Mapping[str, Any], fields: Iterable[str]) -> Optional[str]:
    for name in fields:
        value = data.get(name)
        if value is not None and str(value).strip():
            return str(value).strip()
    return None


# ---------------------------------------------------------------------------
# Index
# ---------------------------------------------------------------------------

class EntityIndex:
    """Active entities of one kind, indexed for code lookup and ordered for name scans."""

    def __init__(
        self,
        candidates:  Iterable[MatchCandidate],
        *,
        kind:        str = "supplier",
        code_fields: tuple[str, ...] = SUPPLIER_CODE_FIELDS,
        name_fields: tuple[str, ...] = SUPPLIER_NAME_FIELDS,
    ) -> None:
        self.kind = kind
        self.code_fields = code_fields
        self.name_fields = name_fields
        self._ordered = sorted(candidates, key=lambda c: (c.created_at, str(c.id)))
        self._by_code: dict[str, MatchCandidate] = {}
        for candidate in self._ordered:
            if candidate.code and candidate.code.strip():
                # Earliest-created entity keeps a shared code
                self._by_code.setdefault(candidate.code.strip().lower(), candidate)

    def __len__(self) -> int:
        return len(self._ordered)

    def by_code(self, code: str) -> Optional[MatchCandidate]:
        return self._by_code.get(code.strip().lower())

    def by_name(self, name: str, threshold: float) -> Optional[tuple[MatchCandidate, float]]:
        best: Optional[MatchCandidate] = None
        best_score = -1.0
        for candidate in self._ordered:
            score = name_similarity(name, candidate.name)
            # strict ">" keeps the earliest candidate on ties
            if score > best_score:
                best, best_score = candidate, score
        if best is None or best_score < threshold:
            return None
        return best, best_score

    def match(
        self,
        code:      Optional[str],
        name:      Optional[str],
        threshold: float = DEFAULT_NAME_THRESHOLD,
    ) -> MatchResult:
        if code:
            hit = self.by_code(code)
            if hit is not None:
                logger.info("Entity matched by code | kind=%s code=%s id=%s", self.kind, code, hit.id)
                return MatchResult(
                    entity_id=hit.id, method="code", confidence=1.0,
                    extracted_code=code, extracted_name=name, matched_name=hit.name,
                )

        if name:
            found = self.by_name(name, threshold)
            if found is not None:
                hit, score = found
                logger.info("Entity matched by name | kind=%s name=%s matched=%s score=%.3f",
                            self.kind, name, hit.name, score)
                return MatchResult(
                    entity_id=hit.id, method="name_fuzzy", confidence=round(score, 4),
                    extracted_code=code, extracted_name=name, matched_name=hit.name,
                )

        if not code and not name:
            error = f"No {self.kind} identifier (code or name) found in parsed document data"
        elif code and name:
            error = f'No matching {self.kind} found for code "{code}" or name "{name}"'
        elif code:
            error = f'No matching {self.kind} found for code "{code}"'
        else:
            error = f'No matching {self.kind} found for name "{name}"'

        logger.info("Entity not matched | kind=%s code=%s name=%s", self.kind, code, name)
        return MatchResult(
            entity_id=None, method="none", error=error,
            extracted_code=code, extracted_name=name,
        )

    def match_parsed_data(
        self,
        parsed_data: Optional[Mapping[str, Any]],
        threshold:   float = DEFAULT_NAME_THRESHOLD,
    ) -> MatchResult:
        if not parsed_data:
            return MatchResult(entity_id=None, method="none", error="No parsed data provided")
        return self.match(
            _first_present(parsed_data, self.code_fields),
            _first_present(parsed_data, self.name_fields),
            threshold,
        )


# ---------------------------------------------------------------------------
# Loading from the database
# ---------------------------------------------------------------------------

async def load_supplier_index(session: AsyncSession) -> EntityIndex:
    rows = await session.execute(
        select(Supplier.id, Supplier.name, Supplier.code, Supplier.created_at)
        .where(Supplier.is_active.is_(True), Supplier.deleted_at.is_(None))
    )
    return EntityIndex(
        (MatchCandidate(id=r.id, name=r.name, code=r.code, created_at=r.created_at) for r in rows),
        kind="supplier",
    )


async def load_company_index(session: AsyncSession) -> EntityIndex:
    rows = await session.execute(
        select(Company.id, Company.name, Company.account_number, Company.created_at)
        .where(Company.is_active.is_(True), Company.deleted_at.is_(None))
    )
    return EntityIndex(
        (MatchCandidate(id=r.id, name=r.name, code=r.account_number, created_at=r.created_at)
         for r in rows),
        kind="company",
        code_fields=COMPANY_CODE_FIELDS,
        name_fields=COMPANY_NAME_FIELDS,
    )


async def match_entity(
    session:     AsyncSession,
    parsed_data: Optional[Mapping[str, Any]],
    *,
    target:      str = "company",
    threshold:   Optional[float] = None,
) -> MatchResult:
    """Load the active entities for `target` and resolve parsed_data against them."""
    if threshold is None:
        from docpipe.core.config import settings
        threshold = settings.match_name_threshold

    if target == "supplier":
        index = await load_supplier_index(session)
    else:
        index = await load_company_index(session)
    return index.match_parsed_data(parsed_data, threshold)
