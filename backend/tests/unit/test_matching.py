"""
Unit Tests — Identity Matcher
══════════════════════════════

Coverage targets:
  ✅ Exact code, case-insensitive          → method "code", confidence 1.0
  ✅ Code beats a better-scoring name
  ✅ Fuzzy name above threshold            → closest name wins
  ✅ Fuzzy name below threshold            → unmatched, operator-readable error
  ✅ Ties                                  → earliest-created entity
  ✅ Shared code                           → earliest-created entity keeps it
  ✅ Parsed-data field precedence          → supplier vs company field sets
  ✅ Database loading                      → inactive / deleted entities ignored
"""

from __future__ import annotations

import uuid

import pytest

from docpipe.matching.matcher import (
    COMPANY_CODE_FIELDS,
    COMPANY_NAME_FIELDS,
    EntityIndex,
    MatchCandidate,
    match_entity,
    name_similarity,
    normalize_name,
)
from tests.conftest import utc


def _candidate(name, code=None, day=1):
    return MatchCandidate(id=uuid.uuid4(), name=name, code=code, created_at=utc(2024, 1, day))


# ─────────────────────────────────────────────────────────────────────────────
# Name similarity
# ─────────────────────────────────────────────────────────────────────────────

@pytest.mark.unit
class TestNameSimilarity:

    def test_normalize_strips_punctuation_and_case(self):
        assert normalize_name("  ACME, Ltd.  ") == "acme ltd"

    def test_identical_after_normalisation(self):
        assert name_similarity("Acme Ltd.", "acme ltd") == 1.0

    def test_empty_name_scores_zero(self):
        assert name_similarity("", "Acme") == 0.0
        assert name_similarity("...", "Acme") == 0.0

    def test_typo_scores_high(self):
        assert name_similarity("Acme Ltdd", "Acme Ltd") > 0.9


# ─────────────────────────────────────────────────────────────────────────────
# In-memory index
# ─────────────────────────────────────────────────────────────────────────────

@pytest.mark.unit
class TestEntityIndex:

    def test_closest_name_wins(self):
        ltd = _candidate("Acme Ltd")
        limited = _candidate("Acme Limited", day=2)
        index = EntityIndex([ltd, limited])

        result = index.match(None, "Acme Ltdd")

        assert result.entity_id == ltd.id
        assert result.method == "name_fuzzy"
        assert result.confidence > 0.9
        assert result.matched_name == "Acme Ltd"

    def test_exact_code_is_case_insensitive(self):
        supplier = _candidate("Makita UK", code="MAK01")
        index = EntityIndex([supplier])

        result = index.match(" mak01 ", None)

        assert result.matched
        assert (result.method, result.confidence) == ("code", 1.0)

    def test_code_wins_over_name(self):
        by_code = _candidate("Completely Different plc", code="X1")
        by_name = _candidate("Acme Ltd", day=2)
        index = EntityIndex([by_code, by_name])

        result = index.match("X1", "Acme Ltd")

        assert result.entity_id == by_code.id

    def test_unknown_code_falls_through_to_name(self):
        acme = _candidate("Acme Ltd", code="A1")
        index = EntityIndex([acme])

        result = index.match("ZZZ", "Acme Ltd")

        assert result.entity_id == acme.id
        assert result.method == "name_fuzzy"

    def test_below_threshold_is_unmatched(self):
        index = EntityIndex([_candidate("Acme Ltd")])

        result = index.match(None, "Northern Timber Supplies")

        assert not result.matched
        assert result.method == "none"
        assert result.error == 'No matching supplier found for name "Northern Timber Supplies"'

    def test_threshold_is_configurable(self):
        index = EntityIndex([_candidate("Acme Limited")])

        assert index.match(None, "Acme Ltdd", threshold=0.95).matched is False
        assert index.match(None, "Acme Ltdd", threshold=0.50).matched is True

    def test_error_names_missing_signal(self):
        index = EntityIndex([], kind="company")

        assert index.match(None, None).error == (
            "No company identifier (code or name) found in parsed document data"
        )
        assert index.match("C9", None).error == 'No matching company found for code "C9"'
        assert index.match("C9", "Acme").error == (
            'No matching company found for code "C9" or name "Acme"'
        )

    def test_tie_goes_to_earliest_created(self):
        later = _candidate("Widget Co", day=20)
        earlier = _candidate("Widget Co", day=3)
        index = EntityIndex([later, earlier])

        assert index.match(None, "Widget Co").entity_id == earlier.id

    def test_shared_code_goes_to_earliest_created(self):
        later = _candidate("Second", code="DUP", day=9)
        earlier = _candidate("First", code="dup", day=2)
        index = EntityIndex([later, earlier])

        assert index.match("DUP", None).entity_id == earlier.id

    def test_parsed_data_supplier_fields(self):
        acme = _candidate("Acme Ltd", code="ACC-1")
        index = EntityIndex([acme])

        result = index.match_parsed_data({"accountNumber": "acc-1", "supplierName": "Nope"})

        assert result.entity_id == acme.id
        assert result.extracted_code == "acc-1"

    def test_parsed_data_company_fields(self):
        acme = _candidate("Acme Ltd")
        index = EntityIndex(
            [acme], kind="company",
            code_fields=COMPANY_CODE_FIELDS, name_fields=COMPANY_NAME_FIELDS,
        )

        result = index.match_parsed_data({"customerName": "ACME LTD", "supplierName": "Other"})

        assert result.entity_id == acme.id

    def test_blank_values_are_skipped(self):
        acme = _candidate("Acme Ltd")
        index = EntityIndex([acme])

        result = index.match_parsed_data({"supplierCode": "  ", "supplierName": "Acme Ltd"})

        assert result.method == "name_fuzzy"

    def test_no_parsed_data(self):
        result = EntityIndex([]).match_parsed_data(None)
        assert result.error == "No parsed data provided"


# ─────────────────────────────────────────────────────────────────────────────
# Database-backed matching
# ─────────────────────────────────────────────────────────────────────────────

@pytest.mark.unit
class TestMatchEntity:

    async def test_supplier_fuzzy_match(self, session_factory, make_supplier):
        ltd = await make_supplier("Acme Ltd", created_at=utc(2024, 1, 1))
        await make_supplier("Acme Limited", created_at=utc(2024, 1, 2))

        async with session_factory() as session:
            result = await match_entity(session, {"supplierName": "Acme Ltdd"}, target="supplier")

        assert result.entity_id == ltd.id

    async def test_company_matched_by_account_number(self, session_factory, make_company):
        company = await make_company("Acme Ltd", account_number="ACC-001")

        async with session_factory() as session:
            result = await match_entity(session, {"accountNumber": "acc-001"}, target="company")

        assert result.entity_id == company.id
        assert result.method == "code"

    async def test_inactive_and_deleted_are_ignored(self, session_factory, make_company):
        await make_company("Acme Ltd", account_number="ACC-001", is_active=False)
        await make_company("Acme Ltd", account_number="ACC-002", deleted_at=utc(2024, 5, 1))

        async with session_factory() as session:
            result = await match_entity(
                session, {"accountNumber": "ACC-001", "customerName": "Acme Ltd"}, target="company",
            )

        assert not result.matched

    async def test_default_threshold_from_settings(self, session_factory, make_supplier):
        await make_supplier("Acme Ltd")

        async with session_factory() as session:
            result = await match_entity(session, {"supplierName": "Acme"}, target="supplier")

        # "acme" vs "acme ltd" scores 0.67, under the 0.70 default
        assert not result.matched
