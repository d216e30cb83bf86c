"""
Unit Tests — Company hierarchy reindex
══════════════════════════════════════

Coverage targets:
  ✅ Nested-set bounds from parent links, siblings in row order
  ✅ Descendant test                       → A.lft < B.lft < A.rgt
  ✅ Missing parent                        → child becomes a root
  ✅ Cycles                                → broken, every node still numbered
  ✅ Reindex writes bounds, skips deleted companies
"""

from __future__ import annotations

import uuid

import pytest

from docpipe.db.hierarchy import compute_nested_set, reindex_company_hierarchy
from docpipe.models import Company
from tests.conftest import utc


def _ids(n: int) -> list[uuid.UUID]:
    return [uuid.uuid4() for _ in range(n)]


@pytest.mark.unit
class TestComputeNestedSet:

    def test_tree(self):
        a, b, c, d = _ids(4)

        bounds = compute_nested_set([(a, None), (b, a), (c, a), (d, b)])

        assert bounds == {a: (1, 8), b: (2, 5), d: (3, 4), c: (6, 7)}

    def test_descendants_fall_inside_ancestor_bounds(self):
        a, b, c, d = _ids(4)
        bounds = compute_nested_set([(a, None), (b, a), (c, None), (d, b)])

        def under(parent, child):
            return bounds[parent][0] < bounds[child][0] < bounds[parent][1]

        assert under(a, d)
        assert under(b, d)
        assert not under(c, d)
        assert not under(d, a)

    def test_forest_numbered_root_by_root(self):
        a, b = _ids(2)
        assert compute_nested_set([(a, None), (b, None)]) == {a: (1, 2), b: (3, 4)}

    def test_missing_parent_makes_a_root(self):
        a, b = _ids(2)
        assert compute_nested_set([(a, uuid.uuid4()), (b, a)]) == {a: (1, 4), b: (2, 3)}

    def test_cycle_is_broken(self):
        x, y = _ids(2)

        bounds = compute_nested_set([(x, y), (y, x)])

        assert bounds == {x: (1, 4), y: (2, 3)}

    def test_empty(self):
        assert compute_nested_set([]) == {}


@pytest.mark.unit
class TestReindexCompanyHierarchy:

    async def test_bounds_written_back(self, session_factory, make_company):
        group = await make_company("Group", created_at=utc(2024, 1, 1))
        branch = await make_company("Branch", parent_id=group.id, created_at=utc(2024, 1, 2))
        gone = await make_company("Gone", created_at=utc(2024, 1, 3), deleted_at=utc(2024, 2, 1))
        orphan = await make_company("Orphan", parent_id=gone.id, created_at=utc(2024, 1, 4))

        assert await reindex_company_hierarchy(session_factory=session_factory) == 3

        async with session_factory() as session:
            stored = {}
            for company_id in (group.id, branch.id, gone.id, orphan.id):
                company = await session.get(Company, company_id)
                stored[company_id] = (company.lft, company.rgt)
        assert stored[group.id] == (1, 4)
        assert stored[branch.id] == (2, 3)
        assert stored[orphan.id] == (5, 6)
        assert stored[gone.id] == (None, None)

    async def test_no_companies(self, session_factory):
        assert await reindex_company_hierarchy(session_factory=session_factory) == 0
