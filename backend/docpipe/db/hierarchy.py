"""
Company hierarchy reindex.

Companies form a forest through parent_id. Ancestor / descendant queries
use the nested-set bounds (lft, rgt): B is under A iff A.lft < B.lft < A.rgt.
The bounds are recomputed from parent_id in one pass and written back with a
single bulk UPDATE inside one transaction, so readers see either the old
numbering or the new one.
"""

from __future__ import annotations

import logging
import uuid
from collections import defaultdict
from typing import Optional

from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import async_sessionmaker

from docpipe.models import Company

logger = logging.getLogger(__name__)


def compute_nested_set(
    rows: list[tuple[uuid.UUID, Optional[uuid.UUID]]],
) -> dict[uuid.UUID, tuple[int, int]]:
    """
    rows: (id, parent_id) in sibling order. Parents that are missing (or
    deleted) make the child a root. A cycle is broken at the first node
    revisited.
    """
    ids = {company_id for company_id, _ in rows}
    children: dict[Optional[uuid.UUID], list[uuid.UUID]] = defaultdict(list)
    for company_id, parent_id in rows:
        children[parent_id if parent_id in ids else None].append(company_id)

    bounds: dict[uuid.UUID, tuple[int, int]] = {}
    counter = 1
    visited: set[uuid.UUID] = set()

    def walk(root: uuid.UUID) -> None:
        nonlocal counter
        # iterative DFS: (node, entered?)
        stack: list[tuple[uuid.UUID, bool]] = [(root, False)]
        left: dict[uuid.UUID, int] = {}
        while stack:
            node, entered = stack.pop()
            if entered:
                bounds[node] = (left[node], counter)
                counter += 1
                continue
            if node in visited:
                continue
            visited.add(node)
            left[node] = counter
            counter += 1
            stack.append((node, True))
            for child in reversed(children.get(node, [])):
                if child not in visited:
                    stack.append((child, False))

    for root in children.get(None, []):
        walk(root)
    # nodes only reachable through a cycle
    for company_id, _ in rows:
        if company_id not in visited:
            walk(company_id)
    return bounds


async def reindex_company_hierarchy(
    *,
    session_factory: Optional[async_sessionmaker] = None,
) -> int:
    if session_factory is None:
        from docpipe.db.session import AsyncSessionLocal
        session_factory = AsyncSessionLocal

    async with session_factory() as session:
        async with session.begin():
            result = await session.execute(
                select(Company.id, Company.parent_id)
                .where(Company.deleted_at.is_(None))
                .order_by(Company.created_at, Company.id)
            )
            bounds = compute_nested_set([(row.id, row.parent_id) for row in result.all()])
            if bounds:
                await session.execute(
                    update(Company),
                    [{"id": cid, "lft": lft, "rgt": rgt} for cid, (lft, rgt) in bounds.items()],
                )

    logger.info("Company hierarchy reindexed | companies=%d", len(bounds))
    return len(bounds)
