from docpipe.matching.matcher import (
    EntityIndex,
    MatchCandidate,
    MatchResult,
    load_company_index,
    load_supplier_index,
    match_entity,
    name_similarity,
)

__all__ = [
    "EntityIndex",
    "MatchCandidate",
    "MatchResult",
    "load_company_index",
    "load_supplier_index",
    "match_entity",
    "name_similarity",
]
