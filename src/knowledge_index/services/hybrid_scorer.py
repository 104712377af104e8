"""
Reciprocal Rank Fusion of ranked result lists.
"""

from typing import Dict, List, Sequence, Tuple

from ..models import ResultSource, SearchResult

RRF_K = 60


def rrf_term(rank: int, k: int = RRF_K) -> float:
    """Contribution of a 1-based ``rank`` to an item's fused score."""
    return 1.0 / (k + rank)


def merge_rrf(*result_lists: Sequence[SearchResult], limit: int = 10, k: int = RRF_K) -> List[SearchResult]:
    """
    Fuse ranked lists: ``score(item) = sum(1 / (k + rank_i))`` over every
    list the item appears in.

    The first occurrence of an item supplies its fields. Results are tagged
    HYBRID and carry the fused score; ties keep first-seen order.
    """
    fused: Dict[str, Tuple[float, SearchResult]] = {}
    for results in result_lists:
        for position, result in enumerate(results):
            term = rrf_term(position + 1, k)
            existing = fused.get(result.node_id)
            if existing is None:
                fused[result.node_id] = (term, result)
            else:
                fused[result.node_id] = (existing[0] + term, existing[1])

    ranked = sorted(fused.values(), key=lambda pair: pair[0], reverse=True)
    return [
        result.with_updates(score=score, source=ResultSource.HYBRID)
        for score, result in ranked[:limit]
    ]
