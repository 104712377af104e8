"""
Tests for Reciprocal Rank Fusion
"""

import pytest

from knowledge_index.models import ResultSource, SearchResult
from knowledge_index.services.hybrid_scorer import RRF_K, merge_rrf, rrf_term


def hit(node_id, source=ResultSource.VECTOR, score=0.5, name=None):
    return SearchResult(node_id=node_id, display_name=name or node_id, score=score, source=source)


class TestRrfTerm:

    def test_first_rank(self):
        assert rrf_term(1) == pytest.approx(1.0 / (RRF_K + 1))

    def test_strictly_decreasing(self):
        terms = [rrf_term(rank) for rank in range(1, 20)]
        assert all(a > b for a, b in zip(terms, terms[1:]))


class TestMergeRrf:

    def test_item_in_both_lists_ranks_first(self):
        vector = [hit("a"), hit("b")]
        graph = [hit("b", ResultSource.GRAPH, 1.0)]

        merged = merge_rrf(vector, graph)

        assert [r.node_id for r in merged] == ["b", "a"]
        assert merged[0].score == pytest.approx(1 / 62 + 1 / 61)
        assert merged[1].score == pytest.approx(1 / 61)

    def test_results_are_tagged_hybrid(self):
        merged = merge_rrf([hit("a")], [hit("b", ResultSource.GRAPH)])
        assert {r.source for r in merged} == {ResultSource.HYBRID}

    def test_first_occurrence_supplies_fields(self):
        merged = merge_rrf([hit("a", name="from vector")], [hit("a", ResultSource.GRAPH, name="from graph")])
        assert merged[0].display_name == "from vector"

    def test_ties_keep_first_seen_order(self):
        merged = merge_rrf([hit("x")], [hit("y")])
        assert [r.node_id for r in merged] == ["x", "y"]

    def test_limit(self):
        merged = merge_rrf([hit(str(i)) for i in range(10)], limit=3)
        assert [r.node_id for r in merged] == ["0", "1", "2"]

    def test_empty_input(self):
        assert merge_rrf([], []) == []
