"""
Tests for the flat inner-product FAISS wrapper.
"""

import numpy as np
import pytest

from knowledge_index.services.faiss_wrapper import FAISS_AVAILABLE, FAISSWrapper, similarity_to_score


def test_similarity_maps_onto_unit_interval():
    assert similarity_to_score(1.0) == 1.0
    assert similarity_to_score(0.0) == 0.5
    assert similarity_to_score(-1.0) == 0.0
    assert similarity_to_score(1.00001) == 1.0


@pytest.mark.skipif(not FAISS_AVAILABLE, reason="faiss-cpu not installed")
class TestFAISSWrapper:

    def test_vectors_are_normalized_before_adding(self):
        wrapper = FAISSWrapper(3)
        wrapper.add_vectors(np.array([[10.0, 0.0, 0.0], [0.0, 2.0, 0.0]], dtype=np.float32))

        hits = wrapper.search_with_scores(np.array([1.0, 0.0, 0.0]), top_k=2)

        assert [hit.ordinal for hit in hits] == [0, 1]
        assert hits[0].similarity == pytest.approx(1.0, abs=1e-5)
        assert hits[1].score == pytest.approx(0.5, abs=1e-5)

    def test_wrong_shape_is_rejected(self):
        wrapper = FAISSWrapper(4)
        with pytest.raises(ValueError):
            wrapper.add_vectors(np.ones((2, 3), dtype=np.float32))

    def test_empty_index_returns_no_hits(self):
        assert FAISSWrapper(4).search_with_scores(np.ones(4), top_k=5) == []

    def test_save_and_load(self, tmp_path):
        path = tmp_path / "nested" / "docs.faiss"
        wrapper = FAISSWrapper(4)
        wrapper.add_vectors(np.eye(4, dtype=np.float32))
        wrapper.save(str(path))

        loaded = FAISSWrapper.load(str(path))

        assert loaded.dimension == 4
        assert loaded.total_vectors == 4
        assert loaded.search_with_scores(np.eye(4)[2], top_k=1)[0].ordinal == 2

    def test_load_missing_file(self, tmp_path):
        with pytest.raises(FileNotFoundError):
            FAISSWrapper.load(str(tmp_path / "absent.faiss"))
