"""
Tests for the per-corpus vector index and its descriptor checks.
"""

import json

import numpy as np
import pytest

from knowledge_index.knowledge_exceptions import DimensionMismatchError, RebuildRequiredError, VectorIndexError
from knowledge_index.services.corpus import Corpus
from knowledge_index.services.embedding_service import LightweightEmbeddingService
from knowledge_index.services.faiss_wrapper import FAISS_AVAILABLE
from knowledge_index.services.vector_index import (
    CorpusIndexManager,
    IndexDescriptor,
    VectorIndex,
    descriptor_path,
    ids_path,
)


def unit_vectors(count, dim, seed=0):
    rng = np.random.default_rng(seed)
    vectors = rng.standard_normal((count, dim)).astype(np.float32)
    return vectors / np.linalg.norm(vectors, axis=1, keepdims=True)


class TestIndexDescriptor:

    def test_matches_provider_and_dimension(self):
        descriptor = IndexDescriptor(provider_id="local:mini", dimension=384)
        assert descriptor.matches("local:mini", 384)
        assert not descriptor.matches("local:mini", 768)
        assert not descriptor.matches("voyage:voyage-code-3", 384)

    def test_missing_format_version_never_matches(self):
        descriptor = IndexDescriptor.from_dict({"provider_id": "p", "dimension": 8})
        assert not descriptor.matches("p", 8)


@pytest.mark.skipif(not FAISS_AVAILABLE, reason="faiss-cpu not installed")
class TestVectorIndex:

    def test_query_returns_ordinals_best_first(self):
        vectors = unit_vectors(5, 16)
        index = VectorIndex(provider_id="test")
        index.build(vectors)

        hits = index.query(vectors[3], k=2)

        assert hits[0][0] == 3
        assert hits[0][1] == pytest.approx(1.0, abs=1e-5)
        assert len(hits) == 2

    def test_mixed_widths_are_rejected(self):
        with pytest.raises(DimensionMismatchError):
            VectorIndex().build([np.ones(8, dtype=np.float32), np.ones(4, dtype=np.float32)])

    def test_query_width_must_match(self):
        index = VectorIndex()
        index.build(unit_vectors(2, 8))
        with pytest.raises(DimensionMismatchError):
            index.query(np.ones(4, dtype=np.float32))

    def test_save_and_load(self, tmp_path):
        path = tmp_path / "gamedata.faiss"
        vectors = unit_vectors(4, 8)
        index = VectorIndex(provider_id="test")
        index.build(vectors)
        index.save(path)

        descriptor = json.loads(descriptor_path(path).read_text(encoding="utf-8"))
        assert descriptor["provider_id"] == "test"
        assert descriptor["vector_count"] == 4

        loaded = VectorIndex.load(path, expected_provider_id="test", expected_dimension=8)
        assert loaded.vector_count == 4
        assert loaded.query(vectors[1], k=1)[0][0] == 1

    def test_dimension_change_requires_rebuild(self, tmp_path):
        """A provider switching from 768 to 1536 dimensions never queries the old index."""
        path = tmp_path / "code.faiss"
        index = VectorIndex(provider_id="local:model")
        index.build(unit_vectors(3, 768))
        index.save(path)

        with pytest.raises(RebuildRequiredError):
            VectorIndex.load(path, expected_provider_id="local:model", expected_dimension=1536)

    def test_provider_change_requires_rebuild(self, tmp_path):
        path = tmp_path / "docs.faiss"
        index = VectorIndex(provider_id="local:a")
        index.build(unit_vectors(2, 8))
        index.save(path)

        with pytest.raises(RebuildRequiredError, match="local:a"):
            VectorIndex.load(path, expected_provider_id="local:b", expected_dimension=8)

    def test_missing_descriptor_requires_rebuild(self, tmp_path):
        path = tmp_path / "docs.faiss"
        index = VectorIndex(provider_id="p")
        index.build(unit_vectors(2, 8))
        index.save(path)
        descriptor_path(path).unlink()

        with pytest.raises(RebuildRequiredError):
            VectorIndex.load(path)

    def test_node_ids_travel_with_the_index(self, tmp_path):
        path = tmp_path / "gamedata.faiss"
        vectors = unit_vectors(3, 8)
        index = VectorIndex(provider_id="test")
        index.build(vectors, node_ids=["gamedata:a", "gamedata:b", "gamedata:c"])
        index.save(path)

        loaded = VectorIndex.load(path, expected_provider_id="test", expected_dimension=8)

        assert loaded.generation == index.generation
        ordinal = loaded.query(vectors[2], k=1)[0][0]
        assert loaded.node_id(ordinal) == "gamedata:c"
        assert loaded.node_id(3) is None

    def test_node_ids_must_cover_every_vector(self):
        with pytest.raises(VectorIndexError):
            VectorIndex().build(unit_vectors(2, 8), node_ids=["only-one"])

    def test_each_build_gets_a_new_generation(self):
        index = VectorIndex()
        index.build(unit_vectors(2, 8))
        first = index.generation
        index.build(unit_vectors(2, 8))
        assert index.generation and index.generation != first

    def test_ordinal_map_from_another_build_is_refused(self, tmp_path):
        path = tmp_path / "code.faiss"
        index = VectorIndex(provider_id="p")
        index.build(unit_vectors(2, 8), node_ids=["code:a", "code:b"])
        index.save(path)
        ids_path(path).write_text(
            json.dumps({"generation": "other", "node_ids": ["code:x", "code:y"]}), encoding="utf-8"
        )

        with pytest.raises(VectorIndexError, match="replaced while loading"):
            VectorIndex.load(path)

    def test_missing_ordinal_map_requires_rebuild(self, tmp_path):
        path = tmp_path / "code.faiss"
        index = VectorIndex(provider_id="p")
        index.build(unit_vectors(2, 8))
        index.save(path)
        ids_path(path).unlink()

        with pytest.raises(RebuildRequiredError):
            VectorIndex.load(path)

    def test_remove_deletes_index_and_sidecars(self, tmp_path):
        path = tmp_path / "client.faiss"
        index = VectorIndex(provider_id="p")
        index.build(unit_vectors(2, 8))
        index.save(path)

        VectorIndex.remove(path)

        assert not path.exists()
        assert not descriptor_path(path).exists()
        assert not ids_path(path).exists()


@pytest.mark.skipif(not FAISS_AVAILABLE, reason="faiss-cpu not installed")
class TestCorpusIndexManager:

    def test_no_index_yields_none(self, tmp_path, provider):
        manager = CorpusIndexManager(tmp_path, {Corpus.DOCS: provider})
        assert manager.get_index(Corpus.DOCS) is None

    def test_held_handle_survives_a_rebuild(self, tmp_path, provider):
        manager = CorpusIndexManager(tmp_path, {Corpus.DOCS: provider})
        path = manager.index_path(Corpus.DOCS)
        first = VectorIndex(provider_id=provider.provider_id)
        first.build(unit_vectors(2, provider.dimension), node_ids=["docs:a", "docs:b"])
        first.save(path)

        held = manager.get_index(Corpus.DOCS)
        assert manager.get_index(Corpus.DOCS) is held

        rebuilt = VectorIndex(provider_id=provider.provider_id)
        rebuilt.build(
            unit_vectors(5, provider.dimension, seed=1),
            node_ids=["docs:z", "docs:y", "docs:x", "docs:w", "docs:v"],
        )
        rebuilt.save(path)

        assert held.vector_count == 2
        assert held.node_id(1) == "docs:b"
        current = manager.get_index(Corpus.DOCS)
        assert current is not held
        assert current.vector_count == 5
        assert current.node_id(1) == "docs:y"

    def test_removed_index_drops_the_handle(self, tmp_path, provider):
        manager = CorpusIndexManager(tmp_path, {Corpus.DOCS: provider})
        path = manager.index_path(Corpus.DOCS)
        index = VectorIndex(provider_id=provider.provider_id)
        index.build(unit_vectors(2, provider.dimension))
        index.save(path)
        assert manager.get_index(Corpus.DOCS) is not None

        VectorIndex.remove(path)

        assert manager.get_index(Corpus.DOCS) is None

    def test_mismatch_names_the_corpus(self, tmp_path):
        old = LightweightEmbeddingService(embedding_dim=32)
        new = LightweightEmbeddingService(embedding_dim=48)
        manager = CorpusIndexManager(tmp_path, {Corpus.CODE: new})
        index = VectorIndex(provider_id=old.provider_id)
        index.build(unit_vectors(2, 32))
        index.save(manager.index_path(Corpus.CODE))

        with pytest.raises(RebuildRequiredError) as exc_info:
            manager.get_index(Corpus.CODE)
        assert exc_info.value.corpus == "code"
