"""
Shared pytest fixtures for knowledge index tests.

Provides a temporary graph store, a deterministic embedding provider and an
index manager wired to it, so indexing and search tests never load a model.
"""

import os

# File logging off before any knowledge_index import creates handlers
os.environ["KNOWLEDGE_DEBUG_LOG"] = ""

import tempfile

import pytest

from knowledge_index.services.corpus import Corpus
from knowledge_index.services.embedding_service import (
    LightweightEmbeddingService,
    reset_embedding_service_singleton,
)
from knowledge_index.services.graph_store import GraphStore
from knowledge_index.services.vector_index import CorpusIndexManager


@pytest.fixture(autouse=True)
def reset_singletons():
    """Drop cached embedding services between tests."""
    yield
    reset_embedding_service_singleton()


@pytest.fixture
def store():
    """
    Create a temporary GraphStore for testing.

    The database file and its WAL/SHM companions are removed afterwards.
    """
    with tempfile.NamedTemporaryFile(suffix=".db", delete=False) as f:
        db_path = f.name

    store = GraphStore(db_path)
    yield store

    store.close()
    for path in (db_path, db_path + "-wal", db_path + "-shm"):
        try:
            os.unlink(path)
        except OSError:
            pass


@pytest.fixture
def provider():
    """Hash-based embeddings: identical text, identical vector."""
    return LightweightEmbeddingService(embedding_dim=64)


@pytest.fixture
def index_manager(tmp_path, provider):
    return CorpusIndexManager(tmp_path / "index", providers={c: provider for c in Corpus})


@pytest.fixture
def config():
    return {
        "embed_batch_size": 2,
        "results_per_corpus": 10,
        "max_related_connections": 5,
        "healing_batch_size": 100,
        "healing_max_batches": 5,
    }
