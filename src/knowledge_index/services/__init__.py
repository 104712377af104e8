"""
Service classes for the knowledge index.

Indexing side: chunk sources, hash tracking, edge extraction, the graph
store, embeddings and per-corpus vector indices, sequenced by the indexing
orchestrator. Query side: router, graph traversal, rank fusion and the
search service.
"""

# Lightweight imports (no numpy/faiss/model dependency)
from .config_loader import ConfigLoader, load_config, get_config_loader
from .corpus import Corpus, EdgeType, OWNED_EDGE_TYPES, BRIDGE_EDGE_TYPES, resolve_corpus_order

_LAZY = {
    "GraphStore": ".graph_store",
    "FileHashTracker": ".hash_tracker",
    "IdentifierResolver": ".identifier_resolver",
    "VectorIndex": ".vector_index",
    "CorpusIndexManager": ".vector_index",
    "EmbeddingService": ".embedding_service",
    "LightweightEmbeddingService": ".embedding_service",
    "get_embedding_service": ".embedding_service",
    "IndexingOrchestrator": ".indexing_orchestrator",
    "CancellationToken": ".indexing_orchestrator",
    "DanglingEdgeHealer": ".healing",
    "KnowledgeSearchService": ".knowledge_search",
    "QueryRouter": ".query_router",
    "GraphTraversal": ".graph_traversal",
    "merge_rrf": ".hybrid_scorer",
}


def __getattr__(name):
    """Lazy-import services that pull in numpy, faiss or embedding models."""
    module_name = _LAZY.get(name)
    if module_name is None:
        raise AttributeError(f"module {__name__!r} has no attribute {name!r}")
    import importlib
    module = importlib.import_module(module_name, __name__)
    return getattr(module, name)


__all__ = [
    "ConfigLoader",
    "load_config",
    "get_config_loader",
    "Corpus",
    "EdgeType",
    "OWNED_EDGE_TYPES",
    "BRIDGE_EDGE_TYPES",
    "resolve_corpus_order",
    *_LAZY,
]
