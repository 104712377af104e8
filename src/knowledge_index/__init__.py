"""
Knowledge Index - incremental knowledge indexing and hybrid retrieval

Indexes four corpora (server code, game data, client UI, modding docs) into
one graph store with per-corpus vector indices, and answers natural-language
queries by routing them to vector search, graph traversal, or both fused
with Reciprocal Rank Fusion.
"""

# Suppress SWIG deprecation warnings from FAISS before any imports
import warnings
warnings.filterwarnings("ignore", message="builtin type Swig", category=DeprecationWarning)
warnings.filterwarnings("ignore", message="builtin type swig", category=DeprecationWarning)

__version__ = "0.1.0"

from .models import (
    SearchResult,
    IndexStats,
    RouteResult,
    ResultSource,
    QueryStrategy,
    SearchMode,
)
from .knowledge_exceptions import (
    KnowledgeIndexError,
    ChunkParseError,
    ProviderError,
    RebuildRequiredError,
    DimensionMismatchError,
    ScopedDeleteError,
    IndexingCancelled,
)

# Server and search entry points are lazy-imported (fastmcp, faiss, models)
_LAZY_ATTRS = {
    "create_server": ".mcp_server",
    "KnowledgeServer": ".mcp_server",
    "KnowledgeSearchService": ".services.knowledge_search",
    "IndexingOrchestrator": ".services.indexing_orchestrator",
}


def __getattr__(name):
    module_name = _LAZY_ATTRS.get(name)
    if module_name is None:
        raise AttributeError(f"module {__name__!r} has no attribute {name!r}")
    import importlib
    return getattr(importlib.import_module(module_name, __name__), name)


__all__ = [
    "SearchResult",
    "IndexStats",
    "RouteResult",
    "ResultSource",
    "QueryStrategy",
    "SearchMode",
    "KnowledgeIndexError",
    "ChunkParseError",
    "ProviderError",
    "RebuildRequiredError",
    "DimensionMismatchError",
    "ScopedDeleteError",
    "IndexingCancelled",
    "create_server",
    "KnowledgeServer",
    "KnowledgeSearchService",
    "IndexingOrchestrator",
]
