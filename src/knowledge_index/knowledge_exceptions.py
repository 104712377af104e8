"""
Knowledge Index Exception Hierarchy

Contains all exception classes raised by the indexing pipeline, the graph
store, the vector index and the query surface.
"""


class KnowledgeIndexError(Exception):
    """
    Base exception for all knowledge index operations.

    ::: This is-in-layer Utility-Layer.
    ::: This is a exception.
    ::: This is stateless.
    """
    pass


class ChunkParseError(KnowledgeIndexError):
    """
    Raised when a source record cannot be parsed.

    The indexer records these in the index_errors table and skips the record;
    the rest of the pass continues.

    ::: This is-in-layer Utility-Layer.
    ::: This is a exception.
    ::: This is stateless.
    """

    def __init__(self, message: str, file_path: str = None):
        super().__init__(message)
        self.file_path = file_path


class ProviderError(KnowledgeIndexError):
    """
    Raised when the embedding provider fails validation or a batch call.

    Aborts the indexing pass of the corpus being embedded.

    ::: This is-in-layer Utility-Layer.
    ::: This is a exception.
    ::: This is stateless.
    """
    pass


class ProviderUnavailableError(ProviderError):
    """Raised when the provider library or model cannot be loaded."""
    pass


class ProviderAuthError(ProviderError):
    """Raised when a hosted provider rejects the configured API key."""
    pass


class VectorIndexError(KnowledgeIndexError):
    """
    Exception for vector index build, save and load operations.

    ::: This is-in-layer Utility-Layer.
    ::: This is a exception.
    ::: This is stateless.
    """
    pass


class RebuildRequiredError(VectorIndexError):
    """
    Raised when a persisted vector index cannot serve the current provider.

    ::: This is-in-layer Utility-Layer.
    ::: This is a exception.
    ::: This is stateless.
    """

    def __init__(self, message: str, corpus: str = None):
        super().__init__(message)
        self.corpus = corpus


class DimensionMismatchError(RebuildRequiredError):
    """
    Raised when vector widths disagree with the index descriptor.

    ::: This is-in-layer Utility-Layer.
    ::: This is a exception.
    ::: This is stateless.
    """
    pass


class GraphStoreError(KnowledgeIndexError):
    """
    Exception for graph store operations.

    ::: This is-in-layer Utility-Layer.
    ::: This is a exception.
    ::: This is stateless.
    """
    pass


class ScopedDeleteError(GraphStoreError, ValueError):
    """
    Raised when an edge delete is requested without a valid allow-list.

    Deleting by owner alone would remove edges written by another corpus.
    """
    pass


class CorpusOrderError(KnowledgeIndexError):
    """Raised when the declared corpus dependencies contain a cycle."""
    pass


class IndexingCancelled(KnowledgeIndexError):
    """
    Raised at a cancellation checkpoint of an indexing pass.

    ::: This is-in-layer Utility-Layer.
    ::: This is a exception.
    ::: This is stateless.
    """
    pass


__all__ = [
    "KnowledgeIndexError",
    "ChunkParseError",
    "ProviderError",
    "ProviderUnavailableError",
    "ProviderAuthError",
    "VectorIndexError",
    "RebuildRequiredError",
    "DimensionMismatchError",
    "GraphStoreError",
    "ScopedDeleteError",
    "CorpusOrderError",
    "IndexingCancelled",
]
