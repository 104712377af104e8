"""
Exact inner-product FAISS index for one corpus.

Vectors are L2-normalized on the way in, so inner product is cosine
similarity. Positions in insertion order are the ordinals a query returns.
"""

import logging
import warnings
from dataclasses import dataclass
from pathlib import Path
from typing import List

import numpy as np

# SWIG deprecation noise on Python 3.12+, emitted while faiss is imported
warnings.filterwarnings("ignore", message="builtin type Swig", category=DeprecationWarning)
warnings.filterwarnings("ignore", message="builtin type swig", category=DeprecationWarning)

try:
    import faiss
    FAISS_AVAILABLE = True
except ImportError:
    FAISS_AVAILABLE = False
    faiss = None

logger = logging.getLogger(__name__)


@dataclass
class SearchHit:
    ordinal: int
    similarity: float
    score: float  # similarity mapped to [0, 1]


def similarity_to_score(similarity: float) -> float:
    """Cosine 1.0 scores 1.0, orthogonal scores 0.5, opposite scores 0.0."""
    return max(0.0, min(1.0, (similarity + 1.0) / 2.0))


def _normalized(vectors: np.ndarray) -> np.ndarray:
    vectors = np.asarray(vectors, dtype=np.float32)
    norms = np.linalg.norm(vectors, axis=1, keepdims=True)
    norms[norms == 0] = 1.0
    return np.ascontiguousarray(vectors / norms, dtype=np.float32)


class FAISSWrapper:
    """
    Thin wrapper over ``faiss.IndexFlatIP``.

    ::: This is-in-layer Infrastructure-Layer.
    ::: This is a adapter.
    ::: This is stateful.
    """

    def __init__(self, dimension: int):
        if not FAISS_AVAILABLE:
            raise ImportError(
                "faiss is required for vector search. "
                "Install with: pip install faiss-cpu"
            )
        self._dimension = dimension
        self._index = faiss.IndexFlatIP(dimension)

    @property
    def dimension(self) -> int:
        return self._dimension

    @property
    def total_vectors(self) -> int:
        return self._index.ntotal

    def add_vectors(self, vectors: np.ndarray) -> None:
        """
        Append vectors; the first one added gets ordinal ``total_vectors``.

        Raises:
            ValueError: if ``vectors`` is not (n, dimension)
        """
        if vectors.ndim != 2 or vectors.shape[1] != self._dimension:
            raise ValueError(
                f"Expected shape (n, {self._dimension}), got {vectors.shape}"
            )
        self._index.add(_normalized(vectors))

    def search_with_scores(self, query_vector: np.ndarray, top_k: int = 10) -> List[SearchHit]:
        """Up to ``top_k`` hits, best first."""
        k = min(top_k, self._index.ntotal)
        if k <= 0:
            return []
        query = _normalized(np.asarray(query_vector, dtype=np.float32).reshape(1, -1))
        similarities, ordinals = self._index.search(query, k)
        return [
            SearchHit(ordinal=int(o), similarity=float(s), score=similarity_to_score(float(s)))
            for s, o in zip(similarities[0], ordinals[0])
            if o != -1
        ]

    def save(self, path: str) -> None:
        Path(path).parent.mkdir(parents=True, exist_ok=True)
        faiss.write_index(self._index, str(path))
        logger.debug(f"Wrote FAISS index to {path} ({self._index.ntotal} vectors)")

    @classmethod
    def load(cls, path: str) -> "FAISSWrapper":
        """
        Raises:
            FileNotFoundError: if ``path`` does not exist
        """
        if not Path(path).exists():
            raise FileNotFoundError(f"Index file not found: {path}")
        index = faiss.read_index(str(path))
        wrapper = cls(index.d)
        wrapper._index = index
        logger.debug(f"Loaded FAISS index from {path} ({index.ntotal} vectors, dim={index.d})")
        return wrapper
