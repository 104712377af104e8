"""
Per-corpus vector index lifecycle.

A corpus index is rebuilt wholesale from the full current embedding set of
the corpus; there is no single-vector update. Every build gets a fresh
generation id and writes three files::

    code.faiss            the FAISS index
    code.faiss.ids.json   {"generation": "...", "node_ids": [...]}
    code.faiss.meta.json  {"provider_id": "local:all-MiniLM-L6-v2", "dimension": 384,
                           "format_version": 2, "vector_count": 1200,
                           "generation": "..."}

Each file is written to a temp name and renamed into place; the descriptor
goes last, so a reader that sees a new generation in the descriptor also
finds its index and ordinal map. The ordinal map travels with the loaded
handle: a reader resolves hits through the handle it queried, never through
ordinals a later build assigned.
"""

import json
import os
import threading
import uuid
from dataclasses import asdict, dataclass
from pathlib import Path
from typing import Any, Dict, List, Optional, Sequence, Tuple, Union

import numpy as np

from ..knowledge_exceptions import DimensionMismatchError, RebuildRequiredError, VectorIndexError
from ..logging_config import configure_logger_for_debug_trace
from .corpus import Corpus
from .faiss_wrapper import FAISSWrapper

logger = configure_logger_for_debug_trace(__name__)

# v2: generation id and ordinal map sidecar
FORMAT_VERSION = 2
DESCRIPTOR_SUFFIX = ".meta.json"
IDS_SUFFIX = ".ids.json"


@dataclass(frozen=True)
class IndexDescriptor:
    """
    Identity of the vectors stored in one index file.

    ::: This is-in-layer Domain-Layer.
    ::: This is a value-object.
    ::: This is stateless.
    """
    provider_id: str
    dimension: int
    format_version: int = FORMAT_VERSION
    vector_count: int = 0
    generation: str = ""

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "IndexDescriptor":
        return cls(
            provider_id=str(data["provider_id"]),
            dimension=int(data["dimension"]),
            format_version=int(data.get("format_version", 0)),
            vector_count=int(data.get("vector_count", 0)),
            generation=str(data.get("generation", "")),
        )

    def matches(self, provider_id: str, dimension: int) -> bool:
        return (
            self.format_version == FORMAT_VERSION
            and self.provider_id == provider_id
            and self.dimension == dimension
        )


def descriptor_path(index_path: Union[str, Path]) -> Path:
    index_path = Path(index_path)
    return index_path.with_name(index_path.name + DESCRIPTOR_SUFFIX)


def ids_path(index_path: Union[str, Path]) -> Path:
    index_path = Path(index_path)
    return index_path.with_name(index_path.name + IDS_SUFFIX)


def _replace_atomically(path: Path, write) -> None:
    tmp_path = path.with_name(path.name + ".tmp")
    try:
        write(tmp_path)
        os.replace(tmp_path, path)
    finally:
        if tmp_path.exists():
            tmp_path.unlink()


def _write_json(data: Dict[str, Any]):
    return lambda tmp: tmp.write_text(json.dumps(data, indent=2), encoding="utf-8")


class VectorIndex:
    """
    One nearest-neighbor index plus the node id of every ordinal.

    ::: This is-in-layer Infrastructure-Layer.
    ::: This is a index.
    ::: This is stateful.

    Usage:
        index = VectorIndex(provider_id="local:all-MiniLM-L6-v2")
        index.build(vectors, node_ids=ids)
        index.save(path)

        index = VectorIndex.load(path, expected_provider_id=..., expected_dimension=384)
        for ordinal, score in index.query(query_vector, k=10):
            node_id = index.node_id(ordinal)
    """

    def __init__(self, provider_id: str = ""):
        self.provider_id = provider_id
        self.generation = ""
        self._wrapper: Optional[FAISSWrapper] = None
        self._dimension: Optional[int] = None
        self._node_ids: List[str] = []

    @property
    def dimension(self) -> Optional[int]:
        return self._dimension

    @property
    def vector_count(self) -> int:
        return self._wrapper.total_vectors if self._wrapper else 0

    @property
    def is_loaded(self) -> bool:
        return self._wrapper is not None

    @property
    def descriptor(self) -> IndexDescriptor:
        if self._dimension is None:
            raise VectorIndexError("Index has not been built or loaded")
        return IndexDescriptor(
            provider_id=self.provider_id,
            dimension=self._dimension,
            vector_count=self.vector_count,
            generation=self.generation,
        )

    def node_id(self, ordinal: int) -> Optional[str]:
        """Node id stored at ``ordinal`` in this snapshot."""
        if 0 <= ordinal < len(self._node_ids):
            return self._node_ids[ordinal] or None
        return None

    def build(
        self,
        vectors: Sequence[np.ndarray],
        dimension: Optional[int] = None,
        node_ids: Optional[Sequence[str]] = None,
    ) -> int:
        """
        Build the index from vectors in ordinal order.

        The dimension is fixed by the first vector (or ``dimension`` when the
        set is empty) and never changes afterwards.

        Raises:
            DimensionMismatchError: if any vector has a different width
            VectorIndexError: if ``node_ids`` does not name every vector
        """
        vectors = [np.asarray(v, dtype=np.float32).reshape(-1) for v in vectors]
        if vectors:
            dimension = vectors[0].shape[0]
        if not dimension:
            raise VectorIndexError("Cannot build an empty index without a dimension")
        if node_ids is not None and len(node_ids) != len(vectors):
            raise VectorIndexError(f"{len(node_ids)} node ids for {len(vectors)} vectors")

        for ordinal, vector in enumerate(vectors):
            if vector.shape[0] != dimension:
                raise DimensionMismatchError(
                    f"Vector {ordinal} has width {vector.shape[0]}, index dimension is {dimension}"
                )

        wrapper = FAISSWrapper(dimension)
        if vectors:
            wrapper.add_vectors(np.vstack(vectors))

        self._wrapper = wrapper
        self._dimension = dimension
        self._node_ids = list(node_ids) if node_ids is not None else [""] * len(vectors)
        self.generation = uuid.uuid4().hex
        return len(vectors)

    def save(self, path: Union[str, Path]) -> IndexDescriptor:
        """Persist ordinal map, index and descriptor, in that order, each atomically."""
        if self._wrapper is None:
            raise VectorIndexError("No index to save - build or load an index first")
        path = Path(path)
        path.parent.mkdir(parents=True, exist_ok=True)

        descriptor = self.descriptor
        _replace_atomically(
            ids_path(path), _write_json({"generation": self.generation, "node_ids": self._node_ids})
        )
        _replace_atomically(path, lambda tmp: self._wrapper.save(str(tmp)))
        _replace_atomically(descriptor_path(path), _write_json(descriptor.to_dict()))
        logger.info(
            f"Saved vector index {path.name}: {descriptor.vector_count} vectors, "
            f"dim={descriptor.dimension}, provider={descriptor.provider_id}"
        )
        return descriptor

    @classmethod
    def load(
        cls,
        path: Union[str, Path],
        expected_provider_id: Optional[str] = None,
        expected_dimension: Optional[int] = None,
    ) -> "VectorIndex":
        """
        Open a saved index after checking its descriptor.

        Raises:
            FileNotFoundError: if the index file does not exist
            RebuildRequiredError: if the descriptor or ordinal map is missing,
                has another format version or names another provider
            DimensionMismatchError: if the stored width differs from the
                expected one or from the index file itself
            VectorIndexError: if a rebuild replaced the files while loading
        """
        path = Path(path)
        if not path.exists():
            raise FileNotFoundError(f"Vector index not found: {path}")

        descriptor = cls.read_descriptor(path)
        if descriptor is None:
            raise RebuildRequiredError(f"Vector index {path.name} has no readable descriptor")
        if descriptor.format_version != FORMAT_VERSION:
            raise RebuildRequiredError(
                f"Vector index {path.name} has format version {descriptor.format_version}, "
                f"expected {FORMAT_VERSION}"
            )
        if expected_dimension is not None and descriptor.dimension != expected_dimension:
            raise DimensionMismatchError(
                f"Vector index {path.name} has dimension {descriptor.dimension}, "
                f"provider produces {expected_dimension}"
            )
        if expected_provider_id is not None and descriptor.provider_id != expected_provider_id:
            raise RebuildRequiredError(
                f"Vector index {path.name} was built by '{descriptor.provider_id}', "
                f"current provider is '{expected_provider_id}'"
            )

        wrapper = FAISSWrapper.load(str(path))
        if wrapper.dimension != descriptor.dimension:
            raise DimensionMismatchError(
                f"Vector index {path.name} stores dimension {wrapper.dimension}, "
                f"descriptor says {descriptor.dimension}"
            )

        generation, node_ids = cls._read_ids(path)
        if generation != descriptor.generation or len(node_ids) != wrapper.total_vectors:
            raise VectorIndexError(f"Vector index {path.name} was replaced while loading; retry the query")

        index = cls(provider_id=descriptor.provider_id)
        index._wrapper = wrapper
        index._dimension = descriptor.dimension
        index._node_ids = node_ids
        index.generation = descriptor.generation
        return index

    @staticmethod
    def _read_ids(path: Path) -> Tuple[str, List[str]]:
        sidecar = ids_path(path)
        try:
            data = json.loads(sidecar.read_text(encoding="utf-8"))
            return str(data["generation"]), [str(node_id) for node_id in data["node_ids"]]
        except FileNotFoundError:
            raise RebuildRequiredError(f"Vector index {path.name} has no ordinal map")
        except (OSError, ValueError, KeyError, TypeError) as e:
            raise RebuildRequiredError(f"Unreadable ordinal map {sidecar.name}: {e}") from e

    def query(self, vector: np.ndarray, k: int = 10) -> List[Tuple[int, float]]:
        """Top-k (ordinal, score) pairs, best first."""
        if self._wrapper is None:
            raise VectorIndexError("Index has not been built or loaded")
        vector = np.asarray(vector, dtype=np.float32).reshape(-1)
        if vector.shape[0] != self._dimension:
            raise DimensionMismatchError(
                f"Query vector has width {vector.shape[0]}, index dimension is {self._dimension}"
            )
        if k <= 0:
            return []
        return [(hit.ordinal, hit.score) for hit in self._wrapper.search_with_scores(vector, k)]

    @staticmethod
    def read_descriptor(path: Union[str, Path]) -> Optional[IndexDescriptor]:
        """Descriptor of a saved index, or None when absent or unreadable."""
        meta = descriptor_path(path)
        if not meta.exists():
            return None
        try:
            return IndexDescriptor.from_dict(json.loads(meta.read_text(encoding="utf-8")))
        except (OSError, ValueError, KeyError, TypeError) as e:
            logger.warning(f"Unreadable vector index descriptor {meta}: {e}")
            return None

    @staticmethod
    def remove(path: Union[str, Path]) -> None:
        """Delete an index file, its descriptor and its ordinal map if present."""
        for target in (descriptor_path(path), Path(path), ids_path(path)):
            if target.exists():
                target.unlink()


class CorpusIndexManager:
    """
    Lazily opened index handles, one per corpus.

    ::: This is-in-layer Service-Layer.
    ::: This is a manager.
    ::: This is stateful.

    A handle returned by ``get_index`` is a snapshot: its vectors and ordinal
    map stay valid after a rebuild replaces the files. The next ``get_index``
    notices the new generation in the descriptor and opens it.
    """

    VECTOR_DIR = "vectors"

    def __init__(self, index_dir: Union[str, Path], providers: Optional[Dict[Corpus, Any]] = None):
        self._index_dir = Path(index_dir)
        self._providers: Dict[Corpus, Any] = dict(providers or {})
        self._indices: Dict[Corpus, VectorIndex] = {}
        self._lock = threading.Lock()

    @property
    def index_dir(self) -> Path:
        return self._index_dir

    def index_path(self, corpus: Corpus) -> Path:
        return self._index_dir / self.VECTOR_DIR / corpus.index_filename

    def set_provider(self, corpus: Corpus, provider: Any) -> None:
        with self._lock:
            self._providers[corpus] = provider
            self._indices.pop(corpus, None)

    def get_provider(self, corpus: Corpus) -> Any:
        """Embedding provider for a corpus, created from config on first use."""
        with self._lock:
            provider = self._providers.get(corpus)
            if provider is None:
                from .config_loader import load_config
                from .embedding_service import get_embedding_service
                provider = get_embedding_service(load_config(), corpus.embedding_purpose)
                self._providers[corpus] = provider
            return provider

    def get_index(self, corpus: Corpus) -> Optional[VectorIndex]:
        """
        Current handle for a corpus, or None when no index has been built.

        Raises:
            RebuildRequiredError: if the stored index does not match the
                corpus's embedding provider
        """
        path = self.index_path(corpus)
        on_disk = VectorIndex.read_descriptor(path) if path.exists() else None

        with self._lock:
            cached = self._indices.get(corpus)
            if cached is not None and on_disk is not None and cached.generation == on_disk.generation:
                return cached
            self._indices.pop(corpus, None)

        if on_disk is None and not path.exists():
            return None

        provider = self.get_provider(corpus)
        try:
            index = VectorIndex.load(
                path,
                expected_provider_id=provider.provider_id,
                expected_dimension=provider.dimension,
            )
        except RebuildRequiredError as e:
            e.corpus = corpus.value
            raise

        with self._lock:
            self._indices[corpus] = index
        return index

    def invalidate(self, corpus: Corpus) -> None:
        with self._lock:
            self._indices.pop(corpus, None)

    def close_all(self) -> None:
        with self._lock:
            self._indices.clear()
