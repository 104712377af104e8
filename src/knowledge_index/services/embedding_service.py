"""
Embedding generation service.

Manages embedding generation using various providers:
- Local: sentence-transformers (default, no API key needed)
- Voyage: voyage-code-3 or voyage-3 (via Voyage AI API)
- OpenAI: text-embedding-3-small/large or ada-002

Each provider exposes the same contract to the indexer:
``provider_id``, ``dimension``, ``validate()`` and ``embed(texts)``.
Configuration via knowledge_index.json or environment variables.
"""

import hashlib
import os
import time
from collections import OrderedDict
from typing import Any, Callable, Dict, List, Optional

import numpy as np

from ..knowledge_exceptions import ProviderAuthError, ProviderError, ProviderUnavailableError
from ..logging_config import configure_logger_for_debug_trace
from .corpus import EmbeddingPurpose

logger = configure_logger_for_debug_trace(__name__)

# Provider availability, checked lazily
_SENTENCE_TRANSFORMERS_AVAILABLE: Optional[bool] = None
_VOYAGE_AVAILABLE: Optional[bool] = None
_OPENAI_AVAILABLE: Optional[bool] = None


def _check_sentence_transformers() -> bool:
    global _SENTENCE_TRANSFORMERS_AVAILABLE
    if _SENTENCE_TRANSFORMERS_AVAILABLE is None:
        try:
            import sentence_transformers  # noqa: F401
            _SENTENCE_TRANSFORMERS_AVAILABLE = True
        except ImportError:
            _SENTENCE_TRANSFORMERS_AVAILABLE = False
    return _SENTENCE_TRANSFORMERS_AVAILABLE


def _check_voyage() -> bool:
    """Lazy check for voyageai availability."""
    global _VOYAGE_AVAILABLE
    if _VOYAGE_AVAILABLE is None:
        try:
            import voyageai  # noqa: F401
            _VOYAGE_AVAILABLE = True
        except ImportError:
            _VOYAGE_AVAILABLE = False
    return _VOYAGE_AVAILABLE


def _check_openai() -> bool:
    """Lazy check for openai availability."""
    global _OPENAI_AVAILABLE
    if _OPENAI_AVAILABLE is None:
        try:
            import openai  # noqa: F401
            _OPENAI_AVAILABLE = True
        except ImportError:
            _OPENAI_AVAILABLE = False
    return _OPENAI_AVAILABLE


def _normalize(embedding: np.ndarray) -> np.ndarray:
    embedding = np.asarray(embedding, dtype=np.float32)
    norm = np.linalg.norm(embedding)
    if norm > 0:
        embedding = embedding / norm
    return embedding


class EmbeddingService:
    """
    Manages embedding generation with caching and multiple provider support.

    ::: This is-in-layer Service-Layer.
    ::: This is a provider.
    ::: This is stateful.

    Attributes:
        model_name: Name of the embedding model
        provider: Provider type ("local", "voyage", "openai")
        embedding_dim: Dimension of embeddings produced
    """

    MODEL_CONFIGS: Dict[str, Dict[str, Any]] = {
        # Local models (sentence-transformers)
        "sentence-transformers/all-mpnet-base-v2": {"dim": 768, "provider": "local"},
        "sentence-transformers/all-MiniLM-L6-v2": {"dim": 384, "provider": "local"},
        "all-mpnet-base-v2": {"dim": 768, "provider": "local"},
        "all-MiniLM-L6-v2": {"dim": 384, "provider": "local"},

        # Voyage AI models (best for code)
        "voyage-code-3": {"dim": 1024, "provider": "voyage"},
        "voyage-3": {"dim": 1024, "provider": "voyage"},
        "voyage-3-lite": {"dim": 512, "provider": "voyage"},

        # OpenAI models
        "text-embedding-3-small": {"dim": 1536, "provider": "openai"},
        "text-embedding-3-large": {"dim": 3072, "provider": "openai"},
        "text-embedding-ada-002": {"dim": 1536, "provider": "openai"},
    }

    def __init__(
        self,
        model_name: str = "sentence-transformers/all-mpnet-base-v2",
        cache_size: int = 1000,
        api_key: Optional[str] = None
    ):
        """
        Args:
            model_name: Name of the embedding model (see MODEL_CONFIGS)
            cache_size: Maximum number of embeddings to cache
            api_key: API key for Voyage or OpenAI (falls back to env vars)
        """
        self.model_name = model_name
        self.cache_size = cache_size
        self._api_key = api_key
        self._model = None
        self._client = None

        self._embedding_cache: OrderedDict[str, np.ndarray] = OrderedDict()

        config = self.MODEL_CONFIGS.get(model_name, {"dim": 768, "provider": "local"})
        self.provider = config["provider"]
        self.embedding_dim = config["dim"]
        # Unlisted models carry a placeholder width until the model answers
        self._dimension_known = model_name in self.MODEL_CONFIGS

        self._initialized = False

    # =========================================================================
    # Provider contract
    # =========================================================================

    @property
    def provider_id(self) -> str:
        """Stable identity recorded in vector index descriptors."""
        return f"{self.provider}:{self.model_name}"

    @property
    def dimension(self) -> int:
        """Vector width; loads the model first when the width is not listed."""
        if not self._dimension_known:
            self.initialize()
            if not self._dimension_known:
                self._resolve_dimension()
        return self.embedding_dim

    def validate(self) -> Dict[str, Any]:
        """
        Preflight check run once per indexing pass before the first batch.

        Raises:
            ProviderError: if the provider cannot be loaded, authenticated or called
        """
        self.initialize()
        try:
            probe = self._embed_uncached(["validate"])
        except ProviderError:
            raise
        except Exception as e:
            raise ProviderError(f"Embedding provider {self.provider_id} failed validation: {e}") from e
        if len(probe) != 1:
            raise ProviderError(f"Embedding provider {self.provider_id} returned no vector")
        self.embedding_dim = int(np.asarray(probe[0]).shape[-1])
        self._dimension_known = True
        return self.get_info()

    def embed(self, texts: List[str]) -> np.ndarray:
        """Embed a batch of documents; shape (len(texts), dimension)."""
        try:
            return self.generate_embeddings_batch(texts)
        except ProviderError:
            raise
        except Exception as e:
            raise ProviderError(f"Embedding batch failed ({self.provider_id}): {e}") from e

    def embed_query(self, text: str) -> np.ndarray:
        """Embed a search query (Voyage distinguishes query from document input)."""
        try:
            if self.provider == "voyage":
                self.initialize()
                return _normalize(self._embed_voyage([text], input_type="query")[0])
            return self.generate_embedding(text)
        except ProviderError:
            raise
        except Exception as e:
            raise ProviderError(f"Query embedding failed ({self.provider_id}): {e}") from e

    # =========================================================================
    # Initialization
    # =========================================================================

    def initialize(self) -> None:
        """Lazy initialization of the model or API client."""
        if self._initialized:
            return

        logger.info(f"Initializing embedding service: {self.model_name} ({self.provider})")

        if self.provider == "local":
            self._init_local()
        elif self.provider == "voyage":
            self._init_voyage()
        elif self.provider == "openai":
            self._init_openai()
        else:
            raise ProviderUnavailableError(f"Unknown provider: {self.provider}")

        self._initialized = True
        if not self._dimension_known:
            self._resolve_dimension()
        logger.info(f"Embedding service ready. Dimension: {self.embedding_dim}")

    def _resolve_dimension(self) -> None:
        try:
            probe = self._embed_uncached(["dimension"])
        except ProviderError:
            raise
        except Exception as e:
            raise ProviderError(f"Embedding provider {self.provider_id} could not report its dimension: {e}") from e
        self.embedding_dim = int(np.asarray(probe).shape[-1])
        self._dimension_known = True

    def _init_local(self) -> None:
        if not _check_sentence_transformers():
            raise ProviderUnavailableError(
                "sentence-transformers package is required for local embeddings. "
                "Install with: pip install sentence-transformers"
            )
        from sentence_transformers import SentenceTransformer

        st_model_name = self.model_name
        if st_model_name.startswith("sentence-transformers/"):
            st_model_name = st_model_name.replace("sentence-transformers/", "")

        cache_dir = os.environ.get('TRANSFORMERS_CACHE', None)
        if cache_dir:
            os.makedirs(cache_dir, exist_ok=True)

        model_start = time.time()
        try:
            self._model = SentenceTransformer(st_model_name, cache_folder=cache_dir)
        except (OSError, ValueError) as e:
            raise ProviderUnavailableError(f"Could not load model '{st_model_name}': {e}") from e
        logger.info(f"[Embedding] Model '{st_model_name}' loaded in {time.time() - model_start:.2f}s")

        test_emb = self._model.encode("test", convert_to_numpy=True)
        self.embedding_dim = len(test_emb)
        self._dimension_known = True

    def _init_voyage(self) -> None:
        if not _check_voyage():
            raise ProviderUnavailableError(
                "voyageai package is required for Voyage embeddings. "
                "Install with: pip install voyageai"
            )
        import voyageai

        api_key = self._api_key or os.getenv("VOYAGE_API_KEY")
        if not api_key:
            raise ProviderAuthError(
                "VOYAGE_API_KEY required for Voyage embeddings. "
                "Set via environment variable or knowledge_index.json"
            )
        self._client = voyageai.Client(api_key=api_key)

    def _init_openai(self) -> None:
        if not _check_openai():
            raise ProviderUnavailableError(
                "openai package is required for OpenAI embeddings. "
                "Install with: pip install openai"
            )
        import openai

        api_key = self._api_key or os.getenv("OPENAI_API_KEY")
        if not api_key:
            raise ProviderAuthError(
                "OPENAI_API_KEY required for OpenAI embeddings. "
                "Set via environment variable or knowledge_index.json"
            )
        self._client = openai.OpenAI(api_key=api_key)

    # =========================================================================
    # Cache
    # =========================================================================

    def _get_cache_key(self, text: str) -> str:
        return hashlib.sha256(text.encode('utf-8')).hexdigest()

    def _cache_get(self, key: str) -> Optional[np.ndarray]:
        """Get from cache and move to end (LRU)."""
        if key in self._embedding_cache:
            self._embedding_cache.move_to_end(key)
            return self._embedding_cache[key].copy()
        return None

    def _cache_put(self, key: str, embedding: np.ndarray) -> None:
        """Put in cache with LRU eviction."""
        if key in self._embedding_cache:
            self._embedding_cache.move_to_end(key)
        else:
            if len(self._embedding_cache) >= self.cache_size:
                self._embedding_cache.popitem(last=False)
            self._embedding_cache[key] = embedding.copy()

    def clear_cache(self) -> None:
        self._embedding_cache.clear()
        logger.info("Embedding cache cleared")

    # =========================================================================
    # Generation
    # =========================================================================

    def generate_embedding(self, text: str) -> np.ndarray:
        """Embedding for a single text, shape (embedding_dim,)."""
        return self.generate_embeddings_batch([text])[0]

    def generate_embeddings_batch(
        self,
        texts: List[str],
        batch_size: int = 32,
        progress_callback: Optional[Callable[[int, int], None]] = None
    ) -> np.ndarray:
        """
        Generate embeddings for multiple texts, serving repeats from the cache.

        Returns:
            Numpy array of shape (len(texts), embedding_dim)
        """
        self.initialize()

        if not texts:
            return np.array([], dtype=np.float32).reshape(0, self.embedding_dim)

        results: Dict[int, np.ndarray] = {}
        uncached_texts: List[str] = []
        uncached_indices: List[int] = []

        for i, text in enumerate(texts):
            cached = self._cache_get(self._get_cache_key(text))
            if cached is not None:
                results[i] = cached
            else:
                uncached_texts.append(text)
                uncached_indices.append(i)

        if uncached_texts:
            logger.debug(
                f"Generating embeddings for {len(uncached_texts)} texts "
                f"({len(texts) - len(uncached_texts)} from cache)"
            )
            new_embeddings = self._embed_uncached(uncached_texts, batch_size)
            for text, idx, embedding in zip(uncached_texts, uncached_indices, new_embeddings):
                embedding = _normalize(embedding)
                self._cache_put(self._get_cache_key(text), embedding)
                results[idx] = embedding

        if progress_callback:
            progress_callback(len(texts), len(texts))

        return np.array([results[i] for i in range(len(texts))], dtype=np.float32)

    def _embed_uncached(self, texts: List[str], batch_size: int = 32) -> np.ndarray:
        if self.provider == "local":
            return self._model.encode(
                texts,
                convert_to_numpy=True,
                batch_size=batch_size,
                show_progress_bar=False,
                normalize_embeddings=True
            )
        if self.provider == "voyage":
            return self._embed_voyage(texts, batch_size)
        if self.provider == "openai":
            return self._embed_openai(texts, batch_size)
        raise ProviderUnavailableError(f"Unknown provider: {self.provider}")

    def _embed_voyage(
        self,
        texts: List[str],
        batch_size: int = 32,
        input_type: str = "document"
    ) -> np.ndarray:
        all_embeddings = []
        for i in range(0, len(texts), batch_size):
            result = self._client.embed(
                texts=texts[i:i + batch_size],
                model=self.model_name,
                input_type=input_type
            )
            all_embeddings.extend(np.array(e, dtype=np.float32) for e in result.embeddings)
        return np.array(all_embeddings, dtype=np.float32)

    def _embed_openai(self, texts: List[str], batch_size: int = 32) -> np.ndarray:
        all_embeddings = []
        for i in range(0, len(texts), batch_size):
            response = self._client.embeddings.create(
                model=self.model_name,
                input=texts[i:i + batch_size]
            )
            # Sort by index to ensure correct order
            for e in sorted(response.data, key=lambda x: x.index):
                all_embeddings.append(np.array(e.embedding, dtype=np.float32))
        return np.array(all_embeddings, dtype=np.float32)

    def get_info(self) -> Dict[str, Any]:
        return {
            'model': self.model_name,
            'provider': self.provider,
            'provider_id': self.provider_id,
            'dimension': self.embedding_dim,
            'initialized': self._initialized,
            'cache_size': len(self._embedding_cache),
            'max_cache_size': self.cache_size,
        }


class LightweightEmbeddingService(EmbeddingService):
    """
    Lightweight embedding service for testing without heavy dependencies.

    Uses hash-based embeddings that maintain some semantic properties
    (same text = same embedding) but are NOT suitable for production.
    """

    def __init__(self, embedding_dim: int = 768, cache_size: int = 1000):
        super().__init__(model_name="lightweight-test", cache_size=cache_size)
        self.provider = "lightweight"
        self.embedding_dim = embedding_dim
        self._dimension_known = True
        self._initialized = True

    @property
    def provider_id(self) -> str:
        return f"lightweight:{self.embedding_dim}"

    def initialize(self) -> None:
        pass

    def _embed_uncached(self, texts: List[str], batch_size: int = 32) -> np.ndarray:
        return np.array([self._hash_embedding(text) for text in texts], dtype=np.float32)

    def embed_query(self, text: str) -> np.ndarray:
        return self.generate_embedding(text)

    def _hash_embedding(self, text: str) -> np.ndarray:
        text_hash = hashlib.sha256(text.encode('utf-8')).digest()
        values = [float(b) / 255.0 for b in text_hash]
        while len(values) < self.embedding_dim:
            extended_hash = hashlib.sha256(
                text_hash + len(values).to_bytes(4, 'little')
            ).digest()
            values.extend(float(b) / 255.0 for b in extended_hash)
        return _normalize(np.array(values[:self.embedding_dim], dtype=np.float32))


# One service per model name, so code and text corpora can use different models
_embedding_services: Dict[str, EmbeddingService] = {}


def get_embedding_service(
    config: Optional[Dict[str, Any]] = None,
    purpose: EmbeddingPurpose = EmbeddingPurpose.TEXT,
    use_lightweight: bool = False
) -> EmbeddingService:
    """
    Factory returning the (singleton) embedding service for a corpus purpose.

    Args:
        config: Index configuration (see ConfigLoader.get_index_config)
        purpose: CODE or TEXT; selects code_embedding_model or text_embedding_model
        use_lightweight: Force the hash-based service for testing
    """
    config = config or {}

    if use_lightweight or config.get("use_lightweight_embeddings", False):
        dim = int(config.get("lightweight_dim", 768))
        key = f"lightweight:{dim}"
        if key not in _embedding_services:
            logger.warning("Using lightweight embedding service (testing only)")
            _embedding_services[key] = LightweightEmbeddingService(
                embedding_dim=dim,
                cache_size=config.get("embedding_cache_size", 1000),
            )
        return _embedding_services[key]

    if purpose == EmbeddingPurpose.CODE:
        model_name = config.get("code_embedding_model", "sentence-transformers/all-mpnet-base-v2")
    else:
        model_name = config.get("text_embedding_model", "sentence-transformers/all-MiniLM-L6-v2")

    if model_name not in _embedding_services:
        _embedding_services[model_name] = EmbeddingService(
            model_name=model_name,
            cache_size=config.get("embedding_cache_size", 1000),
            api_key=config.get("embedding_api_key"),
        )
    return _embedding_services[model_name]


def reset_embedding_service_singleton() -> None:
    """Reset the embedding service singletons (for testing only)."""
    _embedding_services.clear()
