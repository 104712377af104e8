"""
Configuration Loader Service

Loads knowledge index configuration from knowledge_index.json in the project
root. Environment variables always take precedence over config file values.

Config file location (in order of precedence):
1. KNOWLEDGE_PROJECT_ROOT/knowledge_index.json (if KNOWLEDGE_PROJECT_ROOT is set)
2. CWD/knowledge_index.json

Supported settings in knowledge_index.json:
{
    "index_path": ".knowledge_index",                   // -> KNOWLEDGE_INDEX_DIR
    "code_embedding_model": "sentence-transformers/all-mpnet-base-v2",  // -> KNOWLEDGE_CODE_MODEL
    "text_embedding_model": "sentence-transformers/all-MiniLM-L6-v2",   // -> KNOWLEDGE_TEXT_MODEL
    "embedding_cache_size": 1000,                       // -> KNOWLEDGE_EMBEDDING_CACHE_SIZE
    "embedding_api_key": "...",                         // -> KNOWLEDGE_EMBEDDING_API_KEY
    "use_lightweight_embeddings": false,                // -> KNOWLEDGE_USE_LIGHTWEIGHT
    "embed_batch_size": 32,                             // -> KNOWLEDGE_EMBED_BATCH_SIZE
    "results_per_corpus": 10,                           // -> KNOWLEDGE_RESULTS_PER_CORPUS
    "max_related_connections": 5,                       // -> KNOWLEDGE_MAX_RELATED
    "healing_batch_size": 500,                          // -> KNOWLEDGE_HEALING_BATCH_SIZE
    "healing_max_batches": 20                           // -> KNOWLEDGE_HEALING_MAX_BATCHES
}
"""

import sys
import os
import json
from pathlib import Path
from typing import Dict, Any, Optional

from ..logging_config import is_stderr_suppressed

CONFIG_FILENAME = "knowledge_index.json"


class ConfigLoader:
    """
    Loads configuration from knowledge_index.json.

    ::: This is-in-layer Service-Layer.
    ::: This is a loader.
    ::: This is stateless.

    Priority: Environment variables > knowledge_index.json > defaults
    """

    CONFIG_KEY_TO_ENV = {
        "index_path": "KNOWLEDGE_INDEX_DIR",
        "debug_log": "KNOWLEDGE_DEBUG_LOG",
        "code_embedding_model": "KNOWLEDGE_CODE_MODEL",
        "text_embedding_model": "KNOWLEDGE_TEXT_MODEL",
        "embedding_cache_size": "KNOWLEDGE_EMBEDDING_CACHE_SIZE",
        "embedding_api_key": "KNOWLEDGE_EMBEDDING_API_KEY",
        "use_lightweight_embeddings": "KNOWLEDGE_USE_LIGHTWEIGHT",
        "embed_batch_size": "KNOWLEDGE_EMBED_BATCH_SIZE",
        "results_per_corpus": "KNOWLEDGE_RESULTS_PER_CORPUS",
        "max_related_connections": "KNOWLEDGE_MAX_RELATED",
        "healing_batch_size": "KNOWLEDGE_HEALING_BATCH_SIZE",
        "healing_max_batches": "KNOWLEDGE_HEALING_MAX_BATCHES",
    }

    INDEX_DEFAULTS = {
        "index_path": None,  # resolved to <project_root>/.knowledge_index
        "code_embedding_model": "sentence-transformers/all-mpnet-base-v2",
        "text_embedding_model": "sentence-transformers/all-MiniLM-L6-v2",
        "embedding_cache_size": 1000,
        "embedding_api_key": None,
        "use_lightweight_embeddings": False,
        "embed_batch_size": 32,
        "results_per_corpus": 10,
        "max_related_connections": 5,
        "healing_batch_size": 500,
        "healing_max_batches": 20,
    }

    def __init__(self):
        self._config: Dict[str, Any] = {}
        self._config_path: Optional[Path] = None
        self._project_root: Optional[Path] = None
        self._loaded = False

    def load(self, project_root: Optional[Path] = None) -> bool:
        """
        Load configuration from knowledge_index.json.

        Args:
            project_root: Project root directory. If None, uses KNOWLEDGE_PROJECT_ROOT or CWD.

        Returns:
            True if config file was found and loaded, False otherwise.
        """
        if self._loaded:
            return self._config_path is not None

        if project_root is None:
            env_root = os.getenv("KNOWLEDGE_PROJECT_ROOT")
            project_root = Path(env_root) if env_root else Path.cwd()
        self._project_root = Path(project_root)

        config_path = self._project_root / CONFIG_FILENAME
        if config_path.exists():
            try:
                with open(config_path, 'r', encoding='utf-8') as f:
                    self._config = json.load(f)
                self._config_path = config_path
                if not is_stderr_suppressed():
                    print(f"Loaded config from: {config_path}", file=sys.stderr, flush=True)
            except json.JSONDecodeError as e:
                if not is_stderr_suppressed():
                    print(f"Invalid JSON in {config_path}: {e}", file=sys.stderr, flush=True)
            except OSError as e:
                if not is_stderr_suppressed():
                    print(f"Error loading {config_path}: {e}", file=sys.stderr, flush=True)

        self._loaded = True
        return self._config_path is not None

    def get(self, key: str, default: Any = None) -> Any:
        """Get a raw config file value."""
        return self._config.get(key, default)

    def get_index_config(self) -> Dict[str, Any]:
        """
        Get the indexing and search configuration with defaults applied.

        Returns:
            Dictionary with every INDEX_DEFAULTS key. Env values are coerced
            to the type of the default.
        """
        index_config = {}

        for key, default_value in self.INDEX_DEFAULTS.items():
            env_var = self.CONFIG_KEY_TO_ENV.get(key)
            env_value = os.getenv(env_var) if env_var else None
            if env_value is not None:
                index_config[key] = _coerce(env_value, default_value)
            elif key in self._config:
                index_config[key] = self._config[key]
            else:
                index_config[key] = default_value

        if not index_config["index_path"]:
            root = self._project_root or Path.cwd()
            index_config["index_path"] = str(root / ".knowledge_index")
        return index_config

    @property
    def config_path(self) -> Optional[Path]:
        """Path to the loaded config file, or None if not loaded."""
        return self._config_path

    @property
    def config(self) -> Dict[str, Any]:
        """The loaded configuration dictionary."""
        return self._config.copy()


def _coerce(env_value: str, default_value: Any) -> Any:
    # bool first: bool is a subclass of int
    if isinstance(default_value, bool):
        return env_value.lower() in ('true', '1', 'yes')
    if isinstance(default_value, int):
        try:
            return int(env_value)
        except ValueError:
            return default_value
    return env_value


# Global singleton instance
_config_loader: Optional[ConfigLoader] = None


def get_config_loader() -> ConfigLoader:
    """Get the global config loader instance."""
    global _config_loader
    if _config_loader is None:
        _config_loader = ConfigLoader()
    return _config_loader


def load_config(project_root: Optional[Path] = None) -> Dict[str, Any]:
    """
    Load knowledge_index.json (once) and return the effective index config.

    Args:
        project_root: Project root directory. If None, auto-detects.
    """
    loader = get_config_loader()
    loader.load(project_root)
    return loader.get_index_config()
