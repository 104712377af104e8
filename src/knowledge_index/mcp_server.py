"""
Knowledge Index MCP Server

Stdio MCP server exposing hybrid search over the indexed corpora.
Read-only: indexing runs through the ``knowledge-index index`` command.
"""

import signal
import sys
from functools import wraps
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional

from fastmcp import FastMCP

from .knowledge_exceptions import KnowledgeIndexError, RebuildRequiredError
from .logging_config import configure_logger_for_debug_trace
from .models import SearchMode, SearchResult
from .services.config_loader import load_config
from .services.corpus import Corpus
from .services.graph_store import GraphStore
from .services.knowledge_search import KnowledgeSearchService
from .services.vector_index import CorpusIndexManager

logger = configure_logger_for_debug_trace(__name__)

MAX_RESULTS = 20


def knowledge_error_response(func: Callable[..., Dict[str, Any]]) -> Callable[..., Dict[str, Any]]:
    """
    Turn knowledge index errors into ``{"success": False, ...}`` responses.

    Example:
        @app.tool()
        @knowledge_error_response
        def my_tool(...) -> Dict[str, Any]:
            ...
    """
    @wraps(func)
    def wrapper(*args, **kwargs) -> Dict[str, Any]:
        try:
            return func(*args, **kwargs)
        except RebuildRequiredError as e:
            return {
                "success": False,
                "error": str(e),
                "status": "rebuild_required",
                "corpus": e.corpus,
            }
        except (KnowledgeIndexError, ValueError) as e:
            return {"success": False, "error": str(e)}
    return wrapper


def _clamp(limit: Optional[int], default: int) -> int:
    return max(1, min(int(limit or default), MAX_RESULTS))


def encode_results(query: str, results: List[SearchResult]) -> Dict[str, Any]:
    return {
        "success": True,
        "query": query,
        "result_count": len(results),
        "results": [r.model_dump(mode="json", exclude_none=True) for r in results],
    }


class KnowledgeServer:
    """
    MCP surface over ``KnowledgeSearchService``.

    ::: This is-in-layer Presentation-Layer.
    ::: This is a model-context-protocol-server.
    ::: This is a process-entry-point.
    ::: This is stateless.
    """

    def __init__(self, search_service: KnowledgeSearchService, default_limit: int = 5):
        self.search_service = search_service
        self.default_limit = default_limit
        self.app = FastMCP(
            "knowledge-index",
            instructions=(
                "Hybrid knowledge search over four corpora: server code, game data, "
                "client UI and modding docs.\n\n"
                "- `search_knowledge` - routed search across corpora; structural questions such as "
                "'what drops from goblin' or 'what extends Asset' are answered from the graph\n"
                "- `search_corpus` - vector search in one corpus, optional data type filter and "
                "cross-corpus expansion\n"
                "- `corpus_stats` - node, edge and index statistics"
            ),
        )
        self._register_tools()

    # =========================================================================
    # Tool implementations
    # =========================================================================

    @knowledge_error_response
    def search_knowledge(
        self,
        query: str,
        corpora: Optional[List[str]] = None,
        mode: str = "auto",
        limit: Optional[int] = None,
    ) -> Dict[str, Any]:
        selected = [Corpus.from_id(c) for c in corpora] if corpora else None
        results = self.search_service.search(
            query, selected, SearchMode(mode), _clamp(limit, self.default_limit)
        )
        return encode_results(query, results)

    @knowledge_error_response
    def search_corpus(
        self,
        query: str,
        corpus: str,
        data_type: Optional[str] = None,
        limit: Optional[int] = None,
        expand: bool = False,
    ) -> Dict[str, Any]:
        target = Corpus.from_id(corpus)
        limit = _clamp(limit, self.default_limit)
        if expand:
            others = [c for c in Corpus if c != target]
            results = self.search_service.search_with_expansion(query, [target, *others], limit)
        else:
            results = self.search_service.search_corpus(
                query, target, limit, [data_type] if data_type else None
            )
        return encode_results(query, results)

    @knowledge_error_response
    def corpus_stats(self, corpus: Optional[str] = None) -> Dict[str, Any]:
        corpora = [Corpus.from_id(corpus)] if corpus else list(Corpus)
        stats = self.search_service.get_all_stats(corpora)
        return {"success": True, "corpora": [s.model_dump(mode="json") for s in stats]}

    # =========================================================================
    # Registration
    # =========================================================================

    def _register_tools(self) -> None:
        server = self

        @self.app.tool()
        def search_knowledge(
            query: str,
            corpora: Optional[List[str]] = None,
            mode: str = "auto",
            limit: int = 5,
        ) -> Dict[str, Any]:
            """
            Search all indexed knowledge with automatic query routing.

            Args:
                query: Natural language question (e.g. "what drops from goblin", "how to craft torch")
                corpora: Subset of ["code", "gamedata", "client", "docs"] (default: all)
                mode: "auto" (router decides), "semantic" (vector only) or "structural" (graph)
                limit: Number of results (default 5, max 20)
            """
            return server.search_knowledge(query, corpora, mode, limit)

        @self.app.tool()
        def search_corpus(
            query: str,
            corpus: str,
            data_type: Optional[str] = None,
            limit: int = 5,
            expand: bool = False,
        ) -> Dict[str, Any]:
            """
            Semantic search in a single corpus.

            Args:
                query: Natural language query
                corpus: One of "code", "gamedata", "client", "docs"
                data_type: Filter by data type (e.g. item, recipe, npc, drop, shop)
                limit: Number of results (default 5, max 20)
                expand: Follow bridge edges to related code, game data, UI and docs
            """
            return server.search_corpus(query, corpus, data_type, limit, expand)

        @self.app.tool()
        def corpus_stats(corpus: Optional[str] = None) -> Dict[str, Any]:
            """
            Statistics for one corpus or all of them.

            Args:
                corpus: One of "code", "gamedata", "client", "docs" (default: all)
            """
            return server.corpus_stats(corpus)

    def run(self) -> None:
        """Start the MCP server on stdio."""
        def signal_handler(signum, frame):
            sig_name = signal.Signals(signum).name
            logger.warning("Received %s, shutting down...", sig_name)
            sys.exit(0)

        signal.signal(signal.SIGINT, signal_handler)
        signal.signal(signal.SIGTERM, signal_handler)

        try:
            logger.info("Knowledge index MCP server starting on stdio")
            self.app.run()
        except KeyboardInterrupt:
            logger.warning("Keyboard interrupt received, shutting down...")
        finally:
            self.search_service.close()
            logger.info("Server shutdown complete")


def create_server(project_root: Optional[Path] = None) -> KnowledgeServer:
    config = load_config(project_root)
    index_dir = Path(config["index_path"])
    store = GraphStore(index_dir / GraphStore.DEFAULT_DB_NAME)
    service = KnowledgeSearchService(store, CorpusIndexManager(index_dir), config)
    return KnowledgeServer(service)


def main() -> None:
    create_server().run()
