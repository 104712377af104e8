"""
Knowledge Search Service

Read path over all corpora:

- ``search``: routed search (semantic, structural or hybrid with RRF)
- ``search_corpus``: vector search in one corpus with an optional data-type filter
- ``search_with_expansion``: per-corpus vector search, then one bridge-edge
  hop from strong seeds into the other enabled corpora
- ``get_corpus_stats``: node, edge and index statistics

Vector handles are snapshotted per query through the index manager, so a
concurrent rebuild never changes an in-flight query's index.
"""

import re
import time
from typing import Any, Dict, Iterable, List, Optional, Pattern, Sequence, Set, Tuple, Union

from ..knowledge_exceptions import KnowledgeIndexError, RebuildRequiredError
from ..logging_config import configure_logger_for_debug_trace, query_debug_logger as debug_log
from ..models import IndexStats, QueryStrategy, ResultSource, RouteResult, SearchMode, SearchResult
from .corpus import Corpus, EdgeType
from .graph_store import GraphStore
from .graph_traversal import LONG_SNIPPET, GraphTraversal, result_from_row
from .hybrid_scorer import merge_rrf
from .identifier_resolver import IdentifierResolver, StemLookup
from .query_router import QueryRouter
from .vector_index import CorpusIndexManager

logger = configure_logger_for_debug_trace(__name__)

EXPANSION_DISCOUNT = 0.4
MIN_EXPANSION_SEED_SCORE = 0.5
PER_SEED_EXPANSION_CAP = 3
MIN_EXPANSION_RESULT_SCORE = 0.35
GAMEDATA_UNINTENT_SCORE_FLOOR = 0.70

# Over-fetch factor when a data-type filter will discard hits
FILTERED_FETCH_FACTOR = 5

_I = re.IGNORECASE

GAMEDATA_INTENT_RULES: List[Tuple[Pattern, Set[str]]] = [
    (re.compile(r"\b(craft|recipe|crafting|bench|smelt|cook|brew)s?\b", _I), {"recipe", "item"}),
    (re.compile(r"\b(drop|loot)s?\s+from\b", _I), {"drop", "npc"}),
    (re.compile(r"\b(npc|mob|creature|enem(?:y|ies)|trork|kweebec|feran)s?\b", _I), {"npc", "npc_group"}),
    (re.compile(r"\b(block|ore|stone|wood|plank)s?\b", _I), {"block"}),
    (re.compile(r"\b(farm|farming|crop|grow|plant|seed|harvest)s?\b", _I), {"farming", "item"}),
    (re.compile(r"\b(shop|merchant|vendor|buy|sell|trade)s?\b", _I), {"shop"}),
    (re.compile(r"\b(biome|zone|climate)s?\b", _I), {"biome"}),
    (re.compile(r"\b(weather|rain|snow|storm)s?\b", _I), {"weather"}),
    (re.compile(r"\b(objective|quest|mission|task|bount(?:y|ies))s?\b", _I), {"objective"}),
]

# Relations answered by a game-data specific traversal, with the anchor's preferred data types
GAMEDATA_RELATIONS: Dict[str, Tuple[str, ...]] = {
    EdgeType.REQUIRES_ITEM.value: ("item", "recipe"),
    EdgeType.DROPS_ON_DEATH.value: ("npc", "drop"),
    EdgeType.OFFERED_IN_SHOP.value: ("item",),
    EdgeType.HAS_MEMBER.value: ("npc_group",),
    EdgeType.UI_BINDS_TO.value: (),
}


def detect_gamedata_intent(query: str) -> Optional[Set[str]]:
    """Data types the query is likely about, or None when it shows no intent."""
    matched: Set[str] = set()
    for pattern, data_types in GAMEDATA_INTENT_RULES:
        if pattern.search(query):
            matched |= data_types
    return matched or None


def deduplicate_results(results: Iterable[SearchResult]) -> List[SearchResult]:
    """
    Keep the best-scoring result per node, in first-seen order.

    Bridge annotations missing on the winner are taken from the loser.
    """
    best: Dict[str, SearchResult] = {}
    for result in results:
        existing = best.get(result.node_id)
        if existing is None:
            best[result.node_id] = result
            continue
        winner, loser = (result, existing) if result.score > existing.score else (existing, result)
        best[result.node_id] = winner.with_updates(
            bridged_from=winner.bridged_from or loser.bridged_from,
            bridge_edge_type=winner.bridge_edge_type or loser.bridge_edge_type,
            connected_node_ids=winner.connected_node_ids or loser.connected_node_ids,
        )
    return list(best.values())


def _seed_label(display_name: str) -> str:
    return display_name.rsplit("#", 1)[-1].rsplit(".", 1)[-1]


class KnowledgeSearchService:
    """
    Hybrid retrieval over the graph store and per-corpus vector indices.

    ::: This is-in-layer Service-Layer.
    ::: This is a facade.
    ::: This is stateless.

    Usage:
        service = KnowledgeSearchService(store, CorpusIndexManager(index_dir))
        results = service.search("what drops from goblin")
    """

    def __init__(
        self,
        store: GraphStore,
        index_manager: CorpusIndexManager,
        config: Optional[Dict[str, Any]] = None,
    ):
        config = config or {}
        self._store = store
        self._index_manager = index_manager
        self._router = QueryRouter(store)
        self._traversal = GraphTraversal(store)
        self._default_limit = int(config.get("results_per_corpus", 10))
        self._expansion_limit = int(config.get("max_related_connections", 5))

    @property
    def router(self) -> QueryRouter:
        return self._router

    @property
    def traversal(self) -> GraphTraversal:
        return self._traversal

    # =========================================================================
    # Routed search
    # =========================================================================

    def search(
        self,
        text: str,
        corpora: Optional[Sequence[Corpus]] = None,
        mode: Union[SearchMode, str] = SearchMode.AUTO,
        limit: Optional[int] = None,
    ) -> List[SearchResult]:
        """
        Search the given corpora (default: all).

        Args:
            text: Natural language query
            corpora: Corpora to search
            mode: auto (router decides), semantic or structural
            limit: Maximum number of results

        Raises:
            RebuildRequiredError: if a single requested corpus needs a rebuild
        """
        mode = SearchMode(mode)
        corpora = list(corpora) if corpora else list(Corpus)
        limit = limit or self._default_limit
        start = time.time()

        route = self._router.route(text)
        if mode == SearchMode.SEMANTIC:
            results = self.semantic_search(text, corpora, limit)
        elif mode == SearchMode.STRUCTURAL or route.strategy == QueryStrategy.GRAPH:
            results = self.structural_search(route, corpora, limit)
            if results is None:
                debug_log.debug(f"structural fallback to semantic for {text!r}")
                results = self.semantic_search(text, corpora, limit)
        elif route.strategy == QueryStrategy.HYBRID:
            results = self.hybrid_search(text, route, corpora, limit)
        else:
            results = self.semantic_search(text, corpora, limit)

        debug_log.debug(
            f"search({text!r}, mode={mode.value}) strategy={route.strategy.value} "
            f"results={len(results)} in {int((time.time() - start) * 1000)}ms"
        )
        return results

    def hybrid_search(
        self,
        text: str,
        route: RouteResult,
        corpora: Sequence[Corpus],
        limit: int,
    ) -> List[SearchResult]:
        vector_results = self.semantic_search(text, corpora, limit)
        graph_results = self.structural_search(route, corpora, limit)
        if not graph_results:
            return vector_results
        return merge_rrf(vector_results, graph_results, limit=limit)

    def structural_search(
        self,
        route: RouteResult,
        corpora: Sequence[Corpus],
        limit: int,
    ) -> Optional[List[SearchResult]]:
        """
        Traverse from the route's anchor.

        Returns None when there is nothing to traverse from: no pattern, or
        an anchor that resolves to no node.
        """
        name, relation = route.entity_name, route.relation
        if not name:
            return None

        if relation is None:
            results = self._traversal.find_by_name(name, limit)
            return self._in_corpora(results, corpora) or None

        if relation in GAMEDATA_RELATIONS:
            anchor_id = self.resolve_gamedata_anchor(name, GAMEDATA_RELATIONS[relation])
            if anchor_id is not None:
                results = self._gamedata_traversal(anchor_id, relation, limit)
                return self._in_corpora(results, corpora)
            if relation != EdgeType.REQUIRES_ITEM.value:
                return None

        if not self._router.entity_exists(name):
            return None
        results = self._traversal.find_by_relation(name, relation, limit)
        return self._in_corpora(results, corpora)

    def resolve_gamedata_anchor(self, name: str, preferred_types: Sequence[str] = ()) -> Optional[str]:
        """Resolve an anchor name to a game data node by filename stem."""
        candidates = self._store.find_nodes_by_display_name(name, Corpus.GAMEDATA)
        lookup = StemLookup.from_pairs((row["id"], row["display_name"]) for row in candidates)
        return IdentifierResolver(lookup).resolve_anchor(name, self._store, preferred_types)

    def _gamedata_traversal(self, anchor_id: str, relation: str, limit: int) -> List[SearchResult]:
        if relation == EdgeType.REQUIRES_ITEM.value:
            return self._traversal.find_recipe_inputs(anchor_id, limit)
        if relation == EdgeType.DROPS_ON_DEATH.value:
            return self._traversal.find_drops_from(anchor_id, limit)
        if relation == EdgeType.OFFERED_IN_SHOP.value:
            return self._traversal.find_shops_selling_item(anchor_id, limit)
        if relation == EdgeType.HAS_MEMBER.value:
            return self._traversal.find_group_members(anchor_id, limit)
        return self._traversal.find_ui_for_gamedata(anchor_id, limit)

    @staticmethod
    def _in_corpora(results: List[SearchResult], corpora: Sequence[Corpus]) -> List[SearchResult]:
        allowed = {c.value for c in corpora}
        return [r for r in results if r.corpus in allowed]

    # =========================================================================
    # Vector search
    # =========================================================================

    def semantic_search(
        self,
        text: str,
        corpora: Sequence[Corpus],
        limit: int,
    ) -> List[SearchResult]:
        """Top-K per corpus, merged by score."""
        results: List[SearchResult] = []
        for corpus in corpora:
            try:
                results += self.search_corpus(text, corpus, limit)
            except RebuildRequiredError as e:
                if len(corpora) == 1:
                    raise
                logger.warning(f"Skipping corpus '{corpus.value}': {e}")
        results.sort(key=lambda r: r.score, reverse=True)
        return results[:limit]

    def search_corpus(
        self,
        query: str,
        corpus: Corpus,
        limit: int = 10,
        data_types: Optional[Iterable[str]] = None,
    ) -> List[SearchResult]:
        """
        Vector search in one corpus.

        Args:
            query: Query text, embedded with the corpus's provider
            corpus: Corpus to search
            limit: Maximum number of results
            data_types: Keep only results whose data type (or node type) is listed

        Raises:
            RebuildRequiredError: if the corpus index does not match its provider
        """
        index = self._index_manager.get_index(corpus)
        if index is None or index.vector_count == 0:
            return []
        provider = self._index_manager.get_provider(corpus)

        filters = set(data_types) if data_types else None
        fetch = limit * FILTERED_FETCH_FACTOR if filters else limit
        hits = index.query(provider.embed_query(query), fetch)
        # Ordinals resolve through the handle that produced them
        node_ids = {ordinal: index.node_id(ordinal) for ordinal, _ in hits}
        rows = self._store.get_nodes([node_id for node_id in node_ids.values() if node_id])

        results = []
        for ordinal, score in hits:
            row = rows.get(node_ids[ordinal])
            if row is None:
                continue
            if filters and (row.get("data_type") or row.get("node_type")) not in filters:
                continue
            results.append(result_from_row(row, score, ResultSource.VECTOR, LONG_SNIPPET))
            if len(results) >= limit:
                break
        return results

    # =========================================================================
    # Graph-expanded search
    # =========================================================================

    def search_with_expansion(
        self,
        query: str,
        corpora: Optional[Sequence[Corpus]] = None,
        per_corpus: Optional[int] = None,
        expansion_limit: Optional[int] = None,
    ) -> List[SearchResult]:
        """
        Direct hits from every corpus plus discounted cross-corpus neighbours.

        Game data hits are narrowed to the query's intent types; without an
        intent only strong game data hits are kept.
        """
        corpora = list(corpora) if corpora else list(Corpus)
        per_corpus = per_corpus or self._default_limit
        expansion_limit = expansion_limit or self._expansion_limit
        intent = detect_gamedata_intent(query)

        direct: List[SearchResult] = []
        for corpus in corpora:
            try:
                type_filter = intent if corpus == Corpus.GAMEDATA else None
                results = self.search_corpus(query, corpus, per_corpus, type_filter)
            except KnowledgeIndexError as e:
                logger.warning(f"Search failed for corpus {corpus.value}: {e}")
                continue
            if corpus == Corpus.GAMEDATA and intent is None:
                results = [r for r in results if r.score >= GAMEDATA_UNINTENT_SCORE_FLOOR]
            direct += results

        expanded = [
            r for r in self._expand_cross_corpus(direct, corpora, expansion_limit)
            if r.score >= MIN_EXPANSION_RESULT_SCORE
        ]
        logger.info(f"Graph expansion: {len(direct)} direct -> {len(expanded)} expanded results")

        connections: Dict[str, List[str]] = {}
        for result in expanded:
            connections.setdefault(result.expanded_from_node_id, []).append(result.node_id)
        annotated = [
            r.with_updates(connected_node_ids=connections[r.node_id]) if r.node_id in connections else r
            for r in direct
        ]
        return deduplicate_results(annotated + expanded)

    def _expand_cross_corpus(
        self,
        seeds: Sequence[SearchResult],
        enabled: Sequence[Corpus],
        limit: int,
    ) -> List[SearchResult]:
        expanded: List[SearchResult] = []
        seen: Set[str] = set()

        for seed in seeds:
            if seed.node_id in seen:
                continue
            seen.add(seed.node_id)
            if seed.score < MIN_EXPANSION_SEED_SCORE:
                continue

            for edge_type, neighbours in self._neighbours_of(seed, enabled, limit):
                room = PER_SEED_EXPANSION_CAP - sum(
                    1 for r in expanded if r.expanded_from_node_id == seed.node_id
                )
                if room <= 0:
                    break
                fresh = [n for n in neighbours if n.node_id not in seen][:room]
                for neighbour in fresh:
                    seen.add(neighbour.node_id)
                    expanded.append(neighbour.with_updates(
                        score=seed.score * EXPANSION_DISCOUNT,
                        bridged_from=_seed_label(seed.display_name),
                        bridge_edge_type=edge_type.value,
                        expanded_from_node_id=seed.node_id,
                    ))

        if expanded:
            logger.info(f"Graph expansion found {len(expanded)} cross-corpus results from {len(seen)} seeds")
        return expanded

    def _neighbours_of(self, seed: SearchResult, enabled: Sequence[Corpus], limit: int):
        """(bridge edge type, neighbour results) in expansion priority order."""
        traversal = self._traversal
        if seed.corpus == Corpus.GAMEDATA.value:
            if Corpus.CODE in enabled:
                yield EdgeType.IMPLEMENTED_BY, traversal.find_implementing_code(seed.node_id, limit)
            if Corpus.CLIENT in enabled:
                yield EdgeType.UI_BINDS_TO, traversal.find_ui_for_gamedata(seed.node_id, limit)
        elif seed.corpus == Corpus.CODE.value:
            if Corpus.GAMEDATA in enabled:
                yield EdgeType.IMPLEMENTED_BY, traversal.find_gamedata_for_code(seed.node_id, limit)
        elif seed.corpus == Corpus.CLIENT.value:
            if Corpus.GAMEDATA in enabled:
                yield EdgeType.UI_BINDS_TO, traversal.find_ui_bindings(seed.node_id, limit)
        elif seed.corpus == Corpus.DOCS.value:
            targets = [c for c in enabled if c in (Corpus.CODE, Corpus.GAMEDATA)]
            yield EdgeType.DOCS_REFERENCES, traversal.find_docs_references(seed.node_id, limit, targets)

    # =========================================================================
    # Stats
    # =========================================================================

    def get_corpus_stats(self, corpus: Corpus) -> IndexStats:
        node_count = self._store.count("nodes", "corpus = ?", (corpus.value,))
        type_rows = self._store.fetch_all(
            "SELECT COALESCE(data_type, node_type) AS t, COUNT(*) AS n FROM nodes "
            "WHERE corpus = ? GROUP BY t ORDER BY t",
            (corpus.value,)
        )
        edge_breakdown = self._store.edge_counts(corpus)
        unresolved = self._store.count(
            "edges", "corpus = ? AND target_resolved = 0", (corpus.value,)
        )

        loaded = False
        rebuild = None
        try:
            index = self._index_manager.get_index(corpus)
            loaded = index is not None and index.is_loaded
        except RebuildRequiredError as e:
            rebuild = str(e)

        return IndexStats(
            corpus=corpus.value,
            node_count=node_count,
            type_breakdown={row["t"]: row["n"] for row in type_rows},
            edge_count=sum(edge_breakdown.values()),
            edge_breakdown=edge_breakdown,
            unresolved_edge_count=unresolved,
            error_count=len(self._store.get_errors(corpus)),
            vector_index_loaded=loaded,
            rebuild_required=rebuild,
        )

    def get_all_stats(self, corpora: Optional[Sequence[Corpus]] = None) -> List[IndexStats]:
        return [self.get_corpus_stats(c) for c in (corpora or list(Corpus))]

    def close(self) -> None:
        self._index_manager.close_all()
