"""
Graph Traversal

One- and two-hop edge queries used by structural search and cross-corpus
expansion. Every query returns ``SearchResult`` lists in traversal order,
which becomes their rank when fused with vector results.

Scores: 1.0 for a forward hop from the anchor, 0.9 for the reverse fallback.
"""

from typing import Any, Dict, Iterable, List, Optional, Sequence

from ..models import ResultSource, SearchResult
from .code_edges import CLASS_NODE_TYPE
from .corpus import Corpus, EdgeType
from .graph_store import GraphStore

SHORT_SNIPPET = 300
LONG_SNIPPET = 500

_N = "n.id, n.corpus, n.display_name, n.content, n.embedding_text, n.file_path, n.line_start, n.data_type"


def snippet_of(row: Dict[str, Any], length: int = SHORT_SNIPPET) -> str:
    """Code shows its source; other corpora show their embedding text."""
    if row.get("corpus") == Corpus.CODE.value:
        text = row.get("content") or row.get("embedding_text")
    else:
        text = row.get("embedding_text") or row.get("content")
    return (text or "")[:length]


def result_from_row(
    row: Dict[str, Any],
    score: float,
    source: ResultSource = ResultSource.GRAPH,
    snippet_length: int = SHORT_SNIPPET,
) -> SearchResult:
    return SearchResult(
        node_id=row["id"],
        display_name=row.get("display_name") or row["id"],
        snippet=snippet_of(row, snippet_length),
        file_path=row.get("file_path") or "",
        line_start=row.get("line_start"),
        score=score,
        source=source,
        data_type=row.get("data_type"),
        corpus=row.get("corpus") or Corpus.CODE.value,
    )


def _distinct(results: Iterable[SearchResult]) -> List[SearchResult]:
    seen = set()
    out = []
    for result in results:
        if result.node_id not in seen:
            seen.add(result.node_id)
            out.append(result)
    return out


class GraphTraversal:
    """
    Read-only edge queries over the graph store.

    ::: This is-in-layer Service-Layer.
    ::: This is a query-service.
    ::: This is stateless.
    """

    def __init__(self, store: GraphStore):
        self._store = store

    # =========================================================================
    # Generic
    # =========================================================================

    def _anchor_ids(self, name: str) -> List[str]:
        """Node ids an entity name may refer to: class ids and display-name matches."""
        rows = self._store.fetch_all(
            "SELECT id FROM nodes WHERE id = ? OR id LIKE ? "
            "OR display_name = ? COLLATE NOCASE OR display_name LIKE ? ORDER BY id",
            (f"class:{name}", f"class:%.{name}", name, f"%.{name}")
        )
        ids = [row["id"] for row in rows]
        # Unresolved supertypes point at class:Simple without a node
        dangling = f"class:{name}"
        if dangling not in ids:
            ids.append(dangling)
        return ids

    def find_by_relation(self, entity_name: str, relation: str, limit: int = 10) -> List[SearchResult]:
        """
        Nodes related to ``entity_name`` by ``relation``.

        Tries sources of edges pointing at the entity first ("what extends
        X"), then targets of edges leaving it ("methods of X").
        """
        anchors = self._anchor_ids(entity_name)
        marks = ", ".join("?" for _ in anchors)
        incoming = self._store.fetch_all(
            f"SELECT DISTINCT {_N} FROM edges e JOIN nodes n ON n.id = e.source_id "
            f"WHERE e.edge_type = ? AND e.target_id IN ({marks}) ORDER BY e.id LIMIT ?",
            [EdgeType(relation).value, *anchors, limit]
        )
        if incoming:
            return _distinct(result_from_row(row, 1.0) for row in incoming)

        outgoing = self._store.fetch_all(
            f"SELECT DISTINCT {_N} FROM edges e JOIN nodes n ON n.id = e.target_id "
            f"WHERE e.edge_type = ? AND e.source_id IN ({marks}) ORDER BY e.id LIMIT ?",
            [EdgeType(relation).value, *anchors, limit]
        )
        return _distinct(result_from_row(row, 0.9) for row in outgoing)

    def find_by_name(self, entity_name: str, limit: int = 10) -> List[SearchResult]:
        """Exact name first, then ``name#member`` nodes, then qualified ``pkg.name``."""
        rows = self._store.fetch_all(
            f"SELECT {_N} FROM nodes n "
            "WHERE n.display_name = ? OR n.display_name LIKE ? OR n.display_name LIKE ? "
            "ORDER BY CASE WHEN n.display_name = ? THEN 0 "
            "              WHEN n.display_name LIKE ? THEN 1 ELSE 2 END, n.id "
            "LIMIT ?",
            (entity_name, f"{entity_name}#%", f"%.{entity_name}", entity_name, f"{entity_name}#%", limit)
        )
        return [result_from_row(row, 1.0) for row in rows]

    # =========================================================================
    # Game data
    # =========================================================================

    def _hop(
        self,
        node_id: str,
        edge_type: EdgeType,
        forward: bool,
        corpus: Optional[Corpus],
        limit: int,
        score: float = 1.0,
        snippet_length: int = SHORT_SNIPPET,
        node_type: Optional[str] = None,
    ) -> List[SearchResult]:
        near, far = ("source_id", "target_id") if forward else ("target_id", "source_id")
        sql = (
            f"SELECT {_N} FROM edges e JOIN nodes n ON n.id = e.{far} "
            f"WHERE e.{near} = ? AND e.edge_type = ?"
        )
        params: List[Any] = [node_id, edge_type.value]
        if corpus is not None:
            sql += " AND n.corpus = ?"
            params.append(corpus.value)
        if node_type is not None:
            sql += " AND n.node_type = ?"
            params.append(node_type)
        rows = self._store.fetch_all(sql + " ORDER BY e.id LIMIT ?", [*params, limit])
        return _distinct(result_from_row(row, score, snippet_length=snippet_length) for row in rows)

    def find_recipe_inputs(self, item_node_id: str, limit: int = 10) -> List[SearchResult]:
        """Inputs the item requires, then (at 0.9) things that require the item."""
        forward = self._hop(item_node_id, EdgeType.REQUIRES_ITEM, True, Corpus.GAMEDATA, limit)
        reverse = self._hop(item_node_id, EdgeType.REQUIRES_ITEM, False, Corpus.GAMEDATA, limit, score=0.9)
        return _distinct(forward + reverse)

    def find_drops_from(self, entity_node_id: str, limit: int = 10) -> List[SearchResult]:
        """Items dropped by an NPC: DROPS_ON_DEATH to its drop tables, then DROPS_ITEM."""
        rows = self._store.fetch_all(
            f"SELECT {_N} FROM edges e1 "
            "JOIN edges e2 ON e2.source_id = e1.target_id AND e2.edge_type = ? "
            "JOIN nodes n ON n.id = e2.target_id "
            "WHERE e1.source_id = ? AND e1.edge_type = ? AND n.corpus = ? "
            "ORDER BY e1.id, e2.id LIMIT ?",
            (EdgeType.DROPS_ITEM.value, entity_node_id, EdgeType.DROPS_ON_DEATH.value,
             Corpus.GAMEDATA.value, limit)
        )
        results = _distinct(result_from_row(row, 1.0) for row in rows)
        if results:
            return results
        # The anchor may be the drop table itself
        return self._hop(entity_node_id, EdgeType.DROPS_ITEM, True, Corpus.GAMEDATA, limit)

    def find_shops_selling_item(self, item_node_id: str, limit: int = 10) -> List[SearchResult]:
        return self._hop(item_node_id, EdgeType.OFFERED_IN_SHOP, False, Corpus.GAMEDATA, limit)

    def find_group_members(self, group_node_id: str, limit: int = 10) -> List[SearchResult]:
        return self._hop(group_node_id, EdgeType.HAS_MEMBER, True, Corpus.GAMEDATA, limit)

    # =========================================================================
    # Cross-corpus bridges
    # =========================================================================

    def find_implementing_code(self, gamedata_node_id: str, limit: int = 10) -> List[SearchResult]:
        return self._hop(
            gamedata_node_id, EdgeType.IMPLEMENTED_BY, True, Corpus.CODE, limit,
            node_type=CLASS_NODE_TYPE
        )

    def find_gamedata_for_code(self, code_node_id: str, limit: int = 5) -> List[SearchResult]:
        """Game data implemented by a class, or by the class of a method."""
        ids = [code_node_id]
        owner = self._store.fetch_one(
            "SELECT source_id FROM edges WHERE target_id = ? AND edge_type = ? LIMIT 1",
            (code_node_id, EdgeType.CONTAINS.value)
        )
        if owner:
            ids.append(owner["source_id"])
        results: List[SearchResult] = []
        for node_id in ids:
            results += self._hop(
                node_id, EdgeType.IMPLEMENTED_BY, False, Corpus.GAMEDATA, limit,
                snippet_length=LONG_SNIPPET
            )
        return _distinct(results)[:limit]

    def find_ui_for_gamedata(self, gamedata_node_id: str, limit: int = 5) -> List[SearchResult]:
        return self._hop(
            gamedata_node_id, EdgeType.UI_BINDS_TO, False, Corpus.CLIENT, limit,
            snippet_length=LONG_SNIPPET
        )

    def find_ui_bindings(self, client_node_id: str, limit: int = 10) -> List[SearchResult]:
        return self._hop(
            client_node_id, EdgeType.UI_BINDS_TO, True, Corpus.GAMEDATA, limit,
            snippet_length=LONG_SNIPPET
        )

    def find_docs_references(
        self,
        docs_node_id: str,
        limit: int = 10,
        corpora: Optional[Sequence[Corpus]] = None,
    ) -> List[SearchResult]:
        results = self._hop(docs_node_id, EdgeType.DOCS_REFERENCES, True, None, limit)
        if corpora is None:
            return results
        allowed = {c.value for c in corpora}
        return [r for r in results if r.corpus in allowed]
