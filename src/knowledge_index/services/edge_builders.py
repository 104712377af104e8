"""
Per-corpus edge builders.

Each builder reads the corpus's current nodes back from the graph store,
runs the pure extractors over them and writes the result in one
transaction. Reading from the store rather than from the pass's parsed
chunks lets an interrupted pass resume its edge phase later.

Ownership:
- code rebuilds its owned edges for the files that changed (all files on resume)
- gamedata rebuilds all of its owned edge types, and upserts the IMPLEMENTED_BY
  bridge, which is only ever deleted per owning file
- client and docs rebuild their single bridge type wholesale, so bindings to
  game data or code indexed after them are picked up on the next pass
"""

from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Dict, List, Optional, Sequence

from ..knowledge_exceptions import ChunkParseError
from ..logging_config import configure_logger_for_debug_trace
from .code_edges import (
    CLASS_NODE_TYPE,
    METHOD_NODE_TYPE,
    ClassIndex,
    class_nodes_for,
    extract_class_edges,
    extract_method_edges,
)
from .corpus import OWNED_EDGE_TYPES, Corpus, EdgeType
from .docs_references import build_name_lookup, extract_docs_references
from .gamedata_edges import extract_gamedata_edges, extract_related_edges
from .graph_store import EdgeRow, GraphStore, load_metadata
from .identifier_resolver import IdentifierResolver, StemLookup, build_stem_lookup
from .records import Record
from .system_class_mapping import SYSTEM_MAP
from .ui_bindings import UI_NODE_TYPE, UIContentAnalyzer, extract_ui_bindings

logger = configure_logger_for_debug_trace(__name__)


@dataclass
class EdgeBuildReport:
    nodes_examined: int = 0
    edges_written: int = 0
    nodes_written: int = 0
    skipped_records: int = 0


def _stamp(edges: Sequence[EdgeRow], owning_file: Optional[str]) -> List[EdgeRow]:
    """Give edges produced by the resolver the owning file of their source node."""
    return [
        edge if edge.owning_file == owning_file else EdgeRow(
            source_id=edge.source_id,
            target_id=edge.target_id,
            edge_type=edge.edge_type,
            metadata=edge.metadata,
            target_resolved=edge.target_resolved,
            owning_file=owning_file,
        )
        for edge in edges
    ]


class EdgeBuilder(ABC):
    """
    Builds one corpus's edges from stored nodes.

    ::: This is-in-layer Service-Layer.
    ::: This is a builder.
    ::: This is stateless.
    """

    corpus: Corpus

    @abstractmethod
    def build(self, store: GraphStore, scope_files: Optional[Sequence[str]] = None) -> EdgeBuildReport:
        """
        Args:
            store: Graph store holding the corpus's committed nodes
            scope_files: Files whose edges must be rebuilt; None means all
        """


class CodeEdgeBuilder(EdgeBuilder):
    corpus = Corpus.CODE

    def build(self, store: GraphStore, scope_files: Optional[Sequence[str]] = None) -> EdgeBuildReport:
        report = EdgeBuildReport()
        if scope_files is None:
            methods = store.nodes_for_corpus(Corpus.CODE)
        else:
            methods = store.nodes_for_files(Corpus.CODE, scope_files)
        methods = [m for m in methods if m["node_type"] != CLASS_NODE_TYPE]
        report.nodes_examined = len(methods)

        class_nodes = class_nodes_for(methods)
        new_ids = {node.id for node in class_nodes}
        fqcns = [node.id.split(":", 1)[1] for node in class_nodes]
        fqcns += [
            row["id"].split(":", 1)[1]
            for row in store.nodes_for_corpus(Corpus.CODE, CLASS_NODE_TYPE)
            if row["id"] not in new_ids
        ]
        classes = ClassIndex.from_fqcns(fqcns)

        method_names = StemLookup.from_pairs(
            (row["id"], row["display_name"])
            for row in store.nodes_for_corpus(Corpus.CODE, METHOD_NODE_TYPE)
        )
        calls = IdentifierResolver(method_names)

        edges: List[EdgeRow] = []
        for class_node in class_nodes:
            edges += extract_class_edges(class_node, classes)
        for method in methods:
            edges += extract_method_edges(method, calls)

        with store.transaction():
            owned = OWNED_EDGE_TYPES[Corpus.CODE]
            if scope_files is None:
                store.scoped_delete(Corpus.CODE, owned)
            elif scope_files:
                store.scoped_delete(Corpus.CODE, owned, owning_files=scope_files)
            report.nodes_written = store.upsert_nodes(class_nodes)
            report.edges_written = store.upsert_edges(edges, Corpus.CODE)
        return report


class GamedataEdgeBuilder(EdgeBuilder):
    corpus = Corpus.GAMEDATA

    def build(self, store: GraphStore, scope_files: Optional[Sequence[str]] = None) -> EdgeBuildReport:
        report = EdgeBuildReport()
        resolver = IdentifierResolver(build_stem_lookup(store, (Corpus.GAMEDATA,)))
        nodes = store.nodes_for_corpus(Corpus.GAMEDATA)
        report.nodes_examined = len(nodes)

        owned: List[EdgeRow] = []
        for node in nodes:
            try:
                record = Record.parse(node.get("content") or "", node["owning_file"])
            except ChunkParseError as e:
                logger.debug(f"Skipping edges of {node['id']}: {e}")
                report.skipped_records += 1
                continue
            metadata = load_metadata(node.get("metadata"))
            edges = extract_gamedata_edges(node.get("data_type") or "", record, resolver, node["id"])
            edges += extract_related_edges(metadata.get("related_ids") or [], resolver, node["id"])
            owned += _stamp(edges, node["owning_file"])

        bridges = self._implemented_by(store, nodes)

        with store.transaction():
            store.scoped_delete(Corpus.GAMEDATA, OWNED_EDGE_TYPES[Corpus.GAMEDATA])
            report.edges_written = store.upsert_edges(owned, Corpus.GAMEDATA)
            report.edges_written += store.upsert_edges(bridges, Corpus.GAMEDATA)
        return report

    @staticmethod
    def _implemented_by(store: GraphStore, nodes: Sequence[Dict]) -> List[EdgeRow]:
        class_ids: Dict[str, List[str]] = {}

        def classes_named(name: str) -> List[str]:
            if name not in class_ids:
                class_ids[name] = [
                    row["id"]
                    for row in store.find_nodes_by_display_name(name, Corpus.CODE, CLASS_NODE_TYPE)
                    if row["display_name"] == name
                ]
            return class_ids[name]

        edges = []
        for node in nodes:
            info = SYSTEM_MAP.get(node.get("data_type") or "")
            if info is None:
                continue
            for class_name in info.classes:
                for class_id in classes_named(class_name):
                    edges.append(EdgeRow(
                        source_id=node["id"],
                        target_id=class_id,
                        edge_type=EdgeType.IMPLEMENTED_BY,
                        metadata={"system": info.description},
                        owning_file=node["owning_file"],
                    ))
        return edges


class ClientEdgeBuilder(EdgeBuilder):
    corpus = Corpus.CLIENT

    def __init__(self, analyzer: Optional[UIContentAnalyzer] = None):
        self._analyzer = analyzer or UIContentAnalyzer()

    def build(self, store: GraphStore, scope_files: Optional[Sequence[str]] = None) -> EdgeBuildReport:
        report = EdgeBuildReport()
        gamedata = build_stem_lookup(store, (Corpus.GAMEDATA,))
        nodes = store.nodes_for_corpus(Corpus.CLIENT, UI_NODE_TYPE)
        report.nodes_examined = len(nodes)

        edges: List[EdgeRow] = []
        for node in nodes:
            edges += extract_ui_bindings(
                node["id"], node.get("content") or "", gamedata, node["owning_file"], self._analyzer
            )

        with store.transaction():
            store.scoped_delete(Corpus.CLIENT, OWNED_EDGE_TYPES[Corpus.CLIENT])
            report.edges_written = store.upsert_edges(edges, Corpus.CLIENT)
        return report


class DocsEdgeBuilder(EdgeBuilder):
    corpus = Corpus.DOCS

    def build(self, store: GraphStore, scope_files: Optional[Sequence[str]] = None) -> EdgeBuildReport:
        report = EdgeBuildReport()
        names = build_name_lookup(store.display_names((Corpus.CODE, Corpus.GAMEDATA)))
        nodes = store.nodes_for_corpus(Corpus.DOCS)
        report.nodes_examined = len(nodes)

        edges: List[EdgeRow] = []
        for node in nodes:
            edges += extract_docs_references(
                node["id"], node.get("content") or "", names, node["owning_file"]
            )

        with store.transaction():
            store.scoped_delete(Corpus.DOCS, OWNED_EDGE_TYPES[Corpus.DOCS])
            report.edges_written = store.upsert_edges(edges, Corpus.DOCS)
        return report


EDGE_BUILDERS = {
    Corpus.CODE: CodeEdgeBuilder,
    Corpus.GAMEDATA: GamedataEdgeBuilder,
    Corpus.CLIENT: ClientEdgeBuilder,
    Corpus.DOCS: DocsEdgeBuilder,
}


def edge_builder_for(corpus: Corpus) -> EdgeBuilder:
    return EDGE_BUILDERS[corpus]()
