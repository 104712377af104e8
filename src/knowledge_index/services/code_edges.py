"""
Code structure edges.

Method chunks arrive from an external source extractor with their structure
in metadata::

    {"class": "com.example.server.Item", "package": "com.example.server",
     "extends": "Asset", "implements": ["Named"], "calls": ["Registry.register"]}

From that, this module synthesizes ``JavaClass`` nodes and CONTAINS, EXTENDS,
IMPLEMENTS and CALLS edges. Supertypes named by simple name are resolved to a
known fully qualified class; when that is not possible yet the edge targets
``class:SimpleName`` with ``target_resolved=False`` and the healing sweep
retargets it once the class is indexed.
"""

from dataclasses import dataclass
from typing import Any, Dict, Iterable, List, Optional, Sequence, Tuple

from .corpus import Corpus, EdgeType
from .graph_store import EdgeRow, NodeRow, load_metadata
from .identifier_resolver import IdentifierResolver

CLASS_NODE_TYPE = "JavaClass"
METHOD_NODE_TYPE = "JavaMethod"


def class_node_id(fqcn: str) -> str:
    return f"class:{fqcn}"


def simple_name(fqcn: str) -> str:
    return fqcn.rsplit(".", 1)[-1]


def package_of(fqcn: str) -> str:
    return fqcn.rsplit(".", 1)[0] if "." in fqcn else ""


def _as_list(value: Any) -> List[str]:
    if isinstance(value, str):
        return [value] if value.strip() else []
    if isinstance(value, list):
        return [v for v in value if isinstance(v, str) and v.strip()]
    return []


@dataclass(frozen=True)
class ClassIndex:
    """Known classes: simple name -> fully qualified names."""
    by_simple: Dict[str, Tuple[str, ...]]
    known: frozenset

    @classmethod
    def from_fqcns(cls, fqcns: Iterable[str]) -> "ClassIndex":
        by_simple: Dict[str, List[str]] = {}
        known = set()
        for fqcn in fqcns:
            known.add(fqcn)
            by_simple.setdefault(simple_name(fqcn), []).append(fqcn)
        return cls({k: tuple(sorted(v)) for k, v in by_simple.items()}, frozenset(known))

    def resolve(self, name: str, package: str = "") -> Tuple[str, bool]:
        """
        Resolve a supertype reference to (target node id, resolved).

        A dotted name is taken as fully qualified. A simple name resolves to
        the class in the same package, else to the only class with that name.
        """
        if "." in name:
            return class_node_id(name), name in self.known
        candidates = self.by_simple.get(name, ())
        same_package = f"{package}.{name}" if package else name
        if same_package in candidates:
            return class_node_id(same_package), True
        if len(candidates) == 1:
            return class_node_id(candidates[0]), True
        return class_node_id(name), False


def class_nodes_for(method_nodes: Sequence[Dict[str, Any]]) -> List[NodeRow]:
    """Synthesize one JavaClass node per class referenced by method nodes."""
    classes: Dict[str, NodeRow] = {}
    for node in method_nodes:
        if node["node_type"] == CLASS_NODE_TYPE:
            continue
        metadata = load_metadata(node.get("metadata"))
        fqcn = metadata.get("class")
        if not isinstance(fqcn, str) or not fqcn or fqcn in classes:
            continue
        classes[fqcn] = NodeRow(
            id=class_node_id(fqcn),
            corpus=Corpus.CODE,
            node_type=CLASS_NODE_TYPE,
            display_name=simple_name(fqcn),
            owning_file=node["owning_file"],
            file_path=node.get("file_path"),
            metadata={
                "package": metadata.get("package") or package_of(fqcn),
                "extends": metadata.get("extends"),
                "implements": _as_list(metadata.get("implements")),
            },
        )
    return list(classes.values())


def extract_class_edges(class_node: NodeRow, classes: ClassIndex) -> List[EdgeRow]:
    """EXTENDS / IMPLEMENTS edges of one class."""
    package = class_node.metadata.get("package", "")
    edges = []
    relations = [(EdgeType.EXTENDS, n) for n in _as_list(class_node.metadata.get("extends"))]
    relations += [(EdgeType.IMPLEMENTS, n) for n in _as_list(class_node.metadata.get("implements"))]
    for edge_type, name in relations:
        target_id, resolved = classes.resolve(name, package)
        edges.append(EdgeRow(
            source_id=class_node.id,
            target_id=target_id,
            edge_type=edge_type,
            target_resolved=resolved,
            owning_file=class_node.owning_file,
        ))
    return edges


def extract_method_edges(method_node: Dict[str, Any], calls: IdentifierResolver) -> List[EdgeRow]:
    """CONTAINS from the owning class and CALLS to resolvable methods."""
    metadata = load_metadata(method_node.get("metadata"))
    owning_file = method_node["owning_file"]
    edges: List[EdgeRow] = []

    fqcn = metadata.get("class")
    if isinstance(fqcn, str) and fqcn:
        edges.append(EdgeRow(
            source_id=class_node_id(fqcn),
            target_id=method_node["id"],
            edge_type=EdgeType.CONTAINS,
            owning_file=owning_file,
        ))

    for call in _as_list(metadata.get("calls")):
        for edge in calls.resolve_stem(call, method_node["id"], EdgeType.CALLS):
            edges.append(EdgeRow(
                source_id=edge.source_id,
                target_id=edge.target_id,
                edge_type=edge.edge_type,
                metadata=edge.metadata,
                owning_file=owning_file,
            ))
    return edges
