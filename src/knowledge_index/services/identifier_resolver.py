"""
Identifier Resolver

Resolves the loose identifiers found in game data ("Wood_Stick", "Goblin")
to node ids. Game data nodes use the filename stem as display name, so the
stem is the join key.

The lookup is built once per edge-building phase from current graph store
state and passed explicitly to the extractors; it is never mutated afterwards.
"""

from dataclasses import dataclass
from types import MappingProxyType
from typing import Any, Dict, Iterable, List, Mapping, Optional, Sequence, Tuple

from .corpus import Corpus, EdgeType
from .graph_store import EdgeRow, GraphStore

VIRTUAL_PREFIX = "virtual:"


def virtual_id(kind: str, identifier: str) -> str:
    return f"{VIRTUAL_PREFIX}{kind}:{identifier}"


def is_virtual(node_id: str) -> bool:
    return node_id.startswith(VIRTUAL_PREFIX)


@dataclass(frozen=True)
class StemLookup:
    """
    Immutable lowercase-stem -> node ids mapping.

    ::: This is-in-layer Domain-Layer.
    ::: This is a value-object.
    ::: This is stateless.
    """
    entries: Mapping[str, Tuple[str, ...]]

    @classmethod
    def from_pairs(cls, pairs: Iterable[Tuple[str, str]]) -> "StemLookup":
        """Build from (node_id, display_name) pairs."""
        collected: Dict[str, List[str]] = {}
        for node_id, name in pairs:
            if not name:
                continue
            ids = collected.setdefault(name.lower(), [])
            if node_id not in ids:
                ids.append(node_id)
        return cls(MappingProxyType({k: tuple(v) for k, v in collected.items()}))

    def get(self, stem: str) -> Tuple[str, ...]:
        return self.entries.get(stem.lower(), ())

    def __contains__(self, stem: str) -> bool:
        return stem.lower() in self.entries

    def __len__(self) -> int:
        return len(self.entries)


def build_stem_lookup(store: GraphStore, corpora: Sequence[Corpus] = (Corpus.GAMEDATA,)) -> StemLookup:
    """Snapshot display names of the given corpora into a lookup."""
    return StemLookup.from_pairs(store.display_names(corpora))


class IdentifierResolver:
    """
    Turns identifiers into edges.

    ::: This is-in-layer Domain-Layer.
    ::: This is a resolver.
    ::: This is stateless.
    """

    def __init__(self, lookup: StemLookup):
        self._lookup = lookup

    @property
    def lookup(self) -> StemLookup:
        return self._lookup

    def resolve_stem(
        self,
        stem: Optional[str],
        source_id: str,
        edge_type: EdgeType,
        metadata: Optional[Dict[str, Any]] = None,
    ) -> List[EdgeRow]:
        """
        Resolve ``stem`` case-insensitively to edges from ``source_id``.

        A miss returns an empty list. When the stem matches more than one
        node, every produced edge carries ``multi_match: True``. Matches equal
        to ``source_id`` are dropped.
        """
        if not stem or not stem.strip():
            return []
        matches = self._lookup.get(stem.strip())
        if not matches:
            return []

        edge_metadata = dict(metadata or {})
        if len(matches) > 1:
            edge_metadata["multi_match"] = True

        return [
            EdgeRow(
                source_id=source_id,
                target_id=target_id,
                edge_type=edge_type,
                metadata=dict(edge_metadata),
            )
            for target_id in matches
            if target_id != source_id
        ]

    @staticmethod
    def virtual(
        kind: str,
        identifier: Optional[str],
        source_id: str,
        edge_type: EdgeType,
        metadata: Optional[Dict[str, Any]] = None,
    ) -> List[EdgeRow]:
        """Edge to a virtual reference; never resolved against nodes."""
        if not identifier or not identifier.strip():
            return []
        return [EdgeRow(
            source_id=source_id,
            target_id=virtual_id(kind, identifier.strip()),
            edge_type=edge_type,
            metadata=dict(metadata or {}),
            target_resolved=False,
        )]

    def resolve_anchor(
        self,
        name: str,
        store: GraphStore,
        preferred_types: Sequence[str] = (),
    ) -> Optional[str]:
        """
        Resolve a query anchor ("goblin") to a single node id.

        ``preferred_types`` is in priority order: a match of an earlier type
        wins over any match of a later one. Falls back to the first match in
        id order.
        """
        matches = self._lookup.get(name)
        if not matches:
            return None
        if preferred_types:
            types = {}
            for node_id in matches:
                node = store.get_node(node_id)
                types[node_id] = node.get("data_type") if node else None
            for data_type in preferred_types:
                for node_id in matches:
                    if types[node_id] == data_type:
                        return node_id
        return matches[0]
