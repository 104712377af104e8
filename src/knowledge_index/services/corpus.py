"""
Corpus Model

The four independently indexed corpora, the closed set of edge types, which
corpus owns which edge types, and the declared indexing dependencies between
corpora.
"""

from enum import Enum
from typing import Dict, FrozenSet, Iterable, List, Tuple

from ..knowledge_exceptions import CorpusOrderError


class EmbeddingPurpose(str, Enum):
    """Which embedding model family a corpus is vectorized with."""
    CODE = "code"
    TEXT = "text"


class Corpus(str, Enum):
    """
    An independently indexed knowledge source.

    ::: This is-in-layer Domain-Layer.
    ::: This is a value-object.
    ::: This is stateless.
    """
    CODE = "code"
    GAMEDATA = "gamedata"
    CLIENT = "client"
    DOCS = "docs"

    @property
    def display_name(self) -> str:
        return _DISPLAY_NAMES[self]

    @property
    def embedding_purpose(self) -> EmbeddingPurpose:
        return EmbeddingPurpose.CODE if self is Corpus.CODE else EmbeddingPurpose.TEXT

    @property
    def index_filename(self) -> str:
        return f"{self.value}.faiss"

    @classmethod
    def from_id(cls, value: str) -> "Corpus":
        try:
            return cls(value.lower())
        except ValueError:
            raise ValueError(
                f"Unknown corpus '{value}'. Expected one of: {', '.join(c.value for c in cls)}"
            ) from None


_DISPLAY_NAMES = {
    Corpus.CODE: "Server Code",
    Corpus.GAMEDATA: "Game Data",
    Corpus.CLIENT: "Client UI",
    Corpus.DOCS: "Modding Docs",
}


class EdgeType(str, Enum):
    """Closed set of directed edge types."""
    # Code structure
    CONTAINS = "CONTAINS"
    EXTENDS = "EXTENDS"
    IMPLEMENTS = "IMPLEMENTS"
    CALLS = "CALLS"
    # Game data relationships
    RELATES_TO = "RELATES_TO"
    REQUIRES_ITEM = "REQUIRES_ITEM"
    PRODUCES_ITEM = "PRODUCES_ITEM"
    DROPS_ITEM = "DROPS_ITEM"
    DROPS_ON_DEATH = "DROPS_ON_DEATH"
    OFFERED_IN_SHOP = "OFFERED_IN_SHOP"
    HAS_MEMBER = "HAS_MEMBER"
    BELONGS_TO_GROUP = "BELONGS_TO_GROUP"
    REQUIRES_BENCH = "REQUIRES_BENCH"
    TARGETS_GROUP = "TARGETS_GROUP"
    SPAWNS_PARTICLE = "SPAWNS_PARTICLE"
    APPLIES_EFFECT = "APPLIES_EFFECT"
    REFERENCES_WORLDGEN = "REFERENCES_WORLDGEN"
    # Cross-corpus bridges
    IMPLEMENTED_BY = "IMPLEMENTED_BY"
    UI_BINDS_TO = "UI_BINDS_TO"
    DOCS_REFERENCES = "DOCS_REFERENCES"


# Edge types each corpus's extractor writes and may wholesale replace.
OWNED_EDGE_TYPES: Dict[Corpus, FrozenSet[EdgeType]] = {
    Corpus.CODE: frozenset({
        EdgeType.CONTAINS, EdgeType.EXTENDS, EdgeType.IMPLEMENTS, EdgeType.CALLS,
    }),
    Corpus.GAMEDATA: frozenset({
        EdgeType.RELATES_TO, EdgeType.REQUIRES_ITEM, EdgeType.PRODUCES_ITEM,
        EdgeType.DROPS_ITEM, EdgeType.DROPS_ON_DEATH, EdgeType.OFFERED_IN_SHOP,
        EdgeType.HAS_MEMBER, EdgeType.BELONGS_TO_GROUP, EdgeType.REQUIRES_BENCH,
        EdgeType.TARGETS_GROUP, EdgeType.SPAWNS_PARTICLE, EdgeType.APPLIES_EFFECT,
        EdgeType.REFERENCES_WORLDGEN,
    }),
    Corpus.CLIENT: frozenset({EdgeType.UI_BINDS_TO}),
    Corpus.DOCS: frozenset({EdgeType.DOCS_REFERENCES}),
}

# Cross-corpus edge types a corpus writes but removes only per owning file,
# so a re-index never drops bridges of files that did not change.
BRIDGE_EDGE_TYPES: Dict[Corpus, FrozenSet[EdgeType]] = {
    Corpus.CODE: frozenset(),
    Corpus.GAMEDATA: frozenset({EdgeType.IMPLEMENTED_BY}),
    Corpus.CLIENT: frozenset(),
    Corpus.DOCS: frozenset(),
}


def deletable_edge_types(corpus: Corpus) -> FrozenSet[EdgeType]:
    """Every edge type a scoped delete issued by this corpus may touch."""
    return OWNED_EDGE_TYPES[corpus] | BRIDGE_EDGE_TYPES[corpus]


# corpus -> corpora whose nodes must exist before its edges can resolve
CORPUS_DEPENDENCIES: Dict[Corpus, Tuple[Corpus, ...]] = {
    Corpus.CODE: (),
    Corpus.GAMEDATA: (Corpus.CODE,),
    Corpus.CLIENT: (Corpus.GAMEDATA,),
    Corpus.DOCS: (Corpus.CODE, Corpus.GAMEDATA),
}


def resolve_corpus_order(
    corpora: Iterable[Corpus] = None,
    dependencies: Dict[Corpus, Tuple[Corpus, ...]] = None,
) -> List[Corpus]:
    """
    Topologically sort corpora by their declared dependencies.

    Only the requested corpora are returned; dependencies outside the request
    still constrain relative order. Ties keep declaration order, which gives
    code -> gamedata -> client -> docs for the full set.

    Raises:
        CorpusOrderError: if the dependency declaration has a cycle
    """
    dependencies = dependencies if dependencies is not None else CORPUS_DEPENDENCIES
    requested = set(corpora) if corpora is not None else set(Corpus)
    declared = [c for c in Corpus if c in dependencies or c in requested]

    remaining = {c: set(dependencies.get(c, ())) for c in declared}
    ordered: List[Corpus] = []
    while remaining:
        ready = [c for c in declared if c in remaining and not remaining[c]]
        if not ready:
            cycle = ", ".join(sorted(c.value for c in remaining))
            raise CorpusOrderError(f"Cycle in corpus dependencies among: {cycle}")
        current = ready[0]
        ordered.append(current)
        del remaining[current]
        for deps in remaining.values():
            deps.discard(current)

    return [c for c in ordered if c in requested]
