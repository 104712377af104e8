"""
Query Router

Classifies a natural-language query by lexical cues into one of three
strategies:

- GRAPH: a structural cue ("what extends X", "what drops from X") maps to an
  edge type and an anchor entity
- HYBRID: a crafting cue, or a query naming an entity that exists in the graph
- VECTOR: everything else

Patterns are tried in a fixed order; the first match wins.
"""

import re
from typing import List, Optional, Pattern, Tuple

from ..logging_config import query_debug_logger as debug_log
from ..models import QueryStrategy, RouteResult
from .corpus import EdgeType
from .graph_store import GraphStore

_I = re.IGNORECASE

# (pattern, relation, strategy) in match order
ROUTE_PATTERNS: List[Tuple[Pattern, EdgeType, QueryStrategy]] = [
    # Code structure
    (re.compile(r"(?:what|which|classes?|types?)\s+(?:extends?|inherits?|subclass(?:es)?(?:\s+of)?)\s+(\w+)", _I),
     EdgeType.EXTENDS, QueryStrategy.GRAPH),
    (re.compile(r"(?:what|which|classes?|types?)\s+(?:implements?)\s+(\w+)", _I),
     EdgeType.IMPLEMENTS, QueryStrategy.GRAPH),
    (re.compile(r"(?:what|who|which)\s+(?:calls?|invokes?)\s+(\w+(?:\.\w+)?)", _I),
     EdgeType.CALLS, QueryStrategy.GRAPH),
    (re.compile(r"(?:methods?|functions?)\s+(?:of|in|on)\s+(\w+)", _I),
     EdgeType.CONTAINS, QueryStrategy.GRAPH),
    # Game data
    (re.compile(r"(?:how|what)\s+(?:to\s+)?(?:craft|make|produce|create)\s+(\w+)", _I),
     EdgeType.REQUIRES_ITEM, QueryStrategy.HYBRID),
    (re.compile(r"(?:what|which)\s+(?:drops?|loot)\s+(?:from|by)\s+(\w+)", _I),
     EdgeType.DROPS_ON_DEATH, QueryStrategy.GRAPH),
    (re.compile(r"(?:what|which)\s+(?:uses?|requires?|needs?)\s+(\w+)", _I),
     EdgeType.REQUIRES_ITEM, QueryStrategy.GRAPH),
    (re.compile(r"(?:where|who)\s+(?:to\s+)?(?:buy|sells?|trade)\s+(\w+)", _I),
     EdgeType.OFFERED_IN_SHOP, QueryStrategy.GRAPH),
    (re.compile(r"(?:who|what|which)\s+(?:are\s+)?(?:(?:the\s+)?members?\s+of|is\s+in)\s+(\w+)", _I),
     EdgeType.HAS_MEMBER, QueryStrategy.GRAPH),
    (re.compile(r"(?:what|which)\s+(?:ui|screen|panel|view)\s+(?:shows?|displays?|contains?|for)\s+(\w+)", _I),
     EdgeType.UI_BINDS_TO, QueryStrategy.GRAPH),
]

FIND_ENTITY_PATTERN = re.compile(r"(?:find|show|get|where\s+is)\s+(?:class\s+)?(\w+)", _I)
CAPITALISED_WORD_PATTERN = re.compile(r"\b[A-Z]\w{2,}\b")


class QueryRouter:
    """
    Pattern-based query classifier.

    ::: This is-in-layer Service-Layer.
    ::: This is a router.
    ::: This is stateless.
    """

    def __init__(self, store: GraphStore):
        self._store = store

    def route(self, query: str) -> RouteResult:
        for pattern, relation, strategy in ROUTE_PATTERNS:
            match = pattern.search(query)
            if match:
                result = RouteResult(strategy=strategy, entity_name=match.group(1), relation=relation.value)
                debug_log.debug(f"route({query!r}) -> {result.strategy.value} {relation.value} {result.entity_name}")
                return result

        name = self._existing_entity(query)
        if name:
            debug_log.debug(f"route({query!r}) -> hybrid entity {name}")
            return RouteResult(strategy=QueryStrategy.HYBRID, entity_name=name)

        debug_log.debug(f"route({query!r}) -> vector")
        return RouteResult(strategy=QueryStrategy.VECTOR)

    def _existing_entity(self, query: str) -> Optional[str]:
        match = FIND_ENTITY_PATTERN.search(query)
        if match and self.entity_exists(match.group(1)):
            return match.group(1)
        for word in CAPITALISED_WORD_PATTERN.findall(query):
            if self.entity_exists(word):
                return word
        return None

    def entity_exists(self, name: str) -> bool:
        """True if some node is named ``name`` or ``<qualifier>.name``."""
        row = self._store.fetch_one(
            "SELECT 1 AS found FROM nodes WHERE display_name = ? OR display_name LIKE ? LIMIT 1",
            (name, f"%.{name}")
        )
        return row is not None
