"""
Data models for the knowledge index query surface

Pydantic models returned by search, routing and stats calls.
"""

from pydantic import BaseModel, Field, ConfigDict
from typing import List, Optional, Dict, Any
from enum import Enum


# ============================================================================
# Enums
# ============================================================================

class ResultSource(str, Enum):
    """Which retrieval path produced a result"""
    VECTOR = "vector"        # Nearest-neighbour search
    GRAPH = "graph"          # Edge traversal
    HYBRID = "hybrid"        # Reciprocal Rank Fusion of both


class QueryStrategy(str, Enum):
    """Routing decision for a query"""
    VECTOR = "vector"
    GRAPH = "graph"
    HYBRID = "hybrid"


class SearchMode(str, Enum):
    """Caller-selected search mode"""
    AUTO = "auto"                # Let the router decide
    SEMANTIC = "semantic"        # Vector search only
    STRUCTURAL = "structural"    # Graph traversal, semantic fallback


# ============================================================================
# Results
# ============================================================================

class SearchResult(BaseModel):
    """One ranked hit"""
    model_config = ConfigDict(frozen=True)

    node_id: str
    display_name: str
    snippet: str = ""
    file_path: str = ""
    line_start: Optional[int] = None
    score: float
    source: ResultSource
    data_type: Optional[str] = None
    corpus: str = "code"

    # Cross-corpus expansion
    bridged_from: Optional[str] = None
    bridge_edge_type: Optional[str] = None
    connected_node_ids: List[str] = Field(default_factory=list)
    expanded_from_node_id: Optional[str] = Field(None, exclude=True)

    def with_updates(self, **changes: Any) -> "SearchResult":
        return self.model_copy(update=changes)


class IndexStats(BaseModel):
    """Per-corpus index statistics"""
    corpus: str = "code"
    node_count: int = 0
    type_breakdown: Dict[str, int] = Field(default_factory=dict)
    edge_count: int = 0
    edge_breakdown: Dict[str, int] = Field(default_factory=dict)
    unresolved_edge_count: int = 0
    error_count: int = 0
    vector_index_loaded: bool = False
    rebuild_required: Optional[str] = None

    @property
    def method_count(self) -> int:
        return self.type_breakdown.get("JavaMethod", 0)

    @property
    def class_count(self) -> int:
        return self.type_breakdown.get("JavaClass", 0)


class RouteResult(BaseModel):
    """Output of the query router"""
    strategy: QueryStrategy
    entity_name: Optional[str] = None
    relation: Optional[str] = None
