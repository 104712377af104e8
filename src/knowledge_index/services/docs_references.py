"""
Docs -> code / game data references.

Backtick spans and PascalCase words in a docs page are matched exactly
(case-sensitive) against display names of code and game data nodes.
"""

import re
from typing import Dict, List, Mapping, Sequence, Tuple

from .corpus import EdgeType
from .graph_store import EdgeRow

BACKTICK_PATTERN = re.compile(r"`([A-Za-z]\w+)`")
PASCAL_CASE_PATTERN = re.compile(r"\b([A-Z][a-z]+(?:[A-Z][a-z]+)+)\b")


def build_name_lookup(pairs: Sequence[Tuple[str, str]]) -> Dict[str, List[str]]:
    """Exact display name -> node ids."""
    lookup: Dict[str, List[str]] = {}
    for node_id, name in pairs:
        if name:
            lookup.setdefault(name, []).append(node_id)
    return lookup


def reference_candidates(content: str) -> List[str]:
    seen: List[str] = []
    for pattern in (BACKTICK_PATTERN, PASCAL_CASE_PATTERN):
        for match in pattern.finditer(content or ""):
            word = match.group(1)
            if word not in seen:
                seen.append(word)
    return seen


def extract_docs_references(
    node_id: str,
    content: str,
    names: Mapping[str, List[str]],
    owning_file: str,
) -> List[EdgeRow]:
    edges = []
    targets = set()
    for candidate in reference_candidates(content):
        for target_id in names.get(candidate, ()):
            if target_id == node_id or target_id in targets:
                continue
            targets.add(target_id)
            edges.append(EdgeRow(
                source_id=node_id,
                target_id=target_id,
                edge_type=EdgeType.DOCS_REFERENCES,
                metadata={"match": candidate},
                owning_file=owning_file,
            ))
    return edges
