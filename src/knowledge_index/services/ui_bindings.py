"""
Client UI -> game data bindings.

Pattern detectors run over the stored content of ``.ui`` nodes and propose
candidate names; candidates that match a game data display name become
UI_BINDS_TO edges. Only the highest-confidence strategy is kept per
(ui node, game data node) pair.
"""

import re
from dataclasses import dataclass
from typing import Dict, List, Tuple

from .corpus import EdgeType
from .graph_store import EdgeRow
from .identifier_resolver import StemLookup

UI_NODE_TYPE = "ui"


@dataclass(frozen=True)
class BindingCandidate:
    node_id: str
    text: str
    strategy: str
    confidence: float


class UIContentAnalyzer:
    """
    Regex strategies over UI markup.

    ::: This is-in-layer Domain-Layer.
    ::: This is a analyzer.
    ::: This is stateless.
    """

    # "Items/Sword", "NPCs/Trork"
    RESOURCE_PATH = re.compile(r"""["'](\w+/[\w/]+)["']""")
    # ItemStack, HotbarSlot
    PASCAL_CASE = re.compile(r"\b([A-Z][a-z]+(?:[A-Z][a-z]+)+)\b")
    JSON_KEY = re.compile(
        r'"(item|recipe|block|npc|entity|slot|inventory|equipment|weapon|armor|tool|resource|prefab)"\s*:\s*"([^"]+)"',
        re.IGNORECASE,
    )

    # UI framework vocabulary, never game data
    PASCAL_CASE_EXCLUSIONS = frozenset({
        "DataContext", "DataTemplate", "StackPanel", "DockPanel", "GridPanel",
        "TextBlock", "TextBox", "ScrollViewer", "ContentControl", "UserControl",
        "ItemsControl", "ResourceDictionary", "SolidColorBrush", "LinearGradientBrush",
        "ColumnDefinition", "RowDefinition", "ContentPresenter", "TemplateBinding",
        "StaticResource", "DynamicResource", "EventTrigger", "DataTrigger",
        "MultiBinding", "RelativeSource", "TargetType", "BasedOn",
        "HorizontalAlignment", "VerticalAlignment", "BorderThickness",
    })

    def analyze(self, content: str, node_id: str) -> List[BindingCandidate]:
        candidates = []
        candidates += self._resource_paths(content, node_id)
        candidates += self._pascal_case(content, node_id)
        candidates += self._filename_stem(node_id)
        candidates += self._json_keys(content, node_id)
        return candidates

    def _resource_paths(self, content: str, node_id: str) -> List[BindingCandidate]:
        return [
            BindingCandidate(node_id, m.group(1).rsplit("/", 1)[-1], "resource_path", 0.8)
            for m in self.RESOURCE_PATH.finditer(content)
        ]

    def _pascal_case(self, content: str, node_id: str) -> List[BindingCandidate]:
        seen = []
        for m in self.PASCAL_CASE.finditer(content):
            word = m.group(1)
            if word not in seen and word not in self.PASCAL_CASE_EXCLUSIONS:
                seen.append(word)
        return [BindingCandidate(node_id, word, "pascal_case", 0.5) for word in seen]

    def _filename_stem(self, node_id: str) -> List[BindingCandidate]:
        # node ids look like "ui:InGame/HotbarSlot.ui"
        path = node_id.split(":", 1)[-1]
        stem = path.rsplit("/", 1)[-1].rsplit(".", 1)[0]
        if not stem.strip():
            return []
        return [BindingCandidate(node_id, stem, "filename_stem", 0.4)]

    def _json_keys(self, content: str, node_id: str) -> List[BindingCandidate]:
        candidates = []
        for m in self.JSON_KEY.finditer(content):
            stem = m.group(2).rsplit("/", 1)[-1].rsplit(".", 1)[0]
            candidates.append(BindingCandidate(node_id, stem, "json_key", 0.6))
        return candidates


def extract_ui_bindings(
    node_id: str,
    content: str,
    gamedata: StemLookup,
    owning_file: str,
    analyzer: UIContentAnalyzer = None,
) -> List[EdgeRow]:
    """UI_BINDS_TO edges for one UI node, highest confidence per target."""
    if not content or not content.strip():
        return []
    analyzer = analyzer or UIContentAnalyzer()

    best: Dict[Tuple[str, str], BindingCandidate] = {}
    for candidate in analyzer.analyze(content, node_id):
        for target_id in gamedata.get(candidate.text):
            key = (candidate.node_id, target_id)
            current = best.get(key)
            if current is None or candidate.confidence > current.confidence:
                best[key] = candidate

    return [
        EdgeRow(
            source_id=source_id,
            target_id=target_id,
            edge_type=EdgeType.UI_BINDS_TO,
            metadata={"strategy": candidate.strategy, "confidence": candidate.confidence},
            owning_file=owning_file,
        )
        for (source_id, target_id), candidate in best.items()
    ]
