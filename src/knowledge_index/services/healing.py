"""
Dangling-edge healing.

Edges written before their target exists (a supertype indexed later, a class
named by simple name) carry ``target_resolved = 0``. After each corpus's edge
phase the healer revisits them in bounded, rowid-ordered batches, each in its
own short transaction, so a sweep never holds the store for long.

Virtual references are never healed; they have no node by definition.
"""

from dataclasses import dataclass, field
from typing import Dict, List, Optional

from ..logging_config import configure_logger_for_debug_trace
from .code_edges import CLASS_NODE_TYPE
from .corpus import Corpus
from .graph_store import GraphStore

logger = configure_logger_for_debug_trace(__name__)

CLASS_PREFIX = "class:"


@dataclass
class HealingReport:
    scanned: int = 0
    resolved: int = 0
    retargeted: int = 0
    dropped_duplicates: int = 0
    batches: int = 0
    exhausted: bool = True
    by_type: Dict[str, int] = field(default_factory=dict)

    @property
    def healed(self) -> int:
        return self.resolved + self.retargeted


class DanglingEdgeHealer:
    """
    Re-attempts resolution of unresolved, non-virtual edges.

    ::: This is-in-layer Service-Layer.
    ::: This is a healer.
    ::: This is stateless.
    """

    def __init__(self, store: GraphStore, batch_size: int = 500, max_batches: int = 20):
        self._store = store
        self._batch_size = max(1, int(batch_size))
        self._max_batches = max(1, int(max_batches))

    def sweep(self, corpus: Optional[Corpus] = None) -> HealingReport:
        """
        Heal at most ``batch_size * max_batches`` edges.

        ``exhausted`` is False when the batch limit stopped the sweep before
        every dangling edge was visited; the next sweep continues the work.
        """
        report = HealingReport()
        after_id = 0

        while report.batches < self._max_batches:
            rows = self._store.unresolved_edges(after_id, self._batch_size, corpus)
            if not rows:
                break
            report.batches += 1
            report.scanned += len(rows)
            after_id = rows[-1]["id"]

            with self._store.transaction():
                self._heal_batch(rows, report)

            if len(rows) < self._batch_size:
                break
        else:
            report.exhausted = not self._store.unresolved_edges(after_id, 1, corpus)

        if report.healed or report.dropped_duplicates:
            logger.info(
                f"Healing sweep: scanned={report.scanned} resolved={report.resolved} "
                f"retargeted={report.retargeted} duplicates={report.dropped_duplicates}"
            )
        return report

    def _heal_batch(self, rows: List[Dict], report: HealingReport) -> None:
        now_resolved: List[int] = []
        for row in rows:
            target_id = row["target_id"]
            if self._store.node_exists(target_id):
                now_resolved.append(row["id"])
                self._count(report, row["edge_type"])
                continue

            replacement = self._unique_class_for(target_id)
            if replacement is None:
                continue
            if self._store.retarget_edge(row["id"], replacement):
                report.retargeted += 1
                self._count(report, row["edge_type"])
            else:
                report.dropped_duplicates += 1

        if now_resolved:
            report.resolved += self._store.mark_edges_resolved(now_resolved)

    def _unique_class_for(self, target_id: str) -> Optional[str]:
        """``class:Simple`` -> the only JavaClass named Simple, if exactly one."""
        if not target_id.startswith(CLASS_PREFIX):
            return None
        name = target_id[len(CLASS_PREFIX):]
        if not name or "." in name:
            return None
        matches = [
            node for node in self._store.find_nodes_by_display_name(name, Corpus.CODE, CLASS_NODE_TYPE)
            if node["display_name"] == name
        ]
        if len(matches) != 1:
            return None
        return matches[0]["id"]

    @staticmethod
    def _count(report: HealingReport, edge_type: str) -> None:
        report.by_type[edge_type] = report.by_type.get(edge_type, 0) + 1
