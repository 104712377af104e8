"""
File Hash Tracker

Tracks per-(file, corpus) content hashes and computes what changed between
the stored snapshot and the files a chunk source currently reports.

The comparison is pure. Persisting new hashes is a separate step that the
orchestrator runs only after the graph store commit it belongs to, so a crash
in between just makes the affected files look changed on the next run.
"""

import hashlib
from dataclasses import dataclass, field
from pathlib import Path
from typing import Dict, Iterable, List, Union

from .corpus import Corpus
from .graph_store import GraphStore


@dataclass
class ChangeSet:
    """
    Differences between two hash snapshots.

    ::: This is-in-layer Utility-Layer.
    ::: This is a value-object.
    """
    added: List[str] = field(default_factory=list)
    changed: List[str] = field(default_factory=list)
    deleted: List[str] = field(default_factory=list)
    unchanged: List[str] = field(default_factory=list)
    current_hashes: Dict[str, str] = field(default_factory=dict)

    @property
    def has_changes(self) -> bool:
        return bool(self.added or self.changed or self.deleted)

    @property
    def total_changed(self) -> int:
        return len(self.added) + len(self.changed) + len(self.deleted)

    @property
    def is_up_to_date(self) -> bool:
        """No additions, changes or deletions over a non-empty file set."""
        return not self.has_changes and bool(self.unchanged)

    @property
    def to_parse(self) -> List[str]:
        """Files whose content must be (re-)parsed."""
        return sorted(self.added + self.changed)

    @property
    def stale(self) -> List[str]:
        """Files whose previously written nodes and edges are invalid."""
        return sorted(self.changed + self.deleted)


def compute_change_set(existing: Dict[str, str], current: Dict[str, str]) -> ChangeSet:
    """
    Compare stored hashes with current hashes.

    Args:
        existing: path -> hash from the last committed pass
        current: path -> hash as reported now

    Returns:
        ChangeSet with sorted path lists
    """
    added = sorted(p for p in current if p not in existing)
    deleted = sorted(p for p in existing if p not in current)
    changed = []
    unchanged = []
    for path in sorted(p for p in current if p in existing):
        if current[path] != existing[path]:
            changed.append(path)
        else:
            unchanged.append(path)
    return ChangeSet(
        added=added,
        changed=changed,
        deleted=deleted,
        unchanged=unchanged,
        current_hashes=dict(current),
    )


def compute_hash(data: Union[bytes, str]) -> str:
    """SHA-256 hex digest of raw bytes (str is UTF-8 encoded)."""
    if isinstance(data, str):
        data = data.encode("utf-8")
    return hashlib.sha256(data).hexdigest()


def compute_file_hash(path: Union[str, Path]) -> str:
    digest = hashlib.sha256()
    with open(path, "rb") as f:
        for block in iter(lambda: f.read(65536), b""):
            digest.update(block)
    return digest.hexdigest()


class FileHashTracker:
    """
    Persists content hashes in the graph store's file_hashes table.

    ::: This is-in-layer Service-Layer.
    ::: This is a tracker.
    ::: This is stateless.
    """

    def __init__(self, store: GraphStore):
        self._store = store

    def load_hashes(self, corpus: Corpus) -> Dict[str, str]:
        return self._store.load_hashes(corpus)

    def detect_changes(self, current: Dict[str, str], corpus: Corpus) -> ChangeSet:
        return compute_change_set(self.load_hashes(corpus), current)

    def update_hashes(self, hashes: Dict[str, str], corpus: Corpus) -> None:
        if hashes:
            self._store.save_hashes(hashes, corpus)

    def remove_hashes(self, paths: Iterable[str], corpus: Corpus) -> None:
        paths = list(paths)
        if paths:
            self._store.remove_hashes(paths, corpus)

    def commit(self, change_set: ChangeSet, corpus: Corpus) -> None:
        """Persist a change set after its graph store mutation committed."""
        self.remove_hashes(change_set.deleted, corpus)
        self.update_hashes(change_set.current_hashes, corpus)
