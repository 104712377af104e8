"""
Tests for change detection over stored file hashes.
"""

from knowledge_index.services.corpus import Corpus
from knowledge_index.services.hash_tracker import (
    FileHashTracker,
    compute_change_set,
    compute_file_hash,
    compute_hash,
)


class TestComputeChangeSet:
    """Test the pure diff of two hash snapshots."""

    def test_classifies_every_path(self):
        existing = {"a.json": "1", "b.json": "2", "c.json": "3"}
        current = {"a.json": "1", "b.json": "changed", "d.json": "4"}

        change_set = compute_change_set(existing, current)

        assert change_set.added == ["d.json"]
        assert change_set.changed == ["b.json"]
        assert change_set.deleted == ["c.json"]
        assert change_set.unchanged == ["a.json"]

    def test_to_parse_and_stale(self):
        """Added and changed files are parsed; changed and deleted files are stale."""
        change_set = compute_change_set(
            {"b.json": "2", "c.json": "3"},
            {"a.json": "1", "b.json": "changed"},
        )
        assert change_set.to_parse == ["a.json", "b.json"]
        assert change_set.stale == ["b.json", "c.json"]

    def test_identical_snapshots_have_no_changes(self):
        change_set = compute_change_set({"a.json": "1"}, {"a.json": "1"})
        assert not change_set.has_changes
        assert change_set.is_up_to_date
        assert change_set.total_changed == 0

    def test_empty_snapshots_are_not_up_to_date(self):
        change_set = compute_change_set({}, {})
        assert not change_set.has_changes
        assert not change_set.is_up_to_date


class TestHashing:
    """Test content hashing helpers."""

    def test_str_and_bytes_hash_alike(self):
        assert compute_hash("torch") == compute_hash(b"torch")

    def test_file_hash_matches_content_hash(self, tmp_path):
        path = tmp_path / "Torch.json"
        path.write_text('{"id": "Torch"}', encoding="utf-8")
        assert compute_file_hash(path) == compute_hash('{"id": "Torch"}')


class TestFileHashTracker:
    """Test persistence of hashes per corpus."""

    def test_commit_then_detect_is_up_to_date(self, store):
        tracker = FileHashTracker(store)
        current = {"Items/Torch.json": "h1", "Items/Sword.json": "h2"}

        change_set = tracker.detect_changes(current, Corpus.GAMEDATA)
        assert change_set.added == ["Items/Sword.json", "Items/Torch.json"]
        tracker.commit(change_set, Corpus.GAMEDATA)

        assert not tracker.detect_changes(current, Corpus.GAMEDATA).has_changes

    def test_commit_removes_deleted_paths(self, store):
        tracker = FileHashTracker(store)
        tracker.commit(tracker.detect_changes({"a.md": "1", "b.md": "2"}, Corpus.DOCS), Corpus.DOCS)

        change_set = tracker.detect_changes({"a.md": "1"}, Corpus.DOCS)
        assert change_set.deleted == ["b.md"]
        tracker.commit(change_set, Corpus.DOCS)

        assert tracker.load_hashes(Corpus.DOCS) == {"a.md": "1"}

    def test_hashes_are_isolated_per_corpus(self, store):
        tracker = FileHashTracker(store)
        tracker.update_hashes({"shared/path": "docs-hash"}, Corpus.DOCS)
        tracker.update_hashes({"shared/path": "client-hash"}, Corpus.CLIENT)

        assert tracker.load_hashes(Corpus.DOCS) == {"shared/path": "docs-hash"}
        assert tracker.load_hashes(Corpus.CLIENT) == {"shared/path": "client-hash"}
        assert tracker.load_hashes(Corpus.CODE) == {}
