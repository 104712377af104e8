"""
Tests for GraphStore

Covers node and edge upserts, the scoped delete allow-list, transactions,
index state and corpus wipes.
"""

import numpy as np
import pytest

from knowledge_index.knowledge_exceptions import GraphStoreError, ScopedDeleteError
from knowledge_index.services.corpus import Corpus, EdgeType
from knowledge_index.services.graph_store import EdgeRow, GraphStore, NodeRow


def node(node_id, corpus=Corpus.GAMEDATA, owning_file=None, display_name=None, **kwargs):
    return NodeRow(
        id=node_id,
        corpus=corpus,
        node_type=kwargs.pop("node_type", "GameData"),
        display_name=display_name or node_id.rsplit("/", 1)[-1],
        owning_file=owning_file or node_id,
        **kwargs,
    )


class TestGraphStoreInit:
    """Test schema creation."""

    def test_init_creates_database(self, store):
        assert store.db_path.exists()

    def test_reopen_keeps_data(self, store):
        store.upsert_nodes([node("gamedata:Items/Torch.json")])
        reopened = GraphStore(store.db_path)
        try:
            assert reopened.node_exists("gamedata:Items/Torch.json")
        finally:
            reopened.close()

    def test_other_schema_version_is_refused(self, store):
        with store.transaction() as conn:
            conn.execute("UPDATE schema_version SET version = 99")

        with pytest.raises(GraphStoreError, match="schema version 99"):
            GraphStore(store.db_path)


class TestNodes:
    """Test node upsert and lookup."""

    def test_upsert_is_last_write_wins(self, store):
        store.upsert_nodes([node("gamedata:Items/Torch.json", display_name="Torch", content="v1")])
        store.upsert_nodes([node("gamedata:Items/Torch.json", display_name="Torch", content="v2")])

        assert store.count("nodes") == 1
        assert store.get_node("gamedata:Items/Torch.json")["content"] == "v2"

    def test_embedding_round_trips_as_float32(self, store):
        vector = np.array([0.6, 0.8, 0.0], dtype=np.float32)
        store.upsert_nodes([node("gamedata:Items/Torch.json", embedding=vector, embedding_text_hash="h")])

        state = store.embedding_state(Corpus.GAMEDATA, ["gamedata:Items/Torch.json"])
        text_hash, stored = state["gamedata:Items/Torch.json"]
        assert text_hash == "h"
        assert stored.dtype == np.float32
        assert np.allclose(stored, vector)

    def test_display_name_lookup_is_case_insensitive(self, store):
        store.upsert_nodes([node("gamedata:NPCs/Goblin.json", display_name="Goblin", data_type="npc")])

        rows = store.find_nodes_by_display_name("goblin", Corpus.GAMEDATA)
        assert [r["id"] for r in rows] == ["gamedata:NPCs/Goblin.json"]
        assert store.find_nodes_by_display_name("goblin", Corpus.CODE) == []

    def test_delete_by_owning_file_is_scoped_to_corpus(self, store):
        store.upsert_nodes([
            node("gamedata:a", owning_file="shared.json"),
            node("docs:a", corpus=Corpus.DOCS, owning_file="shared.json"),
        ])

        deleted = store.delete_nodes_by_owning_file(Corpus.GAMEDATA, ["shared.json"])

        assert deleted == 1
        assert not store.node_exists("gamedata:a")
        assert store.node_exists("docs:a")

    def test_get_nodes_skips_unknown_ids(self, store):
        store.upsert_nodes([node("gamedata:a"), node("gamedata:b")])

        rows = store.get_nodes(["gamedata:b", "gamedata:missing", "gamedata:a", "gamedata:b"])

        assert sorted(rows) == ["gamedata:a", "gamedata:b"]
        assert rows["gamedata:b"]["display_name"] == "gamedata:b"

    def test_deleting_a_node_flags_edges_into_it(self, store):
        store.upsert_nodes([node("class:a.Item", corpus=Corpus.CODE, node_type="Class", owning_file="Item.java")])
        store.upsert_edges([
            EdgeRow("gamedata:Items/Sword.json", "class:a.Item", EdgeType.IMPLEMENTED_BY,
                    owning_file="Items/Sword.json"),
        ], Corpus.GAMEDATA)

        store.delete_nodes_by_owning_file(Corpus.CODE, ["Item.java"])

        assert store.edges_to("class:a.Item")[0]["target_resolved"] == 0
        assert [r["target_id"] for r in store.unresolved_edges(0, 10)] == ["class:a.Item"]


class TestEdges:
    """Test edge upsert and traversal helpers."""

    def test_edges_are_unique_per_source_target_type(self, store):
        edge = EdgeRow("gamedata:recipe", "gamedata:item", EdgeType.REQUIRES_ITEM)
        store.upsert_edges([edge, edge], Corpus.GAMEDATA)
        store.upsert_edges([edge], Corpus.GAMEDATA)

        assert store.count("edges") == 1

    def test_self_loops_are_skipped(self, store):
        written = store.upsert_edges(
            [EdgeRow("gamedata:a", "gamedata:a", EdgeType.RELATES_TO)], Corpus.GAMEDATA
        )
        assert written == 0
        assert store.count("edges") == 0

    def test_metadata_is_stored_as_json(self, store):
        store.upsert_edges(
            [EdgeRow("gamedata:shop", "gamedata:item", EdgeType.OFFERED_IN_SHOP, {"cost_quantity": 3})],
            Corpus.GAMEDATA,
        )
        row = store.edges_from("gamedata:shop", EdgeType.OFFERED_IN_SHOP)[0]
        assert row["metadata"] == '{"cost_quantity": 3}'

    def test_unresolved_edges_skip_virtual_targets(self, store):
        store.upsert_edges(
            [EdgeRow("class:a.B", "class:Base", EdgeType.EXTENDS, target_resolved=False)], Corpus.CODE
        )
        store.upsert_edges(
            [EdgeRow("gamedata:x", "virtual:bench:Workbench", EdgeType.REQUIRES_BENCH, target_resolved=False)],
            Corpus.GAMEDATA,
        )

        rows = store.unresolved_edges(0, 10)
        assert [r["target_id"] for r in rows] == ["class:Base"]


class TestScopedDelete:
    """Test that a corpus can only delete edge types it owns."""

    def _seed(self, store):
        store.upsert_edges([
            EdgeRow("class:a.Item", "code:a.Item#get", EdgeType.CONTAINS, owning_file="Item.java"),
            EdgeRow("class:a.Sword", "code:a.Sword#get", EdgeType.CONTAINS, owning_file="Sword.java"),
        ], Corpus.CODE)
        store.upsert_edges([
            EdgeRow("gamedata:Items/Sword.json", "class:a.Item", EdgeType.IMPLEMENTED_BY,
                    owning_file="Items/Sword.json"),
        ], Corpus.GAMEDATA)

    def test_empty_allow_list_raises(self, store):
        with pytest.raises(ScopedDeleteError):
            store.scoped_delete(Corpus.CODE, [])

    def test_foreign_edge_type_raises(self, store):
        with pytest.raises(ScopedDeleteError, match="IMPLEMENTED_BY"):
            store.scoped_delete(Corpus.CODE, [EdgeType.CONTAINS, EdgeType.IMPLEMENTED_BY])

    def test_scoped_delete_error_is_a_value_error(self):
        assert issubclass(ScopedDeleteError, ValueError)

    def test_delete_by_owning_file(self, store):
        self._seed(store)

        deleted = store.scoped_delete(Corpus.CODE, [EdgeType.CONTAINS], owning_files=["Item.java"])

        assert deleted == 1
        assert store.edges_from("class:a.Item") == []
        assert len(store.edges_from("class:a.Sword")) == 1

    def test_code_delete_never_touches_gamedata_bridges(self, store):
        self._seed(store)

        store.scoped_delete(Corpus.CODE, [EdgeType.CONTAINS])

        assert store.edge_counts() == {"IMPLEMENTED_BY": 1}

    def test_rollback_on_error(self, store):
        self._seed(store)

        with pytest.raises(RuntimeError):
            with store.transaction():
                store.scoped_delete(Corpus.CODE, [EdgeType.CONTAINS])
                raise RuntimeError("boom")

        assert store.edge_counts(Corpus.CODE) == {"CONTAINS": 2}


class TestStateAndWipe:
    """Test index state, errors and corpus wipes."""

    def test_state_round_trip(self, store):
        assert store.get_state(Corpus.CODE, "text_builder_version") is None
        store.set_state(Corpus.CODE, "text_builder_version", "1")
        store.set_state(Corpus.CODE, "text_builder_version", "2")
        assert store.get_state(Corpus.CODE, "text_builder_version") == "2"

        store.clear_state(Corpus.CODE, "text_builder_version")
        assert store.get_state(Corpus.CODE, "text_builder_version") is None

    def test_errors_are_cleared_per_file(self, store):
        store.record_error("a.json", Corpus.GAMEDATA, "parse", "bad json")
        store.record_error("b.json", Corpus.GAMEDATA, "parse", "bad json")

        store.clear_errors(Corpus.GAMEDATA, ["a.json"])

        assert [e["file_path"] for e in store.get_errors(Corpus.GAMEDATA)] == ["b.json"]

    def test_wipe_corpus_leaves_other_corpora(self, store):
        store.upsert_nodes([node("gamedata:a"), node("docs:a", corpus=Corpus.DOCS)])
        store.upsert_edges([EdgeRow("gamedata:a", "class:x.A", EdgeType.IMPLEMENTED_BY)], Corpus.GAMEDATA)
        store.upsert_edges([EdgeRow("docs:a", "gamedata:a", EdgeType.DOCS_REFERENCES)], Corpus.DOCS)
        store.save_hashes({"a": "h"}, Corpus.GAMEDATA)
        store.set_state(Corpus.GAMEDATA, "provider_id", "p")

        store.wipe_corpus(Corpus.GAMEDATA)

        assert store.count("nodes", "corpus = ?", ("gamedata",)) == 0
        assert store.load_hashes(Corpus.GAMEDATA) == {}
        assert store.get_state(Corpus.GAMEDATA, "provider_id") is None
        assert store.node_exists("docs:a")
        assert store.edge_counts() == {"DOCS_REFERENCES": 1}
        assert store.edges_to("gamedata:a")[0]["target_resolved"] == 0
