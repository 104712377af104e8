"""
Tests for IndexingOrchestrator

Drives full indexing passes over in-memory chunk sources with the
lightweight embedding provider: change detection, embedding reuse,
cancellation and resume, provider failures, version bumps and corpus order.
"""

import json

import numpy as np
import pytest

from knowledge_index.knowledge_exceptions import ProviderError
from knowledge_index.services.chunk_source import Chunk, GameDataDirectorySource, JsonlChunkSource, StaticChunkSource
from knowledge_index.services.corpus import Corpus, EdgeType
from knowledge_index.services.embedding_service import EmbeddingService
from knowledge_index.services.faiss_wrapper import FAISS_AVAILABLE
from knowledge_index.services.hash_tracker import compute_hash
from knowledge_index.services.indexing_orchestrator import (
    CancellationToken,
    CorpusIndexer,
    IndexingOrchestrator,
    IndexPhase,
)

pytestmark = pytest.mark.skipif(not FAISS_AVAILABLE, reason="faiss-cpu not installed")


def method_chunk(path, fqcn, name, body=None, line_start=1, **structure):
    body = body or f"public String {name}() {{ return null; }}"
    return Chunk(
        id=f"code:{fqcn}#{name}",
        relative_path=path,
        content_hash=compute_hash(f"{body}@{line_start}"),
        raw_content=body,
        embedding_text=f"{fqcn}.{name}\n{body}",
        declared_type="method",
        display_name=name,
        node_type="JavaMethod",
        line_start=line_start,
        line_end=line_start + 1,
        metadata={"class": fqcn, **structure},
    )


def gamedata_chunk(path, data_type, data):
    raw = json.dumps(data)
    name = path.rsplit("/", 1)[-1].rsplit(".", 1)[0]
    return Chunk(
        id=f"gamedata:{path}",
        relative_path=path,
        content_hash=compute_hash(raw),
        raw_content=raw,
        embedding_text=f"{data_type}: {name}",
        declared_type=data_type,
        display_name=name,
        node_type="GameData",
    )


def doc_chunk(path, text):
    return Chunk(
        id=f"docs:{path}",
        relative_path=path,
        content_hash=compute_hash(text),
        raw_content=text,
        embedding_text=text,
        declared_type="md",
        display_name=path.rsplit(".", 1)[0],
        node_type="DocsPage",
    )


def code_source(version="1"):
    return StaticChunkSource(Corpus.CODE, [
        method_chunk("Item.java", "com.example.items.Item", "getName"),
        method_chunk("Item.java", "com.example.items.Item", "getWeight"),
        method_chunk("Registry.java", "com.example.core.Registry", "register"),
    ], text_builder_version=version)


def gamedata_source():
    return StaticChunkSource(Corpus.GAMEDATA, [
        gamedata_chunk("Items/Sword.json", "item", {"Recipe": {"Input": [{"ItemId": "Iron_Ingot"}]}}),
        gamedata_chunk("Items/Iron_Ingot.json", "item", {}),
    ])


class WideLocalModel(EmbeddingService):
    """Local model missing from the known-model table; answers with 1024 dimensions."""

    def _init_local(self):
        self._model = "loaded"

    def _embed_uncached(self, texts, batch_size=32):
        return np.ones((len(texts), 1024), dtype=np.float32)


class FailingProvider:
    """Provider whose preflight check always fails."""
    provider_id = "broken:model"
    dimension = 64

    def validate(self):
        raise ProviderError("model could not be loaded")

    def embed(self, texts):
        raise AssertionError("embed must not run after a failed validation")


class ShortProvider:
    """Provider that silently drops the last vector of every batch."""

    def __init__(self, inner):
        self._inner = inner
        self.provider_id = inner.provider_id
        self.dimension = inner.dimension

    def validate(self):
        return self._inner.validate()

    def embed(self, texts):
        return self._inner.embed(texts)[:-1]


@pytest.fixture
def orchestrator(store, index_manager, config, provider):
    return IndexingOrchestrator(store, index_manager, config, providers={c: provider for c in Corpus})


class TestIncrementalPass:

    def test_first_pass_indexes_everything(self, orchestrator, store, index_manager):
        report = orchestrator.run([code_source()])[0]

        assert report.status == "indexed"
        assert report.added == 2
        assert report.embedded == 3
        assert report.vectors_indexed == 3
        assert report.phases == [p.value for p in IndexPhase]
        assert store.node_exists("class:com.example.items.Item")
        assert index_manager.get_index(Corpus.CODE).vector_count == 3

    def test_second_pass_is_a_no_op(self, orchestrator):
        source = code_source()
        orchestrator.run([source])
        source.parsed_paths.clear()

        report = orchestrator.run([source])[0]

        assert report.status == "up_to_date"
        assert report.skipped
        assert report.embedded == 0
        assert report.unchanged == 2
        assert source.parsed_paths == []

    def test_only_changed_files_are_parsed(self, orchestrator, store):
        source = code_source()
        orchestrator.run([source])
        source.parsed_paths.clear()

        source.set_file("Registry.java", [
            method_chunk("Registry.java", "com.example.core.Registry", "register", body="void register() {}"),
        ])
        report = orchestrator.run([source])[0]

        assert source.parsed_paths == ["Registry.java"]
        assert report.changed == 1
        assert report.embedded == 1
        assert store.get_node("code:com.example.core.Registry#register")["content"] == "void register() {}"

    def test_unchanged_embedding_text_reuses_vectors(self, orchestrator, store):
        source = code_source()
        orchestrator.run([source])
        before = store.embedding_state(Corpus.CODE, ["code:com.example.items.Item#getName"])

        # Same text, moved down the file: the file hash changes, the embedding text does not
        source.set_file("Item.java", [
            method_chunk("Item.java", "com.example.items.Item", "getName", line_start=10),
            method_chunk("Item.java", "com.example.items.Item", "getWeight", line_start=20),
        ])
        report = orchestrator.run([source])[0]

        assert report.changed == 1
        assert report.reused_embeddings == 2
        assert report.embedded == 0
        after = store.embedding_state(Corpus.CODE, ["code:com.example.items.Item#getName"])
        assert np.array_equal(before["code:com.example.items.Item#getName"][1],
                              after["code:com.example.items.Item#getName"][1])
        assert store.get_node("code:com.example.items.Item#getName")["line_start"] == 10

    def test_deleted_file_removes_nodes_and_edges(self, orchestrator, store, index_manager):
        source = code_source()
        orchestrator.run([source])

        source.remove_file("Registry.java")
        report = orchestrator.run([source])[0]

        assert report.deleted == 1
        assert not store.node_exists("code:com.example.core.Registry#register")
        assert not store.node_exists("class:com.example.core.Registry")
        assert store.edges_from("class:com.example.core.Registry") == []
        assert index_manager.get_index(Corpus.CODE).vector_count == 2

    def test_parse_errors_are_recorded_and_retried(self, orchestrator, store):
        source = code_source()
        source.fail_file("Broken.java", "unexpected token")

        report = orchestrator.run([source])[0]

        assert report.status == "indexed"
        assert report.parse_errors == 1
        assert [e["file_path"] for e in store.get_errors(Corpus.CODE)] == ["Broken.java"]
        status = store.fetch_one(
            "SELECT status FROM file_hashes WHERE corpus = 'code' AND path = 'Broken.java'"
        )["status"]
        assert status == "error"

        source.set_file("Broken.java", [method_chunk("Broken.java", "com.example.Fixed", "run")])
        orchestrator.run([source])
        assert store.get_errors(Corpus.CODE) == []
        assert store.node_exists("code:com.example.Fixed#run")

    def test_progress_reports_embed_batches(self, orchestrator):
        events = []
        orchestrator.run([code_source()], progress=lambda c, p, d, t: events.append((c, p, d, t)))

        embed = [(d, t) for c, p, d, t in events if p == IndexPhase.EMBED]
        assert embed == [(0, 3), (2, 3), (3, 3)]
        assert events[-1][1] == IndexPhase.DONE


class TestCancellation:

    def test_cancel_before_finish_leaves_phases_pending(self, orchestrator, store, index_manager):
        token = CancellationToken()

        def cancel_at_write(corpus, phase, done, total):
            if phase == IndexPhase.WRITE_GRAPH_STORE:
                token.cancel()

        source = code_source()
        report = orchestrator.run([source], cancel_token=token, progress=cancel_at_write)[0]

        assert report.status == "cancelled"
        assert store.node_exists("code:com.example.items.Item#getName")
        assert json.loads(store.get_state(Corpus.CODE, "pending_phases")) == [
            "build_vector_index", "extract_edges"
        ]
        assert index_manager.get_index(Corpus.CODE) is None

        resumed = orchestrator.run([source])[0]

        assert resumed.status == "indexed"
        assert resumed.resumed_phases == ["build_vector_index", "extract_edges"]
        assert resumed.embedded == 0
        assert store.get_state(Corpus.CODE, "pending_phases") is None
        assert store.edges_from("class:com.example.items.Item", EdgeType.CONTAINS)
        assert index_manager.get_index(Corpus.CODE).vector_count == 3

    def test_cancel_during_embedding_writes_nothing(self, orchestrator, store):
        token = CancellationToken()

        def cancel_after_first_batch(corpus, phase, done, total):
            if phase == IndexPhase.EMBED and done > 0:
                token.cancel()

        report = orchestrator.run([code_source()], cancel_token=token, progress=cancel_after_first_batch)[0]

        assert report.status == "cancelled"
        assert store.count("nodes") == 0
        assert store.load_hashes(Corpus.CODE) == {}

    def test_later_corpora_are_skipped_after_cancel(self, orchestrator):
        token = CancellationToken()
        token.cancel()

        reports = orchestrator.run([code_source(), gamedata_source()], cancel_token=token)

        assert [(r.corpus, r.status) for r in reports] == [
            (Corpus.CODE, "cancelled"), (Corpus.GAMEDATA, "cancelled")
        ]
        assert reports[1].skipped


class TestFailures:

    def test_provider_failure_isolates_corpus(self, store, index_manager, config, provider):
        orchestrator = IndexingOrchestrator(store, index_manager, config, providers={
            Corpus.CODE: provider,
            Corpus.GAMEDATA: FailingProvider(),
            Corpus.DOCS: provider,
        })
        docs = StaticChunkSource(Corpus.DOCS, [doc_chunk("crafting.md", "# Crafting")])

        reports = orchestrator.run([gamedata_source(), code_source(), docs])

        status = {r.corpus: r.status for r in reports}
        assert status == {Corpus.CODE: "indexed", Corpus.GAMEDATA: "failed", Corpus.DOCS: "indexed"}
        failed = next(r for r in reports if r.corpus == Corpus.GAMEDATA)
        assert "model could not be loaded" in failed.error
        assert store.count("nodes", "corpus = ?", ("gamedata",)) == 0
        assert store.load_hashes(Corpus.GAMEDATA) == {}

    def test_short_embedding_batch_fails_the_pass(self, store, index_manager, config, provider):
        indexer = CorpusIndexer(store, index_manager, ShortProvider(provider), config)

        report = indexer.run(code_source())

        assert report.status == "failed"
        assert "ProviderError" in report.error
        assert store.count("nodes") == 0

    def test_missing_source_is_reported(self, orchestrator):
        reports = orchestrator.run([code_source()], corpora=[Corpus.CODE, Corpus.DOCS])
        assert reports[1].status == "failed"
        assert "docs" in reports[1].error

    def test_undecodable_gamedata_file_fails_alone(self, orchestrator, store, tmp_path):
        root = tmp_path / "gamedata"
        (root / "Items").mkdir(parents=True)
        (root / "Items" / "Torch.json").write_text('{"MaxStack": 64}', encoding="utf-8")
        (root / "Items" / "Cafe.json").write_bytes(b'{"Name": "Caf\xe9"}')

        report = orchestrator.run([GameDataDirectorySource(root)])[0]

        assert report.status == "indexed"
        assert report.parse_errors == 1
        assert store.node_exists("gamedata:Items/Torch.json")
        assert [e["file_path"] for e in store.get_errors(Corpus.GAMEDATA)] == ["Items/Cafe.json"]

    def test_malformed_dump_lines_are_not_recorded_twice(self, orchestrator, store, tmp_path):
        dump = tmp_path / "code.jsonl"

        def write_dump(body, broken=True):
            line = json.dumps({"id": "code:a.A#run", "relative_path": "A.java", "content": body,
                               "metadata": {"class": "a.A"}})
            dump.write_text(line + ("\n{broken\n" if broken else "\n"), encoding="utf-8")

        source = JsonlChunkSource(Corpus.CODE, dump)
        write_dump("void run() {}")
        orchestrator.run([source])
        write_dump("void run() { go(); }")
        orchestrator.run([source])

        errors = store.get_errors(Corpus.CODE)
        assert [e["file_path"] for e in errors] == ["code.jsonl"]
        assert errors[0]["message"].startswith("line 2:")

        write_dump("void run() { stop(); }", broken=False)
        orchestrator.run([source])
        assert store.get_errors(Corpus.CODE) == []


class TestRebuilds:

    def test_text_builder_version_bump_rebuilds(self, orchestrator, store):
        orchestrator.run([code_source("1")])
        store.record_error("Old.java", Corpus.CODE, "parse", "stale")

        report = orchestrator.run([code_source("2")])[0]

        assert report.rebuild_reason is not None
        assert report.added == 2
        assert report.embedded == 3
        assert store.get_errors(Corpus.CODE) == []
        assert store.get_state(Corpus.CODE, "text_builder_version") == "2"

    def test_provider_change_rebuilds(self, store, index_manager, config, provider):
        from knowledge_index.services.embedding_service import LightweightEmbeddingService

        IndexingOrchestrator(store, index_manager, config, {Corpus.CODE: provider}).run([code_source()])
        wider = LightweightEmbeddingService(embedding_dim=96)
        index_manager.set_provider(Corpus.CODE, wider)

        report = IndexingOrchestrator(store, index_manager, config, {Corpus.CODE: wider}).run([code_source()])[0]

        assert report.status == "indexed"
        assert "lightweight:64" in report.rebuild_reason
        assert report.embedded == 3
        assert index_manager.get_index(Corpus.CODE).dimension == 96

    def test_unlisted_model_is_stable_across_passes(self, store, index_manager, config):
        first = WideLocalModel("my-org/wide-model")
        index_manager.set_provider(Corpus.CODE, first)
        IndexingOrchestrator(store, index_manager, config, {Corpus.CODE: first}).run([code_source()])

        second = WideLocalModel("my-org/wide-model")
        index_manager.set_provider(Corpus.CODE, second)
        report = IndexingOrchestrator(store, index_manager, config, {Corpus.CODE: second}).run([code_source()])[0]

        assert report.rebuild_reason is None
        assert report.status == "up_to_date"
        assert index_manager.get_index(Corpus.CODE).dimension == 1024


class TestCorpusOrder:

    def test_corpora_run_in_dependency_order(self, orchestrator):
        docs = StaticChunkSource(Corpus.DOCS, [doc_chunk("items.md", "Swords use `Item`")])
        reports = orchestrator.run([docs, gamedata_source(), code_source()])
        assert [r.corpus for r in reports] == [Corpus.CODE, Corpus.GAMEDATA, Corpus.DOCS]

    def test_cross_corpus_edges_resolve_in_one_pass(self, orchestrator, store):
        docs = StaticChunkSource(Corpus.DOCS, [doc_chunk("items.md", "Swords use `Item`")])
        orchestrator.run([docs, gamedata_source(), code_source()])

        assert [r["target_id"] for r in store.edges_from("gamedata:Items/Sword.json", EdgeType.IMPLEMENTED_BY)] == [
            "class:com.example.items.Item"
        ]
        assert [r["target_id"] for r in store.edges_from("gamedata:Items/Sword.json", EdgeType.REQUIRES_ITEM)] == [
            "gamedata:Items/Iron_Ingot.json"
        ]
        assert [r["target_id"] for r in store.edges_from("docs:items.md", EdgeType.DOCS_REFERENCES)] == [
            "class:com.example.items.Item"
        ]

    def test_code_reindex_keeps_implemented_by(self, orchestrator, store):
        code = code_source()
        orchestrator.run([code, gamedata_source()])

        code.set_file("Item.java", [method_chunk("Item.java", "com.example.items.Item", "getDisplayName")])
        report = orchestrator.run([code], corpora=[Corpus.CODE])[0]

        assert report.changed == 1
        assert [r["target_id"] for r in store.edges_from("gamedata:Items/Sword.json", EdgeType.IMPLEMENTED_BY)] == [
            "class:com.example.items.Item"
        ]

    def test_gamedata_reindex_replaces_its_own_edges(self, orchestrator, store):
        gamedata = gamedata_source()
        orchestrator.run([code_source(), gamedata])

        gamedata.set_file("Items/Sword.json", [
            gamedata_chunk("Items/Sword.json", "item", {"MaxStack": 1}),
        ])
        orchestrator.run([gamedata])

        assert store.edges_from("gamedata:Items/Sword.json", EdgeType.REQUIRES_ITEM) == []
        assert len(store.edges_from("gamedata:Items/Sword.json", EdgeType.IMPLEMENTED_BY)) == 1

    def test_removed_class_leaves_bridge_edges_dangling_until_it_returns(self, orchestrator, store):
        code = code_source()
        orchestrator.run([code, gamedata_source()])
        item_methods = [
            method_chunk("Item.java", "com.example.items.Item", "getName"),
            method_chunk("Item.java", "com.example.items.Item", "getWeight"),
        ]

        code.remove_file("Item.java")
        orchestrator.run([code], corpora=[Corpus.CODE])

        edge = store.edges_from("gamedata:Items/Sword.json", EdgeType.IMPLEMENTED_BY)[0]
        assert edge["target_id"] == "class:com.example.items.Item"
        assert edge["target_resolved"] == 0
        assert "class:com.example.items.Item" in [r["target_id"] for r in store.unresolved_edges(0, 100)]

        code.set_file("Item.java", item_methods)
        report = orchestrator.run([code], corpora=[Corpus.CODE])[0]

        edge = store.edges_from("gamedata:Items/Sword.json", EdgeType.IMPLEMENTED_BY)[0]
        assert edge["target_resolved"] == 1
        assert report.healed >= 1
