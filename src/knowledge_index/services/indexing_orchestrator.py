"""
Indexing Orchestrator

Runs the incremental indexing pass of each corpus as a fixed sequence of
phases::

    DETECT_CHANGES -> PARSE -> FILTER_CHANGED -> EMBED -> WRITE_GRAPH_STORE
        -> BUILD_VECTOR_INDEX -> EXTRACT_EDGES -> DONE

and sequences corpora by their declared dependencies so cross-corpus edges
find their targets (code -> gamedata -> client -> docs).

Phases after WRITE_GRAPH_STORE are recorded as pending in the graph store
when the write commits. A pass that is cancelled or crashes before finishing
them leaves them pending, and the next pass resumes them even when no file
changed.
"""

import json
import threading
import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Callable, Dict, Iterable, List, Optional, Sequence

import numpy as np

from ..knowledge_exceptions import IndexingCancelled, ProviderError
from ..logging_config import configure_logger_for_debug_trace, index_trace_logger
from .chunk_source import Chunk, ChunkSource
from .corpus import CORPUS_DEPENDENCIES, Corpus, deletable_edge_types, resolve_corpus_order
from .edge_builders import EdgeBuilder, edge_builder_for
from .embedding_service import get_embedding_service
from .graph_store import GraphStore, NodeRow
from .hash_tracker import ChangeSet, FileHashTracker
from .healing import DanglingEdgeHealer
from .vector_index import CorpusIndexManager, VectorIndex

logger = configure_logger_for_debug_trace(__name__)

STATE_TEXT_BUILDER_VERSION = "text_builder_version"
STATE_PROVIDER_ID = "provider_id"
STATE_PENDING_PHASES = "pending_phases"


class IndexPhase(str, Enum):
    DETECT_CHANGES = "detect_changes"
    PARSE = "parse"
    FILTER_CHANGED = "filter_changed"
    EMBED = "embed"
    WRITE_GRAPH_STORE = "write_graph_store"
    BUILD_VECTOR_INDEX = "build_vector_index"
    EXTRACT_EDGES = "extract_edges"
    DONE = "done"


RESUMABLE_PHASES = (IndexPhase.BUILD_VECTOR_INDEX, IndexPhase.EXTRACT_EDGES)

ProgressCallback = Callable[[Corpus, IndexPhase, int, int], None]


class CancellationToken:
    """
    Cooperative cancellation flag, polled between phases and embed batches.

    ::: This is-in-layer Utility-Layer.
    ::: This is a value-object.
    ::: This is stateful.
    """

    def __init__(self):
        self._event = threading.Event()

    def cancel(self) -> None:
        self._event.set()

    @property
    def is_cancelled(self) -> bool:
        return self._event.is_set()

    def raise_if_cancelled(self, where: str = "") -> None:
        if self._event.is_set():
            raise IndexingCancelled(f"Indexing cancelled{f' at {where}' if where else ''}")


@dataclass
class CorpusReport:
    """Outcome of one corpus's indexing pass."""
    corpus: Corpus
    status: str = "pending"  # indexed | up_to_date | failed | cancelled
    skipped: bool = False
    added: int = 0
    changed: int = 0
    deleted: int = 0
    unchanged: int = 0
    parse_errors: int = 0
    embedded: int = 0
    reused_embeddings: int = 0
    nodes_written: int = 0
    vectors_indexed: int = 0
    edges_written: int = 0
    healed: int = 0
    rebuild_reason: Optional[str] = None
    resumed_phases: List[str] = field(default_factory=list)
    phases: List[str] = field(default_factory=list)
    error: Optional[str] = None
    duration_seconds: float = 0.0

    @property
    def ok(self) -> bool:
        return self.status in ("indexed", "up_to_date")

    def to_dict(self) -> Dict[str, Any]:
        data = dict(self.__dict__)
        data["corpus"] = self.corpus.value
        return data


def node_from_chunk(corpus: Corpus, chunk: Chunk, vector: Optional[np.ndarray]) -> NodeRow:
    return NodeRow(
        id=chunk.id,
        corpus=corpus,
        node_type=chunk.node_type,
        display_name=chunk.display_name,
        owning_file=chunk.relative_path,
        data_type=chunk.declared_type,
        file_path=chunk.relative_path,
        line_start=chunk.line_start,
        line_end=chunk.line_end,
        content=chunk.raw_content,
        embedding_text=chunk.embedding_text,
        embedding_text_hash=chunk.embedding_text_hash,
        embedding=vector,
        metadata=chunk.metadata,
    )


class CorpusIndexer:
    """
    Runs one corpus through the indexing phases.

    ::: This is-in-layer Service-Layer.
    ::: This is a orchestrator.
    ::: This is stateful.
    """

    def __init__(
        self,
        store: GraphStore,
        index_manager: CorpusIndexManager,
        provider: Any,
        config: Optional[Dict[str, Any]] = None,
        edge_builder: Optional[EdgeBuilder] = None,
        healer: Optional[DanglingEdgeHealer] = None,
    ):
        config = config or {}
        self._store = store
        self._index_manager = index_manager
        self._provider = provider
        self._tracker = FileHashTracker(store)
        self._edge_builder = edge_builder
        self._batch_size = max(1, int(config.get("embed_batch_size", 32)))
        self._healer = healer or DanglingEdgeHealer(
            store,
            batch_size=config.get("healing_batch_size", 500),
            max_batches=config.get("healing_max_batches", 20),
        )

    def run(
        self,
        source: ChunkSource,
        cancel_token: Optional[CancellationToken] = None,
        progress: Optional[ProgressCallback] = None,
    ) -> CorpusReport:
        """Index ``source``; failures are reported, never raised."""
        report = CorpusReport(corpus=source.corpus)
        token = cancel_token or CancellationToken()
        started = time.time()
        try:
            self._run(source, token, progress or _no_progress, report)
        except IndexingCancelled as e:
            report.status = "cancelled"
            report.error = str(e)
            index_trace_logger.info(f"[{source.corpus.value}] {e}")
        except Exception as e:
            report.status = "failed"
            report.error = f"{type(e).__name__}: {e}"
            logger.exception(f"Indexing of corpus '{source.corpus.value}' failed")
        report.duration_seconds = round(time.time() - started, 3)
        return report

    # =========================================================================
    # Phases
    # =========================================================================

    def _run(self, source: ChunkSource, token: CancellationToken, progress: ProgressCallback, report: CorpusReport) -> None:
        corpus = source.corpus
        builder = self._edge_builder or edge_builder_for(corpus)

        # DETECT_CHANGES
        self._enter(report, IndexPhase.DETECT_CHANGES, progress)
        self._check_versions(source, report)
        pending = self._pending_phases(corpus)
        current = source.scan()
        change_set = self._tracker.detect_changes(current, corpus)
        report.added = len(change_set.added)
        report.changed = len(change_set.changed)
        report.deleted = len(change_set.deleted)
        report.unchanged = len(change_set.unchanged)
        index_trace_logger.info(
            f"[{corpus.value}] changes: +{report.added} ~{report.changed} "
            f"-{report.deleted} ={report.unchanged} pending={[p.value for p in pending]}"
        )

        if not change_set.has_changes:
            if not pending:
                report.status = "up_to_date"
                report.skipped = True
                self._enter(report, IndexPhase.DONE, progress)
                return
            report.resumed_phases = [p.value for p in pending]
            self._finish(corpus, builder, None, token, progress, report, pending)
            return

        token.raise_if_cancelled(IndexPhase.PARSE.value)

        # PARSE
        self._enter(report, IndexPhase.PARSE, progress)
        to_parse = change_set.to_parse
        parsed = source.parse(to_parse) if to_parse else None
        chunks = parsed.chunks if parsed else []
        errors = parsed.errors if parsed else []
        report.parse_errors = len(errors)
        for error in errors:
            index_trace_logger.warning(f"[{corpus.value}] {error.error_type} error in {error.path}: {error.message}")

        token.raise_if_cancelled(IndexPhase.FILTER_CHANGED.value)

        # FILTER_CHANGED
        self._enter(report, IndexPhase.FILTER_CHANGED, progress)
        vectors, to_embed = self._reuse_embeddings(corpus, chunks)
        report.reused_embeddings = len(vectors)

        # EMBED
        self._enter(report, IndexPhase.EMBED, progress, 0, len(to_embed))
        if to_embed:
            vectors.update(self._embed(corpus, to_embed, token, progress))
        report.embedded = len(to_embed)

        token.raise_if_cancelled(IndexPhase.WRITE_GRAPH_STORE.value)

        # WRITE_GRAPH_STORE
        self._enter(report, IndexPhase.WRITE_GRAPH_STORE, progress)
        report.nodes_written = self._write(source, change_set, chunks, vectors, errors)

        # A pass resuming an interrupted edge phase rebuilds every file's edges
        scope = None if IndexPhase.EXTRACT_EDGES in pending else to_parse
        self._finish(corpus, builder, scope, token, progress, report, list(RESUMABLE_PHASES))

    def _finish(
        self,
        corpus: Corpus,
        builder: EdgeBuilder,
        scope: Optional[Sequence[str]],
        token: CancellationToken,
        progress: ProgressCallback,
        report: CorpusReport,
        pending: Sequence[IndexPhase],
    ) -> None:
        remaining = list(pending)

        if IndexPhase.BUILD_VECTOR_INDEX in remaining:
            token.raise_if_cancelled(IndexPhase.BUILD_VECTOR_INDEX.value)
            self._enter(report, IndexPhase.BUILD_VECTOR_INDEX, progress)
            report.vectors_indexed = self._build_vector_index(corpus)
            remaining.remove(IndexPhase.BUILD_VECTOR_INDEX)
            self._set_pending(corpus, remaining)

        if IndexPhase.EXTRACT_EDGES in remaining:
            token.raise_if_cancelled(IndexPhase.EXTRACT_EDGES.value)
            self._enter(report, IndexPhase.EXTRACT_EDGES, progress)
            built = builder.build(self._store, scope)
            report.edges_written = built.edges_written
            healing = self._healer.sweep()
            report.healed = healing.healed
            remaining.remove(IndexPhase.EXTRACT_EDGES)
            self._set_pending(corpus, remaining)

        report.status = "indexed"
        self._enter(report, IndexPhase.DONE, progress)
        index_trace_logger.info(
            f"[{corpus.value}] done: nodes={report.nodes_written} embedded={report.embedded} "
            f"reused={report.reused_embeddings} vectors={report.vectors_indexed} "
            f"edges={report.edges_written} healed={report.healed}"
        )

    def _check_versions(self, source: ChunkSource, report: CorpusReport) -> None:
        """Wipe the corpus when its text builder or embedding provider changed."""
        corpus = source.corpus
        stored_version = self._store.get_state(corpus, STATE_TEXT_BUILDER_VERSION)
        has_nodes = self._store.count("nodes", "corpus = ?", (corpus.value,)) > 0
        reason = None

        if stored_version is not None and stored_version != source.text_builder_version:
            reason = f"text builder version {stored_version} -> {source.text_builder_version}"
        elif stored_version is None and has_nodes:
            reason = "no recorded text builder version"
        else:
            descriptor = VectorIndex.read_descriptor(self._index_manager.index_path(corpus))
            stored_provider = self._store.get_state(corpus, STATE_PROVIDER_ID)
            if descriptor is not None and not descriptor.matches(self._provider.provider_id, self._provider.dimension):
                reason = (
                    f"vector index built by {descriptor.provider_id} (dim {descriptor.dimension}), "
                    f"provider is {self._provider.provider_id} (dim {self._provider.dimension})"
                )
            elif stored_provider is not None and stored_provider != self._provider.provider_id:
                reason = f"embeddings from {stored_provider}, provider is {self._provider.provider_id}"

        if reason is None:
            return

        logger.warning(f"Full rebuild of corpus '{corpus.value}': {reason}")
        report.rebuild_reason = reason
        self._store.wipe_corpus(corpus)
        VectorIndex.remove(self._index_manager.index_path(corpus))
        self._index_manager.invalidate(corpus)

    def _reuse_embeddings(self, corpus: Corpus, chunks: Sequence[Chunk]):
        """Split chunks into reusable stored vectors and chunks that need embedding."""
        stored = self._store.embedding_state(corpus, [c.id for c in chunks])
        vectors: Dict[str, np.ndarray] = {}
        to_embed: List[Chunk] = []
        queued = set()
        for chunk in chunks:
            if not (chunk.embedding_text or "").strip():
                continue
            text_hash, vector = stored.get(chunk.id, (None, None))
            if vector is not None and text_hash == chunk.embedding_text_hash:
                vectors[chunk.id] = vector
            elif chunk.id not in queued:
                queued.add(chunk.id)
                to_embed.append(chunk)
        return vectors, to_embed

    def _embed(
        self,
        corpus: Corpus,
        chunks: Sequence[Chunk],
        token: CancellationToken,
        progress: ProgressCallback,
    ) -> Dict[str, np.ndarray]:
        self._provider.validate()
        vectors: Dict[str, np.ndarray] = {}
        total = len(chunks)
        for start in range(0, total, self._batch_size):
            token.raise_if_cancelled(IndexPhase.EMBED.value)
            batch = chunks[start:start + self._batch_size]
            embeddings = self._provider.embed([c.embedding_text for c in batch])
            if len(embeddings) != len(batch):
                raise ProviderError(
                    f"Provider returned {len(embeddings)} vectors for {len(batch)} texts"
                )
            for chunk, vector in zip(batch, embeddings):
                vectors[chunk.id] = np.asarray(vector, dtype=np.float32)
            progress(corpus, IndexPhase.EMBED, min(start + len(batch), total), total)
        index_trace_logger.debug(f"[{corpus.value}] embedded {total} chunks")
        return vectors

    def _write(
        self,
        source: ChunkSource,
        change_set: ChangeSet,
        chunks: Sequence[Chunk],
        vectors: Dict[str, np.ndarray],
        errors: Sequence,
    ) -> int:
        corpus = source.corpus
        rows = [node_from_chunk(corpus, chunk, vectors.get(chunk.id)) for chunk in chunks]
        stale = change_set.stale

        with self._store.transaction():
            if stale:
                self._store.delete_nodes_by_owning_file(corpus, stale)
                self._store.scoped_delete(corpus, deletable_edge_types(corpus), owning_files=stale)
            cleared = change_set.to_parse + change_set.deleted
            if source.source_error_path:
                cleared = cleared + [source.source_error_path]
            self._store.clear_errors(corpus, cleared)
            written = self._store.upsert_nodes(rows)
            for error in errors:
                self._store.record_error(error.path, corpus, error.error_type, error.message)
            self._store.set_state(corpus, STATE_TEXT_BUILDER_VERSION, source.text_builder_version)
            self._store.set_state(corpus, STATE_PROVIDER_ID, self._provider.provider_id)
            self._set_pending(corpus, RESUMABLE_PHASES)

        self._tracker.commit(change_set, corpus)
        failed = {e.path: change_set.current_hashes[e.path] for e in errors if e.path in change_set.current_hashes}
        if failed:
            self._store.save_hashes(failed, corpus, status="error")
        return written

    def _build_vector_index(self, corpus: Corpus) -> int:
        embedded = self._store.embedded_nodes(corpus)
        path = self._index_manager.index_path(corpus)
        if embedded:
            index = VectorIndex(provider_id=self._provider.provider_id)
            index.build(
                [vector for _, vector in embedded],
                node_ids=[node_id for node_id, _ in embedded],
            )
            index.save(path)
        else:
            VectorIndex.remove(path)
        self._store.assign_chunk_indexes(corpus, [node_id for node_id, _ in embedded])
        self._index_manager.invalidate(corpus)
        return len(embedded)

    # =========================================================================
    # Pending phases
    # =========================================================================

    def _pending_phases(self, corpus: Corpus) -> List[IndexPhase]:
        raw = self._store.get_state(corpus, STATE_PENDING_PHASES)
        if not raw:
            return []
        try:
            values = json.loads(raw)
        except json.JSONDecodeError:
            return list(RESUMABLE_PHASES)
        return [p for p in RESUMABLE_PHASES if p.value in values]

    def _set_pending(self, corpus: Corpus, phases: Iterable[IndexPhase]) -> None:
        phases = [p.value for p in phases]
        if phases:
            self._store.set_state(corpus, STATE_PENDING_PHASES, json.dumps(phases))
        else:
            self._store.clear_state(corpus, STATE_PENDING_PHASES)

    @staticmethod
    def _enter(
        report: CorpusReport,
        phase: IndexPhase,
        progress: ProgressCallback,
        done: int = 0,
        total: int = 0,
    ) -> None:
        report.phases.append(phase.value)
        progress(report.corpus, phase, done, total)


def _no_progress(corpus: Corpus, phase: IndexPhase, done: int, total: int) -> None:
    pass


class IndexingOrchestrator:
    """
    Indexes several corpora in dependency order.

    ::: This is-in-layer Service-Layer.
    ::: This is a orchestrator.
    ::: This is stateful.

    Usage:
        orchestrator = IndexingOrchestrator(store, CorpusIndexManager(index_dir), config)
        reports = orchestrator.run([code_source, gamedata_source])
    """

    def __init__(
        self,
        store: GraphStore,
        index_manager: CorpusIndexManager,
        config: Optional[Dict[str, Any]] = None,
        providers: Optional[Dict[Corpus, Any]] = None,
        dependencies: Optional[Dict[Corpus, Sequence[Corpus]]] = None,
    ):
        self._store = store
        self._index_manager = index_manager
        self._config = config or {}
        self._providers: Dict[Corpus, Any] = dict(providers or {})
        self._dependencies = {
            c: tuple(deps) for c, deps in (dependencies or CORPUS_DEPENDENCIES).items()
        }

    def provider_for(self, corpus: Corpus) -> Any:
        provider = self._providers.get(corpus)
        if provider is None:
            provider = get_embedding_service(self._config, corpus.embedding_purpose)
            self._providers[corpus] = provider
        return provider

    def run(
        self,
        sources: Iterable[ChunkSource],
        corpora: Optional[Iterable[Corpus]] = None,
        cancel_token: Optional[CancellationToken] = None,
        progress: Optional[ProgressCallback] = None,
    ) -> List[CorpusReport]:
        """
        Index the requested corpora (default: every corpus with a source).

        A corpus that fails is reported and the next one still runs. A
        cancellation stops the remaining corpora.
        """
        by_corpus: Dict[Corpus, ChunkSource] = {s.corpus: s for s in sources}
        requested = list(corpora) if corpora is not None else list(by_corpus)
        order = resolve_corpus_order(requested, self._dependencies)
        token = cancel_token or CancellationToken()

        index_trace_logger.info(f"Indexing order: {' -> '.join(c.value for c in order)}")
        reports: List[CorpusReport] = []
        for corpus in order:
            if token.is_cancelled:
                reports.append(CorpusReport(corpus=corpus, status="cancelled", skipped=True))
                continue
            source = by_corpus.get(corpus)
            if source is None:
                reports.append(CorpusReport(
                    corpus=corpus, status="failed", error=f"No chunk source configured for '{corpus.value}'"
                ))
                continue

            self._warn_unindexed_dependencies(corpus)
            provider = self.provider_for(corpus)
            self._index_manager.set_provider(corpus, provider)
            indexer = CorpusIndexer(self._store, self._index_manager, provider, self._config)
            report = indexer.run(source, token, progress)
            reports.append(report)

            if report.status == "failed":
                logger.error(f"Corpus '{corpus.value}' index build failed: {report.error}")
        return reports

    def _warn_unindexed_dependencies(self, corpus: Corpus) -> None:
        for dependency in self._dependencies.get(corpus, ()):
            if self._store.count("nodes", "corpus = ?", (dependency.value,)) == 0:
                logger.warning(
                    f"Corpus '{corpus.value}' depends on '{dependency.value}', which has no "
                    f"indexed nodes yet; its cross-corpus edges will be incomplete"
                )
