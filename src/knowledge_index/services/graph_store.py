"""SQLite Graph Store for the knowledge index.

Persists everything an indexing pass produces:
- nodes (one per addressable chunk, with its stored embedding)
- typed directed edges, including virtual references and dangling targets
- per-(file, corpus) content hashes
- parse errors and per-corpus index state (text-builder version, pending phases)

Edges are only ever removed through scoped deletes that name an explicit
allow-list of edge types, so one corpus's re-index cannot remove edges that
another corpus's indexer wrote.
"""

import json
import os
import sqlite3
import threading
from contextlib import contextmanager
from dataclasses import dataclass, field
from datetime import datetime
from pathlib import Path
from typing import Any, Dict, Iterable, List, Optional, Sequence, Tuple, Union

import numpy as np

from ..knowledge_exceptions import GraphStoreError, ScopedDeleteError
from ..logging_config import configure_logger_for_debug_trace
from .corpus import Corpus, EdgeType, deletable_edge_types

logger = configure_logger_for_debug_trace(__name__)

# SQLite's default host parameter limit is 999 on older builds
_IN_CHUNK = 500


@dataclass
class NodeRow:
    """
    One addressable, optionally embedded unit of knowledge.

    ::: This is-in-layer Domain-Layer.
    ::: This is a value-object.
    ::: This is stateless.
    """
    id: str
    corpus: Corpus
    node_type: str
    display_name: str
    owning_file: Optional[str]
    data_type: Optional[str] = None
    file_path: Optional[str] = None
    line_start: Optional[int] = None
    line_end: Optional[int] = None
    content: Optional[str] = None
    embedding_text: Optional[str] = None
    embedding_text_hash: Optional[str] = None
    embedding: Optional[np.ndarray] = None
    chunk_index: Optional[int] = None
    metadata: Dict[str, Any] = field(default_factory=dict)


@dataclass(frozen=True)
class EdgeRow:
    """
    A directed, typed relationship.

    ``owning_file`` is stamped by the extraction pass that produced the edge.

    ::: This is-in-layer Domain-Layer.
    ::: This is a value-object.
    ::: This is stateless.
    """
    source_id: str
    target_id: str
    edge_type: EdgeType
    metadata: Dict[str, Any] = field(default_factory=dict)
    target_resolved: bool = True
    owning_file: Optional[str] = None


def now_iso() -> str:
    return datetime.now().isoformat()


def _cid(corpus: Union[Corpus, str]) -> str:
    return corpus.value if isinstance(corpus, Corpus) else str(corpus)


def _etype(edge_type: Union[EdgeType, str]) -> str:
    return edge_type.value if isinstance(edge_type, EdgeType) else str(edge_type)


def _dump_metadata(metadata: Optional[Dict[str, Any]]) -> Optional[str]:
    if not metadata:
        return None
    return json.dumps(metadata, sort_keys=True)


def load_metadata(raw: Optional[str]) -> Dict[str, Any]:
    if not raw:
        return {}
    try:
        value = json.loads(raw)
    except json.JSONDecodeError:
        return {}
    return value if isinstance(value, dict) else {}


def _vector_to_blob(vector: Optional[np.ndarray]) -> Optional[bytes]:
    if vector is None:
        return None
    return np.asarray(vector, dtype=np.float32).tobytes()


def _blob_to_vector(blob: Optional[bytes]) -> Optional[np.ndarray]:
    if blob is None:
        return None
    return np.frombuffer(blob, dtype=np.float32).copy()


def _chunks(items: Sequence, size: int = _IN_CHUNK):
    for start in range(0, len(items), size):
        yield items[start:start + size]


def _placeholders(count: int) -> str:
    return ",".join("?" * count)


class GraphStore:
    """
    SQLite-backed node/edge store shared by all corpora.

    ::: This is-in-layer Infrastructure-Layer.
    ::: This is a repository.
    ::: This is stateful.

    Features:
    - Thread-local connections
    - WAL mode so queries can read while an indexing pass writes
    - Automatic schema creation; databases of another schema version are refused
    - Re-entrant transactions: only the outermost ``transaction()`` commits

    Usage:
        store = GraphStore(db_path)
        with store.transaction():
            store.delete_nodes_by_owning_file(Corpus.CODE, paths)
            store.upsert_nodes(rows)
    """

    SCHEMA_VERSION = 1

    DEFAULT_DB_NAME = "knowledge.db"

    def __init__(self, db_path: Optional[Union[str, Path]] = None):
        """
        Args:
            db_path: Path to the SQLite database file. If None, uses
                     KNOWLEDGE_INDEX_DIR/knowledge.db
        """
        if db_path is None:
            index_dir = os.getenv(
                "KNOWLEDGE_INDEX_DIR",
                os.path.join(os.getcwd(), ".knowledge_index")
            )
            self._db_path = Path(index_dir) / self.DEFAULT_DB_NAME
        else:
            self._db_path = Path(db_path)

        self._db_path.parent.mkdir(parents=True, exist_ok=True)

        self._local = threading.local()
        self._schema_lock = threading.Lock()
        self._schema_initialized = False
        self._ensure_schema()

    @property
    def db_path(self) -> Path:
        """Return the database file path."""
        return self._db_path

    # =========================================================================
    # Connection management
    # =========================================================================

    def _get_connection(self) -> sqlite3.Connection:
        if getattr(self._local, 'connection', None) is None:
            conn = sqlite3.connect(
                str(self._db_path),
                check_same_thread=False,
                timeout=30.0
            )
            conn.execute("PRAGMA journal_mode=WAL")
            conn.execute("PRAGMA foreign_keys=ON")
            conn.row_factory = sqlite3.Row
            self._local.connection = conn
            self._local.depth = 0
        return self._local.connection

    @contextmanager
    def transaction(self):
        """
        Context manager for database transactions.

        Auto-commits on success and rolls back on exception. Nested
        transactions join the outermost one.

        Yields:
            sqlite3.Connection: Database connection
        """
        conn = self._get_connection()
        self._local.depth += 1
        try:
            yield conn
        except Exception:
            self._local.depth -= 1
            if self._local.depth == 0:
                conn.rollback()
            raise
        self._local.depth -= 1
        if self._local.depth == 0:
            conn.commit()

    def execute(self, sql: str, params: Optional[Union[Tuple, Dict, List]] = None) -> sqlite3.Cursor:
        conn = self._get_connection()
        if params is None:
            return conn.execute(sql)
        return conn.execute(sql, params)

    def fetch_one(self, sql: str, params: Optional[Union[Tuple, Dict, List]] = None) -> Optional[Dict[str, Any]]:
        """Execute a query and fetch one result as a dictionary."""
        row = self.execute(sql, params).fetchone()
        return dict(row) if row else None

    def fetch_all(self, sql: str, params: Optional[Union[Tuple, Dict, List]] = None) -> List[Dict[str, Any]]:
        """Execute a query and fetch all results as dictionaries."""
        return [dict(row) for row in self.execute(sql, params).fetchall()]

    def close(self) -> None:
        """Close the database connection for the current thread."""
        if getattr(self._local, 'connection', None) is not None:
            self._local.connection.close()
            self._local.connection = None

    def count(self, table_name: str, where: Optional[str] = None, params: Optional[Tuple] = None) -> int:
        sql = f"SELECT COUNT(*) AS n FROM {table_name}"
        if where:
            sql += f" WHERE {where}"
        row = self.fetch_one(sql, params)
        return row["n"] if row else 0

    # =========================================================================
    # Schema
    # =========================================================================

    def _ensure_schema(self) -> None:
        with self._schema_lock:
            if self._schema_initialized:
                return

            conn = self._get_connection()
            cursor = conn.execute(
                "SELECT name FROM sqlite_master WHERE type='table' AND name='schema_version'"
            )
            if cursor.fetchone() is None:
                conn.executescript(self._get_schema_sql())
                conn.execute(
                    "INSERT INTO schema_version (version, created_at, updated_at) VALUES (?, ?, ?)",
                    (self.SCHEMA_VERSION, now_iso(), now_iso())
                )
            else:
                row = conn.execute("SELECT version FROM schema_version").fetchone()
                current_version = row["version"] if row else 0
                if current_version != self.SCHEMA_VERSION:
                    raise GraphStoreError(
                        f"Graph store {self._db_path} has schema version {current_version}, "
                        f"expected {self.SCHEMA_VERSION}; delete it to rebuild the index"
                    )

            conn.commit()
            self._schema_initialized = True

    def _get_schema_sql(self) -> str:
        return """
CREATE TABLE IF NOT EXISTS schema_version (
    version INTEGER NOT NULL,
    created_at TEXT NOT NULL,
    updated_at TEXT NOT NULL
);

CREATE TABLE IF NOT EXISTS file_hashes (
    path TEXT NOT NULL,
    corpus TEXT NOT NULL,
    hash TEXT NOT NULL,
    last_indexed TEXT NOT NULL,
    status TEXT NOT NULL DEFAULT 'indexed' CHECK (status IN ('indexed', 'error')),
    PRIMARY KEY (path, corpus)
);

CREATE TABLE IF NOT EXISTS nodes (
    id TEXT PRIMARY KEY,
    corpus TEXT NOT NULL,
    node_type TEXT NOT NULL,
    data_type TEXT,
    display_name TEXT NOT NULL,
    file_path TEXT,
    line_start INTEGER,
    line_end INTEGER,
    content TEXT,
    embedding_text TEXT,
    embedding_text_hash TEXT,
    embedding BLOB,
    chunk_index INTEGER,
    owning_file TEXT,
    metadata TEXT
);

CREATE INDEX IF NOT EXISTS idx_nodes_corpus ON nodes(corpus);
CREATE INDEX IF NOT EXISTS idx_nodes_type ON nodes(node_type);
CREATE INDEX IF NOT EXISTS idx_nodes_display ON nodes(display_name COLLATE NOCASE);
CREATE INDEX IF NOT EXISTS idx_nodes_owning ON nodes(corpus, owning_file);
CREATE INDEX IF NOT EXISTS idx_nodes_chunk ON nodes(corpus, chunk_index);

CREATE TABLE IF NOT EXISTS edges (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    source_id TEXT NOT NULL,
    target_id TEXT NOT NULL,
    edge_type TEXT NOT NULL,
    corpus TEXT NOT NULL,
    owning_file TEXT,
    target_resolved INTEGER NOT NULL DEFAULT 1,
    metadata TEXT,
    UNIQUE (source_id, target_id, edge_type)
);

CREATE INDEX IF NOT EXISTS idx_edges_source ON edges(source_id, edge_type);
CREATE INDEX IF NOT EXISTS idx_edges_target ON edges(target_id, edge_type);
CREATE INDEX IF NOT EXISTS idx_edges_type ON edges(edge_type);
CREATE INDEX IF NOT EXISTS idx_edges_owning ON edges(corpus, owning_file);
CREATE INDEX IF NOT EXISTS idx_edges_unresolved ON edges(target_resolved) WHERE target_resolved = 0;

CREATE TABLE IF NOT EXISTS index_errors (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    file_path TEXT NOT NULL,
    corpus TEXT NOT NULL,
    error_type TEXT NOT NULL,
    message TEXT,
    created_at TEXT NOT NULL
);

CREATE INDEX IF NOT EXISTS idx_index_errors_corpus ON index_errors(corpus);

CREATE TABLE IF NOT EXISTS index_state (
    corpus TEXT NOT NULL,
    key TEXT NOT NULL,
    value TEXT,
    updated_at TEXT NOT NULL,
    PRIMARY KEY (corpus, key)
);
"""

    # =========================================================================
    # File hashes
    # =========================================================================

    def load_hashes(self, corpus: Corpus) -> Dict[str, str]:
        rows = self.fetch_all(
            "SELECT path, hash FROM file_hashes WHERE corpus = ?", (_cid(corpus),)
        )
        return {row["path"]: row["hash"] for row in rows}

    def save_hashes(self, hashes: Dict[str, str], corpus: Corpus, status: str = "indexed") -> None:
        stamp = now_iso()
        with self.transaction() as conn:
            conn.executemany(
                """INSERT INTO file_hashes (path, corpus, hash, last_indexed, status)
                   VALUES (?, ?, ?, ?, ?)
                   ON CONFLICT(path, corpus) DO UPDATE SET
                       hash = excluded.hash,
                       last_indexed = excluded.last_indexed,
                       status = excluded.status""",
                [(path, _cid(corpus), digest, stamp, status) for path, digest in hashes.items()]
            )

    def remove_hashes(self, paths: Iterable[str], corpus: Corpus) -> None:
        paths = list(paths)
        with self.transaction() as conn:
            for batch in _chunks(paths):
                conn.execute(
                    f"DELETE FROM file_hashes WHERE corpus = ? AND path IN ({_placeholders(len(batch))})",
                    [_cid(corpus), *batch]
                )

    # =========================================================================
    # Nodes
    # =========================================================================

    def upsert_nodes(self, rows: Iterable[NodeRow]) -> int:
        """Insert or replace nodes by id (last parse wins)."""
        params = [
            (
                row.id, _cid(row.corpus), row.node_type, row.data_type, row.display_name,
                row.file_path, row.line_start, row.line_end, row.content,
                row.embedding_text, row.embedding_text_hash, _vector_to_blob(row.embedding),
                row.chunk_index, row.owning_file, _dump_metadata(row.metadata),
            )
            for row in rows
        ]
        if not params:
            return 0
        with self.transaction() as conn:
            conn.executemany(
                """INSERT INTO nodes (id, corpus, node_type, data_type, display_name,
                                      file_path, line_start, line_end, content,
                                      embedding_text, embedding_text_hash, embedding,
                                      chunk_index, owning_file, metadata)
                   VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                   ON CONFLICT(id) DO UPDATE SET
                       corpus = excluded.corpus,
                       node_type = excluded.node_type,
                       data_type = excluded.data_type,
                       display_name = excluded.display_name,
                       file_path = excluded.file_path,
                       line_start = excluded.line_start,
                       line_end = excluded.line_end,
                       content = excluded.content,
                       embedding_text = excluded.embedding_text,
                       embedding_text_hash = excluded.embedding_text_hash,
                       embedding = excluded.embedding,
                       chunk_index = excluded.chunk_index,
                       owning_file = excluded.owning_file,
                       metadata = excluded.metadata""",
                params
            )
        return len(params)

    def delete_nodes_by_owning_file(self, corpus: Corpus, paths: Iterable[str]) -> int:
        """
        Delete the nodes owned by ``paths``.

        Edges of any corpus that point at a deleted node are flagged
        ``target_resolved = 0`` so the healer revisits them.
        """
        paths = list(paths)
        deleted = 0
        with self.transaction() as conn:
            for batch in _chunks(paths):
                owned = f"corpus = ? AND owning_file IN ({_placeholders(len(batch))})"
                params = [_cid(corpus), *batch]
                self._mark_targets_dangling(conn, owned, params)
                cursor = conn.execute(f"DELETE FROM nodes WHERE {owned}", params)
                deleted += cursor.rowcount
        return deleted

    @staticmethod
    def _mark_targets_dangling(conn: sqlite3.Connection, node_filter: str, params: Sequence[Any]) -> int:
        return conn.execute(
            "UPDATE edges SET target_resolved = 0 "
            f"WHERE target_resolved = 1 AND target_id IN (SELECT id FROM nodes WHERE {node_filter})",
            list(params)
        ).rowcount

    def get_node(self, node_id: str) -> Optional[Dict[str, Any]]:
        return self.fetch_one(f"SELECT {_NODE_COLUMNS} FROM nodes WHERE id = ?", (node_id,))

    def node_exists(self, node_id: str) -> bool:
        return self.fetch_one("SELECT 1 AS hit FROM nodes WHERE id = ?", (node_id,)) is not None

    def nodes_for_corpus(self, corpus: Corpus, node_type: Optional[str] = None) -> List[Dict[str, Any]]:
        if node_type:
            return self.fetch_all(
                f"SELECT {_NODE_COLUMNS} FROM nodes WHERE corpus = ? AND node_type = ? ORDER BY id",
                (_cid(corpus), node_type)
            )
        return self.fetch_all(
            f"SELECT {_NODE_COLUMNS} FROM nodes WHERE corpus = ? ORDER BY id", (_cid(corpus),)
        )

    def nodes_for_files(self, corpus: Corpus, paths: Iterable[str], node_type: Optional[str] = None) -> List[Dict[str, Any]]:
        """Nodes owned by any of ``paths``."""
        paths = list(paths)
        found: List[Dict[str, Any]] = []
        for batch in _chunks(paths):
            sql = (
                f"SELECT {_NODE_COLUMNS} FROM nodes "
                f"WHERE corpus = ? AND owning_file IN ({_placeholders(len(batch))})"
            )
            params: List[Any] = [_cid(corpus), *batch]
            if node_type:
                sql += " AND node_type = ?"
                params.append(node_type)
            found.extend(self.fetch_all(sql, params))
        return sorted(found, key=lambda row: row["id"])

    def get_nodes(self, node_ids: Sequence[str]) -> Dict[str, Dict[str, Any]]:
        """Node rows keyed by id; unknown ids are absent."""
        found: Dict[str, Dict[str, Any]] = {}
        for batch in _chunks(list(dict.fromkeys(node_ids))):
            rows = self.fetch_all(
                f"SELECT {_NODE_COLUMNS} FROM nodes WHERE id IN ({_placeholders(len(batch))})",
                list(batch)
            )
            for row in rows:
                found[row["id"]] = row
        return found

    def find_nodes_by_display_name(
        self,
        name: str,
        corpus: Optional[Corpus] = None,
        node_type: Optional[str] = None,
    ) -> List[Dict[str, Any]]:
        """Case-insensitive display-name lookup."""
        sql = f"SELECT {_NODE_COLUMNS} FROM nodes WHERE display_name = ? COLLATE NOCASE"
        params: List[Any] = [name]
        if corpus is not None:
            sql += " AND corpus = ?"
            params.append(_cid(corpus))
        if node_type:
            sql += " AND node_type = ?"
            params.append(node_type)
        return self.fetch_all(sql + " ORDER BY id", params)

    def display_names(self, corpora: Iterable[Corpus]) -> List[Tuple[str, str]]:
        """(node_id, display_name) for every node of the given corpora."""
        ids = [_cid(c) for c in corpora]
        if not ids:
            return []
        rows = self.fetch_all(
            f"SELECT id, display_name FROM nodes WHERE corpus IN ({_placeholders(len(ids))}) ORDER BY id",
            ids
        )
        return [(row["id"], row["display_name"]) for row in rows]

    def embedding_state(self, corpus: Corpus, node_ids: Sequence[str]) -> Dict[str, Tuple[Optional[str], Optional[np.ndarray]]]:
        """Stored (embedding_text_hash, vector) for the given node ids."""
        state: Dict[str, Tuple[Optional[str], Optional[np.ndarray]]] = {}
        node_ids = list(node_ids)
        for batch in _chunks(node_ids):
            rows = self.fetch_all(
                "SELECT id, embedding_text_hash, embedding FROM nodes "
                f"WHERE corpus = ? AND id IN ({_placeholders(len(batch))})",
                [_cid(corpus), *batch]
            )
            for row in rows:
                state[row["id"]] = (row["embedding_text_hash"], _blob_to_vector(row["embedding"]))
        return state

    def embedded_nodes(self, corpus: Corpus) -> List[Tuple[str, np.ndarray]]:
        """All (node_id, vector) pairs of a corpus, ordered by id."""
        rows = self.fetch_all(
            "SELECT id, embedding FROM nodes WHERE corpus = ? AND embedding IS NOT NULL ORDER BY id",
            (_cid(corpus),)
        )
        return [(row["id"], _blob_to_vector(row["embedding"])) for row in rows]

    def assign_chunk_indexes(self, corpus: Corpus, ordered_ids: Sequence[str]) -> None:
        """Make position in ``ordered_ids`` the vector-index ordinal of each node."""
        with self.transaction() as conn:
            conn.execute("UPDATE nodes SET chunk_index = NULL WHERE corpus = ?", (_cid(corpus),))
            conn.executemany(
                "UPDATE nodes SET chunk_index = ? WHERE id = ?",
                [(ordinal, node_id) for ordinal, node_id in enumerate(ordered_ids)]
            )

    # =========================================================================
    # Edges
    # =========================================================================

    def upsert_edges(self, rows: Iterable[EdgeRow], corpus: Corpus) -> int:
        """Insert edges, idempotent on (source, target, type)."""
        params = [
            (
                row.source_id, row.target_id, _etype(row.edge_type), _cid(corpus),
                row.owning_file, 1 if row.target_resolved else 0, _dump_metadata(row.metadata),
            )
            for row in rows
            if row.source_id != row.target_id
        ]
        if not params:
            return 0
        with self.transaction() as conn:
            conn.executemany(
                """INSERT INTO edges (source_id, target_id, edge_type, corpus,
                                      owning_file, target_resolved, metadata)
                   VALUES (?, ?, ?, ?, ?, ?, ?)
                   ON CONFLICT(source_id, target_id, edge_type) DO UPDATE SET
                       corpus = excluded.corpus,
                       owning_file = excluded.owning_file,
                       target_resolved = excluded.target_resolved,
                       metadata = excluded.metadata""",
                params
            )
        return len(params)

    def scoped_delete(
        self,
        corpus: Corpus,
        edge_types: Iterable[EdgeType],
        owning_files: Optional[Iterable[str]] = None,
    ) -> int:
        """
        Delete edges written by ``corpus`` whose type is in ``edge_types``.

        Args:
            corpus: Corpus whose indexer wrote the edges
            edge_types: Mandatory allow-list; every entry must be owned or
                bridged by ``corpus``
            owning_files: Optionally narrow the delete to these owning files

        Raises:
            ScopedDeleteError: if the allow-list is empty or names an edge
                type the corpus does not own
        """
        types = {EdgeType(_etype(t)) for t in edge_types}
        if not types:
            raise ScopedDeleteError(f"Scoped delete for '{_cid(corpus)}' requires an edge-type allow-list")
        foreign = types - deletable_edge_types(Corpus(_cid(corpus)))
        if foreign:
            names = ", ".join(sorted(t.value for t in foreign))
            raise ScopedDeleteError(f"Corpus '{_cid(corpus)}' does not own edge types: {names}")

        type_values = sorted(t.value for t in types)
        base = (
            f"DELETE FROM edges WHERE corpus = ? "
            f"AND edge_type IN ({_placeholders(len(type_values))})"
        )
        deleted = 0
        with self.transaction() as conn:
            if owning_files is None:
                deleted = conn.execute(base, [_cid(corpus), *type_values]).rowcount
            else:
                paths = list(owning_files)
                for batch in _chunks(paths):
                    deleted += conn.execute(
                        base + f" AND owning_file IN ({_placeholders(len(batch))})",
                        [_cid(corpus), *type_values, *batch]
                    ).rowcount
        return deleted

    def edges_from(self, source_id: str, edge_type: Optional[EdgeType] = None) -> List[Dict[str, Any]]:
        if edge_type is None:
            return self.fetch_all("SELECT * FROM edges WHERE source_id = ? ORDER BY id", (source_id,))
        return self.fetch_all(
            "SELECT * FROM edges WHERE source_id = ? AND edge_type = ? ORDER BY id",
            (source_id, _etype(edge_type))
        )

    def edges_to(self, target_id: str, edge_type: Optional[EdgeType] = None) -> List[Dict[str, Any]]:
        if edge_type is None:
            return self.fetch_all("SELECT * FROM edges WHERE target_id = ? ORDER BY id", (target_id,))
        return self.fetch_all(
            "SELECT * FROM edges WHERE target_id = ? AND edge_type = ? ORDER BY id",
            (target_id, _etype(edge_type))
        )

    def unresolved_edges(self, after_id: int, limit: int, corpus: Optional[Corpus] = None) -> List[Dict[str, Any]]:
        """Non-virtual dangling edges with rowid greater than ``after_id``."""
        sql = (
            "SELECT id, source_id, target_id, edge_type, corpus FROM edges "
            "WHERE target_resolved = 0 AND target_id NOT LIKE 'virtual:%' AND id > ?"
        )
        params: List[Any] = [after_id]
        if corpus is not None:
            sql += " AND corpus = ?"
            params.append(_cid(corpus))
        return self.fetch_all(sql + " ORDER BY id LIMIT ?", [*params, limit])

    def mark_edges_resolved(self, edge_ids: Sequence[int]) -> int:
        updated = 0
        with self.transaction() as conn:
            for batch in _chunks(list(edge_ids)):
                updated += conn.execute(
                    f"UPDATE edges SET target_resolved = 1 WHERE id IN ({_placeholders(len(batch))})",
                    list(batch)
                ).rowcount
        return updated

    def retarget_edge(self, edge_id: int, target_id: str) -> bool:
        """
        Point a dangling edge at ``target_id`` and mark it resolved.

        When an identical edge already exists the dangling one is dropped.
        Returns False in that case.
        """
        with self.transaction() as conn:
            try:
                conn.execute(
                    "UPDATE edges SET target_id = ?, target_resolved = 1 WHERE id = ?",
                    (target_id, edge_id)
                )
            except sqlite3.IntegrityError:
                conn.execute("DELETE FROM edges WHERE id = ?", (edge_id,))
                return False
        return True

    def edge_counts(self, corpus: Optional[Corpus] = None) -> Dict[str, int]:
        if corpus is None:
            rows = self.fetch_all("SELECT edge_type, COUNT(*) AS n FROM edges GROUP BY edge_type")
        else:
            rows = self.fetch_all(
                "SELECT edge_type, COUNT(*) AS n FROM edges WHERE corpus = ? GROUP BY edge_type",
                (_cid(corpus),)
            )
        return {row["edge_type"]: row["n"] for row in rows}

    # =========================================================================
    # Errors and index state
    # =========================================================================

    def record_error(self, file_path: str, corpus: Corpus, error_type: str, message: str) -> None:
        with self.transaction() as conn:
            conn.execute(
                "INSERT INTO index_errors (file_path, corpus, error_type, message, created_at) "
                "VALUES (?, ?, ?, ?, ?)",
                (file_path, _cid(corpus), error_type, message, now_iso())
            )

    def clear_errors(self, corpus: Corpus, paths: Iterable[str]) -> None:
        """Forget earlier errors of files that are being parsed again or were removed."""
        with self.transaction() as conn:
            for batch in _chunks(list(paths)):
                conn.execute(
                    f"DELETE FROM index_errors WHERE corpus = ? AND file_path IN ({_placeholders(len(batch))})",
                    [_cid(corpus), *batch]
                )

    def get_errors(self, corpus: Corpus) -> List[Dict[str, Any]]:
        return self.fetch_all(
            "SELECT file_path, error_type, message, created_at FROM index_errors "
            "WHERE corpus = ? ORDER BY id", (_cid(corpus),)
        )

    def get_state(self, corpus: Corpus, key: str) -> Optional[str]:
        row = self.fetch_one(
            "SELECT value FROM index_state WHERE corpus = ? AND key = ?", (_cid(corpus), key)
        )
        return row["value"] if row else None

    def set_state(self, corpus: Corpus, key: str, value: str) -> None:
        with self.transaction() as conn:
            conn.execute(
                """INSERT INTO index_state (corpus, key, value, updated_at) VALUES (?, ?, ?, ?)
                   ON CONFLICT(corpus, key) DO UPDATE SET
                       value = excluded.value, updated_at = excluded.updated_at""",
                (_cid(corpus), key, value, now_iso())
            )

    def clear_state(self, corpus: Corpus, key: str) -> None:
        with self.transaction() as conn:
            conn.execute("DELETE FROM index_state WHERE corpus = ? AND key = ?", (_cid(corpus), key))

    def wipe_corpus(self, corpus: Corpus) -> None:
        """Remove a corpus's nodes, its owned and bridge edges, hashes, errors and state."""
        corpus = Corpus(_cid(corpus))
        with self.transaction() as conn:
            self._mark_targets_dangling(conn, "corpus = ?", (corpus.value,))
            conn.execute("DELETE FROM nodes WHERE corpus = ?", (corpus.value,))
            self.scoped_delete(corpus, deletable_edge_types(corpus))
            conn.execute("DELETE FROM file_hashes WHERE corpus = ?", (corpus.value,))
            conn.execute("DELETE FROM index_errors WHERE corpus = ?", (corpus.value,))
            conn.execute("DELETE FROM index_state WHERE corpus = ?", (corpus.value,))
        logger.info("Wiped corpus %s", corpus.value)


_NODE_COLUMNS = (
    "id, corpus, node_type, data_type, display_name, file_path, line_start, line_end, "
    "content, embedding_text, embedding_text_hash, chunk_index, owning_file, metadata"
)
