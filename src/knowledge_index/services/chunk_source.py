"""
Chunk Sources

A chunk source is the boundary between the indexer and whatever produces
content for a corpus. It reports a content hash per file (``scan``) and turns
the files that changed into chunks (``parse``). Sources must be deterministic:
identical input yields identical hashes and chunks.

Reference sources:
- StaticChunkSource: in-memory chunks, for tests and embedding callers
- JsonlChunkSource: a chunk dump produced by an external extractor
- GameDataDirectorySource: a tree of JSON/JSONC game data files
- TextFileSource: docs pages and client UI files, one chunk per file
"""

import json
import os
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, Iterable, List, Optional, Sequence, Tuple, Union

from ..knowledge_exceptions import ChunkParseError
from ..logging_config import configure_logger_for_debug_trace
from .corpus import Corpus
from .hash_tracker import compute_file_hash, compute_hash
from .records import Record, parse_jsonc

logger = configure_logger_for_debug_trace(__name__)


@dataclass
class Chunk:
    """
    One unit of content extracted from a source file.

    ::: This is-in-layer Domain-Layer.
    ::: This is a value-object.
    ::: This is stateless.
    """
    id: str
    relative_path: str
    content_hash: str
    raw_content: str
    embedding_text: str
    declared_type: Optional[str]
    display_name: str
    node_type: str
    line_start: Optional[int] = None
    line_end: Optional[int] = None
    metadata: Dict[str, Any] = field(default_factory=dict)

    @property
    def embedding_text_hash(self) -> str:
        return compute_hash(self.embedding_text or "")

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Chunk":
        """Build from a dump record; optional fields get derived defaults."""
        raw = data.get("raw_content") or data.get("content") or ""
        declared = data.get("declared_type") or data.get("data_type")
        return cls(
            id=data["id"],
            relative_path=data["relative_path"],
            content_hash=data.get("content_hash") or compute_hash(raw),
            raw_content=raw,
            embedding_text=data.get("embedding_text") or raw,
            declared_type=declared,
            display_name=data.get("display_name") or data["id"],
            node_type=data.get("node_type") or declared or "chunk",
            line_start=data.get("line_start"),
            line_end=data.get("line_end"),
            metadata=dict(data.get("metadata") or {}),
        )


@dataclass
class ParseError:
    path: str
    error_type: str
    message: str


@dataclass
class ParseResult:
    chunks: List[Chunk] = field(default_factory=list)
    errors: List[ParseError] = field(default_factory=list)


class ChunkSource(ABC):
    """
    Produces file hashes and chunks for one corpus.

    ::: This is-in-layer Infrastructure-Layer.
    ::: This is a source.
    ::: This is stateful.

    ``text_builder_version`` must change whenever the way chunks or their
    embedding text are built changes; the indexer wipes the corpus when the
    stored version differs.
    """

    corpus: Corpus
    text_builder_version: str = "1"
    # Errors not tied to one corpus file are recorded under this path
    source_error_path: Optional[str] = None

    @abstractmethod
    def scan(self) -> Dict[str, str]:
        """Current {relative_path: content_hash} of every file."""

    @abstractmethod
    def parse(self, paths: Sequence[str]) -> ParseResult:
        """Chunks for ``paths``; failing files are reported, not raised."""


def _file_hash_of(chunks: Sequence[Chunk]) -> str:
    return compute_hash("\n".join(sorted(c.content_hash for c in chunks)))


def _posix(path: Union[str, Path]) -> str:
    return str(path).replace(os.sep, "/")


class StaticChunkSource(ChunkSource):
    """In-memory chunks grouped by file. ``failures`` simulate unparseable files."""

    def __init__(
        self,
        corpus: Corpus,
        chunks: Iterable[Chunk] = (),
        text_builder_version: str = "1",
        failures: Optional[Dict[str, str]] = None,
    ):
        self.corpus = corpus
        self.text_builder_version = text_builder_version
        self._files: Dict[str, List[Chunk]] = {}
        self._failures: Dict[str, str] = dict(failures or {})
        self.parsed_paths: List[str] = []
        for chunk in chunks:
            self._files.setdefault(chunk.relative_path, []).append(chunk)

    def set_file(self, path: str, chunks: Sequence[Chunk]) -> None:
        self._files[path] = list(chunks)
        self._failures.pop(path, None)

    def remove_file(self, path: str) -> None:
        self._files.pop(path, None)
        self._failures.pop(path, None)

    def fail_file(self, path: str, message: str) -> None:
        self._files.pop(path, None)
        self._failures[path] = message

    def scan(self) -> Dict[str, str]:
        hashes = {path: _file_hash_of(chunks) for path, chunks in self._files.items()}
        for path, message in self._failures.items():
            hashes[path] = compute_hash(f"unparseable:{message}")
        return hashes

    def parse(self, paths: Sequence[str]) -> ParseResult:
        result = ParseResult()
        for path in paths:
            self.parsed_paths.append(path)
            if path in self._failures:
                result.errors.append(ParseError(path, "parse", self._failures[path]))
                continue
            result.chunks.extend(self._files.get(path, []))
        return result


class JsonlChunkSource(ChunkSource):
    """
    Chunks from a JSON Lines dump, one chunk object per line.

    Used for the code corpus, where an external AST extractor writes method
    chunks with class structure in ``metadata``.
    """

    def __init__(self, corpus: Corpus, dump_path: Union[str, Path], text_builder_version: str = "1"):
        self.corpus = corpus
        self.text_builder_version = text_builder_version
        self._dump_path = Path(dump_path)
        self.source_error_path = self._dump_path.name
        self._files: Dict[str, List[Chunk]] = {}
        self._bad_lines: List[ParseError] = []

    def _load(self) -> None:
        self._files = {}
        self._bad_lines = []
        with open(self._dump_path, "r", encoding="utf-8") as f:
            for lineno, line in enumerate(f, start=1):
                line = line.strip()
                if not line:
                    continue
                try:
                    chunk = Chunk.from_dict(json.loads(line))
                except (json.JSONDecodeError, KeyError, TypeError) as e:
                    self._bad_lines.append(
                        ParseError(self.source_error_path, "parse", f"line {lineno}: {e}")
                    )
                    continue
                self._files.setdefault(chunk.relative_path, []).append(chunk)
        if self._bad_lines:
            logger.warning(f"{len(self._bad_lines)} malformed lines in {self._dump_path}")

    def scan(self) -> Dict[str, str]:
        self._load()
        return {path: _file_hash_of(chunks) for path, chunks in self._files.items()}

    def parse(self, paths: Sequence[str]) -> ParseResult:
        if not self._files and not self._bad_lines:
            self._load()
        result = ParseResult(errors=list(self._bad_lines))
        self._bad_lines = []
        for path in paths:
            result.chunks.extend(self._files.get(path, []))
        return result


# Ordered (directory keyword, data_type); the first keyword found among a
# file's directory names decides its type. Specific directories come first.
GAMEDATA_PATH_RULES: Tuple[Tuple[str, str], ...] = (
    ("recipes", "recipe"),
    ("interactions", "interaction"),
    ("rootinteractions", "interaction"),
    ("blocktypes", "block"),
    ("blocks", "block"),
    ("drops", "drop"),
    ("groups", "npc_group"),
    ("npcgroups", "npc_group"),
    ("ai", "npc_ai"),
    ("npc", "npc"),
    ("npcs", "npc"),
    ("roles", "npc"),
    ("bartershops", "shop"),
    ("shops", "shop"),
    ("objectives", "objective"),
    ("objective", "objective"),
    ("farming", "farming"),
    ("projectiles", "projectile"),
    ("weathers", "weather"),
    ("weather", "weather"),
    ("environments", "environment"),
    ("biomes", "biome"),
    ("zones", "zone"),
    ("caves", "cave"),
    ("prefabs", "prefab"),
    ("worldgen", "worldgen"),
    ("camera", "camera"),
    ("entity", "entity"),
    ("entities", "entity"),
    ("items", "item"),
    ("item", "item"),
    ("languages", "localization"),
)

GAMEDATA_TYPE_LABELS = {
    "item": "Item", "recipe": "Recipe", "block": "Block", "interaction": "Interaction",
    "drop": "Drop", "npc": "NPC", "npc_group": "NPC Group", "npc_ai": "NPC AI",
    "entity": "Entity", "projectile": "Projectile", "farming": "Farming", "shop": "Shop",
    "environment": "Environment", "weather": "Weather", "biome": "Biome",
    "worldgen": "World Gen", "camera": "Camera", "objective": "Objective",
    "gameplay": "Gameplay", "localization": "Localization", "zone": "Zone",
    "terrain_layer": "Terrain Layer", "cave": "Cave", "prefab": "Prefab",
}

GAMEDATA_NODE_TYPE = "GameData"

# Id-valued keys that name virtual kinds, not other game data files
_NON_RELATED_ID_KEYS = frozenset({"SystemId", "EffectId", "ResourceTypeId"})
_MAX_RELATED_IDS = 50
_MAX_FACT_LINES = 40


def classify_gamedata_path(relative_path: str, rules: Sequence[Tuple[str, str]] = GAMEDATA_PATH_RULES) -> str:
    directories = [part.lower() for part in relative_path.split("/")[:-1]]
    for keyword, data_type in rules:
        if keyword in directories:
            return data_type
    return "gameplay"


def collect_related_ids(data: Any) -> List[str]:
    """String values of ``*Id`` keys anywhere in a record, in document order."""
    found: List[str] = []

    def walk(node: Any) -> None:
        if len(found) >= _MAX_RELATED_IDS:
            return
        if isinstance(node, dict):
            for key, value in node.items():
                if (
                    isinstance(value, str) and value.strip()
                    and key.endswith("Id") and key not in _NON_RELATED_ID_KEYS
                    and value not in found
                ):
                    found.append(value)
                else:
                    walk(value)
        elif isinstance(node, list):
            for value in node:
                walk(value)

    walk(data)
    return found[:_MAX_RELATED_IDS]


def build_gamedata_text(data_type: str, name: str, record: Record, related_ids: Sequence[str]) -> str:
    """Embedding text: a type header, scalar facts, then referenced ids."""
    lines = [f"{GAMEDATA_TYPE_LABELS.get(data_type, data_type)}: {name}"]
    for key, value in record.items():
        if len(lines) > _MAX_FACT_LINES:
            break
        if isinstance(value, bool) or isinstance(value, (int, float)):
            lines.append(f"{key}: {value}")
        elif isinstance(value, str) and value.strip():
            lines.append(f"{key}: {value.strip()[:200]}")
        elif isinstance(value, list) and value and all(isinstance(v, str) for v in value):
            lines.append(f"{key}: {', '.join(value[:20])}")
    if related_ids:
        lines.append(f"References: {', '.join(related_ids)}")
    return "\n".join(lines)


class GameDataDirectorySource(ChunkSource):
    """
    A directory of game data JSON files, one chunk per file.

    The node id is ``gamedata:{relative_path}`` and the display name is the
    filename stem, which is the join key identifier resolution relies on.
    """

    TEXT_BUILDER_VERSION = "gamedata-text-1"

    def __init__(
        self,
        root: Union[str, Path],
        rules: Sequence[Tuple[str, str]] = GAMEDATA_PATH_RULES,
        text_builder_version: Optional[str] = None,
    ):
        self.corpus = Corpus.GAMEDATA
        self.text_builder_version = text_builder_version or self.TEXT_BUILDER_VERSION
        self._root = Path(root)
        self._rules = tuple(rules)

    @property
    def root(self) -> Path:
        return self._root

    def scan(self) -> Dict[str, str]:
        hashes = {}
        for path in sorted(self._root.rglob("*.json")):
            if path.is_file():
                hashes[_posix(path.relative_to(self._root))] = compute_file_hash(path)
        return hashes

    def parse(self, paths: Sequence[str]) -> ParseResult:
        result = ParseResult()
        for relative_path in paths:
            try:
                result.chunks.append(self._parse_file(relative_path))
            except ChunkParseError as e:
                result.errors.append(ParseError(relative_path, "parse", str(e)))
            except OSError as e:
                result.errors.append(ParseError(relative_path, "io", str(e)))
        return result

    def _parse_file(self, relative_path: str) -> Chunk:
        try:
            raw = (self._root / relative_path).read_bytes().decode("utf-8")
        except UnicodeDecodeError as e:
            raise ChunkParseError(f"Not valid UTF-8: {e}", file_path=relative_path) from e
        data = parse_jsonc(raw, relative_path)
        if not isinstance(data, dict):
            raise ChunkParseError("Top-level JSON value is not an object", file_path=relative_path)

        record = Record(data)
        data_type = classify_gamedata_path(relative_path, self._rules)
        name = Path(relative_path).stem
        related_ids = collect_related_ids(data)
        tags = record.array_at("Tags", "tags", "Categories") or []

        return Chunk(
            id=f"gamedata:{relative_path}",
            relative_path=relative_path,
            content_hash=compute_hash(raw),
            raw_content=raw,
            embedding_text=build_gamedata_text(data_type, name, record, related_ids),
            declared_type=data_type,
            display_name=name,
            node_type=GAMEDATA_NODE_TYPE,
            metadata={
                "related_ids": related_ids,
                "tags": [t for t in tags if isinstance(t, str)],
            },
        )


class TextFileSource(ChunkSource):
    """
    Plain text files as single chunks (docs pages, client UI definitions).

    Args:
        corpus: DOCS or CLIENT
        root: Directory to scan
        patterns: Glob patterns relative to ``root``
        id_prefix: Node id namespace, e.g. ``docs`` or ``ui``
        node_type: Node type written for every chunk
    """

    TEXT_BUILDER_VERSION = "text-file-1"
    MAX_EMBEDDING_CHARS = 8000

    def __init__(
        self,
        corpus: Corpus,
        root: Union[str, Path],
        patterns: Sequence[str],
        id_prefix: str,
        node_type: str,
        text_builder_version: Optional[str] = None,
    ):
        self.corpus = corpus
        self.text_builder_version = text_builder_version or self.TEXT_BUILDER_VERSION
        self._root = Path(root)
        self._patterns = tuple(patterns)
        self._id_prefix = id_prefix
        self._node_type = node_type

    @classmethod
    def for_docs(cls, root: Union[str, Path]) -> "TextFileSource":
        return cls(Corpus.DOCS, root, ("*.md", "*.markdown"), "docs", "DocsPage")

    @classmethod
    def for_client(cls, root: Union[str, Path]) -> "TextFileSource":
        return cls(Corpus.CLIENT, root, ("*.ui", "*.xaml"), "ui", "ui")

    def scan(self) -> Dict[str, str]:
        files = set()
        for pattern in self._patterns:
            files.update(p for p in self._root.rglob(pattern) if p.is_file())
        return {
            _posix(path.relative_to(self._root)): compute_file_hash(path)
            for path in sorted(files)
        }

    def parse(self, paths: Sequence[str]) -> ParseResult:
        result = ParseResult()
        for relative_path in paths:
            try:
                raw = (self._root / relative_path).read_text(encoding="utf-8", errors="replace")
            except OSError as e:
                result.errors.append(ParseError(relative_path, "io", str(e)))
                continue
            title = self._title(relative_path, raw)
            result.chunks.append(Chunk(
                id=f"{self._id_prefix}:{relative_path}",
                relative_path=relative_path,
                content_hash=compute_hash(raw),
                raw_content=raw,
                embedding_text=f"{title}\n{raw}"[:self.MAX_EMBEDDING_CHARS],
                declared_type=Path(relative_path).suffix.lstrip(".").lower() or None,
                display_name=Path(relative_path).stem,
                node_type=self._node_type,
                line_start=1,
                line_end=raw.count("\n") + 1,
                metadata={"title": title},
            ))
        return result

    def _title(self, relative_path: str, raw: str) -> str:
        if self.corpus == Corpus.DOCS:
            for line in raw.splitlines():
                if line.startswith("# "):
                    return line[2:].strip()
        return Path(relative_path).stem
