"""
knowledge-index command line.

Sets KNOWLEDGE_PROJECT_ROOT from --project BEFORE the heavy imports so the
index directory and log files land in the right project.

Commands:
    index   incremental indexing pass over the configured chunk sources
    search  routed hybrid search
    stats   per-corpus node, edge and index statistics
    heal    one dangling-edge healing sweep
    serve   MCP server on stdio
"""

import argparse
import json
import os
import signal
import sys
from pathlib import Path
from typing import List, Optional


def _early_setup(project: Optional[Path]) -> Path:
    project_path = (project or Path.cwd()).resolve()
    os.environ["KNOWLEDGE_PROJECT_ROOT"] = str(project_path)
    return project_path


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="knowledge-index",
        description="Incremental knowledge indexing and hybrid retrieval",
    )
    parser.add_argument("--project", "-p", type=Path, default=None,
                        help="Project root directory (default: current directory)")
    parser.add_argument("--verbose", "-v", action="store_true", help="Verbose logging")
    sub = parser.add_subparsers(dest="command", required=True)

    index = sub.add_parser("index", help="Index changed files of the given corpora")
    index.add_argument("--code-dump", type=Path, help="JSONL dump of code chunks from the source extractor")
    index.add_argument("--code-version", default="1", help="Text builder version of the code dump")
    index.add_argument("--gamedata", type=Path, help="Game data directory (JSON records)")
    index.add_argument("--client", type=Path, help="Client UI directory (.ui / .xaml)")
    index.add_argument("--docs", type=Path, help="Docs directory (Markdown)")
    index.add_argument("--corpus", "-c", action="append", dest="corpora",
                       help="Only index this corpus (repeatable)")
    index.add_argument("--no-console", action="store_true", help="Disable the progress UI")

    search = sub.add_parser("search", help="Search the index")
    search.add_argument("query")
    search.add_argument("--corpus", "-c", action="append", dest="corpora",
                        help="Search this corpus (repeatable, default: all)")
    search.add_argument("--mode", choices=["auto", "semantic", "structural"], default="auto")
    search.add_argument("--limit", "-n", type=int, default=None)
    search.add_argument("--expand", action="store_true", help="Add cross-corpus neighbours")
    search.add_argument("--json", action="store_true", help="Print results as JSON")

    stats = sub.add_parser("stats", help="Show index statistics")
    stats.add_argument("--corpus", "-c", action="append", dest="corpora")
    stats.add_argument("--json", action="store_true")

    heal = sub.add_parser("heal", help="Run one dangling-edge healing sweep")
    heal.add_argument("--corpus", "-c", default=None)

    sub.add_parser("serve", help="Run the MCP server on stdio")
    return parser


def _open(project: Path):
    from .services.config_loader import load_config
    from .services.graph_store import GraphStore
    from .services.vector_index import CorpusIndexManager

    config = load_config(project)
    index_dir = Path(config["index_path"])
    store = GraphStore(index_dir / GraphStore.DEFAULT_DB_NAME)
    return config, store, CorpusIndexManager(index_dir)


def _corpora(values: Optional[List[str]]):
    from .services.corpus import Corpus
    return [Corpus.from_id(v) for v in values] if values else None


def _sources(args):
    from .services.chunk_source import GameDataDirectorySource, JsonlChunkSource, TextFileSource
    from .services.corpus import Corpus

    sources = []
    if args.code_dump:
        sources.append(JsonlChunkSource(Corpus.CODE, args.code_dump, args.code_version))
    if args.gamedata:
        sources.append(GameDataDirectorySource(args.gamedata))
    if args.client:
        sources.append(TextFileSource.for_client(args.client))
    if args.docs:
        sources.append(TextFileSource.for_docs(args.docs))
    return sources


def run_index(args, project: Path) -> int:
    from rich.console import Console

    from .services.console_progress import ConsoleProgress
    from .services.indexing_orchestrator import CancellationToken, IndexingOrchestrator

    config, store, manager = _open(project)
    sources = _sources(args)
    if not sources:
        print("No chunk sources given (use --code-dump, --gamedata, --client or --docs)", file=sys.stderr)
        return 2

    orchestrator = IndexingOrchestrator(store, manager, config)
    token = CancellationToken()
    signal.signal(signal.SIGINT, lambda signum, frame: token.cancel())

    corpora = _corpora(args.corpora)
    use_console = not args.no_console and sys.stdout.isatty()
    if use_console:
        selected = corpora or [s.corpus for s in sources]
        progress = ConsoleProgress(selected, Console())
        with progress:
            reports = orchestrator.run(sources, corpora, token, progress.on_progress)
        progress.stop(reports)
    else:
        reports = orchestrator.run(sources, corpora, token)
        for report in reports:
            print(json.dumps(report.to_dict()))

    store.close()
    return 0 if all(r.ok for r in reports) else 1


def run_search(args, project: Path) -> int:
    from rich.console import Console
    from rich.table import Table

    from .knowledge_exceptions import RebuildRequiredError
    from .services.knowledge_search import KnowledgeSearchService

    config, store, manager = _open(project)
    service = KnowledgeSearchService(store, manager, config)
    try:
        if args.expand:
            results = service.search_with_expansion(args.query, _corpora(args.corpora), args.limit)
        else:
            results = service.search(args.query, _corpora(args.corpora), args.mode, args.limit)
    except RebuildRequiredError as e:
        print(f"Index for corpus '{e.corpus}' must be rebuilt: {e}", file=sys.stderr)
        return 1
    finally:
        service.close()
        store.close()

    if args.json:
        print(json.dumps([r.model_dump(mode="json", exclude_none=True) for r in results], indent=2))
        return 0

    table = Table(title=f"Results for: {args.query}")
    table.add_column("#", justify="right")
    table.add_column("Score", justify="right")
    table.add_column("Corpus")
    table.add_column("Name")
    table.add_column("Location")
    table.add_column("Via")
    for rank, r in enumerate(results, 1):
        location = f"{r.file_path}:{r.line_start}" if r.line_start else r.file_path
        via = f"{r.bridge_edge_type} from {r.bridged_from}" if r.bridge_edge_type else r.source.value
        table.add_row(str(rank), f"{r.score:.3f}", r.corpus, r.display_name, location, via)
    Console().print(table)
    return 0


def run_stats(args, project: Path) -> int:
    from rich.console import Console
    from rich.table import Table

    from .services.knowledge_search import KnowledgeSearchService

    config, store, manager = _open(project)
    try:
        stats = KnowledgeSearchService(store, manager, config).get_all_stats(_corpora(args.corpora))
    finally:
        store.close()
    if args.json:
        print(json.dumps([s.model_dump(mode="json") for s in stats], indent=2))
        return 0

    table = Table(title="Knowledge index")
    for column in ("Corpus", "Nodes", "Edges", "Unresolved", "Errors", "Vector index"):
        table.add_column(column)
    for s in stats:
        index_state = "rebuild required" if s.rebuild_required else ("loaded" if s.vector_index_loaded else "-")
        table.add_row(
            s.corpus, f"{s.node_count:,}", f"{s.edge_count:,}",
            str(s.unresolved_edge_count), str(s.error_count), index_state,
        )
    Console().print(table)
    return 0


def run_heal(args, project: Path) -> int:
    from .services.healing import DanglingEdgeHealer

    config, store, _ = _open(project)
    healer = DanglingEdgeHealer(store, config["healing_batch_size"], config["healing_max_batches"])
    corpora = _corpora([args.corpus] if args.corpus else None)
    try:
        report = healer.sweep(corpora[0] if corpora else None)
    finally:
        store.close()
    print(json.dumps({
        "scanned": report.scanned,
        "resolved": report.resolved,
        "retargeted": report.retargeted,
        "dropped_duplicates": report.dropped_duplicates,
        "exhausted": report.exhausted,
    }))
    return 0


def run_serve(args, project: Path) -> int:
    from .mcp_server import create_server
    create_server(project).run()
    return 0


COMMANDS = {
    "index": run_index,
    "search": run_search,
    "stats": run_stats,
    "heal": run_heal,
    "serve": run_serve,
}


def main(argv: Optional[List[str]] = None) -> int:
    args = build_parser().parse_args(argv)
    project = _early_setup(args.project)

    import logging
    logging.getLogger().setLevel(logging.DEBUG if args.verbose else logging.INFO)

    try:
        return COMMANDS[args.command](args, project)
    except ValueError as e:
        print(f"error: {e}", file=sys.stderr)
        return 2


if __name__ == "__main__":
    sys.exit(main())
