"""
Console Progress Display for indexing passes

Rich-based console UI with one progress bar per corpus and a status row for
every corpus in the pass. Used by ``knowledge-index index`` in interactive
(TTY) mode.
"""

import time
from typing import Dict, Iterable, List, Optional

from rich.console import Console, Group
from rich.live import Live
from rich.panel import Panel
from rich.progress import (
    BarColumn,
    MofNCompleteColumn,
    Progress,
    SpinnerColumn,
    TextColumn,
    TimeElapsedColumn,
)
from rich.table import Table
from rich.text import Text

from ..logging_config import restore_stderr_logging, suppress_stderr_logging
from .corpus import Corpus
from .indexing_orchestrator import CorpusReport, IndexPhase

_PHASE_LABELS = {
    IndexPhase.DETECT_CHANGES: "Detecting changes",
    IndexPhase.PARSE: "Parsing",
    IndexPhase.FILTER_CHANGED: "Filtering unchanged",
    IndexPhase.EMBED: "Embedding",
    IndexPhase.WRITE_GRAPH_STORE: "Writing graph store",
    IndexPhase.BUILD_VECTOR_INDEX: "Building vector index",
    IndexPhase.EXTRACT_EDGES: "Extracting edges",
    IndexPhase.DONE: "Done",
}

_STATUS_ICONS = {
    "indexed": "[green]✓[/green]",
    "up_to_date": "[green]✓[/green]",
    "running": "[yellow]●[/yellow]",
    "failed": "[red]✗[/red]",
    "cancelled": "[red]⊘[/red]",
}


class ConsoleProgress:
    """
    Live progress for a multi-corpus indexing pass.

    ::: This is-in-layer Presentation-Layer.
    ::: This is a view.
    ::: This is stateful.
    """

    def __init__(self, corpora: Iterable[Corpus], console: Optional[Console] = None):
        self.console = console or Console()
        self._live: Optional[Live] = None
        self._start_time = time.time()

        self._progress = Progress(
            SpinnerColumn(),
            TextColumn("[bold blue]{task.description}"),
            BarColumn(bar_width=40),
            MofNCompleteColumn(),
            TimeElapsedColumn(),
            console=self.console,
            expand=False,
        )
        self._corpora: List[Corpus] = list(corpora)
        self._tasks: Dict[Corpus, int] = {}
        self._status: Dict[Corpus, str] = {c: "pending" for c in self._corpora}
        self._phase = "Starting..."

    def start(self) -> None:
        """Start the live display and silence stderr logging."""
        self._start_time = time.time()
        suppress_stderr_logging()
        self._live = Live(
            self._build_display(),
            console=self.console,
            refresh_per_second=10,
            transient=False,
        )
        self._live.start()

    def stop(self, reports: Optional[List[CorpusReport]] = None) -> None:
        """Stop the live display, restore stderr and print a summary."""
        if self._live:
            self._live.stop()
            self._live = None
        restore_stderr_logging()

        elapsed = time.time() - self._start_time
        reports = reports or []
        failed = [r for r in reports if r.status in ("failed", "cancelled")]

        self.console.print()
        self.console.print(
            Panel(
                self._summary_table(reports),
                title=f"[bold]Indexing {'finished with errors' if failed else 'complete'}[/bold] ({elapsed:.1f}s)",
                border_style="red" if failed else "green",
            )
        )
        for report in failed:
            self.console.print(f"[red]{report.corpus.display_name}:[/red] {report.error}")

    def __enter__(self) -> "ConsoleProgress":
        self.start()
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        if self._live:
            self._live.stop()
            self._live = None
        restore_stderr_logging()

    def on_progress(self, corpus: Corpus, phase: IndexPhase, done: int, total: int) -> None:
        """Progress callback for ``IndexingOrchestrator.run``."""
        label = _PHASE_LABELS.get(phase, phase.value)
        self._phase = f"{corpus.display_name}: {label}"

        task = self._tasks.get(corpus)
        if task is None:
            task = self._progress.add_task(f"[cyan]{corpus.display_name}", total=None)
            self._tasks[corpus] = task

        if phase == IndexPhase.DONE:
            self._progress.update(task, completed=1, total=1, description=f"[green]{corpus.display_name}")
        elif total:
            self._progress.update(task, completed=done, total=total, description=f"[cyan]{corpus.display_name} ({label})")
        else:
            self._progress.update(task, description=f"[cyan]{corpus.display_name} ({label})")

        self._status[corpus] = "running" if phase != IndexPhase.DONE else "indexed"
        self._refresh()

    def mark(self, report: CorpusReport) -> None:
        self._status[report.corpus] = report.status
        self._refresh()

    def _summary_table(self, reports: List[CorpusReport]) -> Table:
        table = Table(box=None, padding=(0, 2))
        table.add_column("Corpus")
        table.add_column("Status")
        table.add_column("+/~/-", justify="right")
        table.add_column("Embedded", justify="right")
        table.add_column("Reused", justify="right")
        table.add_column("Vectors", justify="right")
        table.add_column("Edges", justify="right")
        table.add_column("Errors", justify="right")
        for r in reports:
            table.add_row(
                r.corpus.display_name,
                f"{_STATUS_ICONS.get(r.status, '')} {r.status}",
                f"{r.added}/{r.changed}/{r.deleted}",
                f"{r.embedded:,}",
                f"{r.reused_embeddings:,}",
                f"{r.vectors_indexed:,}",
                f"{r.edges_written:,}",
                str(r.parse_errors),
            )
        return table

    def _build_display(self) -> Group:
        elements = [
            Panel(
                "[bold white]Knowledge Index[/bold white] - incremental indexing",
                border_style="blue",
                padding=(0, 1),
            ),
            "",
            Text(f"  {self._phase}", style="bold"),
            "",
            self._progress,
            "",
        ]

        status_table = Table(show_header=False, box=None, padding=(0, 2), expand=False)
        row = []
        for corpus in self._corpora:
            status_table.add_column(width=3)
            status_table.add_column(width=14)
            row.extend([_STATUS_ICONS.get(self._status[corpus], "[dim]○[/dim]"), corpus.display_name])
        if row:
            status_table.add_row(*row)
        elements.append(Panel(status_table, title="Corpora", border_style="dim", padding=(0, 1)))
        return Group(*elements)

    def _refresh(self) -> None:
        if self._live:
            self._live.update(self._build_display())
