"""Progress and convergence reporting for verbose runs."""

from __future__ import annotations

from typing import TYPE_CHECKING, Optional

from rich.console import Console
from rich.progress import BarColumn, MofNCompleteColumn, Progress, TextColumn, TimeElapsedColumn
from rich.table import Table

from .model import FitStatus

if TYPE_CHECKING:
    from .fit import SpaNormFit


STATUS_STYLES = {
    FitStatus.CONVERGED: "green",
    FitStatus.MAX_ITER: "yellow",
    FitStatus.FALLBACK: "red",
    FitStatus.ZERO: "dim",
}


class FitProgress:
    """Per-gene progress bar; a no-op when ``verbose`` is False."""

    def __init__(self, total: int, verbose: bool = False, console: Optional[Console] = None):
        self.total = total
        self.verbose = verbose
        self.console = console or Console(stderr=True)
        self._progress: Optional[Progress] = None
        self._task = None

    def __enter__(self) -> "FitProgress":
        if self.verbose:
            self._progress = Progress(
                TextColumn("[cyan]Fitting genes"),
                BarColumn(),
                MofNCompleteColumn(),
                TimeElapsedColumn(),
                console=self.console,
            )
            self._progress.start()
            self._task = self._progress.add_task("fit", total=self.total)
        return self

    def advance(self, n: int = 1) -> None:
        if self._progress is not None:
            self._progress.advance(self._task, n)

    def __exit__(self, *exc) -> None:
        if self._progress is not None:
            self._progress.stop()
            self._progress = None


def convergence_table(fit: "SpaNormFit") -> Table:
    """Build the status-count table for a fit."""
    table = Table(title="SpaNorm fit")
    table.add_column("Status", width=10)
    table.add_column("Genes", justify="right", width=8)
    table.add_column("Examples")

    counts = fit.status_counts()
    for status in FitStatus:
        n = counts.get(status.name.lower(), 0)
        if n == 0:
            continue
        style = STATUS_STYLES[status]
        examples = ", ".join(fit.genes_with_status(status)[:5])
        table.add_row(f"[{style}]{status.name.lower()}[/{style}]", str(n), examples)
    return table


def print_fit_summary(fit: "SpaNormFit", console: Optional[Console] = None) -> None:
    """Print the fit summary (subset size, basis, status counts)."""
    console = console or Console(stderr=True)
    console.print(
        f"[bold]Fitted[/bold] {fit.n_genes} genes on {len(fit.fit_locations)}/"
        f"{fit.n_locations} locations (df.tps={fit.basis.df}, "
        f"gene.model={fit.settings.get('gene_model', 'nb')})"
    )
    console.print(convergence_table(fit))
