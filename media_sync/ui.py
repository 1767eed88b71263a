"""Presents plan and transfer progress to the user.

Two implementations share the `BaseUIManager` interface:

1.  `RichUIManager`: a `rich` progress bar while transfers run and a summary
    table at the end. This is the default.

2.  `SimpleUIManager`: plain log lines, for cron jobs, `tmux` or `screen`.
"""
import abc
import logging
import threading
from typing import Optional

from rich.console import Console
from rich.progress import BarColumn, MofNCompleteColumn, Progress, TextColumn, TimeElapsedColumn
from rich.table import Table

from .models import Plan, TransferItem
from .transfer_manager import TransferReport
from .transfer_strategies import TransferOutcome


class BaseUIManager(abc.ABC):
    """The interface `MediaSync` reports through."""

    def show_plan(self, plan: Plan, dry_run: bool = False) -> None:
        """Reports what the planner found; in a dry run, lists every planned action."""
        for skipped in plan.skipped:
            logging.debug(f"Skipped: {skipped.relative_path} ({skipped.reason})")
        if dry_run:
            for directory in plan.sorted_directories():
                logging.info(f"DRY RUN: would create remote directory '{directory}'")
            for item in plan.queue:
                logging.info(f"DRY RUN: would copy '{item.source_path}' -> '{item.dest_dir}/'")

    @abc.abstractmethod
    def start(self, total: int) -> None:
        pass

    @abc.abstractmethod
    def advance(self, item: TransferItem, outcome: TransferOutcome) -> None:
        pass

    @abc.abstractmethod
    def show_summary(self, plan: Plan, report: Optional[TransferReport]) -> None:
        pass

    def close(self) -> None:
        pass


class SimpleUIManager(BaseUIManager):
    """A non-interactive UI that reports progress through `logging`."""

    def __init__(self):
        self._done = 0
        self._total = 0
        self._lock = threading.Lock()

    def start(self, total: int) -> None:
        self._total = total
        self._done = 0

    def advance(self, item: TransferItem, outcome: TransferOutcome) -> None:
        with self._lock:
            self._done += 1
            done = self._done
        logging.info(f"[{done}/{self._total}] {item.file_name}: {outcome.value}")

    def show_summary(self, plan: Plan, report: Optional[TransferReport]) -> None:
        stats = plan.stats
        logging.info(f"Planned: {stats.parsed} video(s), {stats.companions} subtitle(s), "
                     f"{stats.skipped} skipped, {stats.walk_errors} unreadable director(ies).")
        if report is not None:
            logging.info(f"Result: {report.transferred} transferred, {report.skipped_existing} already present, "
                         f"{report.failed} failed.")
            for item, error in report.failures:
                logging.error(f"FAILED: {item.source_path} -> {item.dest_dir}: {error}")


class RichUIManager(BaseUIManager):
    """A `rich` progress bar and summary table."""

    def __init__(self, console: Optional[Console] = None):
        self.console = console or Console(stderr=True)
        self._progress: Optional[Progress] = None
        self._task_id = None

    def start(self, total: int) -> None:
        self._progress = Progress(
            TextColumn("[bold blue]Syncing"),
            BarColumn(),
            MofNCompleteColumn(),
            TimeElapsedColumn(),
            TextColumn("{task.description}"),
            console=self.console,
            transient=True,
        )
        self._task_id = self._progress.add_task("", total=total)
        self._progress.start()

    def advance(self, item: TransferItem, outcome: TransferOutcome) -> None:
        if self._progress is None:
            return
        self._progress.update(self._task_id, advance=1, description=item.file_name)

    def close(self) -> None:
        if self._progress is not None:
            self._progress.stop()
            self._progress = None

    def show_summary(self, plan: Plan, report: Optional[TransferReport]) -> None:
        self.close()
        table = Table(title="media-sync summary", show_header=True, header_style="bold")
        table.add_column("Stage")
        table.add_column("Count", justify="right")
        table.add_row("Videos queued", str(plan.stats.parsed))
        table.add_row("Subtitles queued", str(plan.stats.companions))
        table.add_row("Files skipped", str(plan.stats.skipped))
        if plan.stats.walk_errors:
            table.add_row("[yellow]Unreadable directories[/yellow]", str(plan.stats.walk_errors))
        if report is not None:
            table.add_row("[green]Transferred[/green]", str(report.transferred))
            table.add_row("Already on server", str(report.skipped_existing))
            style = "red" if report.failed else "green"
            table.add_row(f"[{style}]Failed[/{style}]", str(report.failed))
        self.console.print(table)

        if report is not None and report.failures:
            failures = Table(title="Failed transfers", header_style="bold red")
            failures.add_column("Source")
            failures.add_column("Destination")
            failures.add_column("Error")
            for item, error in report.failures:
                failures.add_row(item.source_path, item.dest_dir, error)
            self.console.print(failures)


__all__ = ["BaseUIManager", "SimpleUIManager", "RichUIManager"]
