"""Textual live viewer for one run, polling the run state store.

File: src/stageflow/ui/watch.py

Shows the stage table of a run (status, attempts, exit code, duration) and
tails the stdout log of the highlighted stage. Works for runs driven by
another process: everything is read back from the state directory.
"""

from __future__ import annotations

from typing import TYPE_CHECKING, ClassVar, Final

from rich.text import Text
from textual.app import App, ComposeResult
from textual.binding import Binding
from textual.widgets import DataTable, Footer, RichLog, Static

from stageflow.ui.render import STATUS_STYLES

if TYPE_CHECKING:
    from stageflow.domain.models import StageResult
    from stageflow.persistence.store import RunSnapshot, RunStateStore

DEFAULT_POLL_SECONDS: Final[float] = 0.5
_COLUMNS: Final[tuple[tuple[str, str], ...]] = (
    ("stage", "Stage"),
    ("kind", "Kind"),
    ("status", "Status"),
    ("attempts", "Attempts"),
    ("exit", "Exit"),
    ("duration", "Duration"),
)


def stage_cells(result: StageResult) -> dict[str, str | Text]:
    """Cell values for one stage row keyed by column."""
    duration = result.duration_seconds
    return {
        "stage": result.stage_id,
        "kind": result.kind.value,
        "status": Text(result.status.value, style=STATUS_STYLES.get(result.status.value, "")),
        "attempts": str(result.attempts) if result.attempts else "",
        "exit": "" if result.exit_code is None else str(result.exit_code),
        "duration": "" if duration is None else f"{duration:.1f}s",
    }


class RunWatchApp(App[int]):
    """Live stage table plus log tail for a single run."""

    TITLE = "stageflow watch"
    CSS = """
    #run-summary {
        height: 1;
        padding: 0 1;
    }
    #stages {
        height: 1fr;
    }
    #stage-log {
        height: 1fr;
        border-top: solid $accent;
    }
    """
    BINDINGS: ClassVar[list[Binding]] = [
        Binding("q", "quit", "Quit", show=True),
        Binding("r", "refresh_run", "Refresh", show=True),
    ]

    def __init__(
        self,
        store: RunStateStore,
        run_id: str,
        *,
        poll_seconds: float = DEFAULT_POLL_SECONDS,
    ) -> None:
        super().__init__()
        self._store = store
        self._run_id = run_id
        self._poll_seconds = poll_seconds
        self._selected: str | None = None
        self._log_offset = 0
        self._snapshot: RunSnapshot | None = None

    @property
    def snapshot(self) -> RunSnapshot | None:
        return self._snapshot

    @property
    def selected_stage(self) -> str | None:
        return self._selected

    def compose(self) -> ComposeResult:
        yield Static("", id="run-summary")
        yield DataTable(id="stages", cursor_type="row", zebra_stripes=True)
        yield RichLog(id="stage-log", wrap=False, max_lines=5000)
        yield Footer()

    def on_mount(self) -> None:
        table = self.query_one("#stages", DataTable)
        for key, label in _COLUMNS:
            table.add_column(label, key=key)
        self.action_refresh_run()
        self.set_interval(self._poll_seconds, self.action_refresh_run)

    def action_refresh_run(self) -> None:
        snapshot = self._store.load_run(self._run_id)
        summary = self.query_one("#run-summary", Static)
        if snapshot is None:
            summary.update(f"run {self._run_id} not found")
            return
        self._snapshot = snapshot
        head = snapshot.summary
        summary.update(
            Text.assemble(
                (f"{head.pipeline_name} ", "bold"),
                f"{head.run_id}  branch={head.branch}  ",
                (head.status.value, STATUS_STYLES.get(head.status.value, "")),
            )
        )
        self._sync_table(snapshot)
        self._tail_log()

    def on_data_table_row_highlighted(self, event: DataTable.RowHighlighted) -> None:
        stage_id = event.row_key.value
        if stage_id is None or stage_id == self._selected:
            return
        self._selected = stage_id
        self._log_offset = 0
        log = self.query_one("#stage-log", RichLog)
        log.clear()
        log.write(Text(f"== {stage_id} ==", style="bold"))
        self._tail_log()

    def _sync_table(self, snapshot: RunSnapshot) -> None:
        table = self.query_one("#stages", DataTable)
        existing = {row_key.value for row_key in table.rows}
        for result in snapshot.stages:
            cells = stage_cells(result)
            if result.stage_id not in existing:
                table.add_row(*(cells[key] for key, _ in _COLUMNS), key=result.stage_id)
                continue
            for key, _ in _COLUMNS[1:]:
                table.update_cell(result.stage_id, key, cells[key])

    def _tail_log(self) -> None:
        if self._selected is None:
            return
        text, self._log_offset = self._store.read_log(
            self._run_id, self._selected, "stdout", offset=self._log_offset
        )
        if text:
            log = self.query_one("#stage-log", RichLog)
            for line in text.splitlines():
                log.write(line)


def run_watch_app(store: RunStateStore, run_id: str, *, poll_seconds: float) -> int:
    result = RunWatchApp(store, run_id, poll_seconds=poll_seconds).run()
    return result if isinstance(result, int) else 0


__all__ = ["DEFAULT_POLL_SECONDS", "RunWatchApp", "run_watch_app", "stage_cells"]
