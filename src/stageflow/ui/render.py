"""Output rendering for the stageflow CLI.

File: src/stageflow/ui/render.py

Purpose
- Thin rendering layer over ``rich`` for CLI output.
- Respect the NO_COLOR environment variable and the ``--no-color`` flag.

Functional requirements
- With color disabled the output is plain, deterministic text suitable for CI
  logs and for tests that capture stdout.
"""

from __future__ import annotations

import os
import sys
from typing import TYPE_CHECKING, Final

from rich import box
from rich.console import Console
from rich.table import Table
from rich.text import Text

if TYPE_CHECKING:
    from collections.abc import Sequence

STATUS_STYLES: Final[dict[str, str]] = {
    "pending": "dim",
    "running": "bold cyan",
    "succeeded": "green",
    "failed": "bold red",
    "skipped": "yellow",
    "aborted": "magenta",
}


def _color_allowed(no_color_flag: bool) -> bool:
    if no_color_flag:
        return False
    if os.environ.get("NO_COLOR", ""):
        return False
    return hasattr(sys.stdout, "isatty") and sys.stdout.isatty()


class CLIRenderer:
    """CLI output renderer.

    Every method writes to stdout through a rich console; when color is off
    the console emits no markup or escape sequences.
    """

    def __init__(self, *, no_color: bool = False, verbose: bool = False) -> None:
        self.verbose = verbose
        self._color = _color_allowed(no_color)
        self._console = Console(
            no_color=not self._color,
            highlight=False,
            soft_wrap=True,
            force_terminal=self._color or None,
        )

    @property
    def color(self) -> bool:
        return self._color

    def kv(self, key: str, value: object) -> None:
        self._console.print(Text.assemble((f"{key}: ", "bold"), str(value)))

    def status(self, key: str, status: str) -> None:
        """Print a key with a status value styled by its meaning."""

        self._console.print(
            Text.assemble((f"{key}: ", "bold"), (status, STATUS_STYLES.get(status, "")))
        )

    def text(self, line: str) -> None:
        self._console.print(Text(line))

    def blank(self) -> None:
        self._console.print()

    def section(self, title: str) -> None:
        self._console.print()
        self._console.print(Text(title, style="bold"))

    def items(self, entries: Sequence[str], *, prefix: str = "- ") -> None:
        for entry in entries:
            self._console.print(Text(f"  {prefix}{entry}"))

    def table(
        self,
        headers: Sequence[str],
        rows: Sequence[Sequence[str]],
        *,
        title: str | None = None,
        status_column: int | None = None,
    ) -> None:
        """Print a table; ``status_column`` cells are styled like :meth:`status`."""

        if not rows:
            return
        if title:
            self.section(title)
        table = Table(
            box=box.SIMPLE if self._color else box.ASCII2,
            show_edge=False,
            pad_edge=False,
        )
        for header in headers:
            table.add_column(header, overflow="fold")
        for row in rows:
            cells: list[Text] = []
            for index, cell in enumerate(row):
                style = STATUS_STYLES.get(str(cell), "") if index == status_column else ""
                cells.append(Text(str(cell), style=style))
            table.add_row(*cells)
        self._console.print(table)

    def next_steps(self, steps: Sequence[str]) -> None:
        if not steps:
            return
        self.section("Next steps:")
        for step in steps:
            self._console.print(Text(f"  $ {step}"))


def create_renderer(*, no_color: bool = False, verbose: bool = False) -> CLIRenderer:
    return CLIRenderer(no_color=no_color, verbose=verbose)


__all__ = ["STATUS_STYLES", "CLIRenderer", "create_renderer"]
