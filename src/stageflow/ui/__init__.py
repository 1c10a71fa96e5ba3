"""UI package exports for the CLI router and output rendering.

The Textual viewer lives in :mod:`stageflow.ui.watch` and is imported lazily
by the ``watch`` command.
"""

from stageflow.ui.cli import CLIError, build_parser, main, run_cli
from stageflow.ui.render import CLIRenderer, create_renderer

__all__ = [
    "CLIError",
    "CLIRenderer",
    "build_parser",
    "create_renderer",
    "main",
    "run_cli",
]
