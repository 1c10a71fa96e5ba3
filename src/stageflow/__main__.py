"""Module entrypoint for ``python -m stageflow``."""

from __future__ import annotations

from stageflow.main import cli_entrypoint

if __name__ == "__main__":
    raise SystemExit(cli_entrypoint())
