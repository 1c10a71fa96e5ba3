"""
stageflow - artifact and report collector

File: src/stageflow/artifacts/collector.py

Purpose
- Turn the report globs a leaf declares into Artifact records once the leaf
  reaches a terminal, non-skipped state.

Functional requirements
- Globs are evaluated relative to the leaf's working directory; matches
  outside it are ignored.
- Files are copied under the run directory when archiving is enabled so a
  later stage or workspace cleanup cannot change them.
- Every record carries size and SHA-256 of the collected bytes.
"""

from __future__ import annotations

import shutil
from pathlib import Path
from typing import TYPE_CHECKING, Any

import structlog

from stageflow.domain.ids import generate_artifact_id
from stageflow.domain.models import Artifact, utc_now
from stageflow.utils.fs import is_within
from stageflow.utils.hashing import sha256_file

if TYPE_CHECKING:
    from stageflow.domain.models import ReportDeclaration, StageNode
    from stageflow.persistence.store import RunStateStore


class ArtifactCollector:
    """Collects declared reports for one store; archiving is optional."""

    def __init__(
        self,
        store: RunStateStore,
        *,
        archive: bool = True,
        logger: Any | None = None,
    ) -> None:
        self._store = store
        self._archive = archive
        self._logger = logger if logger is not None else structlog.get_logger(__name__)

    def collect(self, run_id: str, node: StageNode, workdir: Path) -> list[Artifact]:
        collected: list[Artifact] = []
        for declaration in node.reports:
            matches = self._match(declaration, workdir, node.id)
            if not matches:
                self._logger.warning(
                    "report_not_found",
                    stage_id=node.id,
                    pattern=declaration.pattern,
                    kind=declaration.kind.value,
                )
                continue
            for path in matches:
                artifact = self._record(run_id, node.id, declaration, path, workdir)
                self._store.save_artifact(artifact)
                collected.append(artifact)
                self._logger.info(
                    "artifact_collected",
                    stage_id=node.id,
                    kind=artifact.kind.value,
                    location=artifact.location,
                    size_bytes=artifact.size_bytes,
                )
        return collected

    def _match(self, declaration: ReportDeclaration, workdir: Path, stage_id: str) -> list[Path]:
        try:
            candidates = sorted(workdir.glob(declaration.pattern))
        except (ValueError, NotImplementedError) as exc:
            self._logger.warning(
                "report_pattern_invalid",
                stage_id=stage_id,
                pattern=declaration.pattern,
                error=str(exc),
            )
            return []
        return [path for path in candidates if path.is_file() and is_within(path, workdir)]

    def _record(
        self,
        run_id: str,
        stage_id: str,
        declaration: ReportDeclaration,
        path: Path,
        workdir: Path,
    ) -> Artifact:
        relative = path.resolve().relative_to(workdir.resolve())
        if self._archive:
            destination = self._store.archive_dir(run_id, stage_id) / relative
            destination.parent.mkdir(parents=True, exist_ok=True)
            shutil.copy2(path, destination)
            location = self._store.ref_for(destination)
            stored = destination
        else:
            location = str(path.resolve())
            stored = path
        return Artifact(
            artifact_id=generate_artifact_id(),
            run_id=run_id,
            stage_id=stage_id,
            kind=declaration.kind,
            source_path=relative.as_posix(),
            location=location,
            size_bytes=stored.stat().st_size,
            sha256=sha256_file(stored),
            created_at=utc_now(),
        )


__all__ = ["ArtifactCollector"]
