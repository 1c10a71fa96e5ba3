"""Reporting sinks that receive the run's collected artifacts once the run settles."""

from __future__ import annotations

import json
from collections import Counter
from typing import TYPE_CHECKING, Any, Protocol

import structlog

from stageflow.constants import ARTIFACT_MANIFEST_FILENAME
from stageflow.utils.fs import atomic_write

if TYPE_CHECKING:
    from collections.abc import Sequence
    from pathlib import Path

    from stageflow.domain.models import Artifact, RunRecord
    from stageflow.persistence.store import RunStateStore


class ReportSink(Protocol):
    def publish(self, record: RunRecord, artifacts: Sequence[Artifact]) -> None: ...


class LoggingReportSink:
    """Logs a per-kind summary of the collected reports."""

    def __init__(self, *, logger: Any | None = None) -> None:
        self._logger = logger if logger is not None else structlog.get_logger(__name__)

    def publish(self, record: RunRecord, artifacts: Sequence[Artifact]) -> None:
        by_kind = Counter(artifact.kind.value for artifact in artifacts)
        self._logger.info(
            "reports_summary",
            run_id=record.run_id,
            total=len(artifacts),
            by_kind=dict(sorted(by_kind.items())),
        )


class ManifestReportSink:
    """Writes ``artifacts.json`` into the run directory."""

    def __init__(self, store: RunStateStore) -> None:
        self._store = store

    def manifest_path(self, run_id: str) -> Path:
        return self._store.run_dir(run_id) / ARTIFACT_MANIFEST_FILENAME

    def publish(self, record: RunRecord, artifacts: Sequence[Artifact]) -> None:
        path = self.manifest_path(record.run_id)
        path.parent.mkdir(parents=True, exist_ok=True)
        document = {
            "run_id": record.run_id,
            "pipeline": record.pipeline.name,
            "status": record.status.value,
            "artifacts": [
                {
                    "id": artifact.artifact_id,
                    "stage_id": artifact.stage_id,
                    "kind": artifact.kind.value,
                    "source_path": artifact.source_path,
                    "location": artifact.location,
                    "size_bytes": artifact.size_bytes,
                    "sha256": artifact.sha256,
                    "created_at": artifact.created_at.isoformat().replace("+00:00", "Z"),
                }
                for artifact in artifacts
            ],
        }
        atomic_write(path, json.dumps(document, indent=2, sort_keys=True) + "\n")


__all__ = ["LoggingReportSink", "ManifestReportSink", "ReportSink"]
