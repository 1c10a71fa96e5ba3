"""
stageflow - unit tests for artifact collection and report sinks

File: tests/unit/artifacts/test_collector.py

Purpose
- Validate report glob matching, archiving, digests, persistence, and the
  run manifest written once the run settles.
"""

from __future__ import annotations

import hashlib
import json
import textwrap
from pathlib import Path
from typing import Any

import pytest

from stageflow.artifacts.collector import ArtifactCollector
from stageflow.artifacts.sinks import LoggingReportSink, ManifestReportSink
from stageflow.domain.models import (
    ArtifactKind,
    ReportDeclaration,
    RunContext,
    RunRecord,
    RunStatus,
    StageKind,
    StageNode,
)
from stageflow.execution.executor import Executor
from stageflow.execution.process_runner import ProcessRunner
from stageflow.persistence.store import RunStateStore
from stageflow.planning.builder import parse_pipeline

pytestmark = pytest.mark.unit

_REPORT_PIPELINE = """
stages:
  - name: Test
    workdir: app
    steps: >-
      mkdir -p reports htmlcov &&
      echo '<testsuite tests="3"/>' > reports/unit.xml &&
      echo '<testsuite tests="1"/>' > reports/api.xml &&
      echo coverage > htmlcov/index.html &&
      exit 1
    reports:
      - {kind: test-report, path: "reports/*.xml"}
      - {kind: coverage, path: htmlcov/index.html}
      - {kind: scan-report, path: "scan/*.sarif"}
"""


class _RecordingLogger:
    def __init__(self) -> None:
        self.records: list[tuple[str, str, dict[str, Any]]] = []

    def __getattr__(self, level: str) -> Any:
        def log(event: str, **fields: Any) -> None:
            self.records.append((level, event, fields))

        return log


async def _run_reports(store: RunStateStore, workspace: Path, **kwargs: Any) -> RunRecord:
    executor = Executor(
        parse_pipeline(textwrap.dedent(_REPORT_PIPELINE)),
        store=store,
        workspace=workspace,
        runner=ProcessRunner(kill_grace_seconds=1.0),
        collector=ArtifactCollector(store),
        **kwargs,
    )
    return await executor.run(RunContext(branch="main"))


async def test_reports_are_collected_even_when_stage_fails(
    state_store: RunStateStore, workspace: Path
) -> None:
    record = await _run_reports(state_store, workspace)

    assert record.status is RunStatus.FAILED
    assert [(a.kind, a.source_path) for a in record.artifacts] == [
        (ArtifactKind.TEST_REPORT, "reports/api.xml"),
        (ArtifactKind.TEST_REPORT, "reports/unit.xml"),
        (ArtifactKind.COVERAGE, "htmlcov/index.html"),
    ]
    unit = record.artifacts[1]
    archived = state_store.resolve_ref(unit.location)
    assert archived.is_file()
    assert archived.is_relative_to(state_store.run_dir(record.run_id))
    expected = (workspace / "app" / "reports" / "unit.xml").read_bytes()
    assert unit.sha256 == hashlib.sha256(expected).hexdigest()
    assert unit.size_bytes == len(expected)

    stored = state_store.list_artifacts(record.run_id, stage_id="Test")
    assert {artifact.artifact_id for artifact in stored} == {
        artifact.artifact_id for artifact in record.artifacts
    }


async def test_manifest_sink_writes_artifacts_json(
    state_store: RunStateStore, workspace: Path
) -> None:
    manifest = ManifestReportSink(state_store)
    logger = _RecordingLogger()

    record = await _run_reports(
        state_store, workspace, sinks=(manifest, LoggingReportSink(logger=logger))
    )

    document = json.loads(manifest.manifest_path(record.run_id).read_text(encoding="utf-8"))
    assert document["run_id"] == record.run_id
    assert document["status"] == "failed"
    assert [item["kind"] for item in document["artifacts"]] == [
        "test-report",
        "test-report",
        "coverage",
    ]
    assert logger.records == [
        (
            "info",
            "reports_summary",
            {
                "run_id": record.run_id,
                "total": 3,
                "by_kind": {"coverage": 1, "test-report": 2},
            },
        )
    ]


def test_absolute_report_patterns_match_nothing(
    state_store: RunStateStore, tmp_path: Path
) -> None:
    workdir = tmp_path / "src"
    workdir.mkdir()
    (workdir / "report.xml").write_text("<ok/>", encoding="utf-8")
    node = StageNode(
        id="Check",
        name="Check",
        kind=StageKind.LEAF,
        steps=("true",),
        reports=(ReportDeclaration(ArtifactKind.SCAN_REPORT, "/etc/*.conf"),),
    )
    collector = ArtifactCollector(state_store, archive=False)

    assert collector.collect("run-unused", node, workdir) == []


def test_missing_matches_are_logged_not_raised(state_store: RunStateStore, tmp_path: Path) -> None:
    logger = _RecordingLogger()
    node = StageNode(
        id="Check",
        name="Check",
        kind=StageKind.LEAF,
        steps=("true",),
        reports=(ReportDeclaration(ArtifactKind.TEST_REPORT, "out/*.xml"),),
    )

    artifacts = ArtifactCollector(state_store, logger=logger).collect("run-x", node, tmp_path)

    assert artifacts == []
    assert logger.records[0][:2] == ("warning", "report_not_found")
