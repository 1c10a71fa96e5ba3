"""Artifact and report collection plus the reporting sinks fed at end of run."""

from stageflow.artifacts.collector import ArtifactCollector
from stageflow.artifacts.sinks import LoggingReportSink, ManifestReportSink, ReportSink

__all__ = ["ArtifactCollector", "LoggingReportSink", "ManifestReportSink", "ReportSink"]
