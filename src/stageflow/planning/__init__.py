"""Pipeline planning: definition parsing, template references, and conditions."""

from stageflow.planning.builder import (
    PipelineBuilder,
    build_pipeline,
    load_pipeline,
    parse_duration,
    parse_pipeline,
)
from stageflow.planning.conditions import Condition, compile_condition, evaluate
from stageflow.planning.references import ReferenceGraph

__all__ = [
    "Condition",
    "PipelineBuilder",
    "ReferenceGraph",
    "build_pipeline",
    "compile_condition",
    "evaluate",
    "load_pipeline",
    "parse_duration",
    "parse_pipeline",
]
