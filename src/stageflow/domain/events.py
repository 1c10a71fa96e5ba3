"""Pipeline lifecycle event definitions published on the in-process event bus."""

from __future__ import annotations

from collections.abc import Mapping
from dataclasses import dataclass, field
from datetime import UTC, datetime
from enum import StrEnum

from stageflow.domain import ids

JSONScalar = str | int | float | bool | None
JSONValue = JSONScalar | list["JSONValue"] | dict[str, "JSONValue"]


class EventType(StrEnum):
    """Lifecycle events emitted while a pipeline runs."""

    RUN_STARTED = "RunStarted"
    STAGE_TRANSITION = "StageTransition"
    STAGE_OUTPUT = "StageOutput"
    ENV_PUBLISHED = "EnvPublished"
    ARTIFACT_COLLECTED = "ArtifactCollected"
    HOOK_COMPLETED = "HookCompleted"
    RUN_FINISHED = "RunFinished"


@dataclass(frozen=True, slots=True)
class PipelineEvent:
    event_type: EventType
    run_id: str
    payload: Mapping[str, JSONValue] = field(default_factory=dict)
    stage_id: str | None = None
    event_id: str = field(default_factory=ids.generate_event_id)
    timestamp: datetime = field(default_factory=lambda: datetime.now(UTC))

    def to_dict(self) -> dict[str, JSONValue]:
        return {
            "event_id": self.event_id,
            "event_type": self.event_type.value,
            "run_id": self.run_id,
            "stage_id": self.stage_id,
            "timestamp": self.timestamp.isoformat().replace("+00:00", "Z"),
            "payload": dict(self.payload),
        }


__all__ = ["EventType", "JSONValue", "PipelineEvent"]
