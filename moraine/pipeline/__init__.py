"""Multi-stage deployment pipelines."""

from moraine.pipeline.orchestrator import (
    Pipeline,
    PipelineRun,
    RunStatus,
    Stage,
    StageContext,
    StageRecord,
    StageStatus,
)
from moraine.pipeline.actions import CommandAction, CommandFailedError, DeployAction

__all__ = [
    "Pipeline",
    "PipelineRun",
    "RunStatus",
    "Stage",
    "StageContext",
    "StageRecord",
    "StageStatus",
    "CommandAction",
    "CommandFailedError",
    "DeployAction",
]
