"""
Pipeline orchestrator: ordered stages gated on the previous stage's success.

Each stage is a small state machine:

    pending -> running -> succeeded
                       -> failed
                       -> cancelled

A stage only starts when every stage before it has succeeded. The first
failure halts the run; later stages stay pending. A deploy interrupted by
the cancellation token ends as cancelled rather than failed.
"""

import uuid
from datetime import datetime, timezone
from enum import Enum
from pathlib import Path
from typing import Any, Callable
from dataclasses import dataclass, field

import structlog
from pydantic import BaseModel, Field

from moraine.core.errors import ApplyError, StageError
from moraine.execution.executor import CancellationToken

logger = structlog.get_logger(__name__)


class StageStatus(str, Enum):
    PENDING = "pending"
    RUNNING = "running"
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    CANCELLED = "cancelled"


class RunStatus(str, Enum):
    PENDING = "pending"
    RUNNING = "running"
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    CANCELLED = "cancelled"


_TRANSITIONS: dict[StageStatus, set[StageStatus]] = {
    StageStatus.PENDING: {StageStatus.RUNNING},
    StageStatus.RUNNING: {StageStatus.SUCCEEDED, StageStatus.FAILED, StageStatus.CANCELLED},
    StageStatus.SUCCEEDED: set(),
    StageStatus.FAILED: {StageStatus.RUNNING},
    StageStatus.CANCELLED: {StageStatus.RUNNING},
}


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class StageRecord(BaseModel):
    """Status of one stage within a run."""

    name: str
    status: StageStatus = StageStatus.PENDING
    started_at: datetime | None = None
    finished_at: datetime | None = None
    error: str | None = None
    attempts: int = 0

    def transition(self, status: StageStatus) -> None:
        if status not in _TRANSITIONS[self.status]:
            raise ValueError(f"Stage '{self.name}' cannot go from {self.status.value} to {status.value}")
        self.status = status
        if status is StageStatus.RUNNING:
            self.started_at = _utcnow()
            self.finished_at = None
            self.error = None
            self.attempts += 1
        else:
            self.finished_at = _utcnow()


class PipelineRun(BaseModel):
    """One invocation of a pipeline."""

    run_id: str = Field(default_factory=lambda: uuid.uuid4().hex[:12])
    pipeline: str
    status: RunStatus = RunStatus.PENDING
    stages: list[StageRecord] = Field(default_factory=list)
    started_at: datetime | None = None
    finished_at: datetime | None = None

    def stage(self, name: str) -> StageRecord:
        for record in self.stages:
            if record.name == name:
                return record
        raise KeyError(name)

    @property
    def failed_stage(self) -> StageRecord | None:
        for record in self.stages:
            if record.status is StageStatus.FAILED:
                return record
        return None


@dataclass
class StageContext:
    """Passed to every stage action."""

    pipeline: str
    run: PipelineRun
    stage: str
    cancel: CancellationToken
    artifacts: dict[str, Any] = field(default_factory=dict)


@dataclass
class Stage:
    """
    A named pipeline step.

    ``action`` is any callable taking a StageContext. Returning normally
    means success; raising means failure. The return value, if not None, is
    stored in ``context.artifacts[name]`` for later stages.
    """

    name: str
    action: Callable[[StageContext], Any]


class Pipeline:
    """
    Sequences stages such as source fetch, build and deploy.

    Example:
        pipeline = Pipeline(
            "release",
            stages=[
                Stage("source", CommandAction(["git", "pull"])),
                Stage("build", CommandAction("npm run build", cwd="app")),
                Stage("deploy", DeployAction(stack, providers, store)),
            ],
            resume_from_failure=True,
        )
        run = pipeline.run()
    """

    def __init__(
        self,
        name: str,
        stages: list[Stage] | None = None,
        resume_from_failure: bool = False,
        archive_dir: str | Path | None = None,
    ):
        self.name = name
        self.stages: list[Stage] = list(stages or [])
        self.resume_from_failure = resume_from_failure
        self.archive_dir = Path(archive_dir) if archive_dir else None
        self.last_run: PipelineRun | None = None
        self._artifacts: dict[str, Any] = {}

        names = [stage.name for stage in self.stages]
        if len(names) != len(set(names)):
            raise ValueError(f"Pipeline '{name}' has duplicate stage names")

    def add_stage(self, name: str, action: Callable[[StageContext], Any]) -> Stage:
        if any(stage.name == name for stage in self.stages):
            raise ValueError(f"Stage '{name}' already exists in pipeline '{self.name}'")
        stage = Stage(name, action)
        self.stages.append(stage)
        return stage

    def _new_run(self) -> PipelineRun:
        self._artifacts = {}
        return PipelineRun(
            pipeline=self.name,
            stages=[StageRecord(name=stage.name) for stage in self.stages],
        )

    def run(self, cancel: CancellationToken | None = None) -> PipelineRun:
        """
        Execute the pipeline.

        With ``resume_from_failure`` a previously halted run continues from
        its failed stage, keeping the stages that already succeeded.
        Otherwise every call starts from the first stage.

        Raises:
            StageError: If a stage fails; ``error.run`` holds the halted run
        """
        cancel = cancel or CancellationToken()
        previous = self.last_run

        if (
            self.resume_from_failure
            and previous is not None
            and previous.status in (RunStatus.FAILED, RunStatus.CANCELLED)
        ):
            run = previous
            logger.info("pipeline_resumed", pipeline=self.name, run_id=run.run_id)
        else:
            run = self._new_run()
            logger.info("pipeline_started", pipeline=self.name, run_id=run.run_id)

        self.last_run = run
        run.status = RunStatus.RUNNING
        run.started_at = run.started_at or _utcnow()
        run.finished_at = None

        try:
            for stage, record in zip(self.stages, run.stages):
                if record.status is StageStatus.SUCCEEDED:
                    continue

                if cancel.cancelled:
                    run.status = RunStatus.CANCELLED
                    logger.warning("pipeline_cancelled", pipeline=self.name, next_stage=stage.name)
                    return run

                if not self._run_stage(stage, record, run, cancel):
                    return run

            run.status = RunStatus.SUCCEEDED
            logger.info("pipeline_succeeded", pipeline=self.name, run_id=run.run_id)
            return run
        finally:
            run.finished_at = _utcnow()
            self._archive(run)

    def _run_stage(
        self, stage: Stage, record: StageRecord, run: PipelineRun, cancel: CancellationToken
    ) -> bool:
        """Run one stage; False when cancellation interrupted it."""
        record.transition(StageStatus.RUNNING)
        logger.info("stage_started", pipeline=self.name, stage=stage.name, attempt=record.attempts)

        context = StageContext(
            pipeline=self.name,
            run=run,
            stage=stage.name,
            cancel=cancel,
            artifacts=self._artifacts,
        )
        try:
            artifact = stage.action(context)
        except Exception as exc:
            record.error = f"{type(exc).__name__}: {exc}"
            if _interrupted_by_cancel(exc, cancel):
                record.transition(StageStatus.CANCELLED)
                run.status = RunStatus.CANCELLED
                logger.warning("stage_cancelled", pipeline=self.name, stage=stage.name)
                return False
            record.transition(StageStatus.FAILED)
            run.status = RunStatus.FAILED
            logger.error("stage_failed", pipeline=self.name, stage=stage.name, error=record.error)
            raise StageError(stage.name, exc, run) from exc

        if artifact is not None:
            self._artifacts[stage.name] = artifact
        record.transition(StageStatus.SUCCEEDED)
        logger.info("stage_succeeded", pipeline=self.name, stage=stage.name)
        return True

    def restore(self, run: PipelineRun) -> None:
        """Adopt a run recorded by an earlier process, e.g. from the archive."""
        if [record.name for record in run.stages] != [stage.name for stage in self.stages]:
            raise ValueError(f"Run {run.run_id} does not match the stages of pipeline '{self.name}'")
        self.last_run = run

    def _archive(self, run: PipelineRun) -> None:
        if self.archive_dir is None:
            return
        self.archive_dir.mkdir(parents=True, exist_ok=True)
        path = self.archive_dir / f"{run.run_id}.json"
        path.write_text(run.model_dump_json(indent=2), encoding="utf-8")


def _interrupted_by_cancel(exc: Exception, cancel: CancellationToken) -> bool:
    """An apply whose only unfinished nodes were cancelled before they started."""
    if not cancel.cancelled or not isinstance(exc, ApplyError) or exc.result is None:
        return False
    return bool(exc.result.cancelled) and not exc.result.failed


def latest_archived_run(archive_dir: str | Path, pipeline: str) -> PipelineRun | None:
    """Most recently finished archived run of ``pipeline``, if any."""
    archive_dir = Path(archive_dir)
    if not archive_dir.is_dir():
        return None
    runs = []
    for path in archive_dir.glob("*.json"):
        run = PipelineRun.model_validate_json(path.read_text(encoding="utf-8"))
        if run.pipeline == pipeline and run.finished_at is not None:
            runs.append(run)
    if not runs:
        return None
    return max(runs, key=lambda run: run.finished_at)
