"""
Stage actions.

DeployAction plans and applies a stack. CommandAction runs an opaque external
step (fetching sources, running a build) as a subprocess and reports success
or failure from its exit code.
"""

import os
import shlex
import subprocess
from pathlib import Path
from typing import Any

import structlog

from moraine.config.settings import MoraineSettings
from moraine.core.stack import Stack
from moraine.execution.executor import ApplyResult, Executor
from moraine.pipeline.orchestrator import StageContext
from moraine.planning.plan import PlanEngine
from moraine.providers.base import ProviderRegistry
from moraine.state.store import StateStore

logger = structlog.get_logger(__name__)


class CommandFailedError(Exception):
    """Raised when an external command exits non-zero or cannot start."""

    def __init__(self, command: list[str], returncode: int | None, stderr: str = ""):
        self.command = command
        self.returncode = returncode
        self.stderr = stderr
        detail = stderr.strip().splitlines()[-1] if stderr.strip() else ""
        message = f"Command {' '.join(command)!r} exited with {returncode}"
        if detail:
            message += f": {detail}"
        super().__init__(message)


class CommandAction:
    """
    Run an external command.

    Args:
        command: Shell-style string or argument list (never run through a shell)
        cwd: Working directory
        env: Extra environment variables merged over the current environment
        timeout: Seconds before the command is killed and the stage fails
    """

    def __init__(
        self,
        command: str | list[str],
        cwd: str | Path | None = None,
        env: dict[str, str] | None = None,
        timeout: float | None = None,
    ):
        self.command = shlex.split(command) if isinstance(command, str) else list(command)
        if not self.command:
            raise ValueError("command must not be empty")
        self.cwd = Path(cwd) if cwd else None
        self.env = dict(env or {})
        self.timeout = timeout

    def __call__(self, context: StageContext) -> dict[str, Any]:
        logger.info("command_started", stage=context.stage, command=self.command)
        try:
            completed = subprocess.run(
                self.command,
                cwd=self.cwd,
                env={**os.environ, **self.env},
                capture_output=True,
                text=True,
                timeout=self.timeout,
            )
        except FileNotFoundError as exc:
            raise CommandFailedError(self.command, None, str(exc)) from exc
        except subprocess.TimeoutExpired as exc:
            raise CommandFailedError(
                self.command, None, f"timed out after {self.timeout}s"
            ) from exc

        if completed.returncode != 0:
            raise CommandFailedError(self.command, completed.returncode, completed.stderr or "")

        return {"returncode": completed.returncode, "stdout": completed.stdout}


class DeployAction:
    """
    Plan and apply a stack as a pipeline stage.

    Any planning error or ApplyError fails the stage, except an apply stopped
    by the run's cancellation token, which cancels it. Nodes that succeeded
    before the failure stay committed, so resuming the stage only applies
    what is left.
    """

    def __init__(
        self,
        stack: Stack,
        providers: ProviderRegistry,
        store: StateStore,
        settings: MoraineSettings | None = None,
    ):
        self.stack = stack
        self.providers = providers
        self.store = store
        self.settings = settings or MoraineSettings()

    def __call__(self, context: StageContext) -> ApplyResult:
        plan = PlanEngine().plan(self.stack.nodes, self.store.load())
        logger.info("deploy_planned", stage=context.stage, stack=self.stack.name, **plan.summary())

        executor = Executor(
            self.providers,
            self.store,
            concurrency=self.settings.concurrency,
            timeout=self.settings.operation_timeout,
            cancel=context.cancel,
            rollback_on_failure=self.settings.rollback_on_failure,
        )
        return executor.execute(plan)
