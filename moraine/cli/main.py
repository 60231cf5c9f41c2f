"""
Moraine CLI - Command-line interface for planning and applying stacks.
"""

import importlib.util
import json
import sys
from dataclasses import dataclass
from pathlib import Path
from typing import Any

import click

from moraine.config.loader import build_stack, load_document
from moraine.config.settings import MoraineSettings
from moraine.core.errors import ApplyError, MoraineError, StageError
from moraine.core.stack import Stack
from moraine.execution.executor import Executor
from moraine.log import configure_logging
from moraine.pipeline.actions import CommandAction, DeployAction
from moraine.pipeline.orchestrator import Pipeline, RunStatus, latest_archived_run
from moraine.planning.plan import Action, Plan, PlanEngine
from moraine.providers.base import ProviderRegistry
from moraine.providers.local import LocalProvider
from moraine.state.store import FileStateStore

_SYMBOLS = {
    Action.CREATE: "+",
    Action.UPDATE: "~",
    Action.DELETE: "-",
    Action.NOOP: " ",
}


@dataclass
class LoadedProject:
    """What a stack file declares."""

    stack: Stack
    providers: ProviderRegistry
    pipeline: Pipeline | None = None
    pipeline_declaration: Any = None


@click.group()
@click.version_option(version="0.1.0")
@click.option(
    "--config",
    "config_file",
    type=click.Path(exists=True, dir_okay=False),
    help="YAML settings file",
)
@click.option("--state-dir", type=click.Path(file_okay=False), help="State directory")
@click.option("--log-level", default=None, help="Log level (DEBUG, INFO, WARNING, ERROR)")
@click.option("--log-format", type=click.Choice(["console", "json"]), default=None)
@click.pass_context
def cli(ctx: click.Context, config_file: str, state_dir: str, log_level: str, log_format: str):
    """
    Moraine - declarative infrastructure provisioning engine.

    Declare resources in YAML or Python, then plan and apply them.
    """
    overrides = {"state_dir": state_dir, "log_level": log_level, "log_format": log_format}
    try:
        if config_file:
            settings = MoraineSettings.from_file(config_file, **overrides)
        else:
            settings = MoraineSettings(**{k: v for k, v in overrides.items() if v is not None})
    except Exception as e:
        click.echo(f"✗ Invalid settings: {e}", err=True)
        sys.exit(1)

    configure_logging(settings.log_level, settings.log_format)
    ctx.obj = settings


@cli.command()
@click.argument("stack_file", type=click.Path(exists=True, dir_okay=False))
@click.option("--format", type=click.Choice(["text", "json", "mermaid"]), default="text")
def graph(stack_file: str, format: str):
    """
    Show the dependency graph and apply order.

    Example:
        moraine graph stack.yaml
        moraine graph stack.yaml --format mermaid
    """
    project = _load_or_exit(stack_file)

    try:
        resource_graph = project.stack.graph()
    except MoraineError as e:
        click.echo(f"✗ Invalid graph: {e}", err=True)
        sys.exit(1)

    if format == "json":
        output = resource_graph.to_dict()
        output["levels"] = resource_graph.levels()
        click.echo(json.dumps(output, indent=2))

    elif format == "mermaid":
        click.echo("```mermaid")
        click.echo("graph TD")
        for node_id in resource_graph.order:
            for dep in resource_graph.dependencies(node_id):
                click.echo(f"  {dep} --> {node_id}")
        click.echo("```")

    else:
        click.echo(f"\n Stack: {project.stack.name}")
        click.echo(f"{'=' * 50}")
        click.echo(f"\n Resources: {len(resource_graph)}")
        for i, node_id in enumerate(resource_graph.order, 1):
            node = resource_graph.node(node_id)
            deps = resource_graph.dependencies(node_id)
            suffix = f" <- {', '.join(deps)}" if deps else ""
            click.echo(f"  {i}. {node_id} ({node.kind}){suffix}")

        click.echo("\n Parallel levels:")
        for i, level in enumerate(resource_graph.levels()):
            click.echo(f"  {i}: {', '.join(level)}")


@cli.command()
@click.argument("stack_file", type=click.Path(exists=True, dir_okay=False))
@click.option("--format", type=click.Choice(["text", "json"]), default="text")
@click.pass_obj
def plan(settings: MoraineSettings, stack_file: str, format: str):
    """
    Show what apply would change.

    Example:
        moraine plan stack.yaml
    """
    project = _load_or_exit(stack_file)
    store = FileStateStore(settings.state_dir)

    try:
        computed = PlanEngine().plan(project.stack.nodes, store.load())
    except MoraineError as e:
        click.echo(f"✗ Planning failed: {e}", err=True)
        sys.exit(1)

    if format == "json":
        click.echo(json.dumps(computed.to_dict(), indent=2))
    else:
        _echo_plan(computed)


@cli.command()
@click.argument("stack_file", type=click.Path(exists=True, dir_okay=False))
@click.option("--concurrency", "-c", type=int, help="Maximum operations in flight")
@click.option("--timeout", type=float, help="Per-operation timeout in seconds")
@click.option("--rollback/--no-rollback", default=None, help="Delete resources created by a failed apply")
@click.pass_obj
def apply(
    settings: MoraineSettings, stack_file: str, concurrency: int, timeout: float, rollback: bool | None
):
    """
    Apply the declared resources.

    Example:
        moraine apply stack.yaml
        moraine apply stack.yaml --concurrency 8 --timeout 300
        moraine apply stack.yaml --rollback
    """
    project = _load_or_exit(stack_file)
    _apply(settings, project, project.stack.nodes, concurrency, timeout, rollback)


@cli.command()
@click.argument("stack_file", type=click.Path(exists=True, dir_okay=False))
@click.option("--concurrency", "-c", type=int, help="Maximum operations in flight")
@click.option("--timeout", type=float, help="Per-operation timeout in seconds")
@click.option("--yes", is_flag=True, help="Do not ask for confirmation")
@click.pass_obj
def destroy(settings: MoraineSettings, stack_file: str, concurrency: int, timeout: float, yes: bool):
    """
    Delete every resource recorded in state.

    Example:
        moraine destroy stack.yaml --yes
    """
    project = _load_or_exit(stack_file)
    if not yes:
        click.confirm(f"Destroy all resources of '{project.stack.name}'?", abort=True)
    _apply(settings, project, [], concurrency, timeout)


@cli.command()
@click.pass_obj
def state(settings: MoraineSettings):
    """
    List applied resources.

    Example:
        moraine state --state-dir .moraine/state
    """
    snapshot = FileStateStore(settings.state_dir).load()

    if not snapshot.entries and not snapshot.failures:
        click.echo("No resources in state")
        return

    for node_id, entry in snapshot.entries.items():
        click.echo(f"  {node_id} ({entry.kind}) {entry.content_hash[:12]} {entry.applied_at.isoformat()}")

    if snapshot.failures:
        click.echo("\n Failed:")
        for node_id, error in snapshot.failures.items():
            click.echo(f"  {node_id}: {error}")


@cli.command()
@click.argument("stack_file", type=click.Path(exists=True, dir_okay=False))
@click.option("--resume/--no-resume", default=None, help="Resume from the failed stage")
@click.pass_obj
def pipeline(settings: MoraineSettings, stack_file: str, resume: bool | None):
    """
    Run the pipeline declared in a stack file.

    Example:
        moraine pipeline stack.yaml
        moraine pipeline stack.yaml --resume
    """
    project = _load_or_exit(stack_file)
    store = FileStateStore(settings.state_dir)
    archive_dir = settings.archive_dir or Path(settings.state_dir).parent / "runs"

    runner = project.pipeline
    if runner is None:
        declaration = project.pipeline_declaration
        if declaration is None:
            click.echo("Error: No pipeline declared in file", err=True)
            sys.exit(1)
        runner = _build_pipeline(project, declaration, store, settings)
    elif not runner.resume_from_failure:
        runner.resume_from_failure = settings.resume_from_failure

    if resume is not None:
        runner.resume_from_failure = resume
    runner.archive_dir = runner.archive_dir or Path(archive_dir)

    if runner.resume_from_failure:
        previous = latest_archived_run(runner.archive_dir, runner.name)
        if previous is not None:
            try:
                runner.restore(previous)
            except ValueError as e:
                click.echo(f"Ignoring archived run: {e}", err=True)

    try:
        run = runner.run()
    except StageError as e:
        _echo_run(e.run)
        click.echo(f"✗ Pipeline '{runner.name}' failed at stage '{e.stage}': {e.cause}", err=True)
        sys.exit(1)

    _echo_run(run)
    if run.status is RunStatus.CANCELLED:
        sys.exit(1)
    click.echo(f"✓ Pipeline '{runner.name}' completed successfully")


def _apply(
    settings: MoraineSettings,
    project: LoadedProject,
    nodes: list,
    concurrency,
    timeout,
    rollback: bool | None = None,
) -> None:
    store = FileStateStore(settings.state_dir)

    try:
        computed = PlanEngine().plan(nodes, store.load())
    except MoraineError as e:
        click.echo(f"✗ Planning failed: {e}", err=True)
        sys.exit(1)

    _echo_plan(computed)
    if computed.is_empty:
        return

    executor = Executor(
        project.providers,
        store,
        concurrency=concurrency or settings.concurrency,
        timeout=timeout or settings.operation_timeout,
        rollback_on_failure=settings.rollback_on_failure if rollback is None else rollback,
    )

    try:
        result = executor.execute(computed)
    except ApplyError as e:
        for node_id, cause in e.failures:
            click.echo(f"  ✗ {node_id}: {cause}", err=True)
        succeeded = len(e.result.changed) if e.result is not None else 0
        click.echo(f"✗ Apply failed: {len(e.failures)} failed or skipped, {succeeded} applied", err=True)
        sys.exit(1)

    click.echo(f"\n✓ Apply complete: {len(result.changed)} changed")


def _echo_plan(computed: Plan) -> None:
    for op in computed.operations:
        click.echo(f"  {_SYMBOLS[op.action]} {op.node_id} ({op.kind}): {op.reason}")
    summary = computed.summary()
    click.echo(
        f"\nPlan: {summary['create']} to create, {summary['update']} to update, "
        f"{summary['delete']} to delete, {summary['no-op']} unchanged"
    )


def _echo_run(run) -> None:
    if run is None:
        return
    click.echo(f"\n Pipeline run {run.run_id}: {run.status.value}")
    for record in run.stages:
        line = f"  - {record.name}: {record.status.value}"
        if record.error:
            line += f" ({record.error})"
        click.echo(line)


def _build_pipeline(project: LoadedProject, declaration, store, settings: MoraineSettings) -> Pipeline:
    runner = Pipeline(
        declaration.name or project.stack.name,
        resume_from_failure=(
            settings.resume_from_failure
            if declaration.resume_from_failure is None
            else declaration.resume_from_failure
        ),
    )
    for stage in declaration.stages:
        if stage.deploy:
            runner.add_stage(stage.name, DeployAction(project.stack, project.providers, store, settings))
        else:
            runner.add_stage(
                stage.name,
                CommandAction(stage.command, cwd=stage.cwd, env=stage.env, timeout=stage.timeout),
            )
    return runner


def _load_or_exit(stack_file: str) -> LoadedProject:
    try:
        return _load_project(stack_file)
    except MoraineError as e:
        click.echo(f"✗ {e}", err=True)
        sys.exit(1)


def _load_project(stack_file: str) -> LoadedProject:
    """
    Load a stack from a YAML declaration file or a Python module.

    A Python module must define a Stack; it may also define a
    ProviderRegistry and a Pipeline. Without a registry, every kind is
    served by the local simulated provider.
    """
    path = Path(stack_file)
    if path.suffix in (".yaml", ".yml"):
        document = load_document(path)
        return LoadedProject(
            stack=build_stack(document),
            providers=ProviderRegistry(default=LocalProvider()),
            pipeline_declaration=document.pipeline,
        )

    spec = importlib.util.spec_from_file_location("moraine_stack_module", path)
    if spec is None or spec.loader is None:
        raise MoraineError(f"Cannot load stack module {path}")
    module = importlib.util.module_from_spec(spec)
    sys.modules["moraine_stack_module"] = module
    spec.loader.exec_module(module)

    stack = providers = runner = None
    for attr_name in dir(module):
        obj = getattr(module, attr_name)
        if stack is None and isinstance(obj, Stack):
            stack = obj
        elif providers is None and isinstance(obj, ProviderRegistry):
            providers = obj
        elif runner is None and isinstance(obj, Pipeline):
            runner = obj

    if stack is None:
        raise MoraineError(f"No Stack found in {path}")

    return LoadedProject(
        stack=stack,
        providers=providers or ProviderRegistry(default=LocalProvider()),
        pipeline=runner,
    )


if __name__ == "__main__":
    cli()
