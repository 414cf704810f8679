"""Command line interface for flowline."""

from __future__ import annotations

import asyncio
import json
import logging
from pathlib import Path
from typing import Any, Awaitable, Callable, Dict, Optional, TypeVar

import typer
import yaml

from .config import load_config
from .engine import Engine
from .errors import FlowlineError, ValidationError
from .execute import ACTIVE_STEP_STATUSES
from .models import InstanceStatus
from .validation import check_definition, parse_definition

T = TypeVar("T")

EXIT_VALIDATION = 3
EXIT_RUNTIME = 4

app = typer.Typer(help="CLI for flowline workflows")

# Command groups
definition_app = typer.Typer(help="Commands for managing workflow definitions")
instance_app = typer.Typer(help="Commands for managing workflow instances")
worker_app = typer.Typer(help="Commands for running step workers")
scheduler_app = typer.Typer(help="Commands for running the cron scheduler")

app.add_typer(definition_app, name="definition")
app.add_typer(instance_app, name="instance")
app.add_typer(worker_app, name="worker")
app.add_typer(scheduler_app, name="scheduler")


@app.callback()
def main(
    ctx: typer.Context,
    config: Optional[Path] = typer.Option(None, "--config", help="Path to a flowline.yaml"),
    log_level: str = typer.Option("WARNING", "--log-level", help="Python logging level"),
) -> None:
    """flowline CLI entry point."""
    logging.basicConfig(
        level=log_level.upper(), format="%(asctime)s %(levelname)s %(name)s: %(message)s"
    )
    ctx.obj = {"config": str(config) if config else None}


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def _engine(ctx: typer.Context) -> Engine:
    return Engine(load_config((ctx.obj or {}).get("config")))


def _run(ctx: typer.Context, action: Callable[[Engine], Awaitable[T]]) -> T:
    """Run ``action`` against a started engine, mapping errors to exit codes."""

    async def runner() -> T:
        engine = _engine(ctx)
        await engine.start()
        try:
            return await action(engine)
        finally:
            await engine.close()

    try:
        return asyncio.run(runner())
    except FlowlineError as exc:
        _fail(exc)


def _fail(exc: FlowlineError) -> None:
    typer.secho(f"Error ({exc.kind}): {exc}", fg=typer.colors.RED, err=True)
    if isinstance(exc, ValidationError):
        for problem in exc.problems:
            typer.secho(f"  - {problem}", fg=typer.colors.RED, err=True)
        raise typer.Exit(code=EXIT_VALIDATION)
    raise typer.Exit(code=EXIT_RUNTIME)


def _echo_json(value: Any) -> None:
    typer.echo(json.dumps(value, indent=2, sort_keys=True, default=str))


def _parse_input(raw: Optional[str]) -> Dict[str, Any]:
    if not raw:
        return {}
    try:
        value = json.loads(raw)
    except ValueError as exc:
        raise typer.BadParameter(f"--input is not valid JSON: {exc}") from exc
    if not isinstance(value, dict):
        raise typer.BadParameter("--input must be a JSON object")
    return value


def load_document(path: Path) -> Dict[str, Any]:
    """Read a definition file (JSON or YAML).

    A file holding ``name`` and ``definition`` is an exported definition;
    anything else is taken as a bare graph and named after the file.
    """

    try:
        text = path.read_text()
    except OSError as exc:
        raise typer.BadParameter(f"Cannot read {path}: {exc}") from exc
    try:
        data = yaml.safe_load(text) if path.suffix in (".yaml", ".yml") else json.loads(text)
    except (ValueError, yaml.YAMLError) as exc:
        raise ValidationError(f"{path} is not valid {path.suffix.lstrip('.') or 'JSON'}", [str(exc)]) from exc
    if not isinstance(data, dict):
        raise ValidationError(f"{path} must hold an object")
    if "definition" in data and "name" in data:
        return data
    return {"name": path.stem, "definition": data}


# ---------------------------------------------------------------------------
# Definitions
# ---------------------------------------------------------------------------


@definition_app.command("validate")
def definition_validate(path: Path) -> None:
    """
    Validate a definition file without storing it.

    Exits with code 3 and lists every problem when the definition is invalid.

    Example:
        flowline definition validate ./workflows/report.json
    """
    try:
        document = load_document(path)
        graph = parse_definition(document["definition"])
    except ValidationError as exc:
        _fail(exc)
    problems = check_definition(graph)
    if problems:
        _fail(ValidationError(f"{path} is not a valid definition", problems))
    typer.secho(f"{path}: valid ({len(graph.steps)} steps)", fg=typer.colors.GREEN)


@definition_app.command("create")
def definition_create(
    ctx: typer.Context,
    path: Path,
    name: Optional[str] = typer.Option(None, help="Override the definition name"),
    owner: Optional[str] = typer.Option(None, help="Owner id"),
    activate: bool = typer.Option(False, help="Activate right after creating"),
) -> None:
    """
    Store a definition from a JSON or YAML file as a draft.

    Example:
        flowline definition create ./workflows/nightly.yaml --activate
    """

    async def action(engine: Engine):
        document = load_document(path)
        if name:
            document["name"] = name
        definition = await engine.control.import_definition(document, owner_id=owner)
        if activate:
            definition = await engine.control.activate_definition(definition.id)
        return definition

    definition = _run(ctx, action)
    typer.echo(f"{definition.id}\t{definition.name}\tv{definition.version}\t{definition.status.value}")


@definition_app.command("list")
def definition_list(
    ctx: typer.Context,
    status: Optional[str] = typer.Option(None, help="draft, active, inactive or archived"),
    name: Optional[str] = None,
    tag: Optional[str] = None,
) -> None:
    """
    List stored definitions.

    Example:
        flowline definition list --status active
        # Output: 6f1c...    nightly-report    v1.0.0    active
    """
    definitions = _run(ctx, lambda engine: engine.control.list_definitions(status=status, name=name, tag=tag))
    if not definitions:
        typer.echo("No definitions found")
        return
    for definition in definitions:
        typer.echo(f"{definition.id}\t{definition.name}\tv{definition.version}\t{definition.status.value}")


@definition_app.command("show")
def definition_show(
    ctx: typer.Context,
    definition_id: str,
    export: bool = typer.Option(False, "--export", help="Print the portable export document"),
) -> None:
    """Show one definition as JSON."""
    if export:
        _echo_json(_run(ctx, lambda engine: engine.control.export_definition(definition_id)))
        return
    definition = _run(ctx, lambda engine: engine.control.get_definition(definition_id))
    _echo_json(definition.to_public())


@definition_app.command("activate")
def definition_activate(ctx: typer.Context, definition_id: str) -> None:
    """Activate a definition (the previously active version of its name is deactivated)."""
    definition = _run(ctx, lambda engine: engine.control.activate_definition(definition_id))
    typer.echo(f"{definition.id}\t{definition.name}\tv{definition.version}\t{definition.status.value}")


# ---------------------------------------------------------------------------
# Instances
# ---------------------------------------------------------------------------


@instance_app.command("start")
def instance_start(
    ctx: typer.Context,
    definition_id: str,
    input: Optional[str] = typer.Option(None, "--input", help="Input data as a JSON object"),
    priority: Optional[int] = typer.Option(None, min=1, max=10),
) -> None:
    """
    Start an instance of an active definition.

    Example:
        flowline instance start 6f1c... --input '{"region": "emea"}'
    """
    data = _parse_input(input)
    instance = _run(ctx, lambda engine: engine.control.start(definition_id, data, priority=priority))
    typer.echo(instance.id)


@instance_app.command("cancel")
def instance_cancel(
    ctx: typer.Context,
    instance_id: str,
    reason: Optional[str] = typer.Option(None, help="Recorded on the instance and in the audit log"),
) -> None:
    """Cancel an instance; cancelling twice is harmless."""
    result = _run(ctx, lambda engine: engine.control.cancel(instance_id, reason))
    typer.echo("cancelled" if result.cancelled else "already cancelled")


@instance_app.command("retry")
def instance_retry(ctx: typer.Context, instance_id: str) -> None:
    """Start a new instance from a failed or cancelled one."""
    instance = _run(ctx, lambda engine: engine.control.retry(instance_id))
    typer.echo(instance.id)


@instance_app.command("list")
def instance_list(
    ctx: typer.Context,
    definition: Optional[str] = typer.Option(None, help="Only instances of this definition id"),
    status: Optional[str] = None,
    limit: int = 50,
) -> None:
    """
    List instances, newest first.

    Example:
        flowline instance list --status failed
        # Output: 9a2e...    nightly-report    failed
    """
    instances = _run(
        ctx, lambda engine: engine.control.list_instances(definition_id=definition, status=status, limit=limit)
    )
    if not instances:
        typer.echo("No instances found")
        return
    for instance in instances:
        typer.echo(f"{instance.id}\t{instance.definition_name}\t{instance.status.value}")


@instance_app.command("show")
def instance_show(ctx: typer.Context, instance_id: str) -> None:
    """
    Show an instance with its step executions.

    Example:
        flowline instance show 9a2e...
        # Output: Instance 9a2e...: failed
        #         - fetch #1: succeeded
        #         - transform #2: failed (transient: upstream timeout)
    """
    detail = _run(ctx, lambda engine: engine.control.get_instance(instance_id))
    typer.echo(f"Instance {detail.instance.id}: {detail.instance.status.value}")
    if detail.instance.input_data:
        typer.echo(f"Input: {json.dumps(detail.instance.input_data)}")
    for step in detail.steps:
        line = f"- {step.step_id} #{step.attempt}: {step.status.value}"
        if step.error is not None:
            line += f" ({step.error.kind}: {step.error.message})"
        typer.echo(line)
    if detail.instance.output_data is not None:
        typer.echo(f"Output: {json.dumps(detail.instance.output_data)}")


@app.command("stats")
def stats(ctx: typer.Context, definition_id: str) -> None:
    """Execution statistics of a definition."""
    _echo_json(_run(ctx, lambda engine: engine.control.get_stats(definition_id)))


# ---------------------------------------------------------------------------
# Long-running processes
# ---------------------------------------------------------------------------


@worker_app.command("run")
def worker_run(
    ctx: typer.Context,
    concurrency: int = typer.Option(4, min=1),
    lifespan: Optional[float] = typer.Option(None, help="Stop after this many seconds"),
) -> None:
    """
    Run step workers against the configured store and queue.

    Example:
        flowline worker run --concurrency 8
    """
    typer.echo(f"Starting {concurrency} workers")
    processed = _run(ctx, lambda engine: engine.worker_pool(concurrency).run(lifespan=lifespan))
    typer.echo(f"Processed {processed} work items")


@scheduler_app.command("run")
def scheduler_run(
    ctx: typer.Context,
    lifespan: Optional[float] = typer.Option(None, help="Stop after this many seconds"),
) -> None:
    """
    Run the cron scheduler; only the lease holder fires schedules.

    Example:
        flowline scheduler run --lifespan 3600
    """
    _run(ctx, lambda engine: engine.scheduler.run(lifespan=lifespan))


@app.command("run")
def run_file(
    path: Path,
    input: Optional[str] = typer.Option(None, "--input", help="Input data as a JSON object"),
    timeout: float = typer.Option(60.0, help="Give up after this many seconds"),
) -> None:
    """
    Run a definition file to completion in-process.

    The definition is created, activated and started on an in-memory engine;
    work items are processed inline until the instance ends. Exit code 0
    when it completes, 4 when it fails or does not finish in time.

    Example:
        flowline run ./workflows/etl.json --input '{"day": "2024-05-01"}'
    """
    data = _parse_input(input)

    async def runner() -> Any:
        engine = Engine.in_memory()
        await engine.start()
        try:
            document = load_document(path)
            definition = await engine.control.import_definition(document)
            await engine.control.activate_definition(definition.id)
            instance = await engine.control.start(definition.id, data)
            loop = asyncio.get_running_loop()
            deadline = loop.time() + timeout
            while True:
                await engine.drain()
                detail = await engine.control.get_instance(instance.id)
                if detail.instance.status.is_terminal or loop.time() >= deadline:
                    return detail
                if not any(s.status in ACTIVE_STEP_STATUSES for s in detail.steps):
                    return detail
                await asyncio.sleep(engine.config.queue.poll_interval_ms / 1000)
        finally:
            await engine.close()

    try:
        detail = asyncio.run(runner())
    except FlowlineError as exc:
        _fail(exc)
    instance = detail.instance
    typer.echo(f"Instance {instance.id}: {instance.status.value}")
    if instance.output_data is not None:
        _echo_json(instance.output_data)
    if instance.error is not None:
        typer.secho(f"{instance.error.kind}: {instance.error.message}", fg=typer.colors.RED, err=True)
    if instance.status != InstanceStatus.COMPLETED:
        raise typer.Exit(code=EXIT_RUNTIME)


if __name__ == "__main__":
    app()
