"""CLI entry point for flowrunner.

Commands:
- flowrunner run: Execute a workflow file
- flowrunner validate: Check a workflow file for structural problems
- flowrunner models: List selectable models and provider availability
- flowrunner runs: List recent runs
- flowrunner show: Show one run's node results
"""

from __future__ import annotations

import asyncio
import json
import logging
import sys
from pathlib import Path
from typing import Any

import click
import pydantic
import yaml
from rich.console import Console
from rich.logging import RichHandler
from rich.markup import escape
from rich.panel import Panel
from rich.table import Table

from flowrunner import __version__
from flowrunner.cli_ui.graph_renderer import StatusTableRenderer, TerminalGraphRenderer
from flowrunner.core.config import ConfigError, EngineSettings, load_settings
from flowrunner.core.executors import ExecutorServices
from flowrunner.core.graph_engine import SchedulerError, WorkflowEngine
from flowrunner.core.graph_schema import WorkflowGraph
from flowrunner.core.runner import InputRequiredError, RunRequest, WorkflowRunner
from flowrunner.core.state import Database, RunStatus
from flowrunner.core.templating import output_to_text
from flowrunner.core.validate import extract_todos, validate_workflow
from flowrunner.providers import ProviderRegistry

console = Console()


def _setup_logging(verbose: int) -> None:
    if not verbose:
        return
    level = logging.DEBUG if verbose > 1 else logging.INFO
    logging.basicConfig(
        level=level,
        format="%(message)s",
        handlers=[RichHandler(console=Console(stderr=True), show_path=False)],
    )


def _load_mapping(path: str, what: str) -> dict[str, Any]:
    """Load a YAML or JSON file that must contain a mapping; exit on failure."""
    try:
        with open(path, encoding="utf-8") as f:
            data = yaml.safe_load(f)
    except yaml.YAMLError as e:
        console.print(f"[red]Error parsing {what} '{escape(path)}':[/red]")
        console.print(f"  {escape(str(e))}")
        sys.exit(1)
    if not isinstance(data, dict):
        console.print(
            f"[red]Error: Invalid {what} '{escape(path)}'. "
            f"Expected a mapping, got {type(data).__name__}.[/red]"
        )
        sys.exit(1)
    return data


def _load_workflow(path: str) -> tuple[WorkflowGraph, dict[str, Any]]:
    data = _load_mapping(path, "workflow file")
    try:
        graph = WorkflowGraph.model_validate(
            {"nodes": data.get("nodes", []), "edges": data.get("edges", [])}
        )
    except pydantic.ValidationError as e:
        console.print("[red]Error validating workflow schema:[/red]")
        for err in e.errors():
            loc = ".".join(str(x) for x in err["loc"])
            console.print(f"  - {escape(loc)}: {escape(err['msg'])}")
        sys.exit(1)
    return graph, data


def _settings(config_path: str | None) -> EngineSettings:
    try:
        return load_settings(config_path)
    except ConfigError as e:
        console.print(f"[red]Configuration error:[/red] {escape(str(e))}")
        sys.exit(1)


@click.group()
@click.version_option(version=__version__)
@click.option("--verbose", "-v", count=True, help="Log engine activity (-vv for debug)")
@click.option(
    "--config",
    "config_path",
    type=click.Path(exists=True, dir_okay=False),
    help="Config file (default: .flowrunner/config.yaml)",
)
@click.pass_context
def main(ctx: click.Context, verbose: int, config_path: str | None) -> None:
    """Flowrunner - execute automation workflow graphs."""
    _setup_logging(verbose)
    ctx.ensure_object(dict)
    ctx.obj["config_path"] = config_path


@main.command()
@click.argument("workflow_file", type=click.Path(exists=True, dir_okay=False))
@click.option("--input", "-i", "input_text", default="", help="Run input passed to the trigger")
@click.option(
    "--context",
    "context_file",
    type=click.Path(exists=True, dir_okay=False),
    help="Environment context file (YAML/JSON with name and settings)",
)
@click.option("--db", "db_path", type=click.Path(dir_okay=False), help="Run database path")
@click.pass_context
def run(
    ctx: click.Context,
    workflow_file: str,
    input_text: str,
    context_file: str | None,
    db_path: str | None,
) -> None:
    """Execute a workflow file and print each node's result."""
    settings = _settings(ctx.obj.get("config_path"))
    graph, data = _load_workflow(workflow_file)
    environment = _load_mapping(context_file, "context file") if context_file else None

    db = Database(db_path or settings.database_path)
    engine = WorkflowEngine(ExecutorServices(settings=settings))
    runner = WorkflowRunner(engine, db)
    request = RunRequest(
        graph=graph,
        input=input_text,
        workflow_id=data.get("id") or Path(workflow_file).stem,
        environment_context=environment,
    )

    try:
        response = asyncio.run(runner.run(request))
    except InputRequiredError as e:
        console.print(f"[red]Error:[/red] {escape(str(e))}. Pass it with --input.")
        sys.exit(1)
    except SchedulerError as e:
        console.print(f"[red]Workflow error:[/red] {escape(str(e))}")
        sys.exit(1)

    console.print(StatusTableRenderer(console).render_status_table(graph, response.run_id, response.results))
    if response.output is not None:
        console.print(Panel(escape(output_to_text(response.output)), title="Output"))

    if response.status == RunStatus.FAILED:
        console.print(f"[red]Run {escape(response.run_id)} failed:[/red] {escape(response.error or '')}")
        sys.exit(1)
    console.print(f"[green]Run {escape(response.run_id)} completed[/green]")


@main.command()
@click.argument("workflow_file", type=click.Path(exists=True, dir_okay=False))
@click.option("--tree/--no-tree", default=True, help="Show the graph as a tree")
def validate(workflow_file: str, tree: bool) -> None:
    """Check a workflow file for structural problems."""
    graph, data = _load_workflow(workflow_file)
    result = validate_workflow(graph.nodes, graph.edges)

    if tree:
        renderer = TerminalGraphRenderer(console)
        console.print(renderer.render_as_tree(graph, title=data.get("name") or Path(workflow_file).stem))
        console.print()

    console.print(f"[bold]Nodes:[/] {len(graph.nodes)}")
    console.print(f"[bold]Edges:[/] {len(graph.edges)}")

    for warning in result.warnings:
        console.print(f"  [yellow]! {escape(warning.message)}[/]")
    todos = extract_todos(graph.nodes, result)
    if todos:
        console.print(f"[yellow]{len(todos)} field(s) still to fill in[/]")

    if result.errors:
        console.print("\n[red bold]Validation Errors:[/]")
        for error in result.errors:
            console.print(f"  [red]• {escape(error.message)}[/]")
        sys.exit(1)
    console.print("\n[green]✓ Workflow is valid[/]")


@main.command()
def models() -> None:
    """List selectable models and whether their provider is configured."""
    table = Table(title="Models")
    table.add_column("ID", style="cyan")
    table.add_column("Provider", style="magenta")
    table.add_column("Name")
    table.add_column("Max tokens", justify="right")
    table.add_column("Available", justify="center")

    for model in ProviderRegistry().list_models():
        name = model["displayName"] + (" (default)" if model["isDefault"] else "")
        table.add_row(
            str(model["id"]),
            str(model["provider"]),
            name,
            str(model["maxTokens"]),
            "[green]✓[/]" if model["available"] else "[dim]✗[/]",
        )
    console.print(table)


@main.command()
@click.option("--limit", "-n", type=int, default=20, help="Number of runs to show")
@click.option("--workflow-id", "-w", help="Filter by workflow ID")
@click.option("--db", "db_path", type=click.Path(dir_okay=False), help="Run database path")
@click.pass_context
def runs(ctx: click.Context, limit: int, workflow_id: str | None, db_path: str | None) -> None:
    """List recent runs."""
    settings = _settings(ctx.obj.get("config_path"))
    path = Path(db_path or settings.database_path)
    if not path.exists():
        console.print("[yellow]No run database found. Execute a workflow first.[/yellow]")
        return

    table = Table(title="Runs")
    table.add_column("Run ID", style="cyan")
    table.add_column("Workflow")
    table.add_column("Status", justify="center")
    table.add_column("Started")
    table.add_column("Error", max_width=50)

    colors = {"completed": "green", "failed": "red", "cancelled": "yellow", "running": "blue"}
    for r in Database(path).list_runs(limit=limit, workflow_id=workflow_id):
        color = colors.get(r.status.value, "white")
        table.add_row(
            escape(r.id),
            escape(r.workflow_id or ""),
            f"[{color}]{r.status.value}[/]",
            r.started_at.strftime("%Y-%m-%d %H:%M:%S"),
            escape(r.error_message or ""),
        )
    console.print(table)


@main.command()
@click.argument("run_id")
@click.option("--db", "db_path", type=click.Path(dir_okay=False), help="Run database path")
@click.option("--json", "as_json", is_flag=True, help="Print the run as JSON")
@click.pass_context
def show(ctx: click.Context, run_id: str, db_path: str | None, as_json: bool) -> None:
    """Show one run's node results."""
    settings = _settings(ctx.obj.get("config_path"))
    path = Path(db_path or settings.database_path)
    record = Database(path).get_run(run_id) if path.exists() else None
    if record is None:
        console.print(f"[red]Run '{escape(run_id)}' not found[/]")
        sys.exit(1)

    if as_json:
        click.echo(json.dumps(record.to_json(), indent=2, ensure_ascii=False))
        return

    console.print(
        Panel(
            f"Workflow: {escape(record.workflow_id or '-')}\n"
            f"Status: {record.status.value}\n"
            f"Input: {escape(record.input_data)}"
            + (f"\nError: {escape(record.error_message)}" if record.error_message else ""),
            title=f"Run {escape(record.id)}",
        )
    )
    console.print(StatusTableRenderer(console).render_status_table(None, record.id, record.node_results))


if __name__ == "__main__":
    main()
