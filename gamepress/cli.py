"""Command line interface for running gamepress generation flows."""

from __future__ import annotations

import asyncio
import logging
from pathlib import Path
from typing import List, Optional

import typer
import yaml

from gamepress import FlowDispatcher, get_checkpoint_repository, get_client
from gamepress.cli_utils.output import (
    _format_checkpoint_line,
    _format_item_progress,
    _format_result_line,
    _format_summary,
)
from gamepress.config import load_config
from gamepress.contracts import GenerationFlowConfiguration, merge_configuration
from gamepress.errors import InvalidConfiguration
from gamepress.models import FlowSnapshot, FlowStatus, ProgressEvent
from gamepress.persistence import InMemoryGameRepository
from gamepress.registry import FlowRegistry

app = typer.Typer(help="CLI for gamepress generation flows")

# Command groups
checkpoint_app = typer.Typer(help="Commands for inspecting flow checkpoints")

app.add_typer(checkpoint_app, name="checkpoint")


@app.callback()
def main(
    log_level: Optional[str] = typer.Option(
        None, "--log-level", help="Logging level (default: from config or INFO)"
    ),
) -> None:
    """gamepress CLI entry point."""
    level = (log_level or load_config().log_level).upper()
    logging.basicConfig(
        level=getattr(logging, level, logging.INFO),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )


def _read_yaml(path: Path) -> dict:
    with open(path) as f:
        data = yaml.safe_load(f) or {}
    if not isinstance(data, dict):
        raise InvalidConfiguration([f"{path} must contain a mapping"])
    return data


async def _run_flow(dispatcher: FlowDispatcher, configuration: dict) -> FlowSnapshot:
    def on_progress(event: ProgressEvent) -> None:
        stage = f" ({event.current_stage.value})" if event.current_stage else ""
        typer.echo(f"Progress: {event.progress:.0f}%{stage}")

    dispatcher.subscribe("progress", on_progress)
    try:
        flow_id = await dispatcher.start_flow(configuration)
        typer.echo(f"Started flow {flow_id}")
        return await dispatcher.wait_for_flow(flow_id)
    finally:
        await dispatcher.shutdown()


@app.command("run")
def run(
    workflow_id: str,
    catalog: Path = typer.Option(
        ..., "--catalog", help="YAML file with 'workflows' and 'games' lists"
    ),
    game: Optional[List[str]] = typer.Option(
        None, "--game", help="Game id to generate (repeatable; default: all games)"
    ),
    flow_config: Optional[Path] = typer.Option(
        None, "--flow-config", help="YAML file with flow configuration overrides"
    ),
    backend: Optional[str] = typer.Option(
        None, "--backend", help="Generation client backend: scripted or agent"
    ),
    max_items: Optional[int] = typer.Option(None, "--max-items"),
    max_stages: Optional[int] = typer.Option(None, "--max-stages"),
) -> None:
    """
    Run a generation flow to completion.

    Every selected game goes through format analysis, content generation and
    format validation. Progress is printed as it is reported and one line per
    item summarises the outcome.

    Example:
        gamepress run wf-1 --catalog catalog.yaml
        gamepress run wf-1 --catalog catalog.yaml --game g1 --game g2 --backend agent
    """
    if not catalog.exists():
        typer.secho(f"Catalog not found: {catalog}", fg=typer.colors.RED)
        raise typer.Exit(code=1)

    config = load_config()
    overrides: dict = {"workflowId": workflow_id}
    if game:
        overrides["gameDataIds"] = game
    concurrency = {}
    if max_items is not None:
        concurrency["maxConcurrentItems"] = max_items
    if max_stages is not None:
        concurrency["maxConcurrentStages"] = max_stages
    if concurrency:
        overrides["concurrency"] = concurrency

    try:
        repository = InMemoryGameRepository.from_file(catalog)
        base = _read_yaml(flow_config) if flow_config else {}
        if "gameDataIds" not in overrides and "gameDataIds" not in base:
            overrides["gameDataIds"] = repository.game_ids
        dispatcher = FlowDispatcher(
            repository,
            get_client(backend, config),
            registry=FlowRegistry(),
            config=config,
        )
        snapshot = asyncio.run(
            _run_flow(dispatcher, merge_configuration(base, overrides))
        )
    except InvalidConfiguration as e:
        typer.secho("Invalid configuration:", fg=typer.colors.RED)
        for error in e.errors:
            typer.echo(f"- {error}")
        raise typer.Exit(code=1)
    except ValueError as e:
        typer.secho(str(e), fg=typer.colors.RED)
        raise typer.Exit(code=1)

    for line in _format_summary(snapshot):
        typer.echo(line)
    for result in snapshot.results:
        typer.echo(_format_result_line(result))
    if snapshot.status != FlowStatus.COMPLETED:
        raise typer.Exit(code=1)


@app.command("validate")
def validate(flow_config: Path) -> None:
    """
    Validate a flow configuration file.

    Applies configured flow defaults and reports every problem found.

    Example:
        gamepress validate flow.yaml
    """
    if not flow_config.exists():
        typer.secho(f"File not found: {flow_config}", fg=typer.colors.RED)
        raise typer.Exit(code=1)
    config = load_config()
    try:
        parsed = GenerationFlowConfiguration.parse(
            _read_yaml(flow_config), config.flow_defaults
        )
    except InvalidConfiguration as e:
        typer.secho("Invalid configuration:", fg=typer.colors.RED)
        for error in e.errors:
            typer.echo(f"- {error}")
        raise typer.Exit(code=1)

    typer.echo("Configuration is valid")
    typer.echo(f"Workflow: {parsed.workflow_id}")
    typer.echo(f"Games: {len(parsed.game_data_ids)}")
    typer.echo(
        f"Concurrency: {parsed.concurrency.max_concurrent_items} items, "
        f"{parsed.concurrency.max_concurrent_stages} stages"
    )


@checkpoint_app.command("list")
def checkpoint_list() -> None:
    """List the latest checkpoint of every flow in the configured store."""
    repo = get_checkpoint_repository()
    checkpoints = asyncio.run(repo.list_checkpoints())
    if not checkpoints:
        typer.echo("No checkpoints found")
        return
    for checkpoint in checkpoints:
        typer.echo(_format_checkpoint_line(checkpoint))


@checkpoint_app.command("show")
def checkpoint_show(flow_id: str) -> None:
    """Show per-item stage state recorded in a flow's checkpoint."""
    repo = get_checkpoint_repository()
    checkpoint = asyncio.run(repo.get_checkpoint(flow_id))
    if checkpoint is None:
        typer.echo("Checkpoint not found")
        raise typer.Exit(code=1)
    typer.echo(f"Flow {checkpoint.flow_id}: {checkpoint.status.value}")
    typer.echo(f"Workflow: {checkpoint.workflow_id}")
    typer.echo(f"Saved: {checkpoint.saved_at.isoformat()}")
    for item in checkpoint.items:
        typer.echo(_format_item_progress(item))
