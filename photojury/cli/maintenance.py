"""Checkpoint and cache inspection commands."""

from pathlib import Path

import typer

from photojury.cli.utils import (
    display_info,
    display_success,
    display_warning,
    handle_errors,
    load_config,
)
from photojury.orchestration import BatchOrchestrator
from photojury.services.cache_service import CacheService
from photojury.services.checkpoint_service import CheckpointService
from photojury.services.inference.ollama import OllamaProvider

CONFIG_OPTION = typer.Option(
    "photojury.yaml", "--config", "-c", help="Path to project config YAML"
)


@handle_errors
def checkpoint_status_command(config_path: Path = CONFIG_OPTION):
    """Show the saved checkpoint and whether the next run would resume it."""
    config, manager = load_config(config_path)
    project_dir = manager.get_project_dir()

    service = CheckpointService(config.checkpoint)
    checkpoint = service.load(project_dir)
    if checkpoint is None:
        display_info("No checkpoint found.")
        return

    orchestrator = BatchOrchestrator(
        config.batch,
        OllamaProvider(config.inference),
        CacheService(config.cache, project_dir),
        service,
    )
    validation = service.validate(
        checkpoint, orchestrator.run_parameters(config.evaluation)
    )

    typer.echo(f"Checkpoint: {service.checkpoint_path(project_dir)}")
    typer.echo(f"  Project: {checkpoint.project_id}")
    typer.echo(f"  Status: {checkpoint.progress.status.value}")
    typer.echo(f"  Completed: {checkpoint.completed_count}/{len(checkpoint.item_ids)}")
    typer.echo(f"  Failed: {len(checkpoint.progress.failed)}")
    typer.echo(f"  Created: {checkpoint.metadata.created_at.isoformat()}")
    typer.echo(f"  Resumed: {checkpoint.metadata.resume_count} time(s)")

    if validation.valid:
        display_success("Next run will resume from this checkpoint.")
    else:
        display_warning(f"Next run will start fresh: {validation.reason}")


@handle_errors
def cache_stats_command(config_path: Path = CONFIG_OPTION):
    """Show cache size and growth indicators."""
    config, manager = load_config(config_path)
    stats = CacheService(config.cache, manager.get_project_dir()).stats()

    typer.echo(f"Entries: {stats.entry_count}")
    typer.echo(f"Size: {stats.total_size_mb:.2f} MB")
    typer.echo(f"Hit rate: {stats.lifetime_hit_rate:.1%} ({stats.stored_hits} hits)")
    typer.echo(f"Parameter sets: {len(stats.parameter_fingerprints)}")

    if stats.growth_warning:
        display_warning(
            "Cache holds results for several parameter sets or many entries; "
            "consider running cache-clear."
        )


@handle_errors
def cache_clear_command(
    config_path: Path = CONFIG_OPTION,
    yes: bool = typer.Option(False, "--yes", "-y", help="Skip confirmation"),
):
    """Remove every cached evaluation for the project."""
    config, manager = load_config(config_path)
    cache = CacheService(config.cache, manager.get_project_dir())

    if not yes:
        typer.confirm(f"Clear all entries in {cache.cache_dir}?", abort=True)

    removed = cache.clear()
    display_success(f"Removed {removed} cache entries.")
