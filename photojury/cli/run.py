"""Run command for batch photo evaluation.

Discovers photos, evaluates them through the batch orchestrator and,
optionally, ranks candidate sets with the set optimizer.
"""

import asyncio
from pathlib import Path
from typing import Optional

import typer

from photojury.cli.utils import (
    display_error,
    display_info,
    display_success,
    display_warning,
    handle_errors,
    load_config,
    logger,
)
from photojury.models.batch import BatchOutcome, ItemEvent
from photojury.models.candidate import OptimizerResult, ScoredItem
from photojury.models.config import PhotoJuryConfig
from photojury.observability.logging import bind_context, clear_context
from photojury.observability.metrics import get_metrics_text
from photojury.orchestration import BatchOrchestrator, SetOptimizer
from photojury.services.cache_service import CacheService
from photojury.services.checkpoint_service import CheckpointService
from photojury.services.inference.ollama import OllamaProvider
from photojury.utils.files import discover_photos


@handle_errors
def run_command(
    config_path: Path = typer.Option(
        "photojury.yaml",
        "--config",
        "-c",
        help="Path to project config YAML",
    ),
    select: bool = typer.Option(
        False, "--select", help="Rank candidate sets after evaluation"
    ),
    set_size: Optional[int] = typer.Option(
        None, "--set-size", "-k", help="Photos per set (overrides config)"
    ),
    dry_run: bool = typer.Option(
        False, "--dry-run", help="Validate and list photos without evaluating"
    ),
    metrics_file: Optional[Path] = typer.Option(
        None, "--metrics-file", help="Write Prometheus metrics here after the run"
    ),
):
    """Evaluate every photo in the project, resuming where a run stopped."""
    config, manager = load_config(config_path)
    project_dir = manager.get_project_dir()
    photos = discover_photos(manager.get_photo_dir())

    if not photos:
        display_warning(f"No supported photos found in {manager.get_photo_dir()}")
        return

    if dry_run:
        display_success("Dry run: Configuration valid.")
        typer.echo(f"Found {len(photos)} photos:")
        for photo in photos:
            typer.echo(f" - {photo.item_id}")
        return

    display_info(
        f"Evaluating {len(photos)} photos with {config.inference.model} "
        f"for '{config.evaluation.title}'..."
    )

    bind_context(project=project_dir.name)
    try:
        outcome, ranking = asyncio.run(
            _run(config, photos, project_dir, select, set_size)
        )
    finally:
        clear_context()

    _display_outcome(outcome)
    if ranking is not None:
        _display_ranking(ranking)

    if metrics_file is not None:
        metrics_file.write_bytes(get_metrics_text())
        display_info(f"Metrics written to {metrics_file}")


async def _run(config: PhotoJuryConfig, photos, project_dir: Path, select, set_size):
    provider = OllamaProvider(config.inference)
    orchestrator = BatchOrchestrator(
        config=config.batch,
        provider=provider,
        cache=CacheService(config.cache, project_dir),
        checkpoints=CheckpointService(config.checkpoint),
    )

    def progress(event: ItemEvent) -> None:
        if event.ok:
            assert event.result is not None
            typer.echo(
                f"  {event.item_id}: {event.result.score:.1f} ({event.source.value})"
            )
        else:
            display_error(f"  {event.item_id}: failed ({event.error})")

    try:
        outcome = await orchestrator.run_to_completion(
            photos, config.evaluation, project_dir, on_event=progress
        )

        ranking = None
        if select:
            paths = {p.item_id: str(p.path) for p in photos}
            scored = [
                ScoredItem.from_evaluation(item_id, result, paths.get(item_id))
                for item_id, result in outcome.scored_items()
            ]
            optimizer = SetOptimizer(
                config.optimizer,
                group_provider=provider,
                retry_config=config.batch.retry,
            )
            ranking = await optimizer.optimize(
                scored, config.evaluation, set_size=set_size
            )
    finally:
        await provider.close()

    return outcome, ranking


def _display_outcome(outcome: BatchOutcome) -> None:
    summary = outcome.summary
    typer.echo("")
    typer.secho("Batch completed!", fg=typer.colors.GREEN, bold=True)
    typer.echo(f"  Photos: {summary.total}")
    typer.echo(f"  Succeeded: {summary.succeeded} ({summary.success_rate}%)")
    typer.echo(f"  Failed: {summary.failed}")
    typer.echo(f"  From checkpoint: {summary.restored_count}")
    typer.echo(f"  Cache hits: {summary.cache_hit_count}")
    typer.echo(f"  Inference calls: {summary.external_calls}")
    typer.echo(f"  Duration: {summary.duration_seconds:.1f}s")

    if outcome.failures:
        display_warning("\nFailed photos (re-run to retry):")
        for item_id, error in sorted(outcome.failures.items()):
            typer.echo(f" - {item_id}: {error}")

    logger.info("run_command_complete", **summary.model_dump())


def _display_ranking(result: OptimizerResult) -> None:
    typer.echo("")
    if not result.ranking:
        display_warning("Not enough evaluated photos to form a set.")
        return

    typer.secho(
        f"Top sets of {result.set_size} "
        f"({result.combinations_evaluated} combinations from {result.pool_size} photos):",
        bold=True,
    )
    for candidate in result.ranking:
        group = (
            f"group {candidate.group_score:.1f}"
            if candidate.group_score is not None
            else f"group n/a ({candidate.group_error})"
            if candidate.group_error
            else "group n/a"
        )
        typer.echo(
            f"  #{candidate.rank} {candidate.composite_score:.2f}  "
            f"[{', '.join(candidate.item_ids)}]  "
            f"cheap {candidate.cheap_score:.2f}, {group}"
        )
