"""End-to-end resume, idempotence and configuration drift scenarios.

Uses real checkpoint and cache services on a temporary project
directory with a scripted inference provider.
"""

from contextlib import aclosing

import pytest

from photojury.models.batch import ItemSource
from photojury.models.config import (
    BatchConfig,
    CacheConfig,
    CheckpointConfig,
    ConcurrencyConfig,
    RetryConfig,
)
from photojury.orchestration.batch_orchestrator import BatchOrchestrator
from photojury.services.cache_service import CacheService
from photojury.services.checkpoint_service import CheckpointService
from photojury.utils.exceptions import InferenceRequestError


def orchestrator_for(project_dir, provider, cache_enabled=True, retain=False):
    return BatchOrchestrator(
        config=BatchConfig(
            checkpoint_interval=3,
            retain_checkpoint_on_failure=retain,
            retry=RetryConfig(max_attempts=2, base_delay_seconds=0.0),
            concurrency=ConcurrencyConfig(fixed_slots=1),
        ),
        provider=provider,
        cache=CacheService(CacheConfig(enabled=cache_enabled), project_dir),
        checkpoints=CheckpointService(CheckpointConfig()),
    )


async def interrupt_after(orchestrator, items, parameters, project_dir, count):
    """Consume `count` events, then stop the run"""
    events = []
    async with aclosing(orchestrator.run(items, parameters, project_dir)) as stream:
        async for event in stream:
            events.append(event)
            if len(events) == count:
                break
    return events


@pytest.fixture
def project_dir(tmp_path):
    directory = tmp_path / "project"
    directory.mkdir()
    return directory


@pytest.mark.asyncio
async def test_resume_after_interruption_skips_checkpointed_items(
    project_dir, photo_items, evaluation_config, make_provider
):
    """Interrupted after 3 of 10 with interval 3: resume makes exactly 7 calls"""
    first = orchestrator_for(project_dir, make_provider(), cache_enabled=False)
    events = await interrupt_after(
        first, photo_items, evaluation_config, project_dir, count=3
    )
    assert len(events) == 3

    saved = CheckpointService().load(project_dir)
    assert saved is not None
    assert saved.completed_count == 3

    provider = make_provider()
    second = orchestrator_for(project_dir, provider, cache_enabled=False)
    outcome = await second.run_to_completion(
        photo_items, evaluation_config, project_dir
    )

    assert len(provider.calls) == 7
    assert not set(provider.calls) & {e.item_id for e in events}
    assert outcome.summary.resumed is True
    assert outcome.summary.restored_count == 3
    assert outcome.summary.succeeded == 10
    assert not (project_dir / ".analysis-checkpoint.json").exists()


@pytest.mark.asyncio
async def test_items_since_last_interval_save_survive_early_stop(
    project_dir, photo_items, evaluation_config, make_provider
):
    """Stopping after 4 events with interval 3 still records all 4"""
    first = orchestrator_for(project_dir, make_provider(), cache_enabled=False)
    events = await interrupt_after(
        first, photo_items, evaluation_config, project_dir, count=4
    )

    saved = CheckpointService().load(project_dir)
    assert saved.completed_count == 4

    provider = make_provider()
    outcome = await orchestrator_for(
        project_dir, provider, cache_enabled=False
    ).run_to_completion(photo_items, evaluation_config, project_dir)

    assert len(provider.calls) == 6
    assert not set(provider.calls) & {e.item_id for e in events}
    assert outcome.summary.restored_count == 4


@pytest.mark.asyncio
async def test_restored_items_are_reported_as_checkpoint_events(
    project_dir, photo_items, evaluation_config, make_provider
):
    first = orchestrator_for(project_dir, make_provider(), cache_enabled=False)
    interrupted = await interrupt_after(
        first, photo_items, evaluation_config, project_dir, count=3
    )

    second = orchestrator_for(project_dir, make_provider(), cache_enabled=False)
    events = [
        e async for e in second.run(photo_items, evaluation_config, project_dir)
    ]

    restored = [e for e in events if e.source == ItemSource.CHECKPOINT]
    assert {e.item_id for e in restored} == {e.item_id for e in interrupted}
    assert {e.item_id: e.result.score for e in restored} == {
        e.item_id: e.result.score for e in interrupted
    }


@pytest.mark.asyncio
async def test_resume_with_cache_makes_no_calls(
    project_dir, photo_items, evaluation_config, make_provider
):
    """Items evaluated before the interruption but not yet checkpointed hit the cache"""
    first = orchestrator_for(project_dir, make_provider())
    await interrupt_after(first, photo_items, evaluation_config, project_dir, count=3)

    already_evaluated = first.cache.stats().entry_count

    provider = make_provider()
    outcome = await orchestrator_for(project_dir, provider).run_to_completion(
        photo_items, evaluation_config, project_dir
    )

    assert outcome.summary.restored_count == 3
    assert outcome.summary.cache_hit_count == already_evaluated - 3
    assert len(provider.calls) == 10 - already_evaluated


@pytest.mark.asyncio
async def test_configuration_drift_discards_checkpoint(
    project_dir, photo_items, evaluation_config, make_provider
):
    """Changed parameters never mix with results computed under old ones"""
    first = orchestrator_for(project_dir, make_provider())
    await interrupt_after(first, photo_items, evaluation_config, project_dir, count=3)
    assert (project_dir / ".analysis-checkpoint.json").exists()

    changed = evaluation_config.model_copy(update={"theme": "Urban wildlife"})
    provider = make_provider()
    outcome = await orchestrator_for(project_dir, provider).run_to_completion(
        photo_items, changed, project_dir
    )

    assert outcome.summary.resumed is False
    assert outcome.summary.restored_count == 0
    assert outcome.summary.cache_hit_count == 0
    assert len(provider.calls) == 10


@pytest.mark.asyncio
async def test_failed_items_are_retried_on_resume(
    project_dir, photo_items, evaluation_config, make_provider
):
    failing = make_provider(
        failures={"photo_07.jpg": [InferenceRequestError("422 unsupported")]}
    )
    first = await orchestrator_for(
        project_dir, failing, retain=True
    ).run_to_completion(photo_items, evaluation_config, project_dir)
    assert first.summary.failed == 1

    provider = make_provider()
    second = await orchestrator_for(
        project_dir, provider, retain=True
    ).run_to_completion(photo_items, evaluation_config, project_dir)

    assert provider.calls == ["photo_07.jpg"]
    assert second.summary.restored_count == 9
    assert second.summary.failed == 0
    assert not (project_dir / ".analysis-checkpoint.json").exists()


@pytest.mark.asyncio
async def test_repeated_runs_yield_identical_results(
    project_dir, photo_items, evaluation_config, make_provider
):
    first = await orchestrator_for(project_dir, make_provider()).run_to_completion(
        photo_items, evaluation_config, project_dir
    )
    second = await orchestrator_for(project_dir, make_provider()).run_to_completion(
        photo_items, evaluation_config, project_dir
    )

    assert first.results == second.results
    assert second.summary.external_calls == 0
