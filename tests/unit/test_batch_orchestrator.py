"""Unit tests for BatchOrchestrator"""

import asyncio
from pathlib import Path

import pytest

from photojury.models.batch import BatchItem, ItemSource
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
from photojury.utils.exceptions import (
    InferenceRequestError,
    InferenceUnavailableError,
)

CHECKPOINT_FILE = ".analysis-checkpoint.json"


@pytest.fixture
def project_dir(tmp_path):
    directory = tmp_path / "project"
    directory.mkdir()
    return directory


def build(
    project_dir: Path,
    provider,
    slots: int = 2,
    cache_enabled: bool = True,
    **batch_overrides,
) -> BatchOrchestrator:
    params = dict(
        checkpoint_interval=3,
        item_timeout_seconds=5.0,
        retry=RetryConfig(max_attempts=3, base_delay_seconds=0.0, jitter_factor=0.0),
        concurrency=ConcurrencyConfig(fixed_slots=slots),
    )
    params.update(batch_overrides)
    return BatchOrchestrator(
        config=BatchConfig(**params),
        provider=provider,
        cache=CacheService(CacheConfig(enabled=cache_enabled), project_dir),
        checkpoints=CheckpointService(CheckpointConfig()),
    )


@pytest.mark.asyncio
async def test_processes_every_item(
    project_dir, photo_items, evaluation_config, make_provider
):
    provider = make_provider()
    orchestrator = build(project_dir, provider)

    events = [e async for e in orchestrator.run(photo_items, evaluation_config, project_dir)]

    assert len(events) == 10
    assert {e.item_id for e in events} == {i.item_id for i in photo_items}
    assert all(e.ok and e.source == ItemSource.INFERENCE for e in events)

    summary = orchestrator.summary
    assert summary.total == 10
    assert summary.succeeded == 10
    assert summary.failed == 0
    assert summary.external_calls == 10
    assert summary.resumed is False


@pytest.mark.asyncio
async def test_checkpoint_removed_after_clean_completion(
    project_dir, photo_items, evaluation_config, make_provider
):
    orchestrator = build(project_dir, make_provider())

    await orchestrator.run_to_completion(photo_items, evaluation_config, project_dir)

    assert not (project_dir / CHECKPOINT_FILE).exists()


@pytest.mark.asyncio
async def test_second_run_is_served_from_cache(
    project_dir, photo_items, evaluation_config, make_provider
):
    """Re-running the same items and parameters makes no external calls"""
    first = await build(project_dir, make_provider()).run_to_completion(
        photo_items, evaluation_config, project_dir
    )

    provider = make_provider()
    second_orchestrator = build(project_dir, provider)
    second = await second_orchestrator.run_to_completion(
        photo_items, evaluation_config, project_dir
    )

    assert provider.calls == []
    assert second.summary.cache_hit_count == 10
    assert second.summary.external_calls == 0
    assert {k: v.score for k, v in second.results.items()} == {
        k: v.score for k, v in first.results.items()
    }


@pytest.mark.asyncio
async def test_model_change_misses_cache(
    project_dir, photo_items, evaluation_config, make_provider
):
    await build(project_dir, make_provider()).run_to_completion(
        photo_items, evaluation_config, project_dir
    )

    other = make_provider(model="other-vision:2")
    outcome = await build(project_dir, other).run_to_completion(
        photo_items, evaluation_config, project_dir
    )

    assert len(other.calls) == 10
    assert outcome.summary.cache_hit_count == 0


@pytest.mark.asyncio
async def test_concurrency_bound_respected(
    project_dir, photo_items, evaluation_config, make_provider
):
    provider = make_provider(delay=0.01)
    orchestrator = build(project_dir, provider, slots=2)

    await orchestrator.run_to_completion(photo_items, evaluation_config, project_dir)

    assert provider.max_concurrent == 2
    assert orchestrator.governor.active == 0


@pytest.mark.asyncio
async def test_transient_failure_is_retried(
    project_dir, photo_items, evaluation_config, make_provider
):
    provider = make_provider(
        failures={"photo_03.jpg": [InferenceUnavailableError("503")]}
    )
    orchestrator = build(project_dir, provider)

    outcome = await orchestrator.run_to_completion(
        photo_items, evaluation_config, project_dir
    )

    assert outcome.summary.succeeded == 10
    assert provider.attempts["photo_03.jpg"] == 2
    assert outcome.summary.external_calls == 11


@pytest.mark.asyncio
async def test_permanent_failure_does_not_stop_batch(
    project_dir, photo_items, evaluation_config, make_provider
):
    provider = make_provider(
        failures={"photo_04.jpg": [InferenceRequestError("400 bad image")]}
    )
    orchestrator = build(project_dir, provider)

    outcome = await orchestrator.run_to_completion(
        photo_items, evaluation_config, project_dir
    )

    assert outcome.summary.succeeded == 9
    assert outcome.summary.failed == 1
    assert "400 bad image" in outcome.failures["photo_04.jpg"]
    # Non-retryable: a single attempt
    assert provider.attempts["photo_04.jpg"] == 1


@pytest.mark.asyncio
async def test_exhausted_retries_mark_item_failed(
    project_dir, photo_items, evaluation_config, make_provider
):
    provider = make_provider(
        failures={"photo_01.jpg": [InferenceUnavailableError("down")] * 3}
    )
    orchestrator = build(project_dir, provider)

    events = [e async for e in orchestrator.run(photo_items, evaluation_config, project_dir)]

    failed = [e for e in events if not e.ok]
    assert [e.item_id for e in failed] == ["photo_01.jpg"]
    assert failed[0].attempts == 3


@pytest.mark.asyncio
async def test_timeout_counts_as_transient_failure(
    project_dir, photo_items, evaluation_config, make_provider
):
    class StallingProvider(make_provider):
        async def invoke(self, payload, parameters):
            if payload.item_id == "photo_05.jpg":
                self.attempts[payload.item_id] += 1
                await asyncio.sleep(5)
            return await super().invoke(payload, parameters)

    provider = StallingProvider()
    orchestrator = build(
        project_dir,
        provider,
        item_timeout_seconds=0.05,
        retry=RetryConfig(max_attempts=2, base_delay_seconds=0.0),
    )

    outcome = await orchestrator.run_to_completion(
        photo_items, evaluation_config, project_dir
    )

    assert outcome.summary.failed == 1
    assert "exceeded" in outcome.failures["photo_05.jpg"]
    assert provider.attempts["photo_05.jpg"] == 2


@pytest.mark.asyncio
async def test_unexpected_error_fails_only_that_item(
    project_dir, photo_items, evaluation_config, make_provider
):
    provider = make_provider(failures={"photo_02.jpg": [ValueError("bug")]})
    orchestrator = build(project_dir, provider)

    outcome = await orchestrator.run_to_completion(
        photo_items, evaluation_config, project_dir
    )

    assert outcome.summary.succeeded == 9
    assert outcome.failures["photo_02.jpg"] == "ValueError: bug"


@pytest.mark.asyncio
async def test_unreadable_item_fails_without_call(
    project_dir, photo_items, evaluation_config, make_provider, tmp_path
):
    provider = make_provider()
    missing = BatchItem(item_id="missing.jpg", path=tmp_path / "nope.jpg")
    orchestrator = build(project_dir, provider)

    outcome = await orchestrator.run_to_completion(
        photo_items + [missing], evaluation_config, project_dir
    )

    assert outcome.summary.total == 11
    assert outcome.summary.failed == 1
    assert "missing.jpg" in outcome.failures
    assert "missing.jpg" not in provider.calls


@pytest.mark.asyncio
async def test_duplicate_items_processed_once(
    project_dir, photo_items, evaluation_config, make_provider
):
    provider = make_provider()
    orchestrator = build(project_dir, provider)

    outcome = await orchestrator.run_to_completion(
        photo_items + photo_items[:3], evaluation_config, project_dir
    )

    assert outcome.summary.total == 10
    assert len(provider.calls) == 10


@pytest.mark.asyncio
async def test_failures_retained_in_checkpoint_when_configured(
    project_dir, photo_items, evaluation_config, make_provider
):
    provider = make_provider(
        failures={"photo_04.jpg": [InferenceRequestError("400 bad image")]}
    )
    orchestrator = build(project_dir, provider, retain_checkpoint_on_failure=True)

    await orchestrator.run_to_completion(photo_items, evaluation_config, project_dir)

    checkpoint = CheckpointService().load(project_dir)
    assert checkpoint is not None
    assert list(checkpoint.progress.failed) == ["photo_04.jpg"]
    assert checkpoint.completed_count == 9


@pytest.mark.asyncio
async def test_results_are_cached_for_each_success(
    project_dir, photo_items, evaluation_config, make_provider
):
    orchestrator = build(project_dir, make_provider())

    await orchestrator.run_to_completion(photo_items, evaluation_config, project_dir)

    assert orchestrator.cache.stats().entry_count == 10


@pytest.mark.asyncio
async def test_empty_batch(project_dir, evaluation_config, make_provider):
    orchestrator = build(project_dir, make_provider())

    outcome = await orchestrator.run_to_completion([], evaluation_config, project_dir)

    assert outcome.summary.total == 0
    assert outcome.results == {}
