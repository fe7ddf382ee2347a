"""Resumable, cached, concurrency-governed batch evaluation.

Pipeline stages per run:
1. Deduplicate items by ID (first occurrence wins)
2. Resume: restore completed items from a valid checkpoint
3. Cache check: serve items whose (bytes, parameters, model) were seen
4. Concurrent inference: one task per remaining item, bounded by the
   concurrency governor and wrapped in the retry policy
5. Periodic checkpoint saves; cleanup once every item is terminal

Results are yielded as ItemEvents in completion order. Every event is
recorded (and the checkpoint saved when due) before it is yielded, so a
consumer that stops early leaves an exact checkpoint behind.
"""

import asyncio
import time
from dataclasses import dataclass
from pathlib import Path
from typing import (
    Any,
    AsyncIterator,
    Callable,
    Dict,
    Iterable,
    List,
    Optional,
    Tuple,
    Union,
)

from pydantic import ValidationError

from photojury.models.batch import (
    BatchItem,
    BatchOutcome,
    BatchSummary,
    Done,
    Failed,
    InFlight,
    ItemEvent,
    ItemSource,
    ItemState,
    Pending,
    is_terminal,
    transition,
)
from photojury.models.cache import CacheEntryMetadata
from photojury.models.checkpoint import BatchCheckpoint
from photojury.models.config import BatchConfig, ConcurrencyConfig, EvaluationConfig
from photojury.models.evaluation import ItemEvaluation
from photojury.observability.context import correlation_id_context
from photojury.observability.logging import get_logger
from photojury.observability.metrics import ITEMS_PROCESSED
from photojury.orchestration.concurrency_governor import ConcurrencyGovernor
from photojury.services.cache_service import CacheService
from photojury.services.checkpoint_service import CheckpointService
from photojury.services.inference.base import InferenceProvider, ItemPayload
from photojury.utils.exceptions import (
    InferenceTimeoutError,
    ItemReadError,
    MalformedResponseError,
    PhotoJuryError,
)
from photojury.utils.hash import fingerprint_config
from photojury.utils.retry import RetryHandler

logger = get_logger("batch_orchestrator")

GovernorFactory = Callable[[ConcurrencyConfig], ConcurrencyGovernor]


@dataclass
class _Outcome:
    """What an inference task reports back to the collector"""

    item_id: str
    result: Optional[ItemEvaluation] = None
    error: Optional[str] = None
    attempts: int = 0


class _CheckpointWriter:
    """Buffers terminal items and flushes them every `interval` items."""

    def __init__(
        self,
        service: CheckpointService,
        checkpoint: BatchCheckpoint,
        location: Path,
        interval: int,
    ):
        self.service = service
        self.checkpoint = checkpoint
        self.location = location
        self.interval = interval
        self._completed: List[str] = []
        self._results: Dict[str, Dict[str, Any]] = {}
        self._failed: Dict[str, str] = {}
        self._since_save = 0

    def done(self, item_id: str, result: ItemEvaluation) -> None:
        self._completed.append(item_id)
        self._results[item_id] = result.model_dump(mode="json")
        self._tick()

    def failed(self, item_id: str, error: str) -> None:
        self._failed[item_id] = error
        self._tick()

    def _tick(self) -> None:
        self._since_save += 1
        if self._since_save >= self.interval:
            self.flush()
            self.service.save(self.checkpoint, self.location)

    def flush(self) -> None:
        """Merge buffered items into the in-memory checkpoint"""
        if self._completed or self._failed:
            self.checkpoint = self.service.update(
                self.checkpoint, self._completed, self._results, self._failed
            )
        self._completed = []
        self._results = {}
        self._failed = {}
        self._since_save = 0

    def finish(self, retain: bool) -> None:
        """All items are terminal: delete the checkpoint, or keep it for failures"""
        self.flush()
        if retain:
            self.service.save(self.checkpoint, self.location)
            logger.info(
                "checkpoint_retained_for_failures",
                failed=len(self.checkpoint.progress.failed),
            )
            return
        self.checkpoint = self.service.mark_complete(self.checkpoint)
        self.service.delete(self.location)


class BatchOrchestrator:
    """Runs one batch of item evaluations to completion.

    Collaborators are passed in explicitly; the orchestrator owns no
    global state beyond the summary of its most recent run.
    """

    def __init__(
        self,
        config: Optional[BatchConfig],
        provider: InferenceProvider,
        cache: CacheService,
        checkpoints: CheckpointService,
        governor_factory: Optional[GovernorFactory] = None,
    ):
        """Initialize the orchestrator.

        Args:
            config: Batch configuration (checkpointing, retry, concurrency)
            provider: Item inference collaborator
            cache: Content cache for the project
            checkpoints: Checkpoint store
            governor_factory: Builds the per-run concurrency governor
        """
        self.config = config or BatchConfig()
        self.provider = provider
        self.cache = cache
        self.checkpoints = checkpoints
        self._governor_factory = governor_factory or ConcurrencyGovernor
        self.retry_handler = RetryHandler(self.config.retry)

        self.summary = BatchSummary()
        self.governor: Optional[ConcurrencyGovernor] = None

    def run_parameters(self, parameters: EvaluationConfig) -> Dict[str, Any]:
        """Configuration a checkpoint is fingerprinted against.

        Covers the evaluation parameters and the model, so switching
        either one discards an existing checkpoint.
        """
        return {
            "evaluation": parameters.model_dump(mode="json"),
            "model": self.provider.model,
        }

    @staticmethod
    def _deduplicate(items: Iterable[BatchItem]) -> List[BatchItem]:
        unique: Dict[str, BatchItem] = {}
        duplicates = 0
        for item in items:
            if item.item_id in unique:
                duplicates += 1
                continue
            unique[item.item_id] = item

        if duplicates:
            logger.warning("duplicate_items_skipped", duplicates=duplicates)
        return list(unique.values())

    def _resume_or_initialize(
        self,
        project_dir: Path,
        run_config: Dict[str, Any],
        items: List[BatchItem],
    ) -> Tuple[BatchCheckpoint, bool]:
        existing = self.checkpoints.load(project_dir)

        if existing is not None:
            validation = self.checkpoints.validate(existing, run_config)
            if validation.valid:
                logger.info(
                    "batch_resuming",
                    completed=existing.completed_count,
                    previous_failures=len(existing.progress.failed),
                    resume_count=existing.metadata.resume_count + 1,
                )
                return self.checkpoints.mark_resumed(existing), True

            logger.warning("checkpoint_discarded", reason=validation.reason)

        directory = None
        if items and items[0].path is not None:
            directory = str(Path(items[0].path).parent)

        checkpoint = self.checkpoints.initialize(
            project_id=project_dir.resolve().name or "project",
            config=run_config,
            item_ids=[item.item_id for item in items],
            checkpoint_interval=self.config.checkpoint_interval,
            max_slots=(
                self.config.concurrency.fixed_slots or self.config.concurrency.max_slots
            ),
            item_directory=directory,
        )
        return checkpoint, False

    def _cached_result(self, key: str, item_id: str) -> Optional[ItemEvaluation]:
        cached = self.cache.get(key)
        if cached is None:
            return None
        try:
            return ItemEvaluation.model_validate(cached)
        except ValidationError as e:
            logger.warning("cached_result_invalid", item_id=item_id, error=str(e))
            return None

    async def run(
        self,
        items: Iterable[BatchItem],
        parameters: EvaluationConfig,
        project_dir: Union[str, Path],
    ) -> AsyncIterator[ItemEvent]:
        """Evaluate every item, yielding one event per terminal item.

        Args:
            items: Items to evaluate (duplicates by ID are skipped)
            parameters: Evaluation parameters sent with every call
            project_dir: Directory holding the checkpoint

        Yields:
            ItemEvent per item, in completion order
        """
        started = time.monotonic()
        location = Path(project_dir)
        unique = self._deduplicate(items)
        states: Dict[str, ItemState] = {item.item_id: Pending() for item in unique}

        summary = BatchSummary(total=len(unique))
        self.summary = summary

        run_config = self.run_parameters(parameters)
        parameter_fingerprint = fingerprint_config(parameters)

        checkpoint, summary.resumed = self._resume_or_initialize(
            location, run_config, unique
        )
        writer = _CheckpointWriter(
            self.checkpoints, checkpoint, location, self.config.checkpoint_interval
        )

        logger.info(
            "batch_started",
            total=summary.total,
            resumed=summary.resumed,
            model=self.provider.model,
        )

        def finalize(item_id: str, target: ItemState) -> ItemEvent:
            states[item_id] = transition(item_id, states[item_id], target)
            if isinstance(target, Done):
                summary.succeeded += 1
                if target.source != ItemSource.CHECKPOINT:
                    writer.done(item_id, target.result)
                ITEMS_PROCESSED.labels(
                    status="success", source=target.source.value
                ).inc()
            elif isinstance(target, Failed):
                summary.failed += 1
                writer.failed(item_id, target.error)
                ITEMS_PROCESSED.labels(status="failed", source="inference").inc()
            return ItemEvent.from_state(item_id, target)

        # Stage 2: restore from checkpoint
        if summary.resumed:
            completed = checkpoint.progress.completed_set
            for item in unique:
                stored = checkpoint.results.get(item.item_id)
                if item.item_id not in completed or stored is None:
                    continue
                try:
                    result = ItemEvaluation.model_validate(stored)
                except ValidationError as e:
                    logger.warning(
                        "checkpoint_result_invalid", item_id=item.item_id, error=str(e)
                    )
                    continue
                summary.restored_count += 1
                yield finalize(item.item_id, Done(result, ItemSource.CHECKPOINT))

        governor = self._governor_factory(self.config.concurrency)
        self.governor = governor
        outcomes: asyncio.Queue = asyncio.Queue()
        tasks: Dict[str, asyncio.Task] = {}
        finished = False

        try:
            # Stage 3: cache check, spawning inference for misses as we go
            for item in unique:
                if not isinstance(states[item.item_id], Pending):
                    continue

                try:
                    item_fingerprint = item.fingerprint()
                except ItemReadError as e:
                    logger.warning("item_unreadable", item_id=item.item_id, error=str(e))
                    yield finalize(item.item_id, Failed(str(e), attempts=0))
                    continue

                key = self.cache.compute_key(
                    item_fingerprint, parameter_fingerprint, self.provider.model
                )
                cached = self._cached_result(key, item.item_id)
                if cached is not None:
                    summary.cache_hit_count += 1
                    yield finalize(item.item_id, Done(cached, ItemSource.CACHE))
                    continue

                states[item.item_id] = transition(
                    item.item_id, states[item.item_id], InFlight()
                )
                tasks[item.item_id] = asyncio.create_task(
                    self._evaluate(
                        item,
                        parameters,
                        governor,
                        outcomes,
                        CacheEntryMetadata(
                            item_id=item.item_id,
                            item_fingerprint=item_fingerprint,
                            parameter_fingerprint=parameter_fingerprint,
                            model=self.provider.model,
                        ),
                        key,
                    )
                )

            # Stage 4: collect inference outcomes in completion order
            for _ in range(len(tasks)):
                outcome: _Outcome = await outcomes.get()
                summary.external_calls += outcome.attempts

                if outcome.result is not None:
                    target: ItemState = Done(outcome.result, ItemSource.INFERENCE)
                else:
                    target = Failed(outcome.error or "unknown error", outcome.attempts)
                yield finalize(outcome.item_id, target)

            # Stage 5: every item is terminal
            assert all(is_terminal(state) for state in states.values())
            retain = self.config.retain_checkpoint_on_failure and summary.failed > 0
            writer.finish(retain)
            finished = True

            summary.duration_seconds = round(time.monotonic() - started, 3)
            logger.info(
                "batch_complete",
                total=summary.total,
                succeeded=summary.succeeded,
                failed=summary.failed,
                cache_hits=summary.cache_hit_count,
                restored=summary.restored_count,
                external_calls=summary.external_calls,
                duration_seconds=summary.duration_seconds,
                concurrency=governor.stats().model_dump(),
            )

        finally:
            if not finished:
                # Stopped early: persist every item recorded so far
                writer.flush()
                self.checkpoints.save(writer.checkpoint, location)

            outstanding = [task for task in tasks.values() if not task.done()]
            for task in outstanding:
                task.cancel()
            if outstanding:
                await asyncio.gather(*outstanding, return_exceptions=True)
                logger.warning("batch_interrupted", in_flight_cancelled=len(outstanding))
            summary.duration_seconds = round(time.monotonic() - started, 3)

    async def _evaluate(
        self,
        item: BatchItem,
        parameters: EvaluationConfig,
        governor: ConcurrencyGovernor,
        outcomes: asyncio.Queue,
        metadata: CacheEntryMetadata,
        cache_key: str,
    ) -> None:
        """Evaluate one item inside a slot and report the outcome.

        The slot is held across retries. Latency is only reported for
        successful attempts.
        """
        attempts = 0

        try:
            async with governor.slot() as handle:
                payload = ItemPayload(
                    item_id=item.item_id, data=item.read_bytes(), path=item.path
                )

                async def attempt() -> ItemEvaluation:
                    nonlocal attempts
                    attempts += 1
                    call_started = time.monotonic()
                    try:
                        result = await asyncio.wait_for(
                            self.provider.invoke(payload, parameters),
                            timeout=self.config.item_timeout_seconds,
                        )
                    except asyncio.TimeoutError as e:
                        raise InferenceTimeoutError(
                            f"Inference for '{item.item_id}' exceeded "
                            f"{self.config.item_timeout_seconds}s"
                        ) from e

                    if not isinstance(result, ItemEvaluation):
                        try:
                            result = ItemEvaluation.model_validate(result)
                        except ValidationError as e:
                            raise MalformedResponseError(
                                f"Provider returned an invalid result for "
                                f"'{item.item_id}'"
                            ) from e

                    governor.report_latency(
                        handle, (time.monotonic() - call_started) * 1000
                    )
                    return result

                result = await self.retry_handler.execute(attempt)

        except PhotoJuryError as e:
            logger.warning(
                "item_failed",
                item_id=item.item_id,
                attempts=attempts,
                error_type=type(e).__name__,
                error=str(e),
            )
            outcome = _Outcome(item.item_id, error=str(e), attempts=attempts)

        except Exception as e:
            logger.error(
                "item_unexpected_error",
                item_id=item.item_id,
                attempts=attempts,
                error=str(e),
                exc_info=True,
            )
            outcome = _Outcome(
                item.item_id, error=f"{type(e).__name__}: {e}", attempts=attempts
            )

        else:
            self.cache.put(cache_key, result.model_dump(mode="json"), metadata)
            logger.debug("item_evaluated", item_id=item.item_id, score=result.score)
            outcome = _Outcome(item.item_id, result=result, attempts=attempts)

        outcomes.put_nowait(outcome)

    async def run_to_completion(
        self,
        items: Iterable[BatchItem],
        parameters: EvaluationConfig,
        project_dir: Union[str, Path],
        on_event: Optional[Callable[[ItemEvent], None]] = None,
    ) -> BatchOutcome:
        """Drain run() and collect results, failures and the summary.

        Args:
            items: Items to evaluate
            parameters: Evaluation parameters
            project_dir: Directory holding the checkpoint
            on_event: Optional callback invoked for every event (progress)

        Returns:
            BatchOutcome for the run
        """
        results: Dict[str, ItemEvaluation] = {}
        failures: Dict[str, str] = {}

        with correlation_id_context():
            async for event in self.run(items, parameters, project_dir):
                if event.result is not None:
                    results[event.item_id] = event.result
                else:
                    failures[event.item_id] = event.error or ""
                if on_event is not None:
                    on_event(event)

        return BatchOutcome(summary=self.summary, results=results, failures=failures)
