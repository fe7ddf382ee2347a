"""Set combination optimizer.

Selects the best K-photo set from N evaluated photos in three phases:

1. Pre-filter: keep the top M photos by individual quality
2. Cheap scoring: every C(M, K) combination gets
   quality_sum + diversity_bonus (no external calls)
3. Expensive scoring: the top P cheap candidates are judged as a whole
   by the group inference collaborator and ranked by a composite of the
   per-photo average and the group score

A safety ceiling on C(M, K) is checked before anything is enumerated.
"""

import asyncio
import itertools
import math
import statistics
from typing import Dict, List, Optional, Sequence, Tuple

from photojury.models.batch import BatchItem
from photojury.models.candidate import (
    CandidateSet,
    OptimizerResult,
    RankStatistics,
    ScoredItem,
)
from photojury.models.config import (
    ConcurrencyConfig,
    EvaluationConfig,
    OptimizerConfig,
    RetryConfig,
)
from photojury.models.evaluation import GroupEvaluation
from photojury.observability.logging import get_logger
from photojury.observability.metrics import COMBINATIONS_EVALUATED
from photojury.orchestration.concurrency_governor import ConcurrencyGovernor
from photojury.services.inference.base import InferenceProvider, ItemPayload
from photojury.utils.exceptions import CombinationLimitExceededError, PhotoJuryError
from photojury.utils.retry import RetryHandler

logger = get_logger("set_optimizer")

# Largest RMS distance between two 0-10 criterion profiles
_MAX_PROFILE_DISTANCE = 10.0


def count_combinations(n: int, k: int) -> int:
    """C(n, k); 0 when k is out of range."""
    if k < 0 or k > n:
        return 0
    return math.comb(n, k)


def tag_variety(members: Sequence[ScoredItem], dimensions: Sequence[str]) -> float:
    """How varied the members' tags are, in [0, 1].

    Per dimension: (distinct values - 1) / (K - 1). Averaged over the
    dimensions at least one member is tagged on.
    """
    if len(members) < 2:
        return 0.0

    scores = []
    for dimension in dimensions:
        values = [m.tags.get(dimension) for m in members]
        present = {v.strip().lower() for v in values if v and v.strip()}
        if not present:
            continue
        scores.append((len(present) - 1) / (len(members) - 1))

    if not scores:
        return 0.0
    return sum(scores) / len(scores)


def profile_diversity(members: Sequence[ScoredItem]) -> float:
    """Mean pairwise RMS distance of criterion score profiles, in [0, 1]."""
    if len(members) < 2:
        return 0.0

    criteria = sorted({name for m in members for name in m.criterion_scores})
    if not criteria:
        return 0.0

    distances = []
    for a, b in itertools.combinations(members, 2):
        squared = sum(
            (a.criterion_scores.get(c, 0.0) - b.criterion_scores.get(c, 0.0)) ** 2
            for c in criteria
        )
        distances.append(math.sqrt(squared / len(criteria)))

    return min(sum(distances) / len(distances) / _MAX_PROFILE_DISTANCE, 1.0)


def rank_statistics(scores: Sequence[float]) -> RankStatistics:
    """Summary statistics over a list of composite scores."""
    if not scores:
        return RankStatistics()

    return RankStatistics(
        total=len(scores),
        average=round(sum(scores) / len(scores), 3),
        min=round(min(scores), 3),
        max=round(max(scores), 3),
        median=round(statistics.median(scores), 3),
    )


class SetOptimizer:
    """Finds the strongest K-item set among evaluated items.

    Example:
        optimizer = SetOptimizer(OptimizerConfig(set_size=4), group_provider=provider)
        result = await optimizer.optimize(scored_items, parameters)
        best = result.best
    """

    def __init__(
        self,
        config: Optional[OptimizerConfig] = None,
        group_provider: Optional[InferenceProvider] = None,
        retry_config: Optional[RetryConfig] = None,
    ):
        """Initialize the optimizer.

        Args:
            config: Optimizer configuration
            group_provider: Collaborator for holistic set evaluation; without
                one, ranking uses cheap scores only
            retry_config: Retry policy for group evaluation calls
        """
        self.config = config or OptimizerConfig()
        self.group_provider = group_provider
        self.retry_handler = RetryHandler(retry_config)

    # ==================== Cheap phase ====================

    def prefilter(self, items: Sequence[ScoredItem]) -> List[ScoredItem]:
        """Top M items by quality (ties broken by item ID)."""
        ordered = sorted(items, key=lambda i: (-i.quality, i.item_id))
        top_m = self.config.prefilter_top_m
        if top_m is None:
            return ordered
        return ordered[:top_m]

    def diversity_bonus(self, members: Sequence[ScoredItem]) -> float:
        """Bonus points for a varied set, in [0, max_diversity_bonus]."""
        share = self.config.tag_share
        variety = tag_variety(members, self.config.tag_dimensions)
        profile = profile_diversity(members)
        return self.config.max_diversity_bonus * (
            share * variety + (1 - share) * profile
        )

    def check_ceiling(
        self, pool_size: int, set_size: int, max_combinations: Optional[int] = None
    ) -> int:
        """Return C(pool_size, set_size) or raise if it exceeds the ceiling.

        Raises:
            CombinationLimitExceededError: Before any combination is built
        """
        ceiling = self.config.max_combinations
        if max_combinations is not None:
            ceiling = max_combinations
        count = count_combinations(pool_size, set_size)
        if count > ceiling:
            logger.error(
                "combination_limit_exceeded",
                pool_size=pool_size,
                set_size=set_size,
                combinations=count,
                ceiling=ceiling,
            )
            raise CombinationLimitExceededError(count, ceiling, pool_size, set_size)
        return count

    def score_candidates(
        self,
        items: Sequence[ScoredItem],
        set_size: Optional[int] = None,
        max_combinations: Optional[int] = None,
    ) -> Tuple[List[CandidateSet], int]:
        """Cheap-score every combination of the pre-filtered pool.

        Args:
            items: Evaluated items
            set_size: K (defaults to config)
            max_combinations: Per-call ceiling override

        Returns:
            (candidates sorted by cheap score desc, pool size)

        Raises:
            CombinationLimitExceededError: If C(M, K) exceeds the ceiling
            ValueError: If set_size is below 1
        """
        k = self.config.set_size if set_size is None else set_size
        if k < 1:
            raise ValueError(f"set_size must be at least 1, got {k}")
        pool = self.prefilter(items)

        if len(pool) < k:
            logger.warning(
                "not_enough_items_for_set", available=len(pool), set_size=k
            )
            return [], len(pool)

        self.check_ceiling(len(pool), k, max_combinations)

        candidates = []
        for combo in itertools.combinations(pool, k):
            quality_sum = sum(m.quality for m in combo)
            bonus = self.diversity_bonus(combo)
            candidates.append(
                CandidateSet(
                    item_ids=tuple(m.item_id for m in combo),
                    quality_sum=round(quality_sum, 3),
                    diversity_bonus=round(bonus, 3),
                    cheap_score=round(quality_sum + bonus, 3),
                )
            )

        COMBINATIONS_EVALUATED.labels(stage="cheap").inc(len(candidates))
        candidates.sort(key=lambda c: (-c.cheap_score, c.item_ids))

        logger.info(
            "candidates_scored",
            pool_size=len(pool),
            set_size=k,
            combinations=len(candidates),
            best_cheap_score=candidates[0].cheap_score if candidates else None,
        )
        return candidates, len(pool)

    # ==================== Expensive phase ====================

    def composite(self, candidate: CandidateSet) -> float:
        """Blend per-item cheap average and group score."""
        per_item = candidate.cheap_score / candidate.set_size
        if candidate.group_score is None:
            return round(per_item, 3)

        w_i = self.config.individual_weight
        w_g = self.config.group_weight
        return round((w_i * per_item + w_g * candidate.group_score) / (w_i + w_g), 3)

    async def _evaluate_group(
        self,
        candidate: CandidateSet,
        by_id: Dict[str, ScoredItem],
        parameters: EvaluationConfig,
        governor: ConcurrencyGovernor,
    ) -> CandidateSet:
        assert self.group_provider is not None
        provider = self.group_provider

        try:
            async with governor.slot():
                payloads = [
                    ItemPayload(
                        item_id=item_id,
                        data=BatchItem(item_id, path=by_id[item_id].path).read_bytes(),
                        path=by_id[item_id].path,
                    )
                    for item_id in candidate.item_ids
                ]

                async def attempt() -> GroupEvaluation:
                    return await provider.invoke_group(payloads, parameters)

                evaluation = await self.retry_handler.execute(attempt)

        except (PhotoJuryError, NotImplementedError) as e:
            logger.warning(
                "group_evaluation_failed",
                items=list(candidate.item_ids),
                error_type=type(e).__name__,
                error=str(e),
            )
            return candidate.model_copy(update={"group_error": str(e)})

        COMBINATIONS_EVALUATED.labels(stage="group").inc()
        return candidate.model_copy(
            update={"group_score": evaluation.score, "group_evaluation": evaluation}
        )

    async def optimize(
        self,
        items: Sequence[ScoredItem],
        parameters: Optional[EvaluationConfig] = None,
        set_size: Optional[int] = None,
        max_combinations: Optional[int] = None,
    ) -> OptimizerResult:
        """Rank candidate sets.

        Args:
            items: Evaluated items (ScoredItem.path is needed for group calls)
            parameters: Evaluation parameters for group calls
            set_size: K (defaults to config)
            max_combinations: Per-call ceiling override

        Returns:
            OptimizerResult with the top candidates ranked by composite score

        Raises:
            CombinationLimitExceededError: If C(M, K) exceeds the ceiling
        """
        k = self.config.set_size if set_size is None else set_size
        candidates, pool_size = self.score_candidates(items, k, max_combinations)

        finalists = candidates[: self.config.group_top_p]

        if finalists and self.group_provider is not None and parameters is not None:
            by_id = {item.item_id: item for item in items}
            governor = ConcurrencyGovernor(
                ConcurrencyConfig(
                    fixed_slots=self.config.group_concurrency,
                    max_slots=self.config.group_concurrency,
                )
            )
            finalists = list(
                await asyncio.gather(
                    *(
                        self._evaluate_group(c, by_id, parameters, governor)
                        for c in finalists
                    )
                )
            )

        scored = [
            c.model_copy(update={"composite_score": self.composite(c)})
            for c in finalists
        ]

        # Group-evaluated first, failed group evaluations last
        scored.sort(
            key=lambda c: (
                1 if c.group_error else 0,
                -(c.composite_score or 0.0),
                -c.cheap_score,
                c.item_ids,
            )
        )
        ranking = [
            c.model_copy(update={"rank": position})
            for position, c in enumerate(scored, start=1)
        ]

        result = OptimizerResult(
            ranking=ranking,
            combinations_evaluated=len(candidates),
            pool_size=pool_size,
            set_size=k,
            statistics=rank_statistics([c.composite_score or 0.0 for c in ranking]),
        )

        logger.info(
            "set_optimization_complete",
            combinations=result.combinations_evaluated,
            finalists=len(ranking),
            group_failures=sum(1 for c in ranking if c.group_error),
            best=list(ranking[0].item_ids) if ranking else None,
        )
        return result
