"""Unit tests for SetOptimizer"""

from unittest.mock import AsyncMock, Mock, patch

import pytest

from photojury.models.candidate import CandidateSet, ScoredItem
from photojury.models.config import OptimizerConfig, RetryConfig
from photojury.models.evaluation import GroupEvaluation
from photojury.orchestration.set_optimizer import (
    SetOptimizer,
    count_combinations,
    profile_diversity,
    rank_statistics,
    tag_variety,
)
from photojury.services.inference.base import InferenceProvider
from photojury.utils.exceptions import (
    CombinationLimitExceededError,
    InferenceRequestError,
)


def scored(item_id, quality, tags=None, criteria=None, path=None):
    return ScoredItem(
        item_id=item_id,
        quality=quality,
        tags=tags or {},
        criterion_scores=criteria or {},
        path=path,
    )


@pytest.fixture
def five_items(tmp_path):
    """Five photos on disk with descending quality"""
    items = []
    for item_id, quality in zip("abcde", [8.0, 7.0, 6.0, 5.0, 4.0]):
        path = tmp_path / f"{item_id}.jpg"
        path.write_bytes(item_id.encode())
        items.append(scored(item_id, quality, path=str(path)))
    return items


@pytest.fixture
def group_provider():
    provider = Mock(spec=InferenceProvider)
    provider.invoke_group = AsyncMock(return_value=GroupEvaluation(score=9.0))
    return provider


def test_count_combinations():
    assert count_combinations(20, 4) == 4845
    assert count_combinations(30, 6) == 593775
    assert count_combinations(3, 5) == 0
    assert count_combinations(5, 0) == 1


class TestDiversity:
    def test_tag_variety_all_distinct(self):
        members = [scored("a", 5, {"subject": "bird"}), scored("b", 5, {"subject": "fox"})]
        assert tag_variety(members, ["subject", "tone", "style"]) == 1.0

    def test_tag_variety_identical(self):
        members = [scored("a", 5, {"subject": "Bird"}), scored("b", 5, {"subject": "bird"})]
        assert tag_variety(members, ["subject"]) == 0.0

    def test_tag_variety_untagged(self):
        assert tag_variety([scored("a", 5), scored("b", 5)], ["subject"]) == 0.0

    def test_profile_diversity_extremes(self):
        opposite = [
            scored("a", 5, criteria={"light": 0.0}),
            scored("b", 5, criteria={"light": 10.0}),
        ]
        same = [
            scored("a", 5, criteria={"light": 4.0}),
            scored("b", 5, criteria={"light": 4.0}),
        ]
        assert profile_diversity(opposite) == 1.0
        assert profile_diversity(same) == 0.0

    def test_bonus_uses_configured_weights(self):
        optimizer = SetOptimizer(OptimizerConfig(max_diversity_bonus=2.0, tag_share=0.5))
        members = [scored("a", 5, {"subject": "bird"}), scored("b", 5, {"subject": "fox"})]

        assert optimizer.diversity_bonus(members) == pytest.approx(1.0)

    def test_single_member_has_no_bonus(self):
        assert SetOptimizer().diversity_bonus([scored("a", 9, {"subject": "x"})]) == 0.0


class TestPrefilter:
    def test_keeps_top_m_with_id_tiebreak(self):
        optimizer = SetOptimizer(OptimizerConfig(prefilter_top_m=3))
        items = [scored("c", 7), scored("a", 7), scored("b", 9), scored("d", 1)]

        assert [i.item_id for i in optimizer.prefilter(items)] == ["b", "a", "c"]

    def test_none_keeps_everything(self):
        optimizer = SetOptimizer(OptimizerConfig(prefilter_top_m=None))
        items = [scored(str(i), i % 10) for i in range(30)]

        assert len(optimizer.prefilter(items)) == 30


class TestCeiling:
    def test_within_ceiling_enumerates_all(self):
        """C(20,4) = 4845 is below the default ceiling of 10,000"""
        optimizer = SetOptimizer(OptimizerConfig(set_size=4, prefilter_top_m=None))
        items = [scored(f"p{i:02d}", (i % 10) + 0.5) for i in range(20)]

        candidates, pool_size = optimizer.score_candidates(items)

        assert pool_size == 20
        assert len(candidates) == 4845

    def test_over_ceiling_raises_before_enumeration(self):
        """C(30,6) = 593775 exceeds 10,000 and fails fast"""
        optimizer = SetOptimizer(OptimizerConfig(set_size=6, prefilter_top_m=None))
        items = [scored(f"p{i:02d}", 5.0) for i in range(30)]

        with patch(
            "photojury.orchestration.set_optimizer.itertools.combinations"
        ) as combinations:
            with pytest.raises(CombinationLimitExceededError) as exc_info:
                optimizer.score_candidates(items)

        combinations.assert_not_called()
        message = str(exc_info.value)
        assert "593775" in message
        assert "10000" in message
        assert exc_info.value.combination_count == 593775
        assert exc_info.value.ceiling == 10000

    def test_per_call_override(self):
        optimizer = SetOptimizer(
            OptimizerConfig(set_size=3, prefilter_top_m=None, max_combinations=5)
        )
        items = [scored(f"p{i}", 5.0) for i in range(6)]

        with pytest.raises(CombinationLimitExceededError):
            optimizer.score_candidates(items)

        candidates, _ = optimizer.score_candidates(items, max_combinations=100)
        assert len(candidates) == 20

    def test_prefilter_keeps_default_pool_safe(self):
        """Top 12 of 30 photos: C(12,4) = 495"""
        optimizer = SetOptimizer(OptimizerConfig(set_size=4))
        items = [scored(f"p{i:02d}", 5.0) for i in range(30)]

        candidates, pool_size = optimizer.score_candidates(items)

        assert pool_size == 12
        assert len(candidates) == 495


    def test_explicit_zero_ceiling_is_not_ignored(self):
        optimizer = SetOptimizer(OptimizerConfig(set_size=2, prefilter_top_m=None))
        items = [scored(f"p{i}", 5.0) for i in range(3)]

        with pytest.raises(CombinationLimitExceededError) as exc_info:
            optimizer.score_candidates(items, max_combinations=0)

        assert exc_info.value.ceiling == 0

    def test_explicit_zero_set_size_is_rejected(self):
        optimizer = SetOptimizer(OptimizerConfig(set_size=2))

        with pytest.raises(ValueError):
            optimizer.score_candidates([scored("a", 5.0)], set_size=0)


class TestOptimize:
    @pytest.mark.asyncio
    async def test_not_enough_items(self):
        result = await SetOptimizer(OptimizerConfig(set_size=4)).optimize(
            [scored("a", 9), scored("b", 8)]
        )

        assert result.ranking == []
        assert result.best is None
        assert result.combinations_evaluated == 0

    @pytest.mark.asyncio
    async def test_without_group_provider_ranks_by_cheap_score(self, five_items):
        optimizer = SetOptimizer(OptimizerConfig(set_size=4, group_top_p=3))

        result = await optimizer.optimize(five_items)

        assert result.combinations_evaluated == 5
        assert len(result.ranking) == 3
        best = result.best
        assert best.item_ids == ("a", "b", "c", "d")
        assert best.rank == 1
        assert best.cheap_score == 26.0
        assert best.composite_score == 6.5
        assert best.group_score is None

    @pytest.mark.asyncio
    async def test_group_scores_blend_into_composite(
        self, five_items, group_provider, evaluation_config
    ):
        optimizer = SetOptimizer(
            OptimizerConfig(set_size=4, group_top_p=2), group_provider=group_provider
        )

        result = await optimizer.optimize(five_items, evaluation_config)

        assert group_provider.invoke_group.await_count == 2
        assert [c.composite_score for c in result.ranking] == [8.0, 7.9]
        assert result.ranking[0].group_evaluation.score == 9.0

        payloads = group_provider.invoke_group.await_args_list[0].args[0]
        assert [p.item_id for p in payloads] == ["a", "b", "c", "d"]
        assert payloads[0].data == b"a"

    @pytest.mark.asyncio
    async def test_failed_group_evaluation_ranks_last(
        self, five_items, group_provider, evaluation_config
    ):
        group_provider.invoke_group = AsyncMock(
            side_effect=[
                InferenceRequestError("400 too many images"),
                GroupEvaluation(score=5.0),
            ]
        )
        optimizer = SetOptimizer(
            OptimizerConfig(set_size=4, group_top_p=2, group_concurrency=1),
            group_provider=group_provider,
            retry_config=RetryConfig(base_delay_seconds=0.0),
        )

        result = await optimizer.optimize(five_items, evaluation_config)

        first, last = result.ranking
        assert first.item_ids == ("a", "b", "c", "e")
        assert first.composite_score == 5.5
        assert last.item_ids == ("a", "b", "c", "d")
        assert last.group_error == "400 too many images"
        assert last.rank == 2

    @pytest.mark.asyncio
    async def test_statistics(self, five_items, group_provider, evaluation_config):
        optimizer = SetOptimizer(
            OptimizerConfig(set_size=4, group_top_p=2), group_provider=group_provider
        )

        result = await optimizer.optimize(five_items, evaluation_config)

        assert result.statistics.total == 2
        assert result.statistics.max == 8.0
        assert result.statistics.min == 7.9
        assert result.statistics.average == pytest.approx(7.95)
        assert result.statistics.median == pytest.approx(7.95)


def test_rank_statistics_empty():
    assert rank_statistics([]).total == 0


def test_candidate_set_rejects_duplicates():
    with pytest.raises(ValueError):
        CandidateSet(item_ids=("a", "a"), quality_sum=10, cheap_score=10)
