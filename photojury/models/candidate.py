"""Set optimizer models.

ScoredItem is the optimizer's view of an evaluated photo; CandidateSet
is one K-photo combination with its cheap and (optional) group scores.
"""

from typing import Dict, List, Optional, Tuple

from pydantic import BaseModel, ConfigDict, Field, field_validator

from photojury.models.evaluation import GroupEvaluation, ItemEvaluation


class ScoredItem(BaseModel):
    """An item with its individual quality score and diversity signals"""

    item_id: str
    quality: float = Field(..., ge=0.0, le=10.0)
    criterion_scores: Dict[str, float] = Field(default_factory=dict)
    tags: Dict[str, str] = Field(default_factory=dict)
    path: Optional[str] = None

    @classmethod
    def from_evaluation(
        cls, item_id: str, evaluation: ItemEvaluation, path: Optional[str] = None
    ) -> "ScoredItem":
        return cls(
            item_id=item_id,
            quality=evaluation.score,
            criterion_scores=dict(evaluation.criterion_scores),
            tags=dict(evaluation.tags),
            path=path,
        )


class CandidateSet(BaseModel):
    """One candidate combination of distinct items.

    The cheap score is quality_sum + diversity_bonus. composite_score
    blends cheap score per item with the group score when one exists.
    """

    model_config = ConfigDict(protected_namespaces=())

    item_ids: Tuple[str, ...]
    quality_sum: float
    diversity_bonus: float = 0.0
    cheap_score: float
    group_score: Optional[float] = None
    group_error: Optional[str] = None
    group_evaluation: Optional[GroupEvaluation] = None
    composite_score: Optional[float] = None
    rank: Optional[int] = None

    @field_validator("item_ids")
    @classmethod
    def validate_distinct(cls, v: Tuple[str, ...]) -> Tuple[str, ...]:
        if len(v) == 0:
            raise ValueError("candidate set must not be empty")
        if len(set(v)) != len(v):
            raise ValueError("candidate set contains duplicate items")
        return v

    @property
    def set_size(self) -> int:
        return len(self.item_ids)

    @property
    def group_evaluated(self) -> bool:
        return self.group_score is not None


class RankStatistics(BaseModel):
    """Distribution of composite scores across the ranking"""

    total: int = 0
    average: float = 0.0
    min: float = 0.0
    max: float = 0.0
    median: float = 0.0


class OptimizerResult(BaseModel):
    """Ranked candidate sets plus enumeration bookkeeping"""

    ranking: List[CandidateSet] = Field(default_factory=list)
    combinations_evaluated: int = 0
    pool_size: int = 0
    set_size: int = 0
    statistics: RankStatistics = Field(default_factory=RankStatistics)

    @property
    def best(self) -> Optional[CandidateSet]:
        return self.ranking[0] if self.ranking else None
