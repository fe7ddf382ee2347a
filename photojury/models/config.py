"""Configuration models.

Every option the batch engine reads is declared here as an explicit
pydantic record with required and optional fields. EvaluationConfig is
the part that feeds fingerprints: changing any of its content
invalidates checkpoints and cache entries.
"""

import os
from enum import Enum
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator


class Criterion(BaseModel):
    """A single evaluation criterion"""

    name: str = Field(..., min_length=1, max_length=100)
    description: str = ""
    weight: float = Field(default=1.0, ge=0.0, le=100.0)


class EvaluationConfig(BaseModel):
    """Evaluation parameters sent with every inference call.

    title, theme and criteria are required; everything else is optional.
    """

    model_config = ConfigDict(protected_namespaces=())

    title: str = Field(..., min_length=1)
    theme: str = Field(..., min_length=1)
    criteria: List[Criterion] = Field(..., min_length=1)
    description: Optional[str] = None
    jury_notes: Optional[str] = None
    extra: Dict[str, Any] = Field(default_factory=dict)

    @field_validator("criteria")
    @classmethod
    def validate_unique_criteria(cls, v: List[Criterion]) -> List[Criterion]:
        names = [c.name.lower() for c in v]
        if len(names) != len(set(names)):
            raise ValueError("criterion names must be unique")
        return v


class BackoffStrategy(str, Enum):
    FIXED = "fixed"
    LINEAR = "linear"
    EXPONENTIAL = "exponential"


class RetryConfig(BaseModel):
    """Retry policy applied uniformly to every external call

    Controls retry behavior for transient failures:
    - Number of attempts before giving up
    - Backoff strategy and delay parameters
    - Jitter for request spreading
    """

    max_attempts: int = Field(
        default=3,
        ge=1,
        le=10,
        description="Maximum attempts (1 initial + N-1 retries)",
    )
    backoff: BackoffStrategy = BackoffStrategy.EXPONENTIAL
    base_delay_seconds: float = Field(
        default=1.0,
        ge=0.0,
        le=60.0,
        description="Base delay between attempts",
    )
    max_delay_seconds: float = Field(
        default=30.0,
        ge=0.0,
        le=300.0,
        description="Maximum delay cap",
    )
    jitter_factor: float = Field(
        default=0.1,
        ge=0.0,
        le=0.5,
        description="Jitter factor for randomization",
    )

    model_config = ConfigDict(
        json_schema_extra={
            "example": {
                "max_attempts": 3,
                "backoff": "exponential",
                "base_delay_seconds": 1.0,
                "max_delay_seconds": 30.0,
                "jitter_factor": 0.1,
            }
        }
    )


def _default_initial_slots() -> int:
    return max(1, min((os.cpu_count() or 2) - 1, 4))


class ConcurrencyConfig(BaseModel):
    """Slot pool settings for the concurrency governor"""

    # An explicit fixed value pins the pool and disables auto-scaling
    fixed_slots: Optional[int] = Field(default=None, ge=1, le=64)
    max_slots: int = Field(default=6, ge=1, le=64)
    initial_slots: int = Field(default_factory=_default_initial_slots, ge=1, le=64)
    auto_scale: bool = True

    # Auto-scaling heuristics
    baseline_window: int = Field(default=3, ge=1, le=50)
    scale_up_factor: float = Field(default=1.2, gt=0.0)
    scale_down_factor: float = Field(default=2.0, gt=0.0)
    memory_threshold_mb: float = Field(default=400.0, gt=0.0)

    @model_validator(mode="after")
    def validate_bounds(self) -> "ConcurrencyConfig":
        if self.scale_up_factor >= self.scale_down_factor:
            raise ValueError("scale_up_factor must be below scale_down_factor")
        if self.initial_slots > self.max_slots:
            self.initial_slots = self.max_slots
        return self


class BatchConfig(BaseModel):
    """Batch orchestration settings"""

    checkpoint_interval: int = Field(default=10, ge=1, le=1000)
    item_timeout_seconds: float = Field(default=120.0, gt=0.0, le=3600.0)
    retain_checkpoint_on_failure: bool = False
    retry: RetryConfig = Field(default_factory=RetryConfig)
    concurrency: ConcurrencyConfig = Field(default_factory=ConcurrencyConfig)


class CheckpointConfig(BaseModel):
    """Checkpoint configuration"""

    model_config = ConfigDict(protected_namespaces=())

    enabled: bool = True
    filename: str = ".analysis-checkpoint.json"
    max_age_days: float = Field(default=7.0, gt=0.0)


class CacheConfig(BaseModel):
    """Cache configuration"""

    model_config = ConfigDict(protected_namespaces=())

    enabled: bool = True
    dir_name: str = ".analysis-cache"

    # No eviction; stats() raises a growth warning above this count
    warn_entry_count: int = Field(default=5000, ge=1)


class OptimizerConfig(BaseModel):
    """Set combination optimizer settings"""

    set_size: int = Field(default=4, ge=1, le=50)
    prefilter_top_m: Optional[int] = Field(default=12, ge=1)
    max_combinations: int = Field(default=10_000, ge=1)
    group_top_p: int = Field(default=5, ge=1, le=100)
    group_concurrency: int = Field(default=2, ge=1, le=16)

    # Diversity bonus (points added to a candidate's quality sum)
    max_diversity_bonus: float = Field(default=2.0, ge=0.0)
    tag_share: float = Field(default=0.5, ge=0.0, le=1.0)
    tag_dimensions: List[str] = Field(
        default_factory=lambda: ["subject", "tone", "style"]
    )

    # Composite blend of individual and group scores
    individual_weight: float = Field(default=40.0, ge=0.0)
    group_weight: float = Field(default=60.0, ge=0.0)

    @model_validator(mode="after")
    def validate_weights(self) -> "OptimizerConfig":
        if self.individual_weight + self.group_weight <= 0:
            raise ValueError("individual_weight + group_weight must be positive")
        return self


class InferenceSettings(BaseModel):
    """Connection settings for the Ollama inference service"""

    model_config = ConfigDict(protected_namespaces=())

    base_url: str = "http://127.0.0.1:11434"
    model: str = "llava:7b"
    temperature: float = Field(default=0.3, ge=0.0, le=2.0)
    max_output_tokens: int = Field(default=1500, ge=1)
    request_timeout_seconds: float = Field(default=300.0, gt=0.0)


class PhotoJuryConfig(BaseModel):
    """Root configuration loaded from YAML"""

    project_dir: str = "."
    photo_dir: str = "photos"
    evaluation: EvaluationConfig
    batch: BatchConfig = Field(default_factory=BatchConfig)
    checkpoint: CheckpointConfig = Field(default_factory=CheckpointConfig)
    cache: CacheConfig = Field(default_factory=CacheConfig)
    optimizer: OptimizerConfig = Field(default_factory=OptimizerConfig)
    inference: InferenceSettings = Field(default_factory=InferenceSettings)
