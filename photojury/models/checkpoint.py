"""Data models for checkpoint system."""

from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Optional, Set

from pydantic import BaseModel, ConfigDict, Field

CHECKPOINT_SCHEMA_VERSION = "1.0"


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


class CheckpointStatus(str, Enum):
    IN_PROGRESS = "in_progress"
    COMPLETE = "complete"


class CheckpointProgress(BaseModel):
    """Which items are finished and which failed"""

    completed_ids: List[str] = Field(default_factory=list)
    failed: Dict[str, str] = Field(default_factory=dict)  # item_id -> reason
    status: CheckpointStatus = CheckpointStatus.IN_PROGRESS

    @property
    def completed_set(self) -> Set[str]:
        """Get completed IDs as a set for O(1) lookup"""
        return set(self.completed_ids)


class BatchSnapshot(BaseModel):
    """Batch settings in effect when the checkpoint was created"""

    checkpoint_interval: int = 10
    max_slots: int = 1
    item_directory: Optional[str] = None


class CheckpointMetadata(BaseModel):
    created_at: datetime = Field(default_factory=utc_now)
    last_updated_at: datetime = Field(default_factory=utc_now)
    last_resumed_at: Optional[datetime] = None
    resume_count: int = Field(default=0, ge=0)


class BatchCheckpoint(BaseModel):
    """Persisted snapshot of an in-progress batch"""

    model_config = ConfigDict(protected_namespaces=())

    schema_version: str = CHECKPOINT_SCHEMA_VERSION
    project_id: str
    config_fingerprint: str
    parameters: Dict[str, Any] = Field(default_factory=dict)
    item_ids: List[str] = Field(default_factory=list)
    progress: CheckpointProgress = Field(default_factory=CheckpointProgress)
    results: Dict[str, Dict[str, Any]] = Field(default_factory=dict)
    batch: BatchSnapshot = Field(default_factory=BatchSnapshot)
    metadata: CheckpointMetadata = Field(default_factory=CheckpointMetadata)

    @property
    def completed_count(self) -> int:
        return len(self.progress.completed_ids)

    @property
    def is_complete(self) -> bool:
        return self.progress.status == CheckpointStatus.COMPLETE


class CheckpointValidation(BaseModel):
    """Outcome of validating a loaded checkpoint against current config"""

    valid: bool
    reason: str
