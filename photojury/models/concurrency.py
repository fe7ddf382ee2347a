"""Concurrency models.

Slot handles and state snapshots for the concurrency governor.
"""

from dataclasses import dataclass

from pydantic import BaseModel, Field


@dataclass(frozen=True)
class SlotHandle:
    """Identifies one acquired slot. Released exactly once."""

    slot_id: int


class ConcurrencyStats(BaseModel):
    """Point-in-time view of the governor"""

    active: int = Field(default=0, ge=0)
    slot_limit: int = Field(default=1, ge=1)
    max_slots: int = Field(default=1, ge=1)
    waiting: int = Field(default=0, ge=0)
    auto_scale: bool = False
    baseline_latency_ms: float | None = None
    avg_latency_ms: float = 0.0
    memory_mb: float = 0.0
    memory_guard_active: bool = False
    items_processed: int = 0
    items_per_second: float = 0.0
