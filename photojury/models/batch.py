"""Batch models.

Items, per-item lifecycle states, the event stream the orchestrator
yields and the final batch summary.

Item lifecycle:
    Pending -> Done (cache hit)
    Pending -> InFlight -> Done | Failed
    Pending -> Failed (unreadable item)
"""

from dataclasses import dataclass
from enum import Enum
from pathlib import Path
from typing import Dict, FrozenSet, Optional, Tuple, Type, Union

from pydantic import BaseModel, ConfigDict, Field

from photojury.models.evaluation import ItemEvaluation
from photojury.utils.exceptions import InvalidStateTransition, ItemReadError
from photojury.utils.hash import fingerprint_bytes, fingerprint_file


@dataclass(frozen=True)
class BatchItem:
    """One unit of work: a photo identified by a stable ID.

    Either path or data must be set. In-memory data wins over the path.
    """

    item_id: str
    path: Optional[Path] = None
    data: Optional[bytes] = None

    def read_bytes(self) -> bytes:
        """Read the item payload.

        Raises:
            ItemReadError: If the item has no data and its file is unreadable
        """
        if self.data is not None:
            return self.data
        if self.path is None:
            raise ItemReadError(f"Item '{self.item_id}' has neither data nor path")
        try:
            return Path(self.path).read_bytes()
        except OSError as e:
            raise ItemReadError(f"Cannot read item '{self.item_id}': {e}") from e

    def fingerprint(self) -> str:
        """SHA-256 of the item bytes (file is hashed in chunks).

        Raises:
            ItemReadError: If the item cannot be read
        """
        if self.data is not None:
            return fingerprint_bytes(self.data)
        if self.path is None:
            raise ItemReadError(f"Item '{self.item_id}' has neither data nor path")
        try:
            return fingerprint_file(Path(self.path))
        except OSError as e:
            raise ItemReadError(f"Cannot read item '{self.item_id}': {e}") from e


class ItemSource(str, Enum):
    """Where a Done item's result came from"""

    CHECKPOINT = "checkpoint"
    CACHE = "cache"
    INFERENCE = "inference"


@dataclass(frozen=True)
class Pending:
    pass


@dataclass(frozen=True)
class InFlight:
    pass


@dataclass(frozen=True)
class Done:
    result: ItemEvaluation
    source: ItemSource


@dataclass(frozen=True)
class Failed:
    error: str
    attempts: int = 0


ItemState = Union[Pending, InFlight, Done, Failed]

_ALLOWED: Dict[Type, FrozenSet[Type]] = {
    Pending: frozenset({InFlight, Done, Failed}),
    InFlight: frozenset({Done, Failed}),
    Done: frozenset(),
    Failed: frozenset(),
}


def transition(item_id: str, current: ItemState, target: ItemState) -> ItemState:
    """Validate a state change and return the new state.

    Raises:
        InvalidStateTransition: If the change is not part of the lifecycle
    """
    if type(target) not in _ALLOWED[type(current)]:
        raise InvalidStateTransition(
            item_id, type(current).__name__, type(target).__name__
        )
    return target


def is_terminal(state: ItemState) -> bool:
    return isinstance(state, (Done, Failed))


@dataclass(frozen=True)
class ItemEvent:
    """One terminal item, as yielded by the orchestrator"""

    item_id: str
    source: Optional[ItemSource] = None
    result: Optional[ItemEvaluation] = None
    error: Optional[str] = None
    attempts: int = 0

    @property
    def ok(self) -> bool:
        return self.result is not None

    @classmethod
    def from_state(cls, item_id: str, state: ItemState) -> "ItemEvent":
        if isinstance(state, Done):
            return cls(item_id=item_id, source=state.source, result=state.result)
        if isinstance(state, Failed):
            return cls(item_id=item_id, error=state.error, attempts=state.attempts)
        raise ValueError(f"Item '{item_id}' is not terminal")


class BatchSummary(BaseModel):
    """Counts for one batch run"""

    model_config = ConfigDict(protected_namespaces=())

    total: int = 0
    succeeded: int = 0
    failed: int = 0
    cache_hit_count: int = 0
    restored_count: int = 0
    external_calls: int = 0
    duration_seconds: float = 0.0
    resumed: bool = False

    @property
    def success_rate(self) -> float:
        """Succeeded items as a percentage of total"""
        if self.total == 0:
            return 0.0
        return round(self.succeeded / self.total * 100, 1)


class BatchOutcome(BaseModel):
    """Everything run_to_completion() collected"""

    summary: BatchSummary
    results: Dict[str, ItemEvaluation] = Field(default_factory=dict)
    failures: Dict[str, str] = Field(default_factory=dict)

    def scored_items(self) -> Tuple[Tuple[str, ItemEvaluation], ...]:
        """Successful results sorted by item ID"""
        return tuple(sorted(self.results.items()))
