"""Abstract Inference Provider Interface

This module defines:
- ItemPayload: What one inference call is asked to evaluate
- InferenceProvider: Abstract base class for all providers

The orchestrator and optimizer receive a provider instance explicitly;
there is no module-level client.
"""

from abc import ABC, abstractmethod
from dataclasses import dataclass
from pathlib import Path
from typing import Optional, Sequence

from photojury.models.config import EvaluationConfig
from photojury.models.evaluation import GroupEvaluation, ItemEvaluation


@dataclass(frozen=True)
class ItemPayload:
    """Bytes of one item plus identity.

    Attributes:
        item_id: Stable item identifier (usually the filename)
        data: Raw item bytes
        path: Source path, if the item came from disk
    """

    item_id: str
    data: bytes
    path: Optional[Path] = None


class InferenceProvider(ABC):
    """Abstract base class for inference providers.

    Implementations must be idempotent for identical (payload,
    parameters): cache correctness relies on it. A non-deterministic
    service makes cache hits serve one of several valid outputs.

    Implementations:
        - OllamaProvider: local vision model over HTTP
    """

    @property
    @abstractmethod
    def name(self) -> str:
        """Provider name (e.g., 'ollama')."""
        pass  # pragma: no cover - abstract method, always overridden

    @property
    @abstractmethod
    def model(self) -> str:
        """Model identifier; part of every cache key."""
        pass  # pragma: no cover - abstract method, always overridden

    @abstractmethod
    async def invoke(
        self, payload: ItemPayload, parameters: EvaluationConfig
    ) -> ItemEvaluation:
        """Evaluate one item.

        Raises:
            RetryableError: Transient failure (timeout, 5xx, rate limit)
            InferenceError: Permanent failure for this item
        """
        pass  # pragma: no cover - abstract method, always overridden

    async def invoke_group(
        self, payloads: Sequence[ItemPayload], parameters: EvaluationConfig
    ) -> GroupEvaluation:
        """Evaluate a set of items as a whole.

        Providers without multi-image support keep this default.
        """
        raise NotImplementedError(f"{self.name} does not support group evaluation")

    async def close(self) -> None:
        """Release network resources. Default: nothing to release."""
        return None
