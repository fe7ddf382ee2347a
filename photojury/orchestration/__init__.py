"""Batch orchestration.

- BatchOrchestrator: resumable, cached, concurrency-governed evaluation
- ConcurrencyGovernor: auto-scaling slot pool for inference calls
- SetOptimizer: K-from-N candidate set selection
"""

from photojury.orchestration.batch_orchestrator import BatchOrchestrator
from photojury.orchestration.concurrency_governor import ConcurrencyGovernor
from photojury.orchestration.set_optimizer import SetOptimizer

__all__ = [
    "BatchOrchestrator",
    "ConcurrencyGovernor",
    "SetOptimizer",
]
