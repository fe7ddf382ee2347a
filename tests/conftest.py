"""Shared fixtures: evaluation parameters, photo files and a scripted provider"""

import asyncio
import hashlib
from collections import defaultdict
from typing import Dict, List, Optional, Sequence

import pytest

from photojury.models.batch import BatchItem
from photojury.models.config import Criterion, EvaluationConfig
from photojury.models.evaluation import GroupEvaluation, ItemEvaluation
from photojury.services.inference.base import InferenceProvider, ItemPayload


class ScriptedProvider(InferenceProvider):
    """Deterministic provider that records every call.

    Scores derive from the payload bytes. `failures` maps an item ID to
    exceptions raised on its first calls, in order.
    """

    def __init__(
        self,
        model: str = "fake-vision:1",
        failures: Optional[Dict[str, List[BaseException]]] = None,
        delay: float = 0.0,
    ):
        self._model = model
        self.failures = {k: list(v) for k, v in (failures or {}).items()}
        self.delay = delay
        self.calls: List[str] = []
        self.group_calls: List[Sequence[str]] = []
        self.attempts: Dict[str, int] = defaultdict(int)
        self.concurrent = 0
        self.max_concurrent = 0

    @property
    def name(self) -> str:
        return "scripted"

    @property
    def model(self) -> str:
        return self._model

    async def invoke(
        self, payload: ItemPayload, parameters: EvaluationConfig
    ) -> ItemEvaluation:
        self.calls.append(payload.item_id)
        self.attempts[payload.item_id] += 1
        self.concurrent += 1
        self.max_concurrent = max(self.max_concurrent, self.concurrent)
        try:
            if self.delay:
                await asyncio.sleep(self.delay)
            pending = self.failures.get(payload.item_id)
            if pending:
                raise pending.pop(0)
            digest = hashlib.sha256(payload.data).digest()
            score = round(digest[0] / 255 * 10, 2)
            return ItemEvaluation(
                score=score,
                criterion_scores={c.name: score for c in parameters.criteria},
                tags={"subject": f"s{digest[1] % 3}"},
                summary=f"evaluated {payload.item_id}",
                model=self.model,
            )
        finally:
            self.concurrent -= 1

    async def invoke_group(
        self, payloads: Sequence[ItemPayload], parameters: EvaluationConfig
    ) -> GroupEvaluation:
        self.group_calls.append([p.item_id for p in payloads])
        return GroupEvaluation(score=7.0, recommendation="strong set")


@pytest.fixture
def evaluation_config():
    """Evaluation parameters for a small wildlife competition"""
    return EvaluationConfig(
        title="Wildlife 2026",
        theme="Animals in their natural habitat",
        criteria=[
            Criterion(name="composition", description="Framing", weight=2.0),
            Criterion(name="technique", description="Exposure and focus"),
            Criterion(name="impact", description="Emotional response"),
        ],
    )


@pytest.fixture
def make_provider():
    """Factory for ScriptedProvider instances"""
    return ScriptedProvider


@pytest.fixture
def photo_dir(tmp_path):
    """Directory with ten small, distinct photo files"""
    directory = tmp_path / "photos"
    directory.mkdir()
    for i in range(10):
        (directory / f"photo_{i:02d}.jpg").write_bytes(f"jpeg-bytes-{i}".encode())
    return directory


@pytest.fixture
def photo_items(photo_dir):
    """BatchItems for the files in photo_dir"""
    return [
        BatchItem(item_id=path.name, path=path)
        for path in sorted(photo_dir.iterdir())
    ]
