"""Inference result models.

ItemEvaluation is what the item-inference collaborator returns for one
photo; GroupEvaluation is the holistic verdict on a candidate set. Both
round-trip through the cache and checkpoint as plain JSON.
"""

from typing import Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field


class ItemEvaluation(BaseModel):
    """Evaluation of a single photo"""

    model_config = ConfigDict(protected_namespaces=(), extra="allow")

    score: float = Field(..., ge=0.0, le=10.0)
    criterion_scores: Dict[str, float] = Field(default_factory=dict)

    # Descriptive tags used for set diversity (e.g. subject, tone, style)
    tags: Dict[str, str] = Field(default_factory=dict)
    summary: str = ""
    model: Optional[str] = None


class GroupEvaluation(BaseModel):
    """Holistic evaluation of a candidate set"""

    model_config = ConfigDict(protected_namespaces=(), extra="allow")

    score: float = Field(..., ge=0.0, le=10.0)
    criterion_scores: Dict[str, float] = Field(default_factory=dict)
    recommendation: str = ""
    suggested_order: List[int] = Field(default_factory=list)
    weakest_link: str = ""
