"""Inference providers.

- InferenceProvider: abstract item and group evaluation interface
- OllamaProvider: local vision model over HTTP
"""

from photojury.services.inference.base import InferenceProvider, ItemPayload
from photojury.services.inference.ollama import OllamaProvider

__all__ = [
    "InferenceProvider",
    "ItemPayload",
    "OllamaProvider",
]
