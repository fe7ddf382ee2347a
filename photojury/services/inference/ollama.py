"""Ollama Provider Implementation

Evaluates photos with a local vision model through Ollama's /api/chat
endpoint. Images travel base64-encoded and the model is asked for a
JSON object, which is parsed into ItemEvaluation / GroupEvaluation.

Prompt wording is injectable; the defaults only describe the JSON shape
the parser expects.
"""

import base64
import json
import time
from typing import Any, Callable, Dict, List, Optional, Sequence

import aiohttp
import structlog
from pydantic import ValidationError

from photojury.models.config import EvaluationConfig, InferenceSettings
from photojury.models.evaluation import GroupEvaluation, ItemEvaluation
from photojury.observability.metrics import INFERENCE_DURATION, INFERENCE_REQUESTS
from photojury.services.inference.base import InferenceProvider, ItemPayload
from photojury.utils.exceptions import (
    InferenceRequestError,
    InferenceUnavailableError,
    MalformedResponseError,
    RateLimitError,
)

logger = structlog.get_logger()

ItemPromptBuilder = Callable[[EvaluationConfig], str]
GroupPromptBuilder = Callable[[EvaluationConfig, int], str]


def _criteria_lines(parameters: EvaluationConfig) -> str:
    return "\n".join(
        f"- {c.name} (weight {c.weight:g}): {c.description}".rstrip(": ")
        for c in parameters.criteria
    )


def default_item_prompt(parameters: EvaluationConfig) -> str:
    """Minimal instruction prompt for single-photo evaluation."""
    names = ", ".join(f'"{c.name}": <0-10>' for c in parameters.criteria)
    return (
        f"You are a photography competition juror for '{parameters.title}'.\n"
        f"Theme: {parameters.theme}\n"
        f"Criteria:\n{_criteria_lines(parameters)}\n\n"
        "Evaluate the attached photo. Respond with JSON only:\n"
        f'{{"score": <0-10>, "criterion_scores": {{{names}}}, '
        '"tags": {"subject": "...", "tone": "...", "style": "..."}, '
        '"summary": "..."}'
    )


def default_group_prompt(parameters: EvaluationConfig, set_size: int) -> str:
    """Minimal instruction prompt for holistic set evaluation."""
    return (
        f"You are a photography competition juror for '{parameters.title}'.\n"
        f"Theme: {parameters.theme}\n"
        f"Criteria:\n{_criteria_lines(parameters)}\n\n"
        f"The {set_size} attached photos are submitted together as one set. "
        "Judge cohesion, variety and narrative of the set as a whole. "
        "Respond with JSON only:\n"
        '{"score": <0-10>, "criterion_scores": {"<criterion>": <0-10>}, '
        '"recommendation": "...", "suggested_order": [<1-based photo numbers>], '
        '"weakest_link": "..."}'
    )


class OllamaProvider(InferenceProvider):
    """Ollama vision model provider.

    Error mapping:
    - 429 -> RateLimitError (retryable, honours Retry-After)
    - 5xx and connection errors -> InferenceUnavailableError (retryable)
    - other 4xx -> InferenceRequestError (not retried)
    - unparseable body -> MalformedResponseError (retryable)
    """

    CHAT_PATH = "/api/chat"

    def __init__(
        self,
        settings: Optional[InferenceSettings] = None,
        item_prompt: Optional[ItemPromptBuilder] = None,
        group_prompt: Optional[GroupPromptBuilder] = None,
    ):
        """Initialize Ollama provider.

        Args:
            settings: Connection and sampling settings
            item_prompt: Builds the single-photo prompt from parameters
            group_prompt: Builds the set prompt from parameters and set size
        """
        self.settings = settings or InferenceSettings()
        self._item_prompt = item_prompt or default_item_prompt
        self._group_prompt = group_prompt or default_group_prompt
        self._session: Optional[aiohttp.ClientSession] = None

    @property
    def name(self) -> str:
        """Provider name."""
        return "ollama"

    @property
    def model(self) -> str:
        """Current model identifier."""
        return self.settings.model

    async def _get_session(self) -> aiohttp.ClientSession:
        """Get or create aiohttp session."""
        if self._session is None or self._session.closed:
            timeout = aiohttp.ClientTimeout(
                total=self.settings.request_timeout_seconds
            )
            self._session = aiohttp.ClientSession(timeout=timeout)
        return self._session

    async def close(self) -> None:
        """Close the aiohttp session."""
        if self._session and not self._session.closed:
            await self._session.close()

    async def invoke(
        self, payload: ItemPayload, parameters: EvaluationConfig
    ) -> ItemEvaluation:
        """Evaluate one photo.

        Args:
            payload: Photo bytes and identity
            parameters: Evaluation parameters

        Returns:
            Parsed ItemEvaluation

        Raises:
            RateLimitError: When the service answers 429
            InferenceUnavailableError: When the service is down or 5xx
            InferenceRequestError: When the request is rejected (4xx)
            MalformedResponseError: When the answer is not the expected JSON
        """
        prompt = self._item_prompt(parameters)
        data = await self._chat(prompt, [payload.data], kind="item")
        data.setdefault("score", self._weighted_score(data, parameters))
        data["model"] = self.model

        try:
            return ItemEvaluation.model_validate(data)
        except ValidationError as e:
            raise MalformedResponseError(
                f"Response for '{payload.item_id}' does not match "
                f"the evaluation shape: {e.error_count()} error(s)"
            ) from e

    async def invoke_group(
        self, payloads: Sequence[ItemPayload], parameters: EvaluationConfig
    ) -> GroupEvaluation:
        """Evaluate a candidate set as a whole."""
        prompt = self._group_prompt(parameters, len(payloads))
        data = await self._chat(prompt, [p.data for p in payloads], kind="group")
        data.setdefault("score", self._weighted_score(data, parameters))

        try:
            return GroupEvaluation.model_validate(data)
        except ValidationError as e:
            raise MalformedResponseError(
                f"Group response does not match the evaluation shape: "
                f"{e.error_count()} error(s)"
            ) from e

    async def _chat(
        self, prompt: str, images: List[bytes], kind: str
    ) -> Dict[str, Any]:
        body = {
            "model": self.model,
            "stream": False,
            "format": "json",
            "messages": [
                {
                    "role": "user",
                    "content": prompt,
                    "images": [base64.b64encode(img).decode("ascii") for img in images],
                }
            ],
            "options": {
                "temperature": self.settings.temperature,
                "num_predict": self.settings.max_output_tokens,
            },
        }

        url = self.settings.base_url.rstrip("/") + self.CHAT_PATH
        session = await self._get_session()
        start_time = time.time()

        try:
            async with session.post(url, json=body) as response:
                if response.status == 429:
                    INFERENCE_REQUESTS.labels(kind=kind, status="rate_limited").inc()
                    raise RateLimitError(
                        "Ollama rate limit exceeded (429)",
                        retry_after=self._retry_after(response.headers),
                    )
                if response.status >= 500:
                    INFERENCE_REQUESTS.labels(kind=kind, status="unavailable").inc()
                    raise InferenceUnavailableError(
                        f"Ollama returned status {response.status}"
                    )
                if response.status != 200:
                    INFERENCE_REQUESTS.labels(kind=kind, status="rejected").inc()
                    detail = await response.text()
                    raise InferenceRequestError(
                        f"Ollama rejected request ({response.status}): {detail[:200]}"
                    )

                envelope = await response.json(content_type=None)
        except aiohttp.ClientError as e:
            INFERENCE_REQUESTS.labels(kind=kind, status="unavailable").inc()
            logger.error("ollama_network_error", error=str(e), kind=kind)
            raise InferenceUnavailableError(f"Ollama request failed: {e}") from e
        except json.JSONDecodeError as e:
            INFERENCE_REQUESTS.labels(kind=kind, status="malformed").inc()
            raise MalformedResponseError(f"Ollama envelope is not JSON: {e}") from e

        latency = time.time() - start_time
        INFERENCE_DURATION.labels(kind=kind).observe(latency)
        INFERENCE_REQUESTS.labels(kind=kind, status="success").inc()

        content = (envelope.get("message") or {}).get("content", "")
        data = self._parse_content(content)

        logger.debug(
            "ollama_chat_success",
            model=self.model,
            kind=kind,
            images=len(images),
            latency_ms=round(latency * 1000, 1),
        )
        return data

    @staticmethod
    def _retry_after(headers: Any) -> Optional[float]:
        value = headers.get("Retry-After") if headers else None
        try:
            return float(value) if value is not None else None
        except (TypeError, ValueError):
            return None

    @staticmethod
    def _parse_content(content: str) -> Dict[str, Any]:
        """Extract the JSON object from model output (tolerates code fences)."""
        text = content.strip()
        if text.startswith("```json"):
            text = text[7:]
        elif text.startswith("```"):
            text = text[3:]
        if text.endswith("```"):
            text = text[:-3]
        text = text.strip()

        try:
            data = json.loads(text)
        except json.JSONDecodeError as e:
            raise MalformedResponseError(
                f"Model output is not valid JSON: {e.msg}"
            ) from e

        if not isinstance(data, dict):
            raise MalformedResponseError(
                f"Model output is a JSON {type(data).__name__}, expected object"
            )
        return data

    @staticmethod
    def _weighted_score(
        data: Dict[str, Any], parameters: EvaluationConfig
    ) -> Optional[float]:
        """Weighted mean of criterion scores, used when no overall score is given."""
        scores = data.get("criterion_scores")
        if not isinstance(scores, dict):
            return None

        total = 0.0
        weight_sum = 0.0
        for criterion in parameters.criteria:
            value = scores.get(criterion.name)
            if isinstance(value, (int, float)):
                total += value * criterion.weight
                weight_sum += criterion.weight

        if weight_sum == 0:
            return None
        return round(total / weight_sum, 2)
