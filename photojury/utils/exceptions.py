"""Custom exceptions for the photo evaluation pipeline

This module defines the exception hierarchy for batch evaluation and set
selection:
- Base exception for all pipeline errors
- Retryable errors for transient inference failures
- Non-retryable errors for bad requests, unreadable items and safety limits

All exceptions inherit from PhotoJuryError to allow catching all
pipeline-related errors in a single except block when needed.
"""


class PhotoJuryError(Exception):
    """Base exception for all pipeline errors

    Use this to catch any error raised by the batch engine:
    ```python
    try:
        outcome = await orchestrator.run_to_completion(items, params, project_dir)
    except PhotoJuryError as e:
        logger.error("batch_failed", error=str(e))
    ```
    """

    pass


class ConfigValidationError(PhotoJuryError):
    """Configuration validation failed"""

    pass


class ItemReadError(PhotoJuryError):
    """Item payload could not be read

    Raised when:
    - The photo file does not exist
    - The file is not readable (permissions)

    This is a non-retryable error; the item is marked failed immediately.
    """

    pass


class InferenceError(PhotoJuryError):
    """External inference call failed

    Base for every failure of the item or group inference collaborator.
    Errors that are not also RetryableError are never retried.
    """

    pass


class InferenceRequestError(InferenceError):
    """Inference service rejected the request (4xx other than 429)"""

    pass


class RetryableError(PhotoJuryError):
    """Base for retryable errors (timeouts, 5xx, connection errors).

    Errors that inherit from this class indicate transient failures
    that may succeed on retry.
    """

    pass


class RateLimitError(RetryableError, InferenceError):
    """Rate limit exceeded with optional retry-after metadata.

    Raised when:
    - Inference service returns 429 status
    """

    def __init__(self, message: str, retry_after: float | None = None) -> None:
        super().__init__(message)
        self.retry_after = retry_after


class InferenceTimeoutError(RetryableError, InferenceError):
    """A single inference attempt exceeded its timeout"""

    pass


class InferenceUnavailableError(RetryableError, InferenceError):
    """Inference service unreachable or returned 5xx"""

    pass


class MalformedResponseError(RetryableError, InferenceError):
    """Inference response could not be parsed into an evaluation

    Retried because vision models occasionally break the requested
    JSON format on an otherwise healthy call.
    """

    pass


class CombinationLimitExceededError(PhotoJuryError):
    """Candidate enumeration would exceed the configured ceiling.

    Raised before any combination is generated. The message names the
    computed combination count and the ceiling so the caller can reduce
    the candidate pool, change the set size, or raise the ceiling.
    """

    def __init__(
        self, combination_count: int, ceiling: int, pool_size: int, set_size: int
    ) -> None:
        message = (
            f"Too many combinations: C({pool_size},{set_size}) = "
            f"{combination_count} exceeds the configured ceiling of {ceiling}. "
            "Reduce the candidate pool, change the set size, "
            "or raise max_combinations explicitly."
        )
        super().__init__(message)
        self.combination_count = combination_count
        self.ceiling = ceiling
        self.pool_size = pool_size
        self.set_size = set_size


class InvalidStateTransition(PhotoJuryError):
    """An item attempted an illegal state change (e.g. Done -> InFlight)"""

    def __init__(self, item_id: str, current: str, target: str) -> None:
        super().__init__(
            f"Illegal state transition for item '{item_id}': {current} -> {target}"
        )
        self.item_id = item_id
        self.current = current
        self.target = target
