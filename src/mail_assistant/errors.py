"""Error taxonomy for provider orchestration and retrieval.

Availability errors (no provider, unknown id) are raised straight to the
caller. Transient errors are retried against the same provider with
exponential backoff. Everything else moves on to the next candidate.
"""

import httpx


class AIProviderError(Exception):
    """Base class for every failure surfaced by the orchestrator."""


class NoProviderAvailableError(AIProviderError):
    def __init__(self) -> None:
        super().__init__(
            "No AI provider is available. Configure an AI provider in settings."
        )


class ProviderNotFoundError(AIProviderError):
    def __init__(self, provider_id: str) -> None:
        super().__init__(f"AI provider '{provider_id}' not found.")
        self.provider_id = provider_id


class ProviderNotConfiguredError(AIProviderError):
    def __init__(self, provider_id: str) -> None:
        super().__init__(
            f"AI provider '{provider_id}' is not configured. Check its API key."
        )
        self.provider_id = provider_id


class AllProvidersFailedError(AIProviderError):
    """Raised once every candidate has been tried.

    ``errors`` holds one entry per failed attempt, in attempt order.
    """

    def __init__(self, errors: list[BaseException]) -> None:
        reasons = "; ".join(str(e) or e.__class__.__name__ for e in errors)
        super().__init__(f"All AI providers failed: {reasons}")
        self.errors = list(errors)


class InvalidConfigurationError(AIProviderError):
    def __init__(self, reason: str) -> None:
        super().__init__(f"Invalid AI provider configuration: {reason}")
        self.reason = reason


class RateLimitedError(AIProviderError):
    def __init__(self, provider_id: str, retry_after: float | None = None) -> None:
        message = f"Provider '{provider_id}' rate limited."
        if retry_after is not None:
            message += f" Retry after {retry_after:g} seconds."
        super().__init__(message)
        self.provider_id = provider_id
        self.retry_after = retry_after


class GenerationTimeoutError(AIProviderError):
    def __init__(self, timeout: float) -> None:
        super().__init__(f"Generation did not finish within {timeout:g} seconds.")
        self.timeout = timeout


class StreamInterruptedError(AIProviderError):
    """A stream failed after some chunks had already been delivered."""

    def __init__(self, provider_id: str, chunks_delivered: int) -> None:
        super().__init__(
            f"Provider '{provider_id}' failed mid-stream after "
            f"{chunks_delivered} chunk(s)."
        )
        self.provider_id = provider_id
        self.chunks_delivered = chunks_delivered


class ProviderRequestError(AIProviderError):
    """The backend rejected a request (bad request, auth, server error)."""

    def __init__(self, provider_id: str, status_code: int, message: str = "") -> None:
        detail = f": {message}" if message else ""
        super().__init__(f"Provider '{provider_id}' returned HTTP {status_code}{detail}")
        self.provider_id = provider_id
        self.status_code = status_code


class TransientProviderError(AIProviderError):
    """Raised by providers for conditions worth retrying on the same backend."""


class RetrievalError(Exception):
    """The embedding provider or vector store failed during retrieval."""


_RETRYABLE_TYPES: tuple[type[BaseException], ...] = (
    TimeoutError,
    ConnectionError,
    httpx.TimeoutException,
    httpx.NetworkError,
    TransientProviderError,
)


def is_retryable_error(error: BaseException) -> bool:
    """Return True for network-level failures that may succeed on retry.

    Covers timeouts, dropped or refused connections and missing
    connectivity. Authentication failures, malformed requests and rate
    limits are not retried.
    """
    return isinstance(error, _RETRYABLE_TYPES)
