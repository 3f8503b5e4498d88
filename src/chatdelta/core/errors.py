"""
Error taxonomy for the chatdelta orchestration core.

Per-provider errors never escape a provider's unit of work; they are folded
into a Failure outcome. Only ``AllProvidersFailedError`` (executor level) and
``PersistenceError`` (session save/load) propagate to callers. Logging
problems surface as ``LoggingWarning`` entries on a side channel.

Hierarchy:
    ChatDeltaError
    ├── ProviderError
    │   ├── TransientProviderError   (timeouts, rate limits - retried)
    │   ├── PermanentProviderError   (bad credentials, unknown model - not retried)
    │   └── ProviderUnavailableError (no client for the provider)
    ├── AllProvidersFailedError
    └── PersistenceError
    LoggingWarning (a Warning, never raised by the core)
"""

from __future__ import annotations

from enum import Enum
from typing import TYPE_CHECKING, Optional

if TYPE_CHECKING:
    from chatdelta.core.executor import ExecutionResult


class ErrorKind(str, Enum):
    """
    Normalized failure categories reported by provider calls.

    Values:
        TIMEOUT: Attempt exceeded the configured timeout (transient)
        RATE_LIMIT: Provider throttled the request (transient)
        NETWORK: Connection reset/refused (transient)
        SERVER_ERROR: 5xx-style provider failure (transient)
        INVALID_CREDENTIAL: API key rejected (permanent)
        MODEL_NOT_FOUND: Configured model does not exist (permanent)
        INVALID_REQUEST: Provider rejected the request itself (permanent)
        UNAVAILABLE: No client could be created for the provider (permanent)
        CANCELLED: Unit abandoned before reaching a terminal state
        UNKNOWN: Unclassified failure (permanent)
    """

    TIMEOUT = "timeout"
    RATE_LIMIT = "rate_limit"
    NETWORK = "network"
    SERVER_ERROR = "server_error"
    INVALID_CREDENTIAL = "invalid_credential"
    MODEL_NOT_FOUND = "model_not_found"
    INVALID_REQUEST = "invalid_request"
    UNAVAILABLE = "unavailable"
    CANCELLED = "cancelled"
    UNKNOWN = "unknown"

    def is_transient(self) -> bool:
        """Return True if a retry may succeed for this kind of failure."""
        return self in _TRANSIENT_KINDS


_TRANSIENT_KINDS = frozenset(
    {
        ErrorKind.TIMEOUT,
        ErrorKind.RATE_LIMIT,
        ErrorKind.NETWORK,
        ErrorKind.SERVER_ERROR,
    }
)


class ChatDeltaError(Exception):
    """Base class for all chatdelta errors."""


class ProviderError(ChatDeltaError):
    """
    Failure reported by a provider client.

    Attributes:
        kind: Normalized error category
        provider: Provider tag value, when known
        retry_after: Seconds the provider asked us to wait, if any
    """

    def __init__(
        self,
        message: str,
        *,
        kind: ErrorKind = ErrorKind.UNKNOWN,
        provider: Optional[str] = None,
        retry_after: Optional[float] = None,
    ):
        super().__init__(message)
        self.kind = kind
        self.provider = provider
        self.retry_after = retry_after

    @property
    def is_transient(self) -> bool:
        return self.kind.is_transient()


class TransientProviderError(ProviderError):
    """Retryable provider failure (network timeout, rate limit, 5xx)."""

    def __init__(
        self,
        message: str,
        *,
        kind: ErrorKind = ErrorKind.NETWORK,
        provider: Optional[str] = None,
        retry_after: Optional[float] = None,
    ):
        if not kind.is_transient():
            raise ValueError(f"{kind.value} is not a transient error kind")
        super().__init__(message, kind=kind, provider=provider, retry_after=retry_after)


class PermanentProviderError(ProviderError):
    """Non-retryable provider failure (invalid credential, model not found)."""

    def __init__(
        self,
        message: str,
        *,
        kind: ErrorKind = ErrorKind.INVALID_CREDENTIAL,
        provider: Optional[str] = None,
    ):
        if kind.is_transient():
            raise ValueError(f"{kind.value} is a transient error kind")
        super().__init__(message, kind=kind, provider=provider)


class ProviderUnavailableError(PermanentProviderError):
    """No client could be created for the requested provider."""

    def __init__(self, message: str, *, provider: Optional[str] = None):
        super().__init__(message, kind=ErrorKind.UNAVAILABLE, provider=provider)


class AllProvidersFailedError(ChatDeltaError):
    """
    Every enabled provider exhausted its retries.

    Attributes:
        results: The complete ExecutionResult, one Failure per provider
    """

    def __init__(self, results: "ExecutionResult"):
        failures = ", ".join(
            f"{provider.value}={outcome.error_kind.value}"
            for provider, outcome in results.items()
            if not outcome.success
        )
        super().__init__(f"No successful responses from any provider ({failures})")
        self.results = results


class PersistenceError(ChatDeltaError):
    """Session save/load failed (I/O error or malformed document)."""

    def __init__(self, message: str, *, path: Optional[str] = None):
        super().__init__(message)
        self.path = path


class LoggingWarning(UserWarning):
    """Non-fatal logging failure, surfaced on a side channel only."""


def classify_exception(error: BaseException) -> ErrorKind:
    """
    Map an arbitrary exception raised by a client to an ErrorKind.

    ProviderError instances carry their own kind. Everything else is
    classified by message heuristics; unrecognized failures are UNKNOWN,
    which is not retried.
    """
    if isinstance(error, ProviderError):
        return error.kind

    if isinstance(error, TimeoutError):
        return ErrorKind.TIMEOUT

    error_str = str(error).lower()

    if "timeout" in error_str or "timed out" in error_str:
        return ErrorKind.TIMEOUT

    if "rate limit" in error_str or "rate_limit" in error_str or "429" in error_str:
        return ErrorKind.RATE_LIMIT

    if isinstance(error, ConnectionError) or (
        "connection" in error_str and ("reset" in error_str or "refused" in error_str)
    ):
        return ErrorKind.NETWORK

    if any(code in error_str for code in ("500", "502", "503", "504")):
        return ErrorKind.SERVER_ERROR

    if (
        "api key" in error_str
        or "authentication" in error_str
        or "401" in error_str
        or "403" in error_str
    ):
        return ErrorKind.INVALID_CREDENTIAL

    if "model" in error_str and ("not found" in error_str or "404" in error_str):
        return ErrorKind.MODEL_NOT_FOUND

    return ErrorKind.UNKNOWN
