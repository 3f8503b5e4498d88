"""
Resilience primitives for provider calls.

Provides the shared client configuration, backoff strategies and the retry
controller that wraps a single provider call with a per-attempt timeout and
a bounded attempt count.

Backoff Strategies
==================

Delays are computed for the retry number (1-based), never before the first
attempt:

    exponential(base)  - base * 2^(retry - 1)
    linear(base)       - base * retry
    fixed(delay)       - delay

Example usage:

    from chatdelta.core.resilience import (
        ClientConfiguration,
        RetryController,
        RetryStrategy,
    )

    config = ClientConfiguration(
        timeout=30.0,
        max_retries=2,
        retry_strategy=RetryStrategy.exponential(0.5),
    )
    outcome = await RetryController().execute(
        Provider.GPT, lambda: call_client(client, prompt, config), config
    )
"""

from __future__ import annotations

import asyncio
import functools
import logging
import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Awaitable, Callable, ClassVar, Optional, Union

from chatdelta.core.errors import (
    ErrorKind,
    PermanentProviderError,
    ProviderError,
    TransientProviderError,
    classify_exception,
)
from chatdelta.core.providers.base import (
    ClientResponse,
    Provider,
    ProviderClient,
    ProviderReply,
    TokenUsage,
)

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Configuration
# ---------------------------------------------------------------------------

#: Default per-attempt timeout in seconds
DEFAULT_TIMEOUT: float = 30.0

#: Default response token budget
DEFAULT_MAX_TOKENS: int = 1024

MIN_TEMPERATURE: float = 0.0
MAX_TEMPERATURE: float = 2.0


class BackoffKind(str, Enum):
    """Delay policy applied between retry attempts."""

    EXPONENTIAL = "exponential"
    LINEAR = "linear"
    FIXED = "fixed"


@dataclass(frozen=True)
class RetryStrategy:
    """
    Backoff policy with its base delay in seconds.

    Attributes:
        kind: Backoff policy
        delay: Base delay (exponential/linear) or constant delay (fixed)
    """

    kind: BackoffKind = BackoffKind.EXPONENTIAL
    delay: float = 1.0

    def __post_init__(self) -> None:
        if self.delay < 0:
            raise ValueError(f"Retry delay must be >= 0, got {self.delay}")

    @classmethod
    def exponential(cls, base_delay: float) -> "RetryStrategy":
        return cls(BackoffKind.EXPONENTIAL, base_delay)

    @classmethod
    def linear(cls, base_delay: float) -> "RetryStrategy":
        return cls(BackoffKind.LINEAR, base_delay)

    @classmethod
    def fixed(cls, delay: float) -> "RetryStrategy":
        return cls(BackoffKind.FIXED, delay)

    @classmethod
    def parse(cls, kind: Union[str, BackoffKind], delay: float) -> "RetryStrategy":
        """
        Build a strategy from a policy name.

        Raises:
            ValueError: If the name is not exponential, linear or fixed
        """
        try:
            backoff = BackoffKind(kind.strip().lower() if isinstance(kind, str) else kind)
        except ValueError:
            valid = ", ".join(k.value for k in BackoffKind)
            raise ValueError(
                f"Unknown retry strategy '{kind}'. Valid options: {valid}"
            ) from None
        return cls(backoff, float(delay))

    def delay_for(self, retry: int) -> float:
        """Return the delay in seconds to wait before the given retry (1-based)."""
        if retry < 1:
            return 0.0
        if self.kind is BackoffKind.EXPONENTIAL:
            return self.delay * (2 ** (retry - 1))
        if self.kind is BackoffKind.LINEAR:
            return self.delay * retry
        return self.delay


@dataclass(frozen=True)
class ClientConfiguration:
    """
    Immutable configuration shared by every provider in a run.

    Attributes:
        timeout: Per-attempt timeout in seconds
        max_retries: Retries after the first attempt (0 = single attempt)
        retry_strategy: Backoff applied between attempts
        temperature: Sampling temperature in [0.0, 2.0], or None for provider default
        max_tokens: Response token budget
    """

    timeout: float = DEFAULT_TIMEOUT
    max_retries: int = 0
    retry_strategy: RetryStrategy = field(default_factory=RetryStrategy)
    temperature: Optional[float] = None
    max_tokens: int = DEFAULT_MAX_TOKENS

    def __post_init__(self) -> None:
        if self.timeout <= 0:
            raise ValueError(f"timeout must be positive, got {self.timeout}")
        if self.max_retries < 0:
            raise ValueError(f"max_retries must be >= 0, got {self.max_retries}")
        if self.max_tokens <= 0:
            raise ValueError(f"max_tokens must be positive, got {self.max_tokens}")
        if self.temperature is not None and not (
            MIN_TEMPERATURE <= self.temperature <= MAX_TEMPERATURE
        ):
            raise ValueError(
                f"temperature must be between {MIN_TEMPERATURE} and "
                f"{MAX_TEMPERATURE}, got {self.temperature}"
            )

    @property
    def max_attempts(self) -> int:
        return self.max_retries + 1

    def total_backoff(self) -> float:
        """Sum of all backoff delays a fully failing provider would sleep."""
        return sum(
            self.retry_strategy.delay_for(retry)
            for retry in range(1, self.max_retries + 1)
        )

    def worst_case_seconds(self) -> float:
        """Upper bound on wall time for one provider's attempt group."""
        return self.timeout * self.max_attempts + self.total_backoff()


# ---------------------------------------------------------------------------
# Outcomes
# ---------------------------------------------------------------------------


class QueryOutcome:
    """
    Terminal result of one provider's query after all retries.

    Either a ``Success`` or a ``Failure``; both are immutable and carry the
    provider, latency in seconds and the number of attempts made.
    """

    success: ClassVar[bool]
    provider: Provider
    latency: float
    attempts: int

    @property
    def latency_ms(self) -> int:
        return int(round(self.latency * 1000))


@dataclass(frozen=True)
class Success(QueryOutcome):
    provider: Provider
    content: str
    latency: float
    token_usage: Optional[TokenUsage] = None
    attempts: int = 1

    success: ClassVar[bool] = True

    @property
    def error_kind(self) -> None:
        return None

    @property
    def total_tokens(self) -> int:
        return self.token_usage.total_tokens if self.token_usage else 0


@dataclass(frozen=True)
class Failure(QueryOutcome):
    provider: Provider
    error_kind: ErrorKind
    latency: float
    message: str = ""
    retry_after: Optional[float] = None
    attempts: int = 1

    success: ClassVar[bool] = False

    @property
    def total_tokens(self) -> int:
        return 0

    def to_exception(self) -> ProviderError:
        """Rebuild the provider error this failure stands for."""
        text = self.message or f"{self.provider.display_name} failed: {self.error_kind.value}"
        if self.error_kind.is_transient():
            return TransientProviderError(
                text,
                kind=self.error_kind,
                provider=self.provider.value,
                retry_after=self.retry_after,
            )
        return PermanentProviderError(text, kind=self.error_kind, provider=self.provider.value)


AttemptCallback = Callable[[Provider, int, QueryOutcome], None]
"""
Per-attempt observer: ``on_attempt(provider, attempt_number, attempt_outcome)``.

Called once after every attempt (successful or not) with an outcome
describing that attempt alone.
"""


# ---------------------------------------------------------------------------
# Client invocation
# ---------------------------------------------------------------------------


async def call_client(
    client: ProviderClient, prompt: str, config: ClientConfiguration
) -> ClientResponse:
    """
    Invoke a client's ``query`` without blocking the event loop.

    Coroutine clients are awaited directly; synchronous clients are run in
    the default thread pool executor.
    """
    if asyncio.iscoroutinefunction(client.query):
        return await client.query(prompt, config)

    loop = asyncio.get_running_loop()
    result: Any = await loop.run_in_executor(
        None, functools.partial(client.query, prompt, config)
    )
    if asyncio.iscoroutine(result) or isinstance(result, asyncio.Future):
        result = await result
    return result


# ---------------------------------------------------------------------------
# Retry Controller
# ---------------------------------------------------------------------------


class RetryController:
    """
    Runs one provider call with a per-attempt timeout and bounded retries.

    Attempts are strictly sequential. Non-transient failures short-circuit
    immediately; transient ones (including timeouts) are retried until
    ``config.max_retries`` is exhausted.

    Args:
        sleep: Awaitable sleep used between attempts (injectable for tests)
        clock: Monotonic clock returning seconds
    """

    def __init__(
        self,
        *,
        sleep: Optional[Callable[[float], Awaitable[None]]] = None,
        clock: Callable[[], float] = time.perf_counter,
    ):
        self._sleep = sleep or asyncio.sleep
        self._clock = clock

    async def execute(
        self,
        provider: Provider,
        call: Callable[[], Awaitable[ClientResponse]],
        config: ClientConfiguration,
        *,
        on_attempt: Optional[AttemptCallback] = None,
    ) -> QueryOutcome:
        """
        Execute ``call`` until it succeeds or retries are exhausted.

        Returns:
            Success with the successful attempt's latency only, or Failure
            with the summed latency of every attempt
        """
        total_latency = 0.0
        last: Optional[Failure] = None

        for attempt in range(1, config.max_attempts + 1):
            if attempt > 1:
                delay = config.retry_strategy.delay_for(attempt - 1)
                if last is not None and last.retry_after:
                    delay = max(delay, last.retry_after)
                logger.info(
                    "%s attempt %d failed (%s), retrying in %.2fs",
                    provider.display_name,
                    attempt - 1,
                    last.error_kind.value if last else "unknown",
                    delay,
                )
                if delay > 0:
                    await self._sleep(delay)

            started = self._clock()
            try:
                raw = await asyncio.wait_for(call(), timeout=config.timeout)
                reply = ProviderReply.coerce(raw)
            except asyncio.CancelledError:
                raise
            except (asyncio.TimeoutError, TimeoutError):
                latency = self._clock() - started
                last = Failure(
                    provider=provider,
                    error_kind=ErrorKind.TIMEOUT,
                    latency=latency,
                    message=f"{provider.display_name} timed out after {config.timeout}s",
                    attempts=attempt,
                )
            except Exception as exc:  # noqa: BLE001 - contained in the outcome
                latency = self._clock() - started
                last = Failure(
                    provider=provider,
                    error_kind=classify_exception(exc),
                    latency=latency,
                    message=str(exc) or type(exc).__name__,
                    retry_after=getattr(exc, "retry_after", None),
                    attempts=attempt,
                )
            else:
                latency = self._clock() - started
                outcome = Success(
                    provider=provider,
                    content=reply.content,
                    latency=latency,
                    token_usage=reply.token_usage,
                    attempts=attempt,
                )
                if attempt > 1:
                    logger.info(
                        "%s succeeded on attempt %d", provider.display_name, attempt
                    )
                _notify(on_attempt, provider, attempt, outcome)
                return outcome

            total_latency += last.latency
            _notify(on_attempt, provider, attempt, last)

            if not last.error_kind.is_transient():
                logger.debug(
                    "%s failed with non-retryable %s",
                    provider.display_name,
                    last.error_kind.value,
                )
                break

        assert last is not None
        logger.warning(
            "%s failed after %d attempt(s): %s",
            provider.display_name,
            last.attempts,
            last.message,
        )
        return Failure(
            provider=provider,
            error_kind=last.error_kind,
            latency=total_latency,
            message=last.message,
            retry_after=last.retry_after,
            attempts=last.attempts,
        )


def _notify(
    callback: Optional[AttemptCallback],
    provider: Provider,
    attempt: int,
    outcome: QueryOutcome,
) -> None:
    if callback is None:
        return
    try:
        callback(provider, attempt, outcome)
    except Exception:  # noqa: BLE001 - observers never fail the call
        logger.exception("Attempt observer failed for %s", provider.value)
