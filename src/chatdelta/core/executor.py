"""
Parallel query executor.

Fans one prompt out to every enabled provider at once. Each provider runs in
its own asyncio task wrapped by the RetryController; the executor waits for
every task to reach a terminal state and only raises when no provider
succeeded.
"""

from __future__ import annotations

import asyncio
import logging
import time
from collections.abc import Mapping
from typing import Dict, Iterable, Iterator, List, Optional

from chatdelta.core.errors import AllProvidersFailedError, ErrorKind
from chatdelta.core.metrics import MetricsCollector
from chatdelta.core.providers.base import Provider, ProviderClient
from chatdelta.core.resilience import (
    ClientConfiguration,
    Failure,
    QueryOutcome,
    RetryController,
    Success,
    call_client,
)
from chatdelta.core.session_log import SessionLogger

logger = logging.getLogger(__name__)

#: Slack added to the global deadline on top of the worst-case retry budget
DEADLINE_GRACE: float = 0.5


class ExecutionResult(Mapping):
    """
    Provider -> QueryOutcome mapping ordered by provider enable order.

    Insertion order follows the enabled set, never completion order.
    """

    def __init__(self, outcomes: Iterable[QueryOutcome]):
        ordered = sorted(outcomes, key=lambda o: list(Provider).index(o.provider))
        self._outcomes: Dict[Provider, QueryOutcome] = {o.provider: o for o in ordered}

    def __getitem__(self, provider: Provider) -> QueryOutcome:
        return self._outcomes[provider]

    def __iter__(self) -> Iterator[Provider]:
        return iter(self._outcomes)

    def __len__(self) -> int:
        return len(self._outcomes)

    def __repr__(self) -> str:
        body = ", ".join(
            f"{p.value}={'ok' if o.success else o.error_kind.value}"
            for p, o in self._outcomes.items()
        )
        return f"ExecutionResult({body})"

    def successes(self) -> List[Success]:
        return [o for o in self._outcomes.values() if isinstance(o, Success)]

    def failures(self) -> List[Failure]:
        return [o for o in self._outcomes.values() if isinstance(o, Failure)]

    @property
    def all_failed(self) -> bool:
        return not self.successes()


def enable_order(providers: Iterable[Provider]) -> List[Provider]:
    """Deduplicate providers and sort them into enable order."""
    wanted = set(providers)
    return [p for p in Provider if p in wanted]


class ParallelQueryExecutor:
    """
    Runs one prompt against several providers concurrently.

    Args:
        clients: Provider clients available for this run
        controller: Retry controller wrapping each provider call
        metrics: Receives one record per terminal outcome
        session_logger: Receives one record per attempt
    """

    def __init__(
        self,
        clients: Mapping[Provider, ProviderClient],
        *,
        controller: Optional[RetryController] = None,
        metrics: Optional[MetricsCollector] = None,
        session_logger: Optional[SessionLogger] = None,
    ):
        self.clients = dict(clients)
        self.controller = controller or RetryController()
        self.metrics = metrics
        self.session_logger = session_logger

    async def run(
        self,
        prompt: str,
        enabled_providers: Iterable[Provider],
        config: ClientConfiguration,
        *,
        session_id: Optional[str] = None,
    ) -> ExecutionResult:
        """
        Query every enabled provider and collect one outcome per provider.

        Raises:
            ValueError: If no provider is enabled
            AllProvidersFailedError: If every provider failed
            asyncio.CancelledError: If the caller is cancelled; in-flight
                units are cancelled first
        """
        providers = enable_order(enabled_providers)
        if not providers:
            raise ValueError("No providers enabled")

        deadline = config.worst_case_seconds() + DEADLINE_GRACE
        logger.debug(
            "Querying %s (deadline %.1fs)", ", ".join(p.value for p in providers), deadline
        )

        started = time.perf_counter()
        tasks: Dict[Provider, asyncio.Task] = {
            provider: asyncio.create_task(
                self._run_unit(provider, prompt, config, session_id),
                name=f"chatdelta-{provider.value}",
            )
            for provider in providers
        }

        try:
            _, pending = await asyncio.wait(tasks.values(), timeout=deadline)
        except asyncio.CancelledError:
            await _cancel_all(tasks.values())
            raise

        if pending:
            await _cancel_all(pending)

        elapsed = time.perf_counter() - started
        outcomes: List[QueryOutcome] = []
        for provider, task in tasks.items():
            if task in pending or task.cancelled():
                logger.warning(
                    "%s abandoned after the %.1fs run deadline", provider.display_name, deadline
                )
                outcomes.append(
                    Failure(
                        provider=provider,
                        error_kind=ErrorKind.CANCELLED,
                        latency=elapsed,
                        message=f"{provider.display_name} did not finish before the run deadline",
                    )
                )
            else:
                outcomes.append(task.result())

        result = ExecutionResult(outcomes)
        if result.all_failed:
            raise AllProvidersFailedError(result)
        return result

    async def _run_unit(
        self,
        provider: Provider,
        prompt: str,
        config: ClientConfiguration,
        session_id: Optional[str],
    ) -> QueryOutcome:
        client = self.clients.get(provider)
        if client is None:
            outcome: QueryOutcome = Failure(
                provider=provider,
                error_kind=ErrorKind.UNAVAILABLE,
                latency=0.0,
                message=f"No client configured for {provider.display_name}",
            )
            self._observe(session_id, provider, 1, outcome)
        else:
            outcome = await self.controller.execute(
                provider,
                lambda: call_client(client, prompt, config),
                config,
                on_attempt=lambda p, n, o: self._observe(session_id, p, n, o),
            )

        if self.metrics is not None:
            self.metrics.record(provider, outcome)
        return outcome

    def _observe(
        self,
        session_id: Optional[str],
        provider: Provider,
        attempt: int,
        outcome: QueryOutcome,
    ) -> None:
        if self.session_logger is not None and session_id is not None:
            self.session_logger.log(session_id, provider, attempt, outcome)


async def _cancel_all(tasks: Iterable[asyncio.Task]) -> None:
    tasks = list(tasks)
    for task in tasks:
        task.cancel()
    await asyncio.gather(*tasks, return_exceptions=True)
