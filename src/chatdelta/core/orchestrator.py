"""
Orchestrator: the two operating modes over one shared core.

An Orchestrator owns one RetryController, one MetricsCollector and one
SessionLogger session. It is constructed in either PARALLEL mode (one prompt
fanned out to every enabled provider, optionally summarized) or CONVERSATION
mode (one active provider, turn by turn). Both modes are instrumented the
same way.

Example:
    orchestrator = Orchestrator(clients, config, OperatingMode.PARALLEL)
    report = await orchestrator.query("Explain CRDTs", summarize=True)
    orchestrator.close()
"""

from __future__ import annotations

import logging
import time
from collections.abc import Mapping
from dataclasses import dataclass
from enum import Enum
from pathlib import Path
from typing import Any, Dict, Optional, Sequence, Union

from chatdelta.core.conversation import ConversationSession, load_session_document
from chatdelta.core.errors import AllProvidersFailedError, PersistenceError
from chatdelta.core.executor import ExecutionResult, ParallelQueryExecutor, enable_order
from chatdelta.core.logging_config import session_context
from chatdelta.core.metrics import MetricsCollector
from chatdelta.core.providers.base import Provider, ProviderClient
from chatdelta.core.resilience import ClientConfiguration, RetryController
from chatdelta.core.session_log import SessionLogger
from chatdelta.core.summarizer import DEFAULT_SUMMARY_PRIORITY, FallbackSummarizer

logger = logging.getLogger(__name__)


class OperatingMode(str, Enum):
    """How the orchestrator talks to providers."""

    PARALLEL = "parallel"
    CONVERSATION = "conversation"


@dataclass(frozen=True)
class RunReport:
    """
    Everything one parallel query produced.

    Attributes:
        prompt: The prompt sent to every provider
        results: One outcome per enabled provider, in enable order
        summary: Synthesized text, or None when unavailable
        summary_provider: Provider that produced the summary
        duration_ms: Wall time of the parallel phase
        summary_duration_ms: Wall time of the summary phase, if it ran
    """

    prompt: str
    results: ExecutionResult
    summary: Optional[str] = None
    summary_provider: Optional[Provider] = None
    duration_ms: int = 0
    summary_duration_ms: Optional[int] = None


class Orchestrator:
    """
    Entry point to the orchestration core.

    Args:
        clients: Client per available provider
        config: Shared client configuration
        mode: Operating mode, fixed for the orchestrator's lifetime
        metrics: Metrics accumulator (a fresh one by default)
        session_logger: Session logger (in-memory only by default)
        controller: Retry controller shared by every call
        summary_priority: Order in which providers are asked to summarize
    """

    def __init__(
        self,
        clients: Mapping[Provider, ProviderClient],
        config: ClientConfiguration,
        mode: OperatingMode = OperatingMode.PARALLEL,
        *,
        metrics: Optional[MetricsCollector] = None,
        session_logger: Optional[SessionLogger] = None,
        controller: Optional[RetryController] = None,
        summary_priority: Sequence[Provider] = DEFAULT_SUMMARY_PRIORITY,
    ):
        self.clients: Dict[Provider, ProviderClient] = {
            p: clients[p] for p in enable_order(clients)
        }
        self.config = config
        self.mode = OperatingMode(mode)
        self.metrics = metrics if metrics is not None else MetricsCollector()
        self.session_logger = session_logger if session_logger is not None else SessionLogger()
        self.controller = controller or RetryController()
        self.summary_priority = tuple(summary_priority)
        self.session_id = self.session_logger.begin()
        self._closed = False

    @property
    def providers(self) -> list:
        return list(self.clients)

    def _require(self, mode: OperatingMode, operation: str) -> None:
        if self._closed:
            raise RuntimeError("Orchestrator is closed")
        if self.mode is not mode:
            raise ValueError(f"{operation}() requires {mode.value} mode, not {self.mode.value}")

    # ------------------------------------------------------------------
    # Parallel mode
    # ------------------------------------------------------------------

    async def query(self, prompt: str, *, summarize: bool = True) -> RunReport:
        """
        Query every provider in parallel and optionally summarize.

        Raises:
            AllProvidersFailedError: If no provider succeeded
            ValueError: If called in conversation mode or no client is configured
        """
        self._require(OperatingMode.PARALLEL, "query")
        if not self.clients:
            raise ValueError("No AI clients configured")

        executor = ParallelQueryExecutor(
            self.clients,
            controller=self.controller,
            metrics=self.metrics,
            session_logger=self.session_logger,
        )

        with session_context(self.session_id):
            started = time.perf_counter()
            results = await executor.run(
                prompt, self.clients, self.config, session_id=self.session_id
            )
            duration_ms = int((time.perf_counter() - started) * 1000)

            summary = None
            summary_duration_ms = None
            if summarize:
                summarizer = FallbackSummarizer(
                    self.clients,
                    controller=self.controller,
                    metrics=self.metrics,
                    session_logger=self.session_logger,
                )
                started = time.perf_counter()
                summary = await summarizer.summarize(
                    results,
                    self.summary_priority,
                    self.config,
                    question=prompt,
                    session_id=self.session_id,
                )
                if summary is not None:
                    summary_duration_ms = int((time.perf_counter() - started) * 1000)

        return RunReport(
            prompt=prompt,
            results=results,
            summary=summary.content if summary else None,
            summary_provider=summary.provider if summary else None,
            duration_ms=duration_ms,
            summary_duration_ms=summary_duration_ms,
        )

    async def test_connections(self) -> Dict[Provider, Any]:
        """
        Send one short prompt to every provider with retries disabled.

        Returns:
            Provider -> QueryOutcome, in enable order
        """
        self._require(OperatingMode.PARALLEL, "test_connections")
        probe = ClientConfiguration(
            timeout=self.config.timeout,
            max_retries=0,
            retry_strategy=self.config.retry_strategy,
            temperature=self.config.temperature,
            max_tokens=min(self.config.max_tokens, 32),
        )
        executor = ParallelQueryExecutor(
            self.clients,
            controller=self.controller,
            metrics=self.metrics,
            session_logger=self.session_logger,
        )
        with session_context(self.session_id):
            try:
                results = await executor.run(
                    "Reply with OK.", self.clients, probe, session_id=self.session_id
                )
            except AllProvidersFailedError as exc:
                results = exc.results
        return dict(results)

    # ------------------------------------------------------------------
    # Conversation mode
    # ------------------------------------------------------------------

    def start_conversation(
        self,
        provider: Provider,
        *,
        system_prompt: Optional[str] = None,
    ) -> ConversationSession:
        """
        Start a conversation with one provider.

        Raises:
            ValueError: If called in parallel mode or the provider has no client
        """
        self._require(OperatingMode.CONVERSATION, "start_conversation")
        return ConversationSession(
            provider,
            self._client_for(provider),
            self.config,
            system_prompt=system_prompt,
            **self._session_bindings(),
        )

    def resume_conversation(self, path: Union[str, Path]) -> ConversationSession:
        """
        Restore a saved conversation.

        Raises:
            PersistenceError: If the file cannot be read or is malformed
            ValueError: If called in parallel mode or the provider has no client
        """
        self._require(OperatingMode.CONVERSATION, "resume_conversation")
        document = load_session_document(path)
        try:
            client = self._client_for(document.provider)
        except ValueError as exc:
            raise PersistenceError(str(exc), path=str(path)) from exc
        return ConversationSession.restore(
            document, client, self.config, **self._session_bindings()
        )

    def _client_for(self, provider: Provider) -> ProviderClient:
        client = self.clients.get(provider)
        if client is None:
            raise ValueError(f"No client configured for {provider.display_name}")
        return client

    def _session_bindings(self) -> Dict[str, Any]:
        return {
            "controller": self.controller,
            "metrics": self.metrics,
            "session_logger": self.session_logger,
            "log_session_id": self.session_id,
        }

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    def close(self) -> Dict[str, Any]:
        """End the logging session and return its summary record."""
        if self._closed:
            raise RuntimeError("Orchestrator is already closed")
        self._closed = True
        return self.session_logger.end(self.session_id)

    def __enter__(self) -> "Orchestrator":
        return self

    def __exit__(self, *exc_info: Any) -> None:
        if not self._closed:
            self.close()
