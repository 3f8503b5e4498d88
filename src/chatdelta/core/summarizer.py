"""
Fallback summarizer.

Asks one provider to synthesize the successful responses of a run into a
single answer. The summarizing provider is the first one in the priority
order that both succeeded in the run and has a client. If that provider's
synthesis call fails, no other provider is tried and the run simply has no
summary.
"""

from __future__ import annotations

import logging
from collections.abc import Mapping
from dataclasses import dataclass
from typing import Optional, Sequence

from chatdelta.core.metrics import MetricsCollector
from chatdelta.core.providers.base import Provider, ProviderClient
from chatdelta.core.resilience import (
    ClientConfiguration,
    RetryController,
    Success,
    call_client,
)
from chatdelta.core.session_log import SessionLogger

logger = logging.getLogger(__name__)

#: Default order in which providers are asked to summarize
DEFAULT_SUMMARY_PRIORITY = (Provider.GEMINI, Provider.GPT, Provider.CLAUDE)

#: A summary needs at least this many successful responses
MIN_RESPONSES_FOR_SUMMARY = 2

SYNTHESIS_INSTRUCTIONS = """Please synthesize these responses into a single, comprehensive answer that:
1. Captures the key points from all responses
2. Highlights where the responses agree and where they differ
3. Provides a clear, well-structured response

Summary:"""


def build_synthesis_prompt(
    responses: Sequence[Success], question: Optional[str] = None
) -> str:
    """Concatenate successful responses into a synthesis prompt."""
    response_text = "\n\n---\n\n".join(
        f"Response from {r.provider.display_name}:\n{r.content}" for r in responses
    )
    header = "You are synthesizing multiple AI responses to the same question."
    if question:
        header += f"\n\nOriginal question: {question}"
    return f"{header}\n\n{response_text}\n\n{SYNTHESIS_INSTRUCTIONS}"


@dataclass(frozen=True)
class Summary:
    """Synthesized text and the provider that produced it."""

    content: str
    provider: Provider
    latency: float

    @property
    def latency_ms(self) -> int:
        return int(round(self.latency * 1000))


class FallbackSummarizer:
    """
    Picks a summarizing provider from a priority order.

    Args:
        clients: Provider clients available for the synthesis call
        controller: Retry controller wrapping the synthesis call
        metrics: Receives the synthesis call's terminal outcome
        session_logger: Receives the synthesis call's attempt records
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

    def select_provider(
        self,
        results: Mapping[Provider, object],
        priority_order: Sequence[Provider],
    ) -> Optional[Provider]:
        """Return the first provider in priority order that succeeded and has a client."""
        for provider in priority_order:
            outcome = results.get(provider)
            if isinstance(outcome, Success) and provider in self.clients:
                return provider
        return None

    async def summarize(
        self,
        results: Mapping[Provider, object],
        priority_order: Sequence[Provider],
        config: ClientConfiguration,
        *,
        question: Optional[str] = None,
        session_id: Optional[str] = None,
    ) -> Optional[Summary]:
        """
        Synthesize the successful responses in ``results``.

        Returns:
            The summary, or None when fewer than two providers succeeded,
            no successful provider can summarize, or the synthesis call failed
        """
        successes = [o for o in results.values() if isinstance(o, Success)]
        if len(successes) < MIN_RESPONSES_FOR_SUMMARY:
            logger.debug(
                "Skipping summary: %d successful response(s)", len(successes)
            )
            return None

        provider = self.select_provider(results, priority_order)
        if provider is None:
            logger.debug("Skipping summary: no successful provider in priority order")
            return None

        client = self.clients[provider]
        prompt = build_synthesis_prompt(successes, question)
        logger.debug("Requesting summary from %s", provider.display_name)

        outcome = await self.controller.execute(
            provider,
            lambda: call_client(client, prompt, config),
            config,
            on_attempt=self._observer(session_id),
        )
        if self.metrics is not None:
            self.metrics.record(provider, outcome)

        if not isinstance(outcome, Success):
            logger.warning(
                "Summary from %s unavailable (%s)",
                provider.display_name,
                outcome.error_kind.value,
            )
            return None

        return Summary(content=outcome.content, provider=provider, latency=outcome.latency)

    def _observer(self, session_id: Optional[str]):
        if self.session_logger is None or session_id is None:
            return None
        session_logger = self.session_logger
        return lambda p, n, o: session_logger.log(session_id, p, n, o)
