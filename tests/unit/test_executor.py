"""Tests for chatdelta.core.executor.

Tests cover:
- One outcome per enabled provider, in enable order
- Partial failure tolerance and total-failure error
- Metrics and session-log side effects
- Run deadline and caller cancellation
"""

from __future__ import annotations

import asyncio
import time

import pytest

from chatdelta.core.errors import (
    AllProvidersFailedError,
    ErrorKind,
    PermanentProviderError,
    TransientProviderError,
)
from chatdelta.core.executor import ParallelQueryExecutor, enable_order
from chatdelta.core.metrics import MetricsCollector
from chatdelta.core.providers import Provider
from chatdelta.core.resilience import ClientConfiguration, RetryStrategy
from chatdelta.core.session_log import MemorySink, SessionLogger


class SlowClient:
    """Client that sleeps for real before answering."""

    def __init__(self, provider, delay, answer="done"):
        self.provider = provider
        self.model = "slow"
        self.delay = delay
        self.answer = answer

    async def query(self, prompt, config):
        await asyncio.sleep(self.delay)
        return self.answer


class TestEnableOrder:
    def test_sorts_and_deduplicates(self):
        providers = [Provider.CLAUDE, Provider.GPT, Provider.CLAUDE]
        assert enable_order(providers) == [Provider.GPT, Provider.CLAUDE]


class TestParallelQueryExecutor:
    """Fan-out and collection."""

    @pytest.mark.asyncio
    async def test_every_provider_appears_once_in_enable_order(self, controller, config, make_client):
        clients = {
            Provider.CLAUDE: make_client(Provider.CLAUDE, "c"),
            Provider.GPT: make_client(Provider.GPT, "g"),
            Provider.GEMINI: make_client(Provider.GEMINI, PermanentProviderError("bad key")),
        }
        executor = ParallelQueryExecutor(clients, controller=controller)

        result = await executor.run("hi", {Provider.CLAUDE, Provider.GEMINI, Provider.GPT}, config)

        assert list(result) == [Provider.GPT, Provider.GEMINI, Provider.CLAUDE]
        assert len(result) == 3
        assert result[Provider.GPT].content == "g"
        assert result[Provider.GEMINI].error_kind is ErrorKind.INVALID_CREDENTIAL
        assert [s.provider for s in result.successes()] == [Provider.GPT, Provider.CLAUDE]

    @pytest.mark.asyncio
    async def test_order_ignores_completion_order(self, controller):
        config = ClientConfiguration(timeout=5.0)
        clients = {
            Provider.GPT: SlowClient(Provider.GPT, 0.05),
            Provider.CLAUDE: SlowClient(Provider.CLAUDE, 0.0),
        }

        result = await ParallelQueryExecutor(clients, controller=controller).run(
            "hi", clients, config
        )

        assert list(result) == [Provider.GPT, Provider.CLAUDE]

    @pytest.mark.asyncio
    async def test_providers_run_concurrently(self, controller):
        config = ClientConfiguration(timeout=5.0)
        clients = {p: SlowClient(p, 0.2) for p in Provider}
        loop = asyncio.get_running_loop()

        started = loop.time()
        await ParallelQueryExecutor(clients, controller=controller).run("hi", clients, config)
        elapsed = loop.time() - started

        assert elapsed < 0.5, f"Expected concurrent execution, took {elapsed:.2f}s"

    @pytest.mark.asyncio
    async def test_all_failed_raises_with_full_result(self, controller, config, make_client):
        clients = {
            Provider.GPT: make_client(Provider.GPT, PermanentProviderError("bad key")),
            Provider.CLAUDE: make_client(Provider.CLAUDE, TransientProviderError("down")),
        }

        with pytest.raises(AllProvidersFailedError) as exc_info:
            await ParallelQueryExecutor(clients, controller=controller).run("hi", clients, config)

        assert len(exc_info.value.results) == 2
        assert exc_info.value.results[Provider.CLAUDE].attempts == 3

    @pytest.mark.asyncio
    async def test_one_provider_retries_do_not_affect_another(
        self, controller, config, make_client
    ):
        flaky = make_client(Provider.GEMINI, TransientProviderError("x"), TransientProviderError("y"), "ok")
        steady = make_client(Provider.GPT, "fine")
        clients = {Provider.GEMINI: flaky, Provider.GPT: steady}
        metrics = MetricsCollector()

        result = await ParallelQueryExecutor(clients, controller=controller, metrics=metrics).run(
            "hi", clients, config
        )

        assert result[Provider.GEMINI].attempts == 3
        assert result[Provider.GPT].attempts == 1
        assert steady.calls == 1
        assert metrics.get(Provider.GPT).attempts == 1
        assert metrics.get(Provider.GEMINI).attempts == 3
        assert metrics.get(Provider.GEMINI).failures == 2

    @pytest.mark.asyncio
    async def test_missing_client_is_unavailable(self, controller, config, make_client):
        clients = {Provider.GPT: make_client(Provider.GPT, "ok")}

        result = await ParallelQueryExecutor(clients, controller=controller).run(
            "hi", [Provider.GPT, Provider.CLAUDE], config
        )

        assert result[Provider.CLAUDE].error_kind is ErrorKind.UNAVAILABLE

    @pytest.mark.asyncio
    async def test_empty_provider_set_rejected(self, controller, config):
        with pytest.raises(ValueError):
            await ParallelQueryExecutor({}, controller=controller).run("hi", [], config)

    @pytest.mark.asyncio
    async def test_metrics_recorded_once_per_provider(self, controller, config, make_client):
        clients = {p: make_client(p, "ok") for p in Provider}
        metrics = MetricsCollector()

        await ParallelQueryExecutor(clients, controller=controller, metrics=metrics).run(
            "hi", clients, config
        )

        summary = metrics.summary()
        assert set(summary) == {"gpt", "gemini", "claude"}
        assert all(s.attempts == 1 and s.successes == 1 for s in summary.values())

    @pytest.mark.asyncio
    async def test_attempts_logged_per_session(self, controller, config, make_client):
        clients = {
            Provider.GPT: make_client(Provider.GPT, TransientProviderError("x"), "ok"),
            Provider.CLAUDE: make_client(Provider.CLAUDE, "ok"),
        }
        sink = MemorySink()
        session_logger = SessionLogger([sink])
        session_id = session_logger.begin()

        await ParallelQueryExecutor(
            clients, controller=controller, session_logger=session_logger
        ).run("hi", clients, config, session_id=session_id)
        session_logger.flush()

        gpt_records = [r for r in sink.records if r["provider"] == "gpt"]
        assert [r["attempt_number"] for r in gpt_records] == [1, 2]
        assert [r["outcome"] for r in gpt_records] == ["failure", "success"]
        assert len(sink.records) == 3


class TestDeadlineAndCancellation:
    """Global bound and interrupts."""

    @pytest.mark.asyncio
    async def test_deadline_abandons_stuck_units(self, controller, monkeypatch):
        monkeypatch.setattr("chatdelta.core.executor.DEADLINE_GRACE", 0.0)
        config = ClientConfiguration(timeout=0.1, max_retries=0, retry_strategy=RetryStrategy.fixed(0))

        class Stubborn:
            provider = Provider.CLAUDE
            model = "m"

            async def query(self, prompt, config):
                # Swallow the per-attempt timeout once to outlive the deadline.
                try:
                    await asyncio.sleep(10)
                except asyncio.CancelledError:
                    await asyncio.sleep(0.5)
                    raise

        clients = {Provider.GPT: SlowClient(Provider.GPT, 0.0), Provider.CLAUDE: Stubborn()}
        metrics = MetricsCollector()

        result = await ParallelQueryExecutor(clients, controller=controller, metrics=metrics).run(
            "hi", clients, config
        )

        assert result[Provider.CLAUDE].error_kind is ErrorKind.CANCELLED
        assert metrics.get(Provider.CLAUDE).attempts == 0
        assert metrics.is_consistent()

    @pytest.mark.asyncio
    async def test_caller_cancellation_cancels_units(self, controller):
        config = ClientConfiguration(timeout=30.0)
        clients = {p: SlowClient(p, 10) for p in Provider}
        metrics = MetricsCollector()
        executor = ParallelQueryExecutor(clients, controller=controller, metrics=metrics)

        task = asyncio.create_task(executor.run("hi", clients, config))
        await asyncio.sleep(0.05)
        task.cancel()

        with pytest.raises(asyncio.CancelledError):
            await task
        assert metrics.summary() == {}
        assert metrics.is_consistent()


class BlockingSink:
    """Sink whose writes block the calling thread."""

    def __init__(self, delay):
        self.delay = delay
        self.records = []

    def write(self, record):
        time.sleep(self.delay)
        self.records.append(record)


class TestSessionLogIsolation:
    """Session-log I/O never stalls sibling provider units."""

    @pytest.mark.asyncio
    async def test_slow_sink_does_not_delay_siblings(self, controller, make_client):
        config = ClientConfiguration(timeout=0.5)
        clients = {
            Provider.GPT: make_client(Provider.GPT, PermanentProviderError("denied")),
            Provider.CLAUDE: SlowClient(Provider.CLAUDE, 0.2),
        }
        session_logger = SessionLogger([BlockingSink(1.0)])
        session_id = session_logger.begin()

        result = await ParallelQueryExecutor(
            clients, controller=controller, session_logger=session_logger
        ).run("hi", clients, config, session_id=session_id)

        claude = result[Provider.CLAUDE]
        assert claude.success
        assert claude.latency < 0.5
        assert result[Provider.GPT].error_kind is ErrorKind.INVALID_CREDENTIAL
