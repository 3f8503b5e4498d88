"""
Root pytest configuration and shared fixtures.

Provides scripted provider clients, a non-sleeping sleep recorder and a
clean client registry for every test.
"""

from __future__ import annotations

from typing import Any, List, Sequence, Union

import pytest

from chatdelta.core.providers import Provider, ProviderReply, reset_registry
from chatdelta.core.resilience import ClientConfiguration, RetryController, RetryStrategy

Step = Union[str, ProviderReply, BaseException]


class ScriptedClient:
    """Async client that plays back a script of replies and errors.

    Each call consumes the next step; the last step repeats once the
    script is exhausted. Exceptions in the script are raised.
    """

    def __init__(self, provider: Provider, steps: Sequence[Step], model: str = "test-model"):
        self.provider = provider
        self.model = model
        self.steps = list(steps)
        self.prompts: List[str] = []

    @property
    def calls(self) -> int:
        return len(self.prompts)

    def _next(self) -> Step:
        index = min(len(self.prompts) - 1, len(self.steps) - 1)
        return self.steps[index]

    async def query(self, prompt: str, config: ClientConfiguration) -> Any:
        self.prompts.append(prompt)
        step = self._next()
        if isinstance(step, BaseException):
            raise step
        return step


class SyncScriptedClient(ScriptedClient):
    """Same as ScriptedClient but with a blocking ``query``."""

    def query(self, prompt: str, config: ClientConfiguration) -> Any:  # type: ignore[override]
        self.prompts.append(prompt)
        step = self._next()
        if isinstance(step, BaseException):
            raise step
        return step


class RecordingSleep:
    """Awaitable replacement for asyncio.sleep that only records delays."""

    def __init__(self) -> None:
        self.delays: List[float] = []

    async def __call__(self, delay: float) -> None:
        self.delays.append(delay)


@pytest.fixture(autouse=True)
def clean_registry():
    """Start and finish every test with an empty client registry."""
    reset_registry()
    yield
    reset_registry()


@pytest.fixture
def recording_sleep() -> RecordingSleep:
    return RecordingSleep()


@pytest.fixture
def controller(recording_sleep: RecordingSleep) -> RetryController:
    return RetryController(sleep=recording_sleep)


@pytest.fixture
def config() -> ClientConfiguration:
    """Two retries with 100ms exponential backoff."""
    return ClientConfiguration(
        timeout=5.0,
        max_retries=2,
        retry_strategy=RetryStrategy.exponential(0.1),
    )


@pytest.fixture
def make_client():
    """Factory fixture: make_client(Provider.GPT, "hello", TimeoutError(), ...)."""

    def _make(provider: Provider, *steps: Step, sync: bool = False) -> ScriptedClient:
        cls = SyncScriptedClient if sync else ScriptedClient
        return cls(provider, steps or ("ok",))

    return _make
