"""
Offline echo client.

Deterministic stand-in for a real provider. Used by ``--offline`` runs and
by the test-suite; it never touches the network.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import TYPE_CHECKING

from chatdelta.core.providers.base import Provider, ProviderReply, TokenUsage

if TYPE_CHECKING:
    from chatdelta.core.resilience import ClientConfiguration

MAX_ECHO_CHARS = 200


@dataclass(frozen=True)
class EchoClient:
    """Echoes the tail of the prompt, tagged with provider and model."""

    provider: Provider
    model: str

    async def query(self, prompt: str, config: "ClientConfiguration") -> ProviderReply:
        tail = prompt.strip().splitlines()[-1] if prompt.strip() else ""
        content = f"[{self.provider.value}/{self.model}] {tail[:MAX_ECHO_CHARS]}"
        input_tokens = len(prompt.split())
        output_tokens = min(len(content.split()), config.max_tokens)
        return ProviderReply(
            content=content,
            token_usage=TokenUsage(input_tokens=input_tokens, output_tokens=output_tokens),
        )


def echo_factory(provider: Provider):
    """Build a registry-compatible factory producing EchoClients for a provider."""

    def _factory(*, api_key: str, model: str, config: "ClientConfiguration") -> EchoClient:
        return EchoClient(provider=provider, model=model)

    return _factory
