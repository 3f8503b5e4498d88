"""
Base provider abstractions for chatdelta.

Providers are data, not subclasses: a closed ``Provider`` enum tags each
backend and ``PROVIDER_PROFILES`` holds the per-provider configuration
(display name, default model, API-key variable). The client capability is a
single-method protocol with a uniform error contract.

Design principles:
- Frozen dataclasses for immutability
- Enum-based provider identity for type-safe routing
- One dispatch function (``create_client``) instead of a class hierarchy
"""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import TYPE_CHECKING, Awaitable, Dict, Optional, Protocol, Sequence, Tuple, Union

if TYPE_CHECKING:
    from chatdelta.core.resilience import ClientConfiguration


class Provider(str, Enum):
    """
    Fixed set of supported AI text-completion backends.

    Declaration order is the enable order used for ExecutionResult.

    Values:
        GPT: OpenAI chat models (ChatGPT)
        GEMINI: Google Gemini models
        CLAUDE: Anthropic Claude models
    """

    GPT = "gpt"
    GEMINI = "gemini"
    CLAUDE = "claude"

    @property
    def profile(self) -> "ProviderProfile":
        return PROVIDER_PROFILES[self]

    @property
    def display_name(self) -> str:
        return PROVIDER_PROFILES[self].display_name

    @classmethod
    def parse(cls, value: Union[str, "Provider"]) -> "Provider":
        """
        Parse a provider tag, accepting a few common aliases.

        Raises:
            ValueError: If the value names no known provider
        """
        if isinstance(value, Provider):
            return value
        key = value.strip().lower()
        key = _ALIASES.get(key, key)
        try:
            return cls(key)
        except ValueError:
            valid = ", ".join(p.value for p in cls)
            raise ValueError(f"Unknown AI '{value}'. Valid options: {valid}") from None


_ALIASES = {
    "openai": "gpt",
    "chatgpt": "gpt",
    "anthropic": "claude",
    "google": "gemini",
}


@dataclass(frozen=True)
class ProviderProfile:
    """
    Static configuration attached to a Provider tag.

    Attributes:
        display_name: Human-friendly name used in output and logs
        api_key_env: Environment variable holding the API key
        default_model: Model used when no override is configured
        known_models: Models listed by ``chatdelta models``
    """

    display_name: str
    api_key_env: str
    default_model: str
    known_models: Tuple[str, ...] = ()


PROVIDER_PROFILES: Dict[Provider, ProviderProfile] = {
    Provider.GPT: ProviderProfile(
        display_name="ChatGPT",
        api_key_env="OPENAI_API_KEY",
        default_model="gpt-4o",
        known_models=("gpt-4o", "gpt-4o-mini", "gpt-4-turbo", "gpt-3.5-turbo"),
    ),
    Provider.GEMINI: ProviderProfile(
        display_name="Gemini",
        api_key_env="GEMINI_API_KEY",
        default_model="gemini-1.5-pro-latest",
        known_models=(
            "gemini-1.5-pro-latest",
            "gemini-1.5-flash-latest",
            "gemini-pro",
        ),
    ),
    Provider.CLAUDE: ProviderProfile(
        display_name="Claude",
        api_key_env="ANTHROPIC_API_KEY",
        default_model="claude-3-5-sonnet-20241022",
        known_models=(
            "claude-3-5-sonnet-20241022",
            "claude-3-haiku-20240307",
            "claude-3-opus-20240229",
        ),
    ),
}


@dataclass(frozen=True)
class TokenUsage:
    """
    Token accounting information reported by providers.

    Attributes:
        input_tokens: Tokens consumed by the prompt
        output_tokens: Tokens generated in the response
        total_tokens: Sum of all token counts
    """

    input_tokens: int = 0
    output_tokens: int = 0
    total_tokens: int = 0

    def __post_init__(self) -> None:
        if self.total_tokens == 0 and (self.input_tokens or self.output_tokens):
            object.__setattr__(
                self, "total_tokens", self.input_tokens + self.output_tokens
            )


@dataclass(frozen=True)
class ProviderReply:
    """
    Normalized client response.

    Clients may return plain text; ``ProviderReply.coerce`` wraps it so the
    rest of the core sees one shape.
    """

    content: str
    token_usage: Optional[TokenUsage] = None

    @classmethod
    def coerce(cls, value: Union[str, "ProviderReply"]) -> "ProviderReply":
        if isinstance(value, ProviderReply):
            return value
        if isinstance(value, str):
            return cls(content=value)
        raise TypeError(
            f"Provider client returned {type(value).__name__}, expected str or ProviderReply"
        )


ClientResponse = Union[str, ProviderReply]


class ProviderClient(Protocol):
    """
    Capability interface every provider client satisfies.

    ``query`` may be a coroutine function or a plain function; synchronous
    clients are run in a worker thread so they never block sibling units.
    Failures are raised as ``ProviderError`` subclasses (other exceptions are
    classified by message). Implementations must be safe to call
    concurrently and keep no mutable state shared between calls.
    """

    provider: Provider
    model: str

    def query(
        self, prompt: str, config: "ClientConfiguration"
    ) -> Union[ClientResponse, Awaitable[ClientResponse]]:
        ...


@dataclass(frozen=True)
class ModelListing:
    """Models known for one provider, as shown by the ``models`` command."""

    provider: Provider
    display_name: str
    default_model: str
    models: Sequence[str] = field(default_factory=tuple)


def list_known_models() -> list[ModelListing]:
    """Return the known models for every provider, in enable order."""
    return [
        ModelListing(
            provider=provider,
            display_name=profile.display_name,
            default_model=profile.default_model,
            models=profile.known_models,
        )
        for provider, profile in PROVIDER_PROFILES.items()
    ]
