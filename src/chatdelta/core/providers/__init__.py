"""
Provider abstractions for chatdelta.

Providers are a closed set of tags with attached profiles; concrete clients
are produced by factories registered in the client registry (directly or via
the ``chatdelta.clients`` entry-point group).

Example usage:
    from chatdelta.core.providers import (
        Provider,
        create_client,
        register_client_factory,
    )

    register_client_factory(Provider.CLAUDE, make_claude_client)
    client = create_client(Provider.CLAUDE, api_key, "claude-3-5-sonnet-20241022", config)
"""

from chatdelta.core.providers.base import (
    PROVIDER_PROFILES,
    ClientResponse,
    ModelListing,
    Provider,
    ProviderClient,
    ProviderProfile,
    ProviderReply,
    TokenUsage,
    list_known_models,
)
from chatdelta.core.providers.echo import EchoClient, echo_factory
from chatdelta.core.providers.registry import (
    ENTRY_POINT_GROUP,
    ClientFactory,
    create_client,
    get_client_factory,
    register_client_factory,
    registered_providers,
    reset_registry,
)

__all__ = [
    # Types
    "Provider",
    "ProviderProfile",
    "PROVIDER_PROFILES",
    "ProviderClient",
    "ProviderReply",
    "ClientResponse",
    "TokenUsage",
    "ModelListing",
    "list_known_models",
    # Registry
    "ENTRY_POINT_GROUP",
    "ClientFactory",
    "create_client",
    "get_client_factory",
    "register_client_factory",
    "registered_providers",
    "reset_registry",
    # Offline
    "EchoClient",
    "echo_factory",
]
