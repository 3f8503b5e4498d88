"""
Provider client registry.

Holds one client factory per Provider tag and exposes ``create_client`` as the
single dispatch point. Factories can be registered directly or discovered
lazily from the ``chatdelta.clients`` entry-point group, where each entry
point is named after a provider tag and resolves to a factory callable.

Example:
    >>> from chatdelta.core.providers import Provider, register_client_factory
    >>> register_client_factory(Provider.GPT, make_openai_client)
    >>> client = create_client(Provider.GPT, api_key, "gpt-4o", config)
"""

from __future__ import annotations

import logging
import threading
from importlib.metadata import entry_points
from typing import TYPE_CHECKING, Callable, Dict, List, Optional

from chatdelta.core.errors import ProviderUnavailableError
from chatdelta.core.providers.base import Provider, ProviderClient

if TYPE_CHECKING:
    from chatdelta.core.resilience import ClientConfiguration

logger = logging.getLogger(__name__)

ENTRY_POINT_GROUP = "chatdelta.clients"

ClientFactory = Callable[..., ProviderClient]
"""
Factory signature: ``factory(*, api_key, model, config) -> ProviderClient``.
"""

_factories: Dict[Provider, ClientFactory] = {}
_entry_points_loaded = False
_lock = threading.Lock()


def register_client_factory(
    provider: Provider,
    factory: ClientFactory,
    *,
    replace: bool = False,
) -> None:
    """
    Register the client factory for a provider.

    Raises:
        ValueError: If a factory is already registered and replace is False
    """
    with _lock:
        if provider in _factories and not replace:
            raise ValueError(f"Client factory for '{provider.value}' already registered")
        _factories[provider] = factory
    logger.debug("Registered client factory for %s", provider.value)


def _load_entry_points() -> None:
    global _entry_points_loaded
    if _entry_points_loaded:
        return
    _entry_points_loaded = True

    for ep in entry_points(group=ENTRY_POINT_GROUP):
        try:
            provider = Provider.parse(ep.name)
        except ValueError:
            logger.warning("Ignoring client entry point for unknown provider '%s'", ep.name)
            continue
        if provider in _factories:
            continue
        try:
            _factories[provider] = ep.load()
        except Exception as exc:  # noqa: BLE001 - a broken plugin must not break the CLI
            logger.warning("Failed to load client entry point '%s': %s", ep.name, exc)


def get_client_factory(provider: Provider) -> Optional[ClientFactory]:
    """Return the registered factory for a provider, loading plugins on first use."""
    with _lock:
        if provider not in _factories:
            _load_entry_points()
        return _factories.get(provider)


def registered_providers() -> List[Provider]:
    """Return providers that currently have a factory, in enable order."""
    with _lock:
        _load_entry_points()
        return [p for p in Provider if p in _factories]


def create_client(
    provider: Provider,
    api_key: str,
    model: str,
    config: "ClientConfiguration",
    *,
    factory: Optional[ClientFactory] = None,
) -> ProviderClient:
    """
    Instantiate the client for a provider.

    Args:
        provider: Provider tag
        api_key: Credential passed through to the factory
        model: Model identifier for this provider
        config: Shared client configuration
        factory: Explicit factory overriding the registry (e.g. offline mode)

    Raises:
        ProviderUnavailableError: If no factory is registered for the provider
    """
    factory = factory or get_client_factory(provider)
    if factory is None:
        raise ProviderUnavailableError(
            f"No client registered for {provider.display_name}",
            provider=provider.value,
        )
    return factory(api_key=api_key, model=model, config=config)


def reset_registry() -> None:
    """Clear registered factories. Intended for tests."""
    global _entry_points_loaded
    with _lock:
        _factories.clear()
        _entry_points_loaded = False
