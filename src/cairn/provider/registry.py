"""
cairn.provider.registry — Provider discovery.

Providers come from three sources:

1. Built-in providers (``local``)
2. entry_points in the ``cairn.providers`` group, so a separate
   package can ship a real cloud provider:

       [project.entry-points."cairn.providers"]
       aws = "cairn_aws:AwsProvider"

3. Runtime register (for testing)
"""

from __future__ import annotations

import logging
from importlib.metadata import entry_points
from typing import Any

from cairn.errors import ProviderNotFoundError
from cairn.provider.base import Provider
from cairn.provider.local import LocalProvider

logger = logging.getLogger(__name__)

_BUILTIN: dict[str, type[Provider]] = {"local": LocalProvider}

# Runtime registry
_registry: dict[str, type[Provider]] = dict(_BUILTIN)
_discovered = False


def _discover_providers() -> None:
    """Discover providers from entry_points (once)."""
    global _discovered
    if _discovered:
        return
    _discovered = True

    for ep in entry_points(group="cairn.providers"):
        if ep.name in _registry:
            continue
        try:
            _registry[ep.name] = ep.load()
        except Exception as e:
            logger.warning("could not load provider '%s' (%s): %s", ep.name, ep.value, e)


def register_provider(name: str, provider_cls: type[Provider]) -> None:
    """Register a provider class at runtime."""
    _registry[name] = provider_cls


def get_provider(name: str, **options: Any) -> Provider:
    """Instantiate a provider by name.

    Raises:
        ProviderNotFoundError: name is not registered
    """
    _discover_providers()
    provider_cls = _registry.get(name)
    if provider_cls is None:
        raise ProviderNotFoundError(
            f"Provider '{name}' not found. Available: {', '.join(list_providers())}"
        )
    return provider_cls(**options)


def list_providers() -> list[str]:
    _discover_providers()
    return sorted(_registry)


def reset_registry() -> None:
    """Reset to built-ins only. For testing."""
    global _discovered
    _registry.clear()
    _registry.update(_BUILTIN)
    _discovered = False
