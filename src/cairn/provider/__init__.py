"""cairn.provider — Provider interface, local provider, registry."""

from cairn.provider.base import Provider
from cairn.provider.local import LocalProvider
from cairn.provider.registry import (
    register_provider, get_provider, list_providers, reset_registry,
)

__all__ = [
    "Provider",
    "LocalProvider",
    "register_provider",
    "get_provider",
    "list_providers",
    "reset_registry",
]
