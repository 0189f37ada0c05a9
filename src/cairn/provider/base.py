"""
cairn.provider.base — Provider interface.

The boundary to the cloud control plane. One call per primitive; every
failure is raised as ProviderOperationError. Retry policy, if any,
belongs to the provider implementation, not to the engine.
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from typing import Any

from cairn.template.graph import ResourceKind


class Provider(ABC):
    """Base class for all providers."""

    name: str = ""

    @abstractmethod
    def create_resource(self, kind: ResourceKind, properties: dict[str, Any]) -> str:
        """Create a resource and return its provider id."""

    @abstractmethod
    def update_resource(self, provider_id: str, properties: dict[str, Any]) -> None:
        """Update a resource in place."""

    @abstractmethod
    def delete_resource(self, provider_id: str) -> None:
        """Delete a resource."""

    @abstractmethod
    def describe_resource(self, provider_id: str) -> dict[str, Any]:
        """Return the resource's observed properties and attributes."""
