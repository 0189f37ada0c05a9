"""
cairn.resolve.imports — Cross-stack reference resolver.

Resolves ``Fn::ImportValue`` names against the state store's export
table. Exports are only visible once the publishing graph's convergence
has been recorded; an import never waits for one to appear.
"""

from __future__ import annotations

import logging
from typing import Any

from cairn.errors import ExportNotFound, MissingDependencyError
from cairn.state.store import StateStore

logger = logging.getLogger(__name__)


class ImportResolver:
    """Import lookups for one apply of ``importer``."""

    def __init__(self, store: StateStore, importer: str):
        self.store = store
        self.importer = importer
        self.resolved: dict[str, Any] = {}

    def __call__(self, name: str) -> Any:
        return self.resolve(name)

    def resolve(self, name: str) -> Any:
        """Return an export's value.

        Raises:
            MissingDependencyError: export was never published (or its
                graph was deleted); apply the exporting graph first
            UnresolvedImportError: exporting graph is mid-apply
        """
        try:
            value = self.store.get_export(name, importer=self.importer)
        except ExportNotFound:
            raise MissingDependencyError(
                f"Import '{name}' does not exist. Apply the graph that exports it first.",
                node=self.importer,
            ) from None
        self.resolved[name] = value
        logger.debug("%s imports %s = %r", self.importer, name, value)
        return value

    @property
    def names(self) -> list[str]:
        return sorted(self.resolved)
