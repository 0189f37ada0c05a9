"""
cairn.errors — Error taxonomy.

Every error carries the offending logical node name (``node``) when
one exists, plus a human-readable reason.

    CairnError
    ├── ParseError
    │   └── CyclicDependencyError
    ├── MissingParameterError
    ├── ConstraintViolation
    ├── MappingLookupError          (also a builtin LookupError)
    ├── UnresolvedImportError
    │   └── MissingDependencyError
    ├── DependencyStillActiveError
    ├── GraphInUseError
    ├── ApplyInProgressError
    ├── ExportConflictError
    ├── ExportNotFound
    ├── ProviderOperationError
    │   └── OperationTimeoutError   (also a builtin TimeoutError)
    ├── ProviderNotFoundError
    ├── GraphNotFoundError
    ├── StateLockError
    └── ConfigError
"""

from __future__ import annotations


class CairnError(Exception):
    """Base error."""

    def __init__(self, message: str, node: str | None = None):
        self.message = message
        self.node = node
        super().__init__(self._format())

    def _format(self) -> str:
        if self.node:
            return f"{self.node}: {self.message}"
        return self.message


class ParseError(CairnError):
    """Template is malformed (unknown kind, bad reference, duplicate name)."""
    pass


class CyclicDependencyError(ParseError):
    """The dependency relation contains a cycle."""

    def __init__(self, cycle: list[str]):
        self.cycle = cycle
        super().__init__(
            "Circular dependency: " + " -> ".join(cycle),
            node=cycle[0] if cycle else None,
        )


class MissingParameterError(CairnError):
    """A required parameter has no value and no default."""
    pass


class ConstraintViolation(CairnError):
    """A parameter value breaks its declared constraint."""
    pass


class MappingLookupError(CairnError, LookupError):
    """Mapping table lookup with an absent key."""
    pass


class UnresolvedImportError(CairnError):
    """An imported export is not visible."""
    pass


class MissingDependencyError(UnresolvedImportError):
    """The import target (or a referenced node) does not exist."""
    pass


class DependencyStillActiveError(CairnError):
    """Something still references what is being removed."""
    pass


class GraphInUseError(CairnError):
    """Another graph still imports this graph's exports."""
    pass


class ApplyInProgressError(CairnError):
    """The graph is already being applied."""
    pass


class ExportConflictError(CairnError):
    """Export name already published by another graph."""
    pass


class ExportNotFound(CairnError, KeyError):
    """No export with that name."""

    def __str__(self) -> str:
        return self._format()


class ProviderOperationError(CairnError):
    """Provider reported a failed operation."""
    pass


class OperationTimeoutError(ProviderOperationError, TimeoutError):
    """Provider operation exceeded the per-node timeout."""
    pass


class ProviderNotFoundError(CairnError):
    """No provider registered under that name."""
    pass


class GraphNotFoundError(CairnError, KeyError):
    """No recorded graph with that name."""

    def __str__(self) -> str:
        return self._format()


class StateLockError(CairnError):
    """State directory is locked by another process for too long."""
    pass


class ConfigError(CairnError):
    """Invalid configuration file."""
    pass
