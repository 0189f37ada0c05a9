"""cairn.resolve — Parameters, mappings, conditions and imports."""

from cairn.resolve.params import resolve_parameters, MappingTable
from cairn.resolve.evaluator import (
    ResolutionContext, evaluate, evaluate_conditions, NO_VALUE,
)
from cairn.resolve.imports import ImportResolver

__all__ = [
    "resolve_parameters",
    "MappingTable",
    "ResolutionContext",
    "evaluate",
    "evaluate_conditions",
    "NO_VALUE",
    "ImportResolver",
]
