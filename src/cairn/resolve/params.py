"""
cairn.resolve.params — Parameter and mapping resolution.

Parameter values come from caller overrides first, then declared
defaults. Values are normalized to the declared type:

    String, AWS::*          → str
    Number                  → int or float
    CommaDelimitedList      → list[str]

then checked against AllowedValues / AllowedPattern.
"""

from __future__ import annotations

import logging
import re
from typing import Any

from cairn.errors import (
    ConstraintViolation,
    MappingLookupError,
    MissingParameterError,
    ParseError,
)
from cairn.template.graph import ParameterSpec

logger = logging.getLogger(__name__)


def resolve_parameters(
    parameters: dict[str, ParameterSpec],
    overrides: dict[str, Any] | None = None,
) -> dict[str, Any]:
    """Resolve every declared parameter to a concrete value.

    Raises:
        ParseError: override names an undeclared parameter
        MissingParameterError: no override and no default
        ConstraintViolation: value breaks its constraint
    """
    overrides = overrides or {}
    unknown = [k for k in overrides if k not in parameters]
    if unknown:
        raise ParseError(
            f"Unknown parameter(s): {', '.join(sorted(unknown))}. "
            f"Declared: {', '.join(parameters) or '(none)'}"
        )

    resolved: dict[str, Any] = {}
    for name, spec in parameters.items():
        if name in overrides:
            raw = overrides[name]
        elif spec.default is not None:
            raw = spec.default
        else:
            raise MissingParameterError(
                "Parameter has no value and no default", node=name,
            )
        value = _normalize(spec, raw)
        _check_constraints(spec, value)
        resolved[name] = value
        logger.debug("parameter %s = %r", name, value)
    return resolved


def _normalize(spec: ParameterSpec, raw: Any) -> Any:
    if spec.type == "Number":
        if isinstance(raw, bool):
            raise ConstraintViolation(f"Expected a number, got {raw!r}", node=spec.name)
        if isinstance(raw, (int, float)):
            return raw
        try:
            return int(str(raw))
        except ValueError:
            pass
        try:
            return float(str(raw))
        except ValueError:
            raise ConstraintViolation(
                f"Expected a number, got {raw!r}", node=spec.name,
            ) from None

    if spec.type == "CommaDelimitedList":
        if isinstance(raw, list):
            return [_to_str(v) for v in raw]
        return [part.strip() for part in _to_str(raw).split(",")]

    return _to_str(raw)


def _to_str(value: Any) -> str:
    if isinstance(value, bool):
        return "true" if value else "false"
    return str(value)


def _check_constraints(spec: ParameterSpec, value: Any) -> None:
    items = value if isinstance(value, list) else [value]

    if spec.allowed_values is not None:
        allowed = [_to_str(a) for a in spec.allowed_values]
        for item in items:
            if _to_str(item) not in allowed:
                raise ConstraintViolation(
                    f"Value {item!r} not in AllowedValues {allowed}", node=spec.name,
                )

    if spec.allowed_pattern:
        pattern = re.compile(spec.allowed_pattern)
        for item in items:
            if not pattern.fullmatch(_to_str(item)):
                raise ConstraintViolation(
                    f"Value {item!r} does not match AllowedPattern "
                    f"'{spec.allowed_pattern}'",
                    node=spec.name,
                )


class _MappingRow(dict):
    """Second-level mapping; absent keys fail loudly."""

    def __init__(self, table: str, top_key: str, data: dict[str, Any]):
        super().__init__(data)
        self.table = table
        self.top_key = top_key

    def __missing__(self, key: str) -> Any:
        raise MappingLookupError(
            f"Key '{key}' not found under '{self.top_key}'. "
            f"Available: {sorted(map(str, self))}",
            node=self.table,
        )


class MappingTable(dict):
    """Two-level lookup table (e.g. region → AMI).

    >>> t = MappingTable("RegionMap", {"us-east-1": {"AMI": "ami-1"}})
    >>> t["us-east-1"]["AMI"]
    'ami-1'
    """

    def __init__(self, name: str, data: dict[str, dict[str, Any]]):
        super().__init__({
            str(top): _MappingRow(name, str(top), {str(k): v for k, v in inner.items()})
            for top, inner in data.items()
        })
        self.name = name

    def __missing__(self, key: str) -> Any:
        raise MappingLookupError(
            f"Key '{key}' not found. Available: {sorted(map(str, self))}",
            node=self.name,
        )

    def lookup(self, top_key: Any, second_key: Any) -> Any:
        return self[str(top_key)][str(second_key)]
