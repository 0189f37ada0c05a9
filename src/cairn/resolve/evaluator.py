"""
cairn.resolve.evaluator — Expression evaluation.

Walks a property tree and replaces every intrinsic with its concrete
value. Resource references read from ``ctx.resources``, which maps
logical name → {"Ref": provider_id, <attribute>: value, ...}.

In dry-run mode (``ctx.dry_run``) references to resources that have
not been created yet evaluate to a placeholder string. The pre-flight
pass uses this to surface every parameter, mapping, condition and
import error before any provider operation is issued.
"""

from __future__ import annotations

import re
from dataclasses import dataclass, field
from typing import Any, Callable

from cairn.errors import (
    MappingLookupError,
    MissingDependencyError,
    ParseError,
)
from cairn.resolve.params import MappingTable
from cairn.template.intrinsics import (
    And,
    ConditionRef,
    Equals,
    FindInMap,
    GetAtt,
    If,
    ImportValue,
    Join,
    Not,
    Or,
    Ref,
    Select,
    Sub,
    SUB_PATTERN,
)


class _NoValue:
    def __repr__(self) -> str:
        return "AWS::NoValue"


NO_VALUE = _NoValue()


@dataclass
class ResolutionContext:
    """Everything an expression can read during one apply."""
    stack_name: str
    region: str = "us-east-1"
    parameters: dict[str, Any] = field(default_factory=dict)
    mappings: dict[str, MappingTable] = field(default_factory=dict)
    condition_exprs: dict[str, Any] = field(default_factory=dict)
    conditions: dict[str, bool] = field(default_factory=dict)
    declared: set[str] = field(default_factory=set)
    active: set[str] = field(default_factory=set)
    resources: dict[str, dict[str, Any]] = field(default_factory=dict)
    imports: dict[str, Any] = field(default_factory=dict)
    import_resolver: Callable[[str], Any] | None = None
    dry_run: bool = False

    def import_value(self, name: str) -> Any:
        if name not in self.imports:
            if self.import_resolver is None:
                raise MissingDependencyError(f"No export named '{name}' is available")
            self.imports[name] = self.import_resolver(name)
        return self.imports[name]


def evaluate_conditions(ctx: ResolutionContext) -> dict[str, bool]:
    """Evaluate every condition once; results are cached on ctx."""
    for name in ctx.condition_exprs:
        _condition(name, ctx, [])
    return dict(ctx.conditions)


def _condition(name: str, ctx: ResolutionContext, chain: list[str]) -> bool:
    if name in ctx.conditions:
        return ctx.conditions[name]
    if name not in ctx.condition_exprs:
        raise ParseError(f"Unknown condition '{name}'", node=name)
    if name in chain:
        raise ParseError(
            "Circular condition: " + " -> ".join(chain + [name]), node=name,
        )
    value = _truth(ctx.condition_exprs[name], ctx, chain + [name], where=name)
    ctx.conditions[name] = value
    return value


def _truth(expr: Any, ctx: ResolutionContext, chain: list[str], where: str) -> bool:
    if isinstance(expr, ConditionRef):
        return _condition(expr.name, ctx, chain)
    if isinstance(expr, Equals):
        left = evaluate(expr.left, ctx, where)
        right = evaluate(expr.right, ctx, where)
        return _as_text(left) == _as_text(right)
    if isinstance(expr, Not):
        return not _truth(expr.operand, ctx, chain, where)
    if isinstance(expr, And):
        return all(_truth(o, ctx, chain, where) for o in expr.operands)
    if isinstance(expr, Or):
        return any(_truth(o, ctx, chain, where) for o in expr.operands)
    if isinstance(expr, bool):
        return expr
    if isinstance(expr, str) and expr.lower() in ("true", "false"):
        return expr.lower() == "true"
    raise ParseError(f"Not a condition expression: {expr!r}", node=where)


def evaluate(value: Any, ctx: ResolutionContext, where: str = "") -> Any:
    """Resolve a value tree to concrete values."""
    if isinstance(value, dict):
        return _resolve_dict(value, ctx, where)
    if isinstance(value, list):
        return _resolve_list(value, ctx, where)
    if isinstance(value, Ref):
        return _ref(value.target, ctx, where)
    if isinstance(value, GetAtt):
        return _get_att(value.resource, value.attribute, ctx, where)
    if isinstance(value, ImportValue):
        name = evaluate(value.name, ctx, where)
        if not isinstance(name, str):
            raise ParseError(f"Fn::ImportValue name must be a string, got {name!r}", node=where)
        return ctx.import_value(name)
    if isinstance(value, FindInMap):
        return _find_in_map(value, ctx, where)
    if isinstance(value, Sub):
        return _sub(value, ctx, where)
    if isinstance(value, Join):
        items = evaluate(value.values, ctx, where)
        if not isinstance(items, list):
            raise ParseError(f"Fn::Join expects a list, got {items!r}", node=where)
        return value.delimiter.join(_as_text(i) for i in items)
    if isinstance(value, Select):
        return _select(value, ctx, where)
    if isinstance(value, If):
        branch = value.when_true if _condition(value.condition, ctx, []) else value.when_false
        return evaluate(branch, ctx, where)
    if isinstance(value, (Equals, Not, And, Or, ConditionRef)):
        return _truth(value, ctx, [], where)
    return value


def _resolve_dict(data: dict, ctx: ResolutionContext, where: str) -> dict:
    result = {}
    for key, value in data.items():
        resolved = evaluate(value, ctx, where)
        if resolved is not NO_VALUE:
            result[key] = resolved
    return result


def _resolve_list(data: list, ctx: ResolutionContext, where: str) -> list:
    result = []
    for item in data:
        resolved = evaluate(item, ctx, where)
        if resolved is not NO_VALUE:
            result.append(resolved)
    return result


def _ref(target: str, ctx: ResolutionContext, where: str) -> Any:
    if target == "AWS::StackName":
        return ctx.stack_name
    if target == "AWS::Region":
        return ctx.region
    if target == "AWS::NoValue":
        return NO_VALUE
    if target in ctx.parameters:
        return ctx.parameters[target]
    return _resource_attr(target, "Ref", ctx, where)


def _get_att(resource: str, attribute: str, ctx: ResolutionContext, where: str) -> Any:
    return _resource_attr(resource, attribute, ctx, where)


def _resource_attr(name: str, attribute: str, ctx: ResolutionContext, where: str) -> Any:
    if name not in ctx.declared:
        raise ParseError(f"Unresolved reference '{name}'", node=where)
    if name not in ctx.active:
        raise MissingDependencyError(
            f"References '{name}', which is excluded by its condition", node=where,
        )
    attrs = ctx.resources.get(name)
    if attrs is None:
        if ctx.dry_run:
            return f"<{name}>" if attribute == "Ref" else f"<{name}.{attribute}>"
        raise MissingDependencyError(f"Resource '{name}' has not been created", node=where)
    if attribute not in attrs:
        if ctx.dry_run:
            return f"<{name}.{attribute}>"
        raise ParseError(
            f"Resource '{name}' has no attribute '{attribute}'. "
            f"Available: {sorted(attrs)}",
            node=where,
        )
    return attrs[attribute]


def _find_in_map(expr: FindInMap, ctx: ResolutionContext, where: str) -> Any:
    map_name = evaluate(expr.map_name, ctx, where)
    top_key = evaluate(expr.top_key, ctx, where)
    second_key = evaluate(expr.second_key, ctx, where)
    if map_name not in ctx.mappings:
        raise MappingLookupError(f"Unknown mapping '{map_name}'", node=where)
    return ctx.mappings[map_name].lookup(top_key, second_key)


def _sub(expr: Sub, ctx: ResolutionContext, where: str) -> str:
    variables = {k: evaluate(v, ctx, where) for k, v in expr.variables.items()}

    def replacer(match: re.Match) -> str:
        if match.group(1):
            return "${" + match.group(2) + "}"
        token = match.group(2)
        if token in variables:
            return _as_text(variables[token])
        if token.startswith("AWS::") or "." not in token:
            return _as_text(_ref(token, ctx, where))
        name, attr = token.split(".", 1)
        return _as_text(_get_att(name, attr, ctx, where))

    return SUB_PATTERN.sub(replacer, expr.template)


def _select(expr: Select, ctx: ResolutionContext, where: str) -> Any:
    index = evaluate(expr.index, ctx, where)
    items = evaluate(expr.values, ctx, where)
    if isinstance(items, str):
        items = [part.strip() for part in items.split(",")]
    if not isinstance(items, list):
        raise ParseError(f"Fn::Select expects a list, got {items!r}", node=where)
    try:
        position = int(index)
    except (TypeError, ValueError):
        raise ParseError(f"Fn::Select index must be an integer, got {index!r}",
                         node=where) from None
    if not 0 <= position < len(items):
        raise ParseError(
            f"Fn::Select index {index!r} out of range for {len(items)} item(s)", node=where,
        )
    return items[position]


def _as_text(value: Any) -> str:
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, list):
        return ",".join(_as_text(v) for v in value)
    return str(value)
