"""
cairn.template.intrinsics — Intrinsic function expressions.

Property values may contain references and functions, in long form:

    VpcId: {"Ref": "VPC"}
    RouteTableId: {"Fn::ImportValue": "Network-PrivateRouteTableId"}

or in YAML short-tag form:

    VpcId: !Ref VPC
    RouteTableId: !ImportValue Network-PrivateRouteTableId
    ImageId: !FindInMap [RegionMap, !Ref "AWS::Region", AMI]
    Name: !Sub "${AWS::StackName}-vpc"

parse_value() turns the raw document tree into plain values mixed with
expression objects. references() walks the result and yields every
reference it contains, which is how implicit dependencies are inferred.
"""

from __future__ import annotations

import re
from dataclasses import dataclass, field
from typing import Any, Iterator

import yaml

from cairn.errors import ParseError


PSEUDO_PARAMETERS = ("AWS::StackName", "AWS::Region", "AWS::NoValue")

# ${Name}, ${Name.Attr}, ${AWS::Region}; ${!Literal} is an escape
SUB_PATTERN = re.compile(r"\$\{(!?)([A-Za-z0-9_:.-]+)\}")


@dataclass(frozen=True)
class Ref:
    target: str


@dataclass(frozen=True)
class GetAtt:
    resource: str
    attribute: str


@dataclass(frozen=True)
class ImportValue:
    name: Any


@dataclass(frozen=True)
class FindInMap:
    map_name: Any
    top_key: Any
    second_key: Any


@dataclass
class Sub:
    template: str
    variables: dict[str, Any] = field(default_factory=dict)


@dataclass
class Join:
    delimiter: str
    values: Any


@dataclass
class Select:
    index: Any
    values: Any


@dataclass
class If:
    condition: str
    when_true: Any
    when_false: Any


@dataclass
class Equals:
    left: Any
    right: Any


@dataclass
class Not:
    operand: Any


@dataclass
class And:
    operands: list[Any]


@dataclass
class Or:
    operands: list[Any]


@dataclass(frozen=True)
class ConditionRef:
    name: str


Expr = (Ref, GetAtt, ImportValue, FindInMap, Sub, Join, Select, If,
        Equals, Not, And, Or, ConditionRef)


def is_expr(value: Any) -> bool:
    return isinstance(value, Expr)


# ─────────────────────────────────────────────
# YAML loader
# ─────────────────────────────────────────────
class TemplateLoader(yaml.SafeLoader):
    """SafeLoader with short-tag intrinsics and duplicate key detection."""
    pass


def _construct_mapping(loader: TemplateLoader, node: yaml.MappingNode,
                       deep: bool = False) -> dict:
    loader.flatten_mapping(node)
    result: dict = {}
    for key_node, value_node in node.value:
        key = loader.construct_object(key_node, deep=True)
        if key in result:
            line = key_node.start_mark.line + 1
            raise ParseError(f"Duplicate key '{key}' (line {line})", node=str(key))
        result[key] = loader.construct_object(value_node, deep=True)
    return result


def _construct_tag(loader: TemplateLoader, tag_suffix: str, node: yaml.Node) -> dict:
    if isinstance(node, yaml.ScalarNode):
        value: Any = loader.construct_scalar(node)
    elif isinstance(node, yaml.SequenceNode):
        value = loader.construct_sequence(node, deep=True)
    else:
        value = _construct_mapping(loader, node, deep=True)

    if tag_suffix == "Ref":
        return {"Ref": value}
    if tag_suffix == "Condition":
        return {"Condition": value}
    if tag_suffix == "GetAtt" and isinstance(value, str):
        return {"Fn::GetAtt": value.split(".", 1)}
    return {f"Fn::{tag_suffix}": value}


TemplateLoader.add_constructor(
    yaml.resolver.BaseResolver.DEFAULT_MAPPING_TAG, _construct_mapping,
)
TemplateLoader.add_multi_constructor("!", _construct_tag)


def load_yaml(stream: Any) -> Any:
    """Load a template document with intrinsic tag support."""
    return yaml.load(stream, Loader=TemplateLoader)


# ─────────────────────────────────────────────
# Parse raw tree → expressions
# ─────────────────────────────────────────────
def parse_value(raw: Any, where: str = "") -> Any:
    """Convert a raw document value into values + expression objects."""
    if isinstance(raw, dict):
        if len(raw) == 1:
            key = next(iter(raw))
            if key == "Ref" or key == "Condition" or (
                isinstance(key, str) and key.startswith("Fn::")
            ):
                return _parse_function(key, raw[key], where)
        return {k: parse_value(v, f"{where}.{k}" if where else str(k))
                for k, v in raw.items()}
    if isinstance(raw, list):
        return [parse_value(v, f"{where}[{i}]") for i, v in enumerate(raw)]
    return raw


def _parse_function(key: str, arg: Any, where: str) -> Any:
    if key == "Ref":
        if not isinstance(arg, str) or not arg:
            raise ParseError(f"Ref expects a name, got {arg!r}", node=where)
        return Ref(arg)

    if key == "Condition":
        if not isinstance(arg, str):
            raise ParseError(f"Condition expects a name, got {arg!r}", node=where)
        return ConditionRef(arg)

    if key == "Fn::GetAtt":
        if isinstance(arg, str):
            arg = arg.split(".", 1)
        if (not isinstance(arg, list) or len(arg) != 2
                or not all(isinstance(a, str) and a for a in arg)):
            raise ParseError(
                f"Fn::GetAtt expects [Resource, Attribute], got {arg!r}", node=where,
            )
        return GetAtt(arg[0], arg[1])

    if key == "Fn::ImportValue":
        return ImportValue(parse_value(arg, where))

    if key == "Fn::FindInMap":
        if not isinstance(arg, list) or len(arg) != 3:
            raise ParseError(
                f"Fn::FindInMap expects [Map, TopKey, SecondKey], got {arg!r}", node=where,
            )
        return FindInMap(*(parse_value(a, where) for a in arg))

    if key == "Fn::Sub":
        if isinstance(arg, str):
            return Sub(arg)
        if (isinstance(arg, list) and len(arg) == 2
                and isinstance(arg[0], str) and isinstance(arg[1], dict)):
            return Sub(arg[0], {k: parse_value(v, where) for k, v in arg[1].items()})
        raise ParseError(f"Fn::Sub expects a string or [string, vars], got {arg!r}", node=where)

    if key == "Fn::Join":
        if not isinstance(arg, list) or len(arg) != 2 or not isinstance(arg[0], str):
            raise ParseError(f"Fn::Join expects [delimiter, values], got {arg!r}", node=where)
        return Join(arg[0], parse_value(arg[1], where))

    if key == "Fn::Select":
        if not isinstance(arg, list) or len(arg) != 2:
            raise ParseError(f"Fn::Select expects [index, values], got {arg!r}", node=where)
        return Select(parse_value(arg[0], where), parse_value(arg[1], where))

    if key == "Fn::If":
        if not isinstance(arg, list) or len(arg) != 3 or not isinstance(arg[0], str):
            raise ParseError(
                f"Fn::If expects [Condition, IfTrue, IfFalse], got {arg!r}", node=where,
            )
        return If(arg[0], parse_value(arg[1], where), parse_value(arg[2], where))

    if key == "Fn::Equals":
        if not isinstance(arg, list) or len(arg) != 2:
            raise ParseError(f"Fn::Equals expects two values, got {arg!r}", node=where)
        return Equals(parse_value(arg[0], where), parse_value(arg[1], where))

    if key == "Fn::Not":
        if not isinstance(arg, list) or len(arg) != 1:
            raise ParseError(f"Fn::Not expects one condition, got {arg!r}", node=where)
        return Not(parse_value(arg[0], where))

    if key in ("Fn::And", "Fn::Or"):
        if not isinstance(arg, list) or not 2 <= len(arg) <= 10:
            raise ParseError(f"{key} expects 2-10 conditions, got {arg!r}", node=where)
        operands = [parse_value(a, where) for a in arg]
        return And(operands) if key == "Fn::And" else Or(operands)

    raise ParseError(f"Unknown intrinsic function '{key}'", node=where)


# ─────────────────────────────────────────────
# Reference discovery
# ─────────────────────────────────────────────
def sub_references(template: str) -> list[tuple[str, str | None]]:
    """Return (name, attribute) pairs referenced by a Sub template."""
    refs: list[tuple[str, str | None]] = []
    for match in SUB_PATTERN.finditer(template):
        if match.group(1):
            continue
        token = match.group(2)
        if token.startswith("AWS::"):
            refs.append((token, None))
        elif "." in token:
            name, attr = token.split(".", 1)
            refs.append((name, attr))
        else:
            refs.append((token, None))
    return refs


def references(value: Any) -> Iterator[Any]:
    """Yield every Ref, GetAtt, ImportValue, FindInMap, If and
    ConditionRef in a value tree.

    Sub templates are expanded into Ref/GetAtt objects, minus the names
    bound by the Sub's own variable map.
    """
    if isinstance(value, dict):
        for v in value.values():
            yield from references(v)
    elif isinstance(value, list):
        for v in value:
            yield from references(v)
    elif isinstance(value, (Ref, GetAtt, ConditionRef)):
        yield value
    elif isinstance(value, ImportValue):
        yield value
        yield from references(value.name)
    elif isinstance(value, FindInMap):
        yield value
        for part in (value.map_name, value.top_key, value.second_key):
            yield from references(part)
    elif isinstance(value, Sub):
        for name, attr in sub_references(value.template):
            if name in value.variables:
                continue
            yield Ref(name) if attr is None else GetAtt(name, attr)
        for v in value.variables.values():
            yield from references(v)
    elif isinstance(value, Join):
        yield from references(value.values)
    elif isinstance(value, Select):
        yield from references(value.index)
        yield from references(value.values)
    elif isinstance(value, If):
        yield value
        yield from references(value.when_true)
        yield from references(value.when_false)
    elif isinstance(value, Equals):
        yield from references(value.left)
        yield from references(value.right)
    elif isinstance(value, Not):
        yield from references(value.operand)
    elif isinstance(value, (And, Or)):
        for v in value.operands:
            yield from references(v)
