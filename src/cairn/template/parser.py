"""
cairn.template.parser — Template parser.

Template format:

    Description: VPC peering between two VPCs
    Parameters:
      VpcCidr:
        Type: String
        Default: 10.0.0.0/16
    Mappings:
      RegionMap:
        us-east-1: {AMI: ami-0abcdef}
    Conditions:
      HasPublicIp: !Equals [!Ref AssignPublicIp, "true"]
    Resources:
      VPC:
        Type: AWS::EC2::VPC
        Properties:
          CidrBlock: !Ref VpcCidr
    Outputs:
      VpcId:
        Value: !Ref VPC
        Export:
          Name: !Sub "${AWS::StackName}-VpcId"

The parser reads the file, validates every section and reference, and
produces a ResourceGraph with implicit + explicit dependencies.
"""

from __future__ import annotations

from pathlib import Path
from typing import Any

from cairn.errors import ParseError
from cairn.template.graph import (
    OutputSpec,
    ParameterSpec,
    ResourceGraph,
    ResourceKind,
    ResourceNode,
)
from cairn.template.intrinsics import (
    PSEUDO_PARAMETERS,
    ConditionRef,
    FindInMap,
    GetAtt,
    If,
    ImportValue,
    Ref,
    load_yaml,
    parse_value,
    references,
)

_SECTIONS = {
    "AWSTemplateFormatVersion", "Description", "Metadata", "Parameters",
    "Mappings", "Conditions", "Resources", "Outputs",
}


def parse_template_file(path: str | Path, name: str | None = None) -> ResourceGraph:
    """Parse a template file.

    Args:
        path: Path to the template
        name: Graph name (default: file stem)

    Raises:
        ParseError: Format error
        FileNotFoundError: File not found
    """
    p = Path(path)
    if not p.exists():
        raise FileNotFoundError(f"Template file not found: {p}")

    with open(p) as f:
        data = load_yaml(f)

    if not isinstance(data, dict):
        raise ParseError(f"Template must be a YAML mapping, got {type(data).__name__}")

    graph = parse_template_dict(data, name or p.stem)
    graph.source = str(p)
    return graph


def parse_template_dict(data: dict[str, Any], name: str) -> ResourceGraph:
    """Create a ResourceGraph from a template dict."""
    if not name:
        raise ParseError("Graph name is required")

    unknown = set(data) - _SECTIONS
    if unknown:
        raise ParseError(f"Unknown top-level section(s): {sorted(unknown)}")

    graph = ResourceGraph(name=name, description=data.get("Description", "") or "")
    graph.parameters = _parse_parameters(_section(data, "Parameters"))
    graph.mappings = _parse_mappings(_section(data, "Mappings"))
    graph.conditions = {
        cname: parse_value(expr, f"Conditions.{cname}")
        for cname, expr in _section(data, "Conditions").items()
    }

    resources = _section(data, "Resources")
    if not resources:
        raise ParseError("Resources section must declare at least one resource")
    for logical_name, body in resources.items():
        graph.nodes[logical_name] = _parse_resource(logical_name, body)

    for oname, body in _section(data, "Outputs").items():
        graph.outputs[oname] = _parse_output(oname, body)

    _validate_references(graph)
    _infer_dependencies(graph)
    graph.check_cycles()
    return graph


def _section(data: dict[str, Any], key: str) -> dict[str, Any]:
    value = data.get(key) or {}
    if not isinstance(value, dict):
        raise ParseError(f"{key} must be a mapping")
    return value


def _parse_parameters(raw: dict[str, Any]) -> dict[str, ParameterSpec]:
    params: dict[str, ParameterSpec] = {}
    for pname, body in raw.items():
        if not isinstance(body, dict):
            raise ParseError(f"Parameters.{pname} must be a mapping", node=pname)
        ptype = body.get("Type")
        if not ptype:
            raise ParseError(f"Parameters.{pname}.Type is required", node=pname)
        allowed = body.get("AllowedValues")
        if allowed is not None and not isinstance(allowed, list):
            raise ParseError(f"Parameters.{pname}.AllowedValues must be a list", node=pname)
        params[pname] = ParameterSpec(
            name=pname,
            type=ptype,
            default=body.get("Default"),
            allowed_values=allowed,
            allowed_pattern=body.get("AllowedPattern"),
            description=body.get("Description", "") or "",
        )
    return params


def _parse_mappings(raw: dict[str, Any]) -> dict[str, dict[str, dict[str, Any]]]:
    for mname, table in raw.items():
        if not isinstance(table, dict):
            raise ParseError(f"Mappings.{mname} must be a mapping", node=mname)
        for top_key, inner in table.items():
            if not isinstance(inner, dict):
                raise ParseError(
                    f"Mappings.{mname}.{top_key} must be a mapping", node=mname,
                )
    return raw


def _parse_resource(logical_name: str, body: Any) -> ResourceNode:
    if not isinstance(body, dict):
        raise ParseError("Resource must be a mapping", node=logical_name)

    type_name = body.get("Type")
    if not type_name:
        raise ParseError("Type is required", node=logical_name)
    try:
        kind = ResourceKind.from_type(type_name)
    except ParseError as e:
        raise ParseError(e.message, node=logical_name) from None

    properties = body.get("Properties", {}) or {}
    if not isinstance(properties, dict):
        raise ParseError("Properties must be a mapping", node=logical_name)

    depends_on = body.get("DependsOn", [])
    if isinstance(depends_on, str):
        depends_on = [depends_on]
    if not isinstance(depends_on, list) or not all(isinstance(d, str) for d in depends_on):
        raise ParseError("DependsOn must be a name or a list of names", node=logical_name)

    condition = body.get("Condition")
    if condition is not None and not isinstance(condition, str):
        raise ParseError("Condition must be a condition name", node=logical_name)

    return ResourceNode(
        name=logical_name,
        kind=kind,
        type_name=type_name,
        properties=parse_value(properties, logical_name),
        depends_on=list(dict.fromkeys(depends_on)),
        condition=condition,
    )


def _parse_output(oname: str, body: Any) -> OutputSpec:
    if not isinstance(body, dict) or "Value" not in body:
        raise ParseError("Output must be a mapping with a Value", node=oname)

    export_name = None
    export = body.get("Export")
    if export is not None:
        if not isinstance(export, dict) or "Name" not in export:
            raise ParseError("Export must be a mapping with a Name", node=oname)
        export_name = parse_value(export["Name"], oname)

    return OutputSpec(
        name=oname,
        value=parse_value(body["Value"], oname),
        export_name=export_name,
        condition=body.get("Condition"),
        description=body.get("Description", "") or "",
    )


def _validate_references(graph: ResourceGraph) -> None:
    """Every reference must name something declared in the graph."""
    for cname, expr in graph.conditions.items():
        for ref in references(expr):
            if isinstance(ref, Ref) and ref.target in graph.nodes:
                raise ParseError(
                    f"Condition may only reference parameters, not resource '{ref.target}'",
                    node=cname,
                )
            if isinstance(ref, (GetAtt, ImportValue)):
                raise ParseError(
                    "Condition may only reference parameters", node=cname,
                )
            _check_ref(graph, ref, cname)

    for node in graph.nodes.values():
        if node.condition is not None and node.condition not in graph.conditions:
            raise ParseError(f"Unknown condition '{node.condition}'", node=node.name)
        for dep in node.depends_on:
            if dep not in graph.nodes:
                raise ParseError(f"DependsOn names unknown resource '{dep}'", node=node.name)
            if dep == node.name:
                raise ParseError("Resource cannot depend on itself", node=node.name)
        for ref in references(node.properties):
            _check_ref(graph, ref, node.name)
            if isinstance(ref, (Ref, GetAtt)) and _target(ref) == node.name:
                raise ParseError("Resource cannot reference itself", node=node.name)

    seen_exports: set[Any] = set()
    for output in graph.outputs.values():
        if output.condition is not None and output.condition not in graph.conditions:
            raise ParseError(f"Unknown condition '{output.condition}'", node=output.name)
        for ref in references(output.value):
            _check_ref(graph, ref, output.name)
        if output.export_name is not None:
            for ref in references(output.export_name):
                _check_ref(graph, ref, output.name)
            if isinstance(output.export_name, str):
                if output.export_name in seen_exports:
                    raise ParseError(
                        f"Duplicate export name '{output.export_name}'", node=output.name,
                    )
                seen_exports.add(output.export_name)


def _target(ref: Ref | GetAtt) -> str:
    return ref.target if isinstance(ref, Ref) else ref.resource


def _check_ref(graph: ResourceGraph, ref: Any, where: str) -> None:
    if isinstance(ref, Ref):
        if (ref.target not in graph.parameters
                and ref.target not in graph.nodes
                and ref.target not in PSEUDO_PARAMETERS):
            raise ParseError(f"Unresolved reference '{ref.target}'", node=where)
    elif isinstance(ref, GetAtt):
        if ref.resource not in graph.nodes:
            raise ParseError(
                f"Fn::GetAtt names unknown resource '{ref.resource}'", node=where,
            )
    elif isinstance(ref, FindInMap):
        if isinstance(ref.map_name, str) and ref.map_name not in graph.mappings:
            raise ParseError(f"Unknown mapping '{ref.map_name}'", node=where)
    elif isinstance(ref, If):
        if ref.condition not in graph.conditions:
            raise ParseError(f"Unknown condition '{ref.condition}'", node=where)
    elif isinstance(ref, ConditionRef):
        if ref.name not in graph.conditions:
            raise ParseError(f"Unknown condition '{ref.name}'", node=where)


def _infer_dependencies(graph: ResourceGraph) -> None:
    """dependencies = explicit DependsOn ∪ resources referenced in Properties."""
    for node in graph.nodes.values():
        deps: list[str] = list(node.depends_on)
        for ref in references(node.properties):
            if isinstance(ref, (Ref, GetAtt)):
                target = _target(ref)
                if target in graph.nodes and target not in deps:
                    deps.append(target)
        node.dependencies = deps
