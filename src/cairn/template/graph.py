"""
cairn.template.graph — Resource graph model.

Nodes live in a flat dict keyed by logical name. Edges are names:
``node.dependencies`` lists what a node waits for, ``dependents()``
gives the reverse direction. Topological order uses Kahn's algorithm;
cycle detection reports the offending node sequence.
"""

from __future__ import annotations

from collections import defaultdict, deque
from dataclasses import dataclass, field
from enum import Enum
from typing import Any

from cairn.errors import CyclicDependencyError, ParseError


class ResourceKind(str, Enum):
    NETWORK_CONTAINER = "NetworkContainer"
    SUBNET = "Subnet"
    ROUTE_TABLE = "RouteTable"
    ROUTE = "Route"
    ROUTE_TABLE_ASSOCIATION = "RouteTableAssociation"
    GATEWAY = "Gateway"
    GATEWAY_ATTACHMENT = "GatewayAttachment"
    PEERING_CONNECTION = "PeeringConnection"
    COMPUTE_INSTANCE = "ComputeInstance"
    SECURITY_GROUP = "SecurityGroup"

    @classmethod
    def from_type(cls, type_name: str) -> "ResourceKind":
        """Resolve a declared type name (kind name or alias)."""
        if type_name in _TYPE_ALIASES:
            return _TYPE_ALIASES[type_name]
        try:
            return cls(type_name)
        except ValueError:
            raise ParseError(f"Unknown resource type '{type_name}'") from None


_TYPE_ALIASES: dict[str, ResourceKind] = {
    "AWS::EC2::VPC": ResourceKind.NETWORK_CONTAINER,
    "AWS::EC2::Subnet": ResourceKind.SUBNET,
    "AWS::EC2::RouteTable": ResourceKind.ROUTE_TABLE,
    "AWS::EC2::Route": ResourceKind.ROUTE,
    "AWS::EC2::SubnetRouteTableAssociation": ResourceKind.ROUTE_TABLE_ASSOCIATION,
    "AWS::EC2::InternetGateway": ResourceKind.GATEWAY,
    "AWS::EC2::NatGateway": ResourceKind.GATEWAY,
    "AWS::EC2::VPCGatewayAttachment": ResourceKind.GATEWAY_ATTACHMENT,
    "AWS::EC2::VPCPeeringConnection": ResourceKind.PEERING_CONNECTION,
    "AWS::EC2::Instance": ResourceKind.COMPUTE_INSTANCE,
    "AWS::EC2::SecurityGroup": ResourceKind.SECURITY_GROUP,
}


class NodeStatus(str, Enum):
    PENDING = "Pending"
    CREATING = "Creating"
    CREATED = "Created"
    UPDATE_IN_PROGRESS = "UpdateInProgress"
    DELETE_IN_PROGRESS = "DeleteInProgress"
    FAILED = "Failed"
    DELETED = "Deleted"


@dataclass
class ParameterSpec:
    name: str
    type: str = "String"
    default: Any = None
    allowed_values: list[Any] | None = None
    allowed_pattern: str | None = None
    description: str = ""

    @property
    def required(self) -> bool:
        return self.default is None


@dataclass
class ResourceNode:
    """A single declared resource."""
    name: str
    kind: ResourceKind
    type_name: str
    properties: dict[str, Any] = field(default_factory=dict)
    depends_on: list[str] = field(default_factory=list)
    condition: str | None = None
    dependencies: list[str] = field(default_factory=list)
    status: NodeStatus = NodeStatus.PENDING


@dataclass
class OutputSpec:
    name: str
    value: Any
    export_name: Any = None
    condition: str | None = None
    description: str = ""


@dataclass
class ResourceGraph:
    """Parsed template: parameters, mappings, conditions, nodes, outputs."""
    name: str
    description: str = ""
    parameters: dict[str, ParameterSpec] = field(default_factory=dict)
    mappings: dict[str, dict[str, dict[str, Any]]] = field(default_factory=dict)
    conditions: dict[str, Any] = field(default_factory=dict)
    nodes: dict[str, ResourceNode] = field(default_factory=dict)
    outputs: dict[str, OutputSpec] = field(default_factory=dict)
    source: str | None = None

    def __len__(self) -> int:
        return len(self.nodes)

    def __contains__(self, name: str) -> bool:
        return name in self.nodes

    def dependencies(self, name: str) -> list[str]:
        return list(self.nodes[name].dependencies)

    def dependents(self, name: str) -> list[str]:
        return [n.name for n in self.nodes.values() if name in n.dependencies]

    def transitive_dependents(self, name: str) -> set[str]:
        """All nodes that (directly or indirectly) wait on ``name``."""
        reverse = self._reverse_edges()
        seen: set[str] = set()
        queue = deque(reverse[name])
        while queue:
            current = queue.popleft()
            if current in seen:
                continue
            seen.add(current)
            queue.extend(reverse[current])
        return seen

    def _reverse_edges(self) -> dict[str, list[str]]:
        reverse: dict[str, list[str]] = defaultdict(list)
        for node in self.nodes.values():
            for dep in node.dependencies:
                reverse[dep].append(node.name)
        return reverse

    def check_cycles(self) -> None:
        """Raise CyclicDependencyError naming the first cycle found."""
        visited: set[str] = set()
        on_path: set[str] = set()

        def visit(name: str, path: list[str]) -> list[str] | None:
            if name in on_path:
                return path[path.index(name):]
            if name in visited:
                return None
            visited.add(name)
            on_path.add(name)
            path.append(name)
            for dep in self.nodes[name].dependencies:
                cycle = visit(dep, path)
                if cycle:
                    return cycle
            path.pop()
            on_path.remove(name)
            return None

        for name in self.nodes:
            if name not in visited:
                cycle = visit(name, [])
                if cycle:
                    raise CyclicDependencyError(cycle)

    def topological_order(self) -> list[str]:
        """Dependencies first. Ties keep declaration order."""
        in_degree = {name: len(node.dependencies) for name, node in self.nodes.items()}
        reverse = self._reverse_edges()

        queue = deque(name for name, degree in in_degree.items() if degree == 0)
        ordered: list[str] = []
        while queue:
            name = queue.popleft()
            ordered.append(name)
            for dependent in reverse[name]:
                in_degree[dependent] -= 1
                if in_degree[dependent] == 0:
                    queue.append(dependent)

        if len(ordered) != len(self.nodes):
            self.check_cycles()
            raise CyclicDependencyError([n for n in self.nodes if n not in ordered])
        return ordered

    def layers(self) -> list[list[str]]:
        """Group nodes into layers that have no edges between them."""
        in_degree = {name: len(node.dependencies) for name, node in self.nodes.items()}
        reverse = self._reverse_edges()
        remaining = list(self.nodes)
        layers: list[list[str]] = []
        while remaining:
            layer = [name for name in remaining if in_degree[name] == 0]
            if not layer:
                self.check_cycles()
                raise CyclicDependencyError(remaining)
            layers.append(layer)
            for name in layer:
                remaining.remove(name)
                for dependent in reverse[name]:
                    in_degree[dependent] -= 1
        return layers
