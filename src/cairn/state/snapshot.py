"""
cairn.state.snapshot — Recorded graph state.

One YAML document per graph:

    apiVersion: cairn.io/v1
    kind: GraphState
    name: Network
    status: Converged
    region: us-east-1
    source: templates/vpc-a.yaml
    parameters:
      VpcCidr: 10.0.0.0/16
    nodes:
      VPC:
        kind: NetworkContainer
        type: AWS::EC2::VPC
        status: Created
        providerId: vpc-3f9c1a2b
        properties: {CidrBlock: 10.0.0.0/16}
        attributes: {CidrBlock: 10.0.0.0/16}
        dependencies: []
    outputs: {VpcId: vpc-3f9c1a2b}
    exports: {Network-VpcId: vpc-3f9c1a2b}
    imports: []

``lastAttempt`` holds the node records of a failed apply so that the
next apply can adopt resources it already created.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any

CONVERGED = "Converged"
FAILED = "Failed"


@dataclass
class NodeRecord:
    """Last known state of one resource."""
    name: str
    kind: str
    type_name: str
    status: str
    provider_id: str | None = None
    properties: dict[str, Any] = field(default_factory=dict)
    attributes: dict[str, Any] = field(default_factory=dict)
    dependencies: list[str] = field(default_factory=list)
    error: str | None = None
    retired: list[str] = field(default_factory=list)

    @property
    def exists(self) -> bool:
        """A provider-side resource may exist for this record."""
        return self.provider_id is not None and self.status != "Deleted"

    def to_dict(self) -> dict[str, Any]:
        data: dict[str, Any] = {
            "kind": self.kind,
            "type": self.type_name,
            "status": self.status,
        }
        if self.provider_id:
            data["providerId"] = self.provider_id
        data["properties"] = self.properties
        data["attributes"] = self.attributes
        data["dependencies"] = list(self.dependencies)
        if self.error:
            data["error"] = self.error
        if self.retired:
            data["retired"] = list(self.retired)
        return data

    @classmethod
    def from_dict(cls, name: str, data: dict[str, Any]) -> "NodeRecord":
        return cls(
            name=name,
            kind=data.get("kind", ""),
            type_name=data.get("type", ""),
            status=data.get("status", "Pending"),
            provider_id=data.get("providerId"),
            properties=data.get("properties") or {},
            attributes=data.get("attributes") or {},
            dependencies=list(data.get("dependencies") or []),
            error=data.get("error"),
            retired=list(data.get("retired") or []),
        )


@dataclass
class GraphSnapshot:
    """Durable record of one graph."""
    name: str
    status: str = CONVERGED
    region: str | None = None
    source: str | None = None
    parameters: dict[str, Any] = field(default_factory=dict)
    nodes: dict[str, NodeRecord] = field(default_factory=dict)
    outputs: dict[str, Any] = field(default_factory=dict)
    exports: dict[str, Any] = field(default_factory=dict)
    imports: list[str] = field(default_factory=list)
    last_attempt: dict[str, NodeRecord] | None = None
    updated_at: str = field(
        default_factory=lambda: datetime.now(timezone.utc).isoformat(timespec="seconds")
    )

    def to_dict(self) -> dict[str, Any]:
        data: dict[str, Any] = {
            "apiVersion": "cairn.io/v1",
            "kind": "GraphState",
            "name": self.name,
            "status": self.status,
            "updatedAt": self.updated_at,
        }
        if self.region:
            data["region"] = self.region
        if self.source:
            data["source"] = self.source
        data["parameters"] = self.parameters
        data["nodes"] = {n: rec.to_dict() for n, rec in self.nodes.items()}
        data["outputs"] = self.outputs
        data["exports"] = self.exports
        data["imports"] = list(self.imports)
        if self.last_attempt is not None:
            data["lastAttempt"] = {
                n: rec.to_dict() for n, rec in self.last_attempt.items()
            }
        return data

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "GraphSnapshot":
        last_attempt = data.get("lastAttempt")
        return cls(
            name=data["name"],
            status=data.get("status", CONVERGED),
            region=data.get("region"),
            source=data.get("source"),
            parameters=data.get("parameters") or {},
            nodes={
                n: NodeRecord.from_dict(n, rec)
                for n, rec in (data.get("nodes") or {}).items()
            },
            outputs=data.get("outputs") or {},
            exports=data.get("exports") or {},
            imports=list(data.get("imports") or []),
            last_attempt=(
                {n: NodeRecord.from_dict(n, rec) for n, rec in last_attempt.items()}
                if last_attempt is not None else None
            ),
            updated_at=data.get("updatedAt", ""),
        )

    def live_nodes(self) -> dict[str, NodeRecord]:
        """Converged nodes overlaid with the last failed attempt."""
        merged = dict(self.nodes)
        if self.last_attempt:
            for name, rec in self.last_attempt.items():
                if rec.exists:
                    merged[name] = rec
                elif rec.status == "Deleted":
                    merged.pop(name, None)
        return merged
