"""
cairn.provider.local — Local simulated control plane.

Behaves like a small cloud: kind-prefixed ids (vpc-…, subnet-…, pcx-…),
derived attributes, CIDR validation, and a dependency-violation error
when deleting a resource that another live resource still points at.

With a path the resource table is persisted as YAML, so separate CLI
invocations see the same "cloud". Every operation re-reads the file and
writes it back under a file lock (``<path>.lock``).

Tests steer it with latency and failure injection:

    provider = LocalProvider(latency=0.05)
    provider.fail("create", kind=ResourceKind.ROUTE, message="quota exceeded")
"""

from __future__ import annotations

import ipaddress
import logging
import os
import tempfile
import threading
import time
import uuid
from contextlib import contextmanager
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Callable, Iterator

import portalocker
import yaml

from cairn.errors import ProviderOperationError
from cairn.provider.base import Provider
from cairn.template.graph import ResourceKind

logger = logging.getLogger(__name__)

_ID_PREFIX: dict[ResourceKind, str] = {
    ResourceKind.NETWORK_CONTAINER: "vpc",
    ResourceKind.SUBNET: "subnet",
    ResourceKind.ROUTE_TABLE: "rtb",
    ResourceKind.ROUTE: "r",
    ResourceKind.ROUTE_TABLE_ASSOCIATION: "rtbassoc",
    ResourceKind.GATEWAY: "igw",
    ResourceKind.GATEWAY_ATTACHMENT: "gwa",
    ResourceKind.PEERING_CONNECTION: "pcx",
    ResourceKind.COMPUTE_INSTANCE: "i",
    ResourceKind.SECURITY_GROUP: "sg",
}

_CIDR_PROPERTIES = ("CidrBlock", "DestinationCidrBlock")

LOCK_TIMEOUT = 60


@dataclass
class _FailureRule:
    operation: str
    kind: ResourceKind | None
    where: Callable[[dict[str, Any]], bool] | None
    message: str
    times: int | None


class LocalProvider(Provider):
    """In-process provider with optional YAML persistence."""

    name = "local"

    def __init__(
        self,
        path: str | Path | None = None,
        latency: float | dict[ResourceKind, float] = 0.0,
    ):
        self.path = Path(path) if path is not None else None
        self.latency = latency
        self.resources: dict[str, dict[str, Any]] = {}
        self.operations: list[tuple[str, str, str]] = []
        self._rules: list[_FailureRule] = []
        self._lock = threading.Lock()
        self._counter = 0

        self._load()

    # ─────────────────────────────────────────────
    # Failure injection
    # ─────────────────────────────────────────────
    def fail(
        self,
        operation: str,
        kind: ResourceKind | None = None,
        where: Callable[[dict[str, Any]], bool] | None = None,
        message: str = "injected failure",
        times: int | None = None,
    ) -> None:
        """Make matching operations raise ProviderOperationError."""
        self._rules.append(_FailureRule(operation, kind, where, message, times))

    def _check_failure(self, operation: str, kind: ResourceKind,
                       properties: dict[str, Any]) -> None:
        for rule in self._rules:
            if rule.operation != operation:
                continue
            if rule.kind is not None and rule.kind != kind:
                continue
            if rule.where is not None and not rule.where(properties):
                continue
            if rule.times is not None:
                if rule.times <= 0:
                    continue
                rule.times -= 1
            raise ProviderOperationError(f"{operation} {kind.value} failed: {rule.message}")

    # ─────────────────────────────────────────────
    # Provider interface
    # ─────────────────────────────────────────────
    def create_resource(self, kind: ResourceKind, properties: dict[str, Any]) -> str:
        self._sleep(kind)
        with self._transaction():
            self._check_failure("create", kind, properties)
            _validate(kind, properties)
            provider_id = f"{_ID_PREFIX[kind]}-{uuid.uuid4().hex[:17]}"
            self._counter += 1
            self.resources[provider_id] = {
                "kind": kind.value,
                "properties": dict(properties),
                "attributes": self._derive(kind, provider_id, properties),
            }
            self.operations.append(("create", kind.value, provider_id))
            self._save()
        logger.debug("created %s %s", kind.value, provider_id)
        return provider_id

    def update_resource(self, provider_id: str, properties: dict[str, Any]) -> None:
        kind = self._kind_of(provider_id)
        self._sleep(kind)
        with self._transaction():
            self._check_failure("update", kind, properties)
            _validate(kind, properties)
            entry = self._entry(provider_id)
            entry["properties"] = dict(properties)
            entry["attributes"] = self._derive(kind, provider_id, properties,
                                               previous=entry["attributes"])
            self.operations.append(("update", kind.value, provider_id))
            self._save()
        logger.debug("updated %s %s", kind.value, provider_id)

    def delete_resource(self, provider_id: str) -> None:
        kind = self._kind_of(provider_id)
        self._sleep(kind)
        with self._transaction():
            entry = self._entry(provider_id)
            self._check_failure("delete", kind, entry["properties"])
            users = [
                rid for rid, other in self.resources.items()
                if rid != provider_id and _mentions(other["properties"], provider_id)
            ]
            if users:
                raise ProviderOperationError(
                    f"DependencyViolation: {provider_id} is still used by {sorted(users)}"
                )
            del self.resources[provider_id]
            self.operations.append(("delete", kind.value, provider_id))
            self._save()
        logger.debug("deleted %s %s", kind.value, provider_id)

    def describe_resource(self, provider_id: str) -> dict[str, Any]:
        with self._transaction():
            entry = self._entry(provider_id)
            return {**entry["properties"], **entry["attributes"]}

    # ─────────────────────────────────────────────
    # Helpers
    # ─────────────────────────────────────────────
    def mutating_operations(self) -> list[tuple[str, str, str]]:
        with self._lock:
            return list(self.operations)

    def _kind_of(self, provider_id: str) -> ResourceKind:
        with self._transaction():
            return ResourceKind(self._entry(provider_id)["kind"])

    def _entry(self, provider_id: str) -> dict[str, Any]:
        entry = self.resources.get(provider_id)
        if entry is None:
            raise ProviderOperationError(f"Resource {provider_id} not found")
        return entry

    def _sleep(self, kind: ResourceKind) -> None:
        delay = self.latency.get(kind, 0.0) if isinstance(self.latency, dict) else self.latency
        if delay:
            time.sleep(delay)

    def _derive(self, kind: ResourceKind, provider_id: str, properties: dict[str, Any],
                previous: dict[str, Any] | None = None) -> dict[str, Any]:
        attrs: dict[str, Any] = {"Id": provider_id}
        if kind == ResourceKind.NETWORK_CONTAINER:
            attrs["CidrBlock"] = properties.get("CidrBlock")
            attrs["DefaultSecurityGroup"] = (previous or {}).get(
                "DefaultSecurityGroup", f"sg-{uuid.uuid4().hex[:17]}"
            )
        elif kind == ResourceKind.SUBNET:
            attrs["CidrBlock"] = properties.get("CidrBlock")
            attrs["VpcId"] = properties.get("VpcId")
            attrs["AvailabilityZone"] = properties.get("AvailabilityZone", "us-east-1a")
        elif kind == ResourceKind.SECURITY_GROUP:
            attrs["GroupId"] = provider_id
        elif kind == ResourceKind.COMPUTE_INSTANCE:
            prev = previous or {}
            attrs["PrivateIp"] = prev.get("PrivateIp", _host_address(self._counter))
            if _truthy(properties.get("AssociatePublicIpAddress")):
                attrs["PublicIp"] = prev.get("PublicIp") or _public_address(self._counter)
        return attrs

    @contextmanager
    def _transaction(self) -> Iterator[None]:
        """Serialize access; with a path, also across processes."""
        with self._lock:
            if self.path is None:
                yield
                return
            self.path.parent.mkdir(parents=True, exist_ok=True)
            lock = portalocker.Lock(self.path.with_name(self.path.name + ".lock"),
                                    timeout=LOCK_TIMEOUT)
            try:
                lock.acquire()
            except portalocker.exceptions.LockException:
                raise ProviderOperationError(
                    f"Could not lock {self.path} within {LOCK_TIMEOUT}s"
                ) from None
            try:
                self._load()
                yield
            finally:
                lock.release()

    def _load(self) -> None:
        if self.path is None or not self.path.exists():
            return
        with open(self.path) as f:
            data = yaml.safe_load(f) or {}
        self.resources = data.get("resources", {}) or {}

    def _save(self) -> None:
        if self.path is None:
            return
        self.path.parent.mkdir(parents=True, exist_ok=True)
        fd, tmp = tempfile.mkstemp(prefix=".provider.", suffix=".tmp", dir=self.path.parent)
        try:
            with os.fdopen(fd, "w") as f:
                yaml.safe_dump({"resources": self.resources}, f,
                               default_flow_style=False, sort_keys=True)
            os.replace(tmp, self.path)
        except BaseException:
            Path(tmp).unlink(missing_ok=True)
            raise


def _validate(kind: ResourceKind, properties: dict[str, Any]) -> None:
    for key in _CIDR_PROPERTIES:
        if key in properties:
            try:
                ipaddress.ip_network(str(properties[key]))
            except ValueError:
                raise ProviderOperationError(
                    f"Invalid {key} '{properties[key]}' for {kind.value}"
                ) from None
    if kind == ResourceKind.NETWORK_CONTAINER and "CidrBlock" not in properties:
        raise ProviderOperationError("NetworkContainer requires CidrBlock")
    if kind == ResourceKind.ROUTE:
        for key in ("RouteTableId", "DestinationCidrBlock"):
            if key not in properties:
                raise ProviderOperationError(f"Route requires {key}")


def _mentions(value: Any, provider_id: str) -> bool:
    if isinstance(value, dict):
        return any(_mentions(v, provider_id) for v in value.values())
    if isinstance(value, list):
        return any(_mentions(v, provider_id) for v in value)
    return value == provider_id


def _truthy(value: Any) -> bool:
    if isinstance(value, str):
        return value.lower() == "true"
    return bool(value)


def _host_address(n: int) -> str:
    return f"10.0.{(n // 250) % 250}.{n % 250 + 4}"


def _public_address(n: int) -> str:
    return f"54.{(n // 250) % 250}.{n % 250}.{(n * 7) % 250 + 1}"
