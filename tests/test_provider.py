"""
tests/test_provider.py — Local provider and provider registry tests.
"""

import os
import sys
import pytest
import tempfile

sys.path.insert(0, os.path.join(os.path.dirname(__file__), "..", "src"))

from cairn.errors import ProviderNotFoundError, ProviderOperationError
from cairn.provider.base import Provider
from cairn.provider.local import LocalProvider
from cairn.provider.registry import (
    get_provider, list_providers, register_provider, reset_registry,
)
from cairn.template.graph import ResourceKind


@pytest.fixture(autouse=True)
def clean():
    reset_registry()
    yield
    reset_registry()


class RecordingProvider(Provider):
    def __init__(self, **options):
        self.options = options

    def create_resource(self, kind, properties):
        return "x-1"

    def update_resource(self, provider_id, properties):
        pass

    def delete_resource(self, provider_id):
        pass

    def describe_resource(self, provider_id):
        return {}


# ─────────────────────────────────────────────
# LOCAL PROVIDER
# ─────────────────────────────────────────────
class TestLocalProvider:
    def test_create_and_describe(self):
        p = LocalProvider()
        vpc = p.create_resource(ResourceKind.NETWORK_CONTAINER, {"CidrBlock": "10.0.0.0/16"})
        assert vpc.startswith("vpc-")
        attrs = p.describe_resource(vpc)
        assert attrs["Id"] == vpc
        assert attrs["CidrBlock"] == "10.0.0.0/16"
        assert attrs["DefaultSecurityGroup"].startswith("sg-")

    def test_kind_prefixes(self):
        p = LocalProvider()
        assert p.create_resource(ResourceKind.PEERING_CONNECTION, {}).startswith("pcx-")
        assert p.create_resource(ResourceKind.GATEWAY, {}).startswith("igw-")
        assert p.create_resource(ResourceKind.SUBNET, {}).startswith("subnet-")

    def test_invalid_cidr(self):
        p = LocalProvider()
        with pytest.raises(ProviderOperationError, match="Invalid CidrBlock"):
            p.create_resource(ResourceKind.NETWORK_CONTAINER, {"CidrBlock": "10.0.0.300/16"})

    def test_route_requires_table(self):
        p = LocalProvider()
        with pytest.raises(ProviderOperationError, match="RouteTableId"):
            p.create_resource(ResourceKind.ROUTE, {"DestinationCidrBlock": "0.0.0.0/0"})

    def test_update_keeps_stable_attributes(self):
        p = LocalProvider()
        vpc = p.create_resource(ResourceKind.NETWORK_CONTAINER, {"CidrBlock": "10.0.0.0/16"})
        sg = p.describe_resource(vpc)["DefaultSecurityGroup"]
        p.update_resource(vpc, {"CidrBlock": "10.0.0.0/16", "EnableDnsHostnames": True})
        attrs = p.describe_resource(vpc)
        assert attrs["DefaultSecurityGroup"] == sg
        assert attrs["EnableDnsHostnames"] is True

    def test_public_ip_only_when_requested(self):
        p = LocalProvider()
        private = p.create_resource(ResourceKind.COMPUTE_INSTANCE, {})
        public = p.create_resource(ResourceKind.COMPUTE_INSTANCE,
                                   {"AssociatePublicIpAddress": "true"})
        assert "PublicIp" not in p.describe_resource(private)
        assert "PublicIp" in p.describe_resource(public)

    def test_delete_dependency_violation(self):
        p = LocalProvider()
        vpc = p.create_resource(ResourceKind.NETWORK_CONTAINER, {"CidrBlock": "10.0.0.0/16"})
        subnet = p.create_resource(ResourceKind.SUBNET, {"VpcId": vpc})
        with pytest.raises(ProviderOperationError, match="DependencyViolation"):
            p.delete_resource(vpc)
        p.delete_resource(subnet)
        p.delete_resource(vpc)
        assert p.resources == {}

    def test_unknown_resource(self):
        with pytest.raises(ProviderOperationError, match="not found"):
            LocalProvider().describe_resource("vpc-missing")

    def test_failure_injection(self):
        p = LocalProvider()
        p.fail("create", kind=ResourceKind.ROUTE, message="quota exceeded", times=1)
        props = {"RouteTableId": "rtb-1", "DestinationCidrBlock": "0.0.0.0/0"}
        with pytest.raises(ProviderOperationError, match="quota exceeded"):
            p.create_resource(ResourceKind.ROUTE, props)
        assert p.create_resource(ResourceKind.ROUTE, props).startswith("r-")

    def test_failure_injection_predicate(self):
        p = LocalProvider()
        p.fail("create", where=lambda props: props.get("CidrBlock") == "10.1.0.0/16")
        p.create_resource(ResourceKind.NETWORK_CONTAINER, {"CidrBlock": "10.0.0.0/16"})
        with pytest.raises(ProviderOperationError):
            p.create_resource(ResourceKind.NETWORK_CONTAINER, {"CidrBlock": "10.1.0.0/16"})

    def test_operation_log(self):
        p = LocalProvider()
        vpc = p.create_resource(ResourceKind.NETWORK_CONTAINER, {"CidrBlock": "10.0.0.0/16"})
        p.describe_resource(vpc)
        p.delete_resource(vpc)
        assert p.mutating_operations() == [
            ("create", "NetworkContainer", vpc),
            ("delete", "NetworkContainer", vpc),
        ]

    def test_persistence(self):
        with tempfile.TemporaryDirectory() as d:
            path = os.path.join(d, "cloud", "local.yaml")
            p = LocalProvider(path=path)
            vpc = p.create_resource(ResourceKind.NETWORK_CONTAINER,
                                    {"CidrBlock": "10.0.0.0/16"})
            again = LocalProvider(path=path)
            assert again.describe_resource(vpc)["CidrBlock"] == "10.0.0.0/16"

    def test_shared_file_keeps_both_writers(self):
        with tempfile.TemporaryDirectory() as d:
            path = os.path.join(d, "local.yaml")
            first = LocalProvider(path=path)
            second = LocalProvider(path=path)
            vpc_a = first.create_resource(ResourceKind.NETWORK_CONTAINER,
                                          {"CidrBlock": "10.0.0.0/16"})
            vpc_b = second.create_resource(ResourceKind.NETWORK_CONTAINER,
                                           {"CidrBlock": "10.1.0.0/16"})
            assert first.describe_resource(vpc_b)["CidrBlock"] == "10.1.0.0/16"
            assert set(LocalProvider(path=path).resources) == {vpc_a, vpc_b}

            first.delete_resource(vpc_a)
            assert set(LocalProvider(path=path).resources) == {vpc_b}


# ─────────────────────────────────────────────
# REGISTRY
# ─────────────────────────────────────────────
class TestRegistry:
    def test_builtin_local(self):
        assert "local" in list_providers()
        assert isinstance(get_provider("local"), LocalProvider)

    def test_options_passed(self):
        register_provider("recording", RecordingProvider)
        provider = get_provider("recording", region="eu-west-1")
        assert provider.options == {"region": "eu-west-1"}

    def test_not_found(self):
        with pytest.raises(ProviderNotFoundError, match="local"):
            get_provider("nope")

    def test_reset(self):
        register_provider("recording", RecordingProvider)
        reset_registry()
        assert "recording" not in list_providers()
