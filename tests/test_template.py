"""
tests/test_template.py — Template parser and resource graph tests.

YAML loading, intrinsics, reference validation, dependency inference,
topological order and cycle detection.
"""

import os
import sys
import pytest
import tempfile

sys.path.insert(0, os.path.join(os.path.dirname(__file__), "..", "src"))

from cairn.errors import CyclicDependencyError, ParseError
from cairn.template.graph import ResourceKind
from cairn.template.intrinsics import (
    FindInMap, GetAtt, If, ImportValue, Ref, Sub, load_yaml, parse_value, references,
)
from cairn.template.parser import parse_template_dict, parse_template_file
from cairn.template.values import merge_param_sources, parse_param_args

TEMPLATES = os.path.join(os.path.dirname(__file__), "..", "templates")


def _write_text(text, suffix=".yaml"):
    f = tempfile.NamedTemporaryFile(mode="w", suffix=suffix, delete=False)
    f.write(text)
    f.flush()
    f.close()
    return f.name


def _vpc(name="VPC", cidr="10.0.0.0/16"):
    return {name: {"Type": "AWS::EC2::VPC", "Properties": {"CidrBlock": cidr}}}


def _assert_order(graph, order):
    position = {name: i for i, name in enumerate(order)}
    for node in graph.nodes.values():
        for dep in node.dependencies:
            assert position[dep] < position[node.name], f"{dep} must precede {node.name}"


# ─────────────────────────────────────────────
# YAML + INTRINSICS
# ─────────────────────────────────────────────
class TestIntrinsics:
    def test_short_and_long_forms_match(self):
        short = load_yaml("a: !Ref VPC\nb: !GetAtt VPC.CidrBlock\nc: !ImportValue X\n")
        long = load_yaml(
            "a: {Ref: VPC}\n"
            "b: {'Fn::GetAtt': [VPC, CidrBlock]}\n"
            "c: {'Fn::ImportValue': X}\n"
        )
        assert parse_value(short) == parse_value(long)

    def test_parse_expressions(self):
        value = parse_value(load_yaml(
            "ref: !Ref VPC\n"
            "att: !GetAtt VPC.CidrBlock\n"
            "imp: !ImportValue Network-VpcId\n"
            "map: !FindInMap [RegionMap, !Ref 'AWS::Region', AMI]\n"
            "sub: !Sub '${AWS::StackName}-vpc'\n"
            "cond: !If [IsProd, big, small]\n"
        ))
        assert value["ref"] == Ref("VPC")
        assert value["att"] == GetAtt("VPC", "CidrBlock")
        assert value["imp"] == ImportValue("Network-VpcId")
        assert value["map"] == FindInMap("RegionMap", Ref("AWS::Region"), "AMI")
        assert value["sub"] == Sub("${AWS::StackName}-vpc")
        assert value["cond"] == If("IsProd", "big", "small")

    def test_nested_tags(self):
        value = parse_value(load_yaml("x: !Equals [!Ref Env, prod]\n"))
        assert value["x"].left == Ref("Env")
        assert value["x"].right == "prod"

    def test_unknown_function(self):
        with pytest.raises(ParseError, match="Unknown intrinsic"):
            parse_value({"Fn::Base64": "x"}, "Node")

    def test_bad_getatt(self):
        with pytest.raises(ParseError, match="GetAtt"):
            parse_value({"Fn::GetAtt": "NoDot"}, "Node")

    def test_duplicate_key(self):
        with pytest.raises(ParseError, match="Duplicate key 'VPC'"):
            load_yaml("Resources:\n  VPC: {}\n  VPC: {}\n")

    def test_sub_references(self):
        refs = list(references(Sub("${VPC}-${Subnet.AvailabilityZone}-${!Literal}")))
        assert Ref("VPC") in refs
        assert GetAtt("Subnet", "AvailabilityZone") in refs
        assert len(refs) == 2

    def test_sub_variables_are_not_references(self):
        refs = list(references(Sub("${Name}-x", {"Name": Ref("Env")})))
        assert refs == [Ref("Env")]


# ─────────────────────────────────────────────
# PARSER
# ─────────────────────────────────────────────
class TestParser:
    def test_parse_network_template(self):
        graph = parse_template_file(os.path.join(TEMPLATES, "network.yaml"))
        assert graph.name == "network"
        assert len(graph) == 12
        assert graph.nodes["VPC"].kind == ResourceKind.NETWORK_CONTAINER
        assert graph.nodes["Bastion"].condition == "HasBastion"
        assert set(graph.nodes["PublicDefaultRoute"].dependencies) == {
            "GatewayAttachment", "PublicRouteTable", "InternetGateway",
        }
        assert graph.outputs["VpcId"].export_name == Sub("${AWS::StackName}-VpcId")

    def test_parse_peering_template(self):
        graph = parse_template_file(os.path.join(TEMPLATES, "peering.yaml"), name="Peering")
        assert graph.name == "Peering"
        assert len(graph) == 4
        assert graph.nodes["VPCPeeringConnection"].dependencies == []
        assert graph.nodes["RouteFromVpcAToVpcB"].dependencies == ["VPCPeeringConnection"]
        assert graph.nodes["RouteFromVpcBToVpcA"].dependencies == ["VPCPeeringConnection"]

    def test_name_defaults_to_file_stem(self):
        path = _write_text("Resources:\n  VPC:\n    Type: NetworkContainer\n"
                           "    Properties: {CidrBlock: 10.0.0.0/16}\n")
        graph = parse_template_file(path)
        os.unlink(path)
        assert graph.name == os.path.splitext(os.path.basename(path))[0]
        assert graph.source == path

    def test_file_not_found(self):
        with pytest.raises(FileNotFoundError):
            parse_template_file("/nonexistent/template.yaml")

    def test_kind_names_and_aliases(self):
        graph = parse_template_dict({"Resources": {
            "A": {"Type": "Subnet", "Properties": {}},
            "B": {"Type": "AWS::EC2::Subnet", "Properties": {}},
        }}, "g")
        assert graph.nodes["A"].kind == graph.nodes["B"].kind == ResourceKind.SUBNET
        assert graph.nodes["B"].type_name == "AWS::EC2::Subnet"

    def test_unknown_kind_names_node(self):
        with pytest.raises(ParseError) as exc:
            parse_template_dict({"Resources": {"Queue": {"Type": "AWS::SQS::Queue"}}}, "g")
        assert exc.value.node == "Queue"
        assert "Unknown resource type" in str(exc.value)

    def test_missing_type(self):
        with pytest.raises(ParseError, match="Type is required"):
            parse_template_dict({"Resources": {"VPC": {"Properties": {}}}}, "g")

    def test_empty_resources(self):
        with pytest.raises(ParseError, match="at least one resource"):
            parse_template_dict({"Resources": {}}, "g")

    def test_unknown_section(self):
        with pytest.raises(ParseError, match="Transform"):
            parse_template_dict({"Transform": "x", "Resources": _vpc()}, "g")

    def test_unresolved_ref(self):
        with pytest.raises(ParseError) as exc:
            parse_template_dict({"Resources": {
                "Subnet": {"Type": "Subnet", "Properties": {"VpcId": {"Ref": "Missing"}}},
            }}, "g")
        assert exc.value.node == "Subnet"
        assert "Missing" in str(exc.value)

    def test_self_reference(self):
        with pytest.raises(ParseError, match="itself"):
            parse_template_dict({"Resources": {
                "VPC": {"Type": "NetworkContainer",
                        "Properties": {"CidrBlock": {"Fn::GetAtt": ["VPC", "CidrBlock"]}}},
            }}, "g")

    def test_unknown_depends_on(self):
        with pytest.raises(ParseError, match="Ghost"):
            parse_template_dict({"Resources": {
                "VPC": {"Type": "NetworkContainer", "DependsOn": "Ghost"},
            }}, "g")

    def test_unknown_condition(self):
        with pytest.raises(ParseError, match="Unknown condition"):
            parse_template_dict({"Resources": {
                "VPC": {"Type": "NetworkContainer", "Condition": "Nope"},
            }}, "g")

    def test_condition_cannot_reference_resource(self):
        with pytest.raises(ParseError, match="only reference parameters"):
            parse_template_dict({
                "Conditions": {"C": {"Fn::Equals": [{"Ref": "VPC"}, "x"]}},
                "Resources": _vpc(),
            }, "g")

    def test_unknown_mapping(self):
        with pytest.raises(ParseError, match="Unknown mapping"):
            parse_template_dict({"Resources": {
                "I": {"Type": "ComputeInstance",
                      "Properties": {"ImageId": {"Fn::FindInMap": ["Nope", "a", "b"]}}},
            }}, "g")

    def test_duplicate_literal_export(self):
        with pytest.raises(ParseError, match="Duplicate export"):
            parse_template_dict({
                "Resources": _vpc(),
                "Outputs": {
                    "A": {"Value": {"Ref": "VPC"}, "Export": {"Name": "Same"}},
                    "B": {"Value": {"Ref": "VPC"}, "Export": {"Name": "Same"}},
                },
            }, "g")

    def test_duplicate_logical_name_in_file(self):
        path = _write_text(
            "Resources:\n"
            "  VPC:\n    Type: NetworkContainer\n"
            "  VPC:\n    Type: Subnet\n"
        )
        with pytest.raises(ParseError, match="Duplicate key 'VPC'"):
            parse_template_file(path)
        os.unlink(path)

    def test_depends_on_string_or_list(self):
        graph = parse_template_dict({"Resources": {
            **_vpc(),
            "A": {"Type": "Gateway", "DependsOn": "VPC"},
            "B": {"Type": "Gateway", "DependsOn": ["VPC", "A"]},
        }}, "g")
        assert graph.nodes["A"].depends_on == ["VPC"]
        assert graph.nodes["B"].depends_on == ["VPC", "A"]


# ─────────────────────────────────────────────
# DEPENDENCIES + ORDER
# ─────────────────────────────────────────────
class TestGraph:
    def test_implicit_and_explicit_union(self):
        graph = parse_template_dict({"Resources": {
            **_vpc(),
            "Igw": {"Type": "Gateway"},
            "Subnet": {"Type": "Subnet", "DependsOn": "Igw",
                       "Properties": {"VpcId": {"Ref": "VPC"}}},
        }}, "g")
        assert set(graph.nodes["Subnet"].dependencies) == {"Igw", "VPC"}

    def test_sub_and_getatt_infer_dependencies(self):
        graph = parse_template_dict({"Resources": {
            **_vpc(),
            "Sg": {"Type": "SecurityGroup",
                   "Properties": {"GroupName": {"Fn::Sub": "${VPC}-sg"}}},
            "Subnet": {"Type": "Subnet",
                       "Properties": {"CidrBlock": {"Fn::GetAtt": ["VPC", "CidrBlock"]}}},
        }}, "g")
        assert graph.nodes["Sg"].dependencies == ["VPC"]
        assert graph.nodes["Subnet"].dependencies == ["VPC"]

    def test_parameters_are_not_dependencies(self):
        graph = parse_template_dict({
            "Parameters": {"Cidr": {"Type": "String", "Default": "10.0.0.0/16"}},
            "Resources": {"VPC": {"Type": "NetworkContainer",
                                  "Properties": {"CidrBlock": {"Ref": "Cidr"}}}},
        }, "g")
        assert graph.nodes["VPC"].dependencies == []

    def test_order_respects_dependencies(self):
        graph = parse_template_file(os.path.join(TEMPLATES, "network.yaml"))
        order = graph.topological_order()
        assert len(order) == len(graph)
        _assert_order(graph, order)

    def test_large_graph(self):
        resources = {"N0": {"Type": "Gateway"}}
        for i in range(1, 60):
            deps = [f"N{j}" for j in range(max(0, i - 3), i) if (i + j) % 2 == 0]
            resources[f"N{i}"] = {"Type": "Gateway", "DependsOn": deps or [f"N{i - 1}"]}
        graph = parse_template_dict({"Resources": resources}, "g")
        order = graph.topological_order()
        assert sorted(order) == sorted(resources)
        _assert_order(graph, order)

    def test_independent_nodes_keep_declaration_order(self):
        graph = parse_template_dict({"Resources": {
            "C": {"Type": "Gateway"}, "A": {"Type": "Gateway"}, "B": {"Type": "Gateway"},
        }}, "g")
        assert graph.topological_order() == ["C", "A", "B"]

    def test_three_node_cycle(self):
        with pytest.raises(CyclicDependencyError) as exc:
            parse_template_dict({"Resources": {
                "A": {"Type": "Gateway", "DependsOn": "B"},
                "B": {"Type": "Gateway", "DependsOn": "C"},
                "C": {"Type": "Gateway", "DependsOn": "A"},
            }}, "g")
        assert set(exc.value.cycle) == {"A", "B", "C"}
        for name in ("A", "B", "C"):
            assert name in str(exc.value)

    def test_cycle_through_references(self):
        with pytest.raises(CyclicDependencyError) as exc:
            parse_template_dict({"Resources": {
                "Ok": {"Type": "Gateway"},
                "X": {"Type": "Subnet", "Properties": {"VpcId": {"Ref": "Y"}}},
                "Y": {"Type": "Subnet", "Properties": {"VpcId": {"Ref": "X"}}},
            }}, "g")
        assert set(exc.value.cycle) == {"X", "Y"}

    def test_cycle_is_a_parse_error(self):
        with pytest.raises(ParseError):
            parse_template_dict({"Resources": {
                "A": {"Type": "Gateway", "DependsOn": "B"},
                "B": {"Type": "Gateway", "DependsOn": "A"},
            }}, "g")

    def test_layers_and_dependents(self):
        graph = parse_template_file(os.path.join(TEMPLATES, "peering.yaml"))
        layers = graph.layers()
        assert layers[0] == ["VPCPeeringConnection", "PeerIngressSecurityGroup"]
        assert sorted(layers[1]) == ["RouteFromVpcAToVpcB", "RouteFromVpcBToVpcA"]
        assert sorted(graph.dependents("VPCPeeringConnection")) == [
            "RouteFromVpcAToVpcB", "RouteFromVpcBToVpcA",
        ]

    def test_transitive_dependents(self):
        graph = parse_template_file(os.path.join(TEMPLATES, "network.yaml"))
        below = graph.transitive_dependents("InternetGateway")
        assert below == {"GatewayAttachment", "PublicDefaultRoute"}


# ─────────────────────────────────────────────
# PARAMETER SOURCES
# ─────────────────────────────────────────────
class TestParamSources:
    def test_parse_param_args(self):
        assert parse_param_args(["A=1", "B=x=y"]) == {"A": "1", "B": "x=y"}

    def test_parse_param_args_invalid(self):
        with pytest.raises(ValueError, match="key=value"):
            parse_param_args(["novalue"])

    def test_merge_order(self):
        first = _write_text("VpcCidr: 10.1.0.0/16\nEnvironment: dev\n")
        second = _write_text("Environment: prod\n")
        merged = merge_param_sources([first, second], ["VpcCidr=10.9.0.0/16"])
        os.unlink(first)
        os.unlink(second)
        assert merged == {"VpcCidr": "10.9.0.0/16", "Environment": "prod"}

    def test_param_file_not_mapping(self):
        path = _write_text("- a\n- b\n")
        with pytest.raises(ValueError, match="mapping"):
            merge_param_sources([path])
        os.unlink(path)
