"""cairn.template — Template parsing and the resource graph."""

from cairn.template.graph import (
    ResourceGraph, ResourceNode, ResourceKind, NodeStatus,
    ParameterSpec, OutputSpec,
)
from cairn.template.parser import parse_template_file, parse_template_dict
from cairn.template.values import merge_param_sources, parse_param_args

__all__ = [
    "ResourceGraph",
    "ResourceNode",
    "ResourceKind",
    "NodeStatus",
    "ParameterSpec",
    "OutputSpec",
    "parse_template_file",
    "parse_template_dict",
    "merge_param_sources",
    "parse_param_args",
]
