"""
cairn — Declarative network infrastructure.

Templates in, converged resource graphs out:

    from cairn import StateStore, LocalProvider, apply_stack

    store = StateStore("~/.cairn/state")
    result = apply_stack("templates/vpc-a.yaml", store, LocalProvider(), name="Network")
"""

from cairn.errors import CairnError
from cairn.template import (
    ResourceGraph,
    ResourceNode,
    ResourceKind,
    NodeStatus,
    parse_template_file,
    parse_template_dict,
)
from cairn.resolve import MappingTable, ImportResolver
from cairn.state import StateStore, GraphSnapshot, NodeRecord
from cairn.provider import Provider, LocalProvider, get_provider, register_provider
from cairn.engine import (
    ApplyResult,
    Reconciler,
    apply_stack,
    delete_stack,
    plan_stack,
    prepare_apply,
)

__version__ = "0.1.0"

__all__ = [
    # errors
    "CairnError",
    # template
    "ResourceGraph",
    "ResourceNode",
    "ResourceKind",
    "NodeStatus",
    "parse_template_file",
    "parse_template_dict",
    # resolve
    "MappingTable",
    "ImportResolver",
    # state
    "StateStore",
    "GraphSnapshot",
    "NodeRecord",
    # provider
    "Provider",
    "LocalProvider",
    "get_provider",
    "register_provider",
    # engine
    "ApplyResult",
    "Reconciler",
    "apply_stack",
    "delete_stack",
    "plan_stack",
    "prepare_apply",
]
