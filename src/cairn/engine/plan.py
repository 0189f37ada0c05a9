"""
cairn.engine.plan — Pre-flight resolution and change planning.

prepare_apply() does everything that can fail before the first provider
call: parameters, conditions, mappings, imports, a dry-run of every
active node's properties and outputs, export-name ownership and the
export-removal check.
Any error raised here means zero provider operations.

The returned ApplyPlan also lists the expected change per node. The
list is a preview: properties that reference resources which do not
exist yet contain placeholders such as ``<VPC>`` and are reported as
updates; the reconciler makes the final decision with live values.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Callable

from cairn.errors import (
    DependencyStillActiveError,
    ExportConflictError,
    MissingDependencyError,
)
from cairn.resolve.evaluator import ResolutionContext, evaluate, evaluate_conditions
from cairn.resolve.params import MappingTable, resolve_parameters
from cairn.state.snapshot import GraphSnapshot, NodeRecord
from cairn.template.graph import NodeStatus, ResourceGraph

logger = logging.getLogger(__name__)


class Action(str, Enum):
    CREATE = "create"
    UPDATE = "update"
    REPLACE = "replace"
    DELETE = "delete"
    NOOP = "no-op"


@dataclass
class PlannedChange:
    name: str
    action: Action
    kind: str


@dataclass
class ApplyPlan:
    """Resolved, validated input to one reconcile."""
    graph: ResourceGraph
    context: ResolutionContext
    order: list[str]
    dependencies: dict[str, list[str]]
    removals: list[str] = field(default_factory=list)
    changes: list[PlannedChange] = field(default_factory=list)
    prior: dict[str, NodeRecord] = field(default_factory=dict)

    @property
    def imports(self) -> list[str]:
        return sorted(self.context.imports)

    def counts(self) -> dict[Action, int]:
        result = {a: 0 for a in Action}
        for change in self.changes:
            result[change.action] += 1
        return result


def build_context(
    graph: ResourceGraph,
    overrides: dict[str, Any] | None = None,
    region: str = "us-east-1",
    import_resolver: Callable[[str], Any] | None = None,
) -> ResolutionContext:
    """Resolve parameters and evaluate conditions for one apply."""
    ctx = ResolutionContext(
        stack_name=graph.name,
        region=region,
        parameters=resolve_parameters(graph.parameters, overrides),
        mappings={name: MappingTable(name, table) for name, table in graph.mappings.items()},
        condition_exprs=graph.conditions,
        declared=set(graph.nodes),
        import_resolver=import_resolver,
    )
    evaluate_conditions(ctx)
    ctx.active = {
        name for name, node in graph.nodes.items()
        if node.condition is None or ctx.conditions[node.condition]
    }
    return ctx


def prepare_apply(
    graph: ResourceGraph,
    overrides: dict[str, Any] | None = None,
    region: str = "us-east-1",
    import_resolver: Callable[[str], Any] | None = None,
    prior: GraphSnapshot | None = None,
    importers_of: Callable[[str], list[str]] | None = None,
    export_owner: Callable[[str], str | None] | None = None,
) -> ApplyPlan:
    """Validate and resolve everything ahead of the first provider call."""
    ctx = build_context(graph, overrides, region, import_resolver)
    prior_nodes = prior.live_nodes() if prior is not None else {}

    order = [name for name in graph.topological_order() if name in ctx.active]
    dependencies: dict[str, list[str]] = {}
    for name in order:
        node = graph.nodes[name]
        for dep in node.depends_on:
            if dep not in ctx.active:
                raise MissingDependencyError(
                    f"DependsOn '{dep}', which is excluded by its condition", node=name,
                )
        dependencies[name] = [d for d in node.dependencies if d in ctx.active]

    # Dry run: surfaces parameter/mapping/condition/import errors
    ctx.dry_run = True
    changes: list[PlannedChange] = []
    for name in order:
        node = graph.nodes[name]
        resolved = evaluate(node.properties, ctx, name)
        record = prior_nodes.get(name)
        action = _classify(node.kind.value, resolved, record)
        changes.append(PlannedChange(name, action, node.kind.value))
        if action in (Action.NOOP, Action.UPDATE) and record is not None:
            ctx.resources[name] = {"Ref": record.provider_id, **record.attributes}

    export_names: set[str] = set()
    for output in graph.outputs.values():
        if output.condition is not None and not ctx.conditions[output.condition]:
            continue
        evaluate(output.value, ctx, output.name)
        if output.export_name is not None:
            export_names.add(str(evaluate(output.export_name, ctx, output.name)))

    if export_owner is not None:
        for export_name in sorted(export_names):
            owner = export_owner(export_name)
            if owner is not None and owner != graph.name:
                raise ExportConflictError(
                    f"Export '{export_name}' is already published by graph '{owner}'",
                    node=graph.name,
                )

    removals = [name for name in prior_nodes if name not in ctx.active]
    for name in reversed(removals):
        changes.append(PlannedChange(name, Action.DELETE, prior_nodes[name].kind))

    if prior is not None and importers_of is not None:
        for export_name in prior.exports:
            if export_name in export_names:
                continue
            users = [g for g in importers_of(export_name) if g != graph.name]
            if users:
                raise DependencyStillActiveError(
                    f"Cannot remove export '{export_name}': imported by {users}",
                    node=graph.name,
                )

    ctx.dry_run = False
    ctx.resources = {}
    logger.debug("prepared %s: order=%s removals=%s", graph.name, order, removals)
    return ApplyPlan(
        graph=graph,
        context=ctx,
        order=order,
        dependencies=dependencies,
        removals=removals,
        changes=changes,
        prior=prior_nodes,
    )


def _classify(kind: str, resolved: dict[str, Any], record: NodeRecord | None) -> Action:
    if record is None or not record.exists:
        return Action.CREATE
    if record.kind != kind:
        return Action.REPLACE
    if record.status == NodeStatus.CREATED.value and record.properties == resolved:
        return Action.NOOP
    return Action.UPDATE
