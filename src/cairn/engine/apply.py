"""
cairn.engine.apply — Apply and delete whole graphs.

Parses the template, resolves parameters and imports, reconciles
against the provider and records the outcome in the state store.

    cairn apply templates/vpc-a.yaml --name Network --param VpcCidr=10.0.0.0/16
    cairn delete Network
"""

from __future__ import annotations

import logging
import threading
from pathlib import Path
from typing import Any

from cairn.engine.plan import ApplyPlan, prepare_apply
from cairn.engine.reconciler import ApplyResult, Reconciler
from cairn.errors import ExportConflictError, GraphNotFoundError
from cairn.provider.base import Provider
from cairn.resolve.imports import ImportResolver
from cairn.state.snapshot import CONVERGED, GraphSnapshot, NodeRecord
from cairn.state.store import StateStore
from cairn.template.graph import NodeStatus, ResourceGraph
from cairn.template.parser import parse_template_file
from cairn.template.values import merge_param_sources

logger = logging.getLogger(__name__)


def load_graph(template: str | Path | ResourceGraph, name: str | None = None) -> ResourceGraph:
    """Accept a template path or an already parsed graph."""
    if isinstance(template, ResourceGraph):
        if name:
            template.name = name
        return template
    return parse_template_file(template, name)


def plan_stack(
    template: str | Path | ResourceGraph,
    store: StateStore,
    name: str | None = None,
    overrides: dict[str, Any] | None = None,
    param_files: list[str | Path] | None = None,
    param_args: list[str] | None = None,
    region: str = "us-east-1",
) -> ApplyPlan:
    """Resolve a template against recorded state without touching a provider."""
    graph = load_graph(template, name)
    params = _overrides(overrides, param_files, param_args)
    return prepare_apply(
        graph,
        params,
        region=region,
        import_resolver=ImportResolver(store, graph.name),
        prior=store.get(graph.name),
        importers_of=store.importers_of,
        export_owner=store.export_owner,
    )


def apply_stack(
    template: str | Path | ResourceGraph,
    store: StateStore,
    provider: Provider,
    name: str | None = None,
    overrides: dict[str, Any] | None = None,
    param_files: list[str | Path] | None = None,
    param_args: list[str] | None = None,
    region: str = "us-east-1",
    max_workers: int = 4,
    node_timeout: float | None = None,
    on_failure: str = "keep",
    cancel: threading.Event | None = None,
) -> ApplyResult:
    """Converge one graph.

    Errors found before the first provider call (parse, parameters,
    mappings, conditions, imports, export removal) are raised. Node
    failures are reported in the returned ApplyResult.

    Raises:
        CairnError: pre-flight failure, nothing was changed
    """
    graph = load_graph(template, name)
    params = _overrides(overrides, param_files, param_args)
    reconciler = Reconciler(provider, max_workers=max_workers,
                            node_timeout=node_timeout, on_failure=on_failure)

    with store.begin_apply(graph.name):
        prior = store.get(graph.name)
        plan = prepare_apply(
            graph,
            params,
            region=region,
            import_resolver=ImportResolver(store, graph.name),
            prior=prior,
            importers_of=store.importers_of,
            export_owner=store.export_owner,
        )
        logger.info("applying %s: %d node(s), imports=%s",
                    graph.name, len(plan.order), plan.imports)
        result = reconciler.reconcile(plan, cancel)

        if result.success:
            snapshot = GraphSnapshot(
                name=graph.name,
                status=CONVERGED,
                region=region,
                source=graph.source,
                parameters=dict(plan.context.parameters),
                nodes={
                    n: r.to_record() for n, r in result.nodes.items()
                    if r.status != NodeStatus.DELETED
                },
                outputs=result.outputs,
                exports=result.exports,
                imports=result.imports,
            )
            try:
                store.record_apply(graph.name, snapshot)
                return result
            except ExportConflictError as e:
                result.success = False
                result.error = e
        store.record_failure(graph.name, _attempt(result), result.imports)
    return result


def delete_stack(
    name: str,
    store: StateStore,
    provider: Provider,
    max_workers: int = 4,
    node_timeout: float | None = None,
    cancel: threading.Event | None = None,
) -> ApplyResult:
    """Delete every resource of a recorded graph, then its record.

    The importer check runs while holding the graph's apply lock, so an
    apply that resolves one of its exports in the meantime is counted.

    Raises:
        GraphNotFoundError: nothing recorded under that name
        GraphInUseError: another graph imports one of its exports,
            recorded or mid-apply; raised before any provider call
    """
    if store.get(name) is None:
        raise GraphNotFoundError("No recorded graph", node=name)

    reconciler = Reconciler(provider, max_workers=max_workers, node_timeout=node_timeout)
    with store.begin_apply(name):
        store.check_not_imported(name)
        snapshot = store.get(name)
        result = reconciler.destroy(name, snapshot.live_nodes(), cancel)
        if result.success:
            store.delete_graph(name)
        else:
            store.record_failure(name, _attempt(result))
    return result


def _attempt(result: ApplyResult) -> dict[str, NodeRecord]:
    """Node records worth remembering after a failed apply."""
    return {
        n: r.to_record() for n, r in result.nodes.items()
        if r.status != NodeStatus.PENDING
        and (r.provider_id is not None or r.retired or r.status == NodeStatus.DELETED)
    }


def _overrides(
    overrides: dict[str, Any] | None,
    param_files: list[str | Path] | None,
    param_args: list[str] | None,
) -> dict[str, Any]:
    params = merge_param_sources(param_files, param_args)
    if overrides:
        params.update(overrides)
    return params
