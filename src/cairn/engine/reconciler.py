"""
cairn.engine.reconciler — Reconciliation engine.

Drives every node of a prepared plan toward Created, then deletes what
the new graph no longer declares.

    Pending → Creating → Created | Failed
    Created → UpdateInProgress → Created | Failed
    Created → DeleteInProgress → Deleted | Failed

Nodes run on a bounded worker pool. A node starts once all of its
dependencies are Created (deletions: once all of its dependents are
Deleted). When a node fails, nothing that waits on it is started;
unrelated branches already running finish. Nothing is retried.

A kind change is a replacement: the new resource is created in place
of the old one, and the old provider id is kept in ``retired`` until a
successful apply deletes it.

Cancellation is cooperative: in-flight operations finish, no new ones
start. A node whose operation exceeds ``node_timeout`` is marked Failed
with OperationTimeoutError; if the operation completes late its
provider id is still recorded.
"""

from __future__ import annotations

import logging
import threading
import time
from concurrent.futures import FIRST_COMPLETED, Future, ThreadPoolExecutor, wait
from dataclasses import dataclass, field
from typing import Any, Callable

from cairn.engine.plan import Action, ApplyPlan
from cairn.errors import (
    CairnError,
    DependencyStillActiveError,
    OperationTimeoutError,
    ProviderOperationError,
)
from cairn.provider.base import Provider
from cairn.resolve.evaluator import evaluate
from cairn.state.snapshot import NodeRecord
from cairn.template.graph import NodeStatus

logger = logging.getLogger(__name__)

ON_FAILURE_MODES = ("keep", "rollback")


@dataclass
class NodeResult:
    """Final state of one node after an apply."""
    name: str
    kind: str
    type_name: str = ""
    status: NodeStatus = NodeStatus.PENDING
    action: Action | None = None
    provider_id: str | None = None
    properties: dict[str, Any] = field(default_factory=dict)
    attributes: dict[str, Any] = field(default_factory=dict)
    dependencies: list[str] = field(default_factory=list)
    retired: list[str] = field(default_factory=list)
    error: CairnError | None = None

    def adopt(self, record: NodeRecord) -> None:
        """Take over what is known about an existing resource."""
        self.provider_id = record.provider_id
        self.properties = record.properties
        self.attributes = record.attributes
        self.dependencies = list(record.dependencies)
        self.retired = list(record.retired)

    def to_record(self) -> NodeRecord:
        return NodeRecord(
            name=self.name,
            kind=self.kind,
            type_name=self.type_name,
            status=self.status.value,
            provider_id=self.provider_id,
            properties=self.properties,
            attributes=self.attributes,
            dependencies=list(self.dependencies),
            error=str(self.error) if self.error else None,
            retired=list(self.retired),
        )

    @classmethod
    def from_record(cls, record: NodeRecord, action: Action | None = None) -> "NodeResult":
        res = cls(
            name=record.name,
            kind=record.kind,
            type_name=record.type_name,
            status=NodeStatus.CREATED,
            action=action,
        )
        res.adopt(record)
        return res


@dataclass
class ApplyResult:
    graph: str
    success: bool = False
    nodes: dict[str, NodeResult] = field(default_factory=dict)
    outputs: dict[str, Any] = field(default_factory=dict)
    exports: dict[str, Any] = field(default_factory=dict)
    imports: list[str] = field(default_factory=list)
    cancelled: bool = False
    rolled_back: bool = False
    operations: int = 0
    error: CairnError | None = None

    @property
    def failed(self) -> list[str]:
        return [n.name for n in self.nodes.values() if n.status == NodeStatus.FAILED]

    @property
    def errors(self) -> list[CairnError]:
        errors = [n.error for n in self.nodes.values() if n.error is not None]
        if self.error is not None:
            errors.append(self.error)
        return errors


@dataclass
class _Outcome:
    action: Action
    provider_id: str
    properties: dict[str, Any]
    attributes: dict[str, Any]
    retired: list[str] = field(default_factory=list)


class Reconciler:
    """Walks a plan against a provider."""

    def __init__(
        self,
        provider: Provider,
        max_workers: int = 4,
        node_timeout: float | None = None,
        on_failure: str = "keep",
        poll_interval: float = 0.05,
    ):
        if on_failure not in ON_FAILURE_MODES:
            raise ValueError(
                f"on_failure must be one of {ON_FAILURE_MODES}, got '{on_failure}'"
            )
        if max_workers < 1:
            raise ValueError("max_workers must be at least 1")
        self.provider = provider
        self.max_workers = max_workers
        self.node_timeout = node_timeout
        self.on_failure = on_failure
        self.poll_interval = poll_interval
        self._lock = threading.Lock()
        self._operations = 0

    # ─────────────────────────────────────────────
    # Apply
    # ─────────────────────────────────────────────
    def reconcile(
        self,
        plan: ApplyPlan,
        cancel: threading.Event | None = None,
    ) -> ApplyResult:
        """Converge the plan's graph. Node failures are reported, not raised."""
        cancel = cancel or threading.Event()
        graph = plan.graph
        ctx = plan.context
        self._operations = 0

        result = ApplyResult(graph=graph.name, imports=plan.imports)
        for name in plan.order:
            node = graph.nodes[name]
            res = NodeResult(name=name, kind=node.kind.value, type_name=node.type_name)
            prior = plan.prior.get(name)
            if prior is not None and prior.exists:
                res.adopt(prior)
            else:
                res.dependencies = list(plan.dependencies[name])
            result.nodes[name] = res

        def converge(name: str) -> _Outcome:
            return self._converge(plan, result.nodes[name])

        def finished(name: str, outcome: _Outcome) -> None:
            res = result.nodes[name]
            res.action = outcome.action
            res.provider_id = outcome.provider_id
            res.properties = outcome.properties
            res.attributes = outcome.attributes
            res.dependencies = list(plan.dependencies[name])
            res.retired = outcome.retired
            res.status = NodeStatus.CREATED
            ctx.resources[name] = {"Ref": outcome.provider_id, **outcome.attributes}

        def failed(name: str, error: CairnError, late: Any) -> None:
            res = result.nodes[name]
            res.status = NodeStatus.FAILED
            res.error = error
            if isinstance(late, _Outcome):
                res.action = late.action
                res.provider_id = late.provider_id
                res.properties = late.properties
                res.attributes = late.attributes
                res.retired = late.retired

        self._walk(plan.order, plan.dependencies, converge, finished, failed, cancel)

        result.cancelled = cancel.is_set()
        if self._succeeded(result) and not result.cancelled:
            self._remove(plan, result, cancel)

        result.success = self._succeeded(result) and not result.cancelled
        if result.success:
            try:
                self._collect_outputs(plan, result)
            except CairnError as e:
                result.success = False
                result.error = e
        if not result.success and self.on_failure == "rollback":
            self._rollback(plan, result)

        result.operations = self._operations
        level = logging.INFO if result.success else logging.WARNING
        logger.log(level, "apply %s %s: %d provider operation(s), failed=%s",
                   graph.name, "converged" if result.success else "failed",
                   result.operations, result.failed)
        return result

    def _converge(self, plan: ApplyPlan, res: NodeResult) -> _Outcome:
        node = plan.graph.nodes[res.name]
        properties = evaluate(node.properties, plan.context, res.name)
        prior = plan.prior.get(res.name)
        retired = list(prior.retired) if prior is not None else []

        if prior is not None and prior.exists and prior.kind == node.kind.value:
            if prior.status == NodeStatus.CREATED.value and prior.properties == properties:
                logger.debug("%s unchanged", res.name)
                return _Outcome(Action.NOOP, prior.provider_id, properties,
                                prior.attributes, retired)
            self._set_status(res, NodeStatus.UPDATE_IN_PROGRESS)
            self._call(res.name, self.provider.update_resource, prior.provider_id, properties)
            attributes = self._call(res.name, self.provider.describe_resource,
                                    prior.provider_id, mutating=False)
            return _Outcome(Action.UPDATE, prior.provider_id, properties, attributes, retired)

        self._set_status(res, NodeStatus.CREATING)
        provider_id = self._call(res.name, self.provider.create_resource, node.kind, properties)
        attributes = self._call(res.name, self.provider.describe_resource, provider_id,
                                mutating=False)
        if prior is not None and prior.exists:
            logger.info("%s replaced: %s -> %s", res.name, prior.provider_id, provider_id)
            return _Outcome(Action.REPLACE, provider_id, properties, attributes,
                            retired + [prior.provider_id])
        return _Outcome(Action.CREATE, provider_id, properties, attributes, retired)

    @staticmethod
    def _succeeded(result: ApplyResult) -> bool:
        return all(
            r.error is None and r.status in (NodeStatus.CREATED, NodeStatus.DELETED)
            for r in result.nodes.values()
        )

    # ─────────────────────────────────────────────
    # Delete
    # ─────────────────────────────────────────────
    def destroy(
        self,
        graph_name: str,
        nodes: dict[str, NodeRecord],
        cancel: threading.Event | None = None,
    ) -> ApplyResult:
        """Delete every recorded node in reverse dependency order."""
        cancel = cancel or threading.Event()
        self._operations = 0
        result = ApplyResult(graph=graph_name)
        for name, rec in nodes.items():
            if rec.exists or rec.retired:
                result.nodes[name] = NodeResult.from_record(rec, Action.DELETE)

        self._delete_retired(result)
        live = [n for n, r in result.nodes.items() if r.provider_id is not None]
        for name, res in result.nodes.items():
            if res.provider_id is None and res.error is None:
                res.status = NodeStatus.DELETED
        self._delete_nodes(result, live, cancel)

        result.cancelled = cancel.is_set()
        result.success = not result.cancelled and all(
            r.status == NodeStatus.DELETED and r.error is None
            for r in result.nodes.values()
        )
        result.operations = self._operations
        logger.log(logging.INFO if result.success else logging.WARNING,
                   "delete %s %s: %d provider operation(s)", graph_name,
                   "complete" if result.success else "failed", result.operations)
        return result

    def _remove(self, plan: ApplyPlan, result: ApplyResult, cancel: threading.Event) -> None:
        """Delete removed nodes, then retired halves of replacements."""
        for name in plan.removals:
            result.nodes[name] = NodeResult.from_record(plan.prior[name], Action.DELETE)
        if plan.removals:
            self._delete_nodes(result, list(plan.removals), cancel)
        if not self._succeeded(result):
            return
        self._delete_retired(result)

    def _delete_retired(self, result: ApplyResult) -> None:
        for res in list(result.nodes.values()):
            remaining: list[str] = []
            for provider_id in res.retired:
                try:
                    self._call(res.name, self.provider.delete_resource, provider_id)
                except CairnError as e:
                    logger.warning("could not delete retired %s of %s: %s",
                                   provider_id, res.name, e)
                    res.error = e
                    remaining.append(provider_id)
            res.retired = remaining

    def _delete_nodes(self, result: ApplyResult, names: list[str],
                      cancel: threading.Event, check_holders: bool = True) -> None:
        deleting = set(names)
        # A node waits for every dependent that is deleted alongside it
        dependents: dict[str, list[str]] = {name: [] for name in names}
        for name in names:
            for dep in result.nodes[name].dependencies:
                if dep in deleting:
                    dependents[dep].append(name)

        def delete(name: str) -> None:
            res = result.nodes[name]
            holders = check_holders and [
                other.name for other in result.nodes.values()
                if name in other.dependencies
                and other.name not in deleting
                and other.provider_id is not None
                and other.status != NodeStatus.DELETED
            ]
            if holders:
                raise DependencyStillActiveError(
                    f"Still referenced by {sorted(holders)}", node=name,
                )
            self._set_status(res, NodeStatus.DELETE_IN_PROGRESS)
            self._call(name, self.provider.delete_resource, res.provider_id)

        def finished(name: str, _: Any) -> None:
            res = result.nodes[name]
            res.status = NodeStatus.DELETED
            res.provider_id = None

        def failed(name: str, error: CairnError, late: Any) -> None:
            res = result.nodes[name]
            res.error = error
            if late is not None:
                res.status = NodeStatus.DELETED
                res.provider_id = None
            else:
                res.status = NodeStatus.FAILED

        self._walk(names, dependents, delete, finished, failed, cancel)

        if cancel.is_set():
            return
        for name in names:
            res = result.nodes[name]
            if res.status == NodeStatus.DELETE_IN_PROGRESS or (
                res.status == NodeStatus.CREATED and res.error is None
            ):
                blockers = [d for d in dependents[name]
                            if result.nodes[d].status != NodeStatus.DELETED]
                res.status = NodeStatus.CREATED
                res.error = DependencyStillActiveError(
                    f"Dependents were not deleted: {sorted(blockers)}", node=name,
                )

    # ─────────────────────────────────────────────
    # Rollback
    # ─────────────────────────────────────────────
    def _rollback(self, plan: ApplyPlan, result: ApplyResult) -> None:
        """Undo this apply: restore what it updated, delete what it created."""
        logger.warning("rolling back %s", plan.graph.name)

        for name in reversed(plan.order):
            res = result.nodes[name]
            if res.action != Action.UPDATE or res.status != NodeStatus.CREATED:
                continue
            prior = plan.prior[name]
            try:
                self._call(name, self.provider.update_resource,
                           prior.provider_id, prior.properties)
            except CairnError as e:
                logger.error("rollback of %s failed: %s", name, e)
                res.status = NodeStatus.FAILED
                res.error = e
                continue
            res.adopt(prior)
            res.action = None

        created = [
            name for name in plan.order
            if result.nodes[name].provider_id is not None
            and result.nodes[name].action in (Action.CREATE, Action.REPLACE)
        ]
        if created:
            self._delete_nodes(result, created, threading.Event(), check_holders=False)
        for name in created:
            res = result.nodes[name]
            if res.status != NodeStatus.DELETED:
                continue
            prior = plan.prior.get(name)
            if res.action == Action.REPLACE and prior is not None:
                res.adopt(prior)
                res.status = NodeStatus.CREATED
                res.action = None
        result.rolled_back = True

    # ─────────────────────────────────────────────
    # Outputs
    # ─────────────────────────────────────────────
    def _collect_outputs(self, plan: ApplyPlan, result: ApplyResult) -> None:
        ctx = plan.context
        for output in plan.graph.outputs.values():
            if output.condition is not None and not ctx.conditions[output.condition]:
                continue
            value = evaluate(output.value, ctx, output.name)
            result.outputs[output.name] = value
            if output.export_name is not None:
                result.exports[str(evaluate(output.export_name, ctx, output.name))] = value

    # ─────────────────────────────────────────────
    # Scheduling
    # ─────────────────────────────────────────────
    def _walk(
        self,
        names: list[str],
        waits_on: dict[str, list[str]],
        task: Callable[[str], Any],
        on_done: Callable[[str, Any], None],
        on_error: Callable[[str, CairnError, Any], None],
        cancel: threading.Event,
    ) -> None:
        """Run ``task`` over the ready set of a dependency graph.

        A name is ready once every name it waits on is done. Names that
        wait on a failed name are never started.
        """
        done: set[str] = set()
        started: set[str] = set()
        running: dict[Future, tuple[str, float]] = {}
        abandoned: dict[Future, str] = {}
        cancel_logged = False

        def ready() -> list[str]:
            return [
                n for n in names
                if n not in started and all(w in done for w in waits_on.get(n, []))
            ]

        def busy() -> int:
            return len(running) + sum(1 for f in abandoned if not f.done())

        with ThreadPoolExecutor(max_workers=self.max_workers,
                                thread_name_prefix="cairn-node") as executor:
            while True:
                if not cancel.is_set():
                    for name in ready():
                        if busy() >= self.max_workers:
                            break
                        started.add(name)
                        running[executor.submit(task, name)] = (name, time.monotonic())
                elif not cancel_logged:
                    cancel_logged = True
                    logger.info("cancellation observed; waiting for %d in-flight operation(s)",
                                len(running))

                if not running:
                    break

                completed, _ = wait(list(running), timeout=self.poll_interval,
                                    return_when=FIRST_COMPLETED)
                for future in completed:
                    name, _started_at = running.pop(future)
                    error = future.exception()
                    if error is None:
                        done.add(name)
                        on_done(name, future.result())
                    else:
                        logger.warning("%s failed: %s", name, error)
                        on_error(name, self._wrap(name, error), None)

                if self.node_timeout is not None:
                    now = time.monotonic()
                    for future, (name, started_at) in list(running.items()):
                        if now - started_at > self.node_timeout:
                            running.pop(future)
                            abandoned[future] = name
                            logger.warning("%s timed out after %ss", name, self.node_timeout)
                            on_error(name, OperationTimeoutError(
                                f"Operation exceeded {self.node_timeout}s", node=name,
                            ), None)

        # Leaving the executor waited for abandoned operations
        for future, name in abandoned.items():
            if future.exception() is None:
                on_error(name, OperationTimeoutError(
                    f"Operation exceeded {self.node_timeout}s (completed late)", node=name,
                ), future.result() or True)

    def _wrap(self, name: str, error: BaseException) -> CairnError:
        if isinstance(error, CairnError):
            if error.node is None:
                error.node = name
                error.args = (error._format(),)
            return error
        wrapped = ProviderOperationError(f"{type(error).__name__}: {error}", node=name)
        wrapped.__cause__ = error
        return wrapped

    def _call(self, name: str, fn: Callable[..., Any], *args: Any,
              mutating: bool = True) -> Any:
        try:
            value = fn(*args)
        except CairnError:
            raise
        except Exception as e:
            raise ProviderOperationError(f"{type(e).__name__}: {e}", node=name) from e
        if mutating:
            with self._lock:
                self._operations += 1
        return value

    def _set_status(self, res: NodeResult, status: NodeStatus) -> None:
        with self._lock:
            if res.status != NodeStatus.FAILED:
                res.status = status
        logger.debug("%s -> %s", res.name, status.value)
