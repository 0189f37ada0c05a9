"""cairn.engine — Planning, reconciliation, apply and delete."""

from cairn.engine.plan import Action, ApplyPlan, PlannedChange, build_context, prepare_apply
from cairn.engine.reconciler import ApplyResult, NodeResult, Reconciler
from cairn.engine.apply import apply_stack, delete_stack, plan_stack, load_graph

__all__ = [
    "Action",
    "ApplyPlan",
    "PlannedChange",
    "build_context",
    "prepare_apply",
    "ApplyResult",
    "NodeResult",
    "Reconciler",
    "apply_stack",
    "delete_stack",
    "plan_stack",
    "load_graph",
]
