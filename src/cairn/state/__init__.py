"""cairn.state — Stack state store."""

from cairn.state.snapshot import GraphSnapshot, NodeRecord, CONVERGED, FAILED
from cairn.state.store import StateStore

__all__ = [
    "GraphSnapshot",
    "NodeRecord",
    "CONVERGED",
    "FAILED",
    "StateStore",
]
