"""
cairn.state.store — Stack state store.

Holds the last-applied snapshot of every graph and the export table.
With a directory, every graph is persisted as ``<dir>/<name>.yaml``;
without one the store is in-memory.

Locking:
  - one exclusive lock per graph, held for the duration of an apply
    (``begin_apply``); a second apply of the same graph fails fast
  - one lock per export name; readers of an export wait only on
    writers of that same name
  - with a directory, the graph lock is also a file lock
    (``<dir>/.<name>.lock``) and every write runs under
    ``<dir>/.store.lock`` after re-reading the snapshots from disk,
    so separate processes sharing the directory see each other

Imports resolved by a graph that is still being applied are tracked as
pending until its apply ends; they block deletion of the exporter just
like recorded imports do.
"""

from __future__ import annotations

import logging
import os
import tempfile
import threading
from contextlib import ExitStack, contextmanager
from pathlib import Path
from typing import Any, Iterator

import portalocker
import yaml

from cairn.errors import (
    ApplyInProgressError,
    ExportConflictError,
    ExportNotFound,
    GraphInUseError,
    GraphNotFoundError,
    StateLockError,
    UnresolvedImportError,
)
from cairn.state.snapshot import FAILED, GraphSnapshot, NodeRecord

logger = logging.getLogger(__name__)

STORE_LOCK_TIMEOUT = 60


class StateStore:
    """Durable graph snapshots + export table."""

    def __init__(self, path: str | Path | None = None):
        self.path = Path(path) if path is not None else None
        self._guard = threading.Lock()
        self._graphs: dict[str, GraphSnapshot] = {}
        self._exports: dict[str, tuple[str, Any]] = {}
        self._graph_locks: dict[str, threading.Lock] = {}
        self._export_locks: dict[str, threading.Lock] = {}
        self._in_progress: set[str] = set()
        self._pending: dict[str, set[str]] = {}

        self._refresh()

    # ─────────────────────────────────────────────
    # Read
    # ─────────────────────────────────────────────
    def get(self, name: str) -> GraphSnapshot | None:
        self._refresh()
        with self._guard:
            return self._graphs.get(name)

    def list_graphs(self) -> list[str]:
        self._refresh()
        with self._guard:
            return sorted(self._graphs)

    def exports(self) -> dict[str, tuple[str, Any]]:
        """export name → (owning graph, value)."""
        self._refresh()
        with self._guard:
            return dict(self._exports)

    def export_owner(self, name: str) -> str | None:
        self._refresh()
        with self._guard:
            entry = self._exports.get(name)
        return entry[0] if entry is not None else None

    def get_export(self, name: str, importer: str | None = None) -> Any:
        """Return an export's value.

        When ``importer`` is being applied, the import is remembered as
        pending until that apply ends.

        Raises:
            ExportNotFound: never published
            UnresolvedImportError: publisher is being applied
        """
        self._refresh()
        with self._export_lock(name):
            # Record first: a delete that starts after this point sees us
            pending = importer is not None and self._add_pending(importer, name)
            with self._guard:
                entry = self._exports.get(name)
            if entry is not None and not self._is_busy(entry[0]):
                return entry[1]
            if pending:
                self._drop_pending(importer, name)
            if entry is None:
                raise ExportNotFound(f"No export named '{name}'")
            raise UnresolvedImportError(
                f"Export '{name}' is not visible: graph '{entry[0]}' is being applied"
            )

    def importers_of(self, export_name: str) -> list[str]:
        """Graphs that import ``export_name``, recorded or pending."""
        self._refresh()
        with self._guard:
            users = {g.name for g in self._graphs.values() if export_name in g.imports}
        users |= self._pending_importers(export_name)
        return sorted(users)

    def is_applying(self, name: str) -> bool:
        return self._is_busy(name)

    # ─────────────────────────────────────────────
    # Write
    # ─────────────────────────────────────────────
    @contextmanager
    def begin_apply(self, name: str) -> Iterator[None]:
        """Hold the graph's exclusive lock for one apply."""
        with self._guard:
            lock = self._graph_locks.setdefault(name, threading.Lock())
        if not lock.acquire(blocking=False):
            raise ApplyInProgressError("Graph is already being applied", node=name)
        try:
            with self._graph_file_lock(name):
                with self._guard:
                    self._in_progress.add(name)
                try:
                    yield
                finally:
                    with self._guard:
                        self._in_progress.discard(name)
                        self._pending.pop(name, None)
                    if self.path is not None:
                        self._imports_file(name).unlink(missing_ok=True)
        finally:
            lock.release()

    def record_apply(self, name: str, snapshot: GraphSnapshot) -> None:
        """Atomically replace a graph's snapshot and its exports.

        Either the new snapshot and its exports become visible together,
        or the previous snapshot stays in place.

        Raises:
            ExportConflictError: another graph owns one of the export names
        """
        with self._store_lock():
            self._refresh()
            with self._guard:
                previous = self._graphs.get(name)
            names = set(snapshot.exports)
            if previous is not None:
                names |= set(previous.exports)

            with ExitStack() as stack:
                for export_name in sorted(names):
                    stack.enter_context(self._export_lock(export_name))
                with self._guard:
                    for export_name in snapshot.exports:
                        owner = self._exports.get(export_name, (name, None))[0]
                        if owner != name:
                            raise ExportConflictError(
                                f"Export '{export_name}' is already published "
                                f"by graph '{owner}'",
                                node=name,
                            )
                self._write(snapshot)
                with self._guard:
                    if previous is not None:
                        for export_name in previous.exports:
                            self._exports.pop(export_name, None)
                    for export_name, value in snapshot.exports.items():
                        self._exports[export_name] = (name, value)
                    self._graphs[name] = snapshot
        logger.info("recorded graph %s (%d nodes, %d exports)",
                    name, len(snapshot.nodes), len(snapshot.exports))

    def record_failure(
        self,
        name: str,
        attempt: dict[str, NodeRecord],
        imports: list[str] | None = None,
    ) -> GraphSnapshot:
        """Keep the previous snapshot visible, remember the partial attempt."""
        with self._store_lock():
            self._refresh()
            with self._guard:
                previous = self._graphs.get(name)
            if previous is None:
                snapshot = GraphSnapshot(name=name, status=FAILED)
            else:
                snapshot = GraphSnapshot(
                    name=name,
                    status=FAILED,
                    region=previous.region,
                    source=previous.source,
                    parameters=previous.parameters,
                    nodes=previous.nodes,
                    outputs=previous.outputs,
                    exports=previous.exports,
                    imports=previous.imports,
                )
            snapshot.imports = sorted(set(snapshot.imports) | set(imports or []))
            snapshot.last_attempt = attempt
            self._write(snapshot)
            with self._guard:
                self._graphs[name] = snapshot
        logger.warning("recorded failed apply of graph %s", name)
        return snapshot

    def check_not_imported(self, name: str) -> None:
        """Fail unless no other graph imports one of ``name``'s exports.

        Call it while holding ``begin_apply(name)``: from then on the
        exports are invisible, so no new importer can appear.

        Raises:
            GraphNotFoundError: nothing recorded under that name
            GraphInUseError: recorded or pending importers exist
        """
        with self._store_lock():
            self._refresh()
            snapshot = self._require(name)
            with ExitStack() as stack:
                for export_name in sorted(snapshot.exports):
                    stack.enter_context(self._export_lock(export_name))
                self._raise_if_imported(snapshot)

    def delete_graph(self, name: str) -> None:
        """Remove a graph's record and exports.

        Raises:
            GraphNotFoundError: nothing recorded under that name
            GraphInUseError: another graph imports one of its exports
        """
        with self._store_lock():
            self._refresh()
            snapshot = self._require(name)
            with ExitStack() as stack:
                for export_name in sorted(snapshot.exports):
                    stack.enter_context(self._export_lock(export_name))
                self._raise_if_imported(snapshot)
                if self.path is not None:
                    self._file(name).unlink(missing_ok=True)
                with self._guard:
                    for export_name in snapshot.exports:
                        self._exports.pop(export_name, None)
                    self._graphs.pop(name, None)
        logger.info("deleted graph %s", name)

    # ─────────────────────────────────────────────
    # Import tracking
    # ─────────────────────────────────────────────
    def _require(self, name: str) -> GraphSnapshot:
        with self._guard:
            snapshot = self._graphs.get(name)
        if snapshot is None:
            raise GraphNotFoundError("No recorded graph", node=name)
        return snapshot

    def _raise_if_imported(self, snapshot: GraphSnapshot) -> None:
        with self._guard:
            users = {
                export_name: {
                    g.name for g in self._graphs.values()
                    if g.name != snapshot.name and export_name in g.imports
                }
                for export_name in snapshot.exports
            }
        for export_name in snapshot.exports:
            users[export_name] |= self._pending_importers(export_name) - {snapshot.name}
        users = {e: g for e, g in users.items() if g}
        if users:
            detail = ", ".join(f"'{e}' imported by {sorted(g)}" for e, g in users.items())
            raise GraphInUseError(f"Exports still in use: {detail}", node=snapshot.name)

    def _add_pending(self, importer: str, export_name: str) -> bool:
        with self._guard:
            if importer not in self._in_progress:
                return False
            names = self._pending.setdefault(importer, set())
            names.add(export_name)
            listed = sorted(names)
        if self.path is not None:
            self._atomic_dump(self._imports_file(importer), listed)
        return True

    def _drop_pending(self, importer: str, export_name: str) -> None:
        with self._guard:
            names = self._pending.get(importer, set())
            names.discard(export_name)
            listed = sorted(names)
        if self.path is not None:
            self._atomic_dump(self._imports_file(importer), listed)

    def _pending_importers(self, export_name: str) -> set[str]:
        with self._guard:
            users = {imp for imp, names in self._pending.items() if export_name in names}
            local = set(self._in_progress)
        if self.path is None or not self.path.exists():
            return users
        # Pending imports of applies running in other processes
        for fp in self.path.glob(".*.imports"):
            importer = fp.name[1:-len(".imports")]
            if importer in local or importer in users:
                continue
            try:
                with open(fp) as f:
                    names = yaml.safe_load(f) or []
            except FileNotFoundError:
                continue
            if export_name in names and self._held_elsewhere(importer):
                users.add(importer)
        return users

    # ─────────────────────────────────────────────
    # Locks
    # ─────────────────────────────────────────────
    def _export_lock(self, name: str) -> threading.Lock:
        with self._guard:
            return self._export_locks.setdefault(name, threading.Lock())

    def _is_busy(self, name: str) -> bool:
        with self._guard:
            if name in self._in_progress:
                return True
        return self._held_elsewhere(name)

    def _held_elsewhere(self, name: str) -> bool:
        """True when another store (or process) holds the graph's file lock."""
        if self.path is None or not self._lock_file(name).exists():
            return False
        lock = portalocker.Lock(self._lock_file(name), timeout=0, fail_when_locked=True)
        try:
            lock.acquire()
        except portalocker.exceptions.LockException:
            return True
        lock.release()
        return False

    @contextmanager
    def _graph_file_lock(self, name: str) -> Iterator[None]:
        if self.path is None:
            yield
            return
        self.path.mkdir(parents=True, exist_ok=True)
        lock = portalocker.Lock(self._lock_file(name), timeout=0, fail_when_locked=True)
        try:
            lock.acquire()
        except portalocker.exceptions.LockException:
            raise ApplyInProgressError(
                "Graph is already being applied by another process", node=name,
            ) from None
        try:
            yield
        finally:
            lock.release()

    @contextmanager
    def _store_lock(self) -> Iterator[None]:
        if self.path is None:
            yield
            return
        self.path.mkdir(parents=True, exist_ok=True)
        lock = portalocker.Lock(self.path / ".store.lock", timeout=STORE_LOCK_TIMEOUT)
        try:
            lock.acquire()
        except portalocker.exceptions.LockException:
            raise StateLockError(
                f"Could not lock {self.path} within {STORE_LOCK_TIMEOUT}s"
            ) from None
        try:
            yield
        finally:
            lock.release()

    # ─────────────────────────────────────────────
    # Files
    # ─────────────────────────────────────────────
    def _file(self, name: str) -> Path:
        assert self.path is not None
        return self.path / f"{name}.yaml"

    def _lock_file(self, name: str) -> Path:
        assert self.path is not None
        return self.path / f".{name}.lock"

    def _imports_file(self, name: str) -> Path:
        assert self.path is not None
        return self.path / f".{name}.imports"

    def _write(self, snapshot: GraphSnapshot) -> None:
        if self.path is None:
            return
        self._atomic_dump(self._file(snapshot.name), snapshot.to_dict())

    def _atomic_dump(self, target: Path, data: Any) -> None:
        """Write to a temp file, then rename over the old one."""
        assert self.path is not None
        self.path.mkdir(parents=True, exist_ok=True)
        fd, tmp = tempfile.mkstemp(prefix=f".{target.name}.", suffix=".tmp", dir=self.path)
        try:
            with os.fdopen(fd, "w") as f:
                yaml.safe_dump(data, f, default_flow_style=False, sort_keys=False)
            os.replace(tmp, target)
        except BaseException:
            Path(tmp).unlink(missing_ok=True)
            raise

    def _refresh(self) -> None:
        """Re-read every snapshot; other processes may have written."""
        if self.path is None or not self.path.exists():
            return
        graphs: dict[str, GraphSnapshot] = {}
        for fp in sorted(self.path.glob("*.yaml")):
            if fp.name.startswith("."):
                continue
            try:
                with open(fp) as f:
                    data = yaml.safe_load(f)
            except FileNotFoundError:
                continue
            if not isinstance(data, dict) or data.get("kind") != "GraphState":
                logger.debug("skipping %s: not a graph state file", fp)
                continue
            snapshot = GraphSnapshot.from_dict(data)
            graphs[snapshot.name] = snapshot
        with self._guard:
            self._graphs = graphs
            self._exports = {
                export_name: (snapshot.name, value)
                for snapshot in graphs.values()
                for export_name, value in snapshot.exports.items()
            }
