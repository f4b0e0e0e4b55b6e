from __future__ import annotations

import logging
import threading
from concurrent.futures import CancelledError, Future
from datetime import datetime, timezone
from types import MappingProxyType
from typing import Callable, Optional, TypeVar

from wbs_engine.core.config import DEFAULT_CONFIG, EngineConfig
from wbs_engine.core.errors import Conflict, RecomputeCancelled, ServiceUnavailable
from wbs_engine.core.gantt.gantt import build_gantt
from wbs_engine.core.graph.dependency_graph import DependencyGraph
from wbs_engine.core.hierarchy.hierarchy_store import HierarchyStore
from wbs_engine.core.model import Dependency, GanttBar, Node, ProgressView, Project, ProjectState, Schedule
from wbs_engine.core.progress.progress_aggregator import ProgressAggregator
from wbs_engine.core.project.recompute_queue import RecomputeQueue
from wbs_engine.core.schedule.scheduler import compute_schedule

logger = logging.getLogger(__name__)

T = TypeVar("T")

# Attempts to wait out superseded background passes before computing inline.
_MAX_WAIT_ROUNDS = 8


class Transaction:
    """Working copy of one project state. Discarded unless committed."""

    def __init__(self, state: ProjectState, config: EngineConfig) -> None:
        self.base = state
        self.nodes: dict[str, Node] = dict(state.nodes)
        self.now = datetime.now(timezone.utc)
        self.store = HierarchyStore(state.project, self.nodes)
        self.graph = DependencyGraph(state.project.id, self.nodes, state.edges, children=self.store.child_ids)
        self.progress = ProgressAggregator(self.store, weighting=config.progress_weighting, now=self.now)

    def commit(self) -> ProjectState:
        return ProjectState(
            project=self.base.project,
            nodes=MappingProxyType(self.nodes),
            edges=tuple(self.graph.edges),
            revision=self.base.revision + 1,
        )


class ProjectContext:
    """Owns one project's tree, graph and schedule snapshot.

    Mutations are serialized by a per-project lock and applied to a
    `Transaction`; the resulting state is published with one assignment, so
    readers always see a complete state without locking.
    """

    def __init__(
        self,
        project: Project,
        *,
        config: EngineConfig = DEFAULT_CONFIG,
        queue: Optional[RecomputeQueue] = None,
    ) -> None:
        self.config = config
        self._state = ProjectState(project=project, nodes=MappingProxyType({}))
        self._lock = threading.Lock()
        self._snapshot: Optional[Schedule] = None
        self._snapshot_lock = threading.Lock()
        self._queue = queue

    @property
    def project(self) -> Project:
        return self._state.project

    @property
    def state(self) -> ProjectState:
        return self._state

    # Mutations

    def mutate(
        self,
        op: Callable[[Transaction], T],
        *,
        node_id: Optional[str] = None,
        expected_version: Optional[int] = None,
    ) -> T:
        if not self._lock.acquire(timeout=self.config.lock_timeout_s):
            raise ServiceUnavailable(
                code="E_LOCK_TIMEOUT",
                message=f"project {self.project.id} is busy; retry later",
                node_id=node_id,
            )
        try:
            txn = Transaction(self._state, self.config)
            if expected_version is not None and node_id is not None:
                current = txn.store.get(node_id)
                if current.version != expected_version:
                    raise Conflict(
                        code="E_VERSION_CONFLICT",
                        message=f"expected version {expected_version}, found {current.version}",
                        node_id=node_id,
                    )
            result = op(txn)
            self._state = txn.commit()
        finally:
            self._lock.release()

        if self._background(self._state):
            self._request_recompute()
        return result

    # Reads

    def store(self) -> HierarchyStore:
        state = self._state
        return HierarchyStore(state.project, dict(state.nodes))

    def graph(self) -> DependencyGraph:
        state = self._state
        return DependencyGraph(state.project.id, state.nodes, state.edges)

    def get_node(self, node_id: str) -> Node:
        return self.store().get(node_id)

    def list_dependencies(self) -> list[Dependency]:
        return list(self._state.edges)

    def topological_order(self) -> list[str]:
        return self.graph().topological_order()

    def get_progress(self, node_id: str) -> ProgressView:
        return ProgressAggregator(self.store()).view(node_id)

    def get_schedule(self, *, deadline: Optional[int] = None, wait: bool = False) -> Schedule:
        state = self._state
        if deadline is not None:
            # What-if run against an explicit deadline; never cached.
            return compute_schedule(state, deadline=deadline, config=self.config)

        snap = self._snapshot
        if snap is not None and snap.revision == state.revision:
            return snap
        if not self._background(state):
            return self._recompute()

        fut = self._request_recompute()
        if snap is not None and not wait:
            return snap
        for _ in range(_MAX_WAIT_ROUNDS):
            try:
                return fut.result()
            except (CancelledError, RecomputeCancelled):
                fut = self._request_recompute()
        logger.debug("project %s: background passes kept being superseded; computing inline", self.project.id)
        return self._recompute()

    def get_critical_path(self) -> list[list[str]]:
        return [list(p) for p in self.get_schedule(wait=True).critical_paths]

    def get_gantt(self) -> list[GanttBar]:
        state = self._state
        return build_gantt(state, self.get_schedule(wait=True))

    def cancel_recompute(self) -> bool:
        if self._queue is None:
            return False
        return self._queue.cancel(self.project.id)

    # Internals

    def _background(self, state: ProjectState) -> bool:
        if self._queue is None:
            return False
        live = sum(1 for n in state.nodes.values() if not n.is_deleted)
        return live > self.config.sync_recompute_max_nodes

    def _request_recompute(self) -> Future:
        assert self._queue is not None
        return self._queue.request(self.project.id, self._recompute)

    def _recompute(self, cancel: Optional[threading.Event] = None) -> Schedule:
        schedule = compute_schedule(self._state, config=self.config, cancel=cancel)
        with self._snapshot_lock:
            if cancel is not None and cancel.is_set():
                raise RecomputeCancelled(code="E_RECOMPUTE_CANCELLED", message="schedule recomputation was superseded")
            current = self._snapshot
            if current is None or schedule.revision >= current.revision:
                self._snapshot = schedule
        return schedule
