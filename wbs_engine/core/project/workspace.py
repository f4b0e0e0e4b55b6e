from __future__ import annotations

import logging
import threading
import uuid
from datetime import date
from typing import Any, Optional, Union

from wbs_engine.core.config import DEFAULT_CONFIG, EngineConfig
from wbs_engine.core.errors import CrossProjectDependency, CyclicDependency, InvalidParent, NotFound, ValidationError
from wbs_engine.core.model import (
    Dependency,
    DependencyType,
    GanttBar,
    Node,
    ProgressView,
    Project,
    ProjectProgress,
    ProjectState,
    Schedule,
)
from wbs_engine.core.project.context import ProjectContext, Transaction
from wbs_engine.core.project.recompute_queue import RecomputeQueue
from wbs_engine.core.schedule.scheduler import anchor_date

logger = logging.getLogger(__name__)

# Node fields `update_node` may change. Progress and status have their own operations.
UPDATABLE_FIELDS: set[str] = {"title", "duration", "planned_start", "planned_end", "pinned", "assignee_id"}

# Fields that decide whether a node is an activity or a span in the schedule network.
TIMING_FIELDS: set[str] = {"duration", "planned_start", "planned_end"}


class Workspace:
    """Registry of projects and the entry point for every engine operation.

    Node ids are unique across the workspace, so node-addressed operations
    resolve the owning project themselves.
    """

    def __init__(self, config: EngineConfig = DEFAULT_CONFIG) -> None:
        self.config = config
        self._registry_lock = threading.Lock()
        self._projects: dict[str, ProjectContext] = {}
        self._owners: dict[str, str] = {}
        self._queue = RecomputeQueue(workers=config.recompute_workers)

    def __enter__(self) -> "Workspace":
        return self

    def __exit__(self, *exc: object) -> None:
        self.close()

    def close(self) -> None:
        self._queue.shutdown(wait=True)

    # Projects

    def create_project(
        self,
        name: str,
        *,
        project_id: Optional[str] = None,
        start_date: Optional[date] = None,
        target_date: Optional[date] = None,
    ) -> Project:
        if not isinstance(name, str) or not name.strip():
            raise ValidationError(code="E_REQUIRED_FIELD", message="project name is required", path="name")
        pid = project_id or uuid.uuid4().hex
        project = Project(id=pid, name=name.strip(), start_date=start_date, target_date=target_date)
        with self._registry_lock:
            if pid in self._projects:
                raise ValidationError(code="E_DUPLICATE_ID", message=f"duplicate project id: {pid}", path="id")
            self._projects[pid] = ProjectContext(project, config=self.config, queue=self._queue)
        logger.info("created project %s (%s)", pid, project.name)
        return project

    def get_project(self, project_id: str) -> Project:
        return self._context(project_id).project

    def list_projects(self) -> list[Project]:
        with self._registry_lock:
            return [ctx.project for ctx in self._projects.values()]

    def state(self, project_id: str) -> ProjectState:
        return self._context(project_id).state

    # Node mutations

    def create_node(
        self,
        project_id: str,
        parent_id: Optional[str],
        title: str,
        *,
        node_id: Optional[str] = None,
        position: Optional[int] = None,
        duration: Optional[int] = None,
        planned_start: Optional[date] = None,
        planned_end: Optional[date] = None,
        pinned: bool = False,
        assignee_id: Optional[str] = None,
    ) -> Node:
        ctx = self._context(project_id)
        nid = self._reserve(project_id, node_id)

        def op(txn: Transaction) -> Node:
            txn.store.create_node(
                parent_id,
                title,
                node_id=nid,
                position=position,
                duration=duration,
                planned_start=planned_start,
                planned_end=planned_end,
                pinned=pinned,
                assignee_id=assignee_id,
            )
            if parent_id is not None:
                txn.progress.refresh(parent_id)
            return txn.store.get(nid)

        try:
            return ctx.mutate(op)
        except Exception:
            self._release(nid)
            raise

    def update_node(self, node_id: str, *, expected_version: Optional[int] = None, **changes: Any) -> Node:
        unknown = sorted(set(changes) - UPDATABLE_FIELDS)
        if unknown:
            raise ValidationError(
                code="E_INVALID_FIELD",
                message=f"cannot update {', '.join(unknown)} (choose from: {', '.join(sorted(UPDATABLE_FIELDS))})",
                node_id=node_id,
            )

        def op(txn: Transaction) -> Node:
            node = txn.store.update_fields(node_id, **changes)
            if TIMING_FIELDS & set(changes):
                stuck = txn.graph.hierarchy_cycle()
                if stuck:
                    raise CyclicDependency(
                        code="E_CYCLIC_DEPENDENCY",
                        message=f"changing the timing of {node_id} would close a dependency cycle among: {', '.join(stuck)}",
                        node_id=node_id,
                    )
            if node.parent_id is not None and txn.progress.weighting == "duration":
                txn.progress.refresh(node.parent_id)
            return txn.store.get(node_id)

        return self._owner_context(node_id).mutate(op, node_id=node_id, expected_version=expected_version)

    def move_node(
        self,
        node_id: str,
        new_parent_id: Optional[str],
        *,
        position: Optional[int] = None,
        expected_version: Optional[int] = None,
    ) -> Node:
        ctx = self._owner_context(node_id)
        if new_parent_id is not None and self._owner(new_parent_id) != ctx.project.id:
            raise InvalidParent(
                code="E_INVALID_PARENT",
                message=f"{new_parent_id} belongs to another project",
                node_id=node_id,
            )

        def op(txn: Transaction) -> Node:
            old_parent_id = txn.store.get(node_id).parent_id
            txn.store.move_node(node_id, new_parent_id, position=position)
            stuck = txn.graph.hierarchy_cycle()
            if stuck:
                raise InvalidParent(
                    code="E_INVALID_PARENT",
                    message=f"moving {node_id} under {new_parent_id or '<root>'} would close a dependency cycle among: {', '.join(stuck)}",
                    node_id=node_id,
                )
            for pid in (old_parent_id, new_parent_id):
                if pid is not None:
                    txn.progress.refresh(pid)
            return txn.store.get(node_id)

        return ctx.mutate(op, node_id=node_id, expected_version=expected_version)

    def delete_node(self, node_id: str, *, expected_version: Optional[int] = None) -> list[str]:
        def op(txn: Transaction) -> list[str]:
            parent_id = txn.store.get(node_id).parent_id
            deleted = txn.store.delete_node(node_id, now=txn.now)
            txn.graph.remove_incident(deleted)
            if parent_id is not None:
                txn.progress.refresh(parent_id)
            return deleted

        return self._owner_context(node_id).mutate(op, node_id=node_id, expected_version=expected_version)

    def set_progress(self, node_id: str, progress: float, *, expected_version: Optional[int] = None) -> Node:
        return self._owner_context(node_id).mutate(
            lambda txn: txn.progress.set_progress(node_id, progress),
            node_id=node_id,
            expected_version=expected_version,
        )

    def set_status(self, node_id: str, status: str, *, expected_version: Optional[int] = None) -> Node:
        return self._owner_context(node_id).mutate(
            lambda txn: txn.progress.set_status(node_id, status),
            node_id=node_id,
            expected_version=expected_version,
        )

    # Dependency mutations

    def add_dependency(
        self,
        predecessor_id: str,
        successor_id: str,
        type: Union[str, DependencyType] = DependencyType.FS,
        lag_days: int = 0,
    ) -> Dependency:
        ctx = self._edge_context(predecessor_id, successor_id)
        return ctx.mutate(lambda txn: txn.graph.add_dependency(predecessor_id, successor_id, type, lag_days, now=txn.now))

    def remove_dependency(
        self,
        predecessor_id: str,
        successor_id: str,
        type: Union[str, DependencyType] = DependencyType.FS,
    ) -> Dependency:
        ctx = self._edge_context(predecessor_id, successor_id)
        return ctx.mutate(lambda txn: txn.graph.remove_dependency(predecessor_id, successor_id, type))

    def update_dependency(
        self,
        predecessor_id: str,
        successor_id: str,
        type: Union[str, DependencyType] = DependencyType.FS,
        *,
        new_type: Union[str, DependencyType, None] = None,
        lag_days: Optional[int] = None,
    ) -> Dependency:
        ctx = self._edge_context(predecessor_id, successor_id)
        return ctx.mutate(
            lambda txn: txn.graph.update_dependency(
                predecessor_id, successor_id, type, new_type=new_type, lag_days=lag_days
            )
        )

    # Queries

    def get_node(self, node_id: str) -> Node:
        return self._owner_context(node_id).get_node(node_id)

    def get_subtree(self, node_id: str) -> list[Node]:
        return self._owner_context(node_id).store().list_subtree(node_id)

    def list_children(self, node_id: str) -> list[Node]:
        return self._owner_context(node_id).store().list_children(node_id)

    def list_roots(self, project_id: str) -> list[Node]:
        return self._context(project_id).store().list_roots()

    def list_dependencies(self, project_id: str) -> list[Dependency]:
        return self._context(project_id).list_dependencies()

    def predecessors_of(self, node_id: str) -> list[Dependency]:
        ctx = self._owner_context(node_id)
        ctx.get_node(node_id)
        return ctx.graph().predecessors_of(node_id)

    def topological_order(self, project_id: str) -> list[str]:
        return self._context(project_id).topological_order()

    def get_schedule(
        self,
        project_id: str,
        *,
        deadline: Union[int, date, None] = None,
        wait: bool = False,
    ) -> Schedule:
        ctx = self._context(project_id)
        if isinstance(deadline, date):
            deadline = self._deadline_offset(ctx, deadline)
        return ctx.get_schedule(deadline=deadline, wait=wait)

    def get_critical_path(self, project_id: str) -> list[list[str]]:
        return self._context(project_id).get_critical_path()

    def get_progress(self, node_id: str) -> ProgressView:
        return self._owner_context(node_id).get_progress(node_id)

    def get_gantt(self, project_id: str) -> list[GanttBar]:
        return self._context(project_id).get_gantt()

    def cancel_recompute(self, project_id: str) -> bool:
        return self._context(project_id).cancel_recompute()

    def project_progress(self, project_id: str) -> ProjectProgress:
        """Completed share of all live nodes, parents included."""
        live = [n for n in self.state(project_id).nodes.values() if not n.is_deleted]
        completed = sum(1 for n in live if n.status == "completed")
        percentage = completed / len(live) * 100 if live else 0.0
        return ProjectProgress(total_nodes=len(live), completed_nodes=completed, percentage=round(percentage, 4))

    def assigned_to(self, assignee_id: str, *, include_completed: bool = False) -> list[Node]:
        """Live nodes assigned to `assignee_id` across every project.

        Open work only unless `include_completed`; soonest planned end first,
        undated nodes last.
        """
        with self._registry_lock:
            contexts = list(self._projects.values())
        found = [
            n
            for ctx in contexts
            for n in ctx.state.nodes.values()
            if not n.is_deleted
            and n.assignee_id == assignee_id
            and (include_completed or n.status != "completed")
        ]
        return sorted(
            found,
            key=lambda n: (n.planned_end is None, n.planned_end or date.min, n.project_id, n.path_key),
        )

    # Internals

    def _context(self, project_id: str) -> ProjectContext:
        ctx = self._projects.get(project_id)
        if ctx is None:
            raise NotFound(code="E_PROJECT_NOT_FOUND", message=f"project not found: {project_id}", path="project_id")
        return ctx

    def _owner(self, node_id: str) -> str:
        pid = self._owners.get(node_id)
        if pid is None:
            raise NotFound(code="E_NODE_NOT_FOUND", message=f"node not found: {node_id}", node_id=node_id)
        return pid

    def _owner_context(self, node_id: str) -> ProjectContext:
        return self._context(self._owner(node_id))

    def _edge_context(self, predecessor_id: str, successor_id: str) -> ProjectContext:
        pred_project = self._owner(predecessor_id)
        succ_project = self._owner(successor_id)
        if pred_project != succ_project:
            raise CrossProjectDependency(
                code="E_CROSS_PROJECT_DEPENDENCY",
                message=f"{predecessor_id} ({pred_project}) and {successor_id} ({succ_project}) are in different projects",
                node_id=successor_id,
            )
        return self._context(pred_project)

    def _reserve(self, project_id: str, node_id: Optional[str]) -> str:
        with self._registry_lock:
            if node_id is None:
                node_id = uuid.uuid4().hex
            elif node_id in self._owners:
                raise ValidationError(code="E_DUPLICATE_ID", message=f"duplicate node id: {node_id}", node_id=node_id)
            self._owners[node_id] = project_id
            return node_id

    def _release(self, node_id: str) -> None:
        with self._registry_lock:
            self._owners.pop(node_id, None)

    @staticmethod
    def _deadline_offset(ctx: ProjectContext, deadline: date) -> int:
        anchor = anchor_date(ctx.state)
        if anchor is None:
            raise ValidationError(
                code="E_NO_ANCHOR",
                message="a calendar deadline needs a project start_date or a planned_start to anchor day 0",
                path="deadline",
            )
        return (deadline - anchor).days
