from __future__ import annotations

import heapq
import logging
from collections import defaultdict, deque
from datetime import datetime, timezone
from typing import Callable, Iterable, Mapping, Optional, Union

from wbs_engine.core.errors import (
    CyclicDependency,
    InvalidDependencyType,
    NotFound,
    ScheduleCorrupted,
    ValidationError,
)
from wbs_engine.core.graph.network import ScheduleNetwork
from wbs_engine.core.model import Dependency, DependencyType, Node

logger = logging.getLogger(__name__)


def parse_dependency_type(value: Union[str, DependencyType]) -> DependencyType:
    if isinstance(value, DependencyType):
        return value
    if isinstance(value, str):
        try:
            return DependencyType(value.strip().upper())
        except ValueError:
            pass
    raise InvalidDependencyType(
        code="E_INVALID_DEPENDENCY_TYPE",
        message=f"dependency type must be one of {[t.value for t in DependencyType]}, got {value!r}",
        path="type",
    )


class DependencyGraph:
    """Precedence edges of one project.

    `nodes` is the project's node mapping (tombstones included); only live
    nodes may carry edges. The edge list is a private copy owned by the
    current transaction. `children` lists a node's live child ids; the
    hierarchy store passes its index in.
    """

    def __init__(
        self,
        project_id: str,
        nodes: Mapping[str, Node],
        edges: Iterable[Dependency] = (),
        *,
        children: Optional[Callable[[str], list[str]]] = None,
    ) -> None:
        self.project_id = project_id
        self.nodes = nodes
        self.edges: list[Dependency] = list(edges)
        self.children = children

    # Queries

    def find(self, predecessor_id: str, successor_id: str, type: DependencyType) -> Optional[Dependency]:
        for e in self.edges:
            if e.key == (predecessor_id, successor_id, type):
                return e
        return None

    def predecessors_of(self, node_id: str) -> list[Dependency]:
        return [e for e in self.edges if e.successor_id == node_id]

    def successors_of(self, node_id: str) -> list[Dependency]:
        return [e for e in self.edges if e.predecessor_id == node_id]

    def reaches(self, start_id: str, target_id: str) -> bool:
        """Forward BFS: can `target_id` be reached from `start_id` along existing edges?"""
        adjacency: dict[str, list[str]] = defaultdict(list)
        for e in self.edges:
            adjacency[e.predecessor_id].append(e.successor_id)

        q: deque[str] = deque([start_id])
        seen: set[str] = set()
        while q:
            cur = q.popleft()
            if cur == target_id:
                return True
            if cur in seen:
                continue
            seen.add(cur)
            for nxt in adjacency.get(cur, []):
                if nxt not in seen:
                    q.append(nxt)
        return False

    def network(self) -> ScheduleNetwork:
        return ScheduleNetwork(self.nodes, self.edges, children=self.children)

    def hierarchy_cycle(self) -> list[str]:
        """Ids of nodes caught on a cycle once summaries are expanded; empty when schedulable."""
        _, stuck = self.network().topological_order()
        return stuck

    def topological_order(self) -> list[str]:
        """Kahn's algorithm over every live node; ready ties go by hierarchy position."""
        live = {nid: n for nid, n in self.nodes.items() if not n.is_deleted}
        indeg: dict[str, int] = {nid: 0 for nid in live}
        out_edges: dict[str, list[str]] = defaultdict(list)
        for e in self.edges:
            if e.predecessor_id not in live or e.successor_id not in live:
                continue
            indeg[e.successor_id] += 1
            out_edges[e.predecessor_id].append(e.successor_id)

        ready = [(live[nid].path_key, nid) for nid, d in indeg.items() if d == 0]
        heapq.heapify(ready)
        order: list[str] = []
        while ready:
            _, nid = heapq.heappop(ready)
            order.append(nid)
            for succ in out_edges.get(nid, []):
                indeg[succ] -= 1
                if indeg[succ] == 0:
                    heapq.heappush(ready, (live[succ].path_key, succ))

        if len(order) != len(live):
            stuck = sorted(nid for nid, d in indeg.items() if d > 0)
            logger.error(
                "dependency cycle in project %s among %d node(s): %s",
                self.project_id,
                len(stuck),
                ", ".join(stuck[:10]),
            )
            raise ScheduleCorrupted(
                code="E_GRAPH_CORRUPTED",
                message=f"dependency cycle detected among: {', '.join(stuck)}",
                path=f"project:{self.project_id}",
            )
        return order

    # Mutations

    def add_dependency(
        self,
        predecessor_id: str,
        successor_id: str,
        type: Union[str, DependencyType] = DependencyType.FS,
        lag_days: int = 0,
        *,
        now: Optional[datetime] = None,
    ) -> Dependency:
        dep_type = parse_dependency_type(type)
        if isinstance(lag_days, bool) or not isinstance(lag_days, int):
            raise ValidationError(code="E_INVALID_LAG", message="lag_days must be an integer", path="lag_days")
        self._require_live(predecessor_id)
        self._require_live(successor_id)

        if predecessor_id == successor_id:
            raise ValidationError(
                code="E_SELF_DEPENDENCY",
                message="cannot create self-dependency",
                node_id=predecessor_id,
            )
        if self.find(predecessor_id, successor_id, dep_type) is not None:
            raise ValidationError(
                code="E_DUPLICATE_DEPENDENCY",
                message=f"dependency already exists: {predecessor_id} -{dep_type.value}-> {successor_id}",
                node_id=successor_id,
            )
        if self.reaches(successor_id, predecessor_id):
            raise CyclicDependency(
                code="E_CYCLIC_DEPENDENCY",
                message=f"{predecessor_id} -> {successor_id} would close a cycle ({successor_id} already reaches {predecessor_id})",
                node_id=successor_id,
            )

        edge = Dependency(
            project_id=self.project_id,
            predecessor_id=predecessor_id,
            successor_id=successor_id,
            type=dep_type,
            lag_days=lag_days,
            created_at=now or datetime.now(timezone.utc),
        )
        # Summary edges act on a whole subtree, so a cycle can also close through the hierarchy.
        net = self.network()
        arc = net.arc_for(edge)
        if net.reaches(arc.target, arc.source):
            raise CyclicDependency(
                code="E_CYCLIC_DEPENDENCY",
                message=(
                    f"{predecessor_id} -{dep_type.value}-> {successor_id} would close a cycle "
                    "through the WBS hierarchy"
                ),
                node_id=successor_id,
            )
        self.edges.append(edge)
        logger.info("added dependency %s -%s(%+d)-> %s", predecessor_id, dep_type.value, lag_days, successor_id)
        return edge

    def remove_dependency(
        self,
        predecessor_id: str,
        successor_id: str,
        type: Union[str, DependencyType] = DependencyType.FS,
    ) -> Dependency:
        dep_type = parse_dependency_type(type)
        edge = self.find(predecessor_id, successor_id, dep_type)
        if edge is None:
            raise NotFound(
                code="E_DEPENDENCY_NOT_FOUND",
                message=f"dependency not found: {predecessor_id} -{dep_type.value}-> {successor_id}",
                node_id=successor_id,
            )
        self.edges.remove(edge)
        logger.info("removed dependency %s -%s-> %s", predecessor_id, dep_type.value, successor_id)
        return edge

    def update_dependency(
        self,
        predecessor_id: str,
        successor_id: str,
        type: Union[str, DependencyType],
        *,
        new_type: Union[str, DependencyType, None] = None,
        lag_days: Optional[int] = None,
    ) -> Dependency:
        """Change type and/or lag. Validated as remove + re-add."""
        old = self.remove_dependency(predecessor_id, successor_id, type)
        return self.add_dependency(
            predecessor_id,
            successor_id,
            old.type if new_type is None else new_type,
            old.lag_days if lag_days is None else lag_days,
            now=old.created_at,
        )

    def remove_incident(self, node_ids: Iterable[str]) -> list[Dependency]:
        doomed = set(node_ids)
        removed = [e for e in self.edges if e.predecessor_id in doomed or e.successor_id in doomed]
        if removed:
            self.edges = [e for e in self.edges if e not in removed]
            logger.info("removed %d dependency edge(s) incident to deleted nodes", len(removed))
        return removed

    def _require_live(self, node_id: str) -> None:
        node = self.nodes.get(node_id)
        if node is None or node.is_deleted:
            raise NotFound(code="E_NODE_NOT_FOUND", message=f"node not found: {node_id}", node_id=node_id)
