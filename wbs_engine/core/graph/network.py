"""Event network the scheduler runs over.

A node with a derivable duration is one activity vertex. A node without one
is a span: a start event and a finish event, zero days apart at the least.
A span with children is a summary. Its start event releases every child and
every child feeds its finish event. A childless span is a pass-through point
that keeps the orderings running through it.

Dependency edges attach to the endpoint their type names. FS and FF leave a
span's finish, SS and SF leave its start. FS and SS enter a span's start,
FF and SF enter its finish.
"""

from __future__ import annotations

import heapq
from collections import defaultdict, deque
from dataclasses import dataclass
from typing import Callable, Iterable, Iterator, Mapping, Optional

from wbs_engine.core.model import Dependency, DependencyType, Node

TASK = "task"
START = "start"
FINISH = "finish"

# (node id, kind)
Vertex = tuple[str, str]

_KIND_RANK = {START: 0, TASK: 1, FINISH: 2}
_LEAVES_FINISH = {DependencyType.FS, DependencyType.FF}
_ENTERS_START = {DependencyType.FS, DependencyType.SS}


@dataclass(frozen=True)
class Arc:
    source: Vertex
    target: Vertex
    type: DependencyType = DependencyType.FS
    lag_days: int = 0


class ScheduleNetwork:
    """Vertices and arcs derived from one project's nodes and edges.

    `children` returns the live child ids of a node. When omitted, an index is
    built from `nodes` on first use.
    """

    def __init__(
        self,
        nodes: Mapping[str, Node],
        edges: Iterable[Dependency],
        *,
        children: Optional[Callable[[str], list[str]]] = None,
    ) -> None:
        self.nodes = nodes
        self.edges = list(edges)
        self._children = children
        self._child_index: Optional[dict[str, list[str]]] = None
        self._out: dict[str, list[Dependency]] = defaultdict(list)
        for e in self.edges:
            self._out[e.predecessor_id].append(e)

    # Roles

    def is_span(self, node_id: str) -> bool:
        return self.nodes[node_id].derived_duration() is None

    def duration(self, v: Vertex) -> int:
        if v[1] != TASK:
            return 0
        d = self.nodes[v[0]].derived_duration()
        return 0 if d is None else d

    def children_of(self, node_id: str) -> list[str]:
        if self._children is not None:
            return self._children(node_id)
        if self._child_index is None:
            index: dict[str, list[str]] = defaultdict(list)
            for n in self.nodes.values():
                if not n.is_deleted and n.parent_id is not None:
                    index[n.parent_id].append(n.id)
            self._child_index = index
        return self._child_index.get(node_id, [])

    def entry(self, node_id: str) -> Vertex:
        return (node_id, START if self.is_span(node_id) else TASK)

    def exit(self, node_id: str) -> Vertex:
        return (node_id, FINISH if self.is_span(node_id) else TASK)

    def arc_for(self, edge: Dependency) -> Arc:
        p, s = edge.predecessor_id, edge.successor_id
        if self.is_span(p):
            source = (p, FINISH if edge.type in _LEAVES_FINISH else START)
        else:
            source = (p, TASK)
        if self.is_span(s):
            target = (s, START if edge.type in _ENTERS_START else FINISH)
        else:
            target = (s, TASK)
        return Arc(source, target, edge.type, edge.lag_days)

    # Traversal

    def successors(self, v: Vertex) -> Iterator[Arc]:
        nid, kind = v
        node = self.nodes[nid]
        if kind == START:
            for c in self.children_of(nid):
                yield Arc(v, self.entry(c), DependencyType.SS)
            yield Arc(v, (nid, FINISH), DependencyType.FS)
        if kind != START and node.parent_id is not None and self.is_span(node.parent_id):
            yield Arc(v, (node.parent_id, FINISH), DependencyType.FF)
        for e in self._out.get(nid, []):
            if self.is_live(e.successor_id) and (kind == TASK or (kind == FINISH) == (e.type in _LEAVES_FINISH)):
                yield self.arc_for(e)

    def reaches(self, start: Vertex, target: Vertex) -> bool:
        """Forward BFS over the network."""
        q: deque[Vertex] = deque([start])
        seen: set[Vertex] = {start}
        while q:
            cur = q.popleft()
            if cur == target:
                return True
            for arc in self.successors(cur):
                if arc.target not in seen:
                    seen.add(arc.target)
                    q.append(arc.target)
        return False

    def is_live(self, node_id: str) -> bool:
        node = self.nodes.get(node_id)
        return node is not None and not node.is_deleted

    def vertices(self) -> list[Vertex]:
        out: list[Vertex] = []
        for nid, n in self.nodes.items():
            if n.is_deleted:
                continue
            if n.derived_duration() is None:
                out.extend(((nid, START), (nid, FINISH)))
            else:
                out.append((nid, TASK))
        return out

    def arcs(self) -> list[Arc]:
        return [arc for v in self.vertices() for arc in self.successors(v)]

    def topological_order(self) -> tuple[list[Vertex], list[str]]:
        """Kahn's algorithm over the network.

        Returns (order, stuck). `stuck` holds the ids of nodes left on a cycle
        and is empty for a well-formed network. Ready ties go by hierarchy
        position, start events before activities before finish events.
        """
        vertices = self.vertices()
        indeg: dict[Vertex, int] = {v: 0 for v in vertices}
        out: dict[Vertex, list[Vertex]] = defaultdict(list)
        for v in vertices:
            for arc in self.successors(v):
                indeg[arc.target] += 1
                out[v].append(arc.target)

        ready = [self._sort_key(v) for v, d in indeg.items() if d == 0]
        heapq.heapify(ready)
        order: list[Vertex] = []
        while ready:
            _, _, nid, kind = heapq.heappop(ready)
            v = (nid, kind)
            order.append(v)
            for t in out.get(v, []):
                indeg[t] -= 1
                if indeg[t] == 0:
                    heapq.heappush(ready, self._sort_key(t))

        stuck = sorted({v[0] for v, d in indeg.items() if d > 0})
        return order, stuck

    def _sort_key(self, v: Vertex) -> tuple[tuple[int, ...], int, str, str]:
        return (self.nodes[v[0]].path_key, _KIND_RANK[v[1]], v[0], v[1])
