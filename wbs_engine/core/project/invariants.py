from __future__ import annotations

from collections import defaultdict

from wbs_engine.core.errors import ScheduleCorrupted
from wbs_engine.core.graph.dependency_graph import DependencyGraph
from wbs_engine.core.model import ProjectState, join_path
from wbs_engine.core.progress.progress_aggregator import MANUAL_PARENT_STATUSES


def check_invariants(state: ProjectState) -> list[str]:
    """Return human-readable violations of the tree, graph and progress invariants.

    An empty list means the state is consistent.
    """
    problems: list[str] = []
    pid = state.project.id
    live = {nid: n for nid, n in state.nodes.items() if not n.is_deleted}

    positions: dict[object, list[int]] = defaultdict(list)
    has_children: set[str] = set()
    for n in live.values():
        if n.project_id != pid:
            problems.append(f"{n.id}: belongs to project {n.project_id}, stored under {pid}")
        positions[n.parent_id].append(n.position)
        if n.parent_id is None:
            expected_path, expected_depth = join_path("", n.position), 0
        else:
            parent = live.get(n.parent_id)
            if parent is None:
                problems.append(f"{n.id}: parent {n.parent_id} is missing or deleted")
                continue
            has_children.add(parent.id)
            expected_path, expected_depth = join_path(parent.path, n.position), parent.depth + 1
        if n.path != expected_path:
            problems.append(f"{n.id}: path {n.path} should be {expected_path}")
        if n.depth != expected_depth:
            problems.append(f"{n.id}: depth {n.depth} should be {expected_depth}")

    for parent_id, seen in positions.items():
        if len(seen) != len(set(seen)):
            problems.append(f"{parent_id or '<root>'}: duplicate sibling positions {sorted(seen)}")

    keys: set[tuple] = set()
    for e in state.edges:
        label = f"{e.predecessor_id}-{e.type.value}->{e.successor_id}"
        if e.predecessor_id not in live or e.successor_id not in live:
            problems.append(f"{label}: endpoint missing or deleted")
        if e.project_id != pid:
            problems.append(f"{label}: belongs to project {e.project_id}")
        if e.predecessor_id == e.successor_id:
            problems.append(f"{label}: self-dependency")
        if e.key in keys:
            problems.append(f"{label}: duplicate dependency")
        keys.add(e.key)

    graph = DependencyGraph(pid, state.nodes, state.edges)
    try:
        graph.topological_order()
    except ScheduleCorrupted as e:
        problems.append(f"graph: {e.message}")
    else:
        stuck = graph.hierarchy_cycle()
        if stuck:
            problems.append(f"network: cycle through the hierarchy among {', '.join(stuck)}")

    for n in live.values():
        if not 0 <= n.progress <= 100:
            problems.append(f"{n.id}: progress {n.progress} outside [0, 100]")
        if n.id in has_children:
            continue
        if n.status == "completed" and n.progress != 100:
            problems.append(f"{n.id}: completed leaf at {n.progress}%")
        if n.progress == 100 and n.status != "completed" and n.status not in MANUAL_PARENT_STATUSES:
            problems.append(f"{n.id}: leaf at 100% has status {n.status}")

    return problems
