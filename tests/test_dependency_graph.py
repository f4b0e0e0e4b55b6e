import pytest

from wbs_engine.core.errors import (
    CrossProjectDependency,
    CyclicDependency,
    InvalidDependencyType,
    NotFound,
    ScheduleCorrupted,
    ValidationError,
)
from wbs_engine.core.graph.dependency_graph import DependencyGraph
from wbs_engine.core.model import Dependency, DependencyType


def test_cycle_is_rejected_and_graph_unchanged(ws, pid, make_chain):
    a, b, c = make_chain([1, 1, 1])
    before = ws.state(pid)

    with pytest.raises(CyclicDependency) as exc:
        ws.add_dependency(c, a)
    assert exc.value.code == "E_CYCLIC_DEPENDENCY"

    after = ws.state(pid)
    assert after.revision == before.revision
    assert after.edges == before.edges
    assert [(e.predecessor_id, e.successor_id) for e in ws.list_dependencies(pid)] == [(a, b), (b, c)]


def test_self_and_duplicate_dependencies_rejected(ws, pid, make_chain):
    a, b = make_chain([1, 1])

    with pytest.raises(ValidationError) as exc:
        ws.add_dependency(a, a)
    assert exc.value.code == "E_SELF_DEPENDENCY"

    with pytest.raises(ValidationError) as exc:
        ws.add_dependency(a, b, "FS")
    assert exc.value.code == "E_DUPLICATE_DEPENDENCY"

    # Same pair with another type is a distinct edge.
    edge = ws.add_dependency(a, b, "ss")
    assert edge.type is DependencyType.SS


def test_unknown_type_and_missing_nodes(ws, pid, make_chain):
    a, b = make_chain([1, 1])
    with pytest.raises(InvalidDependencyType):
        ws.add_dependency(a, b, "XY")
    with pytest.raises(NotFound) as exc:
        ws.add_dependency(a, "ghost")
    assert exc.value.code == "E_NODE_NOT_FOUND"


def test_cross_project_dependency_rejected(ws, pid):
    other = ws.create_project("Other", project_id="P2").id
    ws.create_node(pid, None, "Here", node_id="H")
    ws.create_node(other, None, "There", node_id="T")
    with pytest.raises(CrossProjectDependency) as exc:
        ws.add_dependency("H", "T")
    assert exc.value.code == "E_CROSS_PROJECT_DEPENDENCY"


def test_remove_and_update_dependency(ws, pid, make_chain):
    a, b = make_chain([2, 1])

    updated = ws.update_dependency(a, b, "FS", lag_days=3)
    assert updated.lag_days == 3
    assert ws.get_schedule(pid).entries[b].earliest_start == 5

    retyped = ws.update_dependency(a, b, "FS", new_type="SS")
    assert retyped.type is DependencyType.SS
    assert retyped.lag_days == 3

    ws.remove_dependency(a, b, "SS")
    assert ws.list_dependencies(pid) == []

    with pytest.raises(NotFound) as exc:
        ws.remove_dependency(a, b)
    assert exc.value.code == "E_DEPENDENCY_NOT_FOUND"


def test_failed_update_keeps_original_edge(ws, pid, make_chain):
    a, b = make_chain([1, 1])
    with pytest.raises(InvalidDependencyType):
        ws.update_dependency(a, b, "FS", new_type="??")
    assert [e.type for e in ws.list_dependencies(pid)] == [DependencyType.FS]


def test_predecessors_of(ws, pid, make_chain):
    a, b, c = make_chain([1, 1, 1])
    ws.add_dependency(a, c, "SS")
    assert sorted(e.predecessor_id for e in ws.predecessors_of(c)) == [a, b]


def test_topological_order_respects_edges_then_hierarchy(ws, pid):
    for nid in ("A", "B", "C"):
        ws.create_node(pid, None, nid, node_id=nid, duration=1)
    ws.add_dependency("C", "A")

    order = ws.topological_order(pid)

    assert order == ["B", "C", "A"]


def test_topological_order_every_edge_forward(ws, pid):
    ids = [ws.create_node(pid, None, f"T{i}", node_id=f"T{i}", duration=1).id for i in range(8)]
    for p, s in [(7, 0), (0, 3), (3, 1), (6, 1), (2, 5), (5, 4)]:
        ws.add_dependency(ids[p], ids[s])

    order = ws.topological_order(pid)
    rank = {nid: i for i, nid in enumerate(order)}
    assert sorted(order) == sorted(ids)
    for e in ws.list_dependencies(pid):
        assert rank[e.predecessor_id] < rank[e.successor_id]


def test_corrupted_graph_raises(ws, pid, make_chain):
    a, b = make_chain([1, 1])
    state = ws.state(pid)
    looped = list(state.edges) + [Dependency(project_id=pid, predecessor_id=b, successor_id=a)]
    graph = DependencyGraph(pid, state.nodes, looped)
    with pytest.raises(ScheduleCorrupted) as exc:
        graph.topological_order()
    assert exc.value.code == "E_GRAPH_CORRUPTED"
