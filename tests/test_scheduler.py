from datetime import date

import pytest

from wbs_engine.core.config import EngineConfig
from wbs_engine.core.errors import CyclicDependency, InvalidParent, ScheduleError, ScheduleInfeasible
from wbs_engine.core.project.workspace import Workspace
from wbs_engine.core.schedule.scheduler import compute_schedule


def test_three_node_chain_is_fully_critical(ws, pid, make_chain):
    a, b, c = make_chain([2, 3, 4])

    s = ws.get_schedule(pid)

    assert s.entries[c].earliest_finish == 9
    assert s.project_finish == 9
    for nid in (a, b, c):
        assert s.entries[nid].float == 0
        assert s.entries[nid].is_critical
    assert s.critical_paths == ((a, b, c),)
    assert ws.get_critical_path(pid) == [[a, b, c]]


def test_start_to_start_branch_has_float(ws, pid, make_chain):
    a, b, c = make_chain([2, 3, 4])
    d = ws.create_node(pid, None, "Side", node_id="D", duration=1).id
    ws.add_dependency(a, d, "SS", 1)

    s = ws.get_schedule(pid)

    assert s.entries[d].earliest_start == s.entries[a].earliest_start + 1 == 1
    assert s.entries[d].earliest_finish == 2
    assert s.entries[d].float > 0
    assert not s.entries[d].is_critical
    assert s.critical_paths == ((a, b, c),)


def test_finish_to_finish_and_start_to_finish(ws, pid):
    ws.create_node(pid, None, "Pred", node_id="P", duration=5)
    ws.create_node(pid, None, "FF succ", node_id="F", duration=2)
    ws.create_node(pid, None, "SF succ", node_id="S", duration=2)
    ws.add_dependency("P", "F", "FF", 1)
    ws.add_dependency("P", "S", "SF", 3)

    s = ws.get_schedule(pid)

    assert s.entries["F"].earliest_finish == 6
    assert s.entries["F"].earliest_start == 4
    assert s.entries["S"].earliest_finish == 3
    assert s.entries["S"].earliest_start == 1


def test_negative_lag_is_a_lead(ws, pid):
    ws.create_node(pid, None, "A", node_id="A", duration=3)
    ws.create_node(pid, None, "B", node_id="B", duration=1)
    ws.add_dependency("A", "B", "FS", -1)
    assert ws.get_schedule(pid).entries["B"].earliest_start == 2


def test_start_is_never_before_day_zero(ws, pid):
    ws.create_node(pid, None, "A", node_id="A", duration=1)
    ws.create_node(pid, None, "B", node_id="B", duration=4)
    ws.add_dependency("A", "B", "FF", 0)
    assert ws.get_schedule(pid).entries["B"].earliest_start == 0


def test_float_never_negative_without_deadline(ws, pid):
    durations = [3, 1, 4, 1, 5, 9, 2, 6]
    for i, d in enumerate(durations):
        ws.create_node(pid, None, f"T{i}", node_id=f"T{i}", duration=d)
    for p, s, t, lag in [
        (0, 1, "FS", 0),
        (0, 2, "SS", 2),
        (1, 3, "FF", 1),
        (2, 4, "SF", 3),
        (3, 5, "FS", -1),
        (4, 6, "SS", 0),
        (5, 7, "FF", 0),
    ]:
        ws.add_dependency(f"T{p}", f"T{s}", t, lag)

    s = ws.get_schedule(pid)

    assert all(e.float >= 0 for e in s.entries.values())
    assert any(e.is_critical for e in s.entries.values())
    assert s.project_finish == max(e.earliest_finish for e in s.entries.values())


def test_schedule_is_idempotent(ws, pid, make_chain):
    make_chain([2, 3, 4])
    ws.create_node(pid, None, "Side", node_id="D", duration=1)
    ws.add_dependency("N0", "D", "SS", 1)

    state = ws.state(pid)
    first = compute_schedule(state)
    second = compute_schedule(state)

    assert first == second
    assert ws.get_schedule(pid) is ws.get_schedule(pid)


def test_mutation_invalidates_cached_schedule(ws, pid, make_chain):
    a, b = make_chain([2, 3])
    before = ws.get_schedule(pid)
    ws.update_node(b, duration=5)
    after = ws.get_schedule(pid)
    assert after.revision > before.revision
    assert after.entries[b].earliest_finish == 7


def test_milestone_is_scheduled(ws, pid, make_chain):
    a, m = make_chain([4, 0])
    s = ws.get_schedule(pid)
    assert s.entries[m].earliest_start == s.entries[m].earliest_finish == 4
    assert s.entries[m].is_critical


def test_duration_derived_from_planned_dates(ws, pid):
    ws.create_node(pid, None, "Dated", node_id="A", planned_start=date(2025, 3, 3), planned_end=date(2025, 3, 8))
    ws.create_node(pid, None, "Backwards", node_id="B", planned_start=date(2025, 3, 8), planned_end=date(2025, 3, 3))
    s = ws.get_schedule(pid)
    assert s.entries["A"].duration == 5
    assert s.entries["B"].duration == 0


def test_unscheduled_nodes_excluded_by_default(ws, pid):
    ws.create_node(pid, None, "Scoped", node_id="A", duration=3)
    ws.create_node(pid, None, "Unknown", node_id="X")
    ws.create_node(pid, None, "After unknown", node_id="B", duration=2)
    ws.add_dependency("A", "X")
    ws.add_dependency("X", "B")

    s = ws.get_schedule(pid)

    assert s.unscheduled == ("X",)
    assert "X" not in s.entries
    # X takes no time but still orders A before B.
    assert s.entries["B"].earliest_start == 3
    assert s.critical_paths == (("A", "B"),)


def test_unscheduled_nodes_fail_when_configured():
    with Workspace(EngineConfig(unscheduled_policy="fail")) as ws:
        pid = ws.create_project("Strict").id
        ws.create_node(pid, None, "Scoped", node_id="A", duration=3)
        ws.create_node(pid, None, "Unknown", node_id="X")
        with pytest.raises(ScheduleError) as exc:
            ws.get_schedule(pid)
        assert exc.value.code == "E_UNSCHEDULED_NODE"
        assert exc.value.node_id == "X"


def test_summary_node_rolls_up_children(ws, pid):
    ws.create_node(pid, None, "Phase", node_id="P")
    ws.create_node(pid, "P", "First", node_id="A", duration=2)
    ws.create_node(pid, "P", "Second", node_id="B", duration=3)
    ws.create_node(pid, None, "Float", node_id="F", duration=1)
    ws.add_dependency("A", "B")

    s = ws.get_schedule(pid)
    p = s.entries["P"]

    assert p.summary
    assert (p.earliest_start, p.earliest_finish) == (0, 5)
    assert p.float == 0
    assert p.is_critical
    assert "P" not in s.unscheduled
    assert s.critical_paths == (("A", "B"),)


def test_deadline_infeasibility(ws, pid, make_chain):
    a, b, c = make_chain([2, 3, 4])

    tight = ws.get_schedule(pid, deadline=4)
    assert tight.infeasible
    assert set(tight.at_risk) == {a, b, c}
    assert tight.entries[a].float == -5
    assert not tight.entries[a].is_critical
    # The chain that misses the deadline by the most is the one reported.
    assert tight.critical_paths == ((a, b, c),)
    with pytest.raises(ScheduleInfeasible) as exc:
        tight.raise_if_infeasible()
    assert exc.value.code == "E_SCHEDULE_INFEASIBLE"

    loose = ws.get_schedule(pid, deadline=12)
    assert not loose.infeasible
    assert all(e.float == 3 for e in loose.entries.values())
    assert loose.critical_paths == ()
    loose.raise_if_infeasible()


def test_project_target_date_is_the_default_deadline(ws):
    pid = ws.create_project("Dated", start_date=date(2025, 1, 6), target_date=date(2025, 1, 20)).id
    ws.create_node(pid, None, "Work", node_id="W", duration=10)

    s = ws.get_schedule(pid)

    assert s.deadline == 14
    assert s.entries["W"].float == 4
    assert ws.get_schedule(pid, deadline=date(2025, 1, 16)).entries["W"].float == 0


def test_pinned_node_starts_no_earlier_than_planned(ws):
    pid = ws.create_project("Pinned", start_date=date(2025, 1, 6)).id
    ws.create_node(pid, None, "Fixed", node_id="F", duration=2, planned_start=date(2025, 1, 9), pinned=True)
    ws.create_node(pid, None, "Loose", node_id="L", duration=2, planned_start=date(2025, 1, 9))

    s = ws.get_schedule(pid)

    assert s.entries["F"].earliest_start == 3
    assert s.entries["L"].earliest_start == 0


def test_critical_paths_branch(ws, pid):
    for nid, d in (("S", 1), ("X", 3), ("Y", 3), ("E", 1)):
        ws.create_node(pid, None, nid, node_id=nid, duration=d)
    for p, s in (("S", "X"), ("S", "Y"), ("X", "E"), ("Y", "E")):
        ws.add_dependency(p, s)

    assert ws.get_critical_path(pid) == [["S", "X", "E"], ["S", "Y", "E"]]


def _two_phases(ws, pid):
    ws.create_node(pid, None, "Phase 1", node_id="P1")
    ws.create_node(pid, "P1", "a", node_id="a", duration=2)
    ws.create_node(pid, "P1", "b", node_id="b", duration=3)
    ws.create_node(pid, None, "Phase 2", node_id="P2")
    ws.create_node(pid, "P2", "c", node_id="c", duration=4)
    ws.add_dependency("a", "b")


def test_phase_to_phase_dependency_delays_every_child(ws, pid):
    _two_phases(ws, pid)
    ws.add_dependency("P1", "P2")

    s = ws.get_schedule(pid)

    assert s.entries["P1"].earliest_finish == 5
    assert s.entries["c"].earliest_start >= s.entries["P1"].earliest_finish
    assert (s.entries["c"].earliest_start, s.entries["c"].float) == (5, 0)
    assert (s.entries["P2"].earliest_start, s.entries["P2"].earliest_finish) == (5, 9)
    assert s.project_finish == 9
    assert s.critical_paths == (("a", "b", "c"),)


def test_phase_start_to_start_uses_the_phase_start(ws, pid):
    _two_phases(ws, pid)
    ws.add_dependency("P1", "P2", "SS", 1)

    s = ws.get_schedule(pid)

    assert s.entries["c"].earliest_start == 1


def test_edges_into_and_out_of_a_phase(ws, pid):
    _two_phases(ws, pid)
    ws.create_node(pid, None, "Kickoff", node_id="K", duration=2)
    ws.create_node(pid, None, "Review", node_id="R", duration=1)
    ws.add_dependency("K", "P1")
    ws.add_dependency("P2", "R", "FF", 2)

    s = ws.get_schedule(pid)

    assert s.entries["a"].earliest_start == 2
    assert s.entries["b"].earliest_start == 4
    assert s.entries["P1"].earliest_finish == 7
    # FF from a phase binds the phase's finish, here its only child c.
    assert s.entries["R"].earliest_finish == s.entries["P2"].earliest_finish + 2 == 6


def test_nested_phases_carry_the_bound_down(ws, pid):
    ws.create_node(pid, None, "Prep", node_id="PRE", duration=3)
    ws.create_node(pid, None, "Outer", node_id="O")
    ws.create_node(pid, "O", "Inner", node_id="I")
    ws.create_node(pid, "I", "Deep", node_id="X", duration=1)
    ws.add_dependency("PRE", "O")

    s = ws.get_schedule(pid)

    assert s.entries["X"].earliest_start == 3
    assert s.entries["I"].summary and s.entries["O"].summary
    assert s.entries["O"].earliest_start == 3


def test_phase_dependency_against_a_deadline(ws, pid):
    _two_phases(ws, pid)
    ws.add_dependency("P1", "P2")

    s = ws.get_schedule(pid, deadline=7)

    assert s.entries["c"].float == -2
    assert set(s.at_risk) == {"a", "b", "c"}
    assert s.critical_paths == (("a", "b", "c"),)


def test_hierarchy_cycles_are_rejected(ws, pid):
    ws.create_node(pid, None, "S1", node_id="S1")
    ws.create_node(pid, "S1", "x", node_id="x", duration=1)
    ws.create_node(pid, None, "S2", node_id="S2")
    ws.create_node(pid, "S2", "y", node_id="y", duration=1)
    ws.add_dependency("x", "S2")
    before = ws.state(pid)

    # y sits inside S2, which already waits on x inside S1.
    with pytest.raises(CyclicDependency) as exc:
        ws.add_dependency("y", "S1")
    assert exc.value.code == "E_CYCLIC_DEPENDENCY"
    assert ws.state(pid) is before

    # A phase cannot finish before one of its own children starts.
    with pytest.raises(CyclicDependency):
        ws.add_dependency("S1", "x")
    ws.add_dependency("S1", "x", "SS")


def test_move_that_closes_a_hierarchy_cycle_is_rejected(ws, pid):
    ws.create_node(pid, None, "S1", node_id="S1")
    ws.create_node(pid, "S1", "x", node_id="x", duration=1)
    ws.create_node(pid, None, "S2", node_id="S2")
    ws.create_node(pid, "S2", "y", node_id="y", duration=1)
    ws.create_node(pid, None, "z", node_id="z", duration=1)
    ws.add_dependency("x", "S2")
    ws.add_dependency("z", "S1")

    with pytest.raises(InvalidParent) as exc:
        ws.move_node("z", "S2")
    assert exc.value.code == "E_INVALID_PARENT"
    assert ws.get_node("z").parent_id is None


def test_dropping_a_parent_duration_that_closes_a_cycle_is_rejected(ws, pid):
    ws.create_node(pid, None, "Parent", node_id="P", duration=5)
    ws.create_node(pid, "P", "Child", node_id="c", duration=1)
    # Allowed while P is an ordinary activity.
    ws.add_dependency("P", "c")

    with pytest.raises(CyclicDependency):
        ws.update_node("P", duration=None)
    assert ws.get_node("P").duration == 5
