from datetime import date

import pytest

from wbs_engine.core.errors import ValidationError
from wbs_engine.core.io.load_project import load_project
from wbs_engine.core.validate.validate_project import project_summary, summarize_project, validate_project


def test_assigned_to_spans_projects_and_skips_completed(ws, pid):
    other = ws.create_project("Other", project_id="P2").id
    ws.create_node(pid, None, "Late", node_id="L", assignee_id="alice", planned_end=date(2025, 5, 1))
    ws.create_node(pid, None, "Undated", node_id="U", assignee_id="alice")
    ws.create_node(other, None, "Soon", node_id="S", assignee_id="alice", planned_end=date(2025, 3, 1))
    ws.create_node(other, None, "Done", node_id="D", assignee_id="alice")
    ws.create_node(other, None, "Someone else", node_id="B", assignee_id="bob")
    ws.set_progress("D", 100)

    assert [n.id for n in ws.assigned_to("alice")] == ["S", "L", "U"]
    assert [n.id for n in ws.assigned_to("alice", include_completed=True)] == ["S", "L", "U", "D"]
    assert ws.assigned_to("carol") == []


def test_assignee_can_be_changed_and_cleared(ws, pid):
    node = ws.create_node(pid, None, "Task", node_id="T", duration=1)
    assert node.assignee_id is None

    assert ws.update_node("T", assignee_id="alice").assignee_id == "alice"
    assert [n.id for n in ws.assigned_to("alice")] == ["T"]

    assert ws.update_node("T", assignee_id=None).assignee_id is None
    assert ws.assigned_to("alice") == []

    with pytest.raises(ValidationError) as exc:
        ws.update_node("T", assignee_id="  ")
    assert exc.value.code == "E_INVALID_ASSIGNEE"


def test_deleted_nodes_are_not_assigned(ws, pid):
    ws.create_node(pid, None, "Gone", node_id="G", assignee_id="alice")
    ws.delete_node("G")
    assert ws.assigned_to("alice") == []


def test_gantt_bar_carries_assignee(ws, pid):
    ws.create_node(pid, None, "Task", node_id="T", duration=2, assignee_id="bob")
    (bar,) = ws.get_gantt(pid)
    assert bar.assignee_id == "bob"


def test_project_progress_counts_completed_nodes(ws, pid):
    assert ws.project_progress(pid).percentage == 0.0

    ws.create_node(pid, None, "Phase", node_id="P")
    ws.create_node(pid, "P", "A", node_id="A", duration=1)
    ws.create_node(pid, "P", "B", node_id="B", duration=1)
    ws.create_node(pid, None, "C", node_id="C", duration=1)
    ws.set_progress("A", 100)

    p = ws.project_progress(pid)
    assert (p.total_nodes, p.completed_nodes, p.percentage) == (4, 1, 25.0)

    # Finishing B also completes the phase.
    ws.set_progress("B", 100)
    p = ws.project_progress(pid)
    assert (p.completed_nodes, p.percentage) == (3, 75.0)


def test_document_assignees_and_progress_in_summary(examples_dir):
    ws, errors = validate_project(load_project(str(examples_dir / "phased-project.yaml")))
    assert errors == []
    with ws:
        summary = project_summary(ws, "PRJ-PHASE")
        assert summary["assignees"] == {"alice": 2, "bob": 1}
        assert summary["progress"] == {"total_nodes": 6, "completed_nodes": 0, "percentage": 0.0}
        assert [n.id for n in ws.assigned_to("alice")] == ["R1", "D1"]
        assert "Progress: 0/6 nodes completed (0.0%)" in summarize_project(ws, "PRJ-PHASE")


def test_document_rejects_bad_assignee():
    doc = {
        "schema_version": "0.1.0",
        "project": {"id": "P"},
        "nodes": [{"id": "A", "title": "A", "assignee_id": 7}],
    }
    ws, errors = validate_project(doc)
    assert ws is None
    assert [(e.code, e.path) for e in errors] == [("E_INVALID_TYPE", "nodes[0].assignee_id")]
