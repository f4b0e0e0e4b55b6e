from pathlib import Path

import pytest

from wbs_engine.core.project.workspace import Workspace

EXAMPLES = Path(__file__).resolve().parents[1] / "examples"


@pytest.fixture
def examples_dir() -> Path:
    return EXAMPLES


@pytest.fixture
def ws():
    with Workspace() as workspace:
        yield workspace


@pytest.fixture
def pid(ws):
    return ws.create_project("Test project", project_id="P1").id


@pytest.fixture
def make_chain(ws, pid):
    """Create root nodes N0..Nk with the given durations, linked finish-to-start in order."""

    def _make(durations, *, prefix="N", parent=None):
        ids = []
        for i, d in enumerate(durations):
            ids.append(ws.create_node(pid, parent, f"Step {i}", node_id=f"{prefix}{i}", duration=d).id)
        for a, b in zip(ids, ids[1:]):
            ws.add_dependency(a, b)
        return ids

    return _make
