from __future__ import annotations

from collections import Counter, defaultdict
from dataclasses import asdict
from datetime import date, datetime
from typing import Any, Iterable, Optional, cast

from wbs_engine.core.config import DEFAULT_CONFIG, EngineConfig
from wbs_engine.core.errors import ProjectValidationError, WBSError
from wbs_engine.core.model import ALLOWED_STATUSES, DependencyType
from wbs_engine.core.progress.progress_aggregator import MANUAL_PARENT_STATUSES
from wbs_engine.core.project.workspace import Workspace


ALLOWED_DEPENDENCY_TYPES: set[str] = {t.value for t in DependencyType}


def validate_project(
    doc: dict[str, Any], *, config: EngineConfig = DEFAULT_CONFIG
) -> tuple[Optional[Workspace], list[ProjectValidationError]]:
    """Validate a project document and build it through the engine.

    Returns (workspace, errors). Workspace is None when errors exist. Shape
    errors are collected first; a clean document is then replayed as engine
    operations, so cycles and progress rules surface as coded errors too.
    """

    file = cast(Optional[str], doc.get("__file__"))
    errors: list[ProjectValidationError] = []

    def err(code: str, message: str, path: str) -> None:
        errors.append(ProjectValidationError(code=code, message=message, file=file, path=path))

    schema_version = doc.get("schema_version")
    if not isinstance(schema_version, str) or not schema_version.strip():
        err("E_REQUIRED_FIELD", "schema_version is required and must be a non-empty string", "schema_version")

    project = doc.get("project")
    project_dates: dict[str, Optional[date]] = {"start_date": None, "target_date": None}
    if not isinstance(project, dict):
        err("E_REQUIRED_FIELD", "project is required and must be an object", "project")
        project = {}
    else:
        pid = project.get("id")
        if not isinstance(pid, str) or not pid.strip():
            err("E_REQUIRED_FIELD", "id is required and must be a non-empty string", "project.id")
        name = project.get("name")
        if name is not None and (not isinstance(name, str) or not name.strip()):
            err("E_INVALID_TYPE", "name must be a non-empty string", "project.name")
        for key in project_dates:
            try:
                project_dates[key] = _as_date(project.get(key))
            except ValueError:
                err("E_INVALID_DATE", f"{key} must be an ISO date (YYYY-MM-DD)", f"project.{key}")

    nodes = doc.get("nodes")
    if not isinstance(nodes, list):
        err("E_REQUIRED_FIELD", "nodes is required and must be an array", "nodes")
        return None, _sorted(errors)

    # Validate each node and build map.
    raw_nodes_by_id: dict[str, dict[str, Any]] = {}
    index_of: dict[str, int] = {}

    for i, raw in enumerate(nodes):
        node_path = f"nodes[{i}]"
        if not isinstance(raw, dict):
            err("E_INVALID_TYPE", "node must be an object", node_path)
            continue

        nid = raw.get("id")
        if not isinstance(nid, str) or not nid.strip():
            err("E_REQUIRED_FIELD", "id is required and must be a non-empty string", f"{node_path}.id")
            continue
        if nid in raw_nodes_by_id:
            err("E_DUPLICATE_ID", f"duplicate node id: {nid}", f"{node_path}.id")
            continue

        title = raw.get("title")
        if not isinstance(title, str) or not title.strip():
            err("E_REQUIRED_FIELD", "title is required and must be a non-empty string", f"{node_path}.title")
            continue

        parent = raw.get("parent")
        if parent is not None and not isinstance(parent, str):
            err("E_INVALID_TYPE", "parent must be a node id string", f"{node_path}.parent")
            continue

        ok = True
        for key in ("position", "duration"):
            v = raw.get(key)
            if v is not None and (isinstance(v, bool) or not isinstance(v, int) or v < 0):
                err("E_INVALID_TYPE", f"{key} must be a non-negative integer", f"{node_path}.{key}")
                ok = False
        for key in ("planned_start", "planned_end"):
            try:
                _as_date(raw.get(key))
            except ValueError:
                err("E_INVALID_DATE", f"{key} must be an ISO date (YYYY-MM-DD)", f"{node_path}.{key}")
                ok = False
        assignee = raw.get("assignee_id")
        if assignee is not None and (not isinstance(assignee, str) or not assignee.strip()):
            err("E_INVALID_TYPE", "assignee_id must be a non-empty string", f"{node_path}.assignee_id")
            ok = False
        pinned = raw.get("pinned")
        if pinned is not None and not isinstance(pinned, bool):
            err("E_INVALID_TYPE", "pinned must be a boolean", f"{node_path}.pinned")
            ok = False
        progress = raw.get("progress")
        if progress is not None and (isinstance(progress, bool) or not isinstance(progress, (int, float))):
            err("E_INVALID_TYPE", "progress must be a number", f"{node_path}.progress")
            ok = False
        status = raw.get("status")
        if status is not None and status not in ALLOWED_STATUSES:
            err("E_INVALID_ENUM", f"status must be one of {list(ALLOWED_STATUSES)}", f"{node_path}.status")
            ok = False

        if ok:
            raw_nodes_by_id[nid] = raw
            index_of[nid] = i

    # Referential integrity checks.
    for nid, raw in raw_nodes_by_id.items():
        parent = raw.get("parent")
        if parent is not None and parent not in raw_nodes_by_id:
            err("E_UNKNOWN_PARENT", f"parent references unknown id: {parent}", f"nodes[{index_of[nid]}].parent")
    if not errors:
        for nid in _parent_cycles(raw_nodes_by_id):
            err("E_PARENT_CYCLE", f"parent chain of {nid} loops back on itself", f"nodes[{index_of[nid]}].parent")

    deps = doc.get("dependencies")
    if deps is None:
        deps = []
    if not isinstance(deps, list):
        err("E_INVALID_TYPE", "dependencies must be an array", "dependencies")
        deps = []
    for j, raw in enumerate(deps):
        dep_path = f"dependencies[{j}]"
        if not isinstance(raw, dict):
            err("E_INVALID_TYPE", "dependency must be an object", dep_path)
            continue
        for key in ("predecessor", "successor"):
            ref = raw.get(key)
            if not isinstance(ref, str) or not ref.strip():
                err("E_REQUIRED_FIELD", f"{key} is required and must be a node id", f"{dep_path}.{key}")
            elif ref not in raw_nodes_by_id:
                err("E_UNKNOWN_NODE", f"{key} references unknown id: {ref}", f"{dep_path}.{key}")
        dep_type = raw.get("type", "FS")
        if not isinstance(dep_type, str) or dep_type.upper() not in ALLOWED_DEPENDENCY_TYPES:
            err("E_INVALID_ENUM", f"type must be one of {sorted(ALLOWED_DEPENDENCY_TYPES)}", f"{dep_path}.type")
        lag = raw.get("lag", 0)
        if isinstance(lag, bool) or not isinstance(lag, int):
            err("E_INVALID_TYPE", "lag must be an integer number of days", f"{dep_path}.lag")

    if errors:
        return None, _sorted(errors)

    ws = Workspace(config)
    project_id = cast(str, project["id"])
    ws.create_project(
        cast(str, project.get("name") or project_id),
        project_id=project_id,
        start_date=project_dates["start_date"],
        target_date=project_dates["target_date"],
    )

    def engine_err(e: WBSError, path: str) -> None:
        err(e.code, e.message, path)

    for nid in _creation_order(raw_nodes_by_id, index_of):
        raw = raw_nodes_by_id[nid]
        try:
            ws.create_node(
                project_id,
                raw.get("parent"),
                raw["title"],
                node_id=nid,
                duration=raw.get("duration"),
                planned_start=_as_date(raw.get("planned_start")),
                planned_end=_as_date(raw.get("planned_end")),
                pinned=bool(raw.get("pinned", False)),
                assignee_id=raw.get("assignee_id"),
            )
        except WBSError as e:
            engine_err(e, f"nodes[{index_of[nid]}]")

    if not errors:
        for nid, raw in raw_nodes_by_id.items():
            try:
                if raw.get("progress") is not None:
                    ws.set_progress(nid, raw["progress"])
                status = raw.get("status")
                if status is None or ws.get_node(nid).status == status:
                    continue
                # Derived parent statuses in the document are informational.
                if ws.list_children(nid) and status not in MANUAL_PARENT_STATUSES:
                    continue
                ws.set_status(nid, status)
            except WBSError as e:
                engine_err(e, f"nodes[{index_of[nid]}]")

        for j, raw in enumerate(deps):
            try:
                ws.add_dependency(raw["predecessor"], raw["successor"], raw.get("type", "FS"), raw.get("lag", 0))
            except WBSError as e:
                engine_err(e, f"dependencies[{j}]")

    if errors:
        ws.close()
        return None, _sorted(errors)
    return ws, []


def project_summary(ws: Workspace, project_id: str) -> dict[str, Any]:
    state = ws.state(project_id)
    live = [n for n in state.nodes.values() if not n.is_deleted]
    counts = Counter(n.status for n in live)
    assignees = Counter(n.assignee_id for n in live if n.assignee_id is not None)
    return {
        "project_id": project_id,
        "node_count": len(live),
        "dependency_count": len(state.edges),
        "status_counts": {k: int(v) for k, v in sorted(counts.items())},
        "progress": asdict(ws.project_progress(project_id)),
        "assignees": {k: int(v) for k, v in sorted(assignees.items())},
        "roots": [n.id for n in ws.list_roots(project_id)],
    }


def summarize_project(ws: Workspace, project_id: str) -> str:
    s = project_summary(ws, project_id)
    parts = [f"{status}={s['status_counts'].get(status, 0)}" for status in ALLOWED_STATUSES]
    p = s["progress"]
    return (
        f"OK: {s['node_count']} nodes, {s['dependency_count']} dependencies ("
        + ", ".join(parts)
        + ")\n"
        + f"Progress: {p['completed_nodes']}/{p['total_nodes']} nodes completed ({p['percentage']:.1f}%)\n"
        + "Roots: "
        + ", ".join(s["roots"])
    )


def _as_date(value: Any) -> Optional[date]:
    if value is None:
        return None
    if isinstance(value, datetime):
        return value.date()
    if isinstance(value, date):
        return value
    if isinstance(value, str):
        return date.fromisoformat(value.strip())
    raise ValueError(f"not a date: {value!r}")


def _parent_cycles(raw_nodes_by_id: dict[str, dict[str, Any]]) -> list[str]:
    """Ids whose parent chain loops back on itself."""
    bad: set[str] = set()
    for start in raw_nodes_by_id:
        seen: set[str] = set()
        cur: Optional[str] = start
        while cur is not None and cur in raw_nodes_by_id:
            if cur in seen:
                bad.add(start)
                break
            seen.add(cur)
            cur = raw_nodes_by_id[cur].get("parent")
    return sorted(bad)


def _creation_order(raw_nodes_by_id: dict[str, dict[str, Any]], index_of: dict[str, int]) -> list[str]:
    """Parents before children; siblings by explicit position, then document order."""
    children: dict[Optional[str], list[str]] = defaultdict(list)
    for nid, raw in raw_nodes_by_id.items():
        children[raw.get("parent")].append(nid)

    def sibling_key(nid: str) -> tuple[float, int]:
        pos = raw_nodes_by_id[nid].get("position")
        return (float("inf") if pos is None else pos, index_of[nid])

    order: list[str] = []
    stack = sorted(children[None], key=sibling_key, reverse=True)
    while stack:
        nid = stack.pop()
        order.append(nid)
        stack.extend(sorted(children[nid], key=sibling_key, reverse=True))
    return order


def _sorted(errors: Iterable[ProjectValidationError]) -> list[ProjectValidationError]:
    return sorted(
        list(errors),
        key=lambda e: (
            e.file or "",
            e.path or "",
            e.code,
        ),
    )
