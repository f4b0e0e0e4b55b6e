from __future__ import annotations

from pathlib import Path
from typing import Any

import yaml

from wbs_engine.core.model import Schedule
from wbs_engine.core.project.workspace import Workspace
from wbs_engine.core.schedule.scheduler import anchor_date


def schedule_document(ws: Workspace, project_id: str, schedule: Schedule) -> dict[str, Any]:
    """Plain-data view of a schedule, rows in hierarchy order."""
    state = ws.state(project_id)
    anchor = anchor_date(state)
    rows: list[dict[str, Any]] = []
    for node in sorted((n for n in state.nodes.values() if not n.is_deleted), key=lambda n: n.path_key):
        entry = schedule.entries.get(node.id)
        row: dict[str, Any] = {"id": node.id, "title": node.title, "path": node.path}
        if entry is None:
            row["scheduled"] = False
        else:
            row.update(
                {
                    "scheduled": True,
                    "summary": entry.summary,
                    "duration": entry.duration,
                    "earliest_start": entry.earliest_start,
                    "earliest_finish": entry.earliest_finish,
                    "latest_start": entry.latest_start,
                    "latest_finish": entry.latest_finish,
                    "float": entry.float,
                    "is_critical": entry.is_critical,
                }
            )
        rows.append(row)

    return {
        "project_id": project_id,
        "revision": schedule.revision,
        "start_date": anchor.isoformat() if anchor else None,
        "project_finish": schedule.project_finish,
        "deadline": schedule.deadline,
        "infeasible": schedule.infeasible,
        "at_risk": list(schedule.at_risk),
        "unscheduled": list(schedule.unscheduled),
        "critical_paths": [list(p) for p in schedule.critical_paths],
        "nodes": rows,
    }


def dump_schedule_yaml(ws: Workspace, project_id: str, schedule: Schedule, path: str) -> None:
    p = Path(path)
    if str(p.parent) not in (".", ""):
        p.parent.mkdir(parents=True, exist_ok=True)
    with open(p, "w", encoding="utf-8") as f:
        yaml.safe_dump(
            schedule_document(ws, project_id, schedule),
            f,
            sort_keys=False,
            default_flow_style=False,
            allow_unicode=True,
        )
