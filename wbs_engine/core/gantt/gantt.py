from __future__ import annotations

from collections import defaultdict
from datetime import timedelta

from wbs_engine.core.model import GanttBar, ProjectState, Schedule
from wbs_engine.core.schedule.scheduler import anchor_date


def build_gantt(state: ProjectState, schedule: Schedule) -> list[GanttBar]:
    """Project every live node through the schedule snapshot, in hierarchy order.

    Bars take their dates from the earliest start/finish when the project has a
    day-0 anchor; unscheduled nodes fall back to their planned dates.
    """
    anchor = anchor_date(state)
    preds: dict[str, list[str]] = defaultdict(list)
    for e in state.edges:
        if e.predecessor_id not in preds[e.successor_id]:
            preds[e.successor_id].append(e.predecessor_id)

    live = sorted((n for n in state.nodes.values() if not n.is_deleted), key=lambda n: n.path_key)
    bars: list[GanttBar] = []
    for n in live:
        entry = schedule.entries.get(n.id)
        if entry is not None:
            start_day, end_day = entry.earliest_start, entry.earliest_finish
            start = anchor + timedelta(days=start_day) if anchor else None
            end = anchor + timedelta(days=end_day) if anchor else None
        else:
            start_day = end_day = None
            start, end = n.planned_start, n.planned_end

        bars.append(
            GanttBar(
                id=n.id,
                title=n.title,
                start_day=start_day,
                end_day=end_day,
                progress=n.progress,
                is_critical=entry.is_critical if entry else False,
                is_milestone=n.derived_duration() == 0,
                parent_id=n.parent_id,
                start=start,
                end=end,
                float=entry.float if entry else None,
                dependencies=preds.get(n.id, []),
                assignee_id=n.assignee_id,
            )
        )
    return bars
