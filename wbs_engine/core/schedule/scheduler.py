from __future__ import annotations

import logging
import threading
import time
from datetime import date
from typing import Optional

from wbs_engine.core.config import DEFAULT_CONFIG, EngineConfig
from wbs_engine.core.errors import RecomputeCancelled, ScheduleCorrupted, ScheduleError
from wbs_engine.core.graph.dependency_graph import DependencyGraph
from wbs_engine.core.graph.network import FINISH, START, TASK, Arc, Vertex
from wbs_engine.core.model import ProjectState, Schedule, ScheduleEntry
from wbs_engine.core.schedule.constraints import Timing, backward_bound, forward_bound
from wbs_engine.core.schedule.critical_path import driving_float, find_critical_paths

logger = logging.getLogger(__name__)

# How many vertices to process between cancellation checks.
_CANCEL_STRIDE = 256


def anchor_date(state: ProjectState) -> Optional[date]:
    """Calendar date of day 0: the project start, else the earliest planned start."""
    if state.project.start_date is not None:
        return state.project.start_date
    starts = [n.planned_start for n in state.nodes.values() if not n.is_deleted and n.planned_start is not None]
    return min(starts) if starts else None


def deadline_offset(state: ProjectState) -> Optional[int]:
    anchor = anchor_date(state)
    if state.project.target_date is None or anchor is None:
        return None
    return (state.project.target_date - anchor).days


def compute_schedule(
    state: ProjectState,
    *,
    deadline: Optional[int] = None,
    config: EngineConfig = DEFAULT_CONFIG,
    cancel: Optional[threading.Event] = None,
) -> Schedule:
    """Run the forward and backward CPM passes over one project state.

    `deadline` is a day offset from day 0; when omitted the project's
    target date is used, and when that is unset the target finish is the
    latest earliest finish. Whole-day arithmetic, no calendar exclusions.

    The passes run over the event network: summaries carry their edges to
    every descendant and nodes without a duration pass bounds through at
    zero length. Only nodes with a duration get their own entry; summaries
    get an entry rolled up from their children.
    """
    t0 = time.perf_counter()
    project = state.project
    graph = DependencyGraph(project.id, state.nodes, state.edges)
    order = graph.topological_order()
    net = graph.network()

    leaves_without_duration = [
        nid for nid in order if net.is_span(nid) and not net.children_of(nid)
    ]
    if leaves_without_duration and config.unscheduled_policy == "fail":
        raise ScheduleError(
            code="E_UNSCHEDULED_NODE",
            message=(
                f"{len(leaves_without_duration)} node(s) have no duration and no planned start/end pair: "
                + ", ".join(leaves_without_duration[:10])
            ),
            node_id=leaves_without_duration[0],
        )

    vertices, stuck = net.topological_order()
    if stuck:
        logger.error(
            "project %s: summary edges close a cycle through the hierarchy among %d node(s): %s",
            project.id,
            len(stuck),
            ", ".join(stuck[:10]),
        )
        raise ScheduleCorrupted(
            code="E_GRAPH_CORRUPTED",
            message=f"dependency cycle through the WBS hierarchy among: {', '.join(stuck)}",
            path=f"project:{project.id}",
        )

    durations: dict[Vertex, int] = {v: net.duration(v) for v in vertices}
    incoming: dict[Vertex, list[Arc]] = {v: [] for v in vertices}
    outgoing: dict[Vertex, list[Arc]] = {v: [] for v in vertices}
    arcs: list[Arc] = []
    for v in vertices:
        for arc in net.successors(v):
            arcs.append(arc)
            outgoing[v].append(arc)
            incoming[arc.target].append(arc)

    anchor = anchor_date(state)

    # Forward pass.
    es: dict[Vertex, int] = {}
    ef: dict[Vertex, int] = {}
    for i, v in enumerate(vertices):
        _check_cancel(cancel, i)
        node = state.nodes[v[0]]
        d = durations[v]
        start = 0
        if v[1] != FINISH and node.pinned and node.planned_start is not None and anchor is not None:
            start = max(start, (node.planned_start - anchor).days)
        for arc in incoming[v]:
            p = arc.source
            start = max(start, forward_bound(arc.type, Timing(es[p], ef[p]), d, arc.lag_days))
        es[v] = start
        ef[v] = start + d

    # Pass-through points count too, so no bound can land past the target.
    project_finish = max(ef.values(), default=0)
    if deadline is None:
        deadline = deadline_offset(state)
    target = project_finish if deadline is None else deadline

    # Backward pass.
    ls: dict[Vertex, int] = {}
    lf: dict[Vertex, int] = {}
    for i, v in enumerate(reversed(vertices)):
        _check_cancel(cancel, i)
        d = durations[v]
        finish = target
        for arc in outgoing[v]:
            s = arc.target
            finish = min(finish, backward_bound(arc.type, Timing(ls[s], lf[s]), d, arc.lag_days))
        lf[v] = finish
        ls[v] = finish - d

    floats = {v: ls[v] - es[v] for v in vertices}
    tasks = [v for v in vertices if v[1] == TASK]
    entries: dict[str, ScheduleEntry] = {}
    for v in tasks:
        entries[v[0]] = ScheduleEntry(
            node_id=v[0],
            duration=durations[v],
            earliest_start=es[v],
            earliest_finish=ef[v],
            latest_start=ls[v],
            latest_finish=lf[v],
            float=floats[v],
            is_critical=floats[v] == 0,
        )

    at_risk = tuple(v[0] for v in tasks if floats[v] < 0)
    paths = find_critical_paths(
        vertices,
        floats,
        es,
        ef,
        durations,
        arcs,
        label=lambda v: v[0] if v[1] == TASK else None,
        threshold=driving_float(floats[v] for v in tasks),
        limit=config.max_critical_paths,
    )

    # Summaries span their scheduled children, deepest first.
    unscheduled = list(leaves_without_duration)
    summaries = [v[0] for v in vertices if v[1] == START and net.children_of(v[0])]
    for nid in sorted(summaries, key=lambda n: state.nodes[n].depth, reverse=True):
        rolled = _roll_up(nid, [entries[c] for c in net.children_of(nid) if c in entries])
        if rolled is None:
            unscheduled.append(nid)
        else:
            entries[nid] = rolled

    if unscheduled:
        logger.warning(
            "project %s: %d node(s) left unscheduled (no duration): %s",
            project.id,
            len(unscheduled),
            ", ".join(unscheduled[:10]),
        )
    if at_risk:
        logger.warning(
            "project %s: schedule infeasible against deadline day %s (%d node(s) with negative float)",
            project.id,
            target,
            len(at_risk),
        )
    logger.debug(
        "project %s rev %d: scheduled %d node(s) over %d vertices in %.2f ms",
        project.id,
        state.revision,
        len(tasks),
        len(vertices),
        (time.perf_counter() - t0) * 1000,
    )

    return Schedule(
        project_id=project.id,
        revision=state.revision,
        entries=entries,
        order=tuple(order),
        project_finish=project_finish,
        deadline=deadline,
        critical_paths=tuple(paths),
        unscheduled=tuple(sorted(unscheduled, key=lambda n: state.nodes[n].path_key)),
        at_risk=at_risk,
    )


def _roll_up(node_id: str, below: list[ScheduleEntry]) -> Optional[ScheduleEntry]:
    if not below:
        return None
    start = min(e.earliest_start for e in below)
    finish = max(e.earliest_finish for e in below)
    slack = min(e.float for e in below)
    return ScheduleEntry(
        node_id=node_id,
        duration=finish - start,
        earliest_start=start,
        earliest_finish=finish,
        latest_start=min(e.latest_start for e in below),
        latest_finish=max(e.latest_finish for e in below),
        float=slack,
        is_critical=slack == 0,
        summary=True,
    )


def _check_cancel(cancel: Optional[threading.Event], i: int) -> None:
    if cancel is not None and i % _CANCEL_STRIDE == 0 and cancel.is_set():
        raise RecomputeCancelled(code="E_RECOMPUTE_CANCELLED", message="schedule recomputation was cancelled")
