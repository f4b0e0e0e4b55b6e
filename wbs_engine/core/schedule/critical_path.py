from __future__ import annotations

from collections import defaultdict
from typing import Callable, Hashable, Iterable, Mapping, Optional, Sequence, TypeVar

from wbs_engine.core.graph.network import Arc
from wbs_engine.core.schedule.constraints import Timing, forward_bound

V = TypeVar("V", bound=Hashable)


def is_tight(arc: Arc, es: Mapping, ef: Mapping, durations: Mapping) -> bool:
    """An arc is tight (zero slack) when it alone pins the target's earliest start."""
    bound = forward_bound(
        arc.type,
        Timing(es[arc.source], ef[arc.source]),
        durations[arc.target],
        arc.lag_days,
    )
    return bound == es[arc.target]


def driving_float(floats: Iterable[int]) -> int:
    """Float a node needs to count as critical: 0, or the worst float when a deadline is missed."""
    return min(0, min(floats, default=0))


def find_critical_paths(
    order: Sequence[V],
    floats: Mapping[V, int],
    es: Mapping[V, int],
    ef: Mapping[V, int],
    durations: Mapping[V, int],
    arcs: Iterable[Arc],
    *,
    label: Callable[[V], Optional[str]],
    threshold: int = 0,
    limit: int = 64,
) -> list[tuple[str, ...]]:
    """Enumerate chains of critical vertices linked by tight arcs.

    A vertex is critical when its float equals `threshold`. A chain starts at
    a critical vertex with no incoming critical arc and ends at one with no
    outgoing critical arc. `label` names the node a vertex reports as, or
    None for vertices that only carry bounds (summary events, pass-through
    points). Chains that reduce to a run already contained in a longer chain
    are dropped. At most `limit` chains are returned, in topological order.
    """
    rank = {v: i for i, v in enumerate(order)}
    critical = {v for v in order if floats[v] == threshold}

    nxt: dict[V, set[V]] = defaultdict(set)
    has_incoming: set[V] = set()
    for arc in arcs:
        p, s = arc.source, arc.target
        if p in critical and s in critical and is_tight(arc, es, ef, durations):
            nxt[p].add(s)
            has_incoming.add(s)

    starts = sorted((v for v in critical if v not in has_incoming), key=lambda v: rank[v])
    raw: list[tuple[str, ...]] = []
    # Event vertices fan out into runs that collapse together once unlabeled.
    budget = limit * 8

    def walk(cur: V, trail: list[V]) -> None:
        if len(raw) >= budget:
            return
        trail.append(cur)
        following = sorted(nxt.get(cur, ()), key=lambda v: rank[v])
        if not following:
            named = tuple(n for n in (label(v) for v in trail) if n is not None)
            if named:
                raw.append(named)
        for s in following:
            walk(s, trail)
        trail.pop()

    for start in starts:
        walk(start, [])

    paths: list[tuple[str, ...]] = []
    for p in raw:
        if p in paths or any(_contains(other, p) for other in raw if other != p):
            continue
        paths.append(p)
        if len(paths) >= limit:
            break
    return paths


def _contains(outer: tuple[str, ...], inner: tuple[str, ...]) -> bool:
    if len(inner) >= len(outer):
        return False
    n = len(inner)
    return any(outer[i : i + n] == inner for i in range(len(outer) - n + 1))
