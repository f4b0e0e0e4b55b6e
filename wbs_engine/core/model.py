from __future__ import annotations

from dataclasses import dataclass, field
from datetime import date, datetime
from enum import Enum
from typing import Literal, Mapping, Optional

from wbs_engine.core.errors import ScheduleInfeasible


NodeStatus = Literal["pending", "in_progress", "completed", "cancelled", "archived"]

ALLOWED_STATUSES: tuple[str, ...] = ("pending", "in_progress", "completed", "cancelled", "archived")

PATH_SEPARATOR = "."
PATH_SEGMENT_WIDTH = 4


class DependencyType(str, Enum):
    FS = "FS"  # finish-to-start
    SS = "SS"  # start-to-start
    FF = "FF"  # finish-to-finish
    SF = "SF"  # start-to-finish


@dataclass(frozen=True)
class Project:
    id: str
    name: str
    start_date: Optional[date] = None
    target_date: Optional[date] = None


@dataclass(frozen=True)
class Node:
    id: str
    project_id: str
    title: str

    parent_id: Optional[str] = None
    depth: int = 0
    path: str = ""
    position: int = 0

    planned_start: Optional[date] = None
    planned_end: Optional[date] = None
    duration: Optional[int] = None
    pinned: bool = False
    assignee_id: Optional[str] = None

    progress: float = 0.0
    status: NodeStatus = "pending"
    completed_at: Optional[datetime] = None

    deleted_at: Optional[datetime] = None
    version: int = 1

    @property
    def is_deleted(self) -> bool:
        return self.deleted_at is not None

    @property
    def path_key(self) -> tuple[int, ...]:
        return path_key(self.path)

    def derived_duration(self) -> Optional[int]:
        """Explicit duration, else whole days between the planned dates, else None."""
        if self.duration is not None:
            return self.duration
        if self.planned_start is None or self.planned_end is None:
            return None
        return max(0, (self.planned_end - self.planned_start).days)


@dataclass(frozen=True)
class Dependency:
    project_id: str
    predecessor_id: str
    successor_id: str
    type: DependencyType = DependencyType.FS
    lag_days: int = 0
    created_at: Optional[datetime] = None

    @property
    def key(self) -> tuple[str, str, DependencyType]:
        return (self.predecessor_id, self.successor_id, self.type)


@dataclass(frozen=True)
class ProjectState:
    """Immutable published state of one project. Replaced wholesale on every mutation."""

    project: Project
    nodes: Mapping[str, Node]
    edges: tuple[Dependency, ...] = ()
    revision: int = 0


@dataclass(frozen=True)
class ScheduleEntry:
    node_id: str
    duration: int
    earliest_start: int
    earliest_finish: int
    latest_start: int
    latest_finish: int
    float: int
    is_critical: bool
    summary: bool = False


@dataclass(frozen=True)
class Schedule:
    project_id: str
    revision: int
    entries: Mapping[str, ScheduleEntry]
    order: tuple[str, ...]
    project_finish: int
    deadline: Optional[int] = None
    critical_paths: tuple[tuple[str, ...], ...] = ()
    unscheduled: tuple[str, ...] = ()
    at_risk: tuple[str, ...] = ()

    @property
    def infeasible(self) -> bool:
        return bool(self.at_risk)

    def raise_if_infeasible(self) -> None:
        if self.at_risk:
            worst = min(self.entries[nid].float for nid in self.at_risk)
            raise ScheduleInfeasible(
                code="E_SCHEDULE_INFEASIBLE",
                message=(
                    f"{len(self.at_risk)} node(s) miss the deadline (day {self.deadline}); "
                    f"worst float {worst}"
                ),
                path="deadline",
            )


@dataclass(frozen=True)
class ProgressView:
    node_id: str
    progress: float
    status: NodeStatus
    completed_at: Optional[datetime]
    is_leaf: bool


@dataclass(frozen=True)
class ProjectProgress:
    total_nodes: int
    completed_nodes: int
    percentage: float


@dataclass(frozen=True)
class GanttBar:
    id: str
    title: str
    start_day: Optional[int]
    end_day: Optional[int]
    progress: float
    is_critical: bool
    is_milestone: bool
    parent_id: Optional[str] = None
    start: Optional[date] = None
    end: Optional[date] = None
    float: Optional[int] = None
    dependencies: list[str] = field(default_factory=list)
    assignee_id: Optional[str] = None


def format_segment(position: int) -> str:
    return str(position).zfill(PATH_SEGMENT_WIDTH)


def join_path(parent_path: str, position: int) -> str:
    seg = format_segment(position)
    return f"{parent_path}{PATH_SEPARATOR}{seg}" if parent_path else seg


def path_key(path: str) -> tuple[int, ...]:
    if not path:
        return ()
    return tuple(int(seg) for seg in path.split(PATH_SEPARATOR))


def is_path_within(path: str, ancestor_path: str) -> bool:
    """True when `path` equals `ancestor_path` or lies in its subtree."""
    return path == ancestor_path or path.startswith(ancestor_path + PATH_SEPARATOR)


def parent_path(path: str) -> str:
    head, sep, _ = path.rpartition(PATH_SEPARATOR)
    return head if sep else ""
