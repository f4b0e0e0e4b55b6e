from __future__ import annotations

from dataclasses import dataclass
from typing import Optional


@dataclass(frozen=True)
class WBSError(Exception):
    """Base error envelope. Every engine failure carries a stable code.

    Only subclasses are raised; subclasses must not redeclare fields.
    """

    code: str
    message: str
    node_id: Optional[str] = None
    path: Optional[str] = None
    file: Optional[str] = None

    def __str__(self) -> str:
        parts: list[str] = []
        if self.file:
            parts.append(self.file)
        if self.path:
            parts.append(self.path)
        elif self.node_id:
            parts.append(self.node_id)
        loc = ":".join(parts) if parts else "<project>"
        return f"{loc}: {self.code}: {self.message}"


class NotFound(WBSError):
    pass


class InvalidParent(WBSError):
    pass


class CyclicDependency(WBSError):
    pass


class CrossProjectDependency(WBSError):
    pass


class InvalidDependencyType(WBSError):
    pass


class ValidationError(WBSError):
    pass


class Conflict(WBSError):
    pass


class ServiceUnavailable(WBSError):
    """Lock contention; safe for the caller to retry."""


class ScheduleInfeasible(WBSError):
    pass


class ScheduleError(WBSError):
    pass


class ScheduleCorrupted(WBSError):
    """Dependency cycle found while scheduling. The graph invariant was broken upstream."""


class RecomputeCancelled(WBSError):
    pass


class ProjectLoadError(WBSError):
    pass


class ProjectValidationError(WBSError):
    pass


class ConfigError(WBSError):
    pass
