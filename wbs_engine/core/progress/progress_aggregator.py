from __future__ import annotations

import logging
from dataclasses import replace
from datetime import datetime, timezone
from typing import Optional

from wbs_engine.core.config import ProgressWeighting
from wbs_engine.core.errors import ValidationError
from wbs_engine.core.hierarchy.hierarchy_store import HierarchyStore
from wbs_engine.core.model import ALLOWED_STATUSES, Node, NodeStatus, ProgressView

logger = logging.getLogger(__name__)

# Statuses a parent may be given by hand; the rest are derived from children.
MANUAL_PARENT_STATUSES: set[str] = {"cancelled", "archived"}


class ProgressAggregator:
    """Keeps parent progress/status consistent with their children.

    Leaves hold manually set progress. Every change walks up the parent
    chain only, so one update costs O(depth).
    """

    def __init__(
        self,
        store: HierarchyStore,
        *,
        weighting: ProgressWeighting = "equal",
        now: Optional[datetime] = None,
    ) -> None:
        self.store = store
        self.weighting = weighting
        self.now = now or datetime.now(timezone.utc)

    def set_progress(self, node_id: str, progress: float) -> Node:
        node = self.store.get(node_id)
        if not self.store.is_leaf(node_id):
            raise ValidationError(
                code="E_PROGRESS_ON_SUMMARY",
                message="progress of a node with children is derived from its children",
                node_id=node_id,
            )
        if isinstance(progress, bool) or not isinstance(progress, (int, float)) or not 0 <= progress <= 100:
            raise ValidationError(
                code="E_PROGRESS_RANGE",
                message="progress must be between 0 and 100",
                node_id=node_id,
                path="progress",
            )

        if progress == 100:
            changed = replace(node, progress=100.0, status="completed", completed_at=node.completed_at or self.now)
        else:
            changed = replace(node, progress=float(progress), status="in_progress", completed_at=None)
        stored = self.store.put(changed)
        self.propagate(node_id)
        return stored

    def set_status(self, node_id: str, status: str) -> Node:
        node = self.store.get(node_id)
        if status not in ALLOWED_STATUSES:
            raise ValidationError(
                code="E_INVALID_ENUM",
                message=f"status must be one of {list(ALLOWED_STATUSES)}",
                node_id=node_id,
                path="status",
            )

        if not self.store.is_leaf(node_id):
            if status not in MANUAL_PARENT_STATUSES:
                raise ValidationError(
                    code="E_STATUS_ON_SUMMARY",
                    message=f"status of a node with children is derived; only {sorted(MANUAL_PARENT_STATUSES)} may be set",
                    node_id=node_id,
                    path="status",
                )
            return self.store.put(replace(node, status=status))

        if status == "completed":
            changed = replace(node, progress=100.0, status="completed", completed_at=node.completed_at or self.now)
        elif status == "pending":
            changed = replace(node, progress=0.0, status="pending", completed_at=None)
        else:
            if node.progress == 100:
                raise ValidationError(
                    code="E_STATUS_PROGRESS_MISMATCH",
                    message=f"a leaf at 100% progress must stay completed; lower its progress before setting {status}",
                    node_id=node_id,
                    path="status",
                )
            changed = replace(node, status=status, completed_at=None)
        stored = self.store.put(changed)
        self.propagate(node_id)
        return stored

    def propagate(self, node_id: str) -> list[Node]:
        """Recompute every ancestor of `node_id`, nearest first."""
        node = self.store.nodes[node_id]
        if node.parent_id is None:
            return []
        return self.refresh(node.parent_id)

    def refresh(self, parent_id: Optional[str]) -> list[Node]:
        """Recompute `parent_id` and its ancestors. Unchanged nodes are left alone."""
        updated: list[Node] = []
        cur_id = parent_id
        while cur_id is not None:
            cur = self.store.get(cur_id)
            children = self.store.list_children(cur_id)
            if children:
                derived = self._derive(cur, children)
                if derived != cur:
                    derived = self.store.put(derived)
                    updated.append(derived)
            cur_id = cur.parent_id
        if updated:
            logger.debug("progress propagated to %d ancestor(s): %s", len(updated), [n.id for n in updated])
        return updated

    def view(self, node_id: str) -> ProgressView:
        node = self.store.get(node_id)
        return ProgressView(
            node_id=node.id,
            progress=node.progress,
            status=node.status,
            completed_at=node.completed_at,
            is_leaf=self.store.is_leaf(node_id),
        )

    def _derive(self, parent: Node, children: list[Node]) -> Node:
        progress = self._average(children)
        status: NodeStatus = parent.status
        completed_at = parent.completed_at
        if status not in MANUAL_PARENT_STATUSES:
            if progress == 100:
                status = "completed"
                completed_at = completed_at or self.now
            elif status == "completed":
                status = "in_progress"
                completed_at = None
            elif status == "pending" and progress > 0:
                status = "in_progress"
        return replace(parent, progress=progress, status=status, completed_at=completed_at)

    def _average(self, children: list[Node]) -> float:
        if all(c.progress == 100 for c in children):
            return 100.0
        if self.weighting == "duration":
            weights = [_duration_weight(c) for c in children]
            total = sum(weights)
            if total > 0:
                return round(sum(w * c.progress for w, c in zip(weights, children)) / total, 4)
        return round(sum(c.progress for c in children) / len(children), 4)


def _duration_weight(node: Node) -> int:
    # Children without any duration count as one day.
    d = node.derived_duration()
    return 1 if d is None else d
