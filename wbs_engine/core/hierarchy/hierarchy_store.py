from __future__ import annotations

import logging
import uuid
from collections import defaultdict
from dataclasses import replace
from datetime import date, datetime, timezone
from typing import Iterable, Optional

from wbs_engine.core.errors import InvalidParent, NotFound, ValidationError
from wbs_engine.core.model import Node, Project, is_path_within, join_path, parent_path

logger = logging.getLogger(__name__)


class HierarchyStore:
    """Materialized-path tree over one project's nodes.

    Works on a private, mutable copy of the node mapping. Writes replace frozen
    `Node` values; the owning transaction publishes the mapping afterwards.
    Tombstoned nodes stay in the mapping and are ignored by every query.
    A parent-to-children index is built on first use and kept current by the
    mutations, so walking a parent chain does not rescan the project.
    """

    def __init__(self, project: Project, nodes: dict[str, Node]) -> None:
        self.project = project
        self.nodes = nodes
        self._kids: Optional[dict[Optional[str], set[str]]] = None

    # Queries

    def get(self, node_id: str) -> Node:
        node = self.nodes.get(node_id)
        if node is None or node.is_deleted:
            raise NotFound(code="E_NODE_NOT_FOUND", message=f"node not found: {node_id}", node_id=node_id)
        return node

    def list_roots(self) -> list[Node]:
        return self._children(None)

    def list_children(self, node_id: str) -> list[Node]:
        self.get(node_id)
        return self._children(node_id)

    def list_subtree(self, node_id: str) -> list[Node]:
        """The node followed by all of its descendants, in hierarchy order."""
        out: list[Node] = []
        stack = [self.get(node_id)]
        while stack:
            cur = stack.pop()
            out.append(cur)
            stack.extend(reversed(self._children(cur.id)))
        return out

    def child_ids(self, node_id: str) -> list[str]:
        return sorted(self._index().get(node_id, ()))

    def is_leaf(self, node_id: str) -> bool:
        return not self._index().get(node_id)

    def ancestors(self, node_id: str) -> list[Node]:
        """Parent first, root last."""
        out: list[Node] = []
        cur = self.get(node_id)
        while cur.parent_id is not None:
            cur = self.get(cur.parent_id)
            out.append(cur)
        return out

    # Mutations

    def create_node(
        self,
        parent_id: Optional[str],
        title: str,
        *,
        node_id: Optional[str] = None,
        position: Optional[int] = None,
        duration: Optional[int] = None,
        planned_start: Optional[date] = None,
        planned_end: Optional[date] = None,
        pinned: bool = False,
        assignee_id: Optional[str] = None,
    ) -> Node:
        if not isinstance(title, str) or not title.strip():
            raise ValidationError(code="E_REQUIRED_FIELD", message="title is required and must be a non-empty string")
        if node_id is None:
            node_id = uuid.uuid4().hex
        elif node_id in self.nodes:
            raise ValidationError(code="E_DUPLICATE_ID", message=f"duplicate node id: {node_id}", node_id=node_id)
        _check_duration(duration)
        _check_assignee(assignee_id)

        if parent_id is None:
            parent_path, depth = "", 0
        else:
            parent = self.nodes.get(parent_id)
            if parent is None or parent.is_deleted:
                raise NotFound(
                    code="E_PARENT_NOT_FOUND",
                    message=f"parent node not found: {parent_id}",
                    node_id=parent_id,
                )
            parent_path, depth = parent.path, parent.depth + 1

        pos = self._claim_position(parent_id, position)
        node = Node(
            id=node_id,
            project_id=self.project.id,
            title=title.strip(),
            parent_id=parent_id,
            depth=depth,
            path=join_path(parent_path, pos),
            position=pos,
            planned_start=planned_start,
            planned_end=planned_end,
            duration=duration,
            pinned=pinned,
            assignee_id=assignee_id,
        )
        self.nodes[node_id] = node
        self._index()[parent_id].add(node_id)
        logger.info("created node %s under %s at %s", node_id, parent_id or "<root>", node.path)
        return node

    def move_node(self, node_id: str, new_parent_id: Optional[str], *, position: Optional[int] = None) -> Node:
        node = self.get(node_id)

        if new_parent_id is not None:
            if new_parent_id == node_id:
                raise InvalidParent(
                    code="E_INVALID_PARENT",
                    message="a node cannot be its own parent",
                    node_id=node_id,
                )
            new_parent = self.nodes.get(new_parent_id)
            if new_parent is None or new_parent.is_deleted:
                raise NotFound(
                    code="E_PARENT_NOT_FOUND",
                    message=f"parent node not found: {new_parent_id}",
                    node_id=new_parent_id,
                )
            if is_path_within(new_parent.path, node.path):
                raise InvalidParent(
                    code="E_INVALID_PARENT",
                    message=f"cannot move {node_id} under its own descendant {new_parent_id}",
                    node_id=node_id,
                )

        if new_parent_id == node.parent_id and (position is None or position == node.position):
            moved = replace(node, version=node.version + 1)
            self.nodes[node_id] = moved
            logger.debug("move of %s to its current parent is a no-op", node_id)
            return moved

        subtree = self.list_subtree(node_id)

        if new_parent_id is None:
            parent_path, depth = "", 0
        else:
            parent = self.get(new_parent_id)
            parent_path, depth = parent.path, parent.depth + 1

        pos = self._claim_position(new_parent_id, position, exclude=node_id)
        new_path = join_path(parent_path, pos)
        self._rebase(subtree, node.path, new_path, depth - node.depth)
        moved = replace(self.nodes[node_id], parent_id=new_parent_id, position=pos)
        self.nodes[node_id] = moved
        index = self._index()
        index[node.parent_id].discard(node_id)
        index[new_parent_id].add(node_id)
        logger.info(
            "moved node %s from %s to %s (%d node(s) re-pathed)",
            node_id,
            node.parent_id or "<root>",
            new_parent_id or "<root>",
            len(subtree),
        )
        return moved

    def delete_node(self, node_id: str, *, now: Optional[datetime] = None) -> list[str]:
        """Tombstone the node and its subtree. Returns the deleted ids, node first."""
        subtree = self.list_subtree(node_id)
        ts = now or datetime.now(timezone.utc)
        index = self._index()
        for n in subtree:
            self.nodes[n.id] = replace(n, deleted_at=ts, version=n.version + 1)
            index[n.parent_id].discard(n.id)
        logger.info("deleted node %s (%d node(s) tombstoned)", node_id, len(subtree))
        return [n.id for n in subtree]

    def update_fields(self, node_id: str, **changes: object) -> Node:
        node = self.get(node_id)
        if "title" in changes:
            title = changes["title"]
            if not isinstance(title, str) or not title.strip():
                raise ValidationError(
                    code="E_REQUIRED_FIELD",
                    message="title is required and must be a non-empty string",
                    node_id=node_id,
                )
            changes["title"] = title.strip()
        if "duration" in changes:
            _check_duration(changes["duration"], node_id=node_id)
        if "assignee_id" in changes:
            _check_assignee(changes["assignee_id"], node_id=node_id)
        updated = replace(node, version=node.version + 1, **changes)  # type: ignore[arg-type]
        self.nodes[node_id] = updated
        return updated

    def put(self, node: Node) -> Node:
        """Store a changed node, bumping its version."""
        current = self.nodes[node.id]
        stored = replace(node, version=current.version + 1)
        self.nodes[node.id] = stored
        return stored

    # Internals

    def _index(self) -> dict[Optional[str], set[str]]:
        if self._kids is None:
            kids: dict[Optional[str], set[str]] = defaultdict(set)
            for n in self.nodes.values():
                if not n.is_deleted:
                    kids[n.parent_id].add(n.id)
            self._kids = kids
        return self._kids

    def _children(self, parent_id: Optional[str]) -> list[Node]:
        kids = [self.nodes[nid] for nid in self._index().get(parent_id, ())]
        return sorted(kids, key=lambda n: n.position)

    def _claim_position(
        self, parent_id: Optional[str], position: Optional[int], exclude: Optional[str] = None
    ) -> int:
        """Next free sibling position, or open a gap at `position` by shifting later siblings."""
        siblings = [n for n in self._children(parent_id) if n.id != exclude]
        next_free = (siblings[-1].position + 1) if siblings else 0
        if position is None or position >= next_free:
            return next_free
        if position < 0:
            raise ValidationError(code="E_INVALID_POSITION", message="position must be >= 0", path="position")

        for sib in reversed(siblings):
            if sib.position < position:
                break
            shifted = sib.position + 1
            new_path = join_path(parent_path(sib.path), shifted)
            self._rebase(self.list_subtree(sib.id), sib.path, new_path, 0)
            self.nodes[sib.id] = replace(self.nodes[sib.id], position=shifted)
        return position

    def _rebase(self, subtree: Iterable[Node], old_prefix: str, new_prefix: str, depth_delta: int) -> None:
        for n in subtree:
            current = self.nodes[n.id]
            rel = n.path[len(old_prefix) :]
            self.nodes[n.id] = replace(
                current,
                path=new_prefix + rel,
                depth=n.depth + depth_delta,
                version=current.version + 1,
            )


def _check_duration(duration: object, node_id: Optional[str] = None) -> None:
    if duration is None:
        return
    if isinstance(duration, bool) or not isinstance(duration, int) or duration < 0:
        raise ValidationError(
            code="E_INVALID_DURATION",
            message="duration must be a non-negative integer number of days",
            node_id=node_id,
            path="duration",
        )


def _check_assignee(assignee_id: object, node_id: Optional[str] = None) -> None:
    if assignee_id is None:
        return
    if not isinstance(assignee_id, str) or not assignee_id.strip():
        raise ValidationError(
            code="E_INVALID_ASSIGNEE",
            message="assignee_id must be a non-empty string or null",
            node_id=node_id,
            path="assignee_id",
        )
