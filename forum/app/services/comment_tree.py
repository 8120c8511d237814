"""Reply tree assembly for comment listings.

Comments are read flat, already ordered (by depth, then by the requested
sort), and turned into a forest here. Nodes live in an arena keyed by id and
reference their replies by id, so a malformed parent link can never make a
node own one of its ancestors.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Dict, Hashable, Iterable, List, Mapping, Optional

from forum.app.core.logging import get_logger

logger = get_logger(__name__)


class CommentSort(str, Enum):
    TOP = "top"
    NEW = "new"
    CONTROVERSIAL = "controversial"


def controversy_score(upvotes: int, downvotes: int) -> float:
    """(up + down) * (1 - |up - down| / max(up + down, 1)).

    Highest for large, evenly split vote counts; 0 for unanimous votes and
    for comments nobody voted on.
    """
    total = upvotes + downvotes
    return total * (1 - abs(upvotes - downvotes) / max(total, 1))


@dataclass
class CommentNode:
    id: Hashable
    parent_id: Optional[Hashable]
    depth: int
    content: str = ""
    score: int = 0
    upvotes: int = 0
    downvotes: int = 0
    author_id: Optional[str] = None
    author_name: Optional[str] = None
    author_display_name: Optional[str] = None
    created_at: Optional[datetime] = None
    is_deleted: bool = False
    extra: Dict[str, Any] = field(default_factory=dict)

    @classmethod
    def from_record(cls, record: Mapping[str, Any]) -> "CommentNode":
        """Build a node from a row mapping or dict.

        Unknown keys are kept in extra so callers can carry annotations
        (such as the viewer's own vote) through assembly.
        """
        known = {name for name in cls.__dataclass_fields__ if name != "extra"}
        values = {k: v for k, v in record.items() if k in known}
        extra = {k: v for k, v in record.items() if k not in known and k != "replies"}
        return cls(
            id=values.pop("id"),
            parent_id=values.pop("parent_id", None),
            depth=values.pop("depth", 0),
            extra=extra,
            **values,
        )

    def to_dict(self) -> Dict[str, Any]:
        created_at = self.created_at.isoformat() if self.created_at else None
        data = {
            "id": self.id,
            "parent_id": self.parent_id,
            "depth": self.depth,
            "content": self.content,
            "score": self.score,
            "upvotes": self.upvotes,
            "downvotes": self.downvotes,
            "author_name": self.author_name,
            "author_display_name": self.author_display_name,
            "created_at": created_at,
            "is_deleted": self.is_deleted,
        }
        data.update(self.extra)
        return data


class CommentForest:
    """Assembled threads: the root ids plus reply ids per node."""

    def __init__(self) -> None:
        self.nodes: Dict[Hashable, CommentNode] = {}
        self._replies: Dict[Hashable, List[Hashable]] = {}
        self._parent: Dict[Hashable, Hashable] = {}
        self.root_ids: List[Hashable] = []

    def __len__(self) -> int:
        return len(self.nodes)

    @property
    def roots(self) -> List[CommentNode]:
        return [self.nodes[node_id] for node_id in self.root_ids]

    def reply_ids(self, node_id: Hashable) -> List[Hashable]:
        return list(self._replies.get(node_id, ()))

    def replies(self, node_id: Hashable) -> List[CommentNode]:
        return [self.nodes[child] for child in self._replies.get(node_id, ())]

    def _add(self, node: CommentNode) -> bool:
        if node.id in self.nodes:
            return False
        self.nodes[node.id] = node
        self._replies[node.id] = []
        return True

    def _is_ancestor(self, candidate: Hashable, node_id: Hashable) -> bool:
        """Whether candidate is node_id itself or already above it."""
        current: Optional[Hashable] = node_id
        while current is not None:
            if current == candidate:
                return True
            current = self._parent.get(current)
        return False

    def _attach(self, node: CommentNode) -> None:
        parent_id = node.parent_id
        if parent_id is None or parent_id not in self.nodes:
            self.root_ids.append(node.id)
            return

        # The parent must not sit inside the node's own subtree
        if self._is_ancestor(node.id, parent_id):
            logger.warning(
                f"Comment {node.id} has a cyclic parent link to {parent_id}; "
                "promoting it to a root"
            )
            self.root_ids.append(node.id)
            return

        self._replies[parent_id].append(node.id)
        self._parent[node.id] = parent_id

    def to_nested(self) -> List[Dict[str, Any]]:
        """Render the forest as nested dicts with a replies list per node."""
        def render(node_id: Hashable) -> Dict[str, Any]:
            data = self.nodes[node_id].to_dict()
            data["replies"] = [render(child) for child in self._replies[node_id]]
            return data

        return [render(root) for root in self.root_ids]


def assemble(records: Iterable[Any]) -> CommentForest:
    """Turn a flat, pre-sorted comment list into reply threads.

    A node goes under its parent when the parent is in the input, otherwise
    it becomes a root (its parent may have been cut off by a result limit).
    Nothing is re-sorted: siblings keep their input order.

    Args:
        records: CommentNode instances or mappings with at least id,
            parent_id and depth

    Returns:
        CommentForest
    """
    forest = CommentForest()
    ordered: List[CommentNode] = []

    for record in records:
        node = record if isinstance(record, CommentNode) else CommentNode.from_record(record)
        if forest._add(node):
            ordered.append(node)
        else:
            logger.warning(f"Duplicate comment id {node.id} in thread input; keeping the first")

    for node in ordered:
        forest._attach(node)

    return forest
