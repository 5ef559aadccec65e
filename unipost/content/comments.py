"""Nested comment threads stored inside a post document."""

import logging
import uuid
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

from unipost.errors import ParentNotFoundOrTooDeepError
from unipost.models.mapping import require_text, utc_now_iso
from unipost.models.records import CommentRecord, PostRecord

logger = logging.getLogger(__name__)

# Top-level comments sit at depth 0; a comment at MAX_DEPTH can still take replies
MAX_DEPTH = 10


@dataclass
class _Node:
    fields: Dict[str, Any]
    parent: Optional[int]
    depth: int
    children: List[int] = field(default_factory=list)


class CommentForest:
    """
    Arena view of a post's comment forest.

    Comments are stored as nested ``replies`` lists. The forest flattens them into
    nodes addressed by position, with parent links, ordered children and depth,
    and can turn itself back into the nested form with ``to_list``. Nodes are
    allocated in depth-first order, so when stored data contains the same id twice
    the first node in depth-first order owns the id.
    """

    def __init__(self, comments: Optional[List[CommentRecord]] = None):
        self._nodes: List[_Node] = []
        self._roots: List[int] = []
        self._by_id: Dict[str, int] = {}

        for comment in comments or []:
            handle = self._load(comment, None, 0)
            if handle is not None:
                self._roots.append(handle)

    def _load(self, comment: Any, parent: Optional[int], depth: int) -> Optional[int]:
        if not isinstance(comment, dict):
            logger.warning(f"Dropping malformed comment entry of type {type(comment).__name__}")
            return None

        handle = len(self._nodes)
        node = _Node({k: v for k, v in comment.items() if k != "replies"}, parent, depth)
        self._nodes.append(node)

        comment_id = node.fields.get("id")
        if comment_id in self._by_id:
            logger.warning(f"Duplicate comment id {comment_id}; keeping the first occurrence")
        elif comment_id is not None:
            self._by_id[comment_id] = handle

        for reply in comment.get("replies") or []:
            child = self._load(reply, handle, depth + 1)
            if child is not None:
                node.children.append(child)
        return handle

    def __len__(self) -> int:
        return len(self._nodes)

    def depth_of(self, comment_id: str) -> Optional[int]:
        handle = self._by_id.get(comment_id)
        return None if handle is None else self._nodes[handle].depth

    def find(self, comment_id: str) -> Optional[CommentRecord]:
        """
        Look up a comment by id.

        Returns:
            The comment with its replies in nested form, or None
        """
        handle = self._by_id.get(comment_id)
        return None if handle is None else self._to_dict(handle)

    def add(self, content: str, author: str, parent_id: Optional[str] = None) -> CommentRecord:
        """
        Insert a new comment.

        Args:
            content: Comment text
            author: Username of the commenter
            parent_id: Comment to reply to, or None for a top-level comment

        Returns:
            The new comment in stored form

        Raises:
            ParentNotFoundOrTooDeepError: If the parent is missing or deeper than MAX_DEPTH
        """
        if parent_id is None:
            parent, depth = None, 0
        else:
            parent = self._by_id.get(parent_id)
            if parent is None or self._nodes[parent].depth > MAX_DEPTH:
                raise ParentNotFoundOrTooDeepError(
                    "Parent comment not found or max nesting depth exceeded"
                )
            depth = self._nodes[parent].depth + 1

        comment: CommentRecord = {
            "id": str(uuid.uuid4()),
            "content": content,
            "author": author,
            "parentId": parent_id,
            "createdAt": utc_now_iso(),
            "upvotes": 1,
            "downvotes": 0,
            "score": 1,
        }

        handle = len(self._nodes)
        self._nodes.append(_Node(dict(comment), parent, depth))
        self._by_id[comment["id"]] = handle
        if parent is None:
            self._roots.append(handle)
        else:
            self._nodes[parent].children.append(handle)

        comment["replies"] = []
        return comment

    def to_list(self) -> List[CommentRecord]:
        """The forest in its nested storage form."""
        return [self._to_dict(handle) for handle in self._roots]

    def _to_dict(self, handle: int) -> CommentRecord:
        node = self._nodes[handle]
        comment = dict(node.fields)
        comment["replies"] = [self._to_dict(child) for child in node.children]
        return comment


def add_comment(
    post: PostRecord, content: str, author: str, parent_id: Optional[str] = None
) -> CommentRecord:
    """
    Add a comment to a post document in place.

    Raises:
        ValidationError: If content or author is blank
        ParentNotFoundOrTooDeepError: If the reply target is missing or too deep
    """
    require_text(content, "Content and author required")
    require_text(author, "Content and author required")

    forest = CommentForest(post.get("comments"))
    comment = forest.add(content, author, parent_id)
    post["comments"] = forest.to_list()
    post["commentCount"] = int(post.get("commentCount") or 0) + 1
    return comment
