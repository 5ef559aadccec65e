"""Document shapes persisted in the blob store."""

from typing import Dict, List, Optional, TypedDict


class UserRef(TypedDict, total=False):
    """Index entry for a user."""
    id: str
    file: str  # storage path relative to the data root, e.g. "users/alice.json"
    createdAt: str
    avatarUrl: str


class CommunityRef(TypedDict, total=False):
    """Index entry for a community."""
    id: str
    file: str
    createdAt: str
    memberCount: int
    iconUrl: str


class PostRef(TypedDict, total=False):
    """Index entry for a post."""
    file: str
    community: str
    author: str
    createdAt: str
    slug: str


class IndexDoc(TypedDict):
    """The single well-known lookup document (``index.json``)."""
    version: str
    lastUpdated: str
    users: Dict[str, UserRef]
    communities: Dict[str, CommunityRef]
    posts: Dict[str, PostRef]


class CommentActivity(TypedDict):
    """Back-reference from a user to a comment they wrote."""
    postId: str
    commentId: str
    createdAt: str


class UserRecord(TypedDict, total=False):
    """A user document (``users/<username>.json``)."""
    id: str
    username: str
    email: str
    password: str  # password hash, never plaintext
    createdAt: str
    karma: int
    posts: List[str]  # newest first
    comments: List[CommentActivity]  # newest first
    communities: List[str]
    savedPosts: List[str]
    avatarUrl: str
    about: str


class CommunityRecord(TypedDict, total=False):
    """A community document (``communities/<name>.json``)."""
    id: str
    name: str
    displayName: str
    description: str
    creator: str
    createdAt: str
    members: List[str]
    moderators: List[str]
    memberCount: int
    posts: List[str]  # newest first
    iconUrl: str
    bannerUrl: str


class CommentRecord(TypedDict, total=False):
    """A node of a post's comment forest."""
    id: str
    content: str
    author: str
    parentId: Optional[str]
    createdAt: str
    upvotes: int
    downvotes: int
    score: int
    replies: List["CommentRecord"]


class PostRecord(TypedDict, total=False):
    """A post document (``posts/<postId>.json``)."""
    id: str
    slug: str
    title: str
    content: str
    type: str
    author: str
    community: str
    createdAt: str
    upvotes: int
    downvotes: int
    score: int
    voters: Dict[str, int]
    commentCount: int
    comments: List[CommentRecord]


class VoteTally(TypedDict):
    """Aggregate vote counters of a post."""
    upvotes: int
    downvotes: int
    score: int


class RetentionSettings(TypedDict, total=False):
    """The retention config document (``config.json``)."""
    retentionDays: int
    lastUpdated: str
    updatedBy: str


class RetentionReport(TypedDict):
    """Outcome of one retention sweep."""
    deletedCount: int
    scanned: int
    candidates: int
    skipped: int
    deletedIds: List[str]
