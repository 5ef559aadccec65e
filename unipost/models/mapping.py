"""Builders for new documents and conversions between stored and public shapes."""

import copy
import logging
import re
import uuid
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

from dateutil.parser import isoparse

from unipost.errors import ValidationError
from unipost.models.records import (
    CommunityRecord,
    CommunityRef,
    IndexDoc,
    PostRecord,
    PostRef,
    UserRecord,
    UserRef,
)

logger = logging.getLogger(__name__)

INDEX_VERSION = "1.0.0"
COMMUNITY_NAME_MIN = 3
COMMUNITY_NAME_MAX = 21
SLUG_BASE_MAX = 40

DELETED_TITLE = "[Deleted by User/Mod]"
DELETED_CONTENT = "[removed]"
DELETED_AUTHOR = "[deleted]"

_COMMUNITY_DISALLOWED = re.compile(r"[^a-z0-9_]")
_SLUG_DISALLOWED = re.compile(r"[^a-z0-9]+")


def utc_now_iso() -> str:
    """Current UTC time as an ISO-8601 string with millisecond precision and a Z suffix."""
    return datetime.now(timezone.utc).isoformat(timespec="milliseconds").replace("+00:00", "Z")


def parse_timestamp(value: str) -> datetime:
    """
    Parse a stored ISO-8601 timestamp into an aware UTC datetime.

    Raises:
        ValueError: If the value is not a parsable timestamp
    """
    if not isinstance(value, str) or not value:
        raise ValueError(f"Invalid timestamp: {value!r}")
    parsed = isoparse(value)
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed.astimezone(timezone.utc)


def empty_index() -> IndexDoc:
    """A fresh index with no entries."""
    return {
        "version": INDEX_VERSION,
        "lastUpdated": utc_now_iso(),
        "users": {},
        "communities": {},
        "posts": {},
    }


def sanitize_community_name(name: str) -> str:
    """
    Normalize a community name to its storage key.

    Lower-cases the name and drops every character outside ``[a-z0-9_]``.

    Raises:
        ValidationError: If the sanitized name is shorter than 3 or longer than 21 characters
    """
    if not name or not isinstance(name, str):
        raise ValidationError("Community name required")

    sanitized = _COMMUNITY_DISALLOWED.sub("", name.lower())
    if len(sanitized) < COMMUNITY_NAME_MIN:
        raise ValidationError(
            f"Community name must be at least {COMMUNITY_NAME_MIN} characters after "
            "sanitization (only letters, numbers, and underscores allowed)"
        )
    if len(sanitized) > COMMUNITY_NAME_MAX:
        raise ValidationError(f"Community name cannot exceed {COMMUNITY_NAME_MAX} characters")
    return sanitized


def make_slug(title: str, post_id: str) -> str:
    """Readable slug from the title plus an id suffix so equal titles never collide."""
    base = _SLUG_DISALLOWED.sub("_", title.lower())[:SLUG_BASE_MAX]
    return f"{base}_{post_id[:8]}"


def new_user_record(username: str, password_hash: str, email: str = "") -> UserRecord:
    """Build the document for a newly registered user."""
    return {
        "id": str(uuid.uuid4()),
        "username": username,
        "email": email or "",
        "password": password_hash,
        "createdAt": utc_now_iso(),
        "karma": 0,
        "posts": [],
        "comments": [],
        "communities": [],
        "savedPosts": [],
        "avatarUrl": "",
        "about": "",
    }


def user_ref(user: UserRecord) -> UserRef:
    return {
        "id": user["id"],
        "file": f"users/{user['username']}.json",
        "createdAt": user["createdAt"],
        "avatarUrl": user.get("avatarUrl", ""),
    }


def new_community_record(
    name: str, display_name: str, description: str, creator: str
) -> CommunityRecord:
    """Build the document for a new community; the creator is its first member and moderator."""
    return {
        "id": str(uuid.uuid4()),
        "name": name,
        "displayName": display_name,
        "description": description or "",
        "creator": creator,
        "createdAt": utc_now_iso(),
        "members": [creator],
        "moderators": [creator],
        "memberCount": 1,
        "posts": [],
        "iconUrl": "",
        "bannerUrl": "",
    }


def community_ref(community: CommunityRecord) -> CommunityRef:
    return {
        "id": community["id"],
        "file": f"communities/{community['name']}.json",
        "createdAt": community["createdAt"],
        "memberCount": community.get("memberCount", len(community.get("members", []))),
        "iconUrl": community.get("iconUrl", ""),
    }


def new_post_record(
    community: str, title: str, content: str, author: str, post_type: str = "text"
) -> PostRecord:
    """Build the document for a new post, self-upvoted by its author."""
    post_id = str(uuid.uuid4())
    return {
        "id": post_id,
        "slug": make_slug(title, post_id),
        "title": title,
        "content": content or "",
        "type": post_type or "text",
        "author": author,
        "community": community,
        "createdAt": utc_now_iso(),
        "upvotes": 1,
        "downvotes": 0,
        "score": 1,
        "comments": [],
        "commentCount": 0,
        "voters": {author: 1},
    }


def post_ref(post: PostRecord) -> PostRef:
    return {
        "file": f"posts/{post['id']}.json",
        "community": post["community"],
        "author": post["author"],
        "createdAt": post["createdAt"],
        "slug": post["slug"],
    }


def public_user(user: UserRecord) -> Dict[str, Any]:
    """User document without the password hash."""
    safe = copy.deepcopy(dict(user))
    safe.pop("password", None)
    return safe


def inject_comment_avatars(comments: List[Dict[str, Any]], index: IndexDoc) -> List[Dict[str, Any]]:
    """Copy the cached author avatar from the index onto every comment of a forest."""
    users = index.get("users", {})
    for comment in comments:
        comment["authorAvatar"] = users.get(comment.get("author"), {}).get("avatarUrl", "")
        if comment.get("replies"):
            inject_comment_avatars(comment["replies"], index)
    return comments


def post_view(post: PostRecord, index: IndexDoc, include_voters: bool = False) -> Dict[str, Any]:
    """
    Post prepared for a reader.

    Strips the per-user vote ledger unless asked to keep it and injects the author
    avatar and community icon cached in the index, so listings avoid a fetch per
    author and community.
    """
    view = copy.deepcopy(dict(post))
    if not include_voters:
        view.pop("voters", None)
    view["authorAvatar"] = index.get("users", {}).get(view.get("author"), {}).get("avatarUrl", "")
    view["communityIcon"] = (
        index.get("communities", {}).get(view.get("community"), {}).get("iconUrl", "")
    )
    if view.get("comments"):
        inject_comment_avatars(view["comments"], index)
    return view


def tombstone_post(post: PostRecord) -> None:
    """Overwrite the author-visible fields of a post with deletion markers."""
    post["title"] = DELETED_TITLE
    post["content"] = DELETED_CONTENT
    post["author"] = DELETED_AUTHOR


def is_tombstoned(post: PostRecord) -> bool:
    return post.get("author") == DELETED_AUTHOR and post.get("title") == DELETED_TITLE


def require_text(value: Optional[str], message: str) -> str:
    """Return a non-blank string or raise ValidationError."""
    if not isinstance(value, str) or not value.strip():
        raise ValidationError(message)
    return value
