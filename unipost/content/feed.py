"""Ordering and summaries for post and community listings."""

import logging
from datetime import datetime, timezone
from typing import Any, Dict, List

from unipost.errors import ValidationError
from unipost.models.mapping import parse_timestamp
from unipost.models.records import CommunityRecord, CommunityRef

logger = logging.getLogger(__name__)

SORTS = ("new", "hot", "top")
COMMUNITY_LIMIT = 25
FEED_LIMIT = 50

_EPOCH = datetime(1970, 1, 1, tzinfo=timezone.utc)


def _created_at(post: Dict[str, Any]) -> datetime:
    try:
        return parse_timestamp(post.get("createdAt"))
    except (ValueError, OverflowError):
        return _EPOCH


def _net_votes(post: Dict[str, Any]) -> int:
    return int(post.get("upvotes") or 0) - int(post.get("downvotes") or 0)


def validate_sort(sort: str) -> str:
    if sort not in SORTS:
        raise ValidationError(f"Unknown sort '{sort}', expected one of {', '.join(SORTS)}")
    return sort


def sort_posts(posts: List[Dict[str, Any]], sort: str = "new") -> List[Dict[str, Any]]:
    """
    Order posts for a listing.

    Args:
        posts: Post documents or views
        sort: ``new`` (newest first), ``hot`` (highest score first) or
            ``top`` (highest upvotes minus downvotes first)

    Returns:
        A new, sorted list; ties keep their input order

    Raises:
        ValidationError: For an unknown sort
    """
    validate_sort(sort)
    if sort == "new":
        return sorted(posts, key=_created_at, reverse=True)
    if sort == "hot":
        return sorted(posts, key=lambda p: int(p.get("score") or 0), reverse=True)
    return sorted(posts, key=_net_votes, reverse=True)


def validate_limit(limit: int) -> int:
    if isinstance(limit, bool) or not isinstance(limit, int) or limit < 0:
        raise ValidationError(f"Limit must be a non-negative integer, got {limit!r}")
    return limit


def community_summary(community: CommunityRecord, ref: CommunityRef) -> Dict[str, Any]:
    """Listing entry for a community, falling back to the index for the icon."""
    return {
        "name": community.get("name"),
        "displayName": community.get("displayName"),
        "description": community.get("description", ""),
        "memberCount": community.get("memberCount", len(community.get("members", []))),
        "createdAt": community.get("createdAt"),
        "iconUrl": community.get("iconUrl") or ref.get("iconUrl") or "",
    }
