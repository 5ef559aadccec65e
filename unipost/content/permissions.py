"""Authorization inputs: role checks and the administrator policy."""

import logging
from typing import Iterable, Optional, Protocol

from unipost.errors import PermissionDeniedError
from unipost.models.records import CommunityRecord, PostRecord

logger = logging.getLogger(__name__)


class AuthorizationPolicy(Protocol):
    """
    A protocol that decides who holds site-wide administrator rights.

    Implementations are supplied by the embedding application; the core only
    asks the question.
    """

    def is_admin(self, username: str) -> bool:
        """
        Check whether a user is an administrator.

        Args:
            username: Acting user

        Returns:
            True if the user may perform administrator operations
        """
        ...


class StaticAdminPolicy:
    """Administrators from a fixed list, normally the ``admins`` config entry."""

    def __init__(self, admins: Iterable[str]):
        self.admins = frozenset(a for a in admins if a)

    def is_admin(self, username: str) -> bool:
        return bool(username) and username in self.admins


class DenyAllPolicy:
    """Policy used when none is configured: nobody is an administrator."""

    def is_admin(self, username: str) -> bool:
        return False


def is_moderator(community: CommunityRecord, username: str) -> bool:
    """True for the community's creator and anyone in its moderator list."""
    if not username:
        return False
    return username in (community.get("moderators") or []) or community.get("creator") == username


def require_moderator(community: CommunityRecord, username: str) -> None:
    if not is_moderator(community, username):
        logger.warning(f"{username or 'anonymous'} denied moderator action on r/{community.get('name')}")
        raise PermissionDeniedError("Only moderators can edit community")


def require_admin(policy: Optional[AuthorizationPolicy], username: str) -> None:
    if policy is None or not policy.is_admin(username):
        logger.warning(f"{username or 'anonymous'} denied administrator action")
        raise PermissionDeniedError("Administrator rights required")


def can_delete_post(
    post: PostRecord,
    community: Optional[CommunityRecord],
    username: str,
    policy: Optional[AuthorizationPolicy] = None,
) -> bool:
    """
    Check whether a user may soft-delete a post.

    Args:
        post: Post document
        community: The post's community, or None if it cannot be resolved
        username: Acting user
        policy: Optional administrator policy

    Returns:
        True for the author, a moderator of the community or an administrator
    """
    if not username:
        return False
    if post.get("author") == username:
        return True
    if community is not None and username in (community.get("moderators") or []):
        return True
    return policy is not None and policy.is_admin(username)
