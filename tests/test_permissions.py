"""Tests for role checks and administrator policies."""

import pytest

from unipost.content.permissions import (
    DenyAllPolicy,
    StaticAdminPolicy,
    can_delete_post,
    is_moderator,
    require_admin,
    require_moderator,
)
from unipost.errors import PermissionDeniedError

COMMUNITY = {"name": "gaming", "creator": "alice", "moderators": ["alice", "mod"]}
POST = {"id": "p1", "author": "bob", "community": "gaming"}


def test_moderators():
    assert is_moderator(COMMUNITY, "mod")
    assert is_moderator({"name": "x", "creator": "alice", "moderators": []}, "alice")
    assert not is_moderator(COMMUNITY, "bob")
    assert not is_moderator(COMMUNITY, "")


def test_require_moderator():
    require_moderator(COMMUNITY, "alice")
    with pytest.raises(PermissionDeniedError, match="Only moderators can edit community"):
        require_moderator(COMMUNITY, "bob")


def test_static_admin_policy():
    policy = StaticAdminPolicy(["root", ""])
    assert policy.is_admin("root")
    assert not policy.is_admin("alice")
    assert not policy.is_admin("")


def test_require_admin():
    require_admin(StaticAdminPolicy(["root"]), "root")
    with pytest.raises(PermissionDeniedError):
        require_admin(DenyAllPolicy(), "root")
    with pytest.raises(PermissionDeniedError):
        require_admin(None, "root")


@pytest.mark.parametrize(
    "username, allowed",
    [("bob", True), ("mod", True), ("alice", True), ("root", True), ("eve", False), ("", False)],
)
def test_can_delete_post(username, allowed):
    assert can_delete_post(POST, COMMUNITY, username, StaticAdminPolicy(["root"])) is allowed


def test_moderator_rights_need_the_community():
    assert not can_delete_post(POST, None, "mod")
    assert can_delete_post(POST, None, "bob")
