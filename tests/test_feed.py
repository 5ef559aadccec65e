"""Tests for listing order and community summaries."""

import pytest

from unipost.content.feed import community_summary, sort_posts, validate_limit, validate_sort
from unipost.errors import ValidationError


POSTS = [
    {"id": "old", "createdAt": "2024-01-01T00:00:00.000Z", "score": 5, "upvotes": 6, "downvotes": 1},
    {"id": "new", "createdAt": "2024-03-01T00:00:00.000Z", "score": 1, "upvotes": 1, "downvotes": 0},
    {"id": "mid", "createdAt": "2024-02-01T00:00:00.000Z", "score": 9, "upvotes": 3, "downvotes": 3},
]


def ids(posts):
    return [p["id"] for p in posts]


def test_sort_new():
    assert ids(sort_posts(POSTS, "new")) == ["new", "mid", "old"]


def test_sort_hot_uses_score():
    assert ids(sort_posts(POSTS, "hot")) == ["mid", "old", "new"]


def test_sort_top_uses_net_votes():
    assert ids(sort_posts(POSTS, "top")) == ["old", "new", "mid"]


def test_sort_does_not_modify_input():
    before = ids(POSTS)
    sort_posts(POSTS, "hot")
    assert ids(POSTS) == before


def test_ties_keep_input_order():
    posts = [{"id": "a", "score": 1}, {"id": "b", "score": 1}, {"id": "c", "score": 2}]
    assert ids(sort_posts(posts, "hot")) == ["c", "a", "b"]


def test_unparsable_dates_sort_last():
    posts = [{"id": "bad", "createdAt": "yesterday"}, {"id": "ok", "createdAt": "2024-01-01T00:00:00Z"}]
    assert ids(sort_posts(posts, "new")) == ["ok", "bad"]


def test_unknown_sort():
    with pytest.raises(ValidationError):
        validate_sort("random")
    with pytest.raises(ValidationError):
        sort_posts(POSTS, "best")


@pytest.mark.parametrize("limit", [-1, "10", 2.5, True])
def test_invalid_limit(limit):
    with pytest.raises(ValidationError):
        validate_limit(limit)


def test_zero_limit_is_valid():
    assert validate_limit(0) == 0


def test_community_summary_uses_index_icon_as_fallback():
    community = {"name": "gaming", "displayName": "Gaming", "members": ["a", "b"],
                 "createdAt": "2024-01-01T00:00:00Z", "iconUrl": ""}

    summary = community_summary(community, {"iconUrl": "cached.png"})

    assert summary == {
        "name": "gaming",
        "displayName": "Gaming",
        "description": "",
        "memberCount": 2,
        "createdAt": "2024-01-01T00:00:00Z",
        "iconUrl": "cached.png",
    }
