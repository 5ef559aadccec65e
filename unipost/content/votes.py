"""Per-user vote ledger of a post."""

import logging

from unipost.errors import ValidationError
from unipost.models.records import PostRecord, VoteTally

logger = logging.getLogger(__name__)

VALID_VOTES = (-1, 0, 1)


def validate_vote(value) -> int:
    """
    Check a submitted vote.

    Raises:
        ValidationError: Unless the value is the integer -1, 0 or 1
    """
    if isinstance(value, bool) or not isinstance(value, int) or value not in VALID_VOTES:
        raise ValidationError(f"Vote must be -1, 0 or 1, got {value!r}")
    return value


def apply_vote(post: PostRecord, username: str, new_vote: int) -> VoteTally:
    """
    Record a user's vote on a post document in place.

    The user's previous vote is undone before the new one is counted, so
    repeating the same vote changes nothing.

    Args:
        post: Post document to update
        username: Voting user
        new_vote: -1, 0 or 1

    Returns:
        The post's counters after the vote
    """
    validate_vote(new_vote)
    voters = post.setdefault("voters", {})

    previous = voters.get(username, 0)
    if previous not in VALID_VOTES or isinstance(previous, bool):
        logger.warning(f"Ignoring invalid stored vote {previous!r} of {username} on {post.get('id')}")
        previous = 0

    upvotes = int(post.get("upvotes") or 0)
    downvotes = int(post.get("downvotes") or 0)

    if previous == 1:
        upvotes -= 1
    elif previous == -1:
        downvotes -= 1

    if new_vote == 1:
        upvotes += 1
    elif new_vote == -1:
        downvotes += 1

    voters[username] = new_vote
    post["upvotes"] = upvotes
    post["downvotes"] = downvotes
    post["score"] = upvotes - downvotes

    return {"upvotes": upvotes, "downvotes": downvotes, "score": post["score"]}


def neutral_vote(post: PostRecord, username: str) -> int:
    """The vote a user falls back to on retraction: the author keeps the self-upvote."""
    return 1 if username == post.get("author") else 0


def resolve_toggle(post: PostRecord, username: str, submitted: int) -> int:
    """
    Translate a button press into the vote to record.

    Pressing the arrow the user already holds retracts the vote; any other value
    is recorded as submitted.

    Returns:
        The explicit value to pass to ``apply_vote``
    """
    validate_vote(submitted)
    neutral = neutral_vote(post, username)
    held = post.get("voters", {}).get(username, neutral)

    if submitted != 0 and submitted == held:
        return neutral
    return submitted
