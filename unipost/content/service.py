"""Operation surface of the storage core used by the web layer and the CLI."""

import copy
import logging
from datetime import datetime
from typing import Any, Awaitable, Callable, Dict, List, Optional

from unipost.config import Config
from unipost.content.comments import CommentForest, add_comment
from unipost.content.feed import (
    COMMUNITY_LIMIT,
    FEED_LIMIT,
    community_summary,
    sort_posts,
    validate_limit,
    validate_sort,
)
from unipost.content.permissions import (
    AuthorizationPolicy,
    DenyAllPolicy,
    StaticAdminPolicy,
    can_delete_post,
    require_admin,
    require_moderator,
)
from unipost.content.votes import apply_vote, resolve_toggle, validate_vote
from unipost.errors import NotFoundError, PermissionDeniedError, ValidationError
from unipost.maintenance.retention import ConfigStore, RetentionJob
from unipost.maintenance.scheduler import RetentionScheduler
from unipost.models.mapping import (
    community_ref,
    inject_comment_avatars,
    is_tombstoned,
    new_community_record,
    new_post_record,
    new_user_record,
    post_ref,
    post_view,
    public_user,
    require_text,
    sanitize_community_name,
    tombstone_post,
    user_ref,
)
from unipost.models.records import (
    CommentRecord,
    CommunityRecord,
    IndexDoc,
    PostRecord,
    RetentionReport,
    RetentionSettings,
    UserRecord,
    VoteTally,
)
from unipost.storage.blob_store import BlobStore, entity_path
from unipost.storage.index import IndexStore
from unipost.storage.repository import EntityRepository
from unipost.storage.resolver import DualPathResolver

logger = logging.getLogger(__name__)

PROFILE_COMMENT_LIMIT = 20
COMMUNITY_EDITABLE_FIELDS = ("description", "iconUrl", "bannerUrl")


class ContentService:
    """
    Users, communities, posts, comments and votes on top of a blob store.

    Single-document changes go through the repository's conflict-retrying
    read-modify-write cycle. Operations that touch several documents write them
    one after another; when a later write fails the earlier ones stay committed
    and the operation raises ``PartialWriteDriftError`` naming what was done.
    """

    def __init__(
        self,
        store: BlobStore,
        config: Optional[Config] = None,
        policy: Optional[AuthorizationPolicy] = None,
        prometheus_exporter=None,
        clock: Optional[Callable[[], datetime]] = None,
    ):
        """
        Initialize the service.

        Args:
            store: Blob store backend
            config: Application configuration, defaults apply when omitted
            policy: Administrator policy, defaults to the configured ``admins`` list
                or to nobody when that list is empty
            prometheus_exporter: Optional Prometheus metrics exporter
            clock: Current-time source for the retention job, overridable for tests
        """
        self.config = config or Config()
        self.store = store
        self.prometheus_exporter = prometheus_exporter
        if policy is None:
            policy = StaticAdminPolicy(self.config.admins) if self.config.admins else DenyAllPolicy()
        self.policy = policy

        self.index = IndexStore(store, self.config.retry, prometheus_exporter)
        self.resolver = DualPathResolver(store, self.index)
        self.repository = EntityRepository(
            store, self.index, self.resolver, self.config.retry, prometheus_exporter
        )
        self.config_store = ConfigStore(
            store,
            self.config.retention.default_retention_days,
            self.config.retry,
            prometheus_exporter,
        )
        self.retention = RetentionJob(
            store,
            self.index,
            self.config_store,
            batch_size=self.config.retention.batch_size,
            prometheus_exporter=prometheus_exporter,
            clock=clock,
        )
        self.scheduler = RetentionScheduler(
            self.retention, self.config.retention.interval_sec, prometheus_exporter
        )

    async def _follow_up(
        self,
        operation: str,
        completed_steps: List[str],
        step: str,
        result: Any,
        action: Awaitable[Any],
        skip_missing: bool = False,
    ) -> Any:
        """Run a secondary write of a multi-document operation, turning failure into drift."""
        try:
            return await action
        except NotFoundError as e:
            if not skip_missing:
                raise self.repository.drift(operation, completed_steps, step, result, e) from e
            logger.debug(f"{operation}: skipping '{step}', target not found")
            return None
        except Exception as e:
            raise self.repository.drift(operation, completed_steps, step, result, e) from e

    async def _current_index(self) -> IndexDoc:
        """The index for a listing read, created or repaired on first access."""
        index, _ = await self.index.load()
        return index

    async def _find_post(self, post_id: str, index: IndexDoc) -> Optional[PostRecord]:
        """A listed post, or None if its id is dangling."""
        if post_id not in index.get("posts", {}):
            return None
        try:
            document = await self.repository.read("posts", post_id)
        except (NotFoundError, ValidationError):
            logger.debug(f"Skipping dangling post id {post_id}")
            return None
        return document.content

    # Users

    async def create_user(self, username: str, password_hash: str, email: str = "") -> Dict[str, Any]:
        """
        Register a user.

        Args:
            username: Unique, immutable user name
            password_hash: Hash computed by the credential layer
            email: Optional contact address

        Returns:
            The user without its password hash

        Raises:
            ValidationError: If username or hash is missing
            AlreadyExistsError: If the username is taken
        """
        require_text(username, "Username and password required")
        require_text(password_hash, "Username and password required")

        record = new_user_record(username, password_hash, email)
        await self.repository.create(
            "users", username, record, user_ref(record), f"Create user: {username}"
        )
        return public_user(record)

    async def get_user(self, username: str) -> UserRecord:
        """The stored user document, password hash included."""
        document = await self.repository.read("users", username)
        return document.content

    async def get_user_profile(self, username: str) -> Dict[str, Any]:
        """
        Public profile with the user's posts and most recent comments expanded.

        Dangling post ids and comments that no longer exist are left out.
        """
        user = public_user(await self.get_user(username))
        index = await self._current_index()
        users = index.get("users", {})

        posts = []
        for post_id in user.get("posts") or []:
            post = await self._find_post(post_id, index)
            if post:
                posts.append(post_view(post, index))

        comments = []
        seen_posts: Dict[str, Optional[PostRecord]] = {}
        for activity in (user.get("comments") or [])[:PROFILE_COMMENT_LIMIT]:
            post_id = activity.get("postId")
            if post_id not in seen_posts:
                seen_posts[post_id] = await self._find_post(post_id, index)
            post = seen_posts[post_id]
            if not post:
                continue

            found = CommentForest(post.get("comments")).find(activity.get("commentId"))
            if found is None:
                continue
            found.update(
                postId=post.get("id"),
                postTitle=post.get("title"),
                community=post.get("community"),
                authorAvatar=users.get(found.get("author"), {}).get("avatarUrl", ""),
            )
            comments.append(found)

        user["posts"] = posts
        user["comments"] = comments
        return user

    async def update_user_profile(
        self, username: str, avatar_url: Optional[str] = None, about: Optional[str] = None
    ) -> Dict[str, Any]:
        """
        Change a user's avatar and/or about text.

        A new avatar is also cached in the index so listings can show it without
        reading the user document.
        """
        def change(user: UserRecord) -> UserRecord:
            if avatar_url is not None:
                user["avatarUrl"] = avatar_url
            if about is not None:
                user["about"] = about
            return user

        user = await self.repository.mutate("users", username, change, f"Update profile for {username}")

        if avatar_url is not None:
            def cache_avatar(index: IndexDoc) -> None:
                ref = index["users"].get(username)
                if ref is not None:
                    ref["avatarUrl"] = avatar_url

            await self._follow_up(
                "update user profile",
                [f"write {entity_path('users', username)}"],
                "index avatar cache",
                public_user(user),
                self.index.update(cache_avatar, f"Cache avatar of {username}"),
            )

        return public_user(user)

    async def toggle_saved_post(self, username: str, post_id: str) -> Dict[str, Any]:
        """
        Save a post for a user, or unsave it if already saved.

        Returns:
            ``{"saved": bool, "savedPosts": [...]}``
        """
        require_text(post_id, "Post id required")

        def toggle(user: UserRecord) -> Dict[str, Any]:
            saved_posts = user.setdefault("savedPosts", [])
            if post_id in saved_posts:
                saved_posts.remove(post_id)
                saved = False
            else:
                saved_posts.append(post_id)
                saved = True
            return {"saved": saved, "savedPosts": list(saved_posts)}

        return await self.repository.mutate(
            "users", username, toggle, f"User {username} toggled saved post {post_id}"
        )

    # Communities

    async def create_community(self, name: str, description: str, creator: str) -> CommunityRecord:
        """
        Create a community; the creator becomes its first member and moderator.

        Raises:
            ValidationError: If the name is invalid after sanitizing or the creator is missing
            AlreadyExistsError: If the sanitized name is taken
        """
        require_text(creator, "Community name and creator required")
        key = sanitize_community_name(name)

        record = new_community_record(key, name, description, creator)
        await self.repository.create(
            "communities", key, record, community_ref(record), f"Create community: r/{key}"
        )
        return record

    async def get_community(self, name: str) -> CommunityRecord:
        document = await self.repository.read("communities", name)
        return document.content

    async def list_communities(self) -> List[Dict[str, Any]]:
        """Summaries of every indexed community that can still be read."""
        index = await self._current_index()
        summaries = []
        for name, ref in index.get("communities", {}).items():
            try:
                document = await self.repository.read("communities", name)
            except (NotFoundError, ValidationError):
                logger.debug(f"Skipping unreadable community {name}")
                continue
            summaries.append(community_summary(document.content, ref))
        return summaries

    async def update_community(
        self, name: str, changes: Dict[str, Any], acting_user: str
    ) -> CommunityRecord:
        """
        Edit a community's description, icon or banner.

        Args:
            name: Community name
            changes: Subset of ``description``, ``iconUrl``, ``bannerUrl``
            acting_user: Must be a moderator or the creator

        Raises:
            ValidationError: For fields that cannot be edited
            PermissionDeniedError: If the acting user is not a moderator
        """
        unknown = sorted(set(changes) - set(COMMUNITY_EDITABLE_FIELDS))
        if unknown:
            raise ValidationError(f"Cannot update community fields: {', '.join(unknown)}")

        def change(community: CommunityRecord) -> CommunityRecord:
            require_moderator(community, acting_user)
            community.update(changes)
            return community

        community = await self.repository.mutate(
            "communities", name, change, f"Update community r/{name}"
        )

        if "iconUrl" in changes:
            icon_url = changes["iconUrl"]

            def cache_icon(index: IndexDoc) -> None:
                ref = index["communities"].get(name)
                if ref is not None:
                    ref["iconUrl"] = icon_url

            await self._follow_up(
                "update community",
                [f"write {entity_path('communities', name)}"],
                "index icon cache",
                community,
                self.index.update(cache_icon, f"Cache icon of r/{name}"),
            )

        return community

    async def join_community(self, name: str, username: str) -> int:
        """
        Add a user to a community. Joining twice changes nothing.

        Returns:
            The community's member count
        """
        require_text(username, "Username required")

        def join(community: CommunityRecord) -> int:
            members = community.setdefault("members", [])
            if username not in members:
                members.append(username)
            community["memberCount"] = len(members)
            return community["memberCount"]

        member_count = await self.repository.mutate(
            "communities", name, join, f"User {username} joined r/{name}"
        )
        completed = [f"write {entity_path('communities', name)}"]

        def cache_count(index: IndexDoc) -> None:
            ref = index["communities"].get(name)
            if ref is not None:
                ref["memberCount"] = member_count

        await self._follow_up(
            "join community",
            completed,
            "index member count",
            member_count,
            self.index.update(cache_count, f"Cache member count of r/{name}"),
        )
        completed.append("index member count")

        def remember(user: UserRecord) -> None:
            joined = user.setdefault("communities", [])
            if name not in joined:
                joined.append(name)

        await self._follow_up(
            "join community",
            completed,
            "user communities",
            member_count,
            self.repository.mutate("users", username, remember, f"User {username} joined r/{name}"),
            skip_missing=True,
        )
        return member_count

    # Posts

    async def create_post(
        self, community: str, title: str, content: str, author: str, post_type: str = "text"
    ) -> PostRecord:
        """
        Publish a post in a community.

        Writes the post and its index entry, then prepends the id to the
        community's and the author's post lists.

        Raises:
            ValidationError: If title or author is missing
            NotFoundError: If the community does not exist
            PartialWriteDriftError: If a list update failed after the post was written
        """
        require_text(title, "Title and author required")
        require_text(author, "Title and author required")
        await self.repository.read("communities", community)

        record = new_post_record(community, title, content, author, post_type)
        post_id = record["id"]
        await self.repository.create(
            "posts", post_id, record, post_ref(record), f"New post in r/{community}: {title}"
        )
        completed = [f"write {entity_path('posts', post_id)}", "index posts"]

        def prepend(document: Dict[str, Any]) -> None:
            posts = document.setdefault("posts", [])
            if post_id not in posts:
                posts.insert(0, post_id)

        await self._follow_up(
            "create post",
            completed,
            "community posts",
            record,
            self.repository.mutate("communities", community, prepend, f"Add post to r/{community}"),
        )
        completed.append("community posts")

        await self._follow_up(
            "create post",
            completed,
            "user posts",
            record,
            self.repository.mutate("users", author, prepend, f"User {author} created post"),
            skip_missing=True,
        )
        return record

    async def get_post(self, post_id: str) -> Dict[str, Any]:
        """A post with author avatar, community icon and comment avatars filled in."""
        document = await self.repository.read("posts", post_id)
        index = await self._current_index()
        return post_view(document.content, index, include_voters=True)

    async def soft_delete_post(
        self, post_id: str, acting_user: str, policy: Optional[AuthorizationPolicy] = None
    ) -> bool:
        """
        Replace a post's title, content and author with deletion markers.

        The post keeps its id, votes and comments.

        Raises:
            PermissionDeniedError: Unless the acting user is the author, a moderator
                of the post's community or an administrator
        """
        policy = policy or self.policy
        post = (await self.repository.read("posts", post_id)).content

        community = None
        if post.get("author") != acting_user:
            try:
                community = await self.get_community(post.get("community") or "")
            except (NotFoundError, ValidationError):
                logger.warning(f"Community of post {post_id} not found, moderator check skipped")

        def delete(current: PostRecord) -> bool:
            if is_tombstoned(current):
                # Deleted by someone else since our read: the check runs on what we read
                if not can_delete_post(post, community, acting_user, policy):
                    raise PermissionDeniedError("Permission denied")
                return True
            if not can_delete_post(current, community, acting_user, policy):
                raise PermissionDeniedError("Permission denied")
            tombstone_post(current)
            return True

        return await self.repository.mutate(
            "posts", post_id, delete, f"Post {post_id} deleted by {acting_user}"
        )

    async def list_posts(
        self, scope: Optional[str] = None, sort: str = "new", limit: Optional[int] = None
    ) -> List[Dict[str, Any]]:
        """
        List post views without their vote ledgers.

        Args:
            scope: Community name, or None for the global feed
            sort: ``new``, ``hot`` or ``top``
            limit: Maximum number of posts; 25 for a community, 50 for the feed

        Returns:
            For a community, the first ``limit`` posts of its list, sorted. For the
            feed, every indexed post sorted and then cut to ``limit``.
        """
        validate_sort(sort)
        index = await self._current_index()

        if scope is None:
            limit = validate_limit(FEED_LIMIT if limit is None else limit)
            post_ids = list(index.get("posts", {}))
        else:
            limit = validate_limit(COMMUNITY_LIMIT if limit is None else limit)
            community = await self.get_community(scope)
            post_ids = (community.get("posts") or [])[:limit]

        posts = []
        for post_id in post_ids:
            post = await self._find_post(post_id, index)
            if post:
                posts.append(post_view(post, index))

        ordered = sort_posts(posts, sort)
        return ordered[:limit] if scope is None else ordered

    # Votes and comments

    async def vote(self, post_id: str, username: str, value: int) -> VoteTally:
        """
        Record a vote of -1, 0 or 1, replacing the user's previous vote.

        Raises:
            ValidationError: For a missing username or an invalid value
            NotFoundError: If the post does not exist or was deleted meanwhile
        """
        require_text(username, "Username and vote required")
        validate_vote(value)
        return await self.repository.mutate(
            "posts", post_id, lambda post: apply_vote(post, username, value), f"Vote on post by {username}"
        )

    async def toggle_vote(self, post_id: str, username: str, value: int) -> VoteTally:
        """Vote with button semantics: pressing the held arrow again retracts the vote."""
        require_text(username, "Username and vote required")
        validate_vote(value)

        def toggle(post: PostRecord) -> VoteTally:
            return apply_vote(post, username, resolve_toggle(post, username, value))

        return await self.repository.mutate("posts", post_id, toggle, f"Vote on post by {username}")

    async def add_comment(
        self, post_id: str, content: str, author: str, parent_id: Optional[str] = None
    ) -> CommentRecord:
        """
        Comment on a post or reply to a comment.

        Raises:
            ValidationError: If content or author is missing
            NotFoundError: If the post does not exist
            ParentNotFoundOrTooDeepError: If the parent is missing or too deeply nested
            PartialWriteDriftError: If the author's activity list could not be updated
        """
        require_text(content, "Content and author required")
        require_text(author, "Content and author required")

        comment = await self.repository.mutate(
            "posts",
            post_id,
            lambda post: add_comment(post, content, author, parent_id),
            f"Comment by {author}",
        )

        def record_activity(user: UserRecord) -> None:
            user.setdefault("comments", []).insert(
                0, {"postId": post_id, "commentId": comment["id"], "createdAt": comment["createdAt"]}
            )

        await self._follow_up(
            "add comment",
            [f"write {entity_path('posts', post_id)}"],
            "user comments",
            comment,
            self.repository.mutate("users", author, record_activity, f"User {author} commented"),
            skip_missing=True,
        )
        return comment

    async def list_comments(self, post_id: str) -> List[CommentRecord]:
        """The post's comment forest with author avatars filled in."""
        document = await self.repository.read("posts", post_id)
        index = await self._current_index()
        return inject_comment_avatars(copy.deepcopy(document.content.get("comments") or []), index)

    # Index and maintenance

    async def get_stats(self) -> Dict[str, Any]:
        """Entity counts from the index."""
        index = await self._current_index()
        stats = {
            "users": len(index.get("users", {})),
            "communities": len(index.get("communities", {})),
            "posts": len(index.get("posts", {})),
            "lastUpdated": index.get("lastUpdated"),
        }
        if self.prometheus_exporter:
            self.prometheus_exporter.update_from_stats(stats)
        return stats

    async def get_index(self) -> IndexDoc:
        """The index, created or repaired first if needed."""
        return await self._current_index()

    async def update_retention_config(
        self,
        retention_days: int,
        acting_user: str,
        policy: Optional[AuthorizationPolicy] = None,
    ) -> RetentionSettings:
        """
        Change how many days uncommented posts are kept.

        Raises:
            PermissionDeniedError: Unless the policy reports the user as administrator
            ValidationError: If retention_days is not a positive integer
        """
        require_admin(policy or self.policy, acting_user)
        return await self.config_store.update(retention_days, acting_user)

    async def run_retention(self, config: Optional[RetentionSettings] = None) -> RetentionReport:
        return await self.retention.run(config)
