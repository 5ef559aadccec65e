"""Retention sweep that hard-deletes old posts nobody commented on."""

import logging
from datetime import datetime, timedelta, timezone
from typing import Callable, Dict, List, Optional, Tuple

from unipost.config import RetryConfig
from unipost.errors import ConflictError, NotFoundError, PartialWriteDriftError, ValidationError
from unipost.models.mapping import parse_timestamp, utc_now_iso
from unipost.models.records import PostRef, RetentionReport, RetentionSettings
from unipost.storage.blob_store import CONFIG_PATH, BlobStore, entity_path
from unipost.storage.error_handler import retry_on_conflict
from unipost.storage.index import IndexStore

logger = logging.getLogger(__name__)

DEFAULT_RETENTION_DAYS = 20
DEFAULT_BATCH_SIZE = 5


def validate_retention_days(value) -> int:
    if isinstance(value, bool) or not isinstance(value, int) or value <= 0:
        raise ValidationError("Retention days must be a positive integer")
    return value


class ConfigStore:
    """Reads and writes the retention settings document (``config.json``)."""

    def __init__(
        self,
        store: BlobStore,
        default_retention_days: int = DEFAULT_RETENTION_DAYS,
        retry: Optional[RetryConfig] = None,
        prometheus_exporter=None,
    ):
        self.store = store
        self.default_retention_days = default_retention_days
        self.retry = retry or RetryConfig()
        self.prometheus_exporter = prometheus_exporter

    async def load(self) -> RetentionSettings:
        """
        Current retention settings.

        A missing or unreadable document, or an invalid ``retentionDays`` value,
        yields the default.
        """
        try:
            document = await self.store.get(CONFIG_PATH)
        except NotFoundError:
            return {"retentionDays": self.default_retention_days}

        settings = dict(document.content)
        try:
            validate_retention_days(settings.get("retentionDays"))
        except ValidationError:
            if settings:
                logger.warning(
                    f"Invalid retentionDays {settings.get('retentionDays')!r} in {CONFIG_PATH}, "
                    f"using {self.default_retention_days}"
                )
            settings["retentionDays"] = self.default_retention_days
        return settings

    async def update(self, retention_days: int, updated_by: str) -> RetentionSettings:
        """
        Store new retention settings.

        Args:
            retention_days: Age in days after which uncommented posts are removed
            updated_by: User making the change

        Returns:
            The stored settings

        Raises:
            ValidationError: If retention_days is not a positive integer
        """
        validate_retention_days(retention_days)
        settings: RetentionSettings = {
            "retentionDays": retention_days,
            "lastUpdated": utc_now_iso(),
            "updatedBy": updated_by,
        }

        @retry_on_conflict(self.retry, "update retention config", self.prometheus_exporter)
        async def attempt() -> None:
            try:
                document = await self.store.get(CONFIG_PATH)
                revision = document.revision
            except NotFoundError:
                revision = None
            await self.store.put(
                CONFIG_PATH,
                settings,
                revision,
                message=f"Admin {updated_by} updated retention to {retention_days} days",
            )

        await attempt()
        logger.info(f"Retention set to {retention_days} days by {updated_by}")
        return settings


class RetentionJob:
    """
    Deletes posts older than the retention window that have no comments.

    Each run looks at the oldest expired posts first and deletes at most
    ``batch_size`` of them, so a large backlog is worked off over several runs.
    Only the post blob and its index entry are removed; community and author
    post lists keep the id and readers skip it.
    """

    def __init__(
        self,
        store: BlobStore,
        index: IndexStore,
        config_store: ConfigStore,
        batch_size: int = DEFAULT_BATCH_SIZE,
        prometheus_exporter=None,
        clock: Optional[Callable[[], datetime]] = None,
    ):
        """
        Initialize the retention job.

        Args:
            store: Blob store holding the posts
            index: Index store
            config_store: Source of the retention settings
            batch_size: Maximum number of posts deleted per run
            prometheus_exporter: Optional Prometheus metrics exporter
            clock: Returns the current aware UTC time, overridable for tests
        """
        self.store = store
        self.index = index
        self.config_store = config_store
        self.batch_size = batch_size
        self.prometheus_exporter = prometheus_exporter
        self.clock = clock or (lambda: datetime.now(timezone.utc))

    async def run(self, config: Optional[RetentionSettings] = None) -> RetentionReport:
        """
        Run one sweep.

        Args:
            config: Settings to use instead of the stored ``config.json``

        Returns:
            Counts of scanned, candidate, skipped and deleted posts plus the deleted ids
        """
        settings = config if config is not None else await self.config_store.load()
        retention_days = settings.get("retentionDays", self.config_store.default_retention_days)
        validate_retention_days(retention_days)
        cutoff = self.clock() - timedelta(days=retention_days)

        index, _ = await self.index.load()
        expired, skipped = self._expired_refs(index.get("posts", {}), cutoff)
        logger.info(
            f"Retention sweep: {len(expired)} posts older than {retention_days} days "
            f"(cutoff {cutoff.isoformat()})"
        )

        scanned = 0
        candidates: List[Tuple[str, str, Optional[str]]] = []
        for post_id, ref in expired:
            if len(candidates) >= self.batch_size:
                break
            scanned += 1
            path = ref.get("file") or entity_path("posts", post_id)

            try:
                document = await self.store.get(path)
            except NotFoundError:
                logger.info(f"Post {post_id} already gone from {path}, dropping index entry")
                candidates.append((post_id, path, None))
                continue
            except Exception as e:
                logger.error(f"Failed to fetch post {post_id} for retention: {str(e)}")
                skipped += 1
                continue

            if not document.content:
                logger.warning(f"Post {post_id} is unreadable, leaving it for manual repair")
                skipped += 1
                continue
            if document.content.get("comments"):
                continue
            candidates.append((post_id, path, document.revision))

        processed: List[str] = []
        deleted_paths: List[str] = []
        for post_id, path, revision in candidates:
            if revision is not None:
                try:
                    await self.store.delete(path, revision, message=f"Retention: delete post {post_id}")
                    deleted_paths.append(path)
                except NotFoundError:
                    logger.info(f"Post {post_id} was deleted concurrently")
                except ConflictError:
                    logger.warning(f"Post {post_id} changed since it was read, keeping it")
                    skipped += 1
                    continue
                except Exception as e:
                    logger.error(f"Failed to delete post {post_id}: {str(e)}")
                    skipped += 1
                    continue
            processed.append(post_id)

        report: RetentionReport = {
            "deletedCount": len(processed),
            "scanned": scanned,
            "candidates": len(candidates),
            "skipped": skipped,
            "deletedIds": processed,
        }

        if processed:
            def remove(current: Dict) -> int:
                posts = current.setdefault("posts", {})
                return sum(1 for post_id in processed if posts.pop(post_id, None) is not None)

            try:
                removed = await self.index.update(
                    remove, message=f"Retention: remove {len(processed)} posts from index"
                )
            except Exception as e:
                if not deleted_paths:
                    raise
                raise self._drift(deleted_paths, report, e) from e
            logger.info(f"Removed {removed} index entries")

        if self.prometheus_exporter:
            self.prometheus_exporter.record_retention_run(len(processed))

        logger.info(
            f"Retention sweep finished: deleted {len(processed)}, scanned {scanned}, "
            f"candidates {len(candidates)}, skipped {skipped}"
        )
        return report

    def _drift(
        self, deleted_paths: List[str], report: RetentionReport, cause: BaseException
    ) -> PartialWriteDriftError:
        """Posts were deleted but their index entries could not be removed."""
        completed = [f"delete {path}" for path in deleted_paths]
        logger.error(
            f"Partial write drift in retention sweep: 'index remove posts' failed after "
            f"{', '.join(completed)}: {cause!r}"
        )
        if self.prometheus_exporter:
            self.prometheus_exporter.record_partial_write_drift("retention sweep")
            self.prometheus_exporter.record_retention_run(len(report["deletedIds"]))
        return PartialWriteDriftError(
            "retention sweep", completed, "index remove posts", report, cause
        )

    @staticmethod
    def _expired_refs(
        posts: Dict[str, PostRef], cutoff: datetime
    ) -> Tuple[List[Tuple[str, PostRef]], int]:
        expired = []
        skipped = 0
        for post_id, ref in posts.items():
            try:
                created = parse_timestamp(ref.get("createdAt"))
            except (ValueError, OverflowError, AttributeError):
                logger.warning(f"Skipping post {post_id}: unparsable createdAt")
                skipped += 1
                continue
            if created < cutoff:
                expired.append((created, post_id, ref))

        expired.sort(key=lambda item: item[0])
        return [(post_id, ref) for _, post_id, ref in expired], skipped
