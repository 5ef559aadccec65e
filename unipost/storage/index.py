"""The self-repairing lookup index (``index.json``)."""

import copy
import logging
from typing import Callable, Optional, Tuple, TypeVar

from unipost.config import RetryConfig
from unipost.errors import NotFoundError
from unipost.models.mapping import INDEX_VERSION, empty_index, utc_now_iso
from unipost.models.records import IndexDoc
from unipost.storage.blob_store import INDEX_PATH, BlobStore
from unipost.storage.error_handler import retry_on_conflict

logger = logging.getLogger(__name__)

T = TypeVar("T")

INDEX_SECTIONS = ("users", "communities", "posts")


class IndexStore:
    """
    Reads and writes the index document.

    The index maps usernames, community names and post ids to their storage path
    plus a few cached fields (avatar, icon, member count). A missing, unreadable or
    structurally incomplete index is repaired on load instead of failing the caller.
    """

    def __init__(
        self,
        store: BlobStore,
        retry: Optional[RetryConfig] = None,
        prometheus_exporter=None,
    ):
        self.store = store
        self.retry = retry or RetryConfig()
        self.prometheus_exporter = prometheus_exporter

    async def load(self) -> Tuple[IndexDoc, str]:
        """
        Load the index, repairing it first if needed.

        Returns:
            The index document and the revision it is stored at
        """
        # A repair racing another repair is a conflict: reread and check again
        load_once = retry_on_conflict(self.retry, "index repair", self.prometheus_exporter)(
            self._load_once
        )
        return await load_once()

    async def _load_once(self) -> Tuple[IndexDoc, str]:
        try:
            document = await self.store.get(INDEX_PATH)
        except NotFoundError:
            fresh = empty_index()
            revision = await self.store.put(
                INDEX_PATH, fresh, None, message="Initialize Uni-post data index"
            )
            logger.info("Created empty index")
            return fresh, revision

        content = document.content
        if not content:
            logger.warning("Index is empty or unreadable, recreating it")
            fresh = empty_index()
            revision = await self.store.put(
                INDEX_PATH, fresh, document.revision, message="Repair Uni-post data index"
            )
            return fresh, revision

        missing = [section for section in INDEX_SECTIONS if not isinstance(content.get(section), dict)]
        if missing:
            logger.warning(f"Index is missing {', '.join(missing)}, repairing")
            _fill_sections(content)
            content["lastUpdated"] = utc_now_iso()
            revision = await self.store.put(
                INDEX_PATH, content, document.revision, message="Repair Uni-post data index"
            )
            return content, revision

        return content, document.revision

    async def peek(self) -> IndexDoc:
        """
        Read the index without persisting any repair.

        Missing or incomplete content is completed in memory only.
        """
        try:
            document = await self.store.get(INDEX_PATH)
        except NotFoundError:
            return empty_index()

        if not document.content:
            return empty_index()
        content = document.content
        _fill_sections(content)
        return content

    async def save(self, index: IndexDoc, revision: str, message: str = "Update Uni-post index") -> str:
        """
        Stamp and write the index at the revision it was read at.

        Raises:
            ConflictError: If the index changed since it was read
        """
        index["lastUpdated"] = utc_now_iso()
        return await self.store.put(INDEX_PATH, index, revision, message=message)

    async def update(
        self, mutator: Callable[[IndexDoc], T], message: str = "Update Uni-post index"
    ) -> T:
        """
        Apply a change to the index with conflict retry.

        Args:
            mutator: Mutates the index in place and returns a result; rerun on every retry
            message: Commit message

        Returns:
            Whatever the mutator returned on the successful attempt
        """
        @retry_on_conflict(self.retry, "index update", self.prometheus_exporter)
        async def attempt() -> T:
            index, revision = await self.load()
            before = copy.deepcopy(index)
            result = mutator(index)
            if index != before:
                await self.save(index, revision, message)
            return result

        return await attempt()


def _fill_sections(content: dict) -> None:
    for section in INDEX_SECTIONS:
        if not isinstance(content.get(section), dict):
            content[section] = {}
    content.setdefault("version", INDEX_VERSION)
    content.setdefault("lastUpdated", utc_now_iso())
