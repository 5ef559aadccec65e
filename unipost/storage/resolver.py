"""Two-strategy document lookup: direct path first, index path second."""

import logging
from typing import Awaitable, Callable, Optional

from unipost.errors import NotFoundError
from unipost.storage.blob_store import BlobDocument, BlobStore, entity_path
from unipost.storage.index import IndexStore

logger = logging.getLogger(__name__)

ENTITY_LABELS = {"users": "User", "communities": "Community", "posts": "Post"}

IndexFallback = Callable[[str, str], Awaitable[Optional[str]]]


class DualPathResolver:
    """
    Locates entity documents.

    Documents normally live at ``<entity_type>/<key>.json``. Older or hand-edited
    data may only be reachable through the path recorded in the index, so when the
    direct read is missing or empty the resolver asks the index for the path.
    Resolution is read-only: it never writes a document and never repairs the index.
    """

    def __init__(self, store: BlobStore, index: IndexStore):
        self.store = store
        self.index = index

    async def resolve(
        self,
        entity_type: str,
        key: str,
        index_fallback: Optional[IndexFallback] = None,
    ) -> BlobDocument:
        """
        Resolve an entity to its stored document.

        Args:
            entity_type: One of ``users``, ``communities``, ``posts``
            key: Username, community name or post id
            index_fallback: Optional coroutine returning the indexed path for
                (entity_type, key); defaults to a lookup in the current index

        Returns:
            The first non-empty document found

        Raises:
            ValidationError: For an unknown entity type or malformed key
            NotFoundError: If neither strategy produces a document
        """
        direct = entity_path(entity_type, key)
        try:
            document = await self.store.get(direct)
            if document.content:
                return document
            logger.warning(f"Direct path {direct} is empty, trying index")
        except NotFoundError:
            logger.debug(f"Direct path {direct} not found, trying index")

        lookup = index_fallback or self._indexed_path
        indexed = await lookup(entity_type, key)
        if indexed:
            try:
                document = await self.store.get(indexed)
                if document.content:
                    return document
                logger.warning(f"Indexed path {indexed} for {entity_type}/{key} is empty")
            except NotFoundError:
                logger.debug(f"Indexed path {indexed} for {entity_type}/{key} not found")

        raise NotFoundError(f"{ENTITY_LABELS[entity_type]} '{key}' not found", path=direct)

    async def _indexed_path(self, entity_type: str, key: str) -> Optional[str]:
        index = await self.index.peek()
        ref = index.get(entity_type, {}).get(key)
        if isinstance(ref, dict):
            return ref.get("file")
        return None
