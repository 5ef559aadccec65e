"""Read-modify-write and create primitives over entity documents."""

import copy
import logging
from typing import Any, Callable, Dict, List, Optional, TypeVar

from unipost.config import RetryConfig
from unipost.errors import AlreadyExistsError, ConflictError, PartialWriteDriftError
from unipost.storage.blob_store import BlobDocument, BlobStore, entity_path
from unipost.storage.error_handler import retry_on_conflict
from unipost.storage.index import IndexStore
from unipost.storage.resolver import DualPathResolver

logger = logging.getLogger(__name__)

T = TypeVar("T")

Mutation = Callable[[Dict[str, Any]], T]


class EntityRepository:
    """
    Entity access with optimistic concurrency.

    Every change is a read-modify-write against the revision that was read. A
    write that loses a race is retried on top of the fresh document, so a
    mutation must be a pure function of the document it is given.
    """

    def __init__(
        self,
        store: BlobStore,
        index: IndexStore,
        resolver: Optional[DualPathResolver] = None,
        retry: Optional[RetryConfig] = None,
        prometheus_exporter=None,
    ):
        self.store = store
        self.index = index
        self.resolver = resolver or DualPathResolver(store, index)
        self.retry = retry or RetryConfig()
        self.prometheus_exporter = prometheus_exporter

    async def read(self, entity_type: str, key: str) -> BlobDocument:
        """
        Read an entity through the dual-path resolver.

        Raises:
            NotFoundError: If the entity cannot be resolved
        """
        return await self.resolver.resolve(entity_type, key)

    async def mutate(
        self,
        entity_type: str,
        key: str,
        mutation: Mutation,
        message: str,
    ) -> T:
        """
        Apply a mutation to an entity and write it back.

        Args:
            entity_type: One of ``users``, ``communities``, ``posts``
            key: Entity key
            mutation: Changes the document in place and returns the operation result.
                Exceptions it raises abort the cycle without a write.
            message: Commit message

        Returns:
            The mutation's result from the attempt that was committed

        Raises:
            ConflictError: If every attempt lost a race
            NotFoundError: If the entity is missing or was deleted mid-cycle
        """
        @retry_on_conflict(self.retry, f"mutate {entity_type}", self.prometheus_exporter)
        async def attempt() -> T:
            document = await self.resolver.resolve(entity_type, key)
            working = copy.deepcopy(document.content)
            result = mutation(working)

            if working == document.content:
                logger.debug(f"No change to {document.path}, skipping write")
                return result

            await self.store.put(document.path, working, document.revision, message=message)
            logger.info(f"{message} ({document.path})")
            return result

        return await attempt()

    async def create(
        self,
        entity_type: str,
        key: str,
        document: Dict[str, Any],
        index_ref: Dict[str, Any],
        message: str,
        index_section: Optional[str] = None,
    ) -> Dict[str, Any]:
        """
        Create a new entity and register it in the index.

        Args:
            entity_type: One of ``users``, ``communities``, ``posts``
            key: Unique key of the new entity
            document: Document to store at the direct path
            index_ref: Entry recorded under the key in the index
            message: Commit message for the entity write
            index_section: Index map to register in, defaults to ``entity_type``

        Returns:
            The stored document

        Raises:
            AlreadyExistsError: If the key is indexed or the direct path is taken
            PartialWriteDriftError: If the entity was written but the index update failed
        """
        section = index_section or entity_type
        path = entity_path(entity_type, key)

        index, _ = await self.index.load()
        if key in index.get(section, {}):
            raise AlreadyExistsError(f"'{key}' already exists in {section}", path=path)

        try:
            await self.store.put(path, document, None, message=message)
        except AlreadyExistsError:
            raise
        except ConflictError as e:
            raise AlreadyExistsError(f"{path} already exists", path=path) from e
        logger.info(f"{message} ({path})")

        def register(current: Dict[str, Any]) -> None:
            current.setdefault(section, {})[key] = index_ref

        try:
            await self.index.update(register, message=f"Index {section}: {key}")
        except Exception as e:
            raise self.drift(
                f"create {entity_type}", [f"write {path}"], f"index {section}", document, e
            ) from e

        return document

    def drift(
        self,
        operation: str,
        completed_steps: List[str],
        failed_step: str,
        result: Any,
        cause: BaseException,
    ) -> PartialWriteDriftError:
        """
        Log and count a partially applied multi-document operation.

        Returns:
            The error for the caller to raise
        """
        logger.error(
            f"Partial write drift in {operation}: '{failed_step}' failed after "
            f"{', '.join(completed_steps)}: {cause!r}"
        )
        if self.prometheus_exporter:
            self.prometheus_exporter.record_partial_write_drift(operation)
        return PartialWriteDriftError(operation, completed_steps, failed_step, result, cause)
