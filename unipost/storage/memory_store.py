"""In-process blob store with the same revision semantics as the GitHub backend."""

import hashlib
import logging
from typing import Any, Dict, List, Optional, Tuple

from unipost.errors import ConflictError, NotFoundError
from unipost.storage.blob_store import BlobDocument, parse_document, serialize_document

logger = logging.getLogger(__name__)


def blob_sha(text: str) -> str:
    """Git blob object id of a text payload."""
    data = text.encode("utf-8")
    header = f"blob {len(data)}\0".encode("utf-8")
    return hashlib.sha1(header + data).hexdigest()


class MemoryBlobStore:
    """
    Dictionary-backed implementation of the BlobStore protocol.

    Used for local development and tests. Objects are stored as raw text so that
    corrupt payloads can be seeded and read back exactly like on the remote store.
    """

    def __init__(self, prometheus_exporter=None):
        self._objects: Dict[str, Tuple[str, str]] = {}
        self.prometheus_exporter = prometheus_exporter
        self.reads = 0
        self.writes = 0
        self.deletes = 0

    async def get(self, path: str) -> BlobDocument:
        self.reads += 1
        if path not in self._objects:
            raise NotFoundError(f"No document at {path}", path=path)
        text, revision = self._objects[path]
        return BlobDocument(
            path=path,
            content=parse_document(text, path, self.prometheus_exporter),
            revision=revision,
        )

    async def put(
        self,
        path: str,
        content: Dict[str, Any],
        revision: Optional[str] = None,
        message: Optional[str] = None,
    ) -> str:
        text = serialize_document(content)
        current = self._objects.get(path)

        if revision is None:
            if current is not None:
                raise ConflictError(f"{path} already exists", path=path)
        elif current is None:
            raise NotFoundError(f"No document at {path}", path=path)
        elif current[1] != revision:
            raise ConflictError(
                f"Revision mismatch for {path}: expected {revision}, found {current[1]}",
                path=path,
            )

        new_revision = blob_sha(text)
        self._objects[path] = (text, new_revision)
        self.writes += 1
        logger.debug(f"Stored {path} at {new_revision[:8]}: {message or 'no message'}")
        return new_revision

    async def delete(self, path: str, revision: str, message: Optional[str] = None) -> None:
        current = self._objects.get(path)
        if current is None:
            raise NotFoundError(f"No document at {path}", path=path)
        if current[1] != revision:
            raise ConflictError(
                f"Revision mismatch for {path}: expected {revision}, found {current[1]}",
                path=path,
            )
        del self._objects[path]
        self.deletes += 1
        logger.debug(f"Deleted {path}: {message or 'no message'}")

    def seed_raw(self, path: str, text: str) -> str:
        """Store raw text at a path, bypassing serialization. Returns the revision."""
        revision = blob_sha(text)
        self._objects[path] = (text, revision)
        return revision

    def raw(self, path: str) -> Optional[str]:
        entry = self._objects.get(path)
        return entry[0] if entry else None

    def paths(self) -> List[str]:
        return sorted(self._objects)
