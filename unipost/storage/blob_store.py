"""Defines the BlobStore protocol and the document codec shared by all backends."""

import json
import logging
from dataclasses import dataclass
from typing import Any, Dict, Optional, Protocol

from unipost.errors import ValidationError

logger = logging.getLogger(__name__)

INDEX_PATH = "index.json"
CONFIG_PATH = "config.json"
ENTITY_TYPES = ("users", "communities", "posts")


@dataclass
class BlobDocument:
    """A document as read from the store, together with the revision it was read at."""

    path: str
    content: Dict[str, Any]
    revision: str


class BlobStore(Protocol):
    """
    A protocol that defines the interface for versioned blob storage backends.

    Paths are relative to the backend's data root. Every read returns the revision
    token of the stored object; every update must present the revision the caller
    read, so that concurrent writers are detected instead of overwriting each other.
    """

    async def get(self, path: str) -> BlobDocument:
        """
        Read a document.

        Args:
            path: Path relative to the data root

        Returns:
            The parsed document and its revision. Unparsable content is returned
            as an empty mapping paired with the real revision.

        Raises:
            NotFoundError: If nothing is stored at the path
        """
        ...

    async def put(
        self,
        path: str,
        content: Dict[str, Any],
        revision: Optional[str] = None,
        message: Optional[str] = None,
    ) -> str:
        """
        Write a document.

        Args:
            path: Path relative to the data root
            content: JSON-serializable mapping
            revision: Revision the caller read; None performs a blind create
            message: Commit message describing the change

        Returns:
            The new revision

        Raises:
            ConflictError: If the stored revision differs, or a blind create hits an existing object
            NotFoundError: If a revision was given but the object no longer exists
        """
        ...

    async def delete(self, path: str, revision: str, message: Optional[str] = None) -> None:
        """
        Delete a document at the given revision.

        Raises:
            NotFoundError: If nothing is stored at the path
            ConflictError: If the stored revision differs
        """
        ...


def entity_path(entity_type: str, key: str) -> str:
    """
    Canonical direct path for an entity, e.g. ``posts/<id>.json``.

    Raises:
        ValidationError: For an unknown entity type or a key that would escape its directory
    """
    if entity_type not in ENTITY_TYPES:
        raise ValidationError(f"Unknown entity type: {entity_type}")
    if not key or "/" in key or "\\" in key or key in (".", ".."):
        raise ValidationError(f"Invalid {entity_type} key: {key!r}")
    return f"{entity_type}/{key}.json"


def serialize_document(content: Dict[str, Any]) -> str:
    """Encode a document the way it is stored: pretty-printed UTF-8 JSON."""
    if content is None:
        raise ValueError("Cannot save undefined data")
    return json.dumps(content, indent=2, ensure_ascii=False)


def parse_document(text: Optional[str], path: str, prometheus_exporter=None) -> Dict[str, Any]:
    """
    Decode stored text into a document.

    Empty or syntactically invalid payloads (and payloads that are not JSON objects)
    decode to an empty mapping so the caller can detect and repair them.
    """
    if text is None or not text.strip():
        logger.warning(f"File {path} is empty")
        _record_corrupt(prometheus_exporter, path)
        return {}

    try:
        content = json.loads(text)
    except json.JSONDecodeError as e:
        logger.error(f"Error parsing JSON for {path}: {e}")
        _record_corrupt(prometheus_exporter, path)
        return {}

    if not isinstance(content, dict):
        logger.error(f"Document {path} is not a JSON object ({type(content).__name__})")
        _record_corrupt(prometheus_exporter, path)
        return {}

    return content


def _record_corrupt(prometheus_exporter, path: str) -> None:
    if prometheus_exporter:
        prometheus_exporter.record_corrupt_document(path.split("/", 1)[0] if "/" in path else path)
