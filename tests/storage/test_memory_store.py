"""Tests for the in-memory blob store and the document codec."""

import asyncio
import unittest
from unittest.mock import MagicMock

from unipost.errors import ConflictError, NotFoundError, ValidationError
from unipost.storage.blob_store import entity_path, parse_document, serialize_document
from unipost.storage.memory_store import MemoryBlobStore, blob_sha


class TestMemoryBlobStore(unittest.TestCase):
    """Test cases for the MemoryBlobStore class."""

    def setUp(self):
        self.store = MemoryBlobStore()

    def test_put_then_get_returns_revision(self):
        revision = asyncio.run(self.store.put("users/alice.json", {"username": "alice"}))
        document = asyncio.run(self.store.get("users/alice.json"))

        self.assertEqual(document.content, {"username": "alice"})
        self.assertEqual(document.revision, revision)
        self.assertEqual(revision, blob_sha(serialize_document({"username": "alice"})))

    def test_get_missing_raises_not_found(self):
        with self.assertRaises(NotFoundError) as ctx:
            asyncio.run(self.store.get("posts/nope.json"))
        self.assertEqual(ctx.exception.path, "posts/nope.json")

    def test_blind_create_on_existing_path_conflicts(self):
        asyncio.run(self.store.put("index.json", {"users": {}}))

        with self.assertRaises(ConflictError):
            asyncio.run(self.store.put("index.json", {"users": {"bob": {}}}))

        # The original content is untouched
        document = asyncio.run(self.store.get("index.json"))
        self.assertEqual(document.content, {"users": {}})

    def test_stale_revision_conflicts(self):
        first = asyncio.run(self.store.put("posts/p1.json", {"score": 1}))
        asyncio.run(self.store.put("posts/p1.json", {"score": 2}, first))

        with self.assertRaises(ConflictError):
            asyncio.run(self.store.put("posts/p1.json", {"score": 3}, first))

    def test_put_with_revision_on_deleted_path_raises_not_found(self):
        revision = asyncio.run(self.store.put("posts/p1.json", {"score": 1}))
        asyncio.run(self.store.delete("posts/p1.json", revision))

        with self.assertRaises(NotFoundError):
            asyncio.run(self.store.put("posts/p1.json", {"score": 2}, revision))

    def test_delete_missing_raises_not_found(self):
        with self.assertRaises(NotFoundError):
            asyncio.run(self.store.delete("posts/p1.json", "abc"))

    def test_delete_with_stale_revision_conflicts(self):
        first = asyncio.run(self.store.put("posts/p1.json", {"score": 1}))
        asyncio.run(self.store.put("posts/p1.json", {"score": 2}, first))

        with self.assertRaises(ConflictError):
            asyncio.run(self.store.delete("posts/p1.json", first))
        self.assertEqual(self.store.paths(), ["posts/p1.json"])

    def test_corrupt_payload_reads_as_empty_with_real_revision(self):
        exporter = MagicMock()
        store = MemoryBlobStore(prometheus_exporter=exporter)
        revision = store.seed_raw("posts/p1.json", "{not json")

        document = asyncio.run(store.get("posts/p1.json"))

        self.assertEqual(document.content, {})
        self.assertEqual(document.revision, revision)
        exporter.record_corrupt_document.assert_called_once_with("posts")

    def test_counters(self):
        revision = asyncio.run(self.store.put("a.json", {}))
        asyncio.run(self.store.get("a.json"))
        asyncio.run(self.store.delete("a.json", revision))

        self.assertEqual((self.store.reads, self.store.writes, self.store.deletes), (1, 1, 1))


class TestDocumentCodec(unittest.TestCase):
    """Test cases for document paths and (de)serialization."""

    def test_entity_path(self):
        self.assertEqual(entity_path("posts", "abc"), "posts/abc.json")
        self.assertEqual(entity_path("communities", "gaming"), "communities/gaming.json")

    def test_entity_path_rejects_unknown_type_and_traversal(self):
        with self.assertRaises(ValidationError):
            entity_path("comments", "abc")
        for key in ("", "../index", "a/b", ".."):
            with self.assertRaises(ValidationError):
                entity_path("users", key)

    def test_serialize_is_pretty_utf8(self):
        text = serialize_document({"title": "héllo"})
        self.assertEqual(text, '{\n  "title": "héllo"\n}')

    def test_parse_empty_and_non_object(self):
        self.assertEqual(parse_document("", "index.json"), {})
        self.assertEqual(parse_document("   ", "index.json"), {})
        self.assertEqual(parse_document("[1, 2]", "index.json"), {})
        self.assertEqual(parse_document('{"a": 1}', "index.json"), {"a": 1})

    def test_parse_reports_root_documents_by_name(self):
        exporter = MagicMock()
        parse_document("oops", "index.json", exporter)
        exporter.record_corrupt_document.assert_called_once_with("index.json")


if __name__ == "__main__":
    unittest.main()
