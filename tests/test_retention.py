"""Tests for the retention sweep and its settings document."""

import asyncio
import json
from datetime import datetime, timedelta, timezone
from unittest.mock import AsyncMock, MagicMock

import pytest

from unipost.config import RetryConfig
from unipost.errors import ConflictError, PartialWriteDriftError, ValidationError
from unipost.maintenance.retention import ConfigStore, RetentionJob
from unipost.storage.blob_store import CONFIG_PATH, INDEX_PATH
from unipost.storage.index import IndexStore
from unipost.storage.memory_store import MemoryBlobStore

NOW = datetime(2024, 6, 1, 12, 0, tzinfo=timezone.utc)


def iso(days_ago):
    return (NOW - timedelta(days=days_ago)).isoformat().replace("+00:00", "Z")


class Fixture:
    """A store seeded with posts of given ages."""

    def __init__(self, store=None, batch_size=5):
        self.store = store or MemoryBlobStore()
        self.index = IndexStore(self.store, RetryConfig(initial_backoff=0.0))
        self.config_store = ConfigStore(self.store, 20, RetryConfig(initial_backoff=0.0))
        self.exporter = MagicMock()
        self.job = RetentionJob(
            self.store,
            self.index,
            self.config_store,
            batch_size=batch_size,
            prometheus_exporter=self.exporter,
            clock=lambda: NOW,
        )
        self.posts = {}

    def add_post(self, post_id, days_ago, comments=None, write_blob=True):
        created = iso(days_ago)
        self.posts[post_id] = {"file": f"posts/{post_id}.json", "createdAt": created,
                               "community": "gaming", "author": "alice", "slug": post_id}
        if write_blob:
            self.store.seed_raw(
                f"posts/{post_id}.json",
                json.dumps({"id": post_id, "createdAt": created, "comments": comments or []}),
            )

    def write_index(self):
        self.store.seed_raw(
            INDEX_PATH,
            json.dumps({"version": "1.0.0", "lastUpdated": iso(0), "users": {},
                        "communities": {}, "posts": self.posts}),
        )

    def indexed_posts(self):
        return set(json.loads(self.store.raw(INDEX_PATH))["posts"])


class TestRetentionJob:

    def test_deletes_old_uncommented_posts(self):
        f = Fixture()
        f.add_post("old", 30)
        f.add_post("commented", 30, comments=[{"id": "c1", "replies": []}])
        f.add_post("fresh", 5)
        f.write_index()

        report = asyncio.run(f.job.run())

        assert report["deletedIds"] == ["old"]
        assert report["deletedCount"] == 1
        assert f.store.raw("posts/old.json") is None
        assert f.indexed_posts() == {"commented", "fresh"}
        f.exporter.record_retention_run.assert_called_once_with(1)

    def test_default_retention_is_twenty_days(self):
        f = Fixture()
        f.add_post("day19", 19)
        f.add_post("day21", 21)
        f.write_index()

        report = asyncio.run(f.job.run())

        assert report["deletedIds"] == ["day21"]

    def test_explicit_settings_override_stored_ones(self):
        f = Fixture()
        f.add_post("day19", 19)
        f.write_index()
        asyncio.run(f.config_store.update(100, "root"))

        report = asyncio.run(f.job.run({"retentionDays": 10}))

        assert report["deletedIds"] == ["day19"]

    def test_stored_settings_are_used(self):
        f = Fixture()
        f.add_post("day25", 25)
        f.write_index()
        asyncio.run(f.config_store.update(30, "root"))

        assert asyncio.run(f.job.run())["deletedCount"] == 0

    def test_batch_takes_oldest_first(self):
        f = Fixture()
        for age in (40, 90, 25, 60, 31, 75, 50):
            f.add_post(f"p{age}", age)
        f.write_index()

        report = asyncio.run(f.job.run())

        assert report["deletedIds"] == ["p90", "p75", "p60", "p50", "p40"]
        assert f.indexed_posts() == {"p31", "p25"}

    def test_backlog_is_worked_off_across_runs(self):
        f = Fixture(batch_size=2)
        for age in (30, 40, 50):
            f.add_post(f"p{age}", age)
        f.write_index()

        first = asyncio.run(f.job.run())
        second = asyncio.run(f.job.run())

        assert first["deletedIds"] == ["p50", "p40"]
        assert second["deletedIds"] == ["p30"]

    def test_missing_blob_still_drops_index_entry(self):
        f = Fixture()
        f.add_post("ghost", 30, write_blob=False)
        f.write_index()

        report = asyncio.run(f.job.run())

        assert report["deletedIds"] == ["ghost"]
        assert f.indexed_posts() == set()

    def test_unreadable_post_is_kept(self):
        f = Fixture()
        f.add_post("broken", 30)
        f.write_index()
        f.store.seed_raw("posts/broken.json", "{oops")

        report = asyncio.run(f.job.run())

        assert report["deletedCount"] == 0
        assert report["skipped"] == 1
        assert f.indexed_posts() == {"broken"}

    def test_unparsable_created_at_is_skipped(self):
        f = Fixture()
        f.add_post("odd", 30)
        f.posts["odd"]["createdAt"] = "sometime"
        f.write_index()

        report = asyncio.run(f.job.run())

        assert report["deletedCount"] == 0
        assert report["skipped"] == 1

    def test_post_changed_after_read_is_kept(self):
        class RacingStore(MemoryBlobStore):
            async def delete(self, path, revision, message=None):
                # A comment lands between the read and the delete
                self.seed_raw(path, json.dumps({"id": "old", "comments": [{"id": "c"}]}))
                return await super().delete(path, revision, message)

        f = Fixture(store=RacingStore())
        f.add_post("old", 30)
        f.write_index()

        report = asyncio.run(f.job.run())

        assert report["deletedCount"] == 0
        assert report["skipped"] == 1
        assert f.store.raw("posts/old.json") is not None
        assert f.indexed_posts() == {"old"}

    def test_index_failure_after_deletes_reports_drift(self):
        f = Fixture()
        f.add_post("old", 30)
        f.add_post("older", 40)
        f.write_index()
        f.index.update = AsyncMock(side_effect=ConflictError("index raced", attempts=3))

        with pytest.raises(PartialWriteDriftError) as excinfo:
            asyncio.run(f.job.run())

        error = excinfo.value
        assert error.operation == "retention sweep"
        assert error.completed_steps == ["delete posts/older.json", "delete posts/old.json"]
        assert error.failed_step == "index remove posts"
        assert error.result["deletedIds"] == ["older", "old"]
        assert isinstance(error.cause, ConflictError)
        # The blobs stay deleted and the index still lists them
        assert f.store.raw("posts/old.json") is None
        assert f.indexed_posts() == {"old", "older"}
        f.exporter.record_partial_write_drift.assert_called_once_with("retention sweep")

    def test_index_failure_without_deletes_is_raised_as_is(self):
        f = Fixture()
        f.add_post("gone", 30, write_blob=False)
        f.write_index()
        f.index.update = AsyncMock(side_effect=ConflictError("index raced", attempts=3))

        with pytest.raises(ConflictError):
            asyncio.run(f.job.run())

        f.exporter.record_partial_write_drift.assert_not_called()

    def test_nothing_to_do_writes_nothing(self):
        f = Fixture()
        f.add_post("fresh", 1)
        f.write_index()
        writes = f.store.writes

        report = asyncio.run(f.job.run())

        assert report == {"deletedCount": 0, "scanned": 0, "candidates": 0, "skipped": 0,
                          "deletedIds": []}
        assert f.store.writes == writes


class TestConfigStore:

    def test_default_when_missing(self):
        store = MemoryBlobStore()
        assert asyncio.run(ConfigStore(store).load()) == {"retentionDays": 20}

    def test_invalid_value_falls_back_to_default(self):
        store = MemoryBlobStore()
        store.seed_raw(CONFIG_PATH, json.dumps({"retentionDays": "ten", "updatedBy": "root"}))

        settings = asyncio.run(ConfigStore(store, 15).load())

        assert settings["retentionDays"] == 15
        assert settings["updatedBy"] == "root"

    def test_update_creates_then_overwrites(self):
        store = MemoryBlobStore()
        config_store = ConfigStore(store)

        asyncio.run(config_store.update(30, "root"))
        asyncio.run(config_store.update(7, "admin"))

        stored = json.loads(store.raw(CONFIG_PATH))
        assert stored["retentionDays"] == 7
        assert stored["updatedBy"] == "admin"
        assert "lastUpdated" in stored

    def test_update_rejects_non_positive(self):
        store = MemoryBlobStore()
        with pytest.raises(ValidationError, match="Retention days must be a positive integer"):
            asyncio.run(ConfigStore(store).update(0, "root"))
        assert store.paths() == []
