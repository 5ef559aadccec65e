"""Tests for the GitHub contents API blob store."""

import asyncio
import base64
import json
import unittest
from unittest.mock import AsyncMock, MagicMock, patch

from unipost.config import RateLimitConfig, StoreConfig
from unipost.errors import ConflictError, NotFoundError
from unipost.storage.github_store import GitHubAPIError, GitHubBlobStore, GitHubResponse
from unipost.storage.rate_limiter import RateLimiter


def encoded(content) -> str:
    return base64.b64encode(json.dumps(content).encode("utf-8")).decode("ascii")


class FakeResponse:
    """Minimal stand-in for an aiohttp response."""

    def __init__(self, status, body=None, headers=None):
        self.status = status
        self._body = body
        self.headers = headers or {}
        self.reason = "reason"
        self.request_info = MagicMock()
        self.history = ()

    async def json(self, content_type=None):
        return self._body


class FakeRequestContext:
    def __init__(self, response):
        self.response = response

    async def __aenter__(self):
        return self.response

    async def __aexit__(self, exc_type, exc, tb):
        return False


class TestGitHubBlobStore(unittest.TestCase):
    """Test cases for status mapping and payload handling."""

    def setUp(self):
        self.config = StoreConfig(token="t", owner="acme", repo="data", branch="main", data_path="data")
        self.store = GitHubBlobStore(self.config, RateLimiter(RateLimitConfig()))
        self.store._request = AsyncMock()

    def test_urls_include_data_root(self):
        self.assertEqual(
            self.store._contents_url("posts/p 1.json"),
            "https://api.github.com/repos/acme/data/contents/data/posts/p%201.json",
        )
        self.assertEqual(
            self.store._blob_url("abc"), "https://api.github.com/repos/acme/data/git/blobs/abc"
        )

    def test_get_decodes_inline_content(self):
        self.store._request.return_value = GitHubResponse(
            200, {"sha": "s1", "content": encoded({"username": "alice"}), "encoding": "base64"}
        )

        document = asyncio.run(self.store.get("users/alice.json"))

        self.assertEqual(document.content, {"username": "alice"})
        self.assertEqual(document.revision, "s1")
        self.assertEqual(self.store._request.call_args.kwargs["params"], {"ref": "main"})

    def test_get_large_file_uses_blob_api(self):
        self.store._request.side_effect = [
            GitHubResponse(200, {"sha": "big", "content": "", "encoding": "none"}),
            GitHubResponse(200, {"sha": "big", "content": encoded({"posts": {}}), "encoding": "base64"}),
        ]

        document = asyncio.run(self.store.get("index.json"))

        self.assertEqual(document.content, {"posts": {}})
        self.assertEqual(document.revision, "big")
        self.assertTrue(self.store._request.call_args_list[1].args[1].endswith("/git/blobs/big"))

    def test_get_corrupt_content_returns_empty_with_revision(self):
        self.store._request.return_value = GitHubResponse(
            200, {"sha": "s2", "content": base64.b64encode(b"{broken").decode(), "encoding": "base64"}
        )

        document = asyncio.run(self.store.get("index.json"))

        self.assertEqual(document.content, {})
        self.assertEqual(document.revision, "s2")

    def test_get_404_raises_not_found(self):
        self.store._request.return_value = GitHubResponse(404, {"message": "Not Found"})
        with self.assertRaises(NotFoundError):
            asyncio.run(self.store.get("users/ghost.json"))

    def test_put_sends_revision_and_returns_new_sha(self):
        self.store._request.return_value = GitHubResponse(200, {"content": {"sha": "new"}})

        revision = asyncio.run(
            self.store.put("posts/p1.json", {"score": 2}, "old", message="Vote on post by bob")
        )

        self.assertEqual(revision, "new")
        method, url = self.store._request.call_args.args
        payload = self.store._request.call_args.kwargs["payload"]
        self.assertEqual(method, "PUT")
        self.assertTrue(url.endswith("/contents/data/posts/p1.json"))
        self.assertEqual(payload["sha"], "old")
        self.assertEqual(payload["branch"], "main")
        self.assertEqual(payload["message"], "Vote on post by bob")
        self.assertEqual(json.loads(base64.b64decode(payload["content"])), {"score": 2})

    def test_blind_create_omits_sha(self):
        self.store._request.return_value = GitHubResponse(201, {"content": {"sha": "first"}})

        asyncio.run(self.store.put("users/alice.json", {"username": "alice"}))

        self.assertNotIn("sha", self.store._request.call_args.kwargs["payload"])

    def test_put_conflict_statuses(self):
        for status in (409, 422):
            self.store._request.return_value = GitHubResponse(status, {"message": "sha mismatch"})
            with self.assertRaises(ConflictError):
                asyncio.run(self.store.put("posts/p1.json", {}, "old"))

    def test_put_404_with_revision_raises_not_found(self):
        self.store._request.return_value = GitHubResponse(404, {"message": "Not Found"})
        with self.assertRaises(NotFoundError):
            asyncio.run(self.store.put("posts/p1.json", {}, "old"))

    def test_put_unexpected_status(self):
        self.store._request.return_value = GitHubResponse(401, {"message": "Bad credentials"})
        with self.assertRaises(GitHubAPIError) as ctx:
            asyncio.run(self.store.put("posts/p1.json", {}, "old"))
        self.assertEqual(ctx.exception.status_code, 401)
        self.assertIn("Bad credentials", ctx.exception.message)

    def test_delete_status_mapping(self):
        self.store._request.return_value = GitHubResponse(200, {"commit": {}})
        asyncio.run(self.store.delete("posts/p1.json", "s1"))
        self.assertEqual(self.store._request.call_args.kwargs["payload"]["sha"], "s1")

        self.store._request.return_value = GitHubResponse(404, {"message": "Not Found"})
        with self.assertRaises(NotFoundError):
            asyncio.run(self.store.delete("posts/p1.json", "s1"))

        self.store._request.return_value = GitHubResponse(409, {"message": "conflict"})
        with self.assertRaises(ConflictError):
            asyncio.run(self.store.delete("posts/p1.json", "s1"))


class TestGitHubRequest(unittest.TestCase):
    """Test cases for the transport wrapper around aiohttp."""

    def setUp(self):
        self.config = StoreConfig(token="t", owner="acme", repo="data")
        self.rate_limiter = RateLimiter(RateLimitConfig())
        self.rate_limiter.pre_request = AsyncMock()
        self.rate_limiter.handle_429 = AsyncMock()
        self.session = MagicMock()
        self.session.closed = False
        self.exporter = MagicMock()
        self.store = GitHubBlobStore(
            self.config, self.rate_limiter, prometheus_exporter=self.exporter, session=self.session
        )

    def test_rate_limited_response_waits_and_retries(self):
        self.session.request.side_effect = [
            FakeRequestContext(FakeResponse(403, {"message": "limit"}, {"X-RateLimit-Remaining": "0"})),
            FakeRequestContext(FakeResponse(200, {"sha": "s"}, {"X-RateLimit-Remaining": "4999"})),
        ]

        response = asyncio.run(self.store._request("GET", "https://example.test"))

        self.assertEqual(response.status, 200)
        self.rate_limiter.handle_429.assert_called_once()
        self.exporter.record_api_error.assert_called_with("429")
        self.assertEqual(self.rate_limiter.quota.remaining, 4999)

    def test_server_error_is_retried_with_backoff(self):
        self.session.request.side_effect = [
            FakeRequestContext(FakeResponse(502)),
            FakeRequestContext(FakeResponse(200, {"sha": "s"})),
        ]

        with patch("asyncio.sleep", AsyncMock()) as mock_sleep:
            response = asyncio.run(self.store._request("GET", "https://example.test"))

        self.assertEqual(response.status, 200)
        mock_sleep.assert_called_once_with(1.0)

    def test_client_statuses_are_returned(self):
        self.session.request.return_value = FakeRequestContext(FakeResponse(409, {"message": "conflict"}))

        response = asyncio.run(self.store._request("PUT", "https://example.test", payload={}))

        self.assertEqual(response.status, 409)
        self.assertEqual(response.data, {"message": "conflict"})
        self.exporter.record_blob_operation.assert_called_once_with("put")

    def test_close_leaves_injected_session_open(self):
        self.session.close = AsyncMock()
        asyncio.run(self.store.close())
        self.session.close.assert_not_called()


if __name__ == "__main__":
    unittest.main()
