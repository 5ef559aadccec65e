"""Blob store backed by a GitHub repository through the REST contents API."""

import base64
import logging
from contextlib import nullcontext
from dataclasses import dataclass, field
from typing import Any, Dict, Mapping, Optional
from urllib.parse import quote

import aiohttp
from aiohttp.client_exceptions import ClientResponseError

from unipost.config import StoreConfig
from unipost.errors import ConflictError, NotFoundError, UniPostError
from unipost.storage.blob_store import BlobDocument, parse_document, serialize_document
from unipost.storage.error_handler import ConsecutiveErrorTracker, with_exponential_backoff
from unipost.storage.rate_limiter import RateLimiter

logger = logging.getLogger(__name__)

GITHUB_API_VERSION = "2022-11-28"


class GitHubAPIError(UniPostError):
    """Unexpected response from the GitHub API."""

    def __init__(self, message: str, status_code: Optional[int] = None):
        self.status_code = status_code
        super().__init__(message)


@dataclass
class GitHubResponse:
    """Status, decoded JSON body and headers of one API call."""

    status: int
    data: Any
    headers: Mapping[str, str] = field(default_factory=dict)


class GitHubBlobStore:
    """
    GitHub implementation of the BlobStore protocol.

    Every document is a file under ``<data_path>/`` on the configured branch; the
    file's blob sha is the revision token and each write is a commit. Files above
    the contents API size limit come back without inline content and are fetched
    through the git blob API instead.
    """

    def __init__(
        self,
        config: StoreConfig,
        rate_limiter: RateLimiter,
        error_tracker: Optional[ConsecutiveErrorTracker] = None,
        prometheus_exporter=None,
        session: Optional[aiohttp.ClientSession] = None,
    ):
        """
        Initialize the store.

        Args:
            config: Repository coordinates and credentials
            rate_limiter: Rate limiter shared by all requests
            error_tracker: Optional tracker for consecutive 5xx errors
            prometheus_exporter: Optional Prometheus metrics exporter
            session: Optional pre-built aiohttp session (the store will not close it)
        """
        self.config = config
        self.rate_limiter = rate_limiter
        self.error_tracker = error_tracker
        self.prometheus_exporter = prometheus_exporter
        self._session = session
        self._owns_session = session is None

    async def initialize(self) -> aiohttp.ClientSession:
        """Create the HTTP session if needed."""
        if self._session is None or self._session.closed:
            logger.info(
                f"Opening GitHub session for {self.config.owner}/{self.config.repo}@{self.config.branch}"
            )
            self._session = aiohttp.ClientSession(
                headers={
                    "Authorization": f"Bearer {self.config.token}",
                    "Accept": "application/vnd.github+json",
                    "X-GitHub-Api-Version": GITHUB_API_VERSION,
                    "User-Agent": "unipost-store",
                },
                timeout=aiohttp.ClientTimeout(total=self.config.request_timeout_sec),
            )
            self._owns_session = True
        return self._session

    async def close(self) -> None:
        """Close the HTTP session if the store created it."""
        if self._session is not None and self._owns_session and not self._session.closed:
            logger.info("Closing GitHub session")
            await self._session.close()
        self._session = None

    async def __aenter__(self) -> "GitHubBlobStore":
        await self.initialize()
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb) -> None:
        await self.close()

    def _full_path(self, path: str) -> str:
        root = self.config.data_path.strip("/")
        return f"{root}/{path}" if root else path

    def _contents_url(self, path: str) -> str:
        return (
            f"{self.config.api_url.rstrip('/')}/repos/{self.config.owner}/{self.config.repo}"
            f"/contents/{quote(self._full_path(path))}"
        )

    def _blob_url(self, sha: str) -> str:
        return (
            f"{self.config.api_url.rstrip('/')}/repos/{self.config.owner}/{self.config.repo}"
            f"/git/blobs/{sha}"
        )

    @with_exponential_backoff()
    async def _request(
        self,
        method: str,
        url: str,
        payload: Optional[Dict[str, Any]] = None,
        params: Optional[Dict[str, str]] = None,
    ) -> GitHubResponse:
        """
        Perform one API call.

        Rate-limit and server errors are raised as ``ClientResponseError`` so the
        backoff decorator can wait and retry; every other status is returned for
        the caller to interpret.
        """
        await self.rate_limiter.pre_request()
        session = await self.initialize()

        if self.prometheus_exporter:
            self.prometheus_exporter.record_blob_operation(method.lower())
            timer = self.prometheus_exporter.time_request()
        else:
            timer = None

        with timer if timer else nullcontext():
            async with session.request(method, url, json=payload, params=params) as response:
                self.rate_limiter.update_from_headers(response.headers)

                if self.rate_limiter.is_rate_limited(response.status, response.headers):
                    if self.prometheus_exporter:
                        self.prometheus_exporter.record_api_error("429")
                    raise ClientResponseError(
                        response.request_info,
                        response.history,
                        status=429,
                        message=response.reason or "rate limited",
                        headers=response.headers,
                    )

                if response.status >= 500:
                    raise ClientResponseError(
                        response.request_info,
                        response.history,
                        status=response.status,
                        message=response.reason or "server error",
                        headers=response.headers,
                    )

                try:
                    data = await response.json(content_type=None)
                except ValueError:
                    data = None

                return GitHubResponse(status=response.status, data=data, headers=dict(response.headers))

    async def get(self, path: str) -> BlobDocument:
        response = await self._request("GET", self._contents_url(path), params={"ref": self.config.branch})

        if response.status == 404:
            raise NotFoundError(f"No document at {path}", path=path)
        if response.status != 200 or not isinstance(response.data, dict):
            raise GitHubAPIError(
                f"Unexpected response reading {path}: {response.status}", status_code=response.status
            )

        sha = response.data.get("sha")
        encoded = response.data.get("content")
        if encoded and response.data.get("encoding", "base64") == "base64":
            text = _decode(encoded)
        elif sha:
            # Contents API omits the payload above 1 MB; the blob API serves the full object
            logger.info(f"Fetching large file via Blob API: {path}")
            text = await self._get_blob(sha, path)
        else:
            text = ""

        return BlobDocument(
            path=path,
            content=parse_document(text, path, self.prometheus_exporter),
            revision=sha,
        )

    async def _get_blob(self, sha: str, path: str) -> str:
        response = await self._request("GET", self._blob_url(sha))
        if response.status == 404:
            raise NotFoundError(f"Blob {sha} for {path} is gone", path=path)
        if response.status != 200 or not isinstance(response.data, dict):
            raise GitHubAPIError(
                f"Unexpected response reading blob {sha} of {path}: {response.status}",
                status_code=response.status,
            )
        return _decode(response.data.get("content") or "")

    async def put(
        self,
        path: str,
        content: Dict[str, Any],
        revision: Optional[str] = None,
        message: Optional[str] = None,
    ) -> str:
        body: Dict[str, Any] = {
            "message": message or f"Update {path}",
            "content": base64.b64encode(serialize_document(content).encode("utf-8")).decode("ascii"),
            "branch": self.config.branch,
        }
        if revision:
            body["sha"] = revision

        response = await self._request("PUT", self._contents_url(path), payload=body)

        if response.status in (200, 201):
            new_revision = (response.data or {}).get("content", {}).get("sha")
            logger.debug(f"Committed {path} at {str(new_revision)[:8]}: {body['message']}")
            return new_revision
        if response.status in (409, 422):
            if revision is None:
                raise ConflictError(f"{path} already exists", path=path)
            raise ConflictError(f"Revision {revision} of {path} is stale", path=path)
        if response.status == 404 and revision:
            raise NotFoundError(f"No document at {path}", path=path)

        raise GitHubAPIError(
            f"Unexpected response writing {path}: {response.status} {_error_message(response)}",
            status_code=response.status,
        )

    async def delete(self, path: str, revision: str, message: Optional[str] = None) -> None:
        body = {
            "message": message or f"Delete {path}",
            "sha": revision,
            "branch": self.config.branch,
        }
        response = await self._request("DELETE", self._contents_url(path), payload=body)

        if response.status == 200:
            logger.debug(f"Deleted {path}: {body['message']}")
            return
        if response.status == 404:
            raise NotFoundError(f"No document at {path}", path=path)
        if response.status in (409, 422):
            raise ConflictError(f"Revision {revision} of {path} is stale", path=path)

        raise GitHubAPIError(
            f"Unexpected response deleting {path}: {response.status} {_error_message(response)}",
            status_code=response.status,
        )


def _decode(encoded: str) -> str:
    return base64.b64decode(encoded).decode("utf-8", errors="replace")


def _error_message(response: GitHubResponse) -> str:
    if isinstance(response.data, dict):
        return str(response.data.get("message", ""))
    return ""
