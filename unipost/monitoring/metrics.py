"""Prometheus metrics for monitoring the Uni-post storage core."""

import logging
import time
from typing import Any, Dict, Optional

from prometheus_client import Counter, Gauge, Histogram, start_http_server

logger = logging.getLogger(__name__)

# Define metrics
BLOB_OPERATIONS = Counter(
    "unipost_blob_operations_total",
    "Number of blob store requests performed",
    ["operation"],
)

API_ERRORS = Counter(
    "unipost_api_errors_total",
    "Number of blob store API errors encountered",
    ["error_type"],
)

CONSECUTIVE_5XX_ERRORS = Gauge(
    "unipost_consecutive_5xx_errors",
    "Number of consecutive 5XX errors encountered",
)

WRITE_CONFLICTS = Counter(
    "unipost_write_conflicts_total",
    "Number of compare-and-swap writes rejected because the revision was stale",
    ["operation"],
)

CONFLICT_RETRIES = Counter(
    "unipost_conflict_retries_total",
    "Number of read-modify-write cycles rerun after a conflict",
    ["operation"],
)

PARTIAL_WRITE_DRIFT = Counter(
    "unipost_partial_write_drift_total",
    "Number of multi-document operations that failed after committing some steps",
    ["operation"],
)

CORRUPT_DOCUMENTS = Counter(
    "unipost_corrupt_documents_total",
    "Number of empty or unparsable documents read from the store",
    ["kind"],
)

RETENTION_DELETED = Counter(
    "unipost_retention_deleted_posts_total",
    "Number of posts hard-deleted by the retention job",
)

RETENTION_LAST_RUN = Gauge(
    "unipost_retention_last_run_timestamp_seconds",
    "Unix time of the last completed retention run",
)

INDEX_ENTRIES = Gauge(
    "unipost_index_entries",
    "Number of entries in the index",
    ["section"],
)

REQUEST_DURATION = Histogram(
    "unipost_request_duration_seconds",
    "Duration of blob store API requests in seconds",
    buckets=[0.1, 0.5, 1.0, 2.0, 5.0, 10.0, 30.0, 60.0],
)


class PrometheusExporter:
    """Prometheus metrics exporter for the Uni-post storage core."""

    def __init__(self, port: int = 8000):
        """
        Initialize the Prometheus exporter.

        Args:
            port: Port to expose metrics on
        """
        self.port = port
        self.server_started = False

    def start_server(self) -> None:
        """Start the Prometheus metrics server."""
        if not self.server_started:
            try:
                start_http_server(self.port)
                self.server_started = True
                logger.info(f"Started Prometheus metrics server on port {self.port}")
            except OSError as e:
                logger.error(f"Failed to start Prometheus metrics server: {str(e)}")

    def record_blob_operation(self, operation: str) -> None:
        """
        Record a blob store request.

        Args:
            operation: HTTP verb in lower case (``get``, ``put``, ``delete``)
        """
        BLOB_OPERATIONS.labels(operation=operation).inc()

    def record_api_error(self, error_type: str) -> None:
        """
        Record an API error.

        Args:
            error_type: Type of API error (e.g., '5xx', '429', 'connection')
        """
        API_ERRORS.labels(error_type=error_type).inc()

    def set_consecutive_5xx_errors(self, count: int) -> None:
        CONSECUTIVE_5XX_ERRORS.set(count)

    def record_write_conflict(self, operation: str) -> None:
        WRITE_CONFLICTS.labels(operation=operation).inc()

    def record_conflict_retry(self, operation: str) -> None:
        CONFLICT_RETRIES.labels(operation=operation).inc()

    def record_partial_write_drift(self, operation: str) -> None:
        """
        Record a multi-document operation left partially applied.

        Args:
            operation: Name of the operation, e.g. ``create post``
        """
        PARTIAL_WRITE_DRIFT.labels(operation=operation).inc()

    def record_corrupt_document(self, kind: str) -> None:
        """
        Record an empty or unparsable document.

        Args:
            kind: Top-level directory of the document, or its file name for root documents
        """
        CORRUPT_DOCUMENTS.labels(kind=kind).inc()

    def record_retention_run(self, deleted_count: int) -> None:
        """
        Record a completed retention run.

        Args:
            deleted_count: Number of posts deleted by the run
        """
        if deleted_count:
            RETENTION_DELETED.inc(deleted_count)
        RETENTION_LAST_RUN.set(time.time())

    def set_index_entries(self, section: str, count: int) -> None:
        INDEX_ENTRIES.labels(section=section).set(count)

    def time_request(self) -> "RequestTimer":
        """
        Create a context manager for timing API requests.

        Returns:
            RequestTimer context manager
        """
        return RequestTimer()

    def update_from_stats(self, stats: Dict[str, Any]) -> None:
        """
        Update the index gauges from a stats dictionary.

        Args:
            stats: Result of ``ContentService.get_stats``
        """
        for section in ("users", "communities", "posts"):
            if section in stats:
                self.set_index_entries(section, stats[section])


class RequestTimer:
    """Context manager for timing API requests."""

    def __init__(self):
        self.start_time: Optional[float] = None

    def __enter__(self) -> "RequestTimer":
        """Start timing the request."""
        self.start_time = time.time()
        return self

    def __exit__(self, exc_type, exc_val, exc_tb) -> None:
        """Stop timing the request and record the duration."""
        if self.start_time is not None:
            duration = time.time() - self.start_time
            REQUEST_DURATION.observe(duration)
