"""Background scheduling for the retention sweep."""

import asyncio
import logging
import time
from datetime import datetime, timezone
from typing import Any, Dict, Optional

from unipost.maintenance.retention import RetentionJob
from unipost.models.records import RetentionReport

logger = logging.getLogger(__name__)


class RetentionScheduler:
    """
    Runs the retention job off the request path.

    The job either runs on a fixed interval (``run_daemon``) or is kicked off
    without waiting for it (``trigger``). At most one run is in flight at a time;
    a run's failure is logged and never reaches whoever scheduled it.
    """

    def __init__(self, job: RetentionJob, interval_sec: int = 3600, prometheus_exporter=None):
        """
        Initialize the scheduler.

        Args:
            job: Retention job to run
            interval_sec: Seconds between run starts in daemon mode
            prometheus_exporter: Optional Prometheus metrics exporter
        """
        self.job = job
        self.interval_sec = interval_sec
        self.prometheus_exporter = prometheus_exporter
        self.running = False
        self.in_flight = False
        self.last_run_time = 0.0
        self.last_report: Optional[RetentionReport] = None
        self._task: Optional[asyncio.Task] = None
        self.stats: Dict[str, int] = {
            "runs_completed": 0,
            "runs_failed": 0,
            "runs_skipped": 0,
            "total_deleted": 0,
        }

    async def run_once(self) -> Optional[RetentionReport]:
        """
        Run a single retention sweep.

        Returns:
            The sweep report, or None if the sweep failed or another one was in flight
        """
        if self.in_flight:
            logger.info("Retention run already in flight, skipping")
            self.stats["runs_skipped"] += 1
            return None

        self.in_flight = True
        run_start = time.time()
        try:
            report = await self.job.run()
        except asyncio.CancelledError:
            raise
        except Exception as e:
            self.stats["runs_failed"] += 1
            logger.error(f"Error in retention run: {str(e)}")
            return None
        finally:
            self.in_flight = False

        self.last_run_time = run_start
        self.last_report = report
        self.stats["runs_completed"] += 1
        self.stats["total_deleted"] += report["deletedCount"]
        logger.info(
            f"Retention run completed in {time.time() - run_start:.2f}s, "
            f"deleted {report['deletedCount']} posts"
        )
        return report

    def trigger(self) -> Optional[asyncio.Task]:
        """
        Start a run in the background without waiting for it.

        Must be called from a running event loop.

        Returns:
            The task running the sweep, or None if a run is already in flight
        """
        if self.in_flight or (self._task is not None and not self._task.done()):
            logger.debug("Retention trigger ignored, run in flight")
            self.stats["runs_skipped"] += 1
            return None

        self._task = asyncio.create_task(self.run_once())
        return self._task

    async def run_daemon(self) -> None:
        """Run the retention job on a fixed interval until stopped or cancelled."""
        self.running = True
        logger.info(f"Starting retention daemon, interval: {self.interval_sec}s")

        try:
            while self.running:
                cycle_start = time.time()
                await self.run_once()

                elapsed = time.time() - cycle_start
                sleep_time = max(0, self.interval_sec - elapsed)
                if self.running and sleep_time > 0:
                    logger.info(f"Sleeping for {sleep_time:.2f}s until next retention run")
                    await asyncio.sleep(sleep_time)

        except asyncio.CancelledError:
            logger.info("Retention daemon cancelled")
            self.running = False
        finally:
            logger.info(
                f"Retention daemon stopped after {self.stats['runs_completed']} runs, "
                f"deleted {self.stats['total_deleted']} posts"
            )

    def stop(self) -> None:
        """Stop the daemon loop after the current run."""
        logger.info("Stopping retention daemon")
        self.running = False

    def get_metrics(self) -> Dict[str, Any]:
        """
        Get current metrics for monitoring.

        Returns:
            Dictionary of metrics
        """
        return {
            "runs_completed": self.stats["runs_completed"],
            "runs_failed": self.stats["runs_failed"],
            "runs_skipped": self.stats["runs_skipped"],
            "total_deleted": self.stats["total_deleted"],
            "last_run_time": (
                datetime.fromtimestamp(self.last_run_time, tz=timezone.utc).isoformat()
                if self.last_run_time > 0
                else None
            ),
            "last_run_age_sec": time.time() - self.last_run_time if self.last_run_time > 0 else None,
            "is_running": self.running,
            "in_flight": self.in_flight,
        }
