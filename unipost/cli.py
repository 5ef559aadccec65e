"""Command-line interface for operating a Uni-post data store."""

import asyncio
import json
import logging
import logging.config
import signal
from contextlib import asynccontextmanager
from pathlib import Path
from typing import AsyncIterator, Optional

import typer
from typing_extensions import Annotated

from unipost.config import Config
from unipost.content.service import ContentService
from unipost.errors import UniPostError
from unipost.monitoring.metrics import PrometheusExporter
from unipost.storage.error_handler import ConsecutiveErrorTracker
from unipost.storage.github_store import GitHubBlobStore
from unipost.storage.memory_store import MemoryBlobStore
from unipost.storage.rate_limiter import RateLimiter

app = typer.Typer(help="Uni-post - Maintain a social-content store kept in a GitHub repository")
retention_app = typer.Typer(help="Retention sweep of old uncommented posts")
app.add_typer(retention_app, name="retention")

logger = logging.getLogger(__name__)


def setup_logging(log_level: str = "INFO") -> None:
    """
    Set up logging configuration.

    Args:
        log_level: Logging level (DEBUG, INFO, WARNING, ERROR, CRITICAL)
    """
    log_dir = Path("logs")
    log_dir.mkdir(exist_ok=True)

    log_config = {
        "version": 1,
        "disable_existing_loggers": False,
        "formatters": {
            "standard": {
                "format": "%(asctime)s [%(levelname)s] %(name)s: %(message)s"
            },
        },
        "handlers": {
            "console": {
                "class": "logging.StreamHandler",
                "level": log_level,
                "formatter": "standard",
                "stream": "ext://sys.stderr",
            },
            "file": {
                "class": "logging.handlers.RotatingFileHandler",
                "level": log_level,
                "formatter": "standard",
                "filename": "logs/unipost.log",
                "maxBytes": 10485760,  # 10 MB
                "backupCount": 5,
                "encoding": "utf8",
            },
        },
        "loggers": {
            "": {
                "handlers": ["console", "file"],
                "level": log_level,
                "propagate": True
            },
            "asyncio": {
                "level": "WARNING",
            },
            "aiohttp": {
                "level": "WARNING",
            },
        }
    }

    logging.config.dictConfig(log_config)


def load_config(config_path: str) -> Config:
    """
    Load and validate configuration, exiting with status 1 if it is invalid.

    Args:
        config_path: Path to the YAML configuration file
    """
    config = Config.from_files(config_path)
    validation_errors = config.validate()

    if validation_errors:
        for error in validation_errors:
            logger.error(f"Configuration error: {error}")
        logger.critical("Invalid configuration, aborting")
        raise typer.Exit(code=1)

    return config


@asynccontextmanager
async def open_service(config: Config) -> AsyncIterator[ContentService]:
    """
    Build the blob store and the content service for a configuration.

    The GitHub session is closed when the context exits.
    """
    prometheus_exporter = None
    if config.monitoring.enable_prometheus:
        prometheus_exporter = PrometheusExporter(port=config.monitoring.prometheus_port)
        prometheus_exporter.start_server()

    if config.store.backend == "memory":
        logger.warning("Using the in-memory store: nothing will be persisted")
        yield ContentService(MemoryBlobStore(prometheus_exporter), config, prometheus_exporter=prometheus_exporter)
        return

    store = GitHubBlobStore(
        config.store,
        RateLimiter(config.rate_limit),
        ConsecutiveErrorTracker(config.failure_threshold, prometheus_exporter),
        prometheus_exporter,
    )
    logger.info(f"Data stored in GitHub repo: {config.store.owner}/{config.store.repo}")
    try:
        await store.initialize()
        yield ContentService(store, config, prometheus_exporter=prometheus_exporter)
    finally:
        await store.close()


def echo_json(data) -> None:
    typer.echo(json.dumps(data, indent=2, ensure_ascii=False))


def run_async(coro):
    """Run a coroutine, turning storage errors into exit status 1."""
    try:
        return asyncio.run(coro)
    except UniPostError as e:
        logger.critical(f"{type(e).__name__}: {e.message}")
        raise typer.Exit(code=1)


async def _init_index(config: Config) -> dict:
    async with open_service(config) as service:
        return await service.get_index()


async def _stats(config: Config) -> dict:
    async with open_service(config) as service:
        return await service.get_stats()


async def _retention_run(config: Config, days: Optional[int]) -> dict:
    async with open_service(config) as service:
        settings = {"retentionDays": days} if days is not None else None
        return await service.run_retention(settings)


async def _set_retention_days(config: Config, days: int, user: str) -> dict:
    async with open_service(config) as service:
        return await service.config_store.update(days, user)


async def _retention_daemon(config: Config) -> dict:
    async with open_service(config) as service:
        scheduler = service.scheduler
        shutdown = asyncio.Event()

        loop = asyncio.get_running_loop()
        for sig in (signal.SIGTERM, signal.SIGINT):
            loop.add_signal_handler(sig, shutdown.set)

        daemon = asyncio.create_task(scheduler.run_daemon())
        waiter = asyncio.create_task(shutdown.wait())
        await asyncio.wait({daemon, waiter}, return_when=asyncio.FIRST_COMPLETED)

        logger.info("Shutdown requested, stopping retention daemon")
        scheduler.stop()
        for task in (daemon, waiter):
            task.cancel()
        await asyncio.gather(daemon, waiter, return_exceptions=True)
        return scheduler.get_metrics()


@app.command("init-index")
def init_index(
    config: Annotated[str, typer.Option("--config", "-c", help="Path to configuration file")] = "config.yaml",
    loglevel: Annotated[str, typer.Option("--loglevel", "-l", help="Logging level")] = "INFO",
    verbose: Annotated[bool, typer.Option("--verbose", "-v", help="Enable verbose output")] = False,
) -> None:
    """Create the index if it is missing, or repair it if it is damaged."""
    setup_logging("DEBUG" if verbose else loglevel)
    config_obj = load_config(config)

    index = run_async(_init_index(config_obj))
    typer.echo(
        f"Index ready: {len(index['users'])} users, {len(index['communities'])} communities, "
        f"{len(index['posts'])} posts"
    )


@app.command()
def stats(
    config: Annotated[str, typer.Option("--config", "-c", help="Path to configuration file")] = "config.yaml",
    loglevel: Annotated[str, typer.Option("--loglevel", "-l", help="Logging level")] = "INFO",
    verbose: Annotated[bool, typer.Option("--verbose", "-v", help="Enable verbose output")] = False,
) -> None:
    """Print entity counts from the index as JSON."""
    setup_logging("DEBUG" if verbose else loglevel)
    config_obj = load_config(config)
    echo_json(run_async(_stats(config_obj)))


@retention_app.command("run")
def retention_run(
    config: Annotated[str, typer.Option("--config", "-c", help="Path to configuration file")] = "config.yaml",
    days: Annotated[Optional[int], typer.Option("--days", "-d", help="Override the stored retention days for this run")] = None,
    loglevel: Annotated[str, typer.Option("--loglevel", "-l", help="Logging level")] = "INFO",
    verbose: Annotated[bool, typer.Option("--verbose", "-v", help="Enable verbose output")] = False,
) -> None:
    """Run one retention sweep and print its report."""
    setup_logging("DEBUG" if verbose else loglevel)
    config_obj = load_config(config)
    echo_json(run_async(_retention_run(config_obj, days)))


@retention_app.command("daemon")
def retention_daemon(
    config: Annotated[str, typer.Option("--config", "-c", help="Path to configuration file")] = "config.yaml",
    loglevel: Annotated[str, typer.Option("--loglevel", "-l", help="Logging level")] = "INFO",
    verbose: Annotated[bool, typer.Option("--verbose", "-v", help="Enable verbose output")] = False,
) -> None:
    """Run retention sweeps on the configured interval until interrupted."""
    setup_logging("DEBUG" if verbose else loglevel)
    config_obj = load_config(config)

    if not config_obj.retention.enabled:
        logger.warning("Retention is disabled in the configuration, not starting the daemon")
        raise typer.Exit(code=0)

    metrics = run_async(_retention_daemon(config_obj))
    echo_json(metrics)


@retention_app.command("set-days")
def retention_set_days(
    days: Annotated[int, typer.Argument(help="Days to keep posts that nobody commented on")],
    user: Annotated[str, typer.Option("--user", "-u", help="Name recorded as the author of the change")] = "cli",
    config: Annotated[str, typer.Option("--config", "-c", help="Path to configuration file")] = "config.yaml",
    loglevel: Annotated[str, typer.Option("--loglevel", "-l", help="Logging level")] = "INFO",
    verbose: Annotated[bool, typer.Option("--verbose", "-v", help="Enable verbose output")] = False,
) -> None:
    """Store a new retention period in config.json."""
    setup_logging("DEBUG" if verbose else loglevel)
    if days <= 0:
        typer.echo("Retention days must be a positive integer", err=True)
        raise typer.Exit(code=2)

    config_obj = load_config(config)
    echo_json(run_async(_set_retention_days(config_obj, days, user)))


def main() -> None:
    """Entry point for the CLI."""
    app()


if __name__ == "__main__":
    main()
