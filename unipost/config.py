"""Configuration handling for the Uni-post storage core."""

import os
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

import yaml
from dotenv import load_dotenv

SUPPORTED_BACKENDS = ("github", "memory")


@dataclass
class StoreConfig:
    """Blob store connection configuration."""

    backend: str = "github"
    token: str = ""
    owner: str = ""
    repo: str = ""
    branch: str = "main"
    data_path: str = "data"
    api_url: str = "https://api.github.com"
    request_timeout_sec: int = 30


@dataclass
class RetryConfig:
    """Compare-and-swap conflict retry policy."""

    max_attempts: int = 3
    initial_backoff: float = 0.1
    max_backoff: float = 2.0
    backoff_factor: float = 2.0


@dataclass
class RateLimitConfig:
    """Rate limiting configuration."""

    max_requests_per_minute: int = 80
    min_remaining_calls: int = 5
    sleep_buffer_sec: int = 2


@dataclass
class RetentionConfig:
    """Retention sweep configuration."""

    default_retention_days: int = 20
    batch_size: int = 5
    interval_sec: int = 3600
    enabled: bool = True


@dataclass
class MonitoringConfig:
    """Monitoring configuration."""

    enable_prometheus: bool = False
    prometheus_port: int = 8000


@dataclass
class Config:
    """Application configuration combining environment variables and YAML config."""

    store: StoreConfig = field(default_factory=StoreConfig)
    retry: RetryConfig = field(default_factory=RetryConfig)
    rate_limit: RateLimitConfig = field(default_factory=RateLimitConfig)
    retention: RetentionConfig = field(default_factory=RetentionConfig)
    monitoring: MonitoringConfig = field(default_factory=MonitoringConfig)

    # Usernames granted the administrator capability (retention config, any delete)
    admins: List[str] = field(default_factory=list)
    failure_threshold: int = 5

    @classmethod
    def from_files(cls, config_path: str, env_path: Optional[str] = None) -> "Config":
        """
        Load configuration from YAML file and environment variables.

        Args:
            config_path: Path to YAML configuration file
            env_path: Optional path to .env file (defaults to .env in current directory)

        Returns:
            Config instance with merged configuration
        """
        if env_path:
            load_dotenv(env_path)
        else:
            load_dotenv()

        config = cls()

        config.store = StoreConfig(
            backend=os.getenv("UNIPOST_STORE_BACKEND", "github").lower(),
            token=os.getenv("GITHUB_TOKEN", ""),
            owner=os.getenv("GITHUB_OWNER", ""),
            repo=os.getenv("GITHUB_REPO", ""),
            branch=os.getenv("GITHUB_BRANCH", "main"),
            data_path=os.getenv("DATA_PATH", "data"),
        )

        if os.path.exists(config_path):
            with open(config_path, "r", encoding="utf-8") as file:
                yaml_config = yaml.safe_load(file)

            if yaml_config:
                nested = {
                    "store": StoreConfig,
                    "retry": RetryConfig,
                    "rate_limit": RateLimitConfig,
                    "retention": RetentionConfig,
                    "monitoring": MonitoringConfig,
                }

                # Update top-level attributes
                for key, value in yaml_config.items():
                    if key not in nested and hasattr(config, key):
                        setattr(config, key, value)

                # Nested sections start from the current values so env settings survive
                for key, section_cls in nested.items():
                    if isinstance(yaml_config.get(key), dict):
                        section = getattr(config, key) or section_cls()
                        _merge_section(section, yaml_config[key])
                        setattr(config, key, section)

        config.store.backend = config.store.backend.lower()
        config.admins = [str(name) for name in (config.admins or [])]
        return config

    def validate(self) -> List[str]:
        """
        Validate configuration and return a list of validation errors.

        Returns:
            List of validation error messages (empty if valid)
        """
        errors = []

        if self.store.backend not in SUPPORTED_BACKENDS:
            errors.append(
                f"Unsupported store backend '{self.store.backend}' "
                f"(expected one of {', '.join(SUPPORTED_BACKENDS)})"
            )

        # GitHub credentials are only needed for the GitHub backend
        if self.store.backend == "github":
            if not self.store.token:
                errors.append("Missing GITHUB_TOKEN in environment")
            if not self.store.owner:
                errors.append("Missing GITHUB_OWNER in environment")
            if not self.store.repo:
                errors.append("Missing GITHUB_REPO in environment")
            if not self.store.branch:
                errors.append("GITHUB_BRANCH must not be empty")

        if self.store.request_timeout_sec <= 0:
            errors.append("store.request_timeout_sec must be greater than 0")

        if self.retry.max_attempts < 1:
            errors.append("retry.max_attempts must be at least 1")
        if self.retry.initial_backoff < 0 or self.retry.max_backoff < 0:
            errors.append("retry backoff values must not be negative")

        if self.rate_limit.max_requests_per_minute <= 0:
            errors.append("rate_limit.max_requests_per_minute must be greater than 0")

        if self.retention.default_retention_days <= 0:
            errors.append("retention.default_retention_days must be greater than 0")
        if self.retention.batch_size <= 0:
            errors.append("retention.batch_size must be greater than 0")
        if self.retention.interval_sec < 60:
            errors.append("retention.interval_sec must be at least 60 seconds")

        if self.failure_threshold <= 0:
            errors.append("failure_threshold must be greater than 0")

        return errors


def _merge_section(section: Any, values: Dict[str, Any]) -> None:
    """Copy known keys from a YAML mapping onto a config dataclass."""
    for key, value in values.items():
        if hasattr(section, key):
            setattr(section, key, value)
