"""Application configuration loaded from environment variables."""

from __future__ import annotations

import os
from dataclasses import dataclass, field
from datetime import timedelta

from dotenv import load_dotenv


def _env(key: str, default: str = "") -> str:
    return os.environ.get(key, default)


def _env_int(key: str, default: int) -> int:
    raw = _env(key)
    if not raw:
        return default
    try:
        return int(raw)
    except ValueError:
        return default


@dataclass(frozen=True)
class CosmosConfig:
    endpoint: str = field(default_factory=lambda: _env("AZURE_COSMOS_ENDPOINT"))
    key: str = field(default_factory=lambda: _env("AZURE_COSMOS_KEY"))
    database: str = field(
        default_factory=lambda: _env("AZURE_COSMOS_DATABASE", "content-governance")
    )


@dataclass(frozen=True)
class ServiceBusConfig:
    connection_string: str = field(
        default_factory=lambda: _env("AZURE_SERVICEBUS_CONNECTION_STRING")
    )
    event_topic_name: str = field(
        default_factory=lambda: _env(
            "AZURE_SERVICEBUS_EVENT_TOPIC", "governance-events"
        )
    )
    command_topic_name: str = field(
        default_factory=lambda: _env(
            "AZURE_SERVICEBUS_COMMAND_TOPIC", "governance-commands"
        )
    )
    worker_subscription_name: str = field(
        default_factory=lambda: _env(
            "AZURE_SERVICEBUS_WORKER_SUBSCRIPTION", "convergence-worker"
        )
    )


@dataclass(frozen=True)
class GitConfig:
    repository_path: str = field(default_factory=lambda: _env("GIT_REPOSITORY_PATH"))
    binary: str = field(default_factory=lambda: _env("GIT_BINARY", "git"))


@dataclass(frozen=True)
class ConvergenceConfig:
    content_max_bytes: int = field(
        default_factory=lambda: _env_int("CONTENT_MAX_BYTES", 50 * 1024 * 1024)
    )
    diff_max_lines: int = field(
        default_factory=lambda: _env_int("DIFF_MAX_LINES", 20_000)
    )
    stale_lock_minutes: int = field(
        default_factory=lambda: _env_int("STALE_LOCK_MINUTES", 15)
    )
    worker_concurrency: int = field(
        default_factory=lambda: _env_int("WORKER_CONCURRENCY", 4)
    )

    @property
    def stale_lock_after(self) -> timedelta:
        return timedelta(minutes=self.stale_lock_minutes)


@dataclass(frozen=True)
class MonitorConfig:
    connection_string: str = field(
        default_factory=lambda: _env("APPLICATIONINSIGHTS_CONNECTION_STRING")
    )


@dataclass(frozen=True)
class AppConfig:
    env: str = field(default_factory=lambda: _env("APP_ENV", "development"))
    log_level: str = field(default_factory=lambda: _env("LOG_LEVEL", "INFO"))

    @property
    def is_development(self) -> bool:
        return self.env == "development"


@dataclass(frozen=True)
class Settings:
    cosmos: CosmosConfig = field(default_factory=CosmosConfig)
    servicebus: ServiceBusConfig = field(default_factory=ServiceBusConfig)
    git: GitConfig = field(default_factory=GitConfig)
    convergence: ConvergenceConfig = field(default_factory=ConvergenceConfig)
    monitor: MonitorConfig = field(default_factory=MonitorConfig)
    app: AppConfig = field(default_factory=AppConfig)


def load_settings() -> Settings:
    """Load ``.env`` (if present) and build settings from the environment."""
    load_dotenv()
    return Settings()
