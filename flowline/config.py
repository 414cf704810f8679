from __future__ import annotations

import os
from typing import Literal, Optional

import yaml
from pydantic import BaseModel


class DatabaseConfig(BaseModel):
    """Durable store settings. No URL means the in-memory store."""

    url: Optional[str] = None
    echo: bool = False


class RedisConfig(BaseModel):
    """Configuration for the Redis queue backend."""

    host: str = "localhost"
    port: int = 6379
    db: int = 0
    password: Optional[str] = None
    namespace: str = "flowline"


class QueueConfig(BaseModel):
    """Work queue settings."""

    backend: Literal["inmemory", "redis"] = "inmemory"
    visibility_ms: int = 30_000
    max_attempts: int = 5
    max_depth: Optional[int] = 10_000
    poll_interval_ms: int = 200
    redis: RedisConfig = RedisConfig()


class RetryConfig(BaseModel):
    """Defaults for step retry policies."""

    max_attempts: int = 3
    initial_delay_ms: int = 1_000
    multiplier: float = 2.0
    max_delay_ms: int = 60_000
    jitter: float = 0.1
    retriable_errors: list[str] = ["transient", "network", "timeout", "5xx"]


class SchedulerConfig(BaseModel):
    """Cron scheduler settings."""

    lease_ms: int = 30_000
    lease_grace_ms: int = 5_000
    tick_interval_ms: int = 1_000
    catchup_window_s: int = 600
    catchup_policy: Literal["once", "none", "all"] = "once"
    max_catchup_fires: int = 10
    defer_initial_ms: int = 1_000
    defer_max_ms: int = 60_000


class CacheConfig(BaseModel):
    """Report result cache settings."""

    ttl_s: int = 300
    lock_ttl_ms: int = 60_000
    wait_poll_ms: int = 100


class DeliveryConfig(BaseModel):
    """Delivery retry settings, independent of step retries."""

    max_attempts: int = 5
    initial_delay_ms: int = 5_000
    max_delay_ms: int = 300_000
    timeout_s: float = 10.0


class EngineConfig(BaseModel):
    """Executor and trigger settings."""

    default_priority: int = 5
    max_steps: int = 1_000
    webhook_skew_ms: int = 300_000
    conflict_retries: int = 3


class FlowlineConfig(BaseModel):
    """Top-level configuration model."""

    database: DatabaseConfig = DatabaseConfig()
    queue: QueueConfig = QueueConfig()
    retry: RetryConfig = RetryConfig()
    scheduler: SchedulerConfig = SchedulerConfig()
    cache: CacheConfig = CacheConfig()
    delivery: DeliveryConfig = DeliveryConfig()
    engine: EngineConfig = EngineConfig()


def _env_int(name: str) -> Optional[int]:
    raw = os.getenv(name)
    if raw is None or raw == "":
        return None
    try:
        return int(raw)
    except ValueError:
        raise ValueError(f"Environment variable {name} must be an integer, got {raw!r}")


def database_url_from_env() -> Optional[str]:
    """Build a SQLAlchemy URL from ``DB_URL`` or the ``DB_*`` parts."""

    url = os.getenv("DB_URL")
    if url:
        return url
    name = os.getenv("DB_NAME")
    if not name:
        return None
    driver = os.getenv("DB_DRIVER", "postgresql+asyncpg")
    if driver.startswith("sqlite"):
        return f"{driver}:///{name}"
    user = os.getenv("DB_USER", "")
    password = os.getenv("DB_PASSWORD")
    host = os.getenv("DB_HOST", "localhost")
    port = os.getenv("DB_PORT")
    auth = user
    if password:
        auth = f"{user}:{password}"
    if auth:
        auth += "@"
    location = f"{host}:{port}" if port else host
    return f"{driver}://{auth}{location}/{name}"


def apply_env_overrides(config: FlowlineConfig) -> FlowlineConfig:
    """Apply environment variables on top of file configuration."""

    db_url = database_url_from_env()
    if db_url:
        config.database.url = db_url

    backend = os.getenv("FLOWLINE_QUEUE")
    if backend:
        config.queue.backend = backend.lower()  # type: ignore[assignment]

    overrides = {
        "QUEUE_VISIBILITY_MS": (config.queue, "visibility_ms"),
        "QUEUE_MAX_ATTEMPTS": (config.queue, "max_attempts"),
        "QUEUE_MAX_DEPTH": (config.queue, "max_depth"),
        "MAX_ATTEMPTS": (config.retry, "max_attempts"),
        "SCHEDULER_LEASE_MS": (config.scheduler, "lease_ms"),
        "CATCHUP_WINDOW_S": (config.scheduler, "catchup_window_s"),
        "CACHE_TTL_S": (config.cache, "ttl_s"),
    }
    for env_name, (section, field) in overrides.items():
        value = _env_int(env_name)
        if value is not None:
            setattr(section, field, value)
    return config


def load_config(path: Optional[str] = None) -> FlowlineConfig:
    """Load configuration from YAML file.

    Args:
        path: Optional path to config file. Falls back to FLOWLINE_CONFIG env
            variable or 'flowline.yaml' in the current directory.
    """

    config_path = path or os.getenv("FLOWLINE_CONFIG", "flowline.yaml")
    if os.path.exists(config_path):
        with open(config_path) as f:
            data = yaml.safe_load(f) or {}
        config = FlowlineConfig(**data)
    else:
        config = FlowlineConfig()

    return apply_env_overrides(config)
