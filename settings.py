"""Application settings models."""

from __future__ import annotations

from functools import lru_cache
from pydantic import BaseModel, ConfigDict, Field
from pydantic_settings import BaseSettings


class MongoSettings(BaseSettings):
    """Settings for MongoDB connection.

    Environment variables follow the ``MONGO_`` prefix. For example,
    ``MONGO_HOST`` and ``MONGO_PORT`` configure the connection host and port.
    ``MONGO_URI`` overrides the individual connection parameters. The
    ``queue``, ``articles`` and ``sources`` fields hold collection names.
    """

    uri: str | None = None
    host: str = "localhost"
    port: int = 27017
    username: str | None = None
    password: str | None = None
    database: str = "crawler_db"
    auth: str = "admin"

    queue: str = "queue"
    articles: str = "crawled_data"
    sources: str = "sources"

    model_config = ConfigDict(extra="ignore", env_prefix="MONGO_")


class PruningSettings(BaseModel):
    """Thresholds for dropping pending work of persistently failing sources."""

    enabled: bool = True
    failure_threshold: int = Field(default=500, ge=1)
    done_count_threshold: int = Field(default=0, ge=0)


class CrawlerSettings(BaseSettings):
    """Worker pool and retry policy.

    ``delay`` is the pause between claim rounds, ``sleep`` the extra pause
    once a worker finds its partition of the queue empty. Both are seconds.
    Nested pruning values use a double underscore, e.g.
    ``CRAWLER_PRUNING__FAILURE_THRESHOLD=100``.
    """

    concurrency: int = Field(default=5, ge=1)
    max_retries: int = Field(default=3, ge=0)
    delay: float = Field(default=1.0, ge=0)
    sleep: float = Field(default=5.0, ge=0)
    request_timeout: float = Field(default=30.0, gt=0)
    render_timeout: float = Field(default=60.0, gt=0)
    workers: int | None = Field(default=None, ge=1)
    restart_delay: float = Field(default=5.0, ge=0)

    pruning: PruningSettings = Field(default_factory=PruningSettings)

    model_config = ConfigDict(
        extra="ignore",
        env_prefix="CRAWLER_",
        env_nested_delimiter="__",
    )


class LoggingSettings(BaseSettings):
    """Log level and optional activity/error log files (``LOG_`` prefix)."""

    level: str = "INFO"
    file: str | None = None
    error_file: str | None = None

    model_config = ConfigDict(extra="ignore", env_prefix="LOG_")


class Settings(BaseSettings):
    """Top level application settings loaded from ``.env``.

    Nested models use their own environment prefixes (``MONGO_``,
    ``CRAWLER_``, ``LOG_``) and are read when the settings are created.
    """

    mongo: MongoSettings = Field(default_factory=MongoSettings)
    crawler: CrawlerSettings = Field(default_factory=CrawlerSettings)
    logging: LoggingSettings = Field(default_factory=LoggingSettings)

    model_config = ConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        # Use double underscore to avoid collisions with top-level names
        env_nested_delimiter="__",
        case_sensitive=False,
        extra="ignore",
    )


@lru_cache(maxsize=1)
def get_settings() -> "Settings":
    """Return cached application settings."""

    return Settings()
