"""Pydantic models for crawl jobs, sources and extracted articles."""

from __future__ import annotations

from datetime import datetime, timezone
from enum import Enum
from typing import Any

from pydantic import BaseModel, Field, ConfigDict, field_validator


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class JobStatus(str, Enum):
    """Lifecycle state of a queued URL."""

    pending = "pending"
    processing = "processing"
    done = "done"
    failed = "failed"


class JobConfig(BaseModel):
    """Crawl policy attached to a job and inherited by every discovered link.

    The model is frozen: derived jobs receive a copy of the parent's value,
    never a reference that could be changed later.
    """

    content_selectors: tuple[str, ...] = ()
    source_url: str | None = None
    category: str = "general"

    model_config = ConfigDict(frozen=True, extra="ignore")

    @field_validator("content_selectors", mode="before")
    @classmethod
    def _split_selectors(cls, value: Any) -> Any:
        if value is None:
            return ()
        if isinstance(value, str):
            value = value.split(",")
        return tuple(str(item).strip() for item in value if str(item).strip())

    def to_document(self) -> dict[str, Any]:
        return {
            "content_selectors": list(self.content_selectors),
            "source_url": self.source_url,
            "category": self.category,
        }


class Job(BaseModel):
    """Single queued URL as stored in the ``queue`` collection."""

    id: Any = Field(default=None, alias="_id")
    url: str
    status: JobStatus = JobStatus.pending
    requires_rendering: bool = False
    retry_count: int = Field(default=0, ge=0)
    config: JobConfig = Field(default_factory=JobConfig)
    added_at: datetime | None = None
    crawled_at: datetime | None = None
    error_message: str | None = None
    error_detail: str | None = None

    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    @field_validator("config", mode="before")
    @classmethod
    def _default_config(cls, value: Any) -> Any:
        return {} if value is None else value

    @field_validator("requires_rendering", mode="before")
    @classmethod
    def _coerce_flag(cls, value: Any) -> bool:
        return bool(value)

    @classmethod
    def from_document(cls, doc: dict[str, Any]) -> "Job":
        return cls.model_validate(doc)


class Source(BaseModel):
    """Registered seed site whose jobs share ``config.source_url``."""

    url: str
    category: str = "general"
    created_at: datetime = Field(default_factory=utcnow)


class Article(BaseModel):
    """Content extracted from a page, upserted by URL."""

    title: str = ""
    content: str
    lang: str | None = None
    description: str | None = None
    image: str | None = None
    author: str | None = None
    published_date: datetime | None = None

    def to_document(self) -> dict[str, Any]:
        return self.model_dump()
