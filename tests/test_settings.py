"""Tests for environment-driven settings."""

from __future__ import annotations

from settings import CrawlerSettings, MongoSettings, Settings


def test_defaults_match_crawler_policy(monkeypatch) -> None:
    for name in ("CRAWLER_CONCURRENCY", "CRAWLER_MAX_RETRIES", "CRAWLER_PRUNING__FAILURE_THRESHOLD"):
        monkeypatch.delenv(name, raising=False)

    cfg = CrawlerSettings()

    assert cfg.concurrency == 5
    assert cfg.max_retries == 3
    assert cfg.delay == 1.0
    assert cfg.sleep == 5.0
    assert cfg.render_timeout == 60.0
    assert cfg.pruning.enabled is True
    assert cfg.pruning.failure_threshold == 500
    assert cfg.pruning.done_count_threshold == 0


def test_environment_overrides_including_nested_pruning(monkeypatch) -> None:
    monkeypatch.setenv("CRAWLER_CONCURRENCY", "12")
    monkeypatch.setenv("CRAWLER_SLEEP", "0.5")
    monkeypatch.setenv("CRAWLER_PRUNING__FAILURE_THRESHOLD", "50")
    monkeypatch.setenv("CRAWLER_PRUNING__ENABLED", "false")
    monkeypatch.setenv("MONGO_QUEUE", "jobs")

    settings = Settings()

    assert settings.crawler.concurrency == 12
    assert settings.crawler.sleep == 0.5
    assert settings.crawler.pruning.failure_threshold == 50
    assert settings.crawler.pruning.enabled is False
    assert settings.mongo.queue == "jobs"
    assert MongoSettings().database == "crawler_db"
