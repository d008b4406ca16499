"""Crawl orchestration: fetching, extraction, job processing and workers."""
