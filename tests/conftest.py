"""Shared test fixtures for the rank-tracker test suite."""

from __future__ import annotations

import pytest

from rank_service.ranking.config import RankConfig
from rank_service.ranking.types import KeywordJob


@pytest.fixture
def target_domain() -> str:
    return "example.com"


@pytest.fixture
def make_job():
    def _make(row_id: str | int, keyword: str | None = None) -> KeywordJob:
        rid = str(row_id)
        return KeywordJob(
            keyword=keyword or f"raccoon removal {rid}",
            latitude=32.7767,
            longitude=-96.797,
            row_id=rid,
        )

    return _make


@pytest.fixture
def rank_config(target_domain: str) -> RankConfig:
    """Fast config: no dwell, no retry interval."""
    return RankConfig(
        target_domain=target_domain,
        batch_size=100,
        max_tasks_per_post=100,
        dwell_seconds=0,
        retry_rounds=2,
        retry_interval_seconds=0,
        fetch_concurrency=1,
        max_fetch_attempts=3,
    )
