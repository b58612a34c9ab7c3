from __future__ import annotations

import os
from dataclasses import dataclass, replace

from rank_service.config import RANK_MAX_TASKS_PER_POST
from rank_service.errors import ConfigurationError


def _get_int(name: str, default: int) -> int:
    v = os.getenv(name)
    if v is None:
        return default
    try:
        return int(v)
    except ValueError as e:
        raise ConfigurationError(f"{name} must be an integer, got {v!r}") from e


def _get_float(name: str, default: float) -> float:
    v = os.getenv(name)
    if v is None:
        return default
    try:
        return float(v)
    except ValueError as e:
        raise ConfigurationError(f"{name} must be a number, got {v!r}") from e


@dataclass(frozen=True)
class RankConfig:
    target_domain: str

    # Batching
    batch_size: int
    max_tasks_per_post: int

    # Waiting / retries
    dwell_seconds: float
    retry_rounds: int
    retry_interval_seconds: float

    # Fetching
    fetch_concurrency: int
    max_fetch_attempts: int  # incremental mode: polls before "not found / timed out"

    @classmethod
    def from_env(cls) -> RankConfig:
        return cls(
            target_domain=os.getenv("RANK_TARGET_DOMAIN", "").strip(),
            batch_size=_get_int("RANK_BATCH_SIZE", 100),
            max_tasks_per_post=_get_int("RANK_MAX_TASKS_PER_POST", RANK_MAX_TASKS_PER_POST),
            dwell_seconds=_get_float("RANK_DWELL_SECONDS", 300.0),
            retry_rounds=_get_int("RANK_RETRY_ROUNDS", 8),
            retry_interval_seconds=_get_float("RANK_RETRY_INTERVAL_SECONDS", 30.0),
            fetch_concurrency=_get_int("RANK_FETCH_CONCURRENCY", 1),
            max_fetch_attempts=_get_int("RANK_MAX_FETCH_ATTEMPTS", 9),
        )

    def with_overrides(self, **overrides: object) -> RankConfig:
        """Return a copy with every non-None override applied."""
        return replace(self, **{k: v for k, v in overrides.items() if v is not None})

    def validate(self) -> None:
        if not self.target_domain:
            raise ConfigurationError("RANK_TARGET_DOMAIN is required")
        if self.batch_size < 1:
            raise ConfigurationError("RANK_BATCH_SIZE must be >= 1")
        if self.batch_size > self.max_tasks_per_post:
            raise ConfigurationError(
                f"RANK_BATCH_SIZE ({self.batch_size}) exceeds the provider cap "
                f"RANK_MAX_TASKS_PER_POST ({self.max_tasks_per_post})"
            )
        if self.dwell_seconds < 0:
            raise ConfigurationError("RANK_DWELL_SECONDS must be >= 0")
        if self.retry_rounds < 0:
            raise ConfigurationError("RANK_RETRY_ROUNDS must be >= 0")
        if self.retry_interval_seconds < 0:
            raise ConfigurationError("RANK_RETRY_INTERVAL_SECONDS must be >= 0")
        if self.fetch_concurrency < 1:
            raise ConfigurationError("RANK_FETCH_CONCURRENCY must be >= 1")
        if self.max_fetch_attempts < 1:
            raise ConfigurationError("RANK_MAX_FETCH_ATTEMPTS must be >= 1")
