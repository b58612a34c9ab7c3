"""Exception taxonomy for the rank tracker.

Only ValidationError and ConfigurationError are fatal to a run; they are raised
before any job is processed. Submission and fetch failures are recorded as
terminal outcomes at batch / job granularity and the run carries on.
"""

from __future__ import annotations


class RankTrackerError(Exception):
    """Base exception for the rank tracker."""


class ValidationError(RankTrackerError):
    """Bad or empty input lists (templates, niche rows, locations, placeholders, jobs)."""


class ConfigurationError(RankTrackerError):
    """Missing credentials or invalid settings."""


class SubmissionError(RankTrackerError):
    """A batch submit failed; none of its jobs count as submitted."""

    def __init__(self, message: str, *, batch_size: int = 0) -> None:
        self.batch_size = batch_size
        super().__init__(message)


class FetchError(RankTrackerError):
    """Transport or provider failure while fetching one task's result."""

    def __init__(self, task_id: str, message: str) -> None:
        self.task_id = task_id
        super().__init__(f"task {task_id}: {message}")


class InvalidTransitionError(RankTrackerError):
    """Attempt to move a job out of a terminal outcome."""

    def __init__(self, row_id: str, current: str, attempted: str) -> None:
        self.row_id = row_id
        super().__init__(
            f"Job {row_id} is already {current}; refusing transition to {attempted}"
        )
