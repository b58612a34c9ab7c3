from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from enum import StrEnum
from typing import Any

from rank_service.errors import InvalidTransitionError

REASON_SUBMISSION_FAILED = "submission failed"
REASON_NOT_FOUND = "not found / timed out"
REASON_CANCELLED = "cancelled"


@dataclass(frozen=True)
class KeywordJob:
    keyword: str
    latitude: float
    longitude: float
    row_id: str  # ties back to the originating sheet row / input record
    intended_url: str | None = None  # page the client wants ranking for this keyword

    @property
    def location_coordinate(self) -> str:
        return f"{self.latitude},{self.longitude}"


@dataclass(frozen=True)
class RankingMatch:
    rank: int
    url: str


class OutcomeStatus(StrEnum):
    PENDING = "pending"
    COMPLETED = "completed"
    FAILED = "failed"


class FetchStatus(StrEnum):
    COMPLETED = "completed"
    NOT_READY = "not_ready"
    ERROR = "error"


class TaskStatus(StrEnum):
    """Ledger state of a submitted task (incremental mode)."""

    SUBMITTED = "submitted"
    PENDING = "pending"
    FETCHED = "fetched"
    FAILED = "failed"


@dataclass(frozen=True)
class TaskOutcome:
    status: OutcomeStatus
    match: RankingMatch | None = None
    reason: str | None = None
    raw: Any = None  # last provider payload, kept for diagnostics

    @property
    def is_terminal(self) -> bool:
        return self.status is not OutcomeStatus.PENDING

    @classmethod
    def completed(cls, match: RankingMatch, raw: Any = None) -> TaskOutcome:
        return cls(status=OutcomeStatus.COMPLETED, match=match, raw=raw)

    @classmethod
    def failed(cls, reason: str, raw: Any = None) -> TaskOutcome:
        return cls(status=OutcomeStatus.FAILED, reason=reason, raw=raw)

    @classmethod
    def pending(cls, raw: Any = None) -> TaskOutcome:
        return cls(status=OutcomeStatus.PENDING, raw=raw)

    def display_rank(self) -> str:
        """Rank column value: the rank, or a status word for failures."""
        if self.match is not None:
            return str(self.match.rank)
        if self.reason == REASON_NOT_FOUND:
            return "Not Found"
        if self.status is OutcomeStatus.PENDING:
            return "Pending"
        return "Error"

    def display_url(self) -> str:
        if self.match is not None:
            return self.match.url
        return self.reason or self.status.value


@dataclass
class SubmittedTask:
    job: KeywordJob
    task_id: str
    submitted_at: datetime
    status: TaskStatus = TaskStatus.SUBMITTED
    attempts: int = 0


@dataclass(frozen=True)
class FetchResult:
    status: FetchStatus
    matches: list[RankingMatch] = field(default_factory=list)
    raw: Any = None
    error: str | None = None


@dataclass
class BatchRun:
    """Jobs of one run and their outcomes, keyed by row id.

    Terminal outcomes are write-once.
    """

    jobs: list[KeywordJob]
    outcomes: dict[str, TaskOutcome] = field(default_factory=dict)

    def record(self, job: KeywordJob, outcome: TaskOutcome) -> None:
        current = self.outcomes.get(job.row_id)
        if current is not None and current.is_terminal:
            raise InvalidTransitionError(job.row_id, current.status.value, outcome.status.value)
        self.outcomes[job.row_id] = outcome

    def pending(self) -> list[KeywordJob]:
        return [
            j for j in self.jobs
            if (o := self.outcomes.get(j.row_id)) is not None and o.status is OutcomeStatus.PENDING
        ]


@dataclass
class RunStats:
    total: int = 0
    skipped: int = 0
    submitted: int = 0
    completed: int = 0
    failed: int = 0
    cancelled: int = 0
    pending: int = 0
    done: bool = False

    @property
    def processed(self) -> int:
        return self.completed + self.failed

    def as_dict(self) -> dict[str, int | bool]:
        return {
            "total": self.total,
            "skipped": self.skipped,
            "submitted": self.submitted,
            "processed": self.processed,
            "completed": self.completed,
            "failed": self.failed,
            "cancelled": self.cancelled,
            "pending": self.pending,
            "done": self.done,
        }
