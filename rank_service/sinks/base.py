"""Outcome sink interface.

A sink holds three things for a run:
- one outcome record per job row (rank-or-status, url-or-status, raw payload)
- the ledger of submitted tasks used by the incremental mode
- the resume cursor into the job list

Outcome writes are per row so a crash mid-batch loses nothing already
fetched, and a terminal outcome is never overwritten.
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from collections.abc import Iterable, Sequence
from datetime import UTC, datetime
from typing import Any

from rank_service.errors import InvalidTransitionError
from rank_service.ranking.types import (
    KeywordJob,
    OutcomeStatus,
    RankingMatch,
    SubmittedTask,
    TaskOutcome,
    TaskStatus,
)


def _now() -> datetime:
    return datetime.now(UTC)


class OutcomeSink(ABC):
    async def setup(self) -> None:
        """Prepare storage. Safe to call repeatedly."""

    async def flush(self) -> None:
        """Push buffered writes to durable storage (end of each batch)."""

    async def close(self) -> None: ...

    async def check(self) -> bool:
        """Readiness check; True when the backing store is reachable."""
        return True

    # -- Outcomes -------------------------------------------------------------

    @abstractmethod
    async def get_outcome(self, row_id: str) -> TaskOutcome | None: ...

    @abstractmethod
    async def _store_outcome(self, job: KeywordJob, outcome: TaskOutcome) -> None: ...

    @abstractmethod
    async def count_by_status(self) -> dict[str, int]: ...

    async def write_outcome(self, job: KeywordJob, outcome: TaskOutcome) -> None:
        existing = await self.get_outcome(job.row_id)
        if existing is not None and existing.is_terminal:
            raise InvalidTransitionError(job.row_id, existing.status.value, outcome.status.value)
        await self._store_outcome(job, outcome)

    async def terminal_row_ids(self, row_ids: Iterable[str]) -> set[str]:
        out: set[str] = set()
        for row_id in row_ids:
            outcome = await self.get_outcome(row_id)
            if outcome is not None and outcome.is_terminal:
                out.add(row_id)
        return out

    # -- Task ledger ----------------------------------------------------------

    @abstractmethod
    async def record_tasks(self, tasks: Sequence[SubmittedTask]) -> None: ...

    @abstractmethod
    async def update_task(self, task: SubmittedTask) -> None: ...

    @abstractmethod
    async def open_tasks(self) -> list[SubmittedTask]:
        """Tasks not yet fetched or failed, in submission order."""

    @abstractmethod
    async def tasked_row_ids(self, row_ids: Iterable[str]) -> set[str]:
        """Row ids that already have a task in the ledger (any status)."""

    # -- Resume cursor --------------------------------------------------------

    @abstractmethod
    async def get_cursor(self) -> int: ...

    @abstractmethod
    async def set_cursor(self, position: int | None) -> None:
        """Store the next job index to scan; None clears it."""


# -- Serialization helpers (JSON file sink, raw payload columns) --------------


def outcome_to_dict(job: KeywordJob, outcome: TaskOutcome) -> dict[str, Any]:
    return {
        "row_id": job.row_id,
        "keyword": job.keyword,
        "intended_url": job.intended_url,
        "status": outcome.status.value,
        "rank": outcome.match.rank if outcome.match else None,
        "url": outcome.match.url if outcome.match else None,
        "reason": outcome.reason,
        "ranking_position": outcome.display_rank(),
        "ranking_url": outcome.display_url(),
        "raw": outcome.raw,
        "updated_at": _now().isoformat(),
    }


def outcome_from_dict(d: dict[str, Any]) -> TaskOutcome:
    match = None
    if d.get("rank") is not None and d.get("url"):
        match = RankingMatch(rank=int(d["rank"]), url=str(d["url"]))
    return TaskOutcome(
        status=OutcomeStatus(d["status"]),
        match=match,
        reason=d.get("reason"),
        raw=d.get("raw"),
    )


def task_to_dict(task: SubmittedTask) -> dict[str, Any]:
    return {
        "task_id": task.task_id,
        "row_id": task.job.row_id,
        "keyword": task.job.keyword,
        "latitude": task.job.latitude,
        "longitude": task.job.longitude,
        "intended_url": task.job.intended_url,
        "submitted_at": task.submitted_at.isoformat(),
        "status": task.status.value,
        "attempts": task.attempts,
    }


def task_from_dict(d: dict[str, Any]) -> SubmittedTask:
    return SubmittedTask(
        job=KeywordJob(
            keyword=d["keyword"],
            latitude=float(d["latitude"]),
            longitude=float(d["longitude"]),
            row_id=str(d["row_id"]),
            intended_url=d.get("intended_url"),
        ),
        task_id=d["task_id"],
        submitted_at=datetime.fromisoformat(d["submitted_at"]),
        status=TaskStatus(d["status"]),
        attempts=int(d.get("attempts", 0)),
    )


OPEN_TASK_STATUSES = frozenset({TaskStatus.SUBMITTED, TaskStatus.PENDING})
