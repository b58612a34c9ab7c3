"""In-process sink for tests and dry runs."""

from __future__ import annotations

from collections import Counter
from collections.abc import Iterable, Sequence

from rank_service.ranking.types import KeywordJob, SubmittedTask, TaskOutcome
from rank_service.sinks.base import OPEN_TASK_STATUSES, OutcomeSink


class MemorySink(OutcomeSink):
    def __init__(self) -> None:
        self.outcomes: dict[str, TaskOutcome] = {}
        self.jobs: dict[str, KeywordJob] = {}
        self.tasks: dict[str, SubmittedTask] = {}
        self.cursor: int | None = None
        self.writes: list[str] = []  # row ids in write order

    async def get_outcome(self, row_id: str) -> TaskOutcome | None:
        return self.outcomes.get(row_id)

    async def _store_outcome(self, job: KeywordJob, outcome: TaskOutcome) -> None:
        self.outcomes[job.row_id] = outcome
        self.jobs[job.row_id] = job
        self.writes.append(job.row_id)

    async def count_by_status(self) -> dict[str, int]:
        return dict(Counter(o.status.value for o in self.outcomes.values()))

    async def record_tasks(self, tasks: Sequence[SubmittedTask]) -> None:
        for t in tasks:
            self.tasks[t.task_id] = t

    async def update_task(self, task: SubmittedTask) -> None:
        self.tasks[task.task_id] = task

    async def open_tasks(self) -> list[SubmittedTask]:
        return [t for t in self.tasks.values() if t.status in OPEN_TASK_STATUSES]

    async def tasked_row_ids(self, row_ids: Iterable[str]) -> set[str]:
        wanted = set(row_ids)
        return {t.job.row_id for t in self.tasks.values() if t.job.row_id in wanted}

    async def get_cursor(self) -> int:
        return self.cursor or 0

    async def set_cursor(self, position: int | None) -> None:
        self.cursor = position
