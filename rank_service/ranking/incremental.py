"""Two-phase (scheduled) ranking mode.

Instead of one long run that dwells and polls in-process, an external
scheduler calls two short phases over and over:

- submit_phase: scan the job list from the sink's cursor, submit the next
  batch of jobs that have no terminal outcome and no task yet, record the
  task ids in the sink's ledger, and move the cursor on.
- fetch_phase: poll every open task in the ledger once, writing terminal
  outcomes as they arrive.

Both phases keep all their state in the sink, so any process can run them.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Sequence
from datetime import UTC, datetime

from rank_service.errors import InvalidTransitionError, SubmissionError
from rank_service.ranking.client import RankingClient
from rank_service.ranking.config import RankConfig
from rank_service.ranking.orchestrator import outcome_for
from rank_service.ranking.planner import ensure_unique_row_ids
from rank_service.ranking.types import (
    REASON_NOT_FOUND,
    REASON_SUBMISSION_FAILED,
    KeywordJob,
    OutcomeStatus,
    RunStats,
    SubmittedTask,
    TaskOutcome,
    TaskStatus,
)
from rank_service.sinks.base import OutcomeSink

logger = logging.getLogger(__name__)

# rows examined per sink lookup while scanning for submittable jobs
SCAN_WINDOW = 2000


class IncrementalRunner:
    def __init__(self, *, client: RankingClient, sink: OutcomeSink, cfg: RankConfig) -> None:
        self._client = client
        self._sink = sink
        self._cfg = cfg

    async def _collect(self, jobs: Sequence[KeywordJob], start: int) -> list[tuple[int, KeywordJob]]:
        """Up to batch_size (index, job) pairs at or after `start` still needing a task."""
        found: list[tuple[int, KeywordJob]] = []
        pos = start
        while pos < len(jobs) and len(found) < self._cfg.batch_size:
            window = jobs[pos : pos + SCAN_WINDOW]
            ids = [j.row_id for j in window]
            taken = await self._sink.terminal_row_ids(ids) | await self._sink.tasked_row_ids(ids)
            for offset, job in enumerate(window):
                if job.row_id not in taken:
                    found.append((pos + offset, job))
                    if len(found) >= self._cfg.batch_size:
                        break
            pos += len(window)
        return found

    async def submit_phase(self, jobs: Sequence[KeywordJob]) -> RunStats:
        ensure_unique_row_ids(jobs)
        stats = RunStats(total=len(jobs))
        cursor = await self._sink.get_cursor()
        if cursor < 0 or cursor > len(jobs):
            logger.warning("Resume cursor %d outside job list of %d; restarting at 0", cursor, len(jobs))
            cursor = 0

        collected = await self._collect(jobs, cursor)
        if not collected:
            await self._sink.set_cursor(None)
            stats.done = True
            logger.info("Submit phase: nothing left to submit")
            return stats

        batch = [job for _, job in collected]
        logger.info("Submit phase: submitting %d jobs from position %d", len(batch), cursor)
        try:
            task_ids = await self._client.submit_batch(batch)
        except SubmissionError as e:
            logger.warning("Batch submission failed (%d jobs): %s", len(batch), e)
            for job in batch:
                if await self._write(job, TaskOutcome.failed(REASON_SUBMISSION_FAILED, raw=str(e))):
                    stats.failed += 1
        else:
            now = datetime.now(UTC)
            await self._sink.record_tasks(
                [
                    SubmittedTask(job=job, task_id=tid, submitted_at=now)
                    for job, tid in zip(batch, task_ids, strict=True)
                ]
            )
            stats.submitted = len(batch)

        next_cursor = collected[-1][0] + 1
        if next_cursor >= len(jobs):
            await self._sink.set_cursor(None)
            stats.done = True
        else:
            await self._sink.set_cursor(next_cursor)
        await self._sink.flush()

        logger.info("Submit phase finished: %s (next cursor %s)", stats.as_dict(), None if stats.done else next_cursor)
        return stats

    async def fetch_phase(self) -> RunStats:
        tasks = await self._sink.open_tasks()
        stats = RunStats(total=len(tasks))
        if not tasks:
            stats.done = True
            logger.info("Fetch phase: no open tasks")
            return stats

        already = await self._sink.terminal_row_ids(t.job.row_id for t in tasks)
        sem = asyncio.Semaphore(self._cfg.fetch_concurrency)

        async def fetch_one(task: SubmittedTask) -> None:
            if task.job.row_id in already:
                task.status = TaskStatus.FETCHED
                stats.skipped += 1
                await self._sink.update_task(task)
                return

            async with sem:
                task.attempts += 1
                result = await self._client.fetch_result(task.task_id)

            outcome = outcome_for(result)
            if not outcome.is_terminal and task.attempts >= self._cfg.max_fetch_attempts:
                outcome = TaskOutcome.failed(REASON_NOT_FOUND, raw=outcome.raw)

            if outcome.is_terminal:
                task.status = TaskStatus.FETCHED if outcome.status is OutcomeStatus.COMPLETED else TaskStatus.FAILED
                if await self._write(task.job, outcome):
                    if outcome.status is OutcomeStatus.COMPLETED:
                        stats.completed += 1
                    else:
                        stats.failed += 1
            else:
                task.status = TaskStatus.PENDING
                stats.pending += 1
                logger.debug("Task %s pending (%d/%d polls)", task.task_id, task.attempts, self._cfg.max_fetch_attempts)
            await self._sink.update_task(task)

        await asyncio.gather(*(fetch_one(t) for t in tasks))
        await self._sink.flush()

        stats.done = stats.pending == 0
        logger.info("Fetch phase finished: %s", stats.as_dict())
        return stats

    async def _write(self, job: KeywordJob, outcome: TaskOutcome) -> bool:
        try:
            await self._sink.write_outcome(job, outcome)
        except InvalidTransitionError as e:
            logger.warning("Not overwriting terminal outcome: %s", e)
            return False
        return True
