"""Batch submit / dwell / poll / retry orchestrator.

Per job:

    Queued -> Submitted -> Completed | Pending | Failed
    Pending -> Completed | Failed        (retry rounds only)

Batches run one after another. Within a batch every job is submitted in one
provider request, the run dwells, each task is fetched once, then only the
jobs still Pending are re-fetched for up to `retry_rounds` rounds. Jobs still
Pending after the last round fail as "not found / timed out".

Terminal outcomes go to the sink as soon as they are reached, so a crash
loses nothing already fetched and a re-run skips those rows.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Sequence
from datetime import UTC, datetime

from rank_service.errors import InvalidTransitionError, SubmissionError
from rank_service.logging_config import log_context
from rank_service.ranking.client import RankingClient, best_match
from rank_service.ranking.config import RankConfig
from rank_service.ranking.planner import ensure_unique_row_ids, filter_unfinished, partition
from rank_service.ranking.types import (
    REASON_CANCELLED,
    REASON_NOT_FOUND,
    REASON_SUBMISSION_FAILED,
    BatchRun,
    FetchResult,
    FetchStatus,
    KeywordJob,
    OutcomeStatus,
    RunStats,
    SubmittedTask,
    TaskOutcome,
)
from rank_service.sinks.base import OutcomeSink

logger = logging.getLogger(__name__)


def _now() -> datetime:
    return datetime.now(UTC)


def outcome_for(result: FetchResult) -> TaskOutcome:
    """Map one fetch result onto a job outcome.

    A completed task with no target-domain match stays Pending: the SERP may
    not include the domain yet and the retry loop decides when to give up.
    """
    if result.status is FetchStatus.ERROR:
        return TaskOutcome.failed(result.error or "fetch error", raw=result.raw)
    if result.status is FetchStatus.COMPLETED:
        match = best_match(result.matches)
        if match is not None:
            return TaskOutcome.completed(match, raw=result.raw)
    return TaskOutcome.pending(raw=result.raw)


class BatchOrchestrator:
    def __init__(self, *, client: RankingClient, sink: OutcomeSink, cfg: RankConfig) -> None:
        self._client = client
        self._sink = sink
        self._cfg = cfg
        self._cancel = asyncio.Event()

    @property
    def cancelled(self) -> bool:
        return self._cancel.is_set()

    def cancel(self) -> None:
        """Stop after in-flight fetches; pending jobs fail as "cancelled"."""
        if not self._cancel.is_set():
            logger.warning("Cancellation requested")
        self._cancel.set()

    async def _wait(self, seconds: float) -> bool:
        """Sleep up to `seconds`; returns False if cancelled before or during."""
        if self._cancel.is_set():
            return False
        if seconds <= 0:
            return True
        try:
            await asyncio.wait_for(self._cancel.wait(), timeout=seconds)
        except TimeoutError:
            return True
        return False

    async def run(self, jobs: Sequence[KeywordJob]) -> RunStats:
        """Process `jobs` batch by batch.

        Raises ValidationError before any submission if two jobs share a row id.
        """
        ensure_unique_row_ids(jobs)
        stats = RunStats(total=len(jobs))
        todo = await filter_unfinished(jobs, self._sink)
        stats.skipped = len(jobs) - len(todo)
        if stats.skipped:
            logger.info("Skipping %d jobs with terminal outcomes", stats.skipped)

        batches = list(partition(todo, self._cfg.batch_size))
        logger.info(
            "Run: %d jobs, %d to process in %d batches of <= %d",
            len(jobs),
            len(todo),
            len(batches),
            self._cfg.batch_size,
        )

        for i, batch in enumerate(batches, start=1):
            if self._cancel.is_set():
                stats.pending += sum(len(b) for b in batches[i - 1 :])
                break
            with log_context(batch=i):
                logger.info("Batch %d/%d: %d jobs", i, len(batches), len(batch))
                await self._run_batch(batch, stats)
            await self._sink.flush()

        stats.done = stats.pending == 0 and not self._cancel.is_set()
        logger.info("Run finished: %s", stats.as_dict())
        return stats

    async def _run_batch(self, batch: list[KeywordJob], stats: RunStats) -> None:
        run = BatchRun(jobs=batch)

        try:
            task_ids = await self._client.submit_batch(batch)
        except SubmissionError as e:
            logger.warning("Batch submission failed (%d jobs): %s", len(batch), e)
            for job in batch:
                await self._finalize(run, job, TaskOutcome.failed(REASON_SUBMISSION_FAILED, raw=str(e)), stats)
            return

        stats.submitted += len(batch)
        submitted_at = _now()
        tasks = {
            job.row_id: SubmittedTask(job=job, task_id=tid, submitted_at=submitted_at)
            for job, tid in zip(batch, task_ids, strict=True)
        }
        for job in batch:
            run.record(job, TaskOutcome.pending())

        if await self._wait(self._cfg.dwell_seconds):
            await self._fetch_pass(run, tasks, run.pending(), stats)

            rounds = 0
            while run.pending() and rounds < self._cfg.retry_rounds:
                if not await self._wait(self._cfg.retry_interval_seconds):
                    break
                rounds += 1
                pending = run.pending()
                logger.info("Retry round %d/%d: %d pending", rounds, self._cfg.retry_rounds, len(pending))
                await self._fetch_pass(run, tasks, pending, stats)

        reason = REASON_CANCELLED if self._cancel.is_set() else REASON_NOT_FOUND
        for job in run.pending():
            last = run.outcomes[job.row_id]
            await self._finalize(run, job, TaskOutcome.failed(reason, raw=last.raw), stats)

    async def _fetch_pass(
        self,
        run: BatchRun,
        tasks: dict[str, SubmittedTask],
        jobs: list[KeywordJob],
        stats: RunStats,
    ) -> None:
        sem = asyncio.Semaphore(self._cfg.fetch_concurrency)

        async def fetch_one(job: KeywordJob) -> None:
            async with sem:
                # fetches not yet started when cancel() lands are skipped
                if self._cancel.is_set():
                    return
                task = tasks[job.row_id]
                task.attempts += 1
                result = await self._client.fetch_result(task.task_id)

            outcome = outcome_for(result)
            if outcome.is_terminal:
                await self._finalize(run, job, outcome, stats)
            else:
                run.record(job, outcome)
                logger.debug("Row %s pending after %d fetches", job.row_id, task.attempts)

        await asyncio.gather(*(fetch_one(j) for j in jobs))

    async def _finalize(
        self,
        run: BatchRun,
        job: KeywordJob,
        outcome: TaskOutcome,
        stats: RunStats,
    ) -> None:
        run.record(job, outcome)
        try:
            await self._sink.write_outcome(job, outcome)
        except InvalidTransitionError as e:
            # another run finished this row first; its outcome stands
            logger.warning("Not overwriting terminal outcome: %s", e)
            return

        if outcome.status is OutcomeStatus.COMPLETED:
            stats.completed += 1
        elif outcome.reason == REASON_CANCELLED:
            stats.cancelled += 1
        else:
            stats.failed += 1
        logger.debug("Row %s -> %s %s", job.row_id, outcome.display_rank(), outcome.display_url())
