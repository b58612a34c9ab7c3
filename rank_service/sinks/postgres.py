"""PostgreSQL sink for rank_outcomes, rank_tasks and rank_cursors.

Tables are created by the Alembic migrations (alembic/versions/);
`setup()` only verifies they exist. Outcome writes are row-keyed upserts that
never replace a terminal row, so re-running a job list is safe.
"""

from __future__ import annotations

import json
import logging
from collections.abc import Iterable, Sequence
from typing import Any

import asyncpg

from rank_service.db import check_db_connection, close_pool, transaction
from rank_service.errors import ConfigurationError, InvalidTransitionError
from rank_service.ranking.types import (
    KeywordJob,
    OutcomeStatus,
    RankingMatch,
    SubmittedTask,
    TaskOutcome,
    TaskStatus,
)
from rank_service.sinks.base import OPEN_TASK_STATUSES, OutcomeSink

logger = logging.getLogger(__name__)

_TABLES = ("rank_outcomes", "rank_tasks", "rank_cursors")


def _row_to_outcome(row: asyncpg.Record | dict[str, Any]) -> TaskOutcome:
    match = None
    if row["rank"] is not None and row["url"]:
        match = RankingMatch(rank=int(row["rank"]), url=row["url"])
    raw = row["raw"]
    if isinstance(raw, str):
        raw = json.loads(raw)
    return TaskOutcome(
        status=OutcomeStatus(row["status"]),
        match=match,
        reason=row["reason"],
        raw=raw,
    )


def _row_to_task(row: asyncpg.Record | dict[str, Any]) -> SubmittedTask:
    return SubmittedTask(
        job=KeywordJob(
            keyword=row["keyword"],
            latitude=float(row["latitude"]),
            longitude=float(row["longitude"]),
            row_id=row["row_id"],
            intended_url=row["intended_url"],
        ),
        task_id=row["task_id"],
        submitted_at=row["submitted_at"],
        status=TaskStatus(row["status"]),
        attempts=int(row["attempts"]),
    )


class PostgresSink(OutcomeSink):
    """Stateless data-access object; connections come from rank_service.db."""

    def __init__(self, *, cursor_name: str = "default") -> None:
        self._cursor_name = cursor_name

    async def setup(self) -> None:
        async with transaction() as conn:
            missing = [
                t for t in _TABLES
                if await conn.fetchval("SELECT to_regclass($1)", t) is None
            ]
        if missing:
            raise ConfigurationError(
                f"Missing tables {', '.join(missing)}; run `alembic upgrade head` first"
            )

    async def check(self) -> bool:
        return await check_db_connection()

    async def close(self) -> None:
        await close_pool()

    # -- Outcomes -------------------------------------------------------------

    async def get_outcome(self, row_id: str) -> TaskOutcome | None:
        async with transaction() as conn:
            row = await conn.fetchrow(
                "SELECT status, rank, url, reason, raw FROM rank_outcomes WHERE row_id = $1",
                row_id,
            )
        return _row_to_outcome(row) if row else None

    async def _store_outcome(self, job: KeywordJob, outcome: TaskOutcome) -> None:
        async with transaction() as conn:
            tag = await conn.execute(
                """
                INSERT INTO rank_outcomes
                    (row_id, keyword, intended_url, status, rank, url, reason,
                     ranking_position, ranking_url, raw)
                VALUES ($1, $2, $3, $4, $5, $6, $7, $8, $9, $10::jsonb)
                ON CONFLICT (row_id) DO UPDATE SET
                    keyword = EXCLUDED.keyword,
                    intended_url = EXCLUDED.intended_url,
                    status = EXCLUDED.status,
                    rank = EXCLUDED.rank,
                    url = EXCLUDED.url,
                    reason = EXCLUDED.reason,
                    ranking_position = EXCLUDED.ranking_position,
                    ranking_url = EXCLUDED.ranking_url,
                    raw = EXCLUDED.raw,
                    updated_at = NOW()
                WHERE rank_outcomes.status = 'pending'
                """,
                job.row_id,
                job.keyword,
                job.intended_url,
                outcome.status.value,
                outcome.match.rank if outcome.match else None,
                outcome.match.url if outcome.match else None,
                outcome.reason,
                outcome.display_rank(),
                outcome.display_url(),
                json.dumps(outcome.raw, default=str) if outcome.raw is not None else None,
            )
        # "INSERT 0 0" means the WHERE guard rejected the update
        if tag.endswith(" 0"):
            raise InvalidTransitionError(job.row_id, "terminal", outcome.status.value)

    async def terminal_row_ids(self, row_ids: Iterable[str]) -> set[str]:
        ids = list(row_ids)
        if not ids:
            return set()
        async with transaction() as conn:
            rows = await conn.fetch(
                "SELECT row_id FROM rank_outcomes WHERE row_id = ANY($1::text[]) AND status <> 'pending'",
                ids,
            )
        return {r["row_id"] for r in rows}

    async def count_by_status(self) -> dict[str, int]:
        async with transaction() as conn:
            rows = await conn.fetch(
                "SELECT status, COUNT(*) AS n FROM rank_outcomes GROUP BY status"
            )
        return {r["status"]: int(r["n"]) for r in rows}

    # -- Task ledger ----------------------------------------------------------

    async def record_tasks(self, tasks: Sequence[SubmittedTask]) -> None:
        if not tasks:
            return
        async with transaction() as conn:
            await conn.executemany(
                """
                INSERT INTO rank_tasks
                    (task_id, row_id, keyword, latitude, longitude,
                     intended_url, submitted_at, status, attempts)
                VALUES ($1, $2, $3, $4, $5, $6, $7, $8, $9)
                ON CONFLICT (task_id) DO UPDATE SET
                    status = EXCLUDED.status,
                    attempts = EXCLUDED.attempts,
                    updated_at = NOW()
                """,
                [
                    (
                        t.task_id,
                        t.job.row_id,
                        t.job.keyword,
                        t.job.latitude,
                        t.job.longitude,
                        t.job.intended_url,
                        t.submitted_at,
                        t.status.value,
                        t.attempts,
                    )
                    for t in tasks
                ],
            )

    async def update_task(self, task: SubmittedTask) -> None:
        async with transaction() as conn:
            await conn.execute(
                """
                UPDATE rank_tasks
                SET status = $2,
                    attempts = $3,
                    completed_at = CASE WHEN $2 IN ('fetched', 'failed') THEN NOW() ELSE NULL END,
                    updated_at = NOW()
                WHERE task_id = $1
                """,
                task.task_id,
                task.status.value,
                task.attempts,
            )

    async def open_tasks(self) -> list[SubmittedTask]:
        async with transaction() as conn:
            rows = await conn.fetch(
                """
                SELECT task_id, row_id, keyword, latitude, longitude,
                       intended_url, submitted_at, status, attempts
                FROM rank_tasks
                WHERE status = ANY($1::text[])
                ORDER BY submitted_at, task_id
                """,
                [s.value for s in OPEN_TASK_STATUSES],
            )
        return [_row_to_task(r) for r in rows]

    async def tasked_row_ids(self, row_ids: Iterable[str]) -> set[str]:
        ids = list(row_ids)
        if not ids:
            return set()
        async with transaction() as conn:
            rows = await conn.fetch(
                "SELECT DISTINCT row_id FROM rank_tasks WHERE row_id = ANY($1::text[])",
                ids,
            )
        return {r["row_id"] for r in rows}

    # -- Resume cursor --------------------------------------------------------

    async def get_cursor(self) -> int:
        async with transaction() as conn:
            pos = await conn.fetchval(
                "SELECT position FROM rank_cursors WHERE name = $1", self._cursor_name
            )
        return int(pos or 0)

    async def set_cursor(self, position: int | None) -> None:
        async with transaction() as conn:
            if position is None:
                await conn.execute("DELETE FROM rank_cursors WHERE name = $1", self._cursor_name)
                return
            await conn.execute(
                """
                INSERT INTO rank_cursors (name, position)
                VALUES ($1, $2)
                ON CONFLICT (name) DO UPDATE SET position = EXCLUDED.position, updated_at = NOW()
                """,
                self._cursor_name,
                position,
            )
