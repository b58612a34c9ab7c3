"""Unit tests for the batch orchestrator state machine.

A fake provider client scripts fetch results per row; waits are zero unless a
test needs the run to be suspended.
"""

from __future__ import annotations

import asyncio
import json
from dataclasses import replace

import httpx
import pytest
from fakes import NOT_READY, FakeRankingClient, completed, error

from rank_service.errors import ValidationError
from rank_service.ranking.client import RankingClient
from rank_service.ranking.orchestrator import BatchOrchestrator, outcome_for
from rank_service.ranking.types import (
    REASON_CANCELLED,
    REASON_NOT_FOUND,
    REASON_SUBMISSION_FAILED,
    FetchResult,
    FetchStatus,
    OutcomeStatus,
    RankingMatch,
    TaskOutcome,
)


def _orch(client, sink, cfg) -> BatchOrchestrator:
    return BatchOrchestrator(client=client, sink=sink, cfg=cfg)  # type: ignore[arg-type]


# ---------------------------------------------------------------------------
# outcome_for
# ---------------------------------------------------------------------------


class TestOutcomeFor:
    def test_best_match_is_lowest_rank(self):
        out = outcome_for(completed((5, "A"), (2, "B"), (9, "C")))
        assert out.status is OutcomeStatus.COMPLETED
        assert out.match == RankingMatch(rank=2, url="B")

    def test_tie_keeps_first_seen(self):
        out = outcome_for(completed((3, "first"), (3, "second")))
        assert out.match is not None
        assert out.match.url == "first"

    def test_completed_without_match_stays_pending(self):
        out = outcome_for(completed())
        assert out.status is OutcomeStatus.PENDING
        assert out.raw == {"matches": 0}

    def test_not_ready_is_pending(self):
        assert outcome_for(NOT_READY).status is OutcomeStatus.PENDING

    def test_error_fails_with_message(self):
        out = outcome_for(error("task abc: timeout"))
        assert out.status is OutcomeStatus.FAILED
        assert out.reason == "task abc: timeout"

    def test_error_without_message_gets_generic_reason(self):
        out = outcome_for(FetchResult(status=FetchStatus.ERROR))
        assert out.reason == "fetch error"


# ---------------------------------------------------------------------------
# Full runs
# ---------------------------------------------------------------------------


class TestRun:
    async def test_best_match_recorded(self, sink, make_job, rank_config):
        client = FakeRankingClient({"1": [completed((5, "A"), (2, "B"), (9, "C"))]})
        stats = await _orch(client, sink, rank_config).run([make_job(1)])

        assert sink.outcomes["1"].match == RankingMatch(rank=2, url="B")
        assert stats.completed == 1
        assert stats.done is True

    async def test_pending_resolved_in_retry_round(self, sink, make_job, rank_config):
        client = FakeRankingClient({"1": [NOT_READY, completed(), completed((4, "https://example.com/a"))]})
        await _orch(client, sink, rank_config).run([make_job(1)])

        assert sink.outcomes["1"].status is OutcomeStatus.COMPLETED
        assert sink.outcomes["1"].match == RankingMatch(rank=4, url="https://example.com/a")
        assert client.fetch_count("1") == 3

    async def test_retry_exhaustion_fails_not_found(self, sink, make_job, rank_config):
        client = FakeRankingClient()
        stats = await _orch(client, sink, rank_config).run([make_job(1)])

        out = sink.outcomes["1"]
        assert out.status is OutcomeStatus.FAILED
        assert out.reason == REASON_NOT_FOUND
        assert out.display_rank() == "Not Found"
        # first pass + retry_rounds
        assert client.fetch_count("1") == 1 + rank_config.retry_rounds
        assert stats.failed == 1
        assert stats.pending == 0

    async def test_zero_retry_rounds_finalizes_after_first_pass(self, sink, make_job, rank_config):
        client = FakeRankingClient()
        cfg = replace(rank_config, retry_rounds=0)
        await _orch(client, sink, cfg).run([make_job(1)])

        assert client.fetch_count("1") == 1
        assert sink.outcomes["1"].reason == REASON_NOT_FOUND

    async def test_last_raw_payload_kept_on_timeout(self, sink, make_job, rank_config):
        raw = {"status_code": 40602}
        client = FakeRankingClient({"1": [FetchResult(status=FetchStatus.NOT_READY, raw=raw)]})
        await _orch(client, sink, rank_config).run([make_job(1)])

        assert sink.outcomes["1"].raw == raw

    async def test_fetch_error_is_terminal_and_not_retried(self, sink, make_job, rank_config):
        client = FakeRankingClient({"1": [error()]})
        await _orch(client, sink, rank_config).run([make_job(1)])

        assert sink.outcomes["1"].status is OutcomeStatus.FAILED
        assert "40501" in (sink.outcomes["1"].reason or "")
        assert client.fetch_count("1") == 1

    async def test_only_pending_jobs_are_refetched(self, sink, make_job, rank_config):
        client = FakeRankingClient({"1": [completed((1, "x"))], "2": [NOT_READY]})
        await _orch(client, sink, rank_config).run([make_job(1), make_job(2)])

        assert client.fetch_count("1") == 1
        assert client.fetch_count("2") == 1 + rank_config.retry_rounds

    async def test_every_job_ends_terminal_and_written_once(self, sink, make_job, rank_config):
        client = FakeRankingClient({"1": [completed((1, "x"))], "3": [error()]})
        jobs = [make_job(i) for i in range(1, 5)]
        await _orch(client, sink, rank_config).run(jobs)

        assert all(sink.outcomes[j.row_id].is_terminal for j in jobs)
        assert sorted(sink.writes) == ["1", "2", "3", "4"]

    async def test_batches_follow_batch_size(self, sink, make_job, rank_config):
        client = FakeRankingClient()
        cfg = replace(rank_config, batch_size=2, retry_rounds=0)
        await _orch(client, sink, cfg).run([make_job(i) for i in range(1, 6)])

        assert [len(b) for b in client.submitted] == [2, 2, 1]


class TestBatchIsolation:
    async def test_failed_submission_only_affects_its_batch(self, sink, make_job, rank_config):
        client = FakeRankingClient(
            {str(i): [completed((i, f"https://example.com/{i}"))] for i in range(1, 7)},
            fail_batches={1},
        )
        cfg = replace(rank_config, batch_size=2)
        jobs = [make_job(i) for i in range(1, 7)]
        stats = await _orch(client, sink, cfg).run(jobs)

        for rid in ("1", "2", "5", "6"):
            assert sink.outcomes[rid].status is OutcomeStatus.COMPLETED
        for rid in ("3", "4"):
            assert sink.outcomes[rid].status is OutcomeStatus.FAILED
            assert sink.outcomes[rid].reason == REASON_SUBMISSION_FAILED
        assert stats.submitted == 4
        assert stats.completed == 4
        assert stats.failed == 2
        # failed batch is never fetched
        assert client.fetch_count("3") == 0


class TestMalformedProviderResponses:
    """A real client over httpx.MockTransport; bad bodies only fail their own rows."""

    @staticmethod
    def _provider(*, null_post: int | None = None, null_task: str | None = None) -> RankingClient:
        posts = 0

        def handler(request: httpx.Request) -> httpx.Response:
            nonlocal posts
            if request.method == "POST":
                posts += 1
                if posts == null_post:
                    return httpx.Response(200, content=b"null")
                tasks = [
                    {"id": "t-" + t["keyword"].rsplit(" ", 1)[-1], "status_code": 20100}
                    for t in json.loads(request.content)
                ]
                return httpx.Response(200, json={"status_code": 20000, "tasks": tasks})

            task_id = request.url.path.rsplit("/", 1)[-1]
            if task_id == null_task:
                return httpx.Response(200, json={"status_code": 20000, "tasks": [None]})
            item = {"type": "organic", "rank_group": 3, "url": f"https://example.com/{task_id}"}
            task = {"id": task_id, "status_code": 20000, "result": [{"items": [item]}]}
            return httpx.Response(200, json={"status_code": 20000, "tasks": [task]})

        return RankingClient(
            auth_header="Basic dGVzdDp0ZXN0",
            target_domain="example.com",
            base_url="https://api.test/v3",
            transport=httpx.MockTransport(handler),
        )

    async def test_null_submit_body_fails_only_that_batch(self, sink, make_job, rank_config):
        client = self._provider(null_post=2)
        cfg = replace(rank_config, batch_size=1)

        async with client:
            stats = await _orch(client, sink, cfg).run([make_job(i) for i in range(1, 4)])

        assert sink.outcomes["1"].status is OutcomeStatus.COMPLETED
        assert sink.outcomes["3"].status is OutcomeStatus.COMPLETED
        assert sink.outcomes["2"].status is OutcomeStatus.FAILED
        assert sink.outcomes["2"].reason == REASON_SUBMISSION_FAILED
        assert stats.completed == 2
        assert stats.failed == 1

    async def test_null_task_on_fetch_fails_only_that_row(self, sink, make_job, rank_config):
        client = self._provider(null_task="t-2")

        async with client:
            stats = await _orch(client, sink, rank_config).run([make_job(i) for i in range(1, 4)])

        assert sink.outcomes["1"].match == RankingMatch(3, "https://example.com/t-1")
        assert sink.outcomes["3"].match == RankingMatch(3, "https://example.com/t-3")
        assert sink.outcomes["2"].status is OutcomeStatus.FAILED
        assert "Unexpected DataForSEO task structure" in sink.outcomes["2"].reason
        assert stats.completed == 2
        assert stats.failed == 1


class TestDuplicateRowIds:
    async def test_rejected_before_any_submission(self, sink, make_job, rank_config):
        client = FakeRankingClient()

        with pytest.raises(ValidationError, match="Duplicate row_id '1'"):
            await _orch(client, sink, rank_config).run([make_job(1), make_job(2), make_job(1, "other keyword")])

        assert client.submitted == []
        assert sink.outcomes == {}


class TestIdempotentResume:
    async def test_terminal_rows_skipped(self, sink, make_job, rank_config):
        done = make_job(1)
        await sink.write_outcome(done, TaskOutcome.completed(RankingMatch(rank=7, url="old")))
        client = FakeRankingClient({"2": [completed((3, "new"))]})

        stats = await _orch(client, sink, rank_config).run([done, make_job(2)])

        assert [j.row_id for j in client.submitted[0]] == ["2"]
        assert sink.outcomes["1"].match == RankingMatch(rank=7, url="old")
        assert stats.skipped == 1
        assert stats.completed == 1

    async def test_second_run_submits_nothing(self, sink, make_job, rank_config):
        jobs = [make_job(1), make_job(2)]
        client = FakeRankingClient({"1": [completed((1, "x"))]})
        await _orch(client, sink, rank_config).run(jobs)
        first = dict(sink.outcomes)

        again = FakeRankingClient()
        stats = await _orch(again, sink, rank_config).run(jobs)

        assert again.submitted == []
        assert stats.skipped == 2
        assert sink.outcomes == first

    async def test_pending_record_is_reprocessed(self, sink, make_job, rank_config):
        job = make_job(1)
        await sink.write_outcome(job, TaskOutcome.pending())
        client = FakeRankingClient({"1": [completed((2, "x"))]})

        stats = await _orch(client, sink, rank_config).run([job])

        assert stats.skipped == 0
        assert sink.outcomes["1"].status is OutcomeStatus.COMPLETED


class TestCancellation:
    async def test_cancel_during_dwell(self, sink, make_job, rank_config):
        client = FakeRankingClient({"1": [completed((1, "x"))]})
        cfg = replace(rank_config, dwell_seconds=30, batch_size=1)
        orch = _orch(client, sink, cfg)

        task = asyncio.create_task(orch.run([make_job(1), make_job(2)]))
        await asyncio.wait_for(client.submitted_event.wait(), timeout=1)
        orch.cancel()
        stats = await asyncio.wait_for(task, timeout=1)

        assert client.fetches == []
        assert sink.outcomes["1"].reason == REASON_CANCELLED
        # second batch never submitted, left for a later run
        assert "2" not in sink.outcomes
        assert len(client.submitted) == 1
        assert stats.cancelled == 1
        assert stats.pending == 1
        assert stats.done is False

    async def test_cancel_before_run_submits_nothing(self, sink, make_job, rank_config):
        client = FakeRankingClient()
        orch = _orch(client, sink, rank_config)
        orch.cancel()

        stats = await orch.run([make_job(1)])

        assert client.submitted == []
        assert sink.outcomes == {}
        assert stats.pending == 1

    async def test_cancel_during_retry_interval(self, sink, make_job, rank_config):
        client = FakeRankingClient({"1": [completed((1, "x"))]})
        cfg = replace(rank_config, retry_interval_seconds=30)
        orch = _orch(client, sink, cfg)

        task = asyncio.create_task(orch.run([make_job(1), make_job(2)]))
        while len(client.fetches) < 2:
            await asyncio.sleep(0)
        orch.cancel()
        stats = await asyncio.wait_for(task, timeout=1)

        assert sink.outcomes["1"].status is OutcomeStatus.COMPLETED
        assert sink.outcomes["2"].reason == REASON_CANCELLED
        assert stats.completed == 1
        assert stats.cancelled == 1

    async def test_wait_returns_true_when_not_cancelled(self, sink, rank_config):
        orch = _orch(FakeRankingClient(), sink, rank_config)
        assert await orch._wait(0.01) is True
        orch.cancel()
        assert await orch._wait(0.01) is False


class TestFetchConcurrency:
    @pytest.mark.parametrize("concurrency", [1, 2])
    async def test_fetches_bounded(self, sink, make_job, rank_config, concurrency):
        client = FakeRankingClient(
            {str(i): [completed((1, "x"))] for i in range(1, 5)},
            fetch_delay=0.01,
        )
        cfg = replace(rank_config, fetch_concurrency=concurrency)
        stats = await _orch(client, sink, cfg).run([make_job(i) for i in range(1, 5)])

        assert client.max_in_flight == concurrency
        assert stats.completed == 4
