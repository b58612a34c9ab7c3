from __future__ import annotations

import argparse
import asyncio
import contextlib
import csv
import logging
import signal
import sys
from collections.abc import Sequence
from pathlib import Path

import httpx

from rank_service.errors import ConfigurationError, FetchError, ValidationError
from rank_service.keywords.expander import expand_keywords, filter_niche_by_service
from rank_service.logging_config import log_context, setup_logging
from rank_service.ranking.cli import build_parser
from rank_service.ranking.client import RankingClient
from rank_service.ranking.config import RankConfig
from rank_service.ranking.incremental import IncrementalRunner
from rank_service.ranking.orchestrator import BatchOrchestrator
from rank_service.ranking.planner import (
    build_jobs,
    filter_unfinished,
    load_coordinates_csv,
    load_jobs,
    partition,
)
from rank_service.ranking.types import KeywordJob, RunStats
from rank_service.sinks.base import OutcomeSink
from rank_service.sinks.factory import build_sink

logger = logging.getLogger("rank_service.ranking")


def _read_lines(path: str) -> list[str]:
    p = Path(path)
    if not p.exists():
        raise ValidationError(f"File not found: {p}")
    return [line.strip() for line in p.read_text(encoding="utf-8").splitlines() if line.strip()]


def _read_rows(path: str) -> list[list[str]]:
    p = Path(path)
    if not p.exists():
        raise ValidationError(f"File not found: {p}")
    with open(p, newline="", encoding="utf-8") as f:
        return [row for row in csv.reader(f) if any(c.strip() for c in row)]


def _parse_assignments(items: Sequence[str]) -> dict[str, str]:
    out: dict[str, str] = {}
    for item in items:
        key, sep, value = item.partition("=")
        if not sep or not key.strip():
            raise ValidationError(f"Expected PLACEHOLDER=VALUE, got {item!r}")
        out[key.strip()] = value
    return out


def _write_csv(header: list[str], rows: list[list[object]], output: str) -> None:
    if output == "-":
        w = csv.writer(sys.stdout)
        w.writerow(header)
        w.writerows(rows)
        return
    with open(output, "w", newline="", encoding="utf-8") as f:
        w = csv.writer(f)
        w.writerow(header)
        w.writerows(rows)


def _expand(args: argparse.Namespace) -> int:
    niche: list[list[str]] | list[tuple[str, str]] = _read_rows(args.niche)
    if args.service:
        niche = filter_niche_by_service(niche, args.service)

    expanded = expand_keywords(
        _read_lines(args.templates),
        niche,
        _read_lines(args.locations),
        args.niche_placeholder,
        args.location_placeholder,
        extra_placeholders=_parse_assignments(args.set),
    )

    if args.coordinates:
        jobs = build_jobs(expanded, load_coordinates_csv(args.coordinates))
        _write_csv(
            ["row_id", "keyword", "latitude", "longitude"],
            [[j.row_id, j.keyword, j.latitude, j.longitude] for j in jobs],
            args.output,
        )
        logger.info("Wrote %d jobs from %d expanded keywords", len(jobs), len(expanded))
    else:
        _write_csv(
            ["service", "location", "core_keyword", "keyword"],
            [ek.as_row() for ek in expanded],
            args.output,
        )
        logger.info("Wrote %d expanded keywords", len(expanded))
    return 0


async def _check() -> int:
    async with RankingClient.from_env(target_domain="") as client:
        try:
            info = await client.user_data()
        except (httpx.HTTPError, FetchError) as e:
            logger.error("DataForSEO connection failed: %s", e)
            return 1
    logger.info(
        "DataForSEO connection OK (login=%s, balance=%s)",
        info.get("login", "?"),
        (info.get("money") or {}).get("balance", "?"),
    )
    return 0


def _config_from_args(args: argparse.Namespace) -> RankConfig:
    cfg = RankConfig.from_env().with_overrides(
        target_domain=args.target_domain,
        batch_size=args.batch_size,
        fetch_concurrency=args.concurrency,
        dwell_seconds=getattr(args, "dwell", None),
        retry_rounds=getattr(args, "retry_rounds", None),
        retry_interval_seconds=getattr(args, "retry_interval", None),
        max_fetch_attempts=getattr(args, "max_fetch_attempts", None),
    )
    cfg.validate()
    return cfg


async def _dry_run(command: str, jobs: list[KeywordJob], sink: OutcomeSink, cfg: RankConfig) -> int:
    if command == "fetch":
        tasks = await sink.open_tasks()
        for t in tasks:
            logger.info("[DRY-RUN] task %s row=%s %r (%d polls)", t.task_id, t.job.row_id, t.job.keyword, t.attempts)
        logger.info("[DRY-RUN] %d open tasks", len(tasks))
        return 0

    todo = await filter_unfinished(jobs, sink)
    for i, batch in enumerate(partition(todo, cfg.batch_size), start=1):
        for j in batch:
            logger.info("[DRY-RUN] batch %d row=%s %r @ %s", i, j.row_id, j.keyword, j.location_coordinate)
    logger.info("[DRY-RUN] %d of %d jobs need a ranking", len(todo), len(jobs))
    return 0


async def _run_with_signals(orch: BatchOrchestrator, jobs: list[KeywordJob]) -> RunStats:
    loop = asyncio.get_running_loop()
    installed: list[signal.Signals] = []
    for sig in (signal.SIGINT, signal.SIGTERM):
        with contextlib.suppress(NotImplementedError, RuntimeError):
            loop.add_signal_handler(sig, orch.cancel)
            installed.append(sig)
    try:
        return await orch.run(jobs)
    finally:
        for sig in installed:
            loop.remove_signal_handler(sig)


async def _amain(argv: Sequence[str] | None = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)

    setup_logging(level=args.log_level.upper())

    try:
        if args.command == "expand":
            return _expand(args)
        if args.command == "check":
            return await _check()

        cfg = _config_from_args(args)
        jobs = load_jobs(args.jobs) if args.jobs else []

        sink = build_sink(args.sink, path=args.sink_path)
        await sink.setup()
        try:
            if args.dry_run:
                return await _dry_run(args.command, jobs, sink, cfg)

            async with RankingClient.from_env(
                target_domain=cfg.target_domain,
                max_tasks_per_post=cfg.max_tasks_per_post,
            ) as client:
                with log_context(phase=args.command):
                    if args.command == "run":
                        orch = BatchOrchestrator(client=client, sink=sink, cfg=cfg)
                        stats = await _run_with_signals(orch, jobs)
                    else:
                        runner = IncrementalRunner(client=client, sink=sink, cfg=cfg)
                        if args.command == "submit":
                            stats = await runner.submit_phase(jobs)
                        else:
                            stats = await runner.fetch_phase()
        finally:
            await sink.close()
    except (ConfigurationError, ValidationError) as e:
        logger.error("%s", e)
        return 1

    logger.info("DONE totals=%s", stats.as_dict())
    return 0 if stats.failed == 0 and stats.cancelled == 0 else 2


def main() -> None:
    raise SystemExit(asyncio.run(_amain()))


if __name__ == "__main__":
    main()
