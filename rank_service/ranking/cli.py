from __future__ import annotations

import argparse

from rank_service.sinks.factory import SINK_KINDS


def _add_common(p: argparse.ArgumentParser) -> None:
    p.add_argument("--log-level", default="INFO", help="Python logging level (INFO, DEBUG, ...)")


def _add_run_options(p: argparse.ArgumentParser, *, jobs_required: bool = True) -> None:
    p.add_argument(
        "--jobs",
        required=jobs_required,
        help="Job list: CSV (row_id,keyword,latitude,longitude[,intended_url]) or preflight .json",
    )
    p.add_argument("--target-domain", default=None, help="Override RANK_TARGET_DOMAIN")
    p.add_argument("--sink", choices=SINK_KINDS, default=None, help="Override RANK_SINK")
    p.add_argument("--sink-path", default=None, help="Override RANK_SINK_PATH (json sink)")
    p.add_argument("--batch-size", type=int, default=None, help="Override RANK_BATCH_SIZE")
    p.add_argument("--concurrency", type=int, default=None, help="Override RANK_FETCH_CONCURRENCY")
    p.add_argument("--dry-run", action="store_true", help="List work and exit (no provider calls)")


def build_parser() -> argparse.ArgumentParser:
    p = argparse.ArgumentParser(
        prog="rank-tracker",
        description="Keyword expansion and DataForSEO rank tracking",
    )
    sub = p.add_subparsers(dest="command", required=True)

    ex = sub.add_parser("expand", help="Expand keyword templates into a CSV")
    ex.add_argument("--templates", required=True, help="File with one template per line")
    ex.add_argument("--niche", required=True, help="CSV of service,core_keyword rows")
    ex.add_argument("--locations", required=True, help="File with one location per line")
    ex.add_argument("--niche-placeholder", default="{niche}")
    ex.add_argument("--location-placeholder", default="{location}")
    ex.add_argument(
        "--set",
        action="append",
        default=[],
        metavar="PLACEHOLDER=VALUE",
        help="Extra literal placeholder substitution (repeatable)",
    )
    ex.add_argument("--service", default=None, help="Only niche rows whose service contains this text")
    ex.add_argument(
        "--coordinates",
        default=None,
        help="CSV of location,latitude,longitude; when given, writes a job CSV instead",
    )
    ex.add_argument("--output", "-o", default="-", help="Output CSV path ('-' for stdout)")
    _add_common(ex)

    run = sub.add_parser("run", help="Submit, dwell, poll and retry every job in one process")
    _add_run_options(run)
    run.add_argument("--dwell", type=float, default=None, help="Override RANK_DWELL_SECONDS")
    run.add_argument("--retry-rounds", type=int, default=None, help="Override RANK_RETRY_ROUNDS")
    run.add_argument("--retry-interval", type=float, default=None, help="Override RANK_RETRY_INTERVAL_SECONDS")
    _add_common(run)

    submit = sub.add_parser("submit", help="Run one submit phase from the stored cursor")
    _add_run_options(submit)
    _add_common(submit)

    fetch = sub.add_parser("fetch", help="Run one fetch phase over open tasks")
    _add_run_options(fetch, jobs_required=False)
    fetch.add_argument("--max-fetch-attempts", type=int, default=None, help="Override RANK_MAX_FETCH_ATTEMPTS")
    _add_common(fetch)

    check = sub.add_parser("check", help="Verify provider credentials and connectivity")
    _add_common(check)

    return p
