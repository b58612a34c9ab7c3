from __future__ import annotations

import csv
import hashlib
import json
import logging
from collections import Counter
from collections.abc import Iterable, Iterator, Mapping, Sequence
from pathlib import Path
from typing import Any, TypeVar

from rank_service.errors import ValidationError
from rank_service.keywords.expander import ExpandedKeyword
from rank_service.ranking.types import KeywordJob
from rank_service.sinks.base import OutcomeSink

logger = logging.getLogger(__name__)

T = TypeVar("T")


def _parse_float(value: str | None) -> float | None:
    if value is None:
        return None
    value = value.strip()
    if not value:
        return None
    try:
        return float(value)
    except ValueError:
        return None


def _parse_coordinate(value: Any) -> tuple[float, float] | None:
    """`"lat,lng"` -> (lat, lng); None when malformed."""
    if not isinstance(value, str) or value.count(",") != 1:
        return None
    lat, lng = (_parse_float(v) for v in value.split(","))
    if lat is None or lng is None:
        return None
    return lat, lng


def stable_row_id(*parts: str) -> str:
    """Row id derived from a job's identifying fields.

    The same fields always give the same id (case and surrounding whitespace
    ignored), so ids survive reordering or regenerating the job list.
    """
    key = "\x1f".join(p.strip().lower() for p in parts)
    return hashlib.sha256(key.encode("utf-8")).hexdigest()[:16]


def ensure_unique_row_ids(jobs: Iterable[KeywordJob]) -> None:
    """Raise ValidationError if two jobs share a row id."""
    counts = Counter(j.row_id for j in jobs)
    dupes = sorted(rid for rid, n in counts.items() if n > 1)
    if dupes:
        shown = ", ".join(repr(d) for d in dupes[:5])
        more = f" (+{len(dupes) - 5} more)" if len(dupes) > 5 else ""
        raise ValidationError(f"Duplicate row_id {shown}{more} in job list")


def load_jobs_csv(path: str | Path) -> list[KeywordJob]:
    """Read `row_id,keyword,latitude,longitude[,intended_url]` rows into KeywordJobs.

    `row_id` is optional; when absent or blank the 1-based data line number
    is used. Rows missing a keyword or a coordinate are skipped.
    """
    p = Path(path)
    if not p.exists():
        raise ValidationError(f"Job file not found: {p}")

    jobs: list[KeywordJob] = []
    seen: set[str] = set()
    with open(p, newline="", encoding="utf-8") as f:
        reader = csv.DictReader(f)
        missing = {"keyword", "latitude", "longitude"} - set(reader.fieldnames or [])
        if missing:
            raise ValidationError(f"Job file {p} is missing columns: {', '.join(sorted(missing))}")

        for line_no, row in enumerate(reader, start=1):
            keyword = (row.get("keyword") or "").strip()
            lat = _parse_float(row.get("latitude"))
            lng = _parse_float(row.get("longitude"))
            if not keyword or lat is None or lng is None:
                logger.debug("Skipping incomplete row %d in %s", line_no, p)
                continue

            row_id = (row.get("row_id") or "").strip() or str(line_no)
            if row_id in seen:
                raise ValidationError(f"Duplicate row_id {row_id!r} in {p}")
            seen.add(row_id)
            jobs.append(
                KeywordJob(
                    keyword=keyword,
                    latitude=lat,
                    longitude=lng,
                    row_id=row_id,
                    intended_url=(row.get("intended_url") or "").strip() or None,
                )
            )

    logger.info("Loaded %d jobs from %s", len(jobs), p)
    return jobs


def load_preflight_json(path: str | Path) -> list[KeywordJob]:
    """Read a preflight document into KeywordJobs.

    Layout::

        {"<city>": [{"location": "...", "service": "...", "intended_url": "...",
                     "geo_coordinate": "lat,lng", "keywords": ["...", ...]}]}

    Entries without a usable `geo_coordinate` are skipped with a warning.
    Row ids are stable_row_id(service, location, keyword); a keyword repeated
    within one entry is submitted once.
    """
    p = Path(path)
    if not p.exists():
        raise ValidationError(f"Preflight file not found: {p}")
    try:
        doc = json.loads(p.read_text(encoding="utf-8"))
    except json.JSONDecodeError as e:
        raise ValidationError(f"Preflight file {p} is not valid JSON: {e}") from e
    if not isinstance(doc, dict):
        raise ValidationError(f"Preflight file {p} must hold an object keyed by city")

    jobs: list[KeywordJob] = []
    seen: set[str] = set()
    skipped = 0
    for city, entries in doc.items():
        if not isinstance(entries, list):
            raise ValidationError(f"Preflight city {city!r} must map to a list of entries")
        for entry in entries:
            if not isinstance(entry, dict):
                raise ValidationError(f"Preflight city {city!r} has a malformed entry")
            location = str(entry.get("location") or "")
            service = str(entry.get("service") or "")
            coord = _parse_coordinate(entry.get("geo_coordinate"))
            keywords = entry.get("keywords") or []
            if coord is None:
                logger.warning("No geo_coordinate for %s / %s; skipping %d keywords", city, location, len(keywords))
                skipped += len(keywords)
                continue
            intended_url = entry.get("intended_url") or None

            for keyword in keywords:
                if not isinstance(keyword, str) or not keyword.strip():
                    continue
                row_id = stable_row_id(service, location, keyword)
                if row_id in seen:
                    continue
                seen.add(row_id)
                jobs.append(
                    KeywordJob(
                        keyword=keyword.strip(),
                        latitude=coord[0],
                        longitude=coord[1],
                        row_id=row_id,
                        intended_url=intended_url,
                    )
                )

    logger.info("Loaded %d jobs from %s (%d skipped without coordinates)", len(jobs), p, skipped)
    return jobs


def load_jobs(path: str | Path) -> list[KeywordJob]:
    """Load a job list: `.json` files are preflight documents, anything else CSV."""
    if Path(path).suffix.lower() == ".json":
        return load_preflight_json(path)
    return load_jobs_csv(path)


def load_coordinates_csv(path: str | Path) -> dict[str, tuple[float, float]]:
    """Read `location,latitude,longitude` rows; rows with bad coordinates are skipped."""
    p = Path(path)
    if not p.exists():
        raise ValidationError(f"Coordinates file not found: {p}")

    coords: dict[str, tuple[float, float]] = {}
    with open(p, newline="", encoding="utf-8") as f:
        for row in csv.reader(f):
            if len(row) < 3:
                continue
            lat, lng = _parse_float(row[1]), _parse_float(row[2])
            name = row[0].strip()
            # a header row fails the float parse and drops out here
            if not name or lat is None or lng is None:
                continue
            coords[name] = (lat, lng)
    return coords


def build_jobs(
    expanded: Iterable[ExpandedKeyword],
    coordinates: Mapping[str, tuple[float, float]],
) -> list[KeywordJob]:
    """Attach coordinates to expanded keywords by location name.

    Locations are matched case-insensitively. Keywords whose location has no
    coordinates are skipped with a warning. Row ids are
    stable_row_id(service, location, keyword), so a keyword expanded twice
    (two templates producing the same text) becomes one job.
    """
    coords = {k.strip().lower(): v for k, v in coordinates.items()}
    jobs: list[KeywordJob] = []
    seen: set[str] = set()
    unknown: set[str] = set()
    for ek in expanded:
        c = coords.get(ek.location.strip().lower())
        if c is None:
            unknown.add(ek.location)
            continue
        row_id = stable_row_id(ek.service, ek.location, ek.keyword)
        if row_id in seen:
            logger.debug("Dropping repeated keyword %r for %s", ek.keyword, ek.location)
            continue
        seen.add(row_id)
        jobs.append(KeywordJob(keyword=ek.keyword, latitude=c[0], longitude=c[1], row_id=row_id))
    if unknown:
        logger.warning("No coordinates for locations: %s", ", ".join(sorted(unknown)))
    return jobs


def partition(items: Sequence[T], size: int) -> Iterator[list[T]]:
    if size < 1:
        raise ValidationError("Batch size must be >= 1")
    for start in range(0, len(items), size):
        yield list(items[start : start + size])


async def filter_unfinished(jobs: Sequence[KeywordJob], sink: OutcomeSink) -> list[KeywordJob]:
    """Drop jobs whose outcome in `sink` is already terminal."""
    done = await sink.terminal_row_ids(j.row_id for j in jobs)
    return [j for j in jobs if j.row_id not in done]
