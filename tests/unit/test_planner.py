"""Unit tests for job loading, building and partitioning."""

from __future__ import annotations

import json
from pathlib import Path

import pytest

from rank_service.errors import ValidationError
from rank_service.keywords.expander import ExpandedKeyword
from rank_service.ranking.planner import (
    build_jobs,
    ensure_unique_row_ids,
    filter_unfinished,
    load_coordinates_csv,
    load_jobs,
    load_jobs_csv,
    load_preflight_json,
    partition,
    stable_row_id,
)
from rank_service.ranking.types import RankingMatch, TaskOutcome


def _write(tmp_path: Path, name: str, text: str) -> Path:
    p = tmp_path / name
    p.write_text(text, encoding="utf-8")
    return p


class TestLoadJobsCsv:
    def test_reads_rows(self, tmp_path):
        p = _write(
            tmp_path,
            "jobs.csv",
            "row_id,keyword,latitude,longitude\nr1,raccoon removal dallas,32.77,-96.79\n",
        )
        jobs = load_jobs_csv(p)
        assert len(jobs) == 1
        assert jobs[0].row_id == "r1"
        assert jobs[0].location_coordinate == "32.77,-96.79"

    def test_row_id_defaults_to_line_number(self, tmp_path):
        p = _write(tmp_path, "jobs.csv", "keyword,latitude,longitude\na,1,2\nb,3,4\n")
        assert [j.row_id for j in load_jobs_csv(p)] == ["1", "2"]

    def test_incomplete_rows_skipped(self, tmp_path):
        p = _write(
            tmp_path,
            "jobs.csv",
            "row_id,keyword,latitude,longitude\n1,,1,2\n2,kw,,2\n3,kw,abc,2\n4,kw,1,2\n",
        )
        assert [j.row_id for j in load_jobs_csv(p)] == ["4"]

    def test_missing_columns(self, tmp_path):
        p = _write(tmp_path, "jobs.csv", "keyword,lat\nkw,1\n")
        with pytest.raises(ValidationError, match="latitude"):
            load_jobs_csv(p)

    def test_duplicate_row_id(self, tmp_path):
        p = _write(tmp_path, "jobs.csv", "row_id,keyword,latitude,longitude\n1,a,1,2\n1,b,1,2\n")
        with pytest.raises(ValidationError, match="Duplicate"):
            load_jobs_csv(p)

    def test_missing_file(self, tmp_path):
        with pytest.raises(ValidationError):
            load_jobs_csv(tmp_path / "nope.csv")

    def test_intended_url_column(self, tmp_path):
        p = _write(
            tmp_path,
            "jobs.csv",
            "row_id,keyword,latitude,longitude,intended_url\n1,a,1,2,https://example.com/a\n2,b,1,2,\n",
        )
        assert [j.intended_url for j in load_jobs_csv(p)] == ["https://example.com/a", None]


class TestLoadPreflightJson:
    DOC = {
        "Dallas": [
            {
                "location": "Plano",
                "service": "Raccoon Removal",
                "intended_url": "https://example.com/plano/raccoon",
                "geo_coordinate": "33.0198,-96.6989",
                "keywords": ["raccoon removal plano", "raccoon trapping plano", "raccoon removal plano"],
            },
            {
                "location": "Frisco",
                "service": "Raccoon Removal",
                "intended_url": "https://example.com/frisco/raccoon",
                "geo_coordinate": None,
                "keywords": ["raccoon removal frisco"],
            },
        ],
        "Reno": [
            {
                "location": "Sparks",
                "service": "Bat Removal",
                "geo_coordinate": "39.5349, -119.7527",
                "keywords": ["bat removal sparks", ""],
            },
        ],
    }

    def _load(self, tmp_path, doc=None):
        p = _write(tmp_path, "preflight.json", json.dumps(self.DOC if doc is None else doc))
        return load_preflight_json(p)

    def test_one_job_per_keyword(self, tmp_path):
        jobs = self._load(tmp_path)

        assert [j.keyword for j in jobs] == ["raccoon removal plano", "raccoon trapping plano", "bat removal sparks"]
        plano = jobs[0]
        assert plano.location_coordinate == "33.0198,-96.6989"
        assert plano.intended_url == "https://example.com/plano/raccoon"
        assert plano.row_id == stable_row_id("Raccoon Removal", "Plano", "raccoon removal plano")
        assert jobs[2].latitude == 39.5349
        assert jobs[2].intended_url is None

    def test_entries_without_coordinates_skipped(self, tmp_path):
        assert all("frisco" not in j.keyword for j in self._load(tmp_path))

    @pytest.mark.parametrize("coord", ["33.0", "a,b", "1,2,3", 33.0])
    def test_malformed_coordinates_skipped(self, tmp_path, coord):
        doc = {"X": [{"location": "L", "service": "S", "geo_coordinate": coord, "keywords": ["kw"]}]}
        assert self._load(tmp_path, doc) == []

    @pytest.mark.parametrize("doc", [[], {"Dallas": {"location": "Plano"}}, {"Dallas": ["Plano"]}])
    def test_bad_layout(self, tmp_path, doc):
        with pytest.raises(ValidationError, match="Preflight"):
            self._load(tmp_path, doc)

    def test_invalid_json(self, tmp_path):
        with pytest.raises(ValidationError, match="not valid JSON"):
            load_preflight_json(_write(tmp_path, "preflight.json", "{"))

    def test_missing_file(self, tmp_path):
        with pytest.raises(ValidationError, match="not found"):
            load_preflight_json(tmp_path / "nope.json")

    def test_load_jobs_picks_format_by_suffix(self, tmp_path):
        _write(tmp_path, "preflight.JSON", json.dumps(self.DOC))
        _write(tmp_path, "jobs.csv", "keyword,latitude,longitude\na,1,2\n")

        assert len(load_jobs(tmp_path / "preflight.JSON")) == 3
        assert [j.row_id for j in load_jobs(tmp_path / "jobs.csv")] == ["1"]


class TestStableRowId:
    def test_same_fields_same_id(self):
        assert stable_row_id("Wildlife", " Dallas", "Raccoon Removal Dallas") == stable_row_id(
            "wildlife", "dallas", "raccoon removal dallas"
        )

    def test_fields_do_not_run_together(self):
        assert stable_row_id("ab", "c", "kw") != stable_row_id("a", "bc", "kw")

    def test_shape(self):
        rid = stable_row_id("s", "l", "k")
        assert len(rid) == 16
        assert int(rid, 16) >= 0


class TestEnsureUniqueRowIds:
    def test_unique_passes(self, make_job):
        ensure_unique_row_ids([make_job(1), make_job(2)])

    def test_duplicates_named(self, make_job):
        with pytest.raises(ValidationError, match="Duplicate row_id '1', '3'"):
            ensure_unique_row_ids([make_job(1), make_job(3), make_job(1), make_job(3), make_job(2)])


class TestBuildJobs:
    def test_attaches_coordinates_by_location(self):
        expanded = [
            ExpandedKeyword("s", "Dallas", "k", "k dallas"),
            ExpandedKeyword("s", "Nowhere", "k", "k nowhere"),
            ExpandedKeyword("s", "Reno", "k", "k reno"),
        ]
        jobs = build_jobs(expanded, {"dallas": (32.7, -96.8), "Reno ": (39.5, -119.8)})

        assert [(j.row_id, j.keyword) for j in jobs] == [
            (stable_row_id("s", "Dallas", "k dallas"), "k dallas"),
            (stable_row_id("s", "Reno", "k reno"), "k reno"),
        ]
        assert jobs[1].latitude == 39.5

    def test_row_ids_survive_reordering_and_additions(self):
        coords = {"Dallas": (32.7, -96.8), "Reno": (39.5, -119.8)}
        before = build_jobs(
            [ExpandedKeyword("s", "Dallas", "k", "k dallas"), ExpandedKeyword("s", "Reno", "k", "k reno")],
            coords,
        )
        after = build_jobs(
            [
                ExpandedKeyword("s", "Austin", "k", "k austin"),
                ExpandedKeyword("s", "Reno", "k", "k reno"),
                ExpandedKeyword("s", "Dallas", "k", "k dallas"),
            ],
            {**coords, "Austin": (30.3, -97.7)},
        )

        assert {j.keyword: j.row_id for j in before}.items() <= {j.keyword: j.row_id for j in after}.items()

    def test_repeated_keyword_becomes_one_job(self):
        expanded = [
            ExpandedKeyword("s", "Dallas", "k", "k dallas"),
            ExpandedKeyword("s", "Dallas", "k", "K Dallas"),
        ]
        jobs = build_jobs(expanded, {"Dallas": (32.7, -96.8)})
        assert [j.keyword for j in jobs] == ["k dallas"]

    def test_load_coordinates_skips_header_and_bad_rows(self, tmp_path):
        p = _write(tmp_path, "coords.csv", "location,latitude,longitude\nDallas,32.7,-96.8\nBad,x,1\nShort,1\n")
        assert load_coordinates_csv(p) == {"Dallas": (32.7, -96.8)}


class TestPartition:
    def test_sizes(self):
        assert [len(b) for b in partition(list(range(7)), 3)] == [3, 3, 1]

    def test_empty(self):
        assert list(partition([], 3)) == []

    def test_invalid_size(self):
        with pytest.raises(ValidationError):
            list(partition([1], 0))


class TestFilterUnfinished:
    async def test_drops_terminal_rows_only(self, sink, make_job):
        jobs = [make_job(1), make_job(2), make_job(3)]
        await sink.write_outcome(jobs[0], TaskOutcome.completed(RankingMatch(rank=1, url="x")))
        await sink.write_outcome(jobs[1], TaskOutcome.pending())

        remaining = await filter_unfinished(jobs, sink)

        assert [j.row_id for j in remaining] == ["2", "3"]
