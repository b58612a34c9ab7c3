"""JSON file sink.

The state lives in one document:

    {
      "outcomes": {"<row_id>": {...}},
      "tasks":    {"<task_id>": {...}},
      "cursor":   12 | null
    }

plus an append-only journal next to it (`<path>.journal`, one JSON object
per line). Each write appends one journal line, so a single outcome costs a
line rather than a rewrite of every row. `flush()` (end of every batch and
phase) and `close()` fold the journal into the document with an atomic
rewrite (temp file + rename) and truncate it. Loading replays the journal
over the document, so outcomes written before a crash survive; a torn last
line from a crash mid-append is dropped.
"""

from __future__ import annotations

import asyncio
import json
import logging
import os
from collections import Counter
from collections.abc import Iterable, Sequence
from pathlib import Path
from typing import Any

from rank_service.errors import ConfigurationError
from rank_service.ranking.types import KeywordJob, SubmittedTask, TaskOutcome
from rank_service.sinks.base import (
    OPEN_TASK_STATUSES,
    OutcomeSink,
    outcome_from_dict,
    outcome_to_dict,
    task_from_dict,
    task_to_dict,
)

logger = logging.getLogger(__name__)

# journal lines after which a write folds the journal into the document
COMPACT_AFTER = 1000


def _empty_state() -> dict[str, Any]:
    return {"outcomes": {}, "tasks": {}, "cursor": None}


def _apply(state: dict[str, Any], entry: dict[str, Any]) -> None:
    op = entry["op"]
    if op == "outcome":
        state["outcomes"][entry["key"]] = entry["value"]
    elif op == "task":
        state["tasks"][entry["key"]] = entry["value"]
    elif op == "cursor":
        state["cursor"] = entry["value"]
    else:
        raise ValueError(f"unknown journal op {op!r}")


class JsonFileSink(OutcomeSink):
    def __init__(self, path: str | Path) -> None:
        self._path = Path(path)
        self._journal = self._path.with_name(self._path.name + ".journal")
        self._lock = asyncio.Lock()
        self._state: dict[str, Any] | None = None
        self._pending = 0  # journal lines not yet folded into the document

    @property
    def path(self) -> Path:
        return self._path

    @property
    def journal_path(self) -> Path:
        return self._journal

    # -- File I/O (runs in a worker thread) -----------------------------------

    def _read_document(self) -> dict[str, Any]:
        state = _empty_state()
        if not self._path.exists():
            return state
        try:
            with open(self._path, encoding="utf-8") as f:
                data = json.load(f)
        except json.JSONDecodeError as e:
            raise ConfigurationError(f"Sink file {self._path} is not valid JSON: {e}") from e
        state.update({k: v for k, v in data.items() if k in state})
        return state

    def _replay_journal(self, state: dict[str, Any]) -> tuple[int, bool]:
        """Apply journal lines to `state`; returns (lines applied, last line was torn)."""
        if not self._journal.exists():
            return 0, False
        with open(self._journal, encoding="utf-8") as f:
            lines = [line for line in f.read().split("\n") if line.strip()]
        applied = 0
        for n, line in enumerate(lines, start=1):
            try:
                _apply(state, json.loads(line))
            except (ValueError, KeyError, TypeError) as e:
                if n == len(lines):
                    logger.warning("Dropping torn last line of %s: %s", self._journal, e)
                    return applied, True
                raise ConfigurationError(f"Sink journal {self._journal} line {n} is corrupt: {e}") from e
            applied += 1
        return applied, False

    def _read_file(self) -> tuple[dict[str, Any], int, bool]:
        state = self._read_document()
        return state, *self._replay_journal(state)

    def _append(self, entries: list[dict[str, Any]]) -> None:
        self._journal.parent.mkdir(parents=True, exist_ok=True)
        with open(self._journal, "a", encoding="utf-8") as f:
            for entry in entries:
                f.write(json.dumps(entry, ensure_ascii=False, default=str) + "\n")
            f.flush()

    def _write_file(self, state: dict[str, Any]) -> None:
        self._path.parent.mkdir(parents=True, exist_ok=True)
        tmp = self._path.with_name(self._path.name + ".tmp")
        with open(tmp, "w", encoding="utf-8") as f:
            json.dump(state, f, ensure_ascii=False, indent=2, default=str)
        os.replace(tmp, self._path)
        # the document now holds everything the journal did
        self._journal.unlink(missing_ok=True)

    # -- State ----------------------------------------------------------------

    async def _load(self) -> dict[str, Any]:
        if self._state is None:
            self._state, self._pending, torn = await asyncio.to_thread(self._read_file)
            if self._pending:
                logger.info("Replayed %d journal entries from %s", self._pending, self._journal)
            if torn:
                # appends must not land after the partial line
                await self._compact()
        return self._state

    async def _compact(self) -> None:
        assert self._state is not None
        await asyncio.to_thread(self._write_file, self._state)
        self._pending = 0

    async def _record(self, *entries: dict[str, Any]) -> None:
        """Apply entries to the in-memory state and append them to the journal. Caller holds the lock."""
        state = await self._load()
        for entry in entries:
            _apply(state, entry)
        await asyncio.to_thread(self._append, list(entries))
        self._pending += len(entries)
        if self._pending >= COMPACT_AFTER:
            await self._compact()

    async def setup(self) -> None:
        async with self._lock:
            await self._load()
            created = not self._path.exists()
            if created or self._pending:
                await self._compact()
            if created:
                logger.info("Created sink file %s", self._path)

    async def flush(self) -> None:
        async with self._lock:
            if self._state is not None and self._pending:
                await self._compact()

    async def close(self) -> None:
        await self.flush()

    # -- Outcomes -------------------------------------------------------------

    async def get_outcome(self, row_id: str) -> TaskOutcome | None:
        async with self._lock:
            state = await self._load()
            d = state["outcomes"].get(row_id)
        return outcome_from_dict(d) if d else None

    async def _store_outcome(self, job: KeywordJob, outcome: TaskOutcome) -> None:
        async with self._lock:
            await self._record({"op": "outcome", "key": job.row_id, "value": outcome_to_dict(job, outcome)})

    async def count_by_status(self) -> dict[str, int]:
        async with self._lock:
            state = await self._load()
            return dict(Counter(d["status"] for d in state["outcomes"].values()))

    # -- Task ledger ----------------------------------------------------------

    async def record_tasks(self, tasks: Sequence[SubmittedTask]) -> None:
        if not tasks:
            return
        async with self._lock:
            await self._record(*({"op": "task", "key": t.task_id, "value": task_to_dict(t)} for t in tasks))

    async def update_task(self, task: SubmittedTask) -> None:
        await self.record_tasks([task])

    async def open_tasks(self) -> list[SubmittedTask]:
        async with self._lock:
            state = await self._load()
            tasks = [task_from_dict(d) for d in state["tasks"].values()]
        return [t for t in tasks if t.status in OPEN_TASK_STATUSES]

    async def tasked_row_ids(self, row_ids: Iterable[str]) -> set[str]:
        wanted = set(row_ids)
        async with self._lock:
            state = await self._load()
            return {str(d["row_id"]) for d in state["tasks"].values() if str(d["row_id"]) in wanted}

    # -- Resume cursor --------------------------------------------------------

    async def get_cursor(self) -> int:
        async with self._lock:
            state = await self._load()
            return int(state.get("cursor") or 0)

    async def set_cursor(self, position: int | None) -> None:
        async with self._lock:
            await self._record({"op": "cursor", "value": position})
