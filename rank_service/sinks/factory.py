from __future__ import annotations

from pathlib import Path

from rank_service.config import RANK_SINK, RANK_SINK_PATH
from rank_service.errors import ConfigurationError
from rank_service.sinks.base import OutcomeSink
from rank_service.sinks.json_file import JsonFileSink
from rank_service.sinks.memory import MemorySink
from rank_service.sinks.postgres import PostgresSink

SINK_KINDS = ("memory", "json", "postgres")


def build_sink(kind: str | None = None, *, path: str | Path | None = None) -> OutcomeSink:
    """Construct the sink named by `kind` (default RANK_SINK)."""
    kind = (kind or RANK_SINK).strip().lower()
    if kind == "memory":
        return MemorySink()
    if kind == "json":
        return JsonFileSink(path or RANK_SINK_PATH)
    if kind == "postgres":
        return PostgresSink()
    raise ConfigurationError(f"Unknown sink {kind!r}; expected one of {', '.join(SINK_KINDS)}")
