"""Unit test conftest: no network or database required."""

from __future__ import annotations

import pytest

from rank_service.sinks.memory import MemorySink


@pytest.fixture
def sink() -> MemorySink:
    return MemorySink()
