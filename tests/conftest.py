from datetime import datetime, timezone
from pathlib import Path
from typing import Iterator

import pytest
from prometheus_client import CollectorRegistry

from llm_meter.models import CostRecord, TimeWindow, UsageRecord
from llm_meter.storage import SnapshotStore

TS = datetime(2026, 1, 5, tzinfo=timezone.utc)


def make_usage(
    provider: "str" = "openai",
    model: "str" = "gpt-4o",
    window: "TimeWindow" = TimeWindow.SEVEN_DAYS,
    input_tokens: "int" = 1000,
    output_tokens: "int" = 500,
    timestamp: "datetime" = TS,
) -> "UsageRecord":
    return UsageRecord(
        provider=provider,
        model=model,
        window=window,
        input_tokens=input_tokens,
        output_tokens=output_tokens,
        timestamp=timestamp,
    )


def make_cost(
    provider: "str" = "openai",
    model: "str" = "gpt-4o",
    window: "TimeWindow" = TimeWindow.SEVEN_DAYS,
    input_cost: "float" = 0.005,
    output_cost: "float" = 0.0075,
    timestamp: "datetime" = TS,
) -> "CostRecord":
    return CostRecord(
        provider=provider,
        model=model,
        window=window,
        input_cost=input_cost,
        output_cost=output_cost,
        total_cost=input_cost + output_cost,
        timestamp=timestamp,
    )


@pytest.fixture()
def registry() -> "CollectorRegistry":
    """
    fresh Prometheus registry to avoid cross-test state.
    """
    return CollectorRegistry()


@pytest.fixture()
def store(tmp_path: "Path") -> "Iterator[SnapshotStore]":
    """
    snapshot store backed by a throwaway SQLite file.
    """
    s = SnapshotStore(tmp_path / "data" / "snapshots.sqlite")
    yield s
    s.close()
