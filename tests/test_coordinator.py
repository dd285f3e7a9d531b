import asyncio
from datetime import datetime, timedelta, timezone

import pytest
from prometheus_client import CollectorRegistry

from llm_meter.coordinator import (
    ConnectionLog,
    ConnectionLogEntry,
    ConnectionTestCoordinator,
    ConnectionTestState,
)
from llm_meter.errors import UnsupportedProviderError
from llm_meter.metrics import MetricsUpdater
from llm_meter.models import (
    ConnectionOutcome,
    ConnectionTestResult,
    FetchResult,
    ProviderSettings,
)


def _result(
    outcome: "ConnectionOutcome" = ConnectionOutcome.SUCCESS,
    detail: "str | None" = None,
) -> "ConnectionTestResult":
    return ConnectionTestResult(
        provider="mock",
        timestamp=datetime.now(timezone.utc),
        outcome=outcome,
        duration=0.01,
        http_status=200 if outcome is ConnectionOutcome.SUCCESS else 401,
        detail=detail,
    )


class GatedAdapter:
    """
    A mock adapter whose connection test blocks until released.
    """

    def __init__(self, *outcomes: "ConnectionOutcome") -> "None":
        self.release = asyncio.Event()
        self.calls = 0
        self._outcomes = list(outcomes) or [ConnectionOutcome.SUCCESS]

    @property
    def name(self) -> "str":
        return "mock"

    async def fetch_usage(self, credential, settings, window) -> "FetchResult":
        return FetchResult()

    def derive_costs(self, records, resolver) -> "list":
        return []

    async def test_connection(
        self,
        credential: "str",
        settings: "ProviderSettings",
    ) -> "ConnectionTestResult":
        self.calls += 1
        await self.release.wait()
        outcome = self._outcomes[min(self.calls, len(self._outcomes)) - 1]
        return _result(outcome)

    async def close(self) -> "None":
        pass


class ExplodingAdapter(GatedAdapter):
    async def test_connection(
        self,
        credential: "str",
        settings: "ProviderSettings",
    ) -> "ConnectionTestResult":
        raise RuntimeError("socket exploded")


class TestConnectionLog:
    def test_evicts_oldest_when_full(self) -> "None":
        log = ConnectionLog(capacity=100)
        base = datetime(2026, 1, 1, tzinfo=timezone.utc)
        for i in range(101):
            log.append(
                ConnectionLogEntry(
                    timestamp=base + timedelta(seconds=i),
                    level="info",
                    event="test_succeeded",
                    detail=f"entry {i}",
                )
            )

        entries = log.entries()
        assert len(entries) == 100
        assert entries[0].detail == "entry 1"
        assert entries[-1].detail == "entry 100"

    def test_rejects_zero_capacity(self) -> "None":
        with pytest.raises(ValueError):
            ConnectionLog(capacity=0)

    def test_entry_from_failed_result(self) -> "None":
        entry = ConnectionLogEntry.from_result(
            _result(ConnectionOutcome.FAILURE, detail="nope")
        )
        assert entry.level == "error"
        assert entry.event == "test_failed"
        assert entry.detail == "nope"
        assert entry.http_status == 401


class TestConnectionTestCoordinator:
    @pytest.mark.asyncio
    async def test_success_moves_to_succeeded(self) -> "None":
        adapter = GatedAdapter()
        coordinator = ConnectionTestCoordinator({"mock": adapter})

        assert coordinator.state("mock") is ConnectionTestState.IDLE
        assert coordinator.trigger_test("mock", "key") is True
        assert coordinator.state("mock") is ConnectionTestState.RUNNING

        adapter.release.set()
        result = await coordinator.wait_for("mock")

        assert result is not None and result.succeeded
        assert coordinator.state("mock") is ConnectionTestState.SUCCEEDED
        assert coordinator.is_verified("mock")
        assert [e.event for e in coordinator.log("mock")] == ["test_succeeded"]
        await coordinator.close()

    @pytest.mark.asyncio
    async def test_second_trigger_while_running_is_noop(self) -> "None":
        adapter = GatedAdapter()
        coordinator = ConnectionTestCoordinator({"mock": adapter})

        assert coordinator.trigger_test("mock", "key") is True
        assert coordinator.trigger_test("mock", "key") is False

        adapter.release.set()
        await coordinator.wait_for("mock")

        assert adapter.calls == 1
        assert len(coordinator.log("mock")) == 1
        await coordinator.close()

    @pytest.mark.asyncio
    async def test_retrigger_after_completion(self) -> "None":
        adapter = GatedAdapter(ConnectionOutcome.SUCCESS, ConnectionOutcome.FAILURE)
        adapter.release.set()
        coordinator = ConnectionTestCoordinator({"mock": adapter})

        coordinator.trigger_test("mock", "key")
        await coordinator.wait_for("mock")
        assert coordinator.trigger_test("mock", "key") is True
        result = await coordinator.wait_for("mock")

        assert result is not None and not result.succeeded
        assert coordinator.state("mock") is ConnectionTestState.FAILED
        assert not coordinator.is_verified("mock")
        assert [e.event for e in coordinator.log("mock")] == [
            "test_succeeded",
            "test_failed",
        ]
        await coordinator.close()

    @pytest.mark.asyncio
    async def test_adapter_exception_becomes_failure(self) -> "None":
        coordinator = ConnectionTestCoordinator({"mock": ExplodingAdapter()})

        coordinator.trigger_test("mock", "key")
        result = await coordinator.wait_for("mock")

        assert result is not None
        assert result.outcome is ConnectionOutcome.FAILURE
        assert result.detail == "Background test task failed: socket exploded"
        assert coordinator.state("mock") is ConnectionTestState.FAILED
        await coordinator.close()

    @pytest.mark.asyncio
    async def test_late_result_is_recorded(self) -> "None":
        adapter = GatedAdapter()
        coordinator = ConnectionTestCoordinator({"mock": adapter})
        coordinator.trigger_test("mock", "key")

        # the observer gives up before the test finishes
        with pytest.raises(asyncio.TimeoutError):
            await asyncio.wait_for(coordinator.wait_for("mock"), timeout=0.01)

        adapter.release.set()
        for _ in range(100):
            if coordinator.state("mock") is not ConnectionTestState.RUNNING:
                break
            await asyncio.sleep(0.01)

        assert coordinator.state("mock") is ConnectionTestState.SUCCEEDED
        assert coordinator.latest("mock") is not None
        await coordinator.close()

    @pytest.mark.asyncio
    async def test_clear_log_keeps_latest(self) -> "None":
        adapter = GatedAdapter()
        adapter.release.set()
        coordinator = ConnectionTestCoordinator({"mock": adapter})
        coordinator.trigger_test("mock", "key")
        await coordinator.wait_for("mock")

        coordinator.clear_log("mock")

        assert coordinator.log("mock") == []
        assert coordinator.is_verified("mock")
        await coordinator.close()

    @pytest.mark.asyncio
    async def test_log_capacity_is_bounded(self) -> "None":
        adapter = GatedAdapter()
        adapter.release.set()
        coordinator = ConnectionTestCoordinator({"mock": adapter}, log_capacity=2)

        for _ in range(3):
            coordinator.trigger_test("mock", "key")
            await coordinator.wait_for("mock")

        assert len(coordinator.log("mock")) == 2
        await coordinator.close()

    @pytest.mark.asyncio
    async def test_unknown_provider_rejected(self) -> "None":
        coordinator = ConnectionTestCoordinator({})
        with pytest.raises(UnsupportedProviderError):
            coordinator.trigger_test("nope", "key")

    @pytest.mark.asyncio
    async def test_records_metrics(self, registry: "CollectorRegistry") -> "None":
        adapter = GatedAdapter()
        adapter.release.set()
        coordinator = ConnectionTestCoordinator(
            {"mock": adapter}, metrics=MetricsUpdater(registry=registry)
        )
        coordinator.trigger_test("mock", "key")
        await coordinator.wait_for("mock")

        value = registry.get_sample_value(
            "llm_meter_connection_tests_total",
            {"provider": "mock", "outcome": "success"},
        )
        assert value == 1.0
        await coordinator.close()

    @pytest.mark.asyncio
    async def test_close_resets_running_tests(self) -> "None":
        coordinator = ConnectionTestCoordinator({"mock": GatedAdapter()})
        coordinator.trigger_test("mock", "key")

        await coordinator.close()

        assert coordinator.state("mock") is ConnectionTestState.IDLE
        assert coordinator.latest("mock") is None
