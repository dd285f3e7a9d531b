import asyncio
import time
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from typing import AsyncIterator, Iterable, Mapping

import structlog
from prometheus_client import CollectorRegistry

from llm_meter.config import Config, ProviderRegistry, normalize_provider_name
from llm_meter.coordinator import ConnectionTestCoordinator
from llm_meter.credentials import CredentialStore
from llm_meter.errors import MeterError, UnsupportedProviderError
from llm_meter.metrics import MetricsUpdater
from llm_meter.models import (
    ConnectionTestResult,
    DashboardSummary,
    OutcomeStatus,
    ProviderOutcome,
    RefreshReport,
    TimeWindow,
)
from llm_meter.pricing import PricingResolver
from llm_meter.provider.base import ProviderAdapter
from llm_meter.provider.registry import build_adapters, supported_providers
from llm_meter.storage import SnapshotStore

logger = structlog.get_logger()


class MeterService:
    """
    MeterService orchestrates refresh cycles. For every enabled
    provider it resolves a credential, fetches usage for the window,
    prices it and replaces the stored snapshot for (provider, window).
    Providers are refreshed concurrently and in isolation: one
    provider failing never aborts the others.
    """

    def __init__(
        self,
        config: "Config",
        adapters: "Mapping[str, ProviderAdapter]",
        store: "SnapshotStore",
        credentials: "CredentialStore",
        metrics: "MetricsUpdater",
        pricing: "PricingResolver | None" = None,
        coordinator: "ConnectionTestCoordinator | None" = None,
    ) -> "None":
        self._config = config
        self._adapters = adapters
        self._store = store
        self._credentials = credentials
        self._metrics = metrics
        # overrides are read once; the resolver is never mutated afterwards
        self._pricing = pricing or PricingResolver(config.pricing_overrides)
        self.coordinator = coordinator or ConnectionTestCoordinator(
            adapters, metrics, log_capacity=config.test_log_capacity
        )
        self.registry = ProviderRegistry(config, self.coordinator)
        self._stop_event: "asyncio.Event" = asyncio.Event()

    async def refresh(
        self,
        window: "TimeWindow | str",
        providers: "Iterable[str] | None" = None,
    ) -> "RefreshReport":
        """
        runs one refresh cycle. An unsupported window is rejected
        before anything is fetched or written.
        """
        window = TimeWindow.parse(window)
        fetched_at = datetime.now(timezone.utc)
        report = RefreshReport(window=window, fetched_at=fetched_at)

        if providers is None:
            requested = self.registry.enabled()
        else:
            requested = []
            for name in providers:
                name = normalize_provider_name(name)
                if name not in requested:
                    requested.append(name)

        targets: "list[str]" = []
        for name in requested:
            if self.registry.is_enabled(name):
                targets.append(name)
                continue
            report.outcomes.append(
                ProviderOutcome(
                    provider=name,
                    status=OutcomeStatus.SKIPPED,
                    reason="disabled",
                    message=f"Provider '{name}' is not enabled.",
                )
            )

        logger.info(
            "refresh_cycle_start",
            window=window.label,
            providers=targets,
        )

        outcomes = await asyncio.gather(
            *(self._refresh_provider(name, window) for name in targets)
        )
        report.outcomes.extend(outcomes)

        logger.info(
            "refresh_cycle_end",
            window=window.label,
            succeeded=report.succeeded,
            failed=[o.provider for o in report.failed],
            records_written=report.records_written,
        )
        return report

    async def _refresh_provider(
        self,
        provider: "str",
        window: "TimeWindow",
    ) -> "ProviderOutcome":
        started = time.monotonic()

        try:
            outcome = await self._fetch_and_store(provider, window)
        except MeterError as exc:
            status = (
                OutcomeStatus.SKIPPED
                if exc.reason == "no_credential"
                else OutcomeStatus.FAILED
            )
            logger.warning(
                "refresh_provider_error",
                provider=provider,
                reason=exc.reason,
                error=str(exc),
            )
            outcome = ProviderOutcome(
                provider=provider,
                status=status,
                reason=exc.reason,
                message=str(exc),
            )
        except Exception as exc:
            logger.exception("refresh_provider_unexpected_error", provider=provider)
            outcome = ProviderOutcome(
                provider=provider,
                status=OutcomeStatus.FAILED,
                reason="unexpected",
                message=f"{type(exc).__name__}: {exc}",
            )

        self._metrics.observe_refresh_duration(provider, time.monotonic() - started)
        if outcome.status is OutcomeStatus.OK:
            self._metrics.set_last_refresh_success(provider, time.time())
        else:
            self._metrics.inc_refresh_error(provider, outcome.reason)

        return outcome

    async def _fetch_and_store(
        self,
        provider: "str",
        window: "TimeWindow",
    ) -> "ProviderOutcome":
        adapter = self._adapters.get(provider)
        if adapter is None:
            raise UnsupportedProviderError(provider)

        # keyring backends may block on OS services
        credential = await asyncio.to_thread(self._credentials.get_api_key, provider)
        settings = self._config.settings_for(provider)

        fetched = await adapter.fetch_usage(credential, settings, window)
        costs = adapter.derive_costs(fetched.records, self._pricing)

        await asyncio.to_thread(
            self._store.replace, provider, window, fetched.records, costs
        )

        total_cost = sum(c.total_cost for c in costs)
        self._metrics.set_snapshot(
            provider, window, len(fetched.records), total_cost, fetched.skipped
        )
        logger.info(
            "refresh_provider_done",
            provider=provider,
            window=window.label,
            records=len(fetched.records),
            skipped=fetched.skipped,
            pages=fetched.pages,
            total_cost=round(total_cost, 6),
        )
        return ProviderOutcome(
            provider=provider,
            status=OutcomeStatus.OK,
            records_written=len(costs),
            skipped_records=fetched.skipped,
        )

    async def test_provider(
        self,
        provider: "str",
        credential: "str | None" = None,
    ) -> "ConnectionTestResult | None":
        """
        runs a connection test for a provider and waits for it.
        Without an explicit credential the stored one is used.
        """
        provider = normalize_provider_name(provider)
        if credential is None:
            credential = await asyncio.to_thread(
                self._credentials.get_api_key, provider
            )

        self.coordinator.trigger_test(
            provider, credential, self._config.settings_for(provider)
        )
        return await self.coordinator.wait_for(provider)

    def summary(self, window: "TimeWindow | str") -> "DashboardSummary":
        return self._store.summary(TimeWindow.parse(window))

    def stop(self) -> "None":
        """
        signals the run loop to stop after the current cycle.
        """
        self._stop_event.set()

    async def run(
        self,
        window: "TimeWindow | str" = TimeWindow.SEVEN_DAYS,
        interval_seconds: "int | None" = None,
    ) -> "None":
        """
        refreshes the enabled providers every interval until stop()
        is called.
        """
        window = TimeWindow.parse(window)
        interval = interval_seconds or self._config.refresh_seconds

        while not self._stop_event.is_set():
            await self.refresh(window)
            try:
                await asyncio.wait_for(self._stop_event.wait(), timeout=interval)
            except TimeoutError:
                pass

    async def close(self) -> "None":
        """
        stops pending connection tests and closes provider sessions.
        """
        await self.coordinator.close()
        for adapter in self._adapters.values():
            await adapter.close()


@asynccontextmanager
async def open_service(
    config: "Config",
    metrics: "MetricsUpdater | None" = None,
) -> "AsyncIterator[MeterService]":
    """
    builds a MeterService with real adapters, the on-disk snapshot
    store and the keyring-backed credential store, and tears it all
    down on exit. Without explicit metrics a private registry is used.
    """
    store = SnapshotStore(config.db_path)
    service = MeterService(
        config=config,
        adapters=build_adapters(supported_providers()),
        store=store,
        credentials=CredentialStore(),
        metrics=metrics or MetricsUpdater(registry=CollectorRegistry()),
    )
    try:
        yield service
    finally:
        await service.close()
        store.close()
