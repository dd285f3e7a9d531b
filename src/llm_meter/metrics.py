from prometheus_client import REGISTRY, CollectorRegistry, Counter, Gauge, Histogram

from llm_meter.models import ConnectionTestResult, TimeWindow


class MetricsUpdater:
    """
    applies refresh and connection test outcomes to Prometheus
    collectors. Gauges for records and cost mirror the current
    snapshot of each (provider, window) rather than accumulating.
    """

    def __init__(self, registry: "CollectorRegistry" = REGISTRY) -> "None":
        self._registry: "CollectorRegistry" = registry
        self._refresh_duration: "Histogram" = Histogram(
            "llm_meter_refresh_duration_seconds",
            "Duration of provider refreshes",
            ["provider"],
            registry=registry,
        )
        self._refresh_errors: "Counter" = Counter(
            "llm_meter_refresh_errors_total",
            "Total number of failed or skipped provider refreshes by reason",
            ["provider", "reason"],
            registry=registry,
        )
        self._last_refresh_success: "Gauge" = Gauge(
            "llm_meter_last_refresh_success_timestamp_seconds",
            "Unix timestamp of last successful refresh per provider",
            ["provider"],
            registry=registry,
        )
        self._snapshot_records: "Gauge" = Gauge(
            "llm_meter_snapshot_records",
            "Usage records in the latest snapshot",
            ["provider", "window"],
            registry=registry,
        )
        self._snapshot_cost: "Gauge" = Gauge(
            "llm_meter_snapshot_cost_usd",
            "Derived cost in USD of the latest snapshot",
            ["provider", "window"],
            registry=registry,
        )
        self._skipped_records: "Counter" = Counter(
            "llm_meter_skipped_records_total",
            "Malformed upstream usage records skipped while parsing",
            ["provider"],
            registry=registry,
        )
        self._connection_tests: "Counter" = Counter(
            "llm_meter_connection_tests_total",
            "Completed connection tests by outcome",
            ["provider", "outcome"],
            registry=registry,
        )

    def observe_refresh_duration(
        self, provider: "str", duration_seconds: "float"
    ) -> "None":
        self._refresh_duration.labels(provider=provider).observe(duration_seconds)

    def inc_refresh_error(self, provider: "str", reason: "str") -> "None":
        self._refresh_errors.labels(provider=provider, reason=reason).inc()

    def set_last_refresh_success(self, provider: "str", timestamp: "float") -> "None":
        self._last_refresh_success.labels(provider=provider).set(timestamp)

    def set_snapshot(
        self,
        provider: "str",
        window: "TimeWindow",
        records: "int",
        cost_usd: "float",
        skipped: "int" = 0,
    ) -> "None":
        """
        records the size and cost of the snapshot that was just
        committed for (provider, window).
        """
        labels = {"provider": provider, "window": window.label}
        self._snapshot_records.labels(**labels).set(records)
        self._snapshot_cost.labels(**labels).set(cost_usd)
        if skipped:
            self._skipped_records.labels(provider=provider).inc(skipped)

    def record_connection_test(self, result: "ConnectionTestResult") -> "None":
        self._connection_tests.labels(
            provider=result.provider, outcome=result.outcome.value
        ).inc()
