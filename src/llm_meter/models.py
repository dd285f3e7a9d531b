import enum
from dataclasses import dataclass, field
from datetime import datetime

from llm_meter.errors import UnsupportedWindowError


class TimeWindow(enum.Enum):
    """
    TimeWindow is the closed set of lookback periods a refresh
    can target. The value is the label used on the command line
    and in the database.
    """

    ONE_DAY = "1d"
    SEVEN_DAYS = "7d"
    THIRTY_DAYS = "30d"

    @property
    def label(self) -> "str":
        return self.value

    @property
    def hours(self) -> "int":
        return _WINDOW_HOURS[self]

    @classmethod
    def parse(cls, text: "str | TimeWindow") -> "TimeWindow":
        """
        parses a window label such as '7d'. Anything outside the
        supported set raises UnsupportedWindowError.
        """
        if isinstance(text, TimeWindow):
            return text

        normalized = str(text).strip().lower()
        for window in cls:
            if window.value == normalized:
                return window

        raise UnsupportedWindowError(text)


_WINDOW_HOURS: "dict[TimeWindow, int]" = {
    TimeWindow.ONE_DAY: 24,
    TimeWindow.SEVEN_DAYS: 24 * 7,
    TimeWindow.THIRTY_DAYS: 24 * 30,
}


@dataclass(frozen=True, slots=True)
class UsageRecord:
    """
    UsageRecord represents token usage for one model over
    one provider bucket inside a refresh window.
    """

    provider: "str"
    model: "str"
    window: "TimeWindow"
    input_tokens: "int"
    output_tokens: "int"
    # bucket start, UTC
    timestamp: "datetime"
    cached_tokens: "int" = 0


@dataclass(frozen=True, slots=True)
class CostRecord:
    """
    CostRecord is the priced counterpart of exactly one UsageRecord.
    """

    provider: "str"
    model: "str"
    window: "TimeWindow"
    input_cost: "float"
    output_cost: "float"
    total_cost: "float"
    timestamp: "datetime"
    currency: "str" = "USD"


@dataclass(frozen=True, slots=True)
class PricingRule:
    provider: "str"
    # exact model id or a prefix of it
    model_pattern: "str"
    input_per_1m: "float"
    output_per_1m: "float"


@dataclass(slots=True)
class ProviderSettings:
    base_url: "str | None" = None
    organization_id: "str | None" = None


@dataclass(slots=True)
class ProviderConfig:
    name: "str"
    settings: "ProviderSettings" = field(default_factory=ProviderSettings)
    enabled: "bool" = False


class ConnectionOutcome(enum.Enum):
    SUCCESS = "success"
    FAILURE = "failure"


@dataclass(frozen=True, slots=True)
class ConnectionTestResult:
    """
    ConnectionTestResult is the outcome of a single authenticated
    probe against a provider.
    """

    provider: "str"
    timestamp: "datetime"
    outcome: "ConnectionOutcome"
    # seconds
    duration: "float"
    http_status: "int | None" = None
    detail: "str | None" = None

    @property
    def succeeded(self) -> "bool":
        return self.outcome is ConnectionOutcome.SUCCESS


@dataclass(frozen=True, slots=True)
class FetchResult:
    """
    FetchResult carries the usage records parsed from one fetch,
    along with how many upstream records were malformed and skipped.
    """

    records: "tuple[UsageRecord, ...]" = ()
    skipped: "int" = 0
    pages: "int" = 0


class OutcomeStatus(enum.Enum):
    OK = "ok"
    SKIPPED = "skipped"
    FAILED = "failed"


@dataclass(frozen=True, slots=True)
class ProviderOutcome:
    provider: "str"
    status: "OutcomeStatus"
    # short machine-readable reason, e.g. "no_credential"
    reason: "str" = ""
    message: "str" = ""
    records_written: "int" = 0
    skipped_records: "int" = 0


@dataclass(slots=True)
class RefreshReport:
    """
    RefreshReport aggregates the per-provider outcomes of
    one refresh cycle.
    """

    window: "TimeWindow"
    fetched_at: "datetime"
    outcomes: "list[ProviderOutcome]" = field(default_factory=list)

    @property
    def succeeded(self) -> "list[str]":
        return [o.provider for o in self.outcomes if o.status is OutcomeStatus.OK]

    @property
    def failed(self) -> "list[ProviderOutcome]":
        return [o for o in self.outcomes if o.status is not OutcomeStatus.OK]

    @property
    def records_written(self) -> "int":
        return sum(o.records_written for o in self.outcomes)

    @property
    def skipped_records(self) -> "int":
        return sum(o.skipped_records for o in self.outcomes)


@dataclass(frozen=True, slots=True)
class DashboardSummary:
    window: "TimeWindow"
    total_tokens: "int"
    total_cost: "float"
    # (provider, cost) ordered by cost desc
    by_provider: "list[tuple[str, float]]"
    # top models, (model, cost) ordered by cost desc
    by_model: "list[tuple[str, float]]"
