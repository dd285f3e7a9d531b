import time
from datetime import datetime, timezone
from typing import Any, Protocol, Sequence
from urllib.parse import urlsplit, urlunsplit

import httpx
import structlog

from llm_meter.models import (
    ConnectionOutcome,
    ConnectionTestResult,
    CostRecord,
    FetchResult,
    ProviderSettings,
    TimeWindow,
    UsageRecord,
)
from llm_meter.pricing import PricingResolver

logger = structlog.get_logger()

# hard ceiling on pages per fetch, guards against pagination
# cursors that never terminate
MAX_PAGES = 50

DEFAULT_TIMEOUT = httpx.Timeout(30.0, connect=10.0)

# largest value a SQLite INTEGER column can hold
MAX_TOKEN_COUNT = 2**63 - 1


class MalformedRecord(ValueError):
    """
    raised while parsing a single upstream record that cannot be
    turned into a UsageRecord. Adapters count and skip these.
    """


class ProviderAdapter(Protocol):
    """
    ProviderAdapter is the common protocol every upstream LLM
    provider implements.

    Adapters fetch usage for a time window, price it with a
    PricingResolver and probe connectivity. They return
    provider-agnostic records and never raise for a single
    malformed upstream record.
    """

    @property
    def name(self) -> "str": ...

    async def fetch_usage(
        self,
        credential: "str",
        settings: "ProviderSettings",
        window: "TimeWindow",
    ) -> "FetchResult": ...

    def derive_costs(
        self,
        records: "Sequence[UsageRecord]",
        resolver: "PricingResolver",
    ) -> "list[CostRecord]": ...

    async def test_connection(
        self,
        credential: "str",
        settings: "ProviderSettings",
    ) -> "ConnectionTestResult": ...

    async def close(self) -> "None": ...


def derive_costs(
    records: "Sequence[UsageRecord]",
    resolver: "PricingResolver",
) -> "list[CostRecord]":
    """
    prices each usage record, one CostRecord per UsageRecord.
    """
    costs: "list[CostRecord]" = []
    for record in records:
        rule = resolver.resolve(record.provider, record.model)
        input_cost = record.input_tokens / 1_000_000 * rule.input_per_1m
        output_cost = record.output_tokens / 1_000_000 * rule.output_per_1m
        costs.append(
            CostRecord(
                provider=record.provider,
                model=record.model,
                window=record.window,
                input_cost=input_cost,
                output_cost=output_cost,
                total_cost=input_cost + output_cost,
                timestamp=record.timestamp,
            )
        )
    return costs


def coerce_tokens(item: "dict[str, Any]", *keys: "str") -> "int":
    """
    returns the first present token count among keys. Missing or
    null values count as zero; values that are not numbers make
    the whole record malformed.
    """
    for key in keys:
        value = item.get(key)
        if value is None:
            continue
        # bool is an int subclass but never a token count
        if isinstance(value, bool):
            raise MalformedRecord(f"{key} is not a number")
        if isinstance(value, int):
            count = value
        elif isinstance(value, float) and value.is_integer():
            count = int(value)
        elif isinstance(value, str) and value.strip().isdigit():
            count = int(value.strip())
        else:
            raise MalformedRecord(f"{key} is not a number: {value!r}")
        if count > MAX_TOKEN_COUNT:
            raise MalformedRecord(f"{key} is out of range: {count}")
        return max(count, 0)
    return 0


def coerce_str(item: "dict[str, Any]", key: "str", default: "str" = "") -> "str":
    value = item.get(key)
    if value is None:
        return default
    text = str(value).strip()
    return text or default


def parse_timestamp(item: "dict[str, Any]", *keys: "str") -> "datetime | None":
    """
    reads the first parseable timestamp among keys. Accepts unix
    seconds or RFC 3339 strings, always returns an aware UTC datetime.
    """
    for key in keys:
        value = item.get(key)
        if value is None or isinstance(value, bool):
            continue

        if isinstance(value, (int, float)):
            try:
                return datetime.fromtimestamp(value, tz=timezone.utc)
            except (OverflowError, OSError, ValueError):
                continue

        if isinstance(value, str):
            raw = value.strip()
            if raw.endswith("Z"):
                raw = raw[:-1] + "+00:00"
            try:
                parsed = datetime.fromisoformat(raw)
            except ValueError:
                continue
            if parsed.tzinfo is None:
                parsed = parsed.replace(tzinfo=timezone.utc)
            return parsed.astimezone(timezone.utc)

    return None


def api_root(base_url: "str | None", default: "str") -> "str":
    """
    normalizes a configured base URL into an API root. A bare host
    gets '/v1' appended, trailing slashes are dropped.
    """
    if not base_url:
        return default

    parts = urlsplit(base_url.strip())
    path = parts.path.rstrip("/")
    if not path:
        path = "/v1"
    return urlunsplit((parts.scheme, parts.netloc, path, "", ""))


def connection_result(
    provider: "str",
    started: "float",
    status_code: "int | None" = None,
    error: "str | None" = None,
) -> "ConnectionTestResult":
    """
    classifies a connection probe into a ConnectionTestResult.
    started is a time.monotonic() reading taken before the call.
    """
    duration = time.monotonic() - started
    now = datetime.now(timezone.utc)
    label = provider.capitalize() if provider != "openai" else "OpenAI"

    if error is not None:
        detail = error
    elif status_code is not None and 200 <= status_code < 300:
        return ConnectionTestResult(
            provider=provider,
            timestamp=now,
            outcome=ConnectionOutcome.SUCCESS,
            duration=duration,
            http_status=status_code,
            detail="Provider responded to connection test request.",
        )
    elif status_code in (401, 403):
        detail = f"{label} rejected credentials (unauthorized)."
    else:
        detail = f"{label} connection failed with HTTP status {status_code}."

    return ConnectionTestResult(
        provider=provider,
        timestamp=now,
        outcome=ConnectionOutcome.FAILURE,
        duration=duration,
        http_status=status_code,
        detail=detail,
    )


async def probe(
    client: "httpx.AsyncClient",
    provider: "str",
    url: "str",
    headers: "dict[str, str]",
) -> "ConnectionTestResult":
    """
    issues one authenticated GET and classifies the response.
    Transport errors become failed results, never exceptions.
    """
    started = time.monotonic()
    try:
        resp = await client.get(url, headers=headers)
    except httpx.HTTPError as exc:
        logger.warning("connection_probe_error", provider=provider, error=str(exc))
        return connection_result(
            provider, started, error=f"{type(exc).__name__}: {exc}"
        )

    return connection_result(provider, started, status_code=resp.status_code)
