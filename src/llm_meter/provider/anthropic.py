from datetime import datetime, timedelta, timezone
from typing import Any, Sequence

import httpx
import structlog

from llm_meter.errors import FetchError
from llm_meter.models import (
    ConnectionTestResult,
    CostRecord,
    FetchResult,
    ProviderSettings,
    TimeWindow,
    UsageRecord,
)
from llm_meter.pricing import PricingResolver
from llm_meter.provider.base import (
    DEFAULT_TIMEOUT,
    MAX_PAGES,
    MalformedRecord,
    api_root,
    coerce_str,
    coerce_tokens,
    derive_costs,
    parse_timestamp,
    probe,
)

logger = structlog.get_logger()

ANTHROPIC_BASE_URL = "https://api.anthropic.com/v1"
ANTHROPIC_VERSION = "2023-06-01"


class AnthropicAdapter:
    """
    AnthropicAdapter implements the ProviderAdapter protocol for the
    Anthropic admin usage report. The report has been published under
    more than one field naming, so token counts are read from every
    known alias.
    """

    def __init__(self, client: "httpx.AsyncClient | None" = None) -> "None":
        self._client: "httpx.AsyncClient" = client or httpx.AsyncClient(
            timeout=DEFAULT_TIMEOUT
        )

    @property
    def name(self) -> "str":
        return "anthropic"

    async def close(self) -> "None":
        await self._client.aclose()

    @staticmethod
    def _headers(credential: "str") -> "dict[str, str]":
        return {
            "x-api-key": credential,
            "anthropic-version": ANTHROPIC_VERSION,
        }

    async def fetch_usage(
        self,
        credential: "str",
        settings: "ProviderSettings",
        window: "TimeWindow",
    ) -> "FetchResult":
        end = datetime.now(timezone.utc)
        start = end - timedelta(hours=window.hours)
        root = api_root(settings.base_url, ANTHROPIC_BASE_URL)
        url = f"{root}/organizations/usage_report/messages"
        headers = self._headers(credential)

        records: "list[UsageRecord]" = []
        skipped = 0
        pages = 0
        next_page = ""

        while pages < MAX_PAGES:
            params: "dict[str, str | int]" = {
                "starting_at": start.isoformat(timespec="seconds"),
                "ending_at": end.isoformat(timespec="seconds"),
                "bucket_width": "1d",
                "group_by[]": "model",
            }
            if next_page:
                params["page"] = next_page

            logger.debug("anthropic_fetch_usage", url=url, page=next_page or None)
            try:
                resp = await self._client.get(url, params=params, headers=headers)
            except httpx.HTTPError as exc:
                raise FetchError(self.name, f"request failed: {exc}") from exc

            if not resp.is_success:
                raise FetchError(
                    self.name,
                    f"usage request returned HTTP {resp.status_code}",
                    status_code=resp.status_code,
                )

            try:
                data = resp.json()
            except ValueError as exc:
                raise FetchError(self.name, "usage response is not JSON") from exc

            pages += 1
            if not isinstance(data, dict):
                raise FetchError(self.name, "usage response is not a JSON object")

            items = data.get("data")
            for item in items if isinstance(items, list) else []:
                if not isinstance(item, dict):
                    skipped += 1
                    continue

                bucket_ts = parse_timestamp(
                    item, "starting_at", "ending_at", "timestamp"
                )
                results = item.get("results")
                rows = results if isinstance(results, list) else [item]
                for row in rows:
                    try:
                        record = self._parse_row(row, window, bucket_ts or end)
                        records.append(record)
                    except MalformedRecord as exc:
                        logger.debug("anthropic_record_skipped", reason=str(exc))
                        skipped += 1

            next_page = str(data.get("next_page") or "")
            if not data.get("has_more") or not next_page:
                break
        else:
            logger.warning("anthropic_page_ceiling_reached", pages=pages)

        logger.debug(
            "anthropic_usage_done",
            record_count=len(records),
            skipped=skipped,
            pages=pages,
        )
        return FetchResult(records=tuple(records), skipped=skipped, pages=pages)

    def _parse_row(
        self,
        row: "Any",
        window: "TimeWindow",
        fallback_ts: "datetime",
    ) -> "UsageRecord":
        if not isinstance(row, dict):
            raise MalformedRecord("usage row is not an object")

        return UsageRecord(
            provider=self.name,
            model=coerce_str(row, "model", "unknown"),
            window=window,
            input_tokens=coerce_tokens(
                row, "input_tokens", "tokens_in", "uncached_input_tokens"
            ),
            output_tokens=coerce_tokens(row, "output_tokens", "tokens_out"),
            cached_tokens=coerce_tokens(row, "cache_read_input_tokens"),
            timestamp=parse_timestamp(row, "starting_at", "timestamp") or fallback_ts,
        )

    def derive_costs(
        self,
        records: "Sequence[UsageRecord]",
        resolver: "PricingResolver",
    ) -> "list[CostRecord]":
        return derive_costs(records, resolver)

    async def test_connection(
        self,
        credential: "str",
        settings: "ProviderSettings",
    ) -> "ConnectionTestResult":
        url = f"{api_root(settings.base_url, ANTHROPIC_BASE_URL)}/models"
        return await probe(self._client, self.name, url, self._headers(credential))
