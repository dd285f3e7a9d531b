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

OPENAI_BASE_URL = "https://api.openai.com/v1"

# daily buckets, 31 covers the longest window
_BUCKET_LIMIT = 31


class OpenAIAdapter:
    """
    OpenAIAdapter implements the ProviderAdapter protocol for the
    OpenAI organization usage API. It pages through the completions
    usage endpoint grouped by model and probes /models to test the
    connection.
    """

    def __init__(self, client: "httpx.AsyncClient | None" = None) -> "None":
        self._client: "httpx.AsyncClient" = client or httpx.AsyncClient(
            timeout=DEFAULT_TIMEOUT
        )

    @property
    def name(self) -> "str":
        return "openai"

    async def close(self) -> "None":
        """
        closes the underlying HTTP client.
        """
        await self._client.aclose()

    @staticmethod
    def _headers(credential: "str", settings: "ProviderSettings") -> "dict[str, str]":
        headers: "dict[str, str]" = {"Authorization": f"Bearer {credential}"}
        if settings.organization_id:
            headers["OpenAI-Organization"] = settings.organization_id
        return headers

    async def fetch_usage(
        self,
        credential: "str",
        settings: "ProviderSettings",
        window: "TimeWindow",
    ) -> "FetchResult":
        """
        fetches completions usage for the window, handling pagination.
        """
        end = datetime.now(timezone.utc)
        start = end - timedelta(hours=window.hours)
        root = api_root(settings.base_url, OPENAI_BASE_URL)
        url = f"{root}/organization/usage/completions"
        headers = self._headers(credential, settings)

        records: "list[UsageRecord]" = []
        skipped = 0
        pages = 0
        next_page = ""

        # loop until the API reports no more pages or
        # the page ceiling is hit
        while pages < MAX_PAGES:
            params: "dict[str, str | int]" = {
                "start_time": int(start.timestamp()),
                "end_time": int(end.timestamp()),
                "bucket_width": "1d",
                "group_by": "model",
                "limit": _BUCKET_LIMIT,
            }
            if next_page:
                params["page"] = next_page

            logger.debug("openai_fetch_usage", url=url, page=next_page or None)
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

            page_records, page_skipped = self._parse_page(data, window, end)
            records.extend(page_records)
            skipped += page_skipped

            next_page = str(data.get("next_page") or "")
            if not data.get("has_more") or not next_page:
                break
        else:
            logger.warning("openai_page_ceiling_reached", pages=pages)

        logger.debug(
            "openai_usage_done",
            record_count=len(records),
            skipped=skipped,
            pages=pages,
        )
        return FetchResult(records=tuple(records), skipped=skipped, pages=pages)

    def _parse_page(
        self,
        data: "dict[str, Any]",
        window: "TimeWindow",
        refresh_end: "datetime",
    ) -> "tuple[list[UsageRecord], int]":
        records: "list[UsageRecord]" = []
        skipped = 0

        items = data.get("data")
        if not isinstance(items, list):
            return records, skipped

        for item in items:
            if not isinstance(item, dict):
                skipped += 1
                continue

            # bucketed payloads nest per-model results under the bucket;
            # flat payloads carry the counts on the item itself
            results = item.get("results")
            rows = results if isinstance(results, list) else [item]
            bucket_ts = parse_timestamp(item, "start_time", "timestamp")

            for row in rows:
                try:
                    records.append(
                        self._parse_row(row, window, bucket_ts, refresh_end)
                    )
                except MalformedRecord as exc:
                    logger.debug("openai_record_skipped", reason=str(exc))
                    skipped += 1

        return records, skipped

    def _parse_row(
        self,
        row: "object",
        window: "TimeWindow",
        bucket_ts: "datetime | None",
        refresh_end: "datetime",
    ) -> "UsageRecord":
        if not isinstance(row, dict):
            raise MalformedRecord("usage row is not an object")

        timestamp = parse_timestamp(row, "start_time", "timestamp") or bucket_ts
        return UsageRecord(
            provider=self.name,
            model=coerce_str(row, "model", "unknown"),
            window=window,
            input_tokens=coerce_tokens(row, "input_tokens"),
            output_tokens=coerce_tokens(row, "output_tokens"),
            cached_tokens=coerce_tokens(row, "input_cached_tokens"),
            timestamp=timestamp or refresh_end,
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
        url = f"{api_root(settings.base_url, OPENAI_BASE_URL)}/models"
        return await probe(
            self._client, self.name, url, self._headers(credential, settings)
        )
