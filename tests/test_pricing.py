from datetime import datetime, timezone

import pytest

from llm_meter.models import PricingRule, TimeWindow, UsageRecord
from llm_meter.pricing import PricingResolver
from llm_meter.provider.base import derive_costs


class TestPricingResolver:
    def test_exact_builtin_match(self) -> "None":
        rule = PricingResolver().resolve("openai", "gpt-4o")
        assert (rule.input_per_1m, rule.output_per_1m) == (5.0, 15.0)

    def test_longest_builtin_prefix_wins(self) -> "None":
        rule = PricingResolver().resolve("openai", "gpt-4o-mini-2024-07-18")
        assert rule.model_pattern == "gpt-4o-mini"
        assert rule.input_per_1m == 0.15

    def test_override_takes_precedence_over_builtin(self) -> "None":
        resolver = PricingResolver(
            overrides=[PricingRule("openai", "gpt-4o", 1.0, 2.0)]
        )
        rule = resolver.resolve("openai", "gpt-4o")
        assert (rule.input_per_1m, rule.output_per_1m) == (1.0, 2.0)

    def test_exact_override_beats_prefix_override(self) -> "None":
        resolver = PricingResolver(
            overrides=[
                PricingRule("openai", "gpt-4", 9.0, 9.0),
                PricingRule("openai", "gpt-4o", 1.0, 1.0),
            ]
        )
        assert resolver.resolve("openai", "gpt-4o").input_per_1m == 1.0
        assert resolver.resolve("openai", "gpt-4-turbo").input_per_1m == 9.0

    def test_first_defined_prefix_override_wins(self) -> "None":
        resolver = PricingResolver(
            overrides=[
                PricingRule("openai", "gpt", 2.0, 2.0),
                PricingRule("openai", "gpt-4o", 3.0, 3.0),
            ]
        )
        assert resolver.resolve("openai", "gpt-4o-2024").input_per_1m == 2.0

    def test_override_provider_names_are_normalized(self) -> "None":
        resolver = PricingResolver(
            overrides=[PricingRule(" OpenAI ", "gpt-4o", 1.0, 1.0)]
        )
        assert resolver.overrides[0].provider == "openai"
        assert resolver.resolve("openai", "gpt-4o").input_per_1m == 1.0

    def test_unknown_model_uses_provider_fallback(self) -> "None":
        rule = PricingResolver().resolve("anthropic", "claude-next")
        assert rule.model_pattern == "*"
        assert (rule.input_per_1m, rule.output_per_1m) == (3.0, 15.0)

    @pytest.mark.parametrize("provider", ["mistral", "", "local-llm"])
    def test_resolution_never_fails(self, provider: "str") -> "None":
        rule = PricingResolver().resolve(provider, "whatever")
        assert rule.input_per_1m == 0.0
        assert rule.output_per_1m == 0.0


class TestDeriveCosts:
    def test_one_cost_per_usage_record(self) -> "None":
        ts = datetime(2026, 1, 5, tzinfo=timezone.utc)
        records = [
            UsageRecord("openai", "gpt-4o", TimeWindow.SEVEN_DAYS, 1_000_000, 0, ts),
            UsageRecord("openai", "gpt-4o", TimeWindow.SEVEN_DAYS, 0, 2_000_000, ts),
            UsageRecord("openai", "gpt-4o-mini", TimeWindow.SEVEN_DAYS, 0, 0, ts),
        ]

        costs = derive_costs(records, PricingResolver())

        assert len(costs) == 3
        assert costs[0].input_cost == pytest.approx(5.0)
        assert costs[0].output_cost == 0.0
        assert costs[1].total_cost == pytest.approx(30.0)
        assert costs[2].total_cost == 0.0
        for usage, cost in zip(records, costs):
            assert (cost.provider, cost.model, cost.window) == (
                usage.provider,
                usage.model,
                usage.window,
            )
            assert cost.timestamp == usage.timestamp
            assert cost.currency == "USD"
            assert cost.total_cost == cost.input_cost + cost.output_cost
