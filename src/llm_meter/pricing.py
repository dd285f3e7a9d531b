from typing import Iterable, Sequence

import structlog

from llm_meter.models import PricingRule

logger = structlog.get_logger()

# built-in per-model defaults, USD per million tokens
BUILTIN_PRICING: "tuple[PricingRule, ...]" = (
    PricingRule("openai", "gpt-4o", 5.0, 15.0),
    PricingRule("openai", "gpt-4o-mini", 0.15, 0.60),
    PricingRule("openai", "gpt-4.1", 2.0, 8.0),
    PricingRule("openai", "gpt-4.1-mini", 0.40, 1.60),
    PricingRule("openai", "o3-mini", 1.10, 4.40),
    PricingRule("anthropic", "claude-3-5-sonnet", 3.0, 15.0),
    PricingRule("anthropic", "claude-3-5-haiku", 0.80, 4.0),
    PricingRule("anthropic", "claude-3-opus", 15.0, 75.0),
    PricingRule("anthropic", "claude-sonnet-4", 3.0, 15.0),
    PricingRule("anthropic", "claude-opus-4", 15.0, 75.0),
)

# used when a known provider reports a model with no default
PROVIDER_FALLBACK: "dict[str, PricingRule]" = {
    "openai": PricingRule("openai", "*", 5.0, 15.0),
    "anthropic": PricingRule("anthropic", "*", 3.0, 15.0),
}


def _best_match(
    rules: "Iterable[PricingRule]",
    model: "str",
    longest_prefix: "bool",
) -> "PricingRule | None":
    """
    picks the rule for a model: an exact pattern match always wins,
    otherwise a prefix match. With longest_prefix the most specific
    prefix wins; without it the first matching rule wins.
    """
    prefix_match: "PricingRule | None" = None

    for rule in rules:
        if rule.model_pattern == model:
            return rule

        if rule.model_pattern and model.startswith(rule.model_pattern):
            if prefix_match is None:
                prefix_match = rule
            elif longest_prefix and len(rule.model_pattern) > len(
                prefix_match.model_pattern
            ):
                prefix_match = rule

    return prefix_match


class PricingResolver:
    """
    PricingResolver maps (provider, model) to a PricingRule.

    Configured overrides are consulted first, in the order they were
    defined, then built-in model defaults, then the provider fallback.
    Resolution never fails: a provider without any built-in pricing
    resolves to a zero-priced rule.
    """

    def __init__(
        self,
        overrides: "Sequence[PricingRule]" = (),
        builtins: "Sequence[PricingRule]" = BUILTIN_PRICING,
        fallbacks: "dict[str, PricingRule] | None" = None,
    ) -> "None":
        self._overrides: "tuple[PricingRule, ...]" = tuple(
            PricingRule(
                provider=o.provider.strip().lower(),
                model_pattern=o.model_pattern,
                input_per_1m=o.input_per_1m,
                output_per_1m=o.output_per_1m,
            )
            for o in overrides
        )
        self._builtins: "tuple[PricingRule, ...]" = tuple(builtins)
        self._fallbacks: "dict[str, PricingRule]" = dict(
            PROVIDER_FALLBACK if fallbacks is None else fallbacks
        )

    @property
    def overrides(self) -> "tuple[PricingRule, ...]":
        return self._overrides

    def resolve(self, provider: "str", model: "str") -> "PricingRule":
        provider = provider.strip().lower()

        override = _best_match(
            (o for o in self._overrides if o.provider == provider),
            model,
            longest_prefix=False,
        )
        if override is not None:
            return override

        builtin = _best_match(
            (b for b in self._builtins if b.provider == provider),
            model,
            longest_prefix=True,
        )
        if builtin is not None:
            return builtin

        fallback = self._fallbacks.get(provider)
        if fallback is not None:
            return fallback

        logger.debug("pricing_unknown_provider", provider=provider, model=model)
        return PricingRule(provider, "*", 0.0, 0.0)
