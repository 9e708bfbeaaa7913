"""Cost estimation from per-model token pricing tables."""

import math
from dataclasses import dataclass, field

from semcache.domain.models import CacheEntry, CostCalculation, TokenUsage


@dataclass(frozen=True)
class ModelPricing:
    """USD per million tokens."""

    input_price: float = field(default=0.0)
    output_price: float = field(default=0.0)


MODEL_PRICING = {
    "gpt-4o": ModelPricing(input_price=2.50, output_price=10.00),
    "gpt-4o-mini": ModelPricing(input_price=0.15, output_price=0.60),
    "gpt-4-turbo": ModelPricing(input_price=10.00, output_price=30.00),
    "gpt-4": ModelPricing(input_price=30.00, output_price=60.00),
    "gpt-3.5-turbo": ModelPricing(input_price=0.50, output_price=1.50),
    "o1": ModelPricing(input_price=15.00, output_price=60.00),
    "o1-mini": ModelPricing(input_price=3.00, output_price=12.00),
    "claude-3-5-sonnet": ModelPricing(input_price=3.00, output_price=15.00),
    "claude-3-5-haiku": ModelPricing(input_price=0.80, output_price=4.00),
    "claude-3-opus": ModelPricing(input_price=15.00, output_price=75.00),
    "claude-sonnet-4": ModelPricing(input_price=3.00, output_price=15.00),
    "claude-opus-4": ModelPricing(input_price=15.00, output_price=75.00),
    "claude-haiku-4": ModelPricing(input_price=1.00, output_price=5.00),
    "gemini-1.5-pro": ModelPricing(input_price=1.25, output_price=5.00),
    "gemini-1.5-flash": ModelPricing(input_price=0.075, output_price=0.30),
    "gemini-2.0-flash": ModelPricing(input_price=0.10, output_price=0.40),
}

# Unknown models still save something on a hit
DEFAULT_PRICING = ModelPricing(input_price=1.00, output_price=2.00)

CHARS_PER_TOKEN = 4


def estimate_tokens(text: str) -> int:
    """Rough token count for text whose usage the provider did not report."""
    return max(1, math.ceil(len(text) / CHARS_PER_TOKEN))


def pricing_for(model: str) -> ModelPricing:
    """Exact model first, then the longest family prefix (dated model ids)."""
    if model in MODEL_PRICING:
        return MODEL_PRICING[model]
    candidates = [name for name in MODEL_PRICING if model.startswith(name)]
    if candidates:
        return MODEL_PRICING[max(candidates, key=len)]
    return DEFAULT_PRICING


class CostTracker:
    """Prices token usage for a model."""

    def calculate(self, usage: TokenUsage) -> CostCalculation:
        pricing = pricing_for(usage.model)
        prompt_cost = (usage.prompt_tokens / 1_000_000) * pricing.input_price
        completion_cost = (usage.completion_tokens / 1_000_000) * pricing.output_price
        return CostCalculation(prompt_cost=prompt_cost, completion_cost=completion_cost, usage=usage)

    def saved_by_hit(self, entry: CacheEntry) -> float:
        """Estimated cost of the provider call a hit on this entry avoided. Always > 0."""
        usage = TokenUsage(
            prompt_tokens=entry.prompt_tokens or estimate_tokens(entry.prompt),
            completion_tokens=entry.completion_tokens or estimate_tokens(entry.response),
            model=entry.target_model,
            provider=entry.provider,
        )
        return self.calculate(usage).total_cost
