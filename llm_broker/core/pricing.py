"""
Remote model pricing.

Per-call costs are fractions of a cent, so they are kept in Decimal and
rounded up at micro-dollar precision. Local and offline backends are free.
"""

import logging
from dataclasses import dataclass
from typing import Dict, Optional
from decimal import Decimal, ROUND_UP

from .token_counter import TokenUsage

logger = logging.getLogger(__name__)

COST_QUANTUM = Decimal("0.000001")


@dataclass(frozen=True)
class ModelPricing:
    """USD per 1K tokens for one model."""
    prompt_cost_per_1k: Decimal
    completion_cost_per_1k: Decimal

    def cost(self, usage: TokenUsage) -> Decimal:
        prompt_cost = Decimal(usage.prompt_tokens) * self.prompt_cost_per_1k
        completion_cost = Decimal(usage.completion_tokens) * self.completion_cost_per_1k
        return (prompt_cost + completion_cost) / Decimal(1000)


@dataclass(frozen=True)
class PricingTable:
    """Model rates, matched exactly or by the longest known prefix.

    Dated snapshots such as ``gpt-4o-mini-2024-07-18`` resolve to the
    ``gpt-4o-mini`` rate.
    """
    prices: Dict[str, ModelPricing]

    @classmethod
    def from_rates(cls, rates: Dict[str, tuple]) -> "PricingTable":
        return cls({
            model: ModelPricing(Decimal(prompt), Decimal(completion))
            for model, (prompt, completion) in rates.items()
        })

    def lookup(self, model: str) -> Optional[ModelPricing]:
        if model in self.prices:
            return self.prices[model]
        prefixes = [m for m in self.prices if model.startswith(m + "-")]
        if not prefixes:
            return None
        return self.prices[max(prefixes, key=len)]

    def supports(self, model: str) -> bool:
        return self.lookup(model) is not None

    def get_pricing(self, model: str) -> ModelPricing:
        """Get pricing for a model.

        Raises:
            ValueError: If model is not supported
        """
        pricing = self.lookup(model)
        if pricing is None:
            raise ValueError(f"Unsupported model: {model}")
        return pricing


PRICING_TABLE = PricingTable.from_rates({
    "gpt-4": ("0.03", "0.06"),
    "gpt-4-turbo": ("0.01", "0.03"),
    "gpt-4o": ("0.0025", "0.01"),
    "gpt-4o-mini": ("0.00015", "0.0006"),
    "gpt-3.5-turbo": ("0.0005", "0.0015"),
})


def calculate_cost(model: str, usage: TokenUsage) -> float:
    """Cost of one call, rounded UP to the nearest micro-dollar.

    Raises:
        ValueError: If model is not supported
    """
    total_cost = PRICING_TABLE.get_pricing(model).cost(usage)
    return float(total_cost.quantize(COST_QUANTUM, rounding=ROUND_UP))


def estimate_cost(model: str, usage: TokenUsage) -> float:
    """Like calculate_cost, but an unpriced model (a fine-tune, a proxy alias) costs zero."""
    if not PRICING_TABLE.supports(model):
        logger.warning("No pricing for model %s; recording zero cost", model)
        return 0.0
    return calculate_cost(model, usage)
