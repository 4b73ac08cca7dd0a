"""
Pricing calculations and rate management.

Handles cost computations for Claude models under each billing mode.
"""

import logging
from dataclasses import dataclass
from decimal import Decimal, ROUND_UP
from enum import Enum
from typing import Dict, Optional

from .token_counter import TokenUsage

logger = logging.getLogger(__name__)

TOKENS_PER_MILLION = Decimal("1000000")
COST_PRECISION = Decimal("0.000001")


class BillingMode(Enum):
    """Cost regime applied to a token tuple."""
    API = "api"  # pay per token, every token type billed
    MAX = "max"  # subscription, cache reads and writes included
    FREE = "free"  # non-billable or local model

    @classmethod
    def parse(cls, value: str) -> "BillingMode":
        try:
            return cls(str(value).lower().strip())
        except ValueError:
            valid = [mode.value for mode in cls]
            raise ValueError(f"Invalid billing mode {value!r}, must be one of: {valid}")


@dataclass(frozen=True)
class ModelPricing:
    """Per-million-token pricing for a specific model."""
    display_name: str
    family: str
    input_per_million: Decimal
    output_per_million: Decimal
    cache_read_per_million: Decimal
    cache_creation_per_million: Decimal


@dataclass(frozen=True)
class PricingTable:
    """Fixed pricing table for supported models."""
    prices: Dict[str, ModelPricing]
    aliases: Dict[str, str]
    default_model: str

    def resolve_model_id(self, model: Optional[str]) -> Optional[str]:
        """Resolve a full model id or alias to a known model id.

        Args:
            model: Model identifier or short alias such as ``opus`` or ``sonnet-4.5``

        Returns:
            The full model id, or None if the model is not recognized
        """
        if not model:
            return None
        if model in self.prices:
            return model
        normalized = model.lower().strip()
        if normalized in self.prices:
            return normalized
        return self.aliases.get(normalized)

    def get_pricing(self, model: str) -> ModelPricing:
        """Get pricing for a specific model.

        Args:
            model: Model identifier or alias

        Returns:
            ModelPricing for the model

        Raises:
            ValueError: If model is not supported
        """
        model_id = self.resolve_model_id(model)
        if model_id is None:
            raise ValueError(f"Unsupported model: {model}")
        return self.prices[model_id]

    def resolve(self, model: Optional[str]) -> "PricingLookup":
        """Look up pricing, falling back to the default model.

        An unrecognized model never fails; a warning is logged and the
        default tier is used instead.
        """
        model_id = self.resolve_model_id(model)
        if model_id is not None:
            return PricingLookup(model_id, self.prices[model_id], fallback=False)
        logger.warning(
            "No pricing for model %r, falling back to %s", model, self.default_model
        )
        return PricingLookup(self.default_model, self.prices[self.default_model], fallback=True)

    def display_name(self, model: str) -> str:
        model_id = self.resolve_model_id(model)
        if model_id is None:
            return model
        return self.prices[model_id].display_name


@dataclass(frozen=True)
class PricingLookup:
    """Result of a lenient pricing lookup."""
    model_id: str
    pricing: ModelPricing
    fallback: bool


def _pricing(name: str, family: str, inp: str, out: str, read: str, write: str) -> ModelPricing:
    return ModelPricing(
        display_name=name,
        family=family,
        input_per_million=Decimal(inp),
        output_per_million=Decimal(out),
        cache_read_per_million=Decimal(read),
        cache_creation_per_million=Decimal(write),
    )


DEFAULT_MODEL_ID = "claude-sonnet-4-20250514"

# Prices are USD per million tokens: input, output, cache read, cache write
PRICING_TABLE = PricingTable(
    prices={
        "claude-opus-4-6-20260115": _pricing("Claude Opus 4.6", "opus", "5", "25", "0.50", "6.25"),
        "claude-opus-4-5-20251101": _pricing("Claude Opus 4.5", "opus", "5", "25", "0.50", "6.25"),
        "claude-opus-4-1-20250319": _pricing("Claude Opus 4.1", "opus", "15", "75", "1.50", "18.75"),
        "claude-opus-4-20250514": _pricing("Claude Opus 4", "opus", "15", "75", "1.50", "18.75"),
        "claude-sonnet-4-5-20250929": _pricing("Claude Sonnet 4.5", "sonnet", "3", "15", "0.30", "3.75"),
        "claude-sonnet-4-20250514": _pricing("Claude Sonnet 4", "sonnet", "3", "15", "0.30", "3.75"),
        "claude-haiku-4-5-20251001": _pricing("Claude Haiku 4.5", "haiku", "1", "5", "0.10", "1.25"),
        "claude-haiku-3-5-20241022": _pricing("Claude Haiku 3.5", "haiku", "0.80", "4", "0.08", "1"),
        "claude-3-haiku-20240307": _pricing("Claude Haiku 3", "haiku", "0.25", "1.25", "0.03", "0.30"),
    },
    aliases={
        "opus": "claude-opus-4-5-20251101",
        "sonnet": "claude-sonnet-4-20250514",
        "haiku": "claude-haiku-4-5-20251001",
        "opus-4.6": "claude-opus-4-6-20260115",
        "opus-4.5": "claude-opus-4-5-20251101",
        "opus-4.1": "claude-opus-4-1-20250319",
        "opus-4": "claude-opus-4-20250514",
        "sonnet-4.5": "claude-sonnet-4-5-20250929",
        "sonnet-4": "claude-sonnet-4-20250514",
        "haiku-4.5": "claude-haiku-4-5-20251001",
        "haiku-3.5": "claude-haiku-3-5-20241022",
        "haiku-3": "claude-3-haiku-20240307",
        "opus_4_6": "claude-opus-4-6-20260115",
        "opus_4_5": "claude-opus-4-5-20251101",
        "opus_4_1": "claude-opus-4-1-20250319",
        "opus_4": "claude-opus-4-20250514",
        "sonnet_4_5": "claude-sonnet-4-5-20250929",
        "sonnet_4": "claude-sonnet-4-20250514",
        "haiku_4_5": "claude-haiku-4-5-20251001",
        "haiku_3_5": "claude-haiku-3-5-20241022",
        "haiku_3": "claude-3-haiku-20240307",
    },
    default_model=DEFAULT_MODEL_ID,
)


@dataclass(frozen=True)
class DualCost:
    """Cost of one token tuple under the API rate and the resolved billing mode."""
    anthropic_cost_usd: float
    maestro_cost_usd: float
    billing_mode: BillingMode
    pricing_model: str


def calculate_cost(
    usage: TokenUsage,
    model: Optional[str],
    billing_mode: BillingMode = BillingMode.API,
    table: PricingTable = PRICING_TABLE,
) -> float:
    """Calculate the cost of a token tuple with conservative rounding.

    Under ``max`` the cache read and cache write rates are zero. Under
    ``free`` the cost is always zero.

    Args:
        usage: Token usage data
        model: Model identifier or alias; unknown models use the default tier
        billing_mode: Billing mode to apply
        table: Pricing table to look the model up in

    Returns:
        Total cost in USD rounded UP to the micro-dollar
    """
    if billing_mode == BillingMode.FREE:
        return 0.0

    pricing = table.resolve(model).pricing
    cache_read_rate = pricing.cache_read_per_million
    cache_creation_rate = pricing.cache_creation_per_million
    if billing_mode == BillingMode.MAX:
        cache_read_rate = Decimal("0")
        cache_creation_rate = Decimal("0")

    total_cost = (
        Decimal(usage.input_tokens) * pricing.input_per_million
        + Decimal(usage.output_tokens) * pricing.output_per_million
        + Decimal(usage.cache_read_tokens) * cache_read_rate
        + Decimal(usage.cache_creation_tokens) * cache_creation_rate
    ) / TOKENS_PER_MILLION

    rounded_cost = total_cost.quantize(COST_PRECISION, rounding=ROUND_UP)
    return float(rounded_cost)


def calculate_dual_cost(
    usage: TokenUsage,
    model: Optional[str],
    billing_mode: BillingMode,
    table: PricingTable = PRICING_TABLE,
) -> DualCost:
    """Cost at API rates alongside cost under the resolved billing mode."""
    lookup = table.resolve(model)
    return DualCost(
        anthropic_cost_usd=calculate_cost(usage, lookup.model_id, BillingMode.API, table),
        maestro_cost_usd=calculate_cost(usage, lookup.model_id, billing_mode, table),
        billing_mode=billing_mode,
        pricing_model=lookup.model_id,
    )
