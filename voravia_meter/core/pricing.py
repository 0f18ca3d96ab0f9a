"""
Pricing calculations and rate management.

Maps metered usage of AI and maps providers to a USD cost using a
versioned rate card.
"""

import logging
from dataclasses import dataclass, field
from decimal import Decimal, ROUND_HALF_UP
from typing import Dict, Optional, Union

from .token_counter import TokenUsage

logger = logging.getLogger(__name__)

# Sub-cent precision; keeps per-call vision costs like $0.0032 exact
COST_QUANTUM = Decimal("0.00000001")
ONE_MILLION = Decimal("1000000")


@dataclass(frozen=True)
class TokenRate:
    """Per-token pricing for a token-metered service."""
    input_per_million: Decimal   # USD per 1M input tokens
    output_per_million: Decimal  # USD per 1M output tokens

    def __post_init__(self):
        if self.input_per_million < 0 or self.output_per_million < 0:
            raise ValueError("token rates cannot be negative")


@dataclass(frozen=True)
class RateCard:
    """Versioned pricing table keyed by (provider, service)."""
    version: str
    token_rates: Dict[str, Dict[str, TokenRate]] = field(default_factory=dict)
    flat_rates: Dict[str, Dict[str, Decimal]] = field(default_factory=dict)

    def token_rate(self, provider: str, service: str) -> Optional[TokenRate]:
        return self.token_rates.get(provider, {}).get(service)

    def flat_rate(self, provider: str, service: str) -> Optional[Decimal]:
        return self.flat_rates.get(provider, {}).get(service)


@dataclass(frozen=True)
class CostBreakdown:
    """Result of pricing one billable call."""
    cost_usd: float
    unit_cost_usd: float = 0.0
    units: int = 0
    input_tokens: int = 0
    output_tokens: int = 0
    total_tokens: int = 0
    rate_version: Optional[str] = None
    priced: bool = True

    def to_dict(self) -> Dict[str, Union[float, int, str, bool, None]]:
        return {
            "costUsd": self.cost_usd,
            "unitCostUsd": self.unit_cost_usd,
            "units": self.units,
            "inputTokens": self.input_tokens,
            "outputTokens": self.output_tokens,
            "totalTokens": self.total_tokens,
            "rateVersion": self.rate_version,
            "priced": self.priced,
        }


# gpt-4.1-mini list prices and Places API (New) Nearby Search Pro per-call price
DEFAULT_RATE_CARD = RateCard(
    version="2025-01",
    token_rates={
        "openai": {
            "openai_scan_vision": TokenRate(
                input_per_million=Decimal("0.40"),
                output_per_million=Decimal("1.60"),
            ),
            "openai_menu_ocr": TokenRate(
                input_per_million=Decimal("0.40"),
                output_per_million=Decimal("1.60"),
            ),
        },
    },
    flat_rates={
        "google": {
            "google_places_searchNearby": Decimal("0.032"),
        },
    },
)


def _quantize(amount: Decimal) -> float:
    return float(amount.quantize(COST_QUANTUM, rounding=ROUND_HALF_UP))


def compute_cost(
    provider: str,
    service: str,
    usage: Union[TokenUsage, int],
    rate_card: RateCard = DEFAULT_RATE_CARD,
) -> CostBreakdown:
    """Calculate the cost of one billable call.

    Token-metered services are priced per million input and output tokens;
    flat-rate services are priced per unit. An unknown provider/service,
    or a token-metered service given only a unit count, returns a zero-cost
    breakdown with priced=False: a pricing gap under-reports cost but never
    blocks the call being metered.

    Args:
        provider: External service name, e.g. "openai"
        service: Billable operation, e.g. "openai_scan_vision"
        usage: TokenUsage for token-metered services, or a unit count
        rate_card: Pricing table to use

    Returns:
        CostBreakdown rounded to 8 decimal places
    """
    has_tokens = isinstance(usage, TokenUsage)
    tokens = usage if has_tokens else TokenUsage()
    units = 1 if has_tokens else int(usage)

    token_rate = rate_card.token_rate(provider, service)
    if token_rate is not None and not has_tokens:
        logger.warning(
            "Pricing gap: %s/%s is token-metered but only a unit count was given; "
            "recording zero cost",
            provider, service,
        )
        return CostBreakdown(cost_usd=0.0, units=units, rate_version=rate_card.version, priced=False)
    if token_rate is not None:
        input_cost = Decimal(tokens.input_tokens) * token_rate.input_per_million / ONE_MILLION
        output_cost = Decimal(tokens.output_tokens) * token_rate.output_per_million / ONE_MILLION
        cost = _quantize(input_cost + output_cost)
        return CostBreakdown(
            cost_usd=cost,
            unit_cost_usd=cost,
            units=units,
            input_tokens=tokens.input_tokens,
            output_tokens=tokens.output_tokens,
            total_tokens=tokens.total_tokens,
            rate_version=rate_card.version,
        )

    flat_rate = rate_card.flat_rate(provider, service)
    if flat_rate is not None:
        return CostBreakdown(
            cost_usd=_quantize(flat_rate * units),
            unit_cost_usd=_quantize(flat_rate),
            units=units,
            rate_version=rate_card.version,
        )

    logger.warning(
        "Pricing gap: no rate for %s/%s in rate card %s; recording zero cost",
        provider, service, rate_card.version,
    )
    return CostBreakdown(cost_usd=0.0, units=units, rate_version=rate_card.version, priced=False)
