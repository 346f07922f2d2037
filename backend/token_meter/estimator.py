"""
Cost Estimator

Feature costs are fixed integer formulas, so estimates are deterministic and
need no I/O. Only the USD <-> token conversions consult the PricingOracle.
"""

import logging
import math
from decimal import Decimal, ROUND_CEILING
from typing import Any, Dict, Optional, Tuple, Union

from .config import (
    APP_REVENUE_SHARE,
    SAFETY_MARGIN_PERCENT,
    TOKEN_BUDGET_SHARE,
    TOKEN_PURCHASE,
)
from .errors import InvalidPurchaseAmount
from .features import Feature
from .models import CostEstimate, CostOptions
from .pricing import PricingOracle

logger = logging.getLogger(__name__)

OptionsLike = Union[CostOptions, Dict[str, Any], None]


def _coerce_options(options: OptionsLike) -> CostOptions:
    if options is None:
        return CostOptions()
    if isinstance(options, CostOptions):
        return options
    return CostOptions.model_validate({k: v for k, v in options.items() if v is not None})


def estimate_cost(feature: Union[Feature, str], options: OptionsLike = None) -> int:
    """base + max(0, languages - 1) * per_language + product_count * per_product"""
    opts = _coerce_options(options)
    return Feature.parse(feature).cost.compute(
        languages=opts.languages,
        product_count=opts.product_count,
    )


def apply_margin(estimated: int) -> int:
    """ceil(estimated * (1 + margin)), in integer arithmetic."""
    return (estimated * (100 + SAFETY_MARGIN_PERCENT) + 99) // 100


def estimate_with_margin(feature: Union[Feature, str], options: OptionsLike = None) -> CostEstimate:
    parsed = Feature.parse(feature)
    estimated = estimate_cost(parsed, options)
    with_margin = apply_margin(estimated)
    return CostEstimate(
        feature=parsed.value,
        estimated=estimated,
        with_margin=with_margin,
        margin=with_margin - estimated,
    )


def actual_tokens_from_usage(usage: Optional[Dict[str, Any]]) -> int:
    """Total tokens from a provider usage block ({prompt_tokens, completion_tokens})."""
    usage = usage or {}
    return int(usage.get("prompt_tokens") or 0) + int(usage.get("completion_tokens") or 0)


def validate_purchase_amount(usd_amount: Any) -> float:
    """Return the amount as float, or raise InvalidPurchaseAmount."""
    try:
        amount = float(usd_amount)
    except (TypeError, ValueError):
        raise InvalidPurchaseAmount(usd_amount)

    if math.isnan(amount):
        raise InvalidPurchaseAmount(usd_amount)
    if amount < TOKEN_PURCHASE["minimum_usd"] or amount > TOKEN_PURCHASE["maximum_usd"]:
        raise InvalidPurchaseAmount(usd_amount)
    if amount % TOKEN_PURCHASE["increment_usd"] != 0:
        raise InvalidPurchaseAmount(usd_amount)
    return amount


def revenue_split(usd_amount: float) -> Tuple[float, float]:
    """(app revenue share, token budget share) of a purchase."""
    return usd_amount * APP_REVENUE_SHARE, usd_amount * TOKEN_BUDGET_SHARE


class CostEstimator:
    """Estimation plus USD/token conversion backed by a PricingOracle."""

    def __init__(self, oracle: PricingOracle):
        self.oracle = oracle

    estimate_cost = staticmethod(estimate_cost)
    estimate_with_margin = staticmethod(estimate_with_margin)

    async def usd_to_tokens(self, usd_amount: float) -> int:
        """
        Convert a purchase amount to tokens.

        Example: $10 -> $3 token budget (30%) -> $3 / $0.10 per 1M = 30M tokens
        """
        rate = await self.oracle.get_unit_price()
        token_budget = Decimal(str(usd_amount)) * Decimal(str(TOKEN_BUDGET_SHARE))
        tokens = token_budget / Decimal(str(rate)) * 1_000_000
        return int(tokens)

    async def tokens_to_usd(self, tokens: int) -> float:
        """Display price for a token amount, rounded up to the nearest cent."""
        if tokens <= 0:
            return 0.0
        rate = await self.oracle.get_unit_price()
        provider_cost = Decimal(tokens) * Decimal(str(rate)) / 1_000_000
        total = provider_cost / Decimal(str(TOKEN_BUDGET_SHARE))
        return float(total.quantize(Decimal("0.01"), rounding=ROUND_CEILING))
