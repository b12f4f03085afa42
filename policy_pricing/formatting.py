"""Display helpers shared by calculation details and explanations."""
from __future__ import annotations

import math

from .domain_models import Tier

CURRENCY_SYMBOL = "¥"


def _is_integral(value: float) -> bool:
    return math.isclose(value, round(value), rel_tol=0.0, abs_tol=1e-9)


def format_number(value: float) -> str:
    """Grouped thousands, decimals only when the value is fractional."""
    if _is_integral(value):
        return f"{round(value):,}"
    return f"{value:,.2f}"


def format_money(value: float) -> str:
    return f"{CURRENCY_SYMBOL}{format_number(value)}"


def format_percent(value: float) -> str:
    if _is_integral(value):
        return f"{round(value)}%"
    return f"{value:.2f}".rstrip("0").rstrip(".") + "%"


def tier_range_label(tier: Tier, unit: str) -> str:
    if tier.is_open_ended:
        return f"{tier.start_quantity}{unit}及以上"
    if tier.is_single_unit:
        return f"第{tier.start_quantity}{unit}"
    return f"{tier.start_quantity}-{tier.end_quantity}{unit}"


def tier_rule_text(tier: Tier, unit: str) -> str:
    return f"{tier_range_label(tier, unit)}按{format_percent(tier.discount_ratio_percent)}计费"


def ratio_rule_text(ratio_percent: float) -> str:
    return f"按{format_percent(ratio_percent)}计费"


def price_summary_lines(original_price: float, discounted_price: float) -> list[str]:
    return [
        f"原价: {format_money(original_price)}",
        f"优惠金额: {format_money(original_price - discounted_price)}",
        f"最终价格: {format_money(discounted_price)}",
    ]
