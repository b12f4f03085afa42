"""Plain-text explanations of how a price was derived.

Three presentation contexts share the same rule text:

* ``hover``  - policy name and billing rules, no numbers (tooltips).
* ``append`` - billing rules only, appended after a service's own price
  description.
* ``modal``  - a full worked example at a fixed example quantity.

Everything returned here is markup-agnostic; HTML line breaks are added by
the template layer.
"""
from __future__ import annotations

from enum import Enum
from typing import Iterable

from .discount_engine import compute_discount
from .domain_models import CalculationResult, PolicyKind, PricingPolicy
from .exceptions import InvalidInputError
from .formatting import (
    format_money,
    format_percent,
    price_summary_lines,
    ratio_rule_text,
    tier_range_label,
    tier_rule_text,
)

DEFAULT_EXAMPLE_QUANTITY = 25
NO_POLICY_TEXT = "未应用价格政策"
EMPTY_DESCRIPTION = "—"


class ExplanationMode(str, Enum):
    HOVER = "hover"
    APPEND = "append"
    MODAL = "modal"


def describe_policy_rules(policy: PricingPolicy, unit_label: str) -> str:
    """Billing rules of a policy, e.g. ``1-5件按100%计费，6件及以上按80%计费``."""

    if policy.kind is PolicyKind.UNIFORM_DISCOUNT:
        ratio = policy.discount_ratio_percent
        return ratio_rule_text(100 if ratio is None else ratio)

    tiers = policy.sorted_tiers()
    if not tiers:
        text = "类型：阶梯折扣"
        if policy.summary:
            text += f"，说明：{policy.summary}"
        return text
    return "，".join(tier_rule_text(tier, unit_label) for tier in tiers)


def describe_validity(policy: PricingPolicy) -> str:
    if policy.valid_until is None:
        return "政策有效期：永久有效"
    return f"政策有效期至：{policy.valid_until.strftime('%Y-%m-%d')}"


def _example_quantity(policy: PricingPolicy, requested: int) -> int | None:
    """Largest quantity up to ``requested`` that the policy can price.

    Tiered policies only cover the unbroken run of brackets starting at the
    first unit; None means not even one unit is covered.
    """
    if policy.kind is not PolicyKind.TIERED_DISCOUNT:
        return requested

    covered = 0
    for tier in policy.sorted_tiers():
        if tier.start_quantity != covered + 1:
            break
        if tier.is_open_ended:
            return requested
        covered = tier.end_quantity
        if covered >= requested:
            return requested
    return covered or None


def _modal_text(
    policy: PricingPolicy,
    unit_price: float,
    unit_label: str,
    example_quantity: int,
) -> str:
    lines = [policy.name]
    if policy.kind is PolicyKind.TIERED_DISCOUNT and policy.summary:
        lines.append(f"政策说明：{policy.summary}")

    lines.append("计费说明：")
    if policy.kind is PolicyKind.UNIFORM_DISCOUNT:
        lines.append(f"统一按照{format_percent(policy.discount_ratio_percent)}计费")
    else:
        lines.extend(tier_rule_text(tier, unit_label) for tier in policy.sorted_tiers())
    lines.append(describe_validity(policy))

    quantity = _example_quantity(policy, example_quantity)
    if quantity is None:
        return "\n".join(lines)
    example = compute_discount(unit_price, quantity, policy, unit_label=unit_label)

    lines.append("")
    lines.append(f"价格计算示例（以{quantity}{unit_label}为例）：")
    if policy.kind is PolicyKind.UNIFORM_DISCOUNT:
        lines.append(
            f"折扣计算：{format_money(unit_price)} × {quantity}{unit_label} × "
            f"{format_percent(example.discount_ratio_percent)} = {format_money(example.discounted_price)}"
        )
    else:
        for contribution in example.contributions:
            tier = contribution.tier
            lines.append(
                f"{tier_range_label(tier, unit_label)}：{format_money(unit_price)} × "
                f"{contribution.units}{unit_label} × {format_percent(tier.discount_ratio_percent)} = "
                f"{format_money(contribution.amount)}"
            )
    lines.extend(price_summary_lines(example.original_price, example.discounted_price))
    return "\n".join(lines)


def format_explanation(
    result: CalculationResult,
    mode: ExplanationMode | str,
    unit_label: str = "件",
    *,
    example_quantity: int = DEFAULT_EXAMPLE_QUANTITY,
    example_unit_price: float | None = None,
) -> str:
    """Render ``result`` for one of the presentation modes.

    Modal mode illustrates the policy at ``example_quantity`` rather than the
    ordered quantity, priced at ``example_unit_price`` or else the result's
    own unit price.
    """

    try:
        mode = ExplanationMode(mode)
    except ValueError as exc:
        raise InvalidInputError(f"Unknown explanation mode: {mode!r}") from exc

    policy = result.applied_policy
    if policy is None:
        if mode is ExplanationMode.MODAL:
            return "\n".join(
                [NO_POLICY_TEXT, *price_summary_lines(result.original_price, result.discounted_price)]
            )
        return NO_POLICY_TEXT

    rules = f"优惠说明: {describe_policy_rules(policy, unit_label)}"
    if mode is ExplanationMode.HOVER:
        return f"{policy.name}\n{rules}"
    if mode is ExplanationMode.APPEND:
        return rules

    unit_price = example_unit_price if example_unit_price is not None else result.unit_price
    return _modal_text(policy, unit_price, unit_label, example_quantity)


def append_policy_descriptions(
    price_description: str | None,
    results: Iterable[CalculationResult],
    unit_label: str = "件",
) -> str:
    """Append the billing rules of applied policies to a price description."""

    details = [
        format_explanation(result, ExplanationMode.APPEND, unit_label)
        for result in results
        if result.applied_policy is not None
    ]
    has_description = bool(price_description) and price_description != EMPTY_DESCRIPTION

    if not details:
        return price_description if has_description else EMPTY_DESCRIPTION
    if not has_description:
        return "；".join(details)
    return f"{price_description}\n{'；'.join(details)}"


__all__ = [
    "ExplanationMode",
    "describe_policy_rules",
    "describe_validity",
    "format_explanation",
    "append_policy_descriptions",
]
