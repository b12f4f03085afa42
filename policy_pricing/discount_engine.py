"""Core discount calculations for pricing policies."""
from __future__ import annotations

import datetime as dt
import logging
import math
from numbers import Integral, Real
from typing import Iterable, Sequence

from .domain_models import (
    CalculationRequest,
    CalculationResult,
    PolicyKind,
    PricingPolicy,
    Tier,
    TierContribution,
)
from .exceptions import ConfigurationError, InvalidInputError
from .formatting import format_money, price_summary_lines, ratio_rule_text, tier_rule_text
from .policy_resolver import resolve_applicable_policy

logger = logging.getLogger(__name__)

NO_POLICY_DETAILS = "未应用价格政策"
FULL_PRICE_RATIO = 100.0


def _validate_amounts(unit_price: float, quantity: int) -> None:
    if isinstance(unit_price, bool) or not isinstance(unit_price, Real):
        raise InvalidInputError(f"unit_price must be a number, got {unit_price!r}")
    if not math.isfinite(unit_price) or unit_price <= 0:
        raise InvalidInputError(f"unit_price must be positive, got {unit_price!r}")
    if isinstance(quantity, bool) or not isinstance(quantity, Integral):
        raise InvalidInputError(f"quantity must be a whole number, got {quantity!r}")
    if quantity <= 0:
        raise InvalidInputError(f"quantity must be positive, got {quantity!r}")


def _validate_ratio(ratio: float | None, label: str) -> float:
    if ratio is None or isinstance(ratio, bool) or not isinstance(ratio, Real):
        raise InvalidInputError(f"{label} must be a number, got {ratio!r}")
    if not 0 <= ratio <= 100:
        raise InvalidInputError(f"{label} must be between 0 and 100, got {ratio!r}")
    return float(ratio)


def validate_tiers(tiers: Iterable[Tier]) -> list[Tier]:
    """
    Check a tier list and return it ordered by ``start_quantity``.

    Raises InvalidInputError for empty lists, inverted or overlapping
    brackets, bad ratios, and open-ended brackets anywhere but last.
    """

    ordered = sorted(tiers, key=lambda tier: tier.start_quantity)
    if not ordered:
        raise InvalidInputError("Tiered discount has no tiers")

    open_ended = [tier for tier in ordered if tier.is_open_ended]
    if len(open_ended) > 1:
        raise InvalidInputError("Only one tier may be open-ended")

    previous: Tier | None = None
    for tier in ordered:
        start, end = tier.start_quantity, tier.end_quantity
        if isinstance(start, bool) or not isinstance(start, Integral) or start < 1:
            raise InvalidInputError(f"Tier start quantity must be a whole number >= 1, got {start!r}")
        if end is not None:
            if isinstance(end, bool) or not isinstance(end, Integral):
                raise InvalidInputError(f"Tier end quantity must be a whole number, got {end!r}")
            if end < start:
                raise InvalidInputError(f"Tier {start}-{end} ends before it starts")
        _validate_ratio(tier.discount_ratio_percent, f"Tier {start} discount ratio")

        if previous is not None:
            if previous.end_quantity is None:
                raise InvalidInputError("The open-ended tier must be the last tier")
            if start <= previous.end_quantity:
                raise InvalidInputError(
                    f"Tier starting at {start} overlaps tier "
                    f"{previous.start_quantity}-{previous.end_quantity}"
                )
        previous = tier

    return ordered


def split_quantity(tiers: Sequence[Tier], quantity: int) -> list[tuple[Tier, int]]:
    """
    Distribute ``quantity`` units over ordered tiers, bracket by bracket.

    Each tier bills the units whose position falls inside it, like tax
    brackets. Raises ConfigurationError when some units fall outside every
    tier.
    """

    allocation: list[tuple[Tier, int]] = []
    for tier in tiers:
        if tier.start_quantity > quantity:
            break
        tier_end = quantity if tier.is_open_ended else min(quantity, tier.end_quantity)
        units = max(0, tier_end - tier.start_quantity + 1)
        if units:
            allocation.append((tier, units))

    covered = sum(units for _, units in allocation)
    if covered != quantity:
        raise ConfigurationError(
            f"Tiers cover only {covered} of {quantity} units; "
            "the policy needs an open-ended last tier or wider brackets"
        )
    return allocation


def _no_policy_result(unit_price: float, quantity: int) -> CalculationResult:
    original_price = unit_price * quantity
    return CalculationResult(
        unit_price=unit_price,
        quantity=quantity,
        original_price=original_price,
        discounted_price=original_price,
        discount_amount=0.0,
        discount_ratio_percent=FULL_PRICE_RATIO,
        applied_policy=None,
        calculation_details=NO_POLICY_DETAILS,
    )


def _uniform_result(unit_price: float, quantity: int, policy: PricingPolicy) -> CalculationResult:
    ratio = _validate_ratio(policy.discount_ratio_percent, f"Policy {policy.id} discount ratio")
    original_price = unit_price * quantity
    discounted_price = original_price * ratio / 100

    details = ["计费方式:", ratio_rule_text(ratio), ""]
    details.extend(price_summary_lines(original_price, discounted_price))

    return CalculationResult(
        unit_price=unit_price,
        quantity=quantity,
        original_price=original_price,
        discounted_price=discounted_price,
        discount_amount=original_price - discounted_price,
        discount_ratio_percent=ratio,
        applied_policy=policy,
        calculation_details="\n".join(details),
    )


def _tiered_result(
    unit_price: float, quantity: int, policy: PricingPolicy, unit_label: str
) -> CalculationResult:
    tiers = validate_tiers(policy.tiers)
    try:
        allocation = split_quantity(tiers, quantity)
    except ConfigurationError:
        logger.warning("Policy %s does not cover quantity %s", policy.id, quantity)
        raise

    contributions: list[TierContribution] = []
    for tier, units in allocation:
        amount = units * unit_price * tier.discount_ratio_percent / 100
        logger.debug("Policy %s tier %s: %s units -> %s", policy.id, tier.start_quantity, units, amount)
        contributions.append(TierContribution(tier=tier, units=units, amount=amount))

    original_price = unit_price * quantity
    discounted_price = sum(contribution.amount for contribution in contributions)

    details = ["计费方式:"]
    details.extend(
        f"{tier_rule_text(c.tier, unit_label)}: {format_money(c.amount)}" for c in contributions
    )
    details.append("")
    details.extend(price_summary_lines(original_price, discounted_price))

    return CalculationResult(
        unit_price=unit_price,
        quantity=quantity,
        original_price=original_price,
        discounted_price=discounted_price,
        discount_amount=original_price - discounted_price,
        discount_ratio_percent=discounted_price / original_price * 100,
        applied_policy=policy,
        contributions=tuple(contributions),
        calculation_details="\n".join(details),
    )


def compute_discount(
    unit_price: float,
    quantity: int,
    policy: PricingPolicy | None,
    unit_label: str = "件",
) -> CalculationResult:
    """Compute the discounted price of ``quantity`` units under ``policy``.

    ``discount_ratio_percent`` on the result is the share of the original
    price that is billed, blended across brackets for tiered policies.
    Nothing is rounded here; rounding happens only when displaying.
    """

    _validate_amounts(unit_price, quantity)

    if policy is None:
        return _no_policy_result(unit_price, quantity)
    if policy.kind is PolicyKind.UNIFORM_DISCOUNT:
        return _uniform_result(unit_price, quantity, policy)
    if policy.kind is PolicyKind.TIERED_DISCOUNT:
        return _tiered_result(unit_price, quantity, policy, unit_label)

    raise InvalidInputError(f"Unsupported policy kind: {policy.kind!r}")


def calculate_price_with_policies(
    unit_price: float,
    quantity: int,
    policies: Iterable[PricingPolicy],
    selected_ids: Sequence[str],
    unit_label: str = "件",
    as_of: dt.datetime | None = None,
) -> CalculationResult:
    """Resolve the governing policy for a line item and compute its price."""

    _validate_amounts(unit_price, quantity)
    policy = resolve_applicable_policy(policies, selected_ids, as_of=as_of)
    return compute_discount(unit_price, quantity, policy, unit_label=unit_label)


def calculate(request: CalculationRequest, as_of: dt.datetime | None = None) -> CalculationResult:
    return calculate_price_with_policies(
        request.unit_price,
        request.quantity,
        request.candidate_policies,
        request.selected_policy_ids,
        unit_label=request.unit_label,
        as_of=as_of,
    )


__all__ = [
    "validate_tiers",
    "split_quantity",
    "compute_discount",
    "calculate_price_with_policies",
    "calculate",
]
