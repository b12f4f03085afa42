"""Domain models for pricing policy calculations."""
from __future__ import annotations

import datetime as dt
from dataclasses import dataclass, field
from enum import Enum


class PolicyKind(str, Enum):
    UNIFORM_DISCOUNT = "uniform_discount"
    TIERED_DISCOUNT = "tiered_discount"


class PolicyStatus(str, Enum):
    ACTIVE = "active"
    INACTIVE = "inactive"


@dataclass(frozen=True)
class Tier:
    start_quantity: int
    end_quantity: int | None  # None means the bracket has no upper bound
    discount_ratio_percent: float

    @property
    def is_open_ended(self) -> bool:
        return self.end_quantity is None

    @property
    def is_single_unit(self) -> bool:
        return self.end_quantity == self.start_quantity


@dataclass(frozen=True)
class PricingPolicy:
    id: str
    name: str
    kind: PolicyKind
    alias: str = ""
    summary: str = ""
    valid_until: dt.datetime | None = None
    status: PolicyStatus = PolicyStatus.ACTIVE
    discount_ratio_percent: float | None = None  # uniform discounts only
    tiers: tuple[Tier, ...] = ()  # tiered discounts only

    @property
    def is_active(self) -> bool:
        return self.status == PolicyStatus.ACTIVE

    def sorted_tiers(self) -> list[Tier]:
        return sorted(self.tiers, key=lambda tier: tier.start_quantity)


@dataclass(frozen=True)
class CalculationRequest:
    unit_price: float
    quantity: int
    candidate_policies: tuple[PricingPolicy, ...] = ()
    selected_policy_ids: tuple[str, ...] = ()
    unit_label: str = "件"


@dataclass(frozen=True)
class TierContribution:
    tier: Tier
    units: int
    amount: float  # discounted price of the units billed in this bracket


@dataclass(frozen=True)
class CalculationResult:
    unit_price: float
    quantity: int
    original_price: float
    discounted_price: float
    discount_amount: float
    discount_ratio_percent: float  # blended billing ratio
    applied_policy: PricingPolicy | None = None
    contributions: tuple[TierContribution, ...] = field(default=())
    calculation_details: str = ""

    @property
    def has_discount(self) -> bool:
        return self.discounted_price < self.original_price
