"""Selection of the single pricing policy that governs a calculation."""
from __future__ import annotations

import datetime as dt
import logging
from typing import Iterable, Sequence

from .domain_models import PricingPolicy

logger = logging.getLogger(__name__)


def _aware(moment: dt.datetime) -> dt.datetime:
    if moment.tzinfo is None:
        return moment.replace(tzinfo=dt.timezone.utc)
    return moment


def is_policy_applicable(policy: PricingPolicy, as_of: dt.datetime) -> bool:
    """Return True when the policy is active and has not expired at ``as_of``."""
    if not policy.is_active:
        return False
    if policy.valid_until is not None and _aware(policy.valid_until) < _aware(as_of):
        return False
    return True


def resolve_applicable_policy(
    candidates: Iterable[PricingPolicy],
    selected_ids: Sequence[str],
    as_of: dt.datetime | None = None,
) -> PricingPolicy | None:
    """
    Pick the policy to apply from the ids selected for a line item.

    Policies are never stacked: the first selected id whose policy is active
    and still valid wins, in the order the caller supplied the ids. Returns
    None when nothing survives, which simply means no discount applies.
    """

    if as_of is None:
        as_of = dt.datetime.now(dt.timezone.utc)

    by_id: dict[str, PricingPolicy] = {}
    for policy in candidates:
        by_id.setdefault(policy.id, policy)

    for policy_id in selected_ids:
        policy = by_id.get(policy_id)
        if policy is None:
            logger.debug("Selected policy %s is not among the candidates", policy_id)
            continue
        if not is_policy_applicable(policy, as_of):
            logger.debug("Skipping policy %s (status=%s, valid_until=%s)",
                         policy.id, policy.status.value, policy.valid_until)
            continue
        return policy

    return None


__all__ = ["is_policy_applicable", "resolve_applicable_policy"]
