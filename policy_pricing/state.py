"""Simple in-memory storage for the uploaded policy catalog."""
from __future__ import annotations

from typing import Dict, List

from .domain_models import PricingPolicy

# Maps policy ids to policies, in upload order
POLICY_STORE: Dict[str, PricingPolicy] = {}


def set_policy_catalog(policies: List[PricingPolicy]) -> None:
    """Replace the in-memory catalog with the given policies."""
    POLICY_STORE.clear()
    POLICY_STORE.update((policy.id, policy) for policy in policies)


def get_policy_catalog() -> list[PricingPolicy]:
    """Return a snapshot of the catalog for a single calculation."""
    return list(POLICY_STORE.values())
