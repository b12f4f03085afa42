"""Utilities for turning stored policy records into domain models.

Policy records come from the host application's persistence in the same
camelCase shape the REST backend serves. Tier bounds were historically stored
under several names, so every alias is mapped onto ``start_quantity`` and
``end_quantity`` here; the engine only ever sees canonical :class:`Tier`
objects.
"""
from __future__ import annotations

import datetime as dt
import json
import logging
import math
from typing import IO, Any, Iterable, List, Mapping

from .domain_models import PolicyKind, PolicyStatus, PricingPolicy, Tier
from .exceptions import PolicyDataError

logger = logging.getLogger(__name__)

START_ALIASES = ("startQuantity", "start_quantity", "minQuantity", "minAmount")
END_ALIASES = ("endQuantity", "end_quantity", "maxQuantity", "maxAmount")

_OPEN_ENDED_VALUES = {"", "infinity", "inf", "∞"}


def _first_present(raw: Mapping[str, Any], keys: Iterable[str]) -> Any:
    for key in keys:
        if raw.get(key) is not None:
            return raw[key]
    return None


def _to_int(value: Any, field_name: str) -> int:
    if isinstance(value, bool):
        raise PolicyDataError(f"{field_name} must be a whole number, got {value!r}")
    try:
        number = float(value)
    except (TypeError, ValueError) as exc:
        raise PolicyDataError(f"{field_name} must be a whole number, got {value!r}") from exc
    if not number.is_integer():
        raise PolicyDataError(f"{field_name} must be a whole number, got {value!r}")
    return int(number)


def _to_float(value: Any, field_name: str) -> float:
    if isinstance(value, bool):
        raise PolicyDataError(f"{field_name} must be a number, got {value!r}")
    try:
        return float(value)
    except (TypeError, ValueError) as exc:
        raise PolicyDataError(f"{field_name} must be a number, got {value!r}") from exc


def _parse_end_quantity(value: Any) -> int | None:
    if value is None:
        return None
    if isinstance(value, str) and value.strip().lower() in _OPEN_ENDED_VALUES:
        return None
    if isinstance(value, float) and math.isinf(value):
        return None
    return _to_int(value, "endQuantity")


def _parse_valid_until(value: Any) -> dt.datetime | None:
    if value is None or value == "":
        return None

    if isinstance(value, dt.datetime):
        parsed = value
    elif isinstance(value, dt.date):
        # A bare date stays valid through the end of that day.
        parsed = dt.datetime.combine(value, dt.time.max)
    elif isinstance(value, str):
        text = value.strip()
        if text.endswith("Z"):
            text = text[:-1] + "+00:00"
        try:
            parsed = dt.datetime.fromisoformat(text)
        except ValueError as exc:
            raise PolicyDataError(f"validUntil is not an ISO-8601 timestamp: {value!r}") from exc
    else:
        raise PolicyDataError(f"validUntil has an unsupported type: {type(value).__name__}")

    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=dt.timezone.utc)
    return parsed


def _normalize_ratio(value: Any, field_name: str) -> float:
    ratio = _to_float(value, field_name)
    # Older records stored the billing ratio as a fraction (0.85 for 85%).
    if 0 < ratio <= 1:
        ratio *= 100
    return ratio


def normalize_tier(raw: Mapping[str, Any]) -> Tier:
    """Build a :class:`Tier` from a raw tier record, resolving legacy aliases."""

    start_raw = _first_present(raw, START_ALIASES)
    if start_raw is None:
        raise PolicyDataError(f"Tier is missing a start quantity: {dict(raw)!r}")

    ratio_raw = _first_present(raw, ("discountRatio", "discount_ratio_percent"))
    if ratio_raw is None:
        raise PolicyDataError(f"Tier is missing discountRatio: {dict(raw)!r}")

    return Tier(
        start_quantity=_to_int(start_raw, "startQuantity"),
        end_quantity=_parse_end_quantity(_first_present(raw, END_ALIASES)),
        discount_ratio_percent=_to_float(ratio_raw, "discountRatio"),
    )


def normalize_policy(raw: Mapping[str, Any]) -> PricingPolicy:
    """Build a :class:`PricingPolicy` from a stored policy record."""

    policy_id = raw.get("_id") or raw.get("id")
    if not policy_id:
        raise PolicyDataError("Policy record is missing an id")

    try:
        kind = PolicyKind(raw.get("type") or raw.get("kind"))
    except ValueError as exc:
        raise PolicyDataError(f"Policy {policy_id}: unknown type {raw.get('type')!r}") from exc

    try:
        status = PolicyStatus(raw.get("status") or PolicyStatus.ACTIVE.value)
    except ValueError as exc:
        raise PolicyDataError(f"Policy {policy_id}: unknown status {raw.get('status')!r}") from exc

    discount_ratio: float | None = None
    tiers: tuple[Tier, ...] = ()

    if kind is PolicyKind.UNIFORM_DISCOUNT:
        ratio_raw = raw.get("discountRatio")
        if ratio_raw is None:
            raise PolicyDataError(f"Policy {policy_id}: uniform discount needs discountRatio")
        discount_ratio = _normalize_ratio(ratio_raw, "discountRatio")
    else:
        tier_records = raw.get("tierSettings") or raw.get("tiers") or []
        if not isinstance(tier_records, list):
            raise PolicyDataError(f"Policy {policy_id}: tierSettings must be a list")
        normalized: list[Tier] = []
        for index, tier in enumerate(tier_records):
            if not isinstance(tier, Mapping):
                raise PolicyDataError(
                    f"Policy {policy_id}: tier {index} must be an object, got {type(tier).__name__}"
                )
            try:
                normalized.append(normalize_tier(tier))
            except PolicyDataError as exc:
                raise PolicyDataError(f"Policy {policy_id}: tier {index}: {exc}") from exc
        tiers = tuple(normalized)

    return PricingPolicy(
        id=str(policy_id),
        name=str(raw.get("name") or ""),
        alias=str(raw.get("alias") or ""),
        kind=kind,
        summary=str(raw.get("summary") or ""),
        valid_until=_parse_valid_until(raw.get("validUntil")),
        status=status,
        discount_ratio_percent=discount_ratio,
        tiers=tiers,
    )


def load_policies(records: Iterable[Mapping[str, Any]]) -> List[PricingPolicy]:
    """Normalize a sequence of stored policy records."""

    policies: list[PricingPolicy] = []
    for index, record in enumerate(records):
        if not isinstance(record, Mapping):
            raise PolicyDataError(f"Record {index}: expected an object, got {type(record).__name__}")
        try:
            policies.append(normalize_policy(record))
        except PolicyDataError as exc:
            raise PolicyDataError(f"Record {index}: {exc}") from exc

    logger.debug("Loaded %d pricing policies", len(policies))
    return policies


def load_policies_from_json(file_obj: IO) -> List[PricingPolicy]:
    """Parse a JSON policy catalog upload.

    The payload is either a list of policy records or the backend's
    ``{"data": [...]}`` response envelope.
    """

    raw = file_obj.read()
    if isinstance(raw, bytes):
        try:
            raw = raw.decode("utf-8")
        except UnicodeDecodeError as exc:
            raise PolicyDataError("Policy file must be UTF-8 encoded") from exc

    try:
        payload = json.loads(raw)
    except json.JSONDecodeError as exc:
        raise PolicyDataError(f"Policy file is not valid JSON: {exc.msg}") from exc

    if isinstance(payload, dict):
        payload = payload.get("data")
    if not isinstance(payload, list):
        raise PolicyDataError("Policy file must contain a list of policies")

    return load_policies(payload)
