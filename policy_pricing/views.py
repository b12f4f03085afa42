import logging

from django.conf import settings
from django.contrib import messages
from django.shortcuts import redirect, render

from .discount_engine import calculate_price_with_policies
from .exceptions import ConfigurationError, InvalidInputError, PolicyDataError
from .explanation import ExplanationMode, append_policy_descriptions, format_explanation
from .policy_loader import load_policies_from_json
from .state import get_policy_catalog, set_policy_catalog

logger = logging.getLogger(__name__)


def _pricing_setting(name: str, default):
    return getattr(settings, "PRICING_POLICY", {}).get(name, default)


def home(request):
    return redirect("calculator")


def policy_upload_view(request):
    context: dict[str, object] = {}

    if request.method == "POST":
        policy_file = request.FILES.get("policy_file")
        if not policy_file:
            messages.error(request, "Please select a policy JSON file to upload.")
        elif not policy_file.name.lower().endswith(".json"):
            messages.error(request, "The uploaded file must be a .json file.")
        else:
            try:
                policies = load_policies_from_json(policy_file)
            except PolicyDataError as exc:
                logger.warning("Rejected policy upload %s: %s", policy_file.name, exc)
                messages.error(request, str(exc))
            else:
                set_policy_catalog(policies)
                context["policies"] = get_policy_catalog()
                messages.success(request, f"Loaded {len(policies)} pricing policies.")

    return render(request, "policy_pricing/policy_upload.html", context)


def calculator_view(request):
    default_unit = _pricing_setting("DEFAULT_UNIT_LABEL", "件")
    context: dict[str, object] = {
        "policies": get_policy_catalog(),
        "form_values": {},
        "selected_policy_ids": [],
    }

    def _require_int(value: str | None, field_name: str) -> int:
        if value is None or value == "":
            raise ValueError(f"{field_name} is required.")
        try:
            return int(value)
        except (TypeError, ValueError) as exc:
            raise ValueError(f"{field_name} must be a whole number.") from exc

    def _require_float(value: str | None, field_name: str) -> float:
        if value is None or value == "":
            raise ValueError(f"{field_name} is required.")
        try:
            return float(value)
        except (TypeError, ValueError) as exc:
            raise ValueError(f"{field_name} must be a number.") from exc

    if request.method == "POST":
        unit_label = (request.POST.get("unit_label") or "").strip() or default_unit
        selected_policy_ids = request.POST.getlist("policy_ids")
        context["selected_policy_ids"] = selected_policy_ids

        try:
            unit_price = _require_float(request.POST.get("unit_price"), "Unit price")
            quantity = _require_int(request.POST.get("quantity"), "Quantity")
            result = calculate_price_with_policies(
                unit_price,
                quantity,
                get_policy_catalog(),
                selected_policy_ids,
                unit_label=unit_label,
            )
        except ConfigurationError as exc:
            logger.warning("Calculation failed for policies %s: %s", selected_policy_ids, exc)
            messages.error(
                request,
                f"This policy's tiers do not cover this quantity. Contact an administrator. ({exc})",
            )
        except (InvalidInputError, ValueError) as exc:
            messages.error(request, str(exc))
        else:
            explanations = {
                mode.value: format_explanation(
                    result,
                    mode,
                    unit_label,
                    example_quantity=_pricing_setting("MODAL_EXAMPLE_QUANTITY", 25),
                )
                for mode in ExplanationMode
            }
            context.update(
                {
                    "result": result,
                    "unit_label": unit_label,
                    "explanations": explanations,
                    "price_description": append_policy_descriptions(
                        request.POST.get("price_description"), [result], unit_label
                    ),
                }
            )

        context["form_values"] = request.POST

    return render(request, "policy_pricing/calculator.html", context)
