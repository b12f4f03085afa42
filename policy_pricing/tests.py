import datetime as dt
import io
import json

from django.core.files.uploadedfile import SimpleUploadedFile
from django.test import SimpleTestCase
from django.urls import reverse

from .discount_engine import (
    calculate,
    calculate_price_with_policies,
    compute_discount,
    split_quantity,
    validate_tiers,
)
from .domain_models import (
    CalculationRequest,
    PolicyKind,
    PolicyStatus,
    PricingPolicy,
    Tier,
)
from .exceptions import ConfigurationError, InvalidInputError, PolicyDataError
from .explanation import (
    ExplanationMode,
    append_policy_descriptions,
    describe_policy_rules,
    format_explanation,
)
from .formatting import format_money, format_percent, tier_range_label
from .policy_loader import load_policies, load_policies_from_json, normalize_tier
from .policy_resolver import is_policy_applicable, resolve_applicable_policy
from .state import get_policy_catalog, set_policy_catalog
from .templatetags.policy_extras import explanation_html, money, percent


def uniform_policy(policy_id="uniform", ratio=70.0, **kwargs):
    kwargs.setdefault("name", "七折优惠")
    return PricingPolicy(
        id=policy_id,
        kind=PolicyKind.UNIFORM_DISCOUNT,
        discount_ratio_percent=ratio,
        **kwargs,
    )


def tiered_policy(policy_id="tiered", tiers=None, **kwargs):
    kwargs.setdefault("name", "阶梯优惠")
    if tiers is None:
        tiers = (Tier(1, 5, 100.0), Tier(6, None, 80.0))
    return PricingPolicy(
        id=policy_id,
        kind=PolicyKind.TIERED_DISCOUNT,
        tiers=tuple(tiers),
        **kwargs,
    )


class PolicyResolverTests(SimpleTestCase):
    def setUp(self):
        self.now = dt.datetime(2025, 6, 1, 12, 0, tzinfo=dt.timezone.utc)

    def test_returns_first_selected_active_policy(self):
        first = uniform_policy("a", 90.0)
        second = uniform_policy("b", 50.0)

        policy = resolve_applicable_policy([first, second], ["b", "a"], as_of=self.now)

        self.assertEqual(policy, second)

    def test_inactive_policy_is_skipped(self):
        inactive = uniform_policy("a", status=PolicyStatus.INACTIVE)
        active = uniform_policy("b", 80.0)

        self.assertIsNone(resolve_applicable_policy([inactive], ["a"], as_of=self.now))
        self.assertEqual(
            resolve_applicable_policy([inactive, active], ["a", "b"], as_of=self.now), active
        )

    def test_expired_policy_is_excluded_like_inactive(self):
        expired = uniform_policy("a", valid_until=self.now - dt.timedelta(days=1))

        self.assertIsNone(resolve_applicable_policy([expired], ["a"], as_of=self.now))

    def test_policy_expiring_at_as_of_is_still_valid(self):
        policy = uniform_policy("a", valid_until=self.now)

        self.assertTrue(is_policy_applicable(policy, self.now))

    def test_naive_valid_until_is_compared_as_utc(self):
        policy = uniform_policy("a", valid_until=dt.datetime(2025, 6, 2))

        self.assertTrue(is_policy_applicable(policy, self.now))

    def test_defaults_to_now(self):
        past = uniform_policy("a", valid_until=dt.datetime(2000, 1, 1, tzinfo=dt.timezone.utc))

        self.assertIsNone(resolve_applicable_policy([past], ["a"]))

    def test_unknown_and_empty_selections_resolve_to_none(self):
        policies = [uniform_policy("a")]

        self.assertIsNone(resolve_applicable_policy(policies, [], as_of=self.now))
        self.assertIsNone(resolve_applicable_policy(policies, ["missing"], as_of=self.now))

    def test_resolution_is_deterministic(self):
        policies = [uniform_policy("a", 90.0), uniform_policy("b", 10.0)]

        picks = {resolve_applicable_policy(policies, ["a", "b"], as_of=self.now).id for _ in range(5)}

        self.assertEqual(picks, {"a"})


class DiscountEngineTests(SimpleTestCase):
    def test_uniform_discount(self):
        result = compute_discount(1000, 25, uniform_policy(ratio=70.0))

        self.assertAlmostEqual(result.original_price, 25_000)
        self.assertAlmostEqual(result.discounted_price, 17_500)
        self.assertAlmostEqual(result.discount_amount, 7_500)
        self.assertAlmostEqual(result.discount_ratio_percent, 70)
        self.assertTrue(result.has_discount)

    def test_uniform_discount_is_independent_of_quantity(self):
        policy = uniform_policy(ratio=35.0)
        for quantity in (1, 7, 250):
            result = compute_discount(19.9, quantity, policy)
            self.assertAlmostEqual(result.discounted_price, 19.9 * quantity * 35.0 / 100)

    def test_tiered_discount_is_graduated(self):
        result = compute_discount(1000, 25, tiered_policy())

        self.assertEqual([c.units for c in result.contributions], [5, 20])
        self.assertAlmostEqual(result.contributions[0].amount, 5_000)
        self.assertAlmostEqual(result.contributions[1].amount, 16_000)
        self.assertAlmostEqual(result.discounted_price, 21_000)
        self.assertAlmostEqual(result.discount_amount, 4_000)
        self.assertAlmostEqual(result.discount_ratio_percent, 84)

    def test_quantity_beyond_closed_tiers_raises_configuration_error(self):
        policy = tiered_policy(tiers=[Tier(1, 5, 100.0), Tier(6, 10, 90.0)])

        with self.assertRaises(ConfigurationError):
            compute_discount(1000, 15, policy)

    def test_gap_between_tiers_raises_configuration_error(self):
        policy = tiered_policy(tiers=[Tier(1, 5, 100.0), Tier(8, None, 90.0)])

        self.assertAlmostEqual(compute_discount(10, 5, policy).discounted_price, 50)
        with self.assertRaises(ConfigurationError):
            compute_discount(10, 9, policy)

    def test_no_policy_returns_original_price(self):
        result = compute_discount(1000, 25, None)

        self.assertIsNone(result.applied_policy)
        self.assertEqual(result.discounted_price, result.original_price)
        self.assertEqual(result.discount_amount, 0)
        self.assertEqual(result.discount_ratio_percent, 100)
        self.assertFalse(result.has_discount)

    def test_inactive_candidate_falls_back_to_original_price(self):
        inactive = uniform_policy("a", status=PolicyStatus.INACTIVE)

        result = calculate_price_with_policies(1000, 25, [inactive], ["a"])

        self.assertIsNone(result.applied_policy)
        self.assertEqual(result.discounted_price, 25_000)

    def test_single_unit_tier(self):
        policy = tiered_policy(
            tiers=[Tier(1, 2, 100.0), Tier(3, 3, 50.0), Tier(4, None, 80.0)]
        )

        result = compute_discount(100, 3, policy)

        self.assertEqual([(c.tier.start_quantity, c.units) for c in result.contributions], [(1, 2), (3, 1)])
        self.assertAlmostEqual(result.discounted_price, 250)

    def test_unit_counts_cover_quantity_exactly(self):
        tiers = validate_tiers([Tier(6, None, 70.0), Tier(1, 1, 100.0), Tier(2, 5, 90.0)])
        for quantity in range(1, 41):
            allocation = split_quantity(tiers, quantity)
            self.assertEqual(sum(units for _, units in allocation), quantity)

    def test_blended_ratio_never_rises_with_quantity(self):
        policy = tiered_policy(
            tiers=[Tier(1, 5, 100.0), Tier(6, 20, 90.0), Tier(21, None, 70.0)]
        )
        ratios = [compute_discount(50, quantity, policy).discount_ratio_percent for quantity in range(1, 61)]

        for earlier, later in zip(ratios, ratios[1:]):
            self.assertLessEqual(later, earlier + 1e-9)

    def test_calculate_from_request(self):
        request = CalculationRequest(
            unit_price=1000,
            quantity=25,
            candidate_policies=(uniform_policy("a"), tiered_policy("b")),
            selected_policy_ids=("b", "a"),
            unit_label="项",
        )

        result = calculate(request)

        self.assertEqual(result.applied_policy.id, "b")
        self.assertIn("1-5项按100%计费: ¥5,000", result.calculation_details)

    def test_calculation_details_are_plain_text(self):
        result = compute_discount(1000, 25, tiered_policy())

        self.assertEqual(
            result.calculation_details,
            "计费方式:\n"
            "1-5件按100%计费: ¥5,000\n"
            "6件及以上按80%计费: ¥16,000\n"
            "\n"
            "原价: ¥25,000\n"
            "优惠金额: ¥4,000\n"
            "最终价格: ¥21,000",
        )

    def test_invalid_amounts_are_rejected(self):
        policy = uniform_policy()
        for unit_price, quantity in ((0, 1), (-5, 1), (10, 0), (10, -1), (10, 2.5), (True, 1)):
            with self.assertRaises(InvalidInputError):
                compute_discount(unit_price, quantity, policy)

    def test_invalid_tier_lists_are_rejected(self):
        invalid_tier_sets = [
            [],
            [Tier(5, 3, 90.0)],
            [Tier(0, 3, 90.0)],
            [Tier(1, 5, 100.0), Tier(5, None, 80.0)],
            [Tier(1, None, 100.0), Tier(6, None, 80.0)],
            [Tier(1, None, 100.0), Tier(6, 10, 80.0)],
            [Tier(1, None, 120.0)],
        ]
        for tiers in invalid_tier_sets:
            with self.assertRaises(InvalidInputError):
                compute_discount(10, 3, tiered_policy(tiers=tiers))

    def test_uniform_ratio_out_of_range_is_rejected(self):
        with self.assertRaises(InvalidInputError):
            compute_discount(10, 3, uniform_policy(ratio=150.0))


class FormattingTests(SimpleTestCase):
    def test_money(self):
        self.assertEqual(format_money(12345), "¥12,345")
        self.assertEqual(format_money(17500.000000000004), "¥17,500")
        self.assertEqual(format_money(1234.5), "¥1,234.50")

    def test_percent(self):
        self.assertEqual(format_percent(70), "70%")
        self.assertEqual(format_percent(84.00000000000001), "84%")
        self.assertEqual(format_percent(83.3333), "83.33%")
        self.assertEqual(format_percent(87.5), "87.5%")

    def test_tier_labels(self):
        self.assertEqual(tier_range_label(Tier(6, None, 80.0), "件"), "6件及以上")
        self.assertEqual(tier_range_label(Tier(3, 3, 50.0), "件"), "第3件")
        self.assertEqual(tier_range_label(Tier(1, 5, 100.0), "项"), "1-5项")


class ExplanationTests(SimpleTestCase):
    def test_hover_shows_name_and_rules_only(self):
        result = compute_discount(1000, 25, uniform_policy())

        self.assertEqual(format_explanation(result, "hover", "件"), "七折优惠\n优惠说明: 按70%计费")

    def test_tier_rules_are_sorted(self):
        policy = tiered_policy(tiers=[Tier(6, None, 80.0), Tier(1, 5, 100.0)])

        self.assertEqual(
            describe_policy_rules(policy, "件"), "1-5件按100%计费，6件及以上按80%计费"
        )

    def test_append_mode(self):
        result = compute_discount(1000, 25, tiered_policy())

        self.assertEqual(
            format_explanation(result, ExplanationMode.APPEND, "件"),
            "优惠说明: 1-5件按100%计费，6件及以上按80%计费",
        )

    def test_modal_uses_fixed_example_quantity(self):
        result = compute_discount(1000, 3, uniform_policy())

        self.assertEqual(
            format_explanation(result, "modal", "件"),
            "七折优惠\n"
            "计费说明：\n"
            "统一按照70%计费\n"
            "政策有效期：永久有效\n"
            "\n"
            "价格计算示例（以25件为例）：\n"
            "折扣计算：¥1,000 × 25件 × 70% = ¥17,500\n"
            "原价: ¥25,000\n"
            "优惠金额: ¥7,500\n"
            "最终价格: ¥17,500",
        )

    def test_modal_for_tiered_policy(self):
        policy = tiered_policy(
            summary="批量越多越优惠",
            valid_until=dt.datetime(2030, 12, 31, tzinfo=dt.timezone.utc),
        )
        result = compute_discount(1000, 2, policy)

        text = format_explanation(result, "modal", "件")

        self.assertIn("政策说明：批量越多越优惠", text)
        self.assertIn("政策有效期至：2030-12-31", text)
        self.assertIn("1-5件：¥1,000 × 5件 × 100% = ¥5,000", text)
        self.assertIn("6件及以上：¥1,000 × 20件 × 80% = ¥16,000", text)
        self.assertTrue(text.endswith("最终价格: ¥21,000"))

    def test_modal_with_closed_tiers_uses_largest_covered_quantity(self):
        policy = tiered_policy(tiers=[Tier(1, 10, 90.0)])
        result = compute_discount(100, 4, policy)

        self.assertIn("以10件为例", format_explanation(result, "modal", "件"))

    def test_modal_with_gapped_tiers_uses_covered_prefix(self):
        policy = tiered_policy(tiers=[Tier(1, 5, 100.0), Tier(8, None, 90.0)])
        result = compute_discount(10, 5, policy)

        text = format_explanation(result, "modal", "件")

        self.assertIn("以5件为例", text)
        self.assertIn("1-5件：¥10 × 5件 × 100% = ¥50", text)
        self.assertTrue(text.endswith("最终价格: ¥50"))

    def test_rules_for_tiered_policy_without_tiers(self):
        policy = tiered_policy(tiers=[], summary="按项目另议")

        self.assertEqual(describe_policy_rules(policy, "件"), "类型：阶梯折扣，说明：按项目另议")
        self.assertEqual(describe_policy_rules(tiered_policy(tiers=[]), "件"), "类型：阶梯折扣")

    def test_no_policy(self):
        result = compute_discount(1000, 2, None)

        self.assertEqual(format_explanation(result, "hover", "件"), "未应用价格政策")
        self.assertEqual(
            format_explanation(result, "modal", "件"),
            "未应用价格政策\n原价: ¥2,000\n优惠金额: ¥0\n最终价格: ¥2,000",
        )

    def test_formatting_is_idempotent(self):
        result = compute_discount(1000, 25, tiered_policy())
        for mode in ExplanationMode:
            self.assertEqual(
                format_explanation(result, mode, "件"), format_explanation(result, mode, "件")
            )

    def test_unknown_mode_is_rejected(self):
        result = compute_discount(1000, 25, None)

        with self.assertRaises(InvalidInputError):
            format_explanation(result, "popup", "件")

    def test_append_policy_descriptions(self):
        result = compute_discount(1000, 25, uniform_policy())
        untouched = compute_discount(1000, 25, None)

        self.assertEqual(
            append_policy_descriptions("按件计费", [result]), "按件计费\n优惠说明: 按70%计费"
        )
        self.assertEqual(append_policy_descriptions("—", [result]), "优惠说明: 按70%计费")
        self.assertEqual(append_policy_descriptions("按件计费", [untouched]), "按件计费")
        self.assertEqual(append_policy_descriptions("", []), "—")


class PolicyLoaderTests(SimpleTestCase):
    def test_legacy_tier_aliases(self):
        self.assertEqual(
            normalize_tier({"minQuantity": 1, "maxQuantity": 5, "discountRatio": 100}),
            Tier(1, 5, 100.0),
        )
        self.assertEqual(
            normalize_tier({"minAmount": 6, "maxAmount": None, "discountRatio": 80}),
            Tier(6, None, 80.0),
        )
        self.assertEqual(
            normalize_tier({"startQuantity": 6, "endQuantity": "Infinity", "discountRatio": 80}),
            Tier(6, None, 80.0),
        )

    def test_load_policies(self):
        records = [
            {
                "_id": "p1",
                "name": "八五折",
                "alias": "discount-85",
                "type": "uniform_discount",
                "discountRatio": 0.85,
                "status": "active",
                "validUntil": "2030-01-01T00:00:00Z",
            },
            {
                "_id": "p2",
                "name": "阶梯",
                "type": "tiered_discount",
                "status": "inactive",
                "validUntil": None,
                "tierSettings": [
                    {"id": "t2", "startQuantity": 6, "discountRatio": 80},
                    {"id": "t1", "minQuantity": 1, "maxQuantity": 5, "discountRatio": 100},
                ],
            },
        ]

        uniform, tiered = load_policies(records)

        self.assertEqual(uniform.kind, PolicyKind.UNIFORM_DISCOUNT)
        self.assertAlmostEqual(uniform.discount_ratio_percent, 85)
        self.assertEqual(uniform.valid_until, dt.datetime(2030, 1, 1, tzinfo=dt.timezone.utc))
        self.assertEqual(tiered.status, PolicyStatus.INACTIVE)
        self.assertIsNone(tiered.valid_until)
        self.assertEqual(tiered.sorted_tiers(), [Tier(1, 5, 100.0), Tier(6, None, 80.0)])

    def test_load_policies_from_json_envelope(self):
        payload = {"success": True, "data": [{"_id": "p1", "name": "x", "type": "uniform_discount", "discountRatio": 70}]}

        policies = load_policies_from_json(io.BytesIO(json.dumps(payload).encode("utf-8")))

        self.assertEqual([policy.id for policy in policies], ["p1"])

    def test_malformed_records_raise(self):
        bad_inputs = [
            "not json",
            json.dumps({"data": "nope"}),
            json.dumps([{"name": "no id", "type": "uniform_discount", "discountRatio": 70}]),
            json.dumps([{"_id": "p1", "type": "bogus"}]),
            json.dumps([{"_id": "p1", "type": "uniform_discount"}]),
            json.dumps([{"_id": "p1", "type": "tiered_discount", "tierSettings": [{"discountRatio": 80}]}]),
            json.dumps([{"_id": "p1", "type": "tiered_discount", "tierSettings": [5]}]),
            json.dumps([{"_id": "p1", "type": "tiered_discount", "tierSettings": ["x"]}]),
            json.dumps([{"_id": "p1", "type": "uniform_discount", "discountRatio": 70, "validUntil": "soon"}]),
        ]
        for raw in bad_inputs:
            with self.assertRaises(PolicyDataError):
                load_policies_from_json(io.StringIO(raw))


class TemplateFilterTests(SimpleTestCase):
    def test_money_and_percent(self):
        self.assertEqual(money(21000.0), "¥21,000")
        self.assertEqual(percent(84.00000000000001), "84%")
        self.assertEqual(money("n/a"), "")

    def test_explanation_html_escapes_and_breaks_lines(self):
        self.assertEqual(explanation_html("<b>原价</b>\n最终价格"), "&lt;b&gt;原价&lt;/b&gt;<br>最终价格")


class CalculatorViewTests(SimpleTestCase):
    def setUp(self):
        set_policy_catalog(
            [
                uniform_policy("uniform"),
                tiered_policy("tiered"),
                tiered_policy("closed", tiers=[Tier(1, 10, 90.0)], name="封顶阶梯"),
                tiered_policy("gapped", tiers=[Tier(1, 5, 100.0), Tier(8, None, 90.0)], name="间断阶梯"),
            ]
        )

    def tearDown(self):
        set_policy_catalog([])

    def test_uniform_calculation(self):
        response = self.client.post(
            reverse("calculator"),
            {"unit_price": "1000", "quantity": "25", "unit_label": "件", "policy_ids": ["uniform"]},
        )

        self.assertEqual(response.status_code, 200)
        self.assertContains(response, "¥17,500")
        self.assertContains(response, "按70%计费")
        self.assertEqual(response.context["result"].applied_policy.id, "uniform")

    def test_price_description_gets_policy_rules(self):
        response = self.client.post(
            reverse("calculator"),
            {
                "unit_price": "1000",
                "quantity": "25",
                "policy_ids": ["tiered"],
                "price_description": "按件计费",
            },
        )

        self.assertEqual(
            response.context["price_description"],
            "按件计费\n优惠说明: 1-5件按100%计费，6件及以上按80%计费",
        )

    def test_uncovered_quantity_is_reported(self):
        response = self.client.post(
            reverse("calculator"),
            {"unit_price": "1000", "quantity": "15", "policy_ids": ["closed"]},
        )

        self.assertEqual(response.status_code, 200)
        self.assertNotIn("result", response.context)
        self.assertContains(response, "do not cover this quantity")

    def test_covered_quantity_under_gapped_tiers_keeps_result(self):
        response = self.client.post(
            reverse("calculator"),
            {"unit_price": "10", "quantity": "5", "policy_ids": ["gapped"]},
        )

        self.assertEqual(response.status_code, 200)
        self.assertAlmostEqual(response.context["result"].discounted_price, 50)
        self.assertIn("以5件为例", response.context["explanations"]["modal"])
        self.assertNotContains(response, "do not cover this quantity")

    def test_invalid_quantity_is_reported(self):
        response = self.client.post(
            reverse("calculator"), {"unit_price": "1000", "quantity": "abc"}
        )

        self.assertContains(response, "Quantity must be a whole number.")

    def test_home_redirects_to_calculator(self):
        response = self.client.get(reverse("home"))

        self.assertRedirects(response, reverse("calculator"), fetch_redirect_response=False)


class PolicyUploadViewTests(SimpleTestCase):
    def tearDown(self):
        set_policy_catalog([])

    def test_upload_replaces_catalog(self):
        records = [{"_id": "p1", "name": "七折", "type": "uniform_discount", "discountRatio": 70}]
        upload = SimpleUploadedFile(
            "policies.json", json.dumps(records).encode("utf-8"), content_type="application/json"
        )

        response = self.client.post(reverse("policy_upload"), {"policy_file": upload})

        self.assertEqual(response.status_code, 200)
        self.assertEqual([policy.id for policy in get_policy_catalog()], ["p1"])
        self.assertContains(response, "Loaded 1 pricing policies.")

    def test_upload_rejects_non_json_file(self):
        upload = SimpleUploadedFile("policies.csv", b"a,b\n", content_type="text/csv")

        response = self.client.post(reverse("policy_upload"), {"policy_file": upload})

        self.assertContains(response, "The uploaded file must be a .json file.")
        self.assertEqual(get_policy_catalog(), [])
