"""
Tests for the rate resolution algorithm.

Covers:
- Priority chain (product, vendor, category, global, system default)
- Half-open validity windows
- Membership discount and floor
- Rate clamping and overlap tie-breaking
- Banker's rounding per currency, refunds
"""

from datetime import datetime, timedelta, timezone
from decimal import Decimal

import pytest

from commission_engine.exceptions import UnresolvableLineItem
from commission_engine.models.override import OverrideVariant
from commission_engine.services.membership import MembershipDiscountTable
from commission_engine.services.resolution import (
    OverrideCandidate,
    OverrideSnapshot,
    ResolutionPolicy,
    WarningCode,
    compute_commission_amount,
    resolve,
)

from conftest import AT, make_item

CREATED = datetime(2023, 1, 1, tzinfo=timezone.utc)
NO_DISCOUNTS = MembershipDiscountTable()


def _override(override_id, variant, scope_id, percentage, valid_from=None, valid_to=None, created_at=CREATED):
    return OverrideCandidate(
        id=override_id,
        variant=variant,
        scope_id=scope_id,
        percentage=Decimal(percentage),
        valid_from=valid_from,
        valid_to=valid_to,
        created_at=created_at,
    )


def _snapshot(*candidates, at=AT):
    return OverrideSnapshot(at=at, candidates=tuple(candidates))


ALL_TIERS = (
    _override(1, OverrideVariant.PRODUCT, "p-1", "6.0"),
    _override(2, OverrideVariant.VENDOR, "v-1", "7.0"),
    _override(3, OverrideVariant.CATEGORY, "c-1", "8.0"),
    _override(4, OverrideVariant.GLOBAL, None, "9.0"),
)


# ── Scenarios ─────────────────────────────────────────────


class TestScenarios:
    def test_scenario_a_product_override_with_gold_discount(self, policy):
        override = _override(
            10, OverrideVariant.PRODUCT, "p-1", "6.0",
            valid_from=datetime(2024, 1, 1, tzinfo=timezone.utc),
            valid_to=datetime(2024, 12, 31, tzinfo=timezone.utc),
        )
        item = make_item(amount=Decimal("1000000"), vendor_tier="Gold")
        discounts = MembershipDiscountTable({"gold": Decimal("3")})

        result = resolve(item, _snapshot(override), discounts, policy)

        assert result.selected_tier == OverrideVariant.PRODUCT
        assert result.override_id == 10
        assert result.base_rate == Decimal("6.0")
        assert result.discount_applied == Decimal("3")
        assert result.final_rate == Decimal("3.0")
        assert result.commission_amount == Decimal("30000.00")
        assert result.currency == "SYP"
        assert result.warnings == ()

    def test_scenario_b_system_default(self, policy):
        result = resolve(make_item(), _snapshot(), NO_DISCOUNTS, policy)

        assert result.selected_tier == OverrideVariant.GLOBAL
        assert result.used_system_default is True
        assert result.override_id is None
        assert result.base_rate == Decimal("5.0")
        assert result.tier_label == "global(default)"
        assert [s.step for s in result.trail] == [
            "product", "vendor", "category", "global",
            "system_default", "membership_discount", "commission_amount",
        ]


# ── Priority chain ────────────────────────────────────────


class TestPriority:
    def test_product_beats_everything(self, policy):
        result = resolve(make_item(), _snapshot(*ALL_TIERS), NO_DISCOUNTS, policy)
        assert result.selected_tier == OverrideVariant.PRODUCT
        assert result.base_rate == Decimal("6.0")

    def test_vendor_when_no_product(self, policy):
        result = resolve(make_item(), _snapshot(*ALL_TIERS[1:]), NO_DISCOUNTS, policy)
        assert result.selected_tier == OverrideVariant.VENDOR
        assert result.override_id == 2

    def test_category_when_no_product_or_vendor(self, policy):
        result = resolve(make_item(), _snapshot(*ALL_TIERS[2:]), NO_DISCOUNTS, policy)
        assert result.selected_tier == OverrideVariant.CATEGORY
        assert result.base_rate == Decimal("8.0")

    def test_global_override_beats_default(self, policy):
        result = resolve(make_item(), _snapshot(ALL_TIERS[3]), NO_DISCOUNTS, policy)
        assert result.selected_tier == OverrideVariant.GLOBAL
        assert result.used_system_default is False
        assert result.tier_label == "global"

    def test_other_scopes_are_ignored(self, policy):
        snapshot = _snapshot(
            _override(1, OverrideVariant.PRODUCT, "p-2", "1.0"),
            _override(2, OverrideVariant.VENDOR, "v-2", "2.0"),
        )
        result = resolve(make_item(), snapshot, NO_DISCOUNTS, policy)
        assert result.used_system_default is True

    def test_trail_stops_at_first_match(self, policy):
        result = resolve(make_item(), _snapshot(*ALL_TIERS[1:]), NO_DISCOUNTS, policy)
        steps = [(s.step, s.outcome) for s in result.trail]
        assert steps[:2] == [("product", "no_active_override"), ("vendor", "matched")]
        assert "category" not in [s.step for s in result.trail]
        assert result.trail[1].override_id == 2


# ── Time windows ──────────────────────────────────────────


class TestTimeWindows:
    def test_window_end_is_exclusive(self, policy):
        override = _override(1, OverrideVariant.PRODUCT, "p-1", "6.0", valid_to=AT)
        result = resolve(make_item(), _snapshot(override), NO_DISCOUNTS, policy)
        assert result.used_system_default is True

    def test_window_start_is_inclusive(self, policy):
        override = _override(1, OverrideVariant.PRODUCT, "p-1", "6.0", valid_from=AT)
        result = resolve(make_item(), _snapshot(override), NO_DISCOUNTS, policy)
        assert result.selected_tier == OverrideVariant.PRODUCT

    def test_future_override_does_not_apply(self, policy):
        override = _override(
            1, OverrideVariant.VENDOR, "v-1", "6.0",
            valid_from=AT + timedelta(seconds=1),
        )
        result = resolve(make_item(), _snapshot(override), NO_DISCOUNTS, policy)
        assert result.used_system_default is True

    def test_expired_product_falls_through_to_vendor(self, policy):
        snapshot = _snapshot(
            _override(1, OverrideVariant.PRODUCT, "p-1", "6.0", valid_to=AT - timedelta(days=1)),
            _override(2, OverrideVariant.VENDOR, "v-1", "7.0"),
        )
        result = resolve(make_item(), snapshot, NO_DISCOUNTS, policy)
        assert result.selected_tier == OverrideVariant.VENDOR

    def test_naive_timestamp_is_utc(self, policy):
        override = _override(1, OverrideVariant.PRODUCT, "p-1", "6.0", valid_from=AT)
        item = make_item(at=datetime(2024, 6, 1))
        result = resolve(item, _snapshot(override), NO_DISCOUNTS, policy)
        assert result.selected_tier == OverrideVariant.PRODUCT
        assert result.evaluated_at == AT


# ── Membership discount and floor ─────────────────────────


class TestDiscount:
    def test_tier_lookup_is_case_insensitive(self, policy):
        discounts = MembershipDiscountTable({"Gold": Decimal("1.5")})
        result = resolve(make_item(vendor_tier="GOLD"), _snapshot(), discounts, policy)
        assert result.discount_applied == Decimal("1.5")
        assert result.final_rate == Decimal("3.5")

    def test_unknown_tier_gets_no_discount_and_a_warning(self, policy):
        discounts = MembershipDiscountTable({"gold": Decimal("1")})
        result = resolve(make_item(vendor_tier="diamond"), _snapshot(), discounts, policy)
        assert result.discount_applied == 0
        assert result.final_rate == Decimal("5.0")
        assert [w.code for w in result.warnings] == [WarningCode.UNKNOWN_MEMBERSHIP_TIER]

    def test_no_tier_is_not_a_warning(self, policy):
        result = resolve(make_item(vendor_tier=None), _snapshot(), NO_DISCOUNTS, policy)
        assert result.discount_applied == 0
        assert result.warnings == ()

    def test_floor_holds_final_rate(self):
        policy = ResolutionPolicy(
            default_rate=Decimal("3.0"),
            discount_floor=Decimal("2.0"),
            currency_minor_units={"SYP": 2},
        )
        discounts = MembershipDiscountTable({"platinum": Decimal("2.5")})
        result = resolve(make_item(vendor_tier="platinum"), _snapshot(), discounts, policy)

        assert result.final_rate == Decimal("2.0")
        assert "floor" in [s.step for s in result.trail]

    def test_discount_larger_than_rate_stops_at_zero(self, policy):
        discounts = MembershipDiscountTable({"platinum": Decimal("8")})
        result = resolve(make_item(vendor_tier="platinum"), _snapshot(), discounts, policy)
        assert result.final_rate == 0
        assert result.commission_amount == 0

    def test_final_rate_never_above_base_rate(self, policy):
        discounts = MembershipDiscountTable({"silver": Decimal("0.75")})
        for candidates in (ALL_TIERS, ALL_TIERS[1:], ALL_TIERS[2:], ALL_TIERS[3:], ()):
            result = resolve(make_item(vendor_tier="silver"), _snapshot(*candidates), discounts, policy)
            assert result.final_rate <= result.base_rate
            assert result.final_rate >= policy.discount_floor


# ── Clamping and tie-breaks ───────────────────────────────


class TestAnomalies:
    def test_out_of_range_rate_is_clamped_with_warning(self, policy):
        override = _override(1, OverrideVariant.GLOBAL, None, "120")
        result = resolve(make_item(), _snapshot(override), NO_DISCOUNTS, policy)

        assert result.base_rate == Decimal("100")
        assert result.final_rate == Decimal("100")
        assert result.warnings[0].code == WarningCode.RATE_CLAMPED

    def test_overlap_resolved_by_most_recent_creation(self, policy):
        older = _override(1, OverrideVariant.PRODUCT, "p-1", "6.0", created_at=CREATED)
        newer = _override(2, OverrideVariant.PRODUCT, "p-1", "4.0", created_at=CREATED + timedelta(days=1))
        result = resolve(make_item(), _snapshot(older, newer), NO_DISCOUNTS, policy)

        assert result.override_id == 2
        assert result.base_rate == Decimal("4.0")
        assert result.warnings[0].code == WarningCode.OVERLAP_TIE_BROKEN
        assert "#2" in result.warnings[0].message


# ── Amounts and rounding ──────────────────────────────────


class TestRounding:
    @pytest.mark.parametrize(
        "amount,rate,expected",
        [
            ("1.00", "0.5", "0.00"),
            ("3.00", "0.5", "0.02"),
            ("100.005", "7.5", "7.50"),
            ("1000000", "3.0", "30000.00"),
        ],
    )
    def test_half_even_to_minor_unit(self, amount, rate, expected):
        assert compute_commission_amount(Decimal(amount), Decimal(rate), 2) == Decimal(expected)

    def test_zero_decimal_currency(self, policy):
        result = resolve(make_item(amount=Decimal("1001"), currency="JPY"), _snapshot(), NO_DISCOUNTS, policy)
        assert result.commission_amount == Decimal("50")
        assert result.commission_amount.as_tuple().exponent == 0

    def test_three_decimal_currency(self):
        assert compute_commission_amount(Decimal("1.234"), Decimal("10"), 3) == Decimal("0.123")

    def test_refund_is_symmetric(self, policy):
        sale = resolve(make_item(amount=Decimal("200")), _snapshot(), NO_DISCOUNTS, policy)
        refund = resolve(make_item(amount=Decimal("-200")), _snapshot(), NO_DISCOUNTS, policy)
        assert sale.commission_amount == Decimal("10.00")
        assert refund.commission_amount == Decimal("-10.00")

    def test_deterministic(self, policy):
        snapshot = _snapshot(*ALL_TIERS)
        discounts = MembershipDiscountTable({"gold": Decimal("1.25")})
        item = make_item(amount=Decimal("12345.678"), vendor_tier="gold")
        first = resolve(item, snapshot, discounts, policy)
        second = resolve(item, snapshot, discounts, policy)
        assert first.to_payload() == second.to_payload()

    def test_excess_amount_precision_is_reported(self, policy):
        result = resolve(make_item(amount=Decimal("10.1234567")), _snapshot(), NO_DISCOUNTS, policy)
        assert result.amount == Decimal("10.123457")
        assert [w.code for w in result.warnings] == [WarningCode.AMOUNT_QUANTIZED]

        exact = resolve(make_item(amount=Decimal("10.5")), _snapshot(), NO_DISCOUNTS, policy)
        assert exact.warnings == ()


# ── Unresolvable input ────────────────────────────────────


class TestUnresolvable:
    def test_missing_category(self, policy):
        with pytest.raises(UnresolvableLineItem) as exc_info:
            resolve(make_item(category_id=None), _snapshot(), NO_DISCOUNTS, policy)
        assert "no category" in exc_info.value.message

    def test_unknown_currency(self, policy):
        with pytest.raises(UnresolvableLineItem):
            resolve(make_item(currency="XXX"), _snapshot(), NO_DISCOUNTS, policy)

    def test_non_finite_amount(self, policy):
        with pytest.raises(UnresolvableLineItem):
            resolve(make_item(amount=Decimal("NaN")), _snapshot(), NO_DISCOUNTS, policy)

    def test_missing_timestamp(self, policy):
        with pytest.raises(UnresolvableLineItem):
            resolve(make_item(at=None), _snapshot(), NO_DISCOUNTS, policy)
