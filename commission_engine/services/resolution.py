"""
Commission rate resolution.

Rules:
- Overrides are tried in priority order: product, vendor, category, global.
  The first one active at the line item's timestamp wins.
- With no global override the system default rate applies (configured,
  never unresolved).
- The vendor's membership discount is subtracted from the base rate and the
  result is held at or above the configured floor.
- Rates are always kept within [0, 100]; any clamping is reported.
- commission_amount = amount * final_rate / 100, banker's rounding to the
  currency's minor unit. Negative amounts (refunds) resolve symmetrically.

Everything here is pure: all store reads happen before resolve() is called,
through an OverrideSnapshot taken at a single instant.
"""

from dataclasses import dataclass, field
from datetime import datetime
from decimal import ROUND_HALF_EVEN, Decimal, InvalidOperation, localcontext
from enum import Enum
from typing import Any, Callable, Dict, Mapping, Optional, Tuple

from commission_engine.exceptions import UnresolvableLineItem
from commission_engine.models.override import OverrideVariant
from commission_engine.services.membership import MembershipDiscountTable
from commission_engine.utils.timeutils import as_utc

HUNDRED = Decimal("100")
ZERO = Decimal("0")
RATE_QUANTUM = Decimal("0.0001")
AMOUNT_QUANTUM = Decimal("0.000001")


class WarningCode(str, Enum):
    """Non-fatal conditions met while resolving."""
    RATE_CLAMPED = "rate_clamped"
    OVERLAP_TIE_BROKEN = "overlap_tie_broken"
    UNKNOWN_MEMBERSHIP_TIER = "unknown_membership_tier"
    AMOUNT_QUANTIZED = "amount_quantized"


@dataclass(frozen=True)
class ResolutionWarning:
    code: WarningCode
    message: str

    def to_dict(self) -> Dict[str, str]:
        return {"code": self.code.value, "message": self.message}


@dataclass(frozen=True)
class TrailStep:
    """One step of the decision trail."""

    step: str
    outcome: str
    detail: str
    override_id: Optional[int] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "step": self.step,
            "outcome": self.outcome,
            "detail": self.detail,
            "override_id": self.override_id,
        }


@dataclass(frozen=True)
class LineItem:
    """
    Facts about one sold line item, supplied by the Order component.

    vendor_tier comes from the Vendor/Membership component; the engine
    never looks it up itself.
    """

    line_item_ref: str
    product_id: str
    vendor_id: str
    category_id: Optional[str]
    amount: Decimal
    currency: str
    at: datetime
    vendor_tier: Optional[str] = None

    def to_payload(self) -> Dict[str, Any]:
        return {
            "line_item_ref": self.line_item_ref,
            "product_id": self.product_id,
            "vendor_id": self.vendor_id,
            "category_id": self.category_id,
            "amount": str(self.amount),
            "currency": self.currency,
            "at": as_utc(self.at).isoformat() if self.at else None,
            "vendor_tier": self.vendor_tier,
        }


@dataclass(frozen=True)
class OverrideCandidate:
    """Plain copy of an override row, detached from the ORM session."""

    id: int
    variant: OverrideVariant
    scope_id: Optional[str]
    percentage: Decimal
    valid_from: Optional[datetime]
    valid_to: Optional[datetime]
    created_at: datetime

    @classmethod
    def from_model(cls, row) -> "OverrideCandidate":
        return cls(
            id=row.id,
            variant=row.variant,
            scope_id=row.scope_id,
            percentage=Decimal(row.percentage).quantize(RATE_QUANTUM),
            valid_from=as_utc(row.valid_from),
            valid_to=as_utc(row.valid_to),
            created_at=as_utc(row.created_at),
        )

    def is_active_at(self, at: datetime) -> bool:
        if self.valid_from is not None and at < self.valid_from:
            return False
        if self.valid_to is not None and at >= self.valid_to:
            return False
        return True


@dataclass(frozen=True)
class OverrideMatch:
    """The override chosen for a tier, plus how many were active at once."""

    override: OverrideCandidate
    contenders: Tuple[int, ...] = ()

    @property
    def tie_broken(self) -> bool:
        return len(self.contenders) > 1


@dataclass(frozen=True)
class OverrideSnapshot:
    """
    Overrides relevant to one line item, all read at the same instant.

    Candidates that are not active at `at` are ignored.
    """

    at: datetime
    candidates: Tuple[OverrideCandidate, ...] = ()

    def match(self, variant: OverrideVariant, scope_id: Optional[str]) -> Optional[OverrideMatch]:
        active = [
            c for c in self.candidates
            if c.variant == variant and c.scope_id == scope_id and c.is_active_at(self.at)
        ]
        if not active:
            return None
        # Overlap should never exist; newest created wins if it does
        active.sort(key=lambda c: (c.created_at, c.id), reverse=True)
        return OverrideMatch(override=active[0], contenders=tuple(c.id for c in active))


@dataclass(frozen=True)
class ResolutionPolicy:
    """Externally configured constants the algorithm depends on."""

    default_rate: Decimal
    discount_floor: Decimal
    currency_minor_units: Mapping[str, int]

    @classmethod
    def from_settings(cls, settings) -> "ResolutionPolicy":
        return cls(
            default_rate=Decimal(settings.default_commission_rate),
            discount_floor=Decimal(settings.discount_floor),
            currency_minor_units=dict(settings.currency_minor_units),
        )

    def minor_unit(self, currency: str) -> int:
        try:
            return self.currency_minor_units[currency]
        except KeyError:
            raise UnresolvableLineItem(
                f"Unsupported currency '{currency}'",
                details={"currency": currency},
            ) from None


@dataclass(frozen=True)
class CommissionResolution:
    """Full outcome of evaluating one line item, including its trail."""

    line_item_ref: str
    product_id: str
    vendor_id: str
    category_id: str
    vendor_tier: Optional[str]
    evaluated_at: datetime
    selected_tier: OverrideVariant
    used_system_default: bool
    override_id: Optional[int]
    base_rate: Decimal
    discount_applied: Decimal
    final_rate: Decimal
    amount: Decimal
    currency: str
    commission_amount: Decimal
    trail: Tuple[TrailStep, ...] = ()
    warnings: Tuple[ResolutionWarning, ...] = field(default=())

    @property
    def tier_label(self) -> str:
        if self.used_system_default:
            return f"{self.selected_tier.value}(default)"
        return self.selected_tier.value

    def to_payload(self) -> Dict[str, Any]:
        """Field values as stored on the audit record."""
        return {
            "line_item_ref": self.line_item_ref,
            "product_id": self.product_id,
            "vendor_id": self.vendor_id,
            "category_id": self.category_id,
            "vendor_tier": self.vendor_tier,
            "evaluated_at": self.evaluated_at,
            "selected_tier": self.selected_tier.value,
            "used_system_default": self.used_system_default,
            "override_id": self.override_id,
            "base_rate": self.base_rate,
            "discount_applied": self.discount_applied,
            "final_rate": self.final_rate,
            "amount": self.amount,
            "currency": self.currency,
            "commission_amount": self.commission_amount,
            "trail": [s.to_dict() for s in self.trail],
            "warnings": [w.to_dict() for w in self.warnings],
        }


ScopeGetter = Callable[[LineItem], Optional[str]]

# Tried in order; the first tier with an active override wins
PRIORITY_CHAIN: Tuple[Tuple[OverrideVariant, ScopeGetter], ...] = (
    (OverrideVariant.PRODUCT, lambda item: item.product_id),
    (OverrideVariant.VENDOR, lambda item: item.vendor_id),
    (OverrideVariant.CATEGORY, lambda item: item.category_id),
    (OverrideVariant.GLOBAL, lambda item: None),
)


def validate_line_item(item: LineItem, policy: ResolutionPolicy) -> None:
    """Raise UnresolvableLineItem when the item lacks facts resolution needs."""
    payload = item.to_payload()
    for name in ("line_item_ref", "product_id", "vendor_id"):
        if not getattr(item, name):
            raise UnresolvableLineItem(f"Line item is missing {name}", details=payload)
    if not item.category_id:
        raise UnresolvableLineItem(
            f"Line item {item.line_item_ref} has no category (deleted or unassigned)",
            details=payload,
        )
    if item.at is None:
        raise UnresolvableLineItem(
            f"Line item {item.line_item_ref} has no timestamp", details=payload
        )
    try:
        amount = Decimal(item.amount)
    except (InvalidOperation, TypeError, ValueError):
        raise UnresolvableLineItem(
            f"Line item {item.line_item_ref} has a malformed amount", details=payload
        ) from None
    if not amount.is_finite():
        raise UnresolvableLineItem(
            f"Line item {item.line_item_ref} has a non-finite amount", details=payload
        )
    policy.minor_unit(item.currency)


def _clamp_rate(
    rate: Decimal,
    label: str,
    warnings: list,
) -> Decimal:
    if rate < ZERO or rate > HUNDRED:
        clamped = min(max(rate, ZERO), HUNDRED)
        warnings.append(ResolutionWarning(
            code=WarningCode.RATE_CLAMPED,
            message=f"{label} {rate}% outside [0, 100]; clamped to {clamped}%",
        ))
        return clamped
    return rate


def compute_commission_amount(amount: Decimal, rate: Decimal, minor_unit: int) -> Decimal:
    """amount * rate / 100 with ROUND_HALF_EVEN to the currency's minor unit."""
    quantum = Decimal(1).scaleb(-minor_unit)
    with localcontext() as ctx:
        ctx.prec = 50
        return (amount * rate / HUNDRED).quantize(quantum, rounding=ROUND_HALF_EVEN)


def resolve(
    item: LineItem,
    snapshot: OverrideSnapshot,
    discounts: MembershipDiscountTable,
    policy: ResolutionPolicy,
) -> CommissionResolution:
    """
    Resolve the commission for one line item.

    Args:
        item: Line item facts (identifiers only, no entity graph)
        snapshot: Overrides read at item.at
        discounts: Membership discount table
        policy: Default rate, floor and currency minor units

    Returns:
        CommissionResolution with the decision trail and any warnings
    """
    validate_line_item(item, policy)

    at = as_utc(item.at)
    raw_amount = Decimal(item.amount)
    amount = raw_amount.quantize(AMOUNT_QUANTUM, rounding=ROUND_HALF_EVEN)
    trail: list[TrailStep] = []
    warnings: list[ResolutionWarning] = []
    if amount != raw_amount:
        warnings.append(ResolutionWarning(
            code=WarningCode.AMOUNT_QUANTIZED,
            message=f"amount {raw_amount} rounded to {amount} before resolving",
        ))

    match: Optional[OverrideMatch] = None
    selected_tier = OverrideVariant.GLOBAL
    for variant, scope_of in PRIORITY_CHAIN:
        scope_id = scope_of(item)
        match = snapshot.match(variant, scope_id)
        scope_text = scope_id if scope_id is not None else "all"
        if match is None:
            trail.append(TrailStep(
                step=variant.value,
                outcome="no_active_override",
                detail=f"no {variant.value} override for {scope_text} active at {at.isoformat()}",
            ))
            continue

        chosen = match.override
        if match.tie_broken:
            warnings.append(ResolutionWarning(
                code=WarningCode.OVERLAP_TIE_BROKEN,
                message=(
                    f"{len(match.contenders)} {variant.value} overrides for {scope_text} "
                    f"active at once (ids {list(match.contenders)}); "
                    f"used most recently created #{chosen.id}"
                ),
            ))
        trail.append(TrailStep(
            step=variant.value,
            outcome="matched",
            detail=f"{variant.value} override for {scope_text}: {chosen.percentage}%",
            override_id=chosen.id,
        ))
        selected_tier = variant
        break

    if match is None:
        base_rate = Decimal(policy.default_rate).quantize(RATE_QUANTUM)
        trail.append(TrailStep(
            step="system_default",
            outcome="applied",
            detail=f"no override matched; system default {base_rate}%",
        ))
    else:
        base_rate = match.override.percentage

    base_rate = _clamp_rate(base_rate, "base rate", warnings)

    tier = item.vendor_tier
    if tier and not discounts.knows(tier):
        warnings.append(ResolutionWarning(
            code=WarningCode.UNKNOWN_MEMBERSHIP_TIER,
            message=f"membership tier '{tier}' is unknown; no discount applied",
        ))
    discount = discounts.discount_for(tier)
    trail.append(TrailStep(
        step="membership_discount",
        outcome="applied" if discount else "none",
        detail=f"tier {tier or 'none'}: -{discount}%",
    ))

    floor = Decimal(policy.discount_floor)
    after_discount = base_rate - discount
    final_rate = max(floor, after_discount)
    if final_rate != after_discount:
        trail.append(TrailStep(
            step="floor",
            outcome="applied",
            detail=f"{after_discount}% below floor; raised to {floor}%",
        ))
    final_rate = _clamp_rate(final_rate, "final rate", warnings)
    final_rate = final_rate.quantize(RATE_QUANTUM, rounding=ROUND_HALF_EVEN)

    minor_unit = policy.minor_unit(item.currency)
    commission_amount = compute_commission_amount(amount, final_rate, minor_unit)
    trail.append(TrailStep(
        step="commission_amount",
        outcome="computed",
        detail=f"{amount} {item.currency} x {final_rate}% = {commission_amount}",
    ))

    return CommissionResolution(
        line_item_ref=item.line_item_ref,
        product_id=item.product_id,
        vendor_id=item.vendor_id,
        category_id=item.category_id,
        vendor_tier=tier,
        evaluated_at=at,
        selected_tier=selected_tier,
        used_system_default=match is None,
        override_id=match.override.id if match else None,
        base_rate=base_rate.quantize(RATE_QUANTUM, rounding=ROUND_HALF_EVEN),
        discount_applied=discount.quantize(RATE_QUANTUM, rounding=ROUND_HALF_EVEN),
        final_rate=final_rate,
        amount=amount,
        currency=item.currency,
        commission_amount=commission_amount,
        trail=tuple(trail),
        warnings=tuple(warnings),
    )

