"""
Tests for membership discount resolution.
"""

from decimal import Decimal

import pytest
from sqlalchemy import select

from commission_engine.exceptions import InvalidRateBounds
from commission_engine.models import AuditAction, AuditLog
from commission_engine.services.membership import (
    MembershipDiscountResolver,
    MembershipDiscountTable,
    list_discounts,
    normalize_tier,
    set_discount,
)


class TestDiscountTable:
    def test_lookup(self):
        table = MembershipDiscountTable({"Gold": Decimal("3"), "silver": Decimal("1.5")})
        assert table.discount_for("gold") == Decimal("3")
        assert table.discount_for(" SILVER ") == Decimal("1.5")
        assert table.knows("GOLD")

    def test_missing_or_unknown_tier_is_zero(self):
        table = MembershipDiscountTable({"gold": Decimal("3")})
        assert table.discount_for(None) == 0
        assert table.discount_for("") == 0
        assert table.discount_for("bronze") == 0
        assert not table.knows("bronze")

    def test_normalize_tier(self):
        assert normalize_tier("  Platinum ") == "platinum"
        assert normalize_tier("   ") is None
        assert normalize_tier(None) is None


class TestSetDiscount:
    @pytest.mark.asyncio
    async def test_create_and_update(self, db_session):
        await set_discount(db_session, "Gold", Decimal("3"), actor_id=1)
        await db_session.commit()
        await set_discount(db_session, "gold", Decimal("2.5"), actor_id=2, note="Q3 promo")
        await db_session.commit()

        rows = await list_discounts(db_session)
        assert [(r.tier, r.discount_percentage, r.updated_by) for r in rows] == [
            ("gold", Decimal("2.5"), 2),
        ]

        result = await db_session.execute(select(AuditLog).order_by(AuditLog.id))
        logs = result.scalars().all()
        assert [log.action for log in logs] == [AuditAction.SET_MEMBERSHIP_DISCOUNT] * 2
        assert logs[1].action_metadata == {"previous": "3", "new": "2.5"}

    @pytest.mark.asyncio
    async def test_out_of_range(self, db_session):
        with pytest.raises(InvalidRateBounds):
            await set_discount(db_session, "gold", Decimal("101"), actor_id=1)
        with pytest.raises(InvalidRateBounds):
            await set_discount(db_session, "gold", Decimal("-0.5"), actor_id=1)
        with pytest.raises(InvalidRateBounds):
            await set_discount(db_session, "  ", Decimal("1"), actor_id=1)


class TestResolver:
    @pytest.mark.asyncio
    async def test_cache_and_invalidate(self, db_session):
        await set_discount(db_session, "gold", Decimal("3"), actor_id=1)
        await db_session.commit()

        resolver = MembershipDiscountResolver(ttl_seconds=300)
        table = await resolver.load(db_session)
        assert table.discount_for("gold") == Decimal("3")

        await set_discount(db_session, "gold", Decimal("1"), actor_id=1)
        await db_session.commit()

        # Still within the TTL
        assert (await resolver.load(db_session)).discount_for("gold") == Decimal("3")

        resolver.invalidate()
        assert (await resolver.load(db_session)).discount_for("gold") == Decimal("1")

    @pytest.mark.asyncio
    async def test_zero_ttl_always_reloads(self, db_session):
        resolver = MembershipDiscountResolver(ttl_seconds=0)
        assert (await resolver.load(db_session)).discount_for("gold") == 0

        await set_discount(db_session, "gold", Decimal("2"), actor_id=1)
        await db_session.commit()

        assert (await resolver.load(db_session)).discount_for("gold") == Decimal("2")
