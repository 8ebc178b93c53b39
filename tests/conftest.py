"""
Pytest configuration and fixtures.
"""

import os
from datetime import datetime, timezone
from decimal import Decimal

os.environ.setdefault("DATABASE_URL", "sqlite+aiosqlite:///:memory:")
os.environ.setdefault("SECRET_KEY", "test-secret-key")

import pytest
import pytest_asyncio
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.pool import StaticPool

from commission_engine.config import DEFAULT_CURRENCY_MINOR_UNITS
from commission_engine.models import Base
from commission_engine.services.audit_recorder import AuditRecorder
from commission_engine.services.engine import CommissionEngine
from commission_engine.services.membership import MembershipDiscountResolver
from commission_engine.services.overrides import OverrideStore
from commission_engine.services.resolution import LineItem, ResolutionPolicy


# Test database URL (use SQLite for tests)
TEST_DATABASE_URL = "sqlite+aiosqlite:///:memory:"

AT = datetime(2024, 6, 1, tzinfo=timezone.utc)


def make_item(**kwargs) -> LineItem:
    defaults = {
        "line_item_ref": "li-1",
        "product_id": "p-1",
        "vendor_id": "v-1",
        "category_id": "c-1",
        "amount": Decimal("1000"),
        "currency": "SYP",
        "at": AT,
        "vendor_tier": None,
    }
    defaults.update(kwargs)
    return LineItem(**defaults)


@pytest_asyncio.fixture
async def db_engine():
    """Create test database engine."""
    engine = create_async_engine(
        TEST_DATABASE_URL,
        echo=False,
        poolclass=StaticPool,
        connect_args={"check_same_thread": False},
    )

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    yield engine

    await engine.dispose()


@pytest_asyncio.fixture
async def session_factory(db_engine):
    return async_sessionmaker(
        db_engine,
        class_=AsyncSession,
        expire_on_commit=False,
    )


@pytest_asyncio.fixture
async def db_session(session_factory):
    """Create test database session."""
    async with session_factory() as session:
        yield session


@pytest.fixture
def policy():
    return ResolutionPolicy(
        default_rate=Decimal("5.0"),
        discount_floor=Decimal("0"),
        currency_minor_units=dict(DEFAULT_CURRENCY_MINOR_UNITS),
    )


@pytest.fixture
def store():
    return OverrideStore(min_rate=Decimal("0.5"), max_rate=Decimal("15.0"))


@pytest_asyncio.fixture
async def engine(session_factory, store, policy):
    """Commission engine on the test database; membership cache disabled."""
    return CommissionEngine(
        session_factory,
        store=store,
        memberships=MembershipDiscountResolver(ttl_seconds=0),
        recorder=AuditRecorder(),
        policy=policy,
    )
