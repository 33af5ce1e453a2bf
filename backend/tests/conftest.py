"""Pytest configuration and fixtures."""
from datetime import datetime, timedelta
from decimal import Decimal
from unittest.mock import AsyncMock, MagicMock, patch

import pytest
from httpx import ASGITransport, AsyncClient
from sqlalchemy.ext.asyncio import create_async_engine, AsyncSession
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from app.auth.security import create_access_token
from app.database import Base, get_db
from app.models.earning import Earning, EarningStatus, EarningSource, HoldPolicy
from app.models.user import User
from main import app

# Fixed clock used by ledger tests
T0 = datetime(2026, 1, 1, 12, 0, 0)


@pytest.fixture
async def test_db():
    """Create test database session on a shared in-memory SQLite connection."""
    engine = create_async_engine(
        "sqlite+aiosqlite:///:memory:",
        echo=False,
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    async_session = sessionmaker(
        engine, class_=AsyncSession, expire_on_commit=False
    )

    async with async_session() as session:
        yield session

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.drop_all)

    await engine.dispose()


@pytest.fixture(autouse=True)
def fake_redis():
    """Dict-backed stand-in for the Redis event cache and job locks."""
    store = {}

    async def _set(key, value, nx=False, ex=None):
        if nx and key in store:
            return None
        store[key] = value
        return True

    async def _exists(key):
        return int(key in store)

    async def _delete(key):
        return int(store.pop(key, None) is not None)

    client = MagicMock()
    client.set = AsyncMock(side_effect=_set)
    client.exists = AsyncMock(side_effect=_exists)
    client.delete = AsyncMock(side_effect=_delete)

    with patch("app.services.idempotency.get_redis_client", AsyncMock(return_value=client)), \
         patch("app.services.scheduler.get_redis_client", AsyncMock(return_value=client)):
        yield store


@pytest.fixture
async def client(test_db):
    """Create async test client bound to the test session."""
    async def override_get_db():
        yield test_db

    app.dependency_overrides[get_db] = override_get_db
    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as ac:
        yield ac
    app.dependency_overrides.clear()


@pytest.fixture
async def beneficiary(test_db):
    """Referrer with a connected payout account."""
    user = User(
        name="Referrer One",
        email="referrer@example.com",
        status="active",
        user_role="user",
        stripe_connect_account_id="acct_referrer1",
        payout_currency="USD",
    )
    test_db.add(user)
    await test_db.commit()
    await test_db.refresh(user)
    return user


@pytest.fixture
async def upline(test_db):
    """The referrer's own referrer (tier 2)."""
    user = User(
        name="Referrer Two",
        email="upline@example.com",
        status="active",
        user_role="user",
        stripe_connect_account_id="acct_upline",
    )
    test_db.add(user)
    await test_db.commit()
    await test_db.refresh(user)
    return user


@pytest.fixture
async def admin_user(test_db):
    user = User(
        name="Admin User",
        email="admin@example.com",
        status="active",
        user_role="admin",
    )
    test_db.add(user)
    await test_db.commit()
    await test_db.refresh(user)
    return user


def auth_headers(user: User) -> dict:
    token = create_access_token(data={"sub": user.uuid, "email": user.email, "role": user.user_role})
    return {"Authorization": f"Bearer {token}"}


@pytest.fixture
def make_earning(test_db):
    """Insert an earning directly, bypassing the commission engine."""
    counter = {"n": 0}

    async def _make(
        beneficiary_id: str,
        amount: int,
        status: str = EarningStatus.APPROVED,
        *,
        currency: str = "USD",
        subscription_ref: str = "sub_test",
        eligible_at: datetime = None,
        payout_id: str = None,
        is_gifted: bool = False,
        tier_level: int = 1,
        created_at: datetime = None,
    ) -> Earning:
        counter["n"] += 1
        completed = T0 - timedelta(days=40)
        earning = Earning(
            beneficiary_id=beneficiary_id,
            counterparty_user_id="subscriber-1",
            billing_subject_ref=subscription_ref,
            external_payment_id=f"pi_{counter['n']}",
            source=EarningSource.PURCHASE,
            tier_level=tier_level,
            plan="pro",
            gross_amount=amount * 10,
            base_amount=amount * 10,
            commission_rate=Decimal("0.10"),
            commission_amount=amount,
            currency=currency,
            status=status,
            is_gifted=is_gifted,
            hold_policy=HoldPolicy.TIMED,
            hold_period_days=30,
            payment_completed_at=completed,
            eligible_for_payout_at=eligible_at or completed + timedelta(days=30),
            payout_id=payout_id,
            approved_at=completed + timedelta(days=30) if status == EarningStatus.APPROVED else None,
            created_at=created_at or T0 - timedelta(days=40) + timedelta(minutes=counter["n"]),
        )
        test_db.add(earning)
        await test_db.commit()
        return earning

    return _make


async def reload(db: AsyncSession, model, uuid: str):
    """Re-read a row, overwriting whatever the session has cached."""
    return await db.get(model, uuid, populate_existing=True)
