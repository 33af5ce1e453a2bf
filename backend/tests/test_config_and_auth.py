"""Unit tests for settings normalization and token verification.

DATABASE_URL values copied from hosting dashboards use the sync driver
scheme and libpq's sslmode; both must be rewritten for asyncpg.
"""
from datetime import timedelta

import pytest
from jose import jwt

from app.auth.security import create_access_token, decode_token
from app.config import Settings, settings


@pytest.mark.parametrize("url,expected", [
    ("postgresql://u:p@db:5432/ledger", "postgresql+asyncpg://u:p@db:5432/ledger"),
    ("postgresql://u:p@db/ledger?sslmode=require", "postgresql+asyncpg://u:p@db/ledger?ssl=require"),
    ("postgresql+asyncpg://u:p@db/ledger", "postgresql+asyncpg://u:p@db/ledger"),
])
def test_database_url_uses_async_driver(url, expected):
    assert Settings(DATABASE_URL=url).DATABASE_URL == expected


def test_default_commission_configuration_is_sane():
    for plan, rate in settings.COMMISSION_RATES.items():
        assert 0 <= rate <= 1, plan
    assert 0 <= settings.SUB_AFFILIATE_RATE <= 1
    assert settings.MAX_REFERRAL_DEPTH >= 1
    assert settings.HOLD_PERIOD_DAYS >= 0


def test_access_token_round_trip():
    token = create_access_token(data={"sub": "user-1", "role": "admin"})

    payload = decode_token(token)

    assert payload["sub"] == "user-1"
    assert payload["type"] == "access"


def test_expired_token_is_rejected():
    token = create_access_token(data={"sub": "user-1"}, expires_delta=timedelta(seconds=-1))
    assert decode_token(token) is None


def test_refresh_token_is_not_an_access_token():
    token = jwt.encode({"sub": "user-1", "type": "refresh"}, settings.SECRET_KEY, algorithm=settings.ALGORITHM)
    assert decode_token(token) is None


def test_token_signed_with_other_key_is_rejected():
    token = jwt.encode({"sub": "user-1"}, "not-the-key", algorithm=settings.ALGORITHM)
    assert decode_token(token) is None
