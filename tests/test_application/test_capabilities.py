"""Tests for the schema capability probe on installations without optional columns"""
from datetime import datetime, timedelta, timezone

import pytest
from sqlalchemy import create_engine, text
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from earlyrise.application.access import load_paid_payments, resolve_access
from earlyrise.infrastructure.db.capabilities import get_capabilities, reset_capabilities

PAID_AT = datetime(2026, 3, 1, 12, 0, tzinfo=timezone.utc)


@pytest.fixture
def legacy_session():
    """Старая схема: payments без plan_code, users без last_seen_at"""
    engine = create_engine("sqlite:///:memory:", poolclass=StaticPool)
    with engine.begin() as conn:
        conn.execute(text(
            "CREATE TABLE users (id INTEGER PRIMARY KEY, telegram_user_id BIGINT NOT NULL, "
            "timezone VARCHAR(64) NOT NULL, created_at TIMESTAMP NOT NULL)"
        ))
        conn.execute(text(
            "CREATE TABLE payments (id INTEGER PRIMARY KEY, user_id INTEGER NOT NULL, challenge_id INTEGER, "
            "provider VARCHAR(32), provider_payment_id VARCHAR(128) NOT NULL, amount INTEGER NOT NULL, "
            "currency VARCHAR(3), status VARCHAR(16) NOT NULL, created_at TIMESTAMP NOT NULL, paid_at TIMESTAMP)"
        ))
        conn.execute(text(
            "CREATE TABLE ledger_entries (id INTEGER PRIMARY KEY, user_id INTEGER NOT NULL, challenge_id INTEGER, "
            "delta INTEGER NOT NULL, reason VARCHAR(255) NOT NULL, created_at TIMESTAMP NOT NULL)"
        ))
        conn.execute(text(
            "INSERT INTO payments (user_id, provider_payment_id, amount, status, created_at) "
            "VALUES (1, 'legacy-1', 490, 'paid', '2026-03-01 12:00:00.000000')"
        ))
    reset_capabilities()
    session = sessionmaker(bind=engine)()
    yield session
    session.close()
    reset_capabilities()
    engine.dispose()


class TestCapabilities:
    def test_full_schema(self, db_session):
        caps = get_capabilities(db_session)
        assert caps.payments_plan_code
        assert caps.users_last_seen_at

    def test_missing_columns_detected(self, legacy_session):
        caps = get_capabilities(legacy_session)
        assert not caps.payments_plan_code
        assert not caps.users_last_seen_at

    def test_legacy_amount_used_without_plan_code(self, legacy_session):
        payments = load_paid_payments(legacy_session, 1, None)
        assert len(payments) == 1
        assert payments[0].plan_code is None

        info = resolve_access(legacy_session, 1, None, PAID_AT + timedelta(days=1))
        assert info.access_class == "paid"
        assert info.paid_until == PAID_AT + timedelta(days=30)
