"""
Pytest fixtures for testing
"""
from datetime import datetime, timezone
from unittest.mock import MagicMock

import pytest
from sqlalchemy import create_engine, JSON
from sqlalchemy.orm import sessionmaker, Session
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.pool import StaticPool

from earlyrise.infrastructure.db.session import Base
from earlyrise.infrastructure.db import models  # noqa: F401  (регистрирует таблицы)
from earlyrise.infrastructure.db.capabilities import get_capabilities, reset_capabilities
from earlyrise.infrastructure.db.models import Challenge, GlobalSettings


@pytest.fixture
def db_engine():
    """In-memory SQLite (одно соединение на все потоки TestClient), JSONB→JSON."""
    engine = create_engine(
        "sqlite:///:memory:",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    # SQLite doesn't support JSONB, remap to JSON for tests
    for table in Base.metadata.tables.values():
        for col in table.columns:
            if isinstance(col.type, JSONB):
                col.type = JSON()
    Base.metadata.create_all(engine)
    reset_capabilities()
    yield engine
    reset_capabilities()
    engine.dispose()


@pytest.fixture
def db_session(db_engine) -> Session:
    """Create database session for tests"""
    SessionLocal = sessionmaker(bind=db_engine)
    session = SessionLocal()
    # Схема проверяется один раз до начала работы, как при старте приложения
    get_capabilities(session)
    try:
        yield session
    finally:
        session.rollback()
        session.close()


@pytest.fixture
def challenge(db_session) -> Challenge:
    """Активный челлендж + строка глобальных настроек"""
    db_session.add(GlobalSettings(id=1, challenge_active=True, voice_feedback_enabled=True))
    c = Challenge(title="Test challenge", status="active", created_at=datetime(2026, 3, 1, tzinfo=timezone.utc))
    db_session.add(c)
    db_session.commit()
    return c


@pytest.fixture
def gateway():
    """Telegram gateway double: всё отправляется успешно"""
    gw = MagicMock()
    gw.enabled = True
    gw.group_chat_id = "-1001"
    return gw
