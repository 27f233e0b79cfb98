"""
SQLAlchemy ORM models (challenge state + append-only ledger)
"""
from datetime import datetime
from sqlalchemy import BigInteger, Boolean, Float, Integer, String, Text, TIMESTAMP, func, UniqueConstraint, Index
from sqlalchemy.orm import Mapped, mapped_column
from sqlalchemy.dialects.postgresql import JSONB

from earlyrise.infrastructure.db.session import Base


class User(Base):
    """
    Участник (или лид) — создаётся при первом контакте с ботом, не удаляется
    """
    __tablename__ = "users"

    id: Mapped[int] = mapped_column(primary_key=True, autoincrement=True)
    telegram_user_id: Mapped[int] = mapped_column(BigInteger, unique=True, nullable=False)
    username: Mapped[str | None] = mapped_column(String(64), nullable=True)
    first_name: Mapped[str | None] = mapped_column(String(128), nullable=True)

    # Каноническая форма GMT±HH:MM
    timezone: Mapped[str] = mapped_column(String(64), nullable=False, default="GMT+00:00", server_default="GMT+00:00")

    created_at: Mapped[datetime] = mapped_column(
        TIMESTAMP(timezone=True), server_default=func.now(), nullable=False
    )
    # Опциональная колонка (см. capabilities.py)
    last_seen_at: Mapped[datetime | None] = mapped_column(TIMESTAMP(timezone=True), nullable=True)


class Challenge(Base):
    __tablename__ = "challenges"

    id: Mapped[int] = mapped_column(primary_key=True, autoincrement=True)
    title: Mapped[str] = mapped_column(String(255), nullable=False)
    status: Mapped[str] = mapped_column(String(16), nullable=False, default="draft", server_default="draft", index=True)
    starts_at: Mapped[datetime | None] = mapped_column(TIMESTAMP(timezone=True), nullable=True)
    ends_at: Mapped[datetime | None] = mapped_column(TIMESTAMP(timezone=True), nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        TIMESTAMP(timezone=True), server_default=func.now(), nullable=False
    )


class GlobalSettings(Base):
    """Одна строка (id=1): глобальные переключатели"""
    __tablename__ = "global_settings"

    id: Mapped[int] = mapped_column(primary_key=True)
    challenge_active: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True, server_default="true")
    voice_feedback_enabled: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True, server_default="true")
    updated_at: Mapped[datetime | None] = mapped_column(TIMESTAMP(timezone=True), nullable=True)


class Participation(Base):
    """
    (user, challenge). left_at IS NULL — участие активно.
    wake_utc_minutes имеет смысл только при wake_mode = 'fixed'.
    """
    __tablename__ = "participations"

    id: Mapped[int] = mapped_column(primary_key=True, autoincrement=True)
    user_id: Mapped[int] = mapped_column(Integer, nullable=False, index=True)
    challenge_id: Mapped[int] = mapped_column(Integer, nullable=False, index=True)

    wake_mode: Mapped[str] = mapped_column(String(8), nullable=False, default="fixed", server_default="fixed")
    wake_time_local: Mapped[str | None] = mapped_column(String(5), nullable=True)  # "07:00"
    wake_utc_minutes: Mapped[int | None] = mapped_column(Integer, nullable=True)

    joined_at: Mapped[datetime] = mapped_column(TIMESTAMP(timezone=True), nullable=False)
    left_at: Mapped[datetime | None] = mapped_column(TIMESTAMP(timezone=True), nullable=True)

    __table_args__ = (
        UniqueConstraint("user_id", "challenge_id", name="uq_participation_user_challenge"),
    )


class Checkin(Base):
    """
    Один чек-ин на событие.

    source: group_plus | voice | text
    status: pending | approved | rejected
    """
    __tablename__ = "checkins"

    id: Mapped[int] = mapped_column(primary_key=True, autoincrement=True)
    user_id: Mapped[int] = mapped_column(Integer, nullable=False)
    challenge_id: Mapped[int] = mapped_column(Integer, nullable=False)
    checkin_at: Mapped[datetime] = mapped_column(TIMESTAMP(timezone=True), nullable=False)
    local_date: Mapped[str | None] = mapped_column(String(10), nullable=True)

    source: Mapped[str] = mapped_column(String(16), nullable=False)
    status: Mapped[str] = mapped_column(String(16), nullable=False)
    reject_reason: Mapped[str | None] = mapped_column(String(64), nullable=True)

    requires_anticheat: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False, server_default="false")
    anticheat_passed: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False, server_default="false")

    # {kind, chat_id, message_id, text} для group_plus; {file_id, duration} для voice
    meta: Mapped[dict | None] = mapped_column(JSONB, nullable=True)

    __table_args__ = (
        Index("ix_checkins_user_challenge_at", "user_id", "challenge_id", "checkin_at"),
    )


class VoiceTranscript(Base):
    """Ответ куратора на отчёт; выдаётся пользователю после прохождения задачки"""
    __tablename__ = "voice_transcripts"

    id: Mapped[int] = mapped_column(primary_key=True, autoincrement=True)
    checkin_id: Mapped[int] = mapped_column(Integer, nullable=False, unique=True)
    provider: Mapped[str] = mapped_column(String(32), nullable=False)
    transcript: Mapped[str | None] = mapped_column(Text, nullable=True)
    confidence: Mapped[float | None] = mapped_column(Float, nullable=True)
    raw: Mapped[dict | None] = mapped_column(JSONB, nullable=True)
    reply_text: Mapped[str | None] = mapped_column(Text, nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        TIMESTAMP(timezone=True), server_default=func.now(), nullable=False
    )


class AntiCheatChallenge(Base):
    """1:1 с pending чек-ином. Терминальные статусы не меняются."""
    __tablename__ = "anti_cheat_challenges"

    id: Mapped[int] = mapped_column(primary_key=True, autoincrement=True)
    checkin_id: Mapped[int] = mapped_column(Integer, nullable=False, unique=True)
    user_id: Mapped[int] = mapped_column(Integer, nullable=False, index=True)
    question: Mapped[str] = mapped_column(String(128), nullable=False)
    expected_answer: Mapped[int] = mapped_column(Integer, nullable=False)
    attempts: Mapped[int] = mapped_column(Integer, nullable=False, default=0, server_default="0")
    status: Mapped[str] = mapped_column(String(16), nullable=False, default="pending", server_default="pending")
    expires_at: Mapped[datetime] = mapped_column(TIMESTAMP(timezone=True), nullable=False)
    created_at: Mapped[datetime] = mapped_column(TIMESTAMP(timezone=True), nullable=False)
    resolved_at: Mapped[datetime | None] = mapped_column(TIMESTAMP(timezone=True), nullable=True)


class BuddyPair(Base):
    """Пара напарников. У участия не больше одной active пары."""
    __tablename__ = "buddy_pairs"

    id: Mapped[int] = mapped_column(primary_key=True, autoincrement=True)
    challenge_id: Mapped[int] = mapped_column(Integer, nullable=False, index=True)
    participation_a_id: Mapped[int] = mapped_column(Integer, nullable=False, index=True)
    participation_b_id: Mapped[int] = mapped_column(Integer, nullable=False, index=True)
    status: Mapped[str] = mapped_column(String(16), nullable=False, default="active", server_default="active")
    created_at: Mapped[datetime] = mapped_column(TIMESTAMP(timezone=True), nullable=False)
    ended_at: Mapped[datetime | None] = mapped_column(TIMESTAMP(timezone=True), nullable=True)


class BuddyWaitlist(Base):
    __tablename__ = "buddy_waitlist"

    id: Mapped[int] = mapped_column(primary_key=True, autoincrement=True)
    participation_id: Mapped[int] = mapped_column(Integer, nullable=False, unique=True)
    challenge_id: Mapped[int] = mapped_column(Integer, nullable=False, index=True)
    status: Mapped[str] = mapped_column(String(16), nullable=False, default="waiting", server_default="waiting")
    created_at: Mapped[datetime] = mapped_column(TIMESTAMP(timezone=True), nullable=False)


class Payment(Base):
    """
    Платёж у провайдера. status: pending | paid | refunded | canceled.
    Доступ: plan_code → дни, иначе legacy amount → дни.
    """
    __tablename__ = "payments"

    id: Mapped[int] = mapped_column(primary_key=True, autoincrement=True)
    user_id: Mapped[int] = mapped_column(Integer, nullable=False, index=True)
    challenge_id: Mapped[int | None] = mapped_column(Integer, nullable=True)
    provider: Mapped[str] = mapped_column(String(32), nullable=False, default="yookassa", server_default="yookassa")
    provider_payment_id: Mapped[str] = mapped_column(String(128), nullable=False, unique=True)
    amount: Mapped[int] = mapped_column(Integer, nullable=False)
    currency: Mapped[str] = mapped_column(String(3), nullable=False, default="RUB", server_default="RUB")
    # Опциональная колонка (см. capabilities.py)
    plan_code: Mapped[str | None] = mapped_column(String(32), nullable=True)
    status: Mapped[str] = mapped_column(String(16), nullable=False, default="pending", server_default="pending")
    created_at: Mapped[datetime] = mapped_column(TIMESTAMP(timezone=True), nullable=False)
    paid_at: Mapped[datetime | None] = mapped_column(TIMESTAMP(timezone=True), nullable=True)


class LedgerEntry(Base):
    """
    Append-only маркеры (reason кодирует вид события и дату).

    Примеры reason:
        penalty:miss:2026-03-02
        sub:kicked:2026-04-01T10:00:00+00:00
        trial_7d_start
    """
    __tablename__ = "ledger_entries"

    id: Mapped[int] = mapped_column(primary_key=True, autoincrement=True)
    user_id: Mapped[int] = mapped_column(Integer, nullable=False)
    challenge_id: Mapped[int | None] = mapped_column(Integer, nullable=True)
    delta: Mapped[int] = mapped_column(Integer, nullable=False, default=0, server_default="0")
    reason: Mapped[str] = mapped_column(String(255), nullable=False)
    created_at: Mapped[datetime] = mapped_column(TIMESTAMP(timezone=True), nullable=False)

    __table_args__ = (
        Index("ix_ledger_user_challenge_reason", "user_id", "challenge_id", "reason"),
    )
