"""
Participation use cases — пользователи, активный челлендж, участие, таймзона.
"""
import logging
from datetime import datetime, timezone

from sqlalchemy.orm import Session

from earlyrise.config import get_settings
from earlyrise.domain.errors import ConfigurationError, UserError
from earlyrise.domain.timewindow import normalize_timezone, parse_gmt_offset
from earlyrise.domain.wake import WAKE_MODE_FIXED, parse_wake_choice, wake_utc_minutes
from earlyrise.infrastructure.db.capabilities import get_capabilities
from earlyrise.infrastructure.db.models import Challenge, GlobalSettings, Participation, User

logger = logging.getLogger(__name__)


# ============================================================================
# Challenge / settings
# ============================================================================


def get_global_settings(db: Session) -> GlobalSettings:
    row = db.query(GlobalSettings).filter(GlobalSettings.id == 1).first()
    if row is None:
        row = GlobalSettings(id=1, challenge_active=True, voice_feedback_enabled=True)
        db.add(row)
        db.flush()
    return row


def get_active_challenge(db: Session) -> Challenge | None:
    return (
        db.query(Challenge)
        .filter(Challenge.status == "active")
        .order_by(Challenge.id.desc())
        .first()
    )


def require_open_challenge(db: Session) -> tuple[GlobalSettings, Challenge]:
    """
    Raises:
        ConfigurationError: челлендж выключен глобально или активного нет
    """
    settings = get_global_settings(db)
    if not settings.challenge_active:
        logger.warning("Check-in attempted while challenge is globally disabled")
        raise ConfigurationError("Челлендж сейчас выключен", code="challenge_inactive")
    challenge = get_active_challenge(db)
    if challenge is None:
        logger.warning("Check-in attempted with no active challenge")
        raise ConfigurationError("Сейчас нет активного челленджа", code="no_active_challenge")
    return settings, challenge


class UpdateGlobalSettingsUseCase:
    """Админ: включить/выключить челлендж и ответы куратора на голосовые."""

    def __init__(self, db: Session):
        self.db = db

    def execute(
        self,
        challenge_active: bool | None = None,
        voice_feedback_enabled: bool | None = None,
        now: datetime | None = None,
    ) -> GlobalSettings:
        now = now or datetime.now(timezone.utc)
        row = get_global_settings(self.db)
        if challenge_active is not None:
            row.challenge_active = challenge_active
        if voice_feedback_enabled is not None:
            row.voice_feedback_enabled = voice_feedback_enabled
        row.updated_at = now
        self.db.commit()
        logger.info(
            "Global settings updated: challenge_active=%s voice_feedback_enabled=%s",
            row.challenge_active, row.voice_feedback_enabled,
        )
        return row


# ============================================================================
# Users
# ============================================================================


def find_user(db: Session, telegram_user_id: int) -> User | None:
    return db.query(User).filter(User.telegram_user_id == telegram_user_id).first()


def require_user(db: Session, telegram_user_id: int) -> User:
    user = find_user(db, telegram_user_id)
    if user is None:
        raise UserError("Сначала /start", code="user_not_found")
    return user


def touch_last_seen(db: Session, user: User, now: datetime) -> None:
    if get_capabilities(db).users_last_seen_at:
        user.last_seen_at = now


def ensure_user(
    db: Session,
    telegram_user_id: int,
    username: str | None = None,
    first_name: str | None = None,
    now: datetime | None = None,
) -> User:
    """Upsert по telegram id; новые пользователи получают DEFAULT_TIMEZONE."""
    now = now or datetime.now(timezone.utc)
    user = find_user(db, telegram_user_id)
    if user is None:
        user = User(
            telegram_user_id=telegram_user_id,
            username=username,
            first_name=first_name,
            timezone=get_settings().DEFAULT_TIMEZONE,
            created_at=now,
        )
        db.add(user)
    else:
        if username is not None:
            user.username = username
        if first_name is not None:
            user.first_name = first_name
    touch_last_seen(db, user, now)
    db.flush()
    return user


# ============================================================================
# Participation
# ============================================================================


def get_participation(db: Session, user_id: int, challenge_id: int) -> Participation | None:
    return db.query(Participation).filter(
        Participation.user_id == user_id,
        Participation.challenge_id == challenge_id,
    ).first()


def get_active_participation(db: Session, user_id: int, challenge_id: int) -> Participation | None:
    p = get_participation(db, user_id, challenge_id)
    if p is None or p.left_at is not None:
        return None
    return p


def ensure_participation(db: Session, user: User, challenge: Challenge, now: datetime) -> Participation:
    """
    Создать участие, если строки нет (fixed без времени подъёма).
    Вышедшее участие не восстанавливается — только через JoinChallengeUseCase.
    """
    p = get_participation(db, user.id, challenge.id)
    if p is None:
        p = Participation(
            user_id=user.id,
            challenge_id=challenge.id,
            wake_mode=WAKE_MODE_FIXED,
            joined_at=now,
        )
        db.add(p)
        db.flush()
    return p


def _apply_wake(p: Participation, raw_wake: str, tz: str, now: datetime) -> None:
    choice = parse_wake_choice(raw_wake)
    p.wake_mode = choice.mode
    p.wake_time_local = choice.wake_time_local
    p.wake_utc_minutes = wake_utc_minutes(choice.wake_time_local, tz, now)


class JoinChallengeUseCase:
    """Вступить в активный челлендж или восстановить участие (left_at → NULL)."""

    def __init__(self, db: Session):
        self.db = db

    def execute(self, telegram_user_id: int, wake: str, now: datetime | None = None) -> Participation:
        now = now or datetime.now(timezone.utc)
        _, challenge = require_open_challenge(self.db)
        user = require_user(self.db, telegram_user_id)

        p = get_participation(self.db, user.id, challenge.id)
        if p is None:
            p = Participation(user_id=user.id, challenge_id=challenge.id, joined_at=now)
            self.db.add(p)
        elif p.left_at is not None:
            p.left_at = None
            p.joined_at = now

        _apply_wake(p, wake, user.timezone, now)
        touch_last_seen(self.db, user, now)
        self.db.commit()
        logger.info("User %s joined challenge %s (%s)", user.id, challenge.id, p.wake_mode)
        return p


class SetWakeTimeUseCase:
    def __init__(self, db: Session):
        self.db = db

    def execute(self, telegram_user_id: int, wake: str, now: datetime | None = None) -> Participation:
        now = now or datetime.now(timezone.utc)
        _, challenge = require_open_challenge(self.db)
        user = require_user(self.db, telegram_user_id)
        p = get_active_participation(self.db, user.id, challenge.id)
        if p is None:
            raise UserError("Ты ещё не присоединился(ась) к челленджу", code="not_joined")
        _apply_wake(p, wake, user.timezone, now)
        self.db.commit()
        return p


class SetTimezoneUseCase:
    def __init__(self, db: Session):
        self.db = db

    def execute(self, telegram_user_id: int, tz: str, now: datetime | None = None) -> User:
        now = now or datetime.now(timezone.utc)
        user = require_user(self.db, telegram_user_id)

        normalized = normalize_timezone((tz or "").strip(), now)
        if not normalized or parse_gmt_offset(normalized) is None:
            raise UserError("Не понял таймзону. Пример: GMT+3 или Europe/Moscow", code="invalid_timezone")
        user.timezone = normalized

        # wake_utc_minutes зависит от сдвига, пересчитать для активного участия
        challenge = get_active_challenge(self.db)
        if challenge is not None:
            p = get_active_participation(self.db, user.id, challenge.id)
            if p is not None and p.wake_mode == WAKE_MODE_FIXED:
                p.wake_utc_minutes = wake_utc_minutes(p.wake_time_local, normalized, now)

        touch_last_seen(self.db, user, now)
        self.db.commit()
        return user
