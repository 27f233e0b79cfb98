"""
Check-in admission pipeline — решает, засчитывается ли входящее событие.

Источники:
  group_plus — "+" в общем чате: сразу approved или rejected (окно [wake−55, wake+10])
  voice/text — отчёт в личке: pending + задачка anti-cheat, approved только после неё

Общие проверки: челлендж включён и активен; у пользователя есть активное участие.
Отказы возвращаются как AdmissionVerdict (ожидаемый результат), не исключение.
ConfigurationError (челлендж выключен / не найден) пробрасывается наверх.
"""
import logging
import random
from dataclasses import dataclass
from datetime import datetime, timezone

from sqlalchemy.orm import Session

from earlyrise.application import ledger
from earlyrise.application.curator import (
    PROVIDER_DISABLED,
    VOICE_FEEDBACK_DISABLED_REPLY,
    CuratorClient,
    CuratorReply,
)
from earlyrise.application.messaging import TelegramGateway, try_send
from earlyrise.application.participation import (
    ensure_participation,
    ensure_user,
    find_user,
    get_active_participation,
    require_open_challenge,
    touch_last_seen,
)
from earlyrise.application.reminder_cache import ReminderCache
from earlyrise.domain.anticheat import (
    ANTICHEAT_TTL,
    STATUS_EXPIRED,
    STATUS_PENDING as ANTICHEAT_PENDING,
    generate_question,
)
from earlyrise.domain.errors import UserError
from earlyrise.domain.timewindow import ensure_utc, local_parts, utc_range_for_local_day
from earlyrise.domain.wake import (
    WAKE_MODE_FLEX,
    is_tap_in_window,
    is_voice_cutoff_passed,
    wake_minutes,
)
from earlyrise.infrastructure.db.models import AntiCheatChallenge, Checkin, Participation, User, VoiceTranscript

logger = logging.getLogger(__name__)

SOURCE_GROUP_TAP = "group_plus"
SOURCE_VOICE = "voice"
SOURCE_TEXT = "text"
REPORT_SOURCES = (SOURCE_VOICE, SOURCE_TEXT)

STATUS_PENDING = "pending"
STATUS_APPROVED = "approved"
STATUS_REJECTED = "rejected"

VERDICT_ACCEPTED = "accepted"
VERDICT_REJECTED = "rejected"
VERDICT_PENDING_ANTICHEAT = "pending_anticheat"

REASON_NOT_JOINED = "not_joined"
REASON_MISSING_WAKE_TIME = "missing_wake_time"
REASON_OUTSIDE_WINDOW = "outside_window"
REASON_USER_NOT_FOUND = "user_not_found"
REASON_PENALTY_MODE = "penalty_mode"
REASON_ALREADY_REPORTED = "already_voice_today"
REASON_EMPTY_TEXT = "empty_text"
REASON_ANTICHEAT_EXPIRED = "anticheat_expired"

_TAP_REASON_TEXT = {
    REASON_OUTSIDE_WINDOW: "не засчитан: вне окна по времени подъёма",
    REASON_MISSING_WAKE_TIME: "не засчитан: не задано время подъёма",
    REASON_NOT_JOINED: "не засчитан: ты ещё не присоединился(ась) к челленджу",
}

_REJECT_MESSAGES = {
    REASON_USER_NOT_FOUND: "Сначала /start",
    REASON_NOT_JOINED: "Ты ещё не присоединился(ась) к челленджу. Открой /menu.",
    REASON_PENALTY_MODE: (
        "Сейчас уже штрафной режим: прошло больше 30 минут после времени подъёма.\n\n"
        "Голосовые после wake+30 не принимаю.\n\n"
        "Если нужно — открой /menu."
    ),
    REASON_ALREADY_REPORTED: (
        "Голосовое уже принято сегодня ✅\n\n"
        "Следующее голосовое ждём завтра.\n\n"
        "Если есть вопросы или хочется обсудить детали — лучше написать в общий чат с участниками."
    ),
    REASON_EMPTY_TEXT: "Пустой отчёт. Напиши пару предложений о планах на утро.",
}

VOICE_REMINDER_TEXT = (
    "Привет! Вижу твой + в чате ✅\n\n"
    "Жду голосовое сообщение с планами на утро (1–2 минуты). После голосового будет короткая задачка."
)

REMINDER_KIND_VOICE = "voice_reminder"
REMINDER_KIND_TAP_REJECTED = "tap_rejected"


def tap_rejection_text(reason: str) -> str:
    return (
        f"Вижу твой + в чате, но он {_TAP_REASON_TEXT.get(reason, 'не засчитан')}.\n\n"
        "Если ничего не поменять — после wake+30 включится штрафной режим.\n\n"
        "Проверь таймзону и время подъёма (через /menu)."
    )


def is_group_tap(text: str | None) -> bool:
    return bool(text) and text.lstrip().startswith("+")


@dataclass
class AdmissionVerdict:
    verdict: str
    reason: str | None = None
    message: str | None = None
    checkin_id: int | None = None
    local_date: str | None = None
    question: str | None = None
    expires_at: datetime | None = None
    needs_voice: bool = False
    notified: bool = False

    @property
    def ok(self) -> bool:
        return self.verdict != VERDICT_REJECTED


def _rejected(reason: str, local_date: str | None = None, checkin_id: int | None = None) -> AdmissionVerdict:
    return AdmissionVerdict(
        verdict=VERDICT_REJECTED,
        reason=reason,
        message=_REJECT_MESSAGES.get(reason),
        local_date=local_date,
        checkin_id=checkin_id,
    )


def has_report_today(db: Session, user_id: int, challenge_id: int, start_utc: datetime, end_utc: datetime) -> bool:
    return db.query(Checkin.id).filter(
        Checkin.user_id == user_id,
        Checkin.challenge_id == challenge_id,
        Checkin.source.in_(REPORT_SOURCES),
        Checkin.status.in_((STATUS_PENDING, STATUS_APPROVED)),
        Checkin.checkin_at >= start_utc,
        Checkin.checkin_at <= end_utc,
    ).first() is not None


def expire_stale_reports(
    db: Session, user_id: int, challenge_id: int, start_utc: datetime, end_utc: datetime, now: datetime,
) -> int:
    """
    Pending-отчёты, чья задачка уже истекла без ответа, закрываются как
    anticheat_expired, чтобы не блокировать новый отчёт в тот же день.
    """
    rows = (
        db.query(Checkin, AntiCheatChallenge)
        .join(AntiCheatChallenge, AntiCheatChallenge.checkin_id == Checkin.id)
        .filter(
            Checkin.user_id == user_id,
            Checkin.challenge_id == challenge_id,
            Checkin.source.in_(REPORT_SOURCES),
            Checkin.status == STATUS_PENDING,
            Checkin.checkin_at >= start_utc,
            Checkin.checkin_at <= end_utc,
            AntiCheatChallenge.status == ANTICHEAT_PENDING,
        )
        .all()
    )
    expired = 0
    for checkin, challenge in rows:
        if ensure_utc(now) > ensure_utc(challenge.expires_at):
            challenge.status = STATUS_EXPIRED
            challenge.resolved_at = now
            checkin.status = STATUS_REJECTED
            checkin.reject_reason = REASON_ANTICHEAT_EXPIRED
            expired += 1
    if expired:
        db.flush()
    return expired


# ============================================================================
# Group tap
# ============================================================================


class GroupTapCheckinUseCase:
    def __init__(
        self,
        db: Session,
        gateway: TelegramGateway | None = None,
        reminder_cache: ReminderCache | None = None,
    ):
        self.db = db
        self.gateway = gateway if gateway is not None else TelegramGateway()
        self.reminder_cache = reminder_cache if reminder_cache is not None else ReminderCache()

    def execute(
        self,
        telegram_user_id: int,
        text: str,
        chat_id: int | str | None = None,
        message_id: int | None = None,
        username: str | None = None,
        first_name: str | None = None,
        now: datetime | None = None,
    ) -> AdmissionVerdict:
        now = now or datetime.now(timezone.utc)
        if not is_group_tap(text):
            raise UserError("Это не отметка \"+\"", code="not_a_tap")
        _, challenge = require_open_challenge(self.db)

        # Первый "+" одновременно регистрирует пользователя и участие
        user = ensure_user(self.db, telegram_user_id, username, first_name, now)
        participation = ensure_participation(self.db, user, challenge, now)

        day = utc_range_for_local_day(now, user.timezone)
        reason = self._evaluate(participation, user, now)

        checkin = Checkin(
            user_id=user.id,
            challenge_id=challenge.id,
            checkin_at=now,
            local_date=day.local_date,
            source=SOURCE_GROUP_TAP,
            status=STATUS_REJECTED if reason else STATUS_APPROVED,
            reject_reason=reason,
            meta={
                "kind": SOURCE_GROUP_TAP,
                "chat_id": chat_id,
                "message_id": message_id,
                "text": (text or "")[:200],
            },
        )
        self.db.add(checkin)
        self.db.commit()

        if reason:
            verdict = _rejected(reason, day.local_date, checkin.id)
            verdict.message = tap_rejection_text(reason)
            verdict.notified = self._notify_rejection(user, challenge.id, day.local_date, reason, now)
            return verdict

        needs_voice = not has_report_today(self.db, user.id, challenge.id, day.start_utc, day.end_utc)
        verdict = AdmissionVerdict(
            verdict=VERDICT_ACCEPTED,
            checkin_id=checkin.id,
            local_date=day.local_date,
            needs_voice=needs_voice,
        )
        if needs_voice:
            verdict.notified = self._remind_voice(user, day.local_date)
        return verdict

    def _evaluate(self, participation: Participation, user: User, now: datetime) -> str | None:
        """Reject reason or None when the tap counts."""
        if participation.left_at is not None:
            return REASON_NOT_JOINED
        if participation.wake_mode == WAKE_MODE_FLEX:
            return None
        wake_min = wake_minutes(participation.wake_time_local)
        if wake_min is None:
            return REASON_MISSING_WAKE_TIME
        if not is_tap_in_window(local_parts(now, user.timezone).minutes, wake_min):
            return REASON_OUTSIDE_WINDOW
        return None

    def _notify_rejection(self, user: User, challenge_id: int, local_date: str, reason: str, now: datetime) -> bool:
        # Одно уведомление об отказе на пользователя и локальный день
        if self.reminder_cache.seen(user.id, local_date, REMINDER_KIND_TAP_REJECTED):
            return False
        marker = ledger.tap_rejected_notice(local_date)
        if ledger.has_marker(self.db, user.id, challenge_id, marker):
            self.reminder_cache.mark(user.id, local_date, REMINDER_KIND_TAP_REJECTED)
            return False
        if not self.gateway.enabled:
            return False
        if not try_send(self.gateway, user.telegram_user_id, tap_rejection_text(reason)):
            return False
        ledger.put_marker(self.db, user.id, challenge_id, marker, now)
        self.db.commit()
        self.reminder_cache.mark(user.id, local_date, REMINDER_KIND_TAP_REJECTED)
        return True

    def _remind_voice(self, user: User, local_date: str) -> bool:
        if self.reminder_cache.seen(user.id, local_date, REMINDER_KIND_VOICE):
            return False
        if not self.gateway.enabled:
            return False
        if not try_send(self.gateway, user.telegram_user_id, VOICE_REMINDER_TEXT):
            return False
        self.reminder_cache.mark(user.id, local_date, REMINDER_KIND_VOICE)
        return True


# ============================================================================
# Voice / text reports
# ============================================================================


class _ReportCheckinUseCase:
    source: str = SOURCE_VOICE

    def __init__(
        self,
        db: Session,
        curator: CuratorClient | None = None,
        rng: random.Random | None = None,
    ):
        self.db = db
        self.curator = curator if curator is not None else CuratorClient()
        self.rng = rng

    def _admit(
        self,
        telegram_user_id: int,
        now: datetime,
        meta: dict,
        text: str | None = None,
        audio: dict | None = None,
    ) -> AdmissionVerdict:
        settings, challenge = require_open_challenge(self.db)

        user = find_user(self.db, telegram_user_id)
        if user is None:
            return _rejected(REASON_USER_NOT_FOUND)
        participation = get_active_participation(self.db, user.id, challenge.id)
        if participation is None:
            return _rejected(REASON_NOT_JOINED)
        touch_last_seen(self.db, user, now)

        day = utc_range_for_local_day(now, user.timezone)

        # После wake+30 отчёт уже не принимается, дальше работает штрафной свип
        if participation.wake_mode != WAKE_MODE_FLEX:
            wake_min = wake_minutes(participation.wake_time_local)
            now_min = local_parts(now, user.timezone).minutes
            if wake_min is not None and is_voice_cutoff_passed(now_min, wake_min):
                self.db.commit()
                return _rejected(REASON_PENALTY_MODE, day.local_date)

        # Known narrow race: check and insert are not atomic
        expire_stale_reports(self.db, user.id, challenge.id, day.start_utc, day.end_utc, now)
        if has_report_today(self.db, user.id, challenge.id, day.start_utc, day.end_utc):
            self.db.commit()
            return _rejected(REASON_ALREADY_REPORTED, day.local_date)

        checkin = Checkin(
            user_id=user.id,
            challenge_id=challenge.id,
            checkin_at=now,
            local_date=day.local_date,
            source=self.source,
            status=STATUS_PENDING,
            requires_anticheat=True,
            meta=meta,
        )
        self.db.add(checkin)
        self.db.flush()

        question = generate_question(self.rng)
        expires_at = now + ANTICHEAT_TTL
        self.db.add(AntiCheatChallenge(
            checkin_id=checkin.id,
            user_id=user.id,
            question=question.text,
            expected_answer=question.answer,
            attempts=0,
            status=ANTICHEAT_PENDING,
            expires_at=expires_at,
            created_at=now,
        ))

        checkin_id = checkin.id
        user_id = user.id
        challenge_id = challenge.id
        feedback_enabled = settings.voice_feedback_enabled
        profile = {
            "telegram_user_id": user.telegram_user_id,
            "username": user.username,
            "first_name": user.first_name,
            "timezone": user.timezone,
        }
        self.db.commit()

        # Webhook куратора вызывается вне транзакции
        if feedback_enabled:
            reply = self.curator.get_reply(
                mode=self.source,
                user=profile,
                challenge_id=challenge_id,
                text=text,
                audio=audio,
            )
        else:
            reply = CuratorReply(reply=VOICE_FEEDBACK_DISABLED_REPLY, provider=PROVIDER_DISABLED, transcript=text)

        self.db.add(VoiceTranscript(
            checkin_id=checkin_id,
            provider=reply.provider,
            transcript=reply.transcript,
            confidence=reply.confidence,
            raw=reply.raw,
            reply_text=reply.reply,
            created_at=now,
        ))
        self.db.commit()
        logger.info("Report checkin %s (%s) pending anti-cheat for user %s", checkin_id, self.source, user_id)

        return AdmissionVerdict(
            verdict=VERDICT_PENDING_ANTICHEAT,
            message=f"Чтобы засчитать отчёт, ответь на вопрос: {question.text}",
            checkin_id=checkin_id,
            local_date=day.local_date,
            question=question.text,
            expires_at=expires_at,
        )


class VoiceCheckinUseCase(_ReportCheckinUseCase):
    source = SOURCE_VOICE

    def execute(
        self,
        telegram_user_id: int,
        file_id: str | None = None,
        duration: int | None = None,
        audio_base64: str | None = None,
        audio_mime: str | None = None,
        now: datetime | None = None,
    ) -> AdmissionVerdict:
        now = now or datetime.now(timezone.utc)
        audio = {"mime": audio_mime or "audio/ogg", "base64": audio_base64} if audio_base64 else None
        return self._admit(
            telegram_user_id,
            now,
            meta={"kind": SOURCE_VOICE, "file_id": file_id, "duration": duration},
            audio=audio,
        )


class TextCheckinUseCase(_ReportCheckinUseCase):
    source = SOURCE_TEXT

    def execute(self, telegram_user_id: int, text: str, now: datetime | None = None) -> AdmissionVerdict:
        now = now or datetime.now(timezone.utc)
        text = (text or "").strip()
        if not text:
            return _rejected(REASON_EMPTY_TEXT)
        return self._admit(
            telegram_user_id,
            now,
            meta={"kind": SOURCE_TEXT, "text_preview": text[:140]},
            text=text,
        )
