"""
Access lifecycle resolver — lead / trial / paid / expired из платежей и trial-маркеров.

Класс доступа не хранится, а вычисляется при каждом запросе. Проактивные
сообщения (возврат, пробная неделя, ссылка на чат, продление) отдаются
не больше одного раза на событие — через маркеры в ledger.
"""
import logging
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone

from sqlalchemy import literal, or_
from sqlalchemy.orm import Session

from earlyrise.application import ledger
from earlyrise.application.messaging import MessagingError, TelegramGateway, pace
from earlyrise.application.participation import (
    get_active_challenge,
    get_active_participation,
    require_user,
    touch_last_seen,
)
from earlyrise.application.sweep_report import SweepReport
from earlyrise.config import get_settings
from earlyrise.domain.access import (
    ACCESS_EXPIRED,
    ACCESS_LEAD,
    ACCESS_PAID,
    ACCESS_TRIAL,
    TARIFFS,
    TRIAL_DAYS,
    TRIAL_OFFER_INACTIVE_DAYS,
    PaymentFact,
    access_days,
    aggregate_paid_until,
    classify_access,
    fmt_date_ru,
)
from earlyrise.domain.errors import UserError
from earlyrise.domain.timewindow import ensure_utc
from earlyrise.infrastructure.db.capabilities import get_capabilities
from earlyrise.infrastructure.db.models import Payment, User

logger = logging.getLogger(__name__)

PAYMENT_PAID = "paid"
PAYMENT_REFUNDED = "refunded"
PAYMENT_STATUSES = ("pending", "paid", "refunded", "canceled")

OFFER_REFUND_NOTICE = "refund_notice"
OFFER_TRIAL = "trial_7d"
OFFER_CHAT_INVITE = "chat_invite"
OFFER_RENEW = "renew_prompt"

REFUND_NOTICE_TEXT = (
    "Вижу возврат по оплате.\n\n"
    "Если хочешь продолжить участие — открой /menu и нажми «💳 Оплатить участие»."
)
TRIAL_OFFER_TEXT = (
    "Вижу ты уже несколько дней присматриваешься 👀\n\n"
    "Хочешь попробовать бесплатно 7 дней?\n"
    "- открой /menu и нажми «🎁 Пробная неделя»\n"
    "- или напиши /trial\n\n"
    "Вопросы лучше обсуждать в общем чате с участниками."
)
TRIAL_OFFER_SWEEP_TEXT = (
    "Привет! Если хочешь, можно попробовать EarlyRise бесплатно 7 дней.\n\n"
    "Открой /menu и нажми «🎁 Пробная неделя» — включу пробный доступ ✅"
)
RENEW_PROMPT_TEXT = (
    "Срок участия закончился ⛔️\n\n"
    "Открой /menu и нажми «Восстановить участие», чтобы выбрать тариф."
)


def chat_invite_text(link: str) -> str:
    return "Отлично, оплата прошла ✅\n\nВот ссылка на общий чат участников:\n" + link


@dataclass
class AccessInfo:
    access_class: str
    forever: bool = False
    paid_until: datetime | None = None
    trial_until: datetime | None = None
    trial_used: bool = False
    has_paid_history: bool = False

    @property
    def trial_active(self) -> bool:
        return self.access_class == ACCESS_TRIAL

    def as_dict(self) -> dict:
        return {
            "status": self.access_class,
            "paid_forever": self.forever,
            "paid_until": self.paid_until.isoformat() if self.paid_until else None,
            "paid_until_text": fmt_date_ru(self.paid_until) if self.paid_until else None,
            "trial_until": self.trial_until.isoformat() if self.trial_until else None,
            "trial_until_text": fmt_date_ru(self.trial_until) if self.trial_until else None,
        }


# ============================================================================
# Facts
# ============================================================================


def _payments_query(db: Session, user_id: int, challenge_id: int | None):
    caps = get_capabilities(db)
    plan_col = Payment.plan_code if caps.payments_plan_code else literal(None).label("plan_code")
    q = db.query(
        Payment.created_at, Payment.amount, plan_col, Payment.status, Payment.provider_payment_id,
    ).filter(Payment.user_id == user_id)
    if challenge_id is not None:
        q = q.filter(or_(Payment.challenge_id == challenge_id, Payment.challenge_id.is_(None)))
    return q


def load_paid_payments(db: Session, user_id: int, challenge_id: int | None) -> list[PaymentFact]:
    rows = _payments_query(db, user_id, challenge_id).filter(Payment.status == PAYMENT_PAID).all()
    return [PaymentFact(created_at=r.created_at, amount=r.amount, plan_code=r.plan_code) for r in rows]


def latest_payment(db: Session, user_id: int, challenge_id: int | None):
    return (
        _payments_query(db, user_id, challenge_id)
        .order_by(Payment.created_at.desc(), Payment.id.desc())
        .first()
    )


def get_trial_start(db: Session, user_id: int) -> datetime | None:
    entry = ledger.latest_marker(db, user_id, ledger.TRIAL_START)
    return ensure_utc(entry.created_at) if entry else None


def resolve_access(db: Session, user_id: int, challenge_id: int | None, now: datetime) -> AccessInfo:
    payments = load_paid_payments(db, user_id, challenge_id)
    forever, paid_until = aggregate_paid_until(payments)
    trial_start = get_trial_start(db, user_id)
    trial_until = trial_start + timedelta(days=TRIAL_DAYS) if trial_start else None
    # Оплаченные штрафы доступа не дают и историей оплат не считаются
    has_paid = any(access_days(p.plan_code, p.amount) is not None for p in payments)
    return AccessInfo(
        access_class=classify_access(now, forever, paid_until, trial_until, has_paid),
        forever=forever,
        paid_until=paid_until,
        trial_until=trial_until,
        trial_used=trial_start is not None,
        has_paid_history=has_paid,
    )


def _inactive_since(user: User, now: datetime) -> bool:
    seen = user.last_seen_at or user.created_at
    if seen is None:
        return False
    return ensure_utc(seen) <= ensure_utc(now) - timedelta(days=TRIAL_OFFER_INACTIVE_DAYS)


# ============================================================================
# Use cases
# ============================================================================


class ClaimTrialUseCase:
    def __init__(self, db: Session):
        self.db = db

    def execute(self, telegram_user_id: int, now: datetime | None = None) -> AccessInfo:
        now = now or datetime.now(timezone.utc)
        user = require_user(self.db, telegram_user_id)
        challenge = get_active_challenge(self.db)
        challenge_id = challenge.id if challenge else None

        info = resolve_access(self.db, user.id, challenge_id, now)
        if info.access_class == ACCESS_PAID:
            raise UserError("У тебя уже есть оплаченный доступ ✅", code="already_paid")
        if info.access_class == ACCESS_TRIAL:
            until = fmt_date_ru(info.trial_until)
            raise UserError(f"Пробная неделя уже активна до {until}", code="trial_active")
        if info.trial_used:
            raise UserError("Пробная неделя уже была использована", code="trial_used")

        ledger.put_marker(self.db, user.id, challenge_id, ledger.TRIAL_START, now)
        touch_last_seen(self.db, user, now)
        self.db.commit()
        logger.info("Trial started for user %s", user.id)
        return resolve_access(self.db, user.id, challenge_id, now)


@dataclass
class Profile:
    user_id: int
    telegram_user_id: int
    timezone: str
    access: AccessInfo
    challenge_id: int | None = None
    participation: dict | None = None
    offer: dict | None = None
    tariffs: dict = field(default_factory=lambda: TARIFFS)


class GetProfileUseCase:
    """
    Профиль + максимум одно проактивное сообщение.

    Порядок: возврат → ссылка на чат (paid) → продление (expired) → пробная неделя (lead).
    """

    def __init__(self, db: Session):
        self.db = db

    def execute(self, telegram_user_id: int, now: datetime | None = None) -> Profile:
        now = now or datetime.now(timezone.utc)
        user = require_user(self.db, telegram_user_id)
        challenge = get_active_challenge(self.db)
        challenge_id = challenge.id if challenge else None
        info = resolve_access(self.db, user.id, challenge_id, now)

        # Неактивность считается до того, как этот запрос обновит last_seen_at
        inactive = _inactive_since(user, now)
        offer = self._pick_offer(user, challenge_id, info, inactive, now)

        participation = None
        if challenge is not None:
            p = get_active_participation(self.db, user.id, challenge.id)
            if p is not None:
                participation = {
                    "wake_mode": p.wake_mode,
                    "wake_time_local": p.wake_time_local,
                    "joined_at": ensure_utc(p.joined_at).isoformat(),
                }

        touch_last_seen(self.db, user, now)
        self.db.commit()
        return Profile(
            user_id=user.id,
            telegram_user_id=user.telegram_user_id,
            timezone=user.timezone,
            access=info,
            challenge_id=challenge_id,
            participation=participation,
            offer=offer,
        )

    def _pick_offer(
        self, user: User, challenge_id: int | None, info: AccessInfo, inactive: bool, now: datetime,
    ) -> dict | None:
        if info.access_class != ACCESS_PAID:
            last = latest_payment(self.db, user.id, challenge_id)
            if last is not None and last.status == PAYMENT_REFUNDED:
                if ledger.ensure_marker(
                    self.db, user.id, challenge_id, ledger.refund_notice_sent(last.provider_payment_id), now,
                ):
                    return {"type": OFFER_REFUND_NOTICE, "message": REFUND_NOTICE_TEXT}

        if info.access_class == ACCESS_PAID and challenge_id is not None:
            link = get_settings().CHAT_INVITE_URL
            if link and ledger.ensure_marker(
                self.db, user.id, challenge_id, ledger.chat_invite_sent(challenge_id), now,
            ):
                return {"type": OFFER_CHAT_INVITE, "message": chat_invite_text(link)}

        if info.access_class == ACCESS_EXPIRED and info.paid_until is not None:
            if ledger.ensure_marker(
                self.db, user.id, challenge_id, ledger.renew_prompt_sent(info.paid_until), now,
            ):
                return {"type": OFFER_RENEW, "message": RENEW_PROMPT_TEXT}

        if info.access_class == ACCESS_LEAD and not info.trial_used and inactive:
            if ledger.ensure_marker(self.db, user.id, challenge_id, ledger.TRIAL_OFFER_SENT, now):
                return {"type": OFFER_TRIAL, "message": TRIAL_OFFER_TEXT}
        return None


class RecordPaymentUseCase:
    """Факт от платёжного провайдера: upsert по provider_payment_id."""

    def __init__(self, db: Session):
        self.db = db

    def execute(
        self,
        telegram_user_id: int,
        provider_payment_id: str,
        status: str,
        amount: int,
        plan_code: str | None = None,
        now: datetime | None = None,
    ) -> Payment:
        now = now or datetime.now(timezone.utc)
        if status not in PAYMENT_STATUSES:
            raise UserError(f"Неизвестный статус платежа: {status}", code="invalid_payment_status")
        user = require_user(self.db, telegram_user_id)
        challenge = get_active_challenge(self.db)

        payment = self.db.query(Payment).filter(Payment.provider_payment_id == provider_payment_id).first()
        if payment is None:
            payment = Payment(
                user_id=user.id,
                challenge_id=challenge.id if challenge else None,
                provider_payment_id=provider_payment_id,
                amount=amount,
                plan_code=plan_code,
                status=status,
                created_at=now,
            )
            self.db.add(payment)
        else:
            payment.status = status
            if plan_code is not None:
                payment.plan_code = plan_code
        if status == PAYMENT_PAID and payment.paid_at is None:
            payment.paid_at = now
        self.db.commit()
        return payment


# ============================================================================
# Trial offer sweep
# ============================================================================


class TrialOfferSweep:
    """Лидам, неактивным 2+ дня и без пробной недели, один раз предлагаем trial."""

    def __init__(self, db: Session, gateway: TelegramGateway | None = None, send_delay_ms: int | None = None):
        settings = get_settings()
        self.db = db
        self.gateway = gateway if gateway is not None else TelegramGateway()
        self.send_delay_ms = settings.SWEEP_SEND_DELAY_MS if send_delay_ms is None else send_delay_ms
        self.error_limit = settings.SWEEP_ERROR_SAMPLE

    def run(self, now: datetime | None = None, dry_run: bool = False, limit: int = 200) -> SweepReport:
        now = now or datetime.now(timezone.utc)
        report = SweepReport(dry_run=dry_run, error_limit=self.error_limit)
        for key in ("evaluated", "candidates", "sent"):
            report.counts[key] = 0

        challenge = get_active_challenge(self.db)
        if challenge is None:
            return report

        for user in self.db.query(User).order_by(User.id).all():
            if report.counts["candidates"] >= limit:
                break
            report.inc("evaluated")
            try:
                if not _inactive_since(user, now):
                    continue
                if ledger.has_marker(self.db, user.id, challenge.id, ledger.TRIAL_OFFER_SENT):
                    continue
                info = resolve_access(self.db, user.id, challenge.id, now)
                if info.access_class != ACCESS_LEAD or info.trial_used:
                    continue
                report.inc("candidates")
                report.plan("trial_offer", user.id)
                if dry_run:
                    continue
                self.gateway.send_message(user.telegram_user_id, TRIAL_OFFER_SWEEP_TEXT)
                ledger.put_marker(self.db, user.id, challenge.id, ledger.TRIAL_OFFER_SENT, now)
                self.db.commit()
                report.inc("sent")
                pace(self.send_delay_ms)
            except MessagingError as exc:
                report.add_error(user.id, "trial_offer", exc.message)
            except Exception as exc:
                logger.exception("Trial offer failed for user_id=%s", user.id)
                self.db.rollback()
                report.add_error(user.id, "trial_offer", str(exc))
        return report
