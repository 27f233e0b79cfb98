"""
Penalty escalation sweep + штрафные сценарии (выбор, оплата, задание).

Sweep запускается внешним планировщиком. Для каждого активного участия
с фиксированным временем подъёма, у которого локальное время ≥ wake + 30:

  1. "+" сегодня засчитан → маркер notice_sent, пропуска нет
  2. иначе маркер penalty:miss:<date>, уровень = clamp(число пропусков, 1, 4)
  3. уровни 1–3: сообщение с выбором (приседания на видео или штраф)
  4. уровень 4: участие останавливается у пользователя и его напарника

Все эффекты закрыты маркерами, повторный прогон за тот же день ничего не делает.
"""
import logging
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone

from sqlalchemy.orm import Session

from earlyrise.application import ledger
from earlyrise.application.buddies import PAIR_INACTIVE, find_active_pair, partner_participation_id
from earlyrise.application.checkins import SOURCE_GROUP_TAP, STATUS_APPROVED
from earlyrise.application.messaging import MessagingError, TelegramGateway, inline_keyboard, pace
from earlyrise.application.participation import get_active_challenge, require_user
from earlyrise.application.sweep_report import SweepReport
from earlyrise.config import get_settings
from earlyrise.domain.access import KICK_LEVEL, PENALTY_LEVELS, penalty_level
from earlyrise.domain.errors import ConfigurationError, PermissionDeniedError, UserError
from earlyrise.domain.timewindow import local_parts, utc_range_for_local_day
from earlyrise.domain.wake import WAKE_MODE_FIXED, is_penalty_due, wake_minutes
from earlyrise.infrastructure.db.models import BuddyPair, Checkin, LedgerEntry, Participation, Payment, User

logger = logging.getLogger(__name__)

CHOICE_TASK = "task"
CHOICE_PAY = "pay"
FINE_RECONCILE_DAYS = 3

KICK_TEXT = (
    "Это 4-й пропуск. Вы вылетаете из челленджа вместе с напарником. ❌\n\n"
    "Если захочешь вернуться — напиши /menu и восстанови участие."
)


def notice_text(level: int, squats: int, fine: int) -> str:
    return (
        f"Сегодня пропуск №{level}.\n\n"
        "Выбери вариант до 23:59 по твоей таймзоне:\n"
        f"- {squats} приседаний (видео)\n"
        f"- или штраф {fine} ₽"
    )


def notice_keyboard(local_date: str) -> dict:
    return inline_keyboard([
        [("Выполнить штрафное задание", f"pen:task:{local_date}")],
        [("Оплатить штраф", f"pen:pay:{local_date}")],
    ])


def fine_paid_text(amount: int) -> str:
    return f"Штраф оплачен ✅\n\nСумма: {amount} ₽"


def level_for_date(db: Session, user_id: int, challenge_id: int, local_date: str) -> int | None:
    """Уровень пропуска на дату: None если пропуска в этот день нет."""
    dates = ledger.miss_dates(db, user_id, challenge_id)
    if local_date not in dates:
        return None
    return penalty_level(sum(1 for d in dates if d <= local_date))


def has_approved_tap(db: Session, user_id: int, challenge_id: int, start_utc: datetime, end_utc: datetime) -> bool:
    return db.query(Checkin.id).filter(
        Checkin.user_id == user_id,
        Checkin.challenge_id == challenge_id,
        Checkin.source == SOURCE_GROUP_TAP,
        Checkin.status == STATUS_APPROVED,
        Checkin.checkin_at >= start_utc,
        Checkin.checkin_at <= end_utc,
    ).first() is not None


# ============================================================================
# Sweep
# ============================================================================


class PenaltySweep:
    def __init__(self, db: Session, gateway: TelegramGateway | None = None, send_delay_ms: int | None = None):
        settings = get_settings()
        self.db = db
        self.gateway = gateway if gateway is not None else TelegramGateway()
        self.send_delay_ms = settings.SWEEP_SEND_DELAY_MS if send_delay_ms is None else send_delay_ms
        self.error_limit = settings.SWEEP_ERROR_SAMPLE

    def run(self, now: datetime | None = None, dry_run: bool = False) -> SweepReport:
        now = now or datetime.now(timezone.utc)
        report = SweepReport(dry_run=dry_run, error_limit=self.error_limit)
        for key in ("evaluated", "misses_recorded", "notices_sent", "kicked", "fines_paid_notified"):
            report.counts[key] = 0

        challenge = get_active_challenge(self.db)
        if challenge is None:
            logger.info("Penalty sweep skipped: no active challenge")
            return report

        rows = (
            self.db.query(Participation, User)
            .join(User, User.id == Participation.user_id)
            .filter(
                Participation.challenge_id == challenge.id,
                Participation.left_at.is_(None),
                Participation.wake_mode == WAKE_MODE_FIXED,
            )
            .order_by(Participation.id)
            .all()
        )

        # Участия, остановленные в этом прогоне (напарник кикнутого пользователя)
        stopped: set[int] = set()
        for participation, user in rows:
            if participation.id in stopped:
                continue
            try:
                self._process(participation, user, challenge.id, now, report, stopped)
            except Exception as exc:
                logger.exception("Penalty sweep failed for user_id=%s", user.id)
                self.db.rollback()
                report.add_error(user.id, "penalty", str(exc))

        try:
            self._reconcile_fines(challenge.id, now, report)
        except Exception as exc:
            logger.exception("Fine reconciliation failed")
            self.db.rollback()
            report.add_error(None, "fines", str(exc))

        logger.info("Penalty sweep done: %s", report.counts)
        return report

    def _process(
        self,
        participation: Participation,
        user: User,
        challenge_id: int,
        now: datetime,
        report: SweepReport,
        stopped: set[int],
    ) -> None:
        wake_min = wake_minutes(participation.wake_time_local)
        if wake_min is None:
            return
        parts = local_parts(now, user.timezone)
        if not is_penalty_due(parts.minutes, wake_min):
            return

        local_date = parts.date_str
        report.inc("evaluated")
        if ledger.has_marker(self.db, user.id, challenge_id, ledger.penalty_notice_sent(local_date)):
            return

        day = utc_range_for_local_day(now, user.timezone)
        if has_approved_tap(self.db, user.id, challenge_id, day.start_utc, day.end_utc):
            if not report.dry_run:
                ledger.put_marker(self.db, user.id, challenge_id, ledger.penalty_notice_sent(local_date), now)
                self.db.commit()
            return

        dates = ledger.miss_dates(self.db, user.id, challenge_id)
        already_missed = local_date in dates
        level = penalty_level(len(dates | {local_date}))

        if report.dry_run:
            report.inc("misses_recorded", 0 if already_missed else 1)
            if level >= KICK_LEVEL:
                report.plan("kick", user.id, local_date=local_date, level=level)
                report.inc("kicked")
            else:
                report.plan("notice", user.id, local_date=local_date, level=level)
                report.inc("notices_sent")
            return

        # Kick: пропуск, уведомление и выход из челленджа фиксируются одним коммитом
        affected: list[tuple[Participation, User]] = []
        pair = None
        if level >= KICK_LEVEL:
            affected, pair = self._kick_targets(participation, user)

        if not already_missed:
            ledger.put_marker(self.db, user.id, challenge_id, ledger.penalty_miss(local_date), now)
            report.inc("misses_recorded")
        ledger.put_marker(self.db, user.id, challenge_id, ledger.penalty_notice_sent(local_date), now)

        if level >= KICK_LEVEL:
            self._kick(affected, pair, user, challenge_id, local_date, now, report, stopped)
            return
        self.db.commit()

        squats, fine = PENALTY_LEVELS[level]
        report.plan("notice", user.id, local_date=local_date, level=level)
        try:
            self.gateway.send_message(
                user.telegram_user_id,
                notice_text(level, squats, fine),
                reply_markup=notice_keyboard(local_date),
            )
            report.inc("notices_sent")
        except MessagingError as exc:
            report.add_error(user.id, "notice", exc.message)
        pace(self.send_delay_ms)

    def _kick_targets(
        self,
        participation: Participation,
        user: User,
    ) -> tuple[list[tuple[Participation, User]], BuddyPair | None]:
        """Affected set (self + active buddy), collected before any mutation."""
        affected: list[tuple[Participation, User]] = [(participation, user)]
        pair = find_active_pair(self.db, participation.id)
        if pair is not None:
            partner = self.db.get(Participation, partner_participation_id(pair, participation.id))
            if partner is not None and partner.left_at is None:
                partner_user = self.db.get(User, partner.user_id)
                if partner_user is not None:
                    affected.append((partner, partner_user))
        return affected, pair

    def _kick(
        self,
        affected: list[tuple[Participation, User]],
        pair: BuddyPair | None,
        user: User,
        challenge_id: int,
        local_date: str,
        now: datetime,
        report: SweepReport,
        stopped: set[int],
    ) -> None:
        # State changes for everyone, committed together with the pending markers
        for p, u in affected:
            p.left_at = now
            ledger.ensure_marker(self.db, u.id, challenge_id, ledger.penalty_kicked(local_date), now)
        if pair is not None:
            pair.status = PAIR_INACTIVE
            pair.ended_at = now
        self.db.commit()
        stopped.update(p.id for p, _ in affected)
        logger.info("Kicked user_id=%s with %d affected participation(s)", user.id, len(affected))

        # External effects; failures are reported, not retried
        for p, u in affected:
            report.inc("kicked")
            report.plan("kick", u.id, local_date=local_date, buddy=u.id != user.id)
            try:
                self.gateway.remove_member(u.telegram_user_id)
            except MessagingError as exc:
                report.add_error(u.id, "remove_member", exc.message)
            try:
                self.gateway.send_message(u.telegram_user_id, KICK_TEXT)
            except MessagingError as exc:
                report.add_error(u.id, "kick_notice", exc.message)
            pace(self.send_delay_ms)

    def _reconcile_fines(self, challenge_id: int, now: datetime, report: SweepReport) -> None:
        """Pay-intent за последние 3 дня, чей платёж стал paid → одно подтверждение."""
        prefix = "penalty:pay_intent:"
        intents = (
            self.db.query(LedgerEntry)
            .filter(
                LedgerEntry.challenge_id == challenge_id,
                LedgerEntry.reason.startswith(prefix, autoescape=True),
                LedgerEntry.created_at >= now - timedelta(days=FINE_RECONCILE_DAYS),
            )
            .order_by(LedgerEntry.id)
            .all()
        )
        for entry in intents:
            parts = entry.reason[len(prefix):].split("|")
            if len(parts) != 3:
                continue
            local_date, ppid, amount = parts
            notified = ledger.penalty_pay_notified(local_date, ppid)
            if ledger.has_marker(self.db, entry.user_id, challenge_id, notified):
                continue
            payment = self.db.query(Payment).filter(Payment.provider_payment_id == ppid).first()
            if payment is None or payment.status != "paid":
                continue
            user = self.db.get(User, entry.user_id)
            if user is None:
                report.add_error(entry.user_id, "fine_paid", "user not found")
                continue
            report.plan("fine_paid", user.id, local_date=local_date)
            if report.dry_run:
                report.inc("fines_paid_notified")
                continue
            try:
                self.gateway.send_message(user.telegram_user_id, fine_paid_text(int(amount)))
            except MessagingError as exc:
                report.add_error(user.id, "fine_paid", exc.message)
                continue
            ledger.put_marker(self.db, user.id, challenge_id, notified, now)
            self.db.commit()
            report.inc("fines_paid_notified")
            pace(self.send_delay_ms)


# ============================================================================
# Penalty choice / fine / task
# ============================================================================


@dataclass
class PenaltyChoice:
    choice: str
    local_date: str
    level: int
    squats: int
    fine: int
    message: str


def _penalty_context(db: Session, telegram_user_id: int, local_date: str | None, now: datetime):
    challenge = get_active_challenge(db)
    if challenge is None:
        raise ConfigurationError("Сейчас нет активного челленджа", code="no_active_challenge")
    user = require_user(db, telegram_user_id)
    if not local_date:
        local_date = utc_range_for_local_day(now, user.timezone).local_date
    level = level_for_date(db, user.id, challenge.id, local_date)
    if level is None:
        raise UserError("Сегодня штраф не назначен.", code="no_penalty_today")
    if level >= KICK_LEVEL:
        raise UserError("Это 4-й пропуск: участие остановлено.", code="kicked")
    return challenge, user, local_date, level


class ChoosePenaltyUseCase:
    def __init__(self, db: Session):
        self.db = db

    def execute(
        self, telegram_user_id: int, choice: str, local_date: str | None = None, now: datetime | None = None,
    ) -> PenaltyChoice:
        now = now or datetime.now(timezone.utc)
        if choice not in (CHOICE_TASK, CHOICE_PAY):
            raise UserError("Неизвестный вариант", code="invalid_choice")
        challenge, user, local_date, level = _penalty_context(self.db, telegram_user_id, local_date, now)
        squats, fine = PENALTY_LEVELS[level]

        ledger.ensure_marker(self.db, user.id, challenge.id, ledger.penalty_choice(choice, local_date), now)
        self.db.commit()

        if choice == CHOICE_TASK:
            message = (
                f"Ок.\n\nПришли видео с приседаниями {squats} раз до 23:59 по твоей таймзоне сегодня.\n\n"
                "Я отправлю куратору на проверку."
            )
        else:
            message = f"Ок.\n\nОплати штраф {fine} ₽ до 23:59 сегодня. Сейчас пришлю ссылку на оплату."
        return PenaltyChoice(choice, local_date, level, squats, fine, message)


class RegisterFineIntentUseCase:
    """
    Связать созданный провайдером платёж со штрафом дня.
    Ссылку на оплату создаёт внешний платёжный модуль.
    """

    def __init__(self, db: Session):
        self.db = db

    def execute(
        self,
        telegram_user_id: int,
        provider_payment_id: str,
        local_date: str | None = None,
        now: datetime | None = None,
    ) -> PenaltyChoice:
        now = now or datetime.now(timezone.utc)
        challenge, user, local_date, level = _penalty_context(self.db, telegram_user_id, local_date, now)
        squats, fine = PENALTY_LEVELS[level]

        payment = self.db.query(Payment).filter(Payment.provider_payment_id == provider_payment_id).first()
        if payment is None:
            payment = Payment(
                user_id=user.id,
                challenge_id=challenge.id,
                provider_payment_id=provider_payment_id,
                amount=fine,
                plan_code=f"penalty_l{level}",
                status="pending",
                created_at=now,
            )
            self.db.add(payment)
        elif payment.user_id != user.id:
            raise UserError("Платёж принадлежит другому пользователю", code="payment_mismatch")

        ledger.ensure_marker(self.db, user.id, challenge.id, ledger.penalty_choice(CHOICE_PAY, local_date), now)
        ledger.ensure_marker(
            self.db, user.id, challenge.id, ledger.penalty_pay_intent(local_date, provider_payment_id, fine), now,
        )
        self.db.commit()
        return PenaltyChoice(
            CHOICE_PAY, local_date, level, squats, fine,
            f"Ок.\n\nОплати штраф {fine} ₽ до 23:59 сегодня.",
        )


class SubmitPenaltyTaskUseCase:
    def __init__(self, db: Session):
        self.db = db

    def execute(self, telegram_user_id: int, local_date: str | None = None, now: datetime | None = None) -> dict:
        now = now or datetime.now(timezone.utc)
        challenge, user, local_date, level = _penalty_context(self.db, telegram_user_id, local_date, now)
        if not ledger.has_marker(self.db, user.id, challenge.id, ledger.penalty_choice(CHOICE_TASK, local_date)):
            raise UserError("Сначала выбери «Выполнить штрафное задание».", code="task_not_chosen")
        ledger.ensure_marker(self.db, user.id, challenge.id, ledger.penalty_task_submitted(local_date), now)
        self.db.commit()
        return {
            "local_date": local_date,
            "level": level,
            "squats": PENALTY_LEVELS[level][0],
            "curator_telegram_user_id": get_settings().CURATOR_TELEGRAM_USER_ID,
        }


class ApprovePenaltyTaskUseCase:
    def __init__(self, db: Session):
        self.db = db

    def execute(
        self, telegram_user_id: int, local_date: str, curator_telegram_user_id: int, now: datetime | None = None,
    ) -> None:
        now = now or datetime.now(timezone.utc)
        configured = get_settings().CURATOR_TELEGRAM_USER_ID
        if configured is None or configured != curator_telegram_user_id:
            raise PermissionDeniedError("Подтверждать задание может только куратор")
        challenge = get_active_challenge(self.db)
        if challenge is None:
            raise ConfigurationError("Сейчас нет активного челленджа", code="no_active_challenge")
        user = require_user(self.db, telegram_user_id)
        if not ledger.has_marker(self.db, user.id, challenge.id, ledger.penalty_task_submitted(local_date)):
            raise UserError("Задание ещё не отправлено", code="task_not_submitted")
        ledger.ensure_marker(self.db, user.id, challenge.id, ledger.penalty_task_approved(local_date), now)
        self.db.commit()
