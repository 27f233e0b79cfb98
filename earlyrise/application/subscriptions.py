"""
Subscription sweep — напоминания о продлении и снятие доступа после оплаченного периода.

Для каждого участия (включая вышедших) paid_until считается по платежам:
  T − 2 дня      → напоминание о продлении
  [T, T + 1 день) → сообщение об окончании + left_at у активного участия
  T + 1 день и позже → удаление из общего чата (ban + unban)

Каждый триггер закрыт своим маркером с датой T, поэтому срабатывает один раз
на каждое окончание доступа. Forever-оплаты и активный trial пропускаются.
"""
import logging
from datetime import datetime, timedelta, timezone

from sqlalchemy.orm import Session

from earlyrise.application import ledger
from earlyrise.application.access import resolve_access
from earlyrise.application.messaging import MessagingError, TelegramGateway, pace
from earlyrise.application.participation import get_active_challenge
from earlyrise.application.sweep_report import SweepReport
from earlyrise.config import get_settings
from earlyrise.domain.access import fmt_date_ru
from earlyrise.domain.timewindow import ensure_utc
from earlyrise.infrastructure.db.models import Participation, User

logger = logging.getLogger(__name__)

REMINDER_LEAD = timedelta(days=2)
KICK_GRACE = timedelta(days=1)

EXPIRY_PROMPT_TEXT = (
    "Доступ закончился ⛔️\n\n"
    "Чтобы продолжить участие, открой /menu и нажми «Восстановить участие»."
)


def reminder_text(paid_until: datetime) -> str:
    return (
        f"Напоминание: твой период участия заканчивается {fmt_date_ru(paid_until)}.\n\n"
        "Чтобы продлить, открой /menu и выбери тариф."
    )


class SubscriptionSweep:
    def __init__(self, db: Session, gateway: TelegramGateway | None = None, send_delay_ms: int | None = None):
        settings = get_settings()
        self.db = db
        self.gateway = gateway if gateway is not None else TelegramGateway()
        self.send_delay_ms = settings.SWEEP_SEND_DELAY_MS if send_delay_ms is None else send_delay_ms
        self.error_limit = settings.SWEEP_ERROR_SAMPLE

    def run(self, now: datetime | None = None, dry_run: bool = False) -> SweepReport:
        now = ensure_utc(now or datetime.now(timezone.utc))
        report = SweepReport(dry_run=dry_run, error_limit=self.error_limit)
        for key in (
            "computed_users", "reminder_candidates", "reminders_sent", "expiry_candidates",
            "expiry_prompts_sent", "participations_marked_left", "kick_candidates", "kicked",
        ):
            report.counts[key] = 0

        challenge = get_active_challenge(self.db)
        if challenge is None:
            logger.info("Subscription sweep skipped: no active challenge")
            return report

        rows = (
            self.db.query(Participation, User)
            .join(User, User.id == Participation.user_id)
            .filter(Participation.challenge_id == challenge.id)
            .order_by(Participation.id)
            .all()
        )
        for participation, user in rows:
            try:
                self._process(participation, user, challenge.id, now, report)
            except Exception as exc:
                logger.exception("Subscription sweep failed for user_id=%s", user.id)
                self.db.rollback()
                report.add_error(user.id, "subscription", str(exc))

        logger.info("Subscription sweep done: %s", report.counts)
        return report

    def _process(
        self, participation: Participation, user: User, challenge_id: int, now: datetime, report: SweepReport,
    ) -> None:
        info = resolve_access(self.db, user.id, challenge_id, now)
        if info.forever or info.paid_until is None:
            return
        if info.trial_until is not None and now < info.trial_until:
            return
        report.inc("computed_users")
        paid_until = info.paid_until

        if paid_until - REMINDER_LEAD <= now < paid_until:
            report.inc("reminder_candidates")
            marker = ledger.sub_reminder_sent(paid_until)
            if ledger.has_marker(self.db, user.id, challenge_id, marker):
                return
            report.plan("reminder", user.id, paid_until=paid_until.isoformat())
            if report.dry_run:
                return
            if self._send(user, reminder_text(paid_until), report, "reminder"):
                ledger.put_marker(self.db, user.id, challenge_id, marker, now)
                self.db.commit()
                report.inc("reminders_sent")

        elif paid_until <= now < paid_until + KICK_GRACE:
            report.inc("expiry_candidates")
            marker = ledger.sub_expiry_prompt_sent(paid_until)
            still_active = participation.left_at is None
            if ledger.has_marker(self.db, user.id, challenge_id, marker) and not still_active:
                return
            report.plan("expiry_prompt", user.id, paid_until=paid_until.isoformat())
            if report.dry_run:
                return
            if still_active:
                participation.left_at = now
                self.db.commit()
                report.inc("participations_marked_left")
            if not ledger.has_marker(self.db, user.id, challenge_id, marker):
                if self._send(user, EXPIRY_PROMPT_TEXT, report, "expiry_prompt"):
                    ledger.put_marker(self.db, user.id, challenge_id, marker, now)
                    self.db.commit()
                    report.inc("expiry_prompts_sent")

        elif now >= paid_until + KICK_GRACE:
            marker = ledger.sub_kicked(paid_until)
            if ledger.has_marker(self.db, user.id, challenge_id, marker):
                return
            report.inc("kick_candidates")
            report.plan("kick", user.id, paid_until=paid_until.isoformat())
            if report.dry_run:
                return
            if participation.left_at is None:
                participation.left_at = now
                report.inc("participations_marked_left")
            if not self.gateway.group_chat_id:
                self.db.commit()
                report.add_error(user.id, "kick", "GROUP_CHAT_ID is not configured")
                return
            try:
                self.gateway.remove_member(user.telegram_user_id)
            except MessagingError as exc:
                self.db.commit()
                report.add_error(user.id, "kick", exc.message)
                return
            ledger.put_marker(self.db, user.id, challenge_id, marker, now)
            self.db.commit()
            report.inc("kicked")
            pace(self.send_delay_ms)

    def _send(self, user: User, text: str, report: SweepReport, stage: str) -> bool:
        try:
            self.gateway.send_message(user.telegram_user_id, text)
        except MessagingError as exc:
            report.add_error(user.id, stage, exc.message)
            return False
        pace(self.send_delay_ms)
        return True
