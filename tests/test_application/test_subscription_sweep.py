"""Tests for SubscriptionSweep: renewal reminder, expiry prompt, removal from the group"""
from datetime import datetime, timedelta, timezone

from earlyrise.application import ledger
from earlyrise.application.access import ClaimTrialUseCase
from earlyrise.application.messaging import MessagingError
from earlyrise.application.subscriptions import EXPIRY_PROMPT_TEXT, SubscriptionSweep, reminder_text
from earlyrise.infrastructure.db.models import Participation, Payment, User

UTC = timezone.utc
PAID_AT = datetime(2026, 3, 1, 12, 0, tzinfo=UTC)
T = PAID_AT + timedelta(days=30)
TG = 100


def _member(db, challenge, plan_code="d30", tg=TG):
    user = User(telegram_user_id=tg, timezone="GMT+03:00", created_at=PAID_AT, last_seen_at=PAID_AT)
    db.add(user)
    db.flush()
    p = Participation(
        user_id=user.id, challenge_id=challenge.id, wake_mode="fixed", wake_time_local="07:00", joined_at=PAID_AT,
    )
    db.add(p)
    if plan_code is not None:
        db.add(Payment(
            user_id=user.id, challenge_id=challenge.id, provider_payment_id=f"p-{tg}",
            amount=490, plan_code=plan_code, status="paid", created_at=PAID_AT, paid_at=PAID_AT,
        ))
    db.commit()
    return user, p


def _sweep(db, gateway, now, dry_run=False):
    return SubscriptionSweep(db, gateway=gateway, send_delay_ms=0).run(now=now, dry_run=dry_run)


class TestReminder:
    def test_outside_window_nothing(self, db_session, challenge, gateway):
        _member(db_session, challenge)
        report = _sweep(db_session, gateway, T - timedelta(days=2, seconds=1))
        assert report.counts["computed_users"] == 1
        assert report.counts["reminder_candidates"] == 0
        gateway.send_message.assert_not_called()

    def test_reminder_sent_once(self, db_session, challenge, gateway):
        user, _ = _member(db_session, challenge)
        report = _sweep(db_session, gateway, T - timedelta(days=2))
        assert report.counts["reminders_sent"] == 1
        gateway.send_message.assert_called_once_with(TG, reminder_text(T))
        assert "31 марта 2026 года" in gateway.send_message.call_args.args[1]

        report = _sweep(db_session, gateway, T - timedelta(hours=1))
        assert report.counts["reminder_candidates"] == 1
        assert report.counts["reminders_sent"] == 0
        assert gateway.send_message.call_count == 1

    def test_failed_reminder_retried_next_run(self, db_session, challenge, gateway):
        user, _ = _member(db_session, challenge)
        gateway.send_message.side_effect = MessagingError("timeout")
        report = _sweep(db_session, gateway, T - timedelta(days=1))
        assert report.counts["reminders_sent"] == 0
        assert report.counts["errors"] == 1
        assert not ledger.has_marker(db_session, user.id, challenge.id, ledger.sub_reminder_sent(T))

        gateway.send_message.side_effect = None
        report = _sweep(db_session, gateway, T - timedelta(hours=20))
        assert report.counts["reminders_sent"] == 1

    def test_forever_and_unpaid_skipped(self, db_session, challenge, gateway):
        _member(db_session, challenge, plan_code="forever")
        _member(db_session, challenge, plan_code=None, tg=200)
        report = _sweep(db_session, gateway, T - timedelta(days=1))
        assert report.counts["computed_users"] == 0
        gateway.send_message.assert_not_called()


class TestExpiry:
    def test_expiry_marks_left_and_prompts(self, db_session, challenge, gateway):
        user, p = _member(db_session, challenge)
        report = _sweep(db_session, gateway, T)
        assert report.counts["expiry_candidates"] == 1
        assert report.counts["participations_marked_left"] == 1
        assert report.counts["expiry_prompts_sent"] == 1
        gateway.send_message.assert_called_once_with(TG, EXPIRY_PROMPT_TEXT)
        db_session.refresh(p)
        assert p.left_at is not None

        report = _sweep(db_session, gateway, T + timedelta(hours=12))
        assert report.counts["expiry_prompts_sent"] == 0
        assert report.counts["participations_marked_left"] == 0
        assert gateway.send_message.call_count == 1

    def test_left_even_if_prompt_fails(self, db_session, challenge, gateway):
        user, p = _member(db_session, challenge)
        gateway.send_message.side_effect = MessagingError("bot was blocked by the user")
        report = _sweep(db_session, gateway, T + timedelta(hours=1))
        assert report.counts["participations_marked_left"] == 1
        assert report.counts["expiry_prompts_sent"] == 0
        assert report.errors[0]["stage"] == "expiry_prompt"
        db_session.refresh(p)
        assert p.left_at is not None

    def test_dry_run(self, db_session, challenge, gateway):
        user, p = _member(db_session, challenge)
        report = _sweep(db_session, gateway, T, dry_run=True)
        assert report.counts["expiry_candidates"] == 1
        assert report.intended[0]["action"] == "expiry_prompt"
        db_session.refresh(p)
        assert p.left_at is None
        gateway.send_message.assert_not_called()


class TestRemoval:
    def test_removed_after_grace(self, db_session, challenge, gateway):
        user, p = _member(db_session, challenge)
        report = _sweep(db_session, gateway, T + timedelta(days=1))
        assert report.counts["kick_candidates"] == 1
        assert report.counts["kicked"] == 1
        gateway.remove_member.assert_called_once_with(TG)
        assert ledger.has_marker(db_session, user.id, challenge.id, ledger.sub_kicked(T))
        db_session.refresh(p)
        assert p.left_at is not None

        report = _sweep(db_session, gateway, T + timedelta(days=3))
        assert report.counts["kick_candidates"] == 0
        assert gateway.remove_member.call_count == 1

    def test_missing_group_chat_is_error(self, db_session, challenge, gateway):
        user, _ = _member(db_session, challenge)
        gateway.group_chat_id = ""
        report = _sweep(db_session, gateway, T + timedelta(days=2))
        assert report.counts["kicked"] == 0
        assert report.counts["errors"] == 1
        gateway.remove_member.assert_not_called()
        assert not ledger.has_marker(db_session, user.id, challenge.id, ledger.sub_kicked(T))

    def test_removal_failure_retried(self, db_session, challenge, gateway):
        user, _ = _member(db_session, challenge)
        gateway.remove_member.side_effect = MessagingError("not enough rights")
        report = _sweep(db_session, gateway, T + timedelta(days=2))
        assert report.counts["kicked"] == 0
        assert report.errors[0]["stage"] == "kick"

        gateway.remove_member.side_effect = None
        report = _sweep(db_session, gateway, T + timedelta(days=2, hours=1))
        assert report.counts["kicked"] == 1

    def test_renewal_moves_the_deadline(self, db_session, challenge, gateway):
        user, _ = _member(db_session, challenge)
        db_session.add(Payment(
            user_id=user.id, challenge_id=challenge.id, provider_payment_id="renew",
            amount=490, plan_code="d30", status="paid", created_at=T - timedelta(days=1),
        ))
        db_session.commit()
        report = _sweep(db_session, gateway, T + timedelta(days=2))
        assert report.counts["kick_candidates"] == 0
        gateway.remove_member.assert_not_called()


class TestTrial:
    def test_active_trial_skipped(self, db_session, challenge, gateway):
        _member(db_session, challenge, plan_code=None)
        ClaimTrialUseCase(db_session).execute(TG, now=PAID_AT)
        report = _sweep(db_session, gateway, PAID_AT + timedelta(days=3))
        assert report.counts["computed_users"] == 0
