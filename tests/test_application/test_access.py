"""Tests for access lifecycle: payments, trial, profile offers, trial offer sweep"""
from datetime import datetime, timedelta, timezone

import pytest

from earlyrise.application import ledger
from earlyrise.application.access import (
    OFFER_CHAT_INVITE,
    OFFER_REFUND_NOTICE,
    OFFER_RENEW,
    OFFER_TRIAL,
    TRIAL_OFFER_SWEEP_TEXT,
    ClaimTrialUseCase,
    GetProfileUseCase,
    RecordPaymentUseCase,
    TrialOfferSweep,
    resolve_access,
)
from earlyrise.config import get_settings
from earlyrise.domain.access import ACCESS_EXPIRED, ACCESS_LEAD, ACCESS_PAID, ACCESS_TRIAL
from earlyrise.domain.errors import UserError
from earlyrise.infrastructure.db.models import Payment, User

UTC = timezone.utc
DAY0 = datetime(2026, 3, 1, 12, 0, tzinfo=UTC)
TG = 100


def _user(db, tg=TG, created_at=DAY0, last_seen_at=None):
    user = User(telegram_user_id=tg, timezone="GMT+03:00", created_at=created_at, last_seen_at=last_seen_at)
    db.add(user)
    db.commit()
    return user


def _pay(db, user, created_at, plan_code=None, amount=490, status="paid", challenge_id=None, ppid=None):
    p = Payment(
        user_id=user.id,
        challenge_id=challenge_id,
        provider_payment_id=ppid or f"pp-{user.id}-{created_at.isoformat()}-{amount}",
        amount=amount,
        plan_code=plan_code,
        status=status,
        created_at=created_at,
    )
    db.add(p)
    db.commit()
    return p


class TestResolveAccess:
    def test_lead_without_history(self, db_session, challenge):
        user = _user(db_session)
        info = resolve_access(db_session, user.id, challenge.id, DAY0)
        assert info.access_class == ACCESS_LEAD
        assert not info.trial_used

    def test_forever_is_always_paid(self, db_session, challenge):
        user = _user(db_session)
        _pay(db_session, user, DAY0, plan_code="life", amount=3000)
        info = resolve_access(db_session, user.id, challenge.id, DAY0 + timedelta(days=3650))
        assert info.access_class == ACCESS_PAID
        assert info.forever

    @pytest.mark.parametrize("day,expected", [
        (0, ACCESS_PAID),
        (29, ACCESS_PAID),
        (30, ACCESS_EXPIRED),
        (45, ACCESS_EXPIRED),
    ])
    def test_thirty_day_payment(self, db_session, challenge, day, expected):
        user = _user(db_session)
        _pay(db_session, user, DAY0, plan_code="d30", challenge_id=challenge.id)
        info = resolve_access(db_session, user.id, challenge.id, DAY0 + timedelta(days=day))
        assert info.access_class == expected
        assert info.paid_until == DAY0 + timedelta(days=30)

    def test_legacy_amount_without_plan(self, db_session, challenge):
        user = _user(db_session)
        _pay(db_session, user, DAY0, amount=1490)
        info = resolve_access(db_session, user.id, challenge.id, DAY0)
        assert info.paid_until == DAY0 + timedelta(days=90)

    def test_pending_and_other_challenge_ignored(self, db_session, challenge):
        user = _user(db_session)
        _pay(db_session, user, DAY0, plan_code="d30", status="pending")
        _pay(db_session, user, DAY0, plan_code="d90", amount=1400, challenge_id=challenge.id + 1)
        assert resolve_access(db_session, user.id, challenge.id, DAY0).access_class == ACCESS_LEAD

    def test_paid_fine_is_not_access(self, db_session, challenge):
        user = _user(db_session)
        _pay(db_session, user, DAY0, plan_code="penalty_l1", amount=150, challenge_id=challenge.id)
        info = resolve_access(db_session, user.id, challenge.id, DAY0)
        assert info.access_class == ACCESS_LEAD
        assert not info.has_paid_history


class TestClaimTrial:
    def test_trial_lasts_seven_days(self, db_session, challenge):
        user = _user(db_session)
        info = ClaimTrialUseCase(db_session).execute(TG, now=DAY0)
        assert info.access_class == ACCESS_TRIAL
        assert info.trial_until == DAY0 + timedelta(days=7)

        later = resolve_access(db_session, user.id, challenge.id, DAY0 + timedelta(days=6, hours=23))
        assert later.access_class == ACCESS_TRIAL
        after = resolve_access(db_session, user.id, challenge.id, DAY0 + timedelta(days=7))
        assert after.access_class == ACCESS_LEAD
        assert after.trial_used

    def test_trial_not_reclaimable(self, db_session, challenge):
        _user(db_session)
        ClaimTrialUseCase(db_session).execute(TG, now=DAY0)
        with pytest.raises(UserError) as exc:
            ClaimTrialUseCase(db_session).execute(TG, now=DAY0 + timedelta(days=1))
        assert exc.value.code == "trial_active"
        with pytest.raises(UserError) as exc:
            ClaimTrialUseCase(db_session).execute(TG, now=DAY0 + timedelta(days=10))
        assert exc.value.code == "trial_used"

    def test_paid_user_cannot_claim(self, db_session, challenge):
        user = _user(db_session)
        _pay(db_session, user, DAY0, plan_code="d30")
        with pytest.raises(UserError) as exc:
            ClaimTrialUseCase(db_session).execute(TG, now=DAY0 + timedelta(days=1))
        assert exc.value.code == "already_paid"

    def test_unknown_user(self, db_session, challenge):
        with pytest.raises(UserError) as exc:
            ClaimTrialUseCase(db_session).execute(404, now=DAY0)
        assert exc.value.code == "user_not_found"


class TestProfileOffers:
    def _offer(self, db, now):
        return GetProfileUseCase(db).execute(TG, now=now).offer

    def test_refund_notice_once(self, db_session, challenge):
        user = _user(db_session, last_seen_at=DAY0)
        _pay(db_session, user, DAY0, plan_code="d30", status="refunded", ppid="r-1")
        now = DAY0 + timedelta(hours=1)
        assert self._offer(db_session, now)["type"] == OFFER_REFUND_NOTICE
        assert self._offer(db_session, now) is None
        assert ledger.has_marker(db_session, user.id, challenge.id, ledger.refund_notice_sent("r-1"))

    def test_chat_invite_once(self, db_session, challenge, monkeypatch):
        monkeypatch.setattr(get_settings(), "CHAT_INVITE_URL", "https://t.me/+invite")
        user = _user(db_session, last_seen_at=DAY0)
        _pay(db_session, user, DAY0, plan_code="d30")
        offer = self._offer(db_session, DAY0 + timedelta(hours=1))
        assert offer["type"] == OFFER_CHAT_INVITE
        assert "https://t.me/+invite" in offer["message"]
        assert self._offer(db_session, DAY0 + timedelta(hours=2)) is None

    def test_no_chat_invite_without_link(self, db_session, challenge, monkeypatch):
        monkeypatch.setattr(get_settings(), "CHAT_INVITE_URL", "")
        user = _user(db_session, last_seen_at=DAY0)
        _pay(db_session, user, DAY0, plan_code="d30")
        assert self._offer(db_session, DAY0 + timedelta(hours=1)) is None

    def test_renew_prompt_once_per_expiry(self, db_session, challenge):
        user = _user(db_session, last_seen_at=DAY0)
        _pay(db_session, user, DAY0, plan_code="d30")
        now = DAY0 + timedelta(days=31)
        assert self._offer(db_session, now)["type"] == OFFER_RENEW
        assert self._offer(db_session, now) is None

    def test_trial_offer_for_inactive_lead(self, db_session, challenge):
        _user(db_session, created_at=DAY0)
        now = DAY0 + timedelta(days=2)
        assert self._offer(db_session, now)["type"] == OFFER_TRIAL
        # last_seen_at обновлён, маркер записан
        assert self._offer(db_session, now + timedelta(days=3)) is None

    def test_no_trial_offer_for_active_lead(self, db_session, challenge):
        _user(db_session, created_at=DAY0, last_seen_at=DAY0 + timedelta(days=1))
        assert self._offer(db_session, DAY0 + timedelta(days=2)) is None

    def test_profile_fields(self, db_session, challenge):
        user = _user(db_session, last_seen_at=DAY0)
        _pay(db_session, user, DAY0, plan_code="d30")
        profile = GetProfileUseCase(db_session).execute(TG, now=DAY0 + timedelta(hours=1))
        assert profile.challenge_id == challenge.id
        assert profile.participation is None
        assert profile.access.as_dict()["paid_until_text"] == "31 марта 2026 года"
        assert "d30" in profile.tariffs


class TestRecordPayment:
    def test_upsert_by_provider_id(self, db_session, challenge):
        _user(db_session)
        first = RecordPaymentUseCase(db_session).execute(TG, "yk-1", "pending", 490, plan_code="d30", now=DAY0)
        second = RecordPaymentUseCase(db_session).execute(TG, "yk-1", "paid", 490, now=DAY0 + timedelta(minutes=5))
        assert first.id == second.id
        assert second.status == "paid"
        assert second.plan_code == "d30"
        assert second.paid_at is not None
        assert second.challenge_id == challenge.id
        assert db_session.query(Payment).count() == 1

    def test_unknown_status(self, db_session, challenge):
        _user(db_session)
        with pytest.raises(UserError) as exc:
            RecordPaymentUseCase(db_session).execute(TG, "yk-2", "weird", 490, now=DAY0)
        assert exc.value.code == "invalid_payment_status"


class TestTrialOfferSweep:
    NOW = DAY0 + timedelta(days=3)

    def _sweep(self, db, gateway, dry_run=False):
        return TrialOfferSweep(db, gateway=gateway, send_delay_ms=0).run(now=self.NOW, dry_run=dry_run)

    def test_sends_once_to_inactive_leads(self, db_session, challenge, gateway):
        lead = _user(db_session, tg=1)
        _user(db_session, tg=2, last_seen_at=self.NOW - timedelta(hours=1))  # активен
        trial_user = _user(db_session, tg=3)
        ledger.put_marker(db_session, trial_user.id, None, ledger.TRIAL_START, DAY0)
        db_session.commit()

        report = self._sweep(db_session, gateway)
        assert report.counts["candidates"] == 1
        assert report.counts["sent"] == 1
        gateway.send_message.assert_called_once_with(1, TRIAL_OFFER_SWEEP_TEXT)
        assert ledger.has_marker(db_session, lead.id, challenge.id, ledger.TRIAL_OFFER_SENT)

        again = self._sweep(db_session, gateway)
        assert again.counts["sent"] == 0
        assert gateway.send_message.call_count == 1

    def test_dry_run_does_not_send(self, db_session, challenge, gateway):
        lead = _user(db_session, tg=1)
        report = self._sweep(db_session, gateway, dry_run=True)
        assert report.counts["candidates"] == 1
        assert report.counts["sent"] == 0
        assert report.intended == [{"action": "trial_offer", "user_id": lead.id}]
        gateway.send_message.assert_not_called()
        assert not ledger.has_marker(db_session, lead.id, challenge.id, ledger.TRIAL_OFFER_SENT)

    def test_send_failure_reported(self, db_session, challenge, gateway):
        from earlyrise.application.messaging import MessagingError

        lead = _user(db_session, tg=1)
        gateway.send_message.side_effect = MessagingError("chat not found")
        report = self._sweep(db_session, gateway)
        assert report.counts["errors"] == 1
        assert report.errors[0]["user_id"] == lead.id
        assert not ledger.has_marker(db_session, lead.id, challenge.id, ledger.TRIAL_OFFER_SENT)
