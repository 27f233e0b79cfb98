"""Tests for users, joining, wake time, timezone and global settings"""
from datetime import datetime, timezone

import pytest

from earlyrise.application.participation import (
    JoinChallengeUseCase,
    SetTimezoneUseCase,
    SetWakeTimeUseCase,
    UpdateGlobalSettingsUseCase,
    ensure_user,
    get_global_settings,
    require_open_challenge,
)
from earlyrise.domain.errors import ConfigurationError, UserError
from earlyrise.infrastructure.db.models import Participation, User

NOW = datetime(2026, 3, 5, 9, 0, tzinfo=timezone.utc)


def _user(db, tg=1, tz="GMT+03:00"):
    user = ensure_user(db, tg, username="riser", first_name="Аня", now=NOW)
    user.timezone = tz
    db.commit()
    return user


class TestUsers:
    def test_ensure_user_creates_with_default_timezone(self, db_session):
        user = ensure_user(db_session, 10, username="a", now=NOW)
        assert user.id is not None
        assert user.timezone == "GMT+00:00"
        assert user.last_seen_at == NOW

    def test_ensure_user_updates_names(self, db_session):
        ensure_user(db_session, 10, username="a", first_name="A", now=NOW)
        user = ensure_user(db_session, 10, username="b", now=NOW)
        assert user.username == "b"
        assert user.first_name == "A"
        assert db_session.query(User).count() == 1


class TestJoin:
    def test_join_fixed(self, db_session, challenge):
        _user(db_session)
        p = JoinChallengeUseCase(db_session).execute(1, "7:00", now=NOW)
        assert p.wake_mode == "fixed"
        assert p.wake_time_local == "07:00"
        assert p.wake_utc_minutes == 240

    def test_join_flex(self, db_session, challenge):
        _user(db_session)
        p = JoinChallengeUseCase(db_session).execute(1, "flex", now=NOW)
        assert p.wake_mode == "flex"
        assert p.wake_time_local is None
        assert p.wake_utc_minutes is None

    def test_join_reactivates_left(self, db_session, challenge):
        _user(db_session)
        p = JoinChallengeUseCase(db_session).execute(1, "07:00", now=NOW)
        p.left_at = NOW
        db_session.commit()

        again = JoinChallengeUseCase(db_session).execute(1, "08:00", now=NOW)
        assert again.id == p.id
        assert again.left_at is None
        assert again.wake_time_local == "08:00"
        assert db_session.query(Participation).count() == 1

    def test_wake_time_not_allowed(self, db_session, challenge):
        _user(db_session)
        with pytest.raises(UserError) as exc:
            JoinChallengeUseCase(db_session).execute(1, "07:30", now=NOW)
        assert exc.value.code == "invalid_wake_time"

    def test_unknown_user(self, db_session, challenge):
        with pytest.raises(UserError) as exc:
            JoinChallengeUseCase(db_session).execute(404, "07:00", now=NOW)
        assert exc.value.code == "user_not_found"

    def test_no_active_challenge(self, db_session):
        _user(db_session)
        with pytest.raises(ConfigurationError) as exc:
            JoinChallengeUseCase(db_session).execute(1, "07:00", now=NOW)
        assert exc.value.code == "no_active_challenge"


class TestWakeAndTimezone:
    def test_set_wake_requires_participation(self, db_session, challenge):
        _user(db_session)
        with pytest.raises(UserError) as exc:
            SetWakeTimeUseCase(db_session).execute(1, "06:00", now=NOW)
        assert exc.value.code == "not_joined"

    def test_set_wake(self, db_session, challenge):
        _user(db_session)
        JoinChallengeUseCase(db_session).execute(1, "07:00", now=NOW)
        p = SetWakeTimeUseCase(db_session).execute(1, "05:00", now=NOW)
        assert p.wake_time_local == "05:00"
        assert p.wake_utc_minutes == 120

    def test_timezone_normalized_and_wake_recomputed(self, db_session, challenge):
        _user(db_session)
        p = JoinChallengeUseCase(db_session).execute(1, "07:00", now=NOW)
        user = SetTimezoneUseCase(db_session).execute(1, "gmt+5", now=NOW)
        assert user.timezone == "GMT+05:00"
        db_session.refresh(p)
        assert p.wake_utc_minutes == 120

    def test_geographic_zone_stored_as_offset(self, db_session, challenge):
        _user(db_session)
        user = SetTimezoneUseCase(db_session).execute(1, "Europe/Moscow", now=NOW)
        assert user.timezone == "GMT+03:00"

    def test_invalid_timezone(self, db_session, challenge):
        user = _user(db_session)
        with pytest.raises(UserError) as exc:
            SetTimezoneUseCase(db_session).execute(1, "Mars/Olympus", now=NOW)
        assert exc.value.code == "invalid_timezone"
        db_session.refresh(user)
        assert user.timezone == "GMT+03:00"


class TestGlobalSettings:
    def test_created_on_demand(self, db_session):
        row = get_global_settings(db_session)
        assert row.id == 1
        assert row.challenge_active is True

    def test_disable_challenge(self, db_session, challenge):
        UpdateGlobalSettingsUseCase(db_session).execute(challenge_active=False, now=NOW)
        with pytest.raises(ConfigurationError) as exc:
            require_open_challenge(db_session)
        assert exc.value.code == "challenge_inactive"

    def test_partial_update(self, db_session, challenge):
        row = UpdateGlobalSettingsUseCase(db_session).execute(voice_feedback_enabled=False, now=NOW)
        assert row.voice_feedback_enabled is False
        assert row.challenge_active is True
        assert row.updated_at is not None
