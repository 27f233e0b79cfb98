"""Tests for the anti-cheat question and its state machine"""
import random
import re
from datetime import datetime, timedelta, timezone

import pytest

from earlyrise.domain import anticheat
from earlyrise.domain.anticheat import (
    MAX_ATTEMPTS,
    OUTCOME_EXPIRED,
    OUTCOME_FAILED,
    OUTCOME_INVALID,
    OUTCOME_NOT_PENDING,
    OUTCOME_PASSED,
    OUTCOME_WRONG,
    STATUS_EXPIRED,
    STATUS_FAILED,
    STATUS_PASSED,
    STATUS_PENDING,
    evaluate,
    generate_question,
    parse_answer,
)

NOW = datetime(2026, 3, 10, 4, 0, tzinfo=timezone.utc)
EXPIRES = NOW + anticheat.ANTICHEAT_TTL
_Q_RE = re.compile(r"^Сколько будет (\d) ([+-]) (\d)\?$")


class TestGenerateQuestion:
    @pytest.mark.parametrize("seed", range(40))
    def test_answer_matches_text(self, seed):
        q = generate_question(random.Random(seed))
        m = _Q_RE.match(q.text)
        assert m, q.text
        a, op, b = int(m.group(1)), m.group(2), int(m.group(3))
        assert q.answer == (a + b if op == "+" else a - b)
        assert q.answer >= 0

    def test_default_rng(self):
        assert _Q_RE.match(generate_question().text)


class TestParseAnswer:
    @pytest.mark.parametrize("raw,expected", [
        ("12", 12),
        (" 12 ", 12),
        ("12.", 12),
        ("12!", 12),
        ("+7", 7),
        ("-3", -3),
        ("twelve", None),
        ("1 2", None),
        ("", None),
        (None, None),
    ])
    def test_parse(self, raw, expected):
        assert parse_answer(raw) == expected


class TestEvaluate:
    def _eval(self, text, attempts=0, status=STATUS_PENDING, now=NOW):
        return evaluate(status, EXPIRES, attempts, 12, text, now)

    def test_correct(self):
        r = self._eval("12")
        assert (r.outcome, r.status, r.attempts) == (OUTCOME_PASSED, STATUS_PASSED, 0)

    def test_wrong_consumes_attempt(self):
        r = self._eval("11")
        assert (r.outcome, r.status, r.attempts) == (OUTCOME_WRONG, STATUS_PENDING, 1)
        assert r.remaining_attempts == MAX_ATTEMPTS - 1

    def test_third_wrong_fails(self):
        r = self._eval("11", attempts=MAX_ATTEMPTS - 1)
        assert (r.outcome, r.status, r.attempts) == (OUTCOME_FAILED, STATUS_FAILED, MAX_ATTEMPTS)
        assert r.remaining_attempts == 0

    def test_non_numeric_does_not_consume(self):
        r = self._eval("двенадцать", attempts=1)
        assert (r.outcome, r.status, r.attempts) == (OUTCOME_INVALID, STATUS_PENDING, 1)

    def test_exactly_at_expiry_still_accepted(self):
        assert self._eval("12", now=EXPIRES).outcome == OUTCOME_PASSED

    def test_after_expiry(self):
        r = self._eval("12", now=EXPIRES + timedelta(seconds=1))
        assert (r.outcome, r.status) == (OUTCOME_EXPIRED, STATUS_EXPIRED)

    def test_naive_expiry_from_storage(self):
        r = evaluate(STATUS_PENDING, EXPIRES.replace(tzinfo=None), 0, 12, "12", NOW)
        assert r.outcome == OUTCOME_PASSED

    @pytest.mark.parametrize("status", [STATUS_PASSED, STATUS_FAILED, STATUS_EXPIRED])
    def test_terminal_is_immutable(self, status):
        r = self._eval("12", status=status, attempts=2)
        assert (r.outcome, r.status, r.attempts) == (OUTCOME_NOT_PENDING, status, 2)
