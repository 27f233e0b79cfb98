"""
Anti-cheat: короткая арифметическая задачка после голосового/текстового отчёта.

State machine: pending → {passed | failed | expired}. Терминальные состояния
не меняются.
"""
import random
import re
from dataclasses import dataclass
from datetime import datetime, timedelta

from earlyrise.domain.timewindow import ensure_utc

ANTICHEAT_TTL = timedelta(minutes=2)
MAX_ATTEMPTS = 3

STATUS_PENDING = "pending"
STATUS_PASSED = "passed"
STATUS_FAILED = "failed"
STATUS_EXPIRED = "expired"

OUTCOME_PASSED = "passed"
OUTCOME_WRONG = "wrong_answer"
OUTCOME_FAILED = "failed"
OUTCOME_EXPIRED = "expired"
OUTCOME_INVALID = "invalid_answer"
OUTCOME_NOT_PENDING = "not_pending"

_INT_RE = re.compile(r"[-+]?\d+")


@dataclass(frozen=True)
class Question:
    text: str
    answer: int


@dataclass(frozen=True)
class Evaluation:
    outcome: str
    status: str
    attempts: int

    @property
    def remaining_attempts(self) -> int:
        return max(0, MAX_ATTEMPTS - self.attempts)


def generate_question(rng: random.Random | None = None) -> Question:
    """a ∈ 2..9, b ∈ 1..9; вычитание всегда max − min, ответ не отрицательный."""
    rng = rng or random.Random()
    a = rng.randint(2, 9)
    b = rng.randint(1, 9)
    if rng.random() < 0.5:
        return Question(f"Сколько будет {a} + {b}?", a + b)
    hi, lo = max(a, b), min(a, b)
    return Question(f"Сколько будет {hi} - {lo}?", hi - lo)


def parse_answer(text: str | None) -> int | None:
    if text is None:
        return None
    cleaned = text.strip().rstrip(".!")
    if not _INT_RE.fullmatch(cleaned):
        return None
    return int(cleaned)


def evaluate(
    status: str,
    expires_at: datetime,
    attempts: int,
    expected: int,
    text: str | None,
    now: datetime,
) -> Evaluation:
    """Чистый переход состояния; запись в БД делает вызывающий."""
    if status != STATUS_PENDING:
        return Evaluation(OUTCOME_NOT_PENDING, status, attempts)
    if ensure_utc(now) > ensure_utc(expires_at):
        return Evaluation(OUTCOME_EXPIRED, STATUS_EXPIRED, attempts)

    value = parse_answer(text)
    if value is None:
        return Evaluation(OUTCOME_INVALID, STATUS_PENDING, attempts)
    if value == expected:
        return Evaluation(OUTCOME_PASSED, STATUS_PASSED, attempts)

    attempts += 1
    if attempts >= MAX_ATTEMPTS:
        return Evaluation(OUTCOME_FAILED, STATUS_FAILED, attempts)
    return Evaluation(OUTCOME_WRONG, STATUS_PENDING, attempts)
