"""
Access rules: тарифы, классы доступа, штрафные уровни.
"""
from dataclasses import dataclass
from datetime import datetime, timedelta

from earlyrise.domain.timewindow import ensure_utc

ACCESS_PAID = "paid"
ACCESS_TRIAL = "trial"
ACCESS_EXPIRED = "expired"
ACCESS_LEAD = "lead"

TRIAL_DAYS = 7
TRIAL_OFFER_INACTIVE_DAYS = 2

FOREVER = "forever"

# plan_code → дни доступа (или FOREVER)
_PLAN_DAYS: dict[str, int | str] = {
    "life": FOREVER,
    "forever": FOREVER,
    "support": FOREVER,
    "d30": 30,
    "30": 30,
    "30d": 30,
    "d60": 60,
    "60": 60,
    "60d": 60,
    "d90": 90,
    "90": 90,
    "90d": 90,
}

# Старые платежи без plan_code: сумма → дни
_LEGACY_AMOUNT_DAYS: dict[int, int | str] = {
    3000: FOREVER,
    490: 30,
    890: 60,
    990: 60,
    1400: 90,
    1490: 90,
}

TARIFFS = {
    "d30": {"title": "30 дней", "amount": 490},
    "d60": {"title": "60 дней", "amount": 890},
    "d90": {"title": "90 дней", "amount": 1400},
    "life": {"title": "Навсегда", "amount": 3000},
}

# Уровень пропуска → (приседания, штраф ₽); уровень 4 = исключение
PENALTY_LEVELS: dict[int, tuple[int, int]] = {
    1: (50, 150),
    2: (100, 300),
    3: (200, 500),
}
KICK_LEVEL = 4

_MONTHS_GENITIVE = (
    "января", "февраля", "марта", "апреля", "мая", "июня",
    "июля", "августа", "сентября", "октября", "ноября", "декабря",
)


@dataclass(frozen=True)
class PaymentFact:
    created_at: datetime
    amount: int | None
    plan_code: str | None


def access_days(plan_code: str | None, amount: int | None) -> int | str | None:
    """Дни доступа по plan_code, иначе по legacy-сумме. None — платёж не даёт доступа."""
    if plan_code:
        code = plan_code.strip().lower()
        if code.startswith("penalty"):
            return None
        days = _PLAN_DAYS.get(code)
        if days is not None:
            return days
    if amount is not None:
        return _LEGACY_AMOUNT_DAYS.get(int(amount))
    return None


def aggregate_paid_until(payments: list[PaymentFact]) -> tuple[bool, datetime | None]:
    """
    (forever, paid_until) по всем оплаченным платежам.

    Берётся самая поздняя дата окончания; forever-платёж перекрывает всё.
    """
    latest: datetime | None = None
    for p in payments:
        days = access_days(p.plan_code, p.amount)
        if days is None:
            continue
        if days == FOREVER:
            return True, None
        until = ensure_utc(p.created_at) + timedelta(days=days)
        if latest is None or until > latest:
            latest = until
    return False, latest


def classify_access(
    now: datetime,
    forever: bool,
    paid_until: datetime | None,
    trial_until: datetime | None,
    has_paid_history: bool,
) -> str:
    now = ensure_utc(now)
    if forever or (paid_until is not None and now < ensure_utc(paid_until)):
        return ACCESS_PAID
    if trial_until is not None and now < ensure_utc(trial_until):
        return ACCESS_TRIAL
    if has_paid_history:
        return ACCESS_EXPIRED
    return ACCESS_LEAD


def penalty_level(miss_count: int) -> int:
    return max(1, min(KICK_LEVEL, miss_count))


def fmt_date_ru(value: datetime) -> str:
    return f"{value.day} {_MONTHS_GENITIVE[value.month - 1]} {value.year} года"
