"""
Wake mode rules: fixed (время из allow-list) или flex (без времени).
"""
from dataclasses import dataclass
from datetime import datetime

from earlyrise.domain.errors import UserError
from earlyrise.domain.timewindow import (
    MINUTES_PER_DAY,
    fmt_hhmm,
    in_circular_range,
    minutes_of_day,
    offset_minutes,
    parse_hhmm,
)

WAKE_MODE_FIXED = "fixed"
WAKE_MODE_FLEX = "flex"

ALLOWED_WAKE_TIMES = ("05:00", "06:00", "07:00", "08:00", "09:00")

# Окно засчитывания "+" в чате: [wake − 55, wake + 10]
TAP_EARLY_MINUTES = 55
TAP_LATE_MINUTES = 10
# После wake + 30 голосовые не принимаются, включается штрафной режим
PENALTY_GRACE_MINUTES = 30

_FLEX_EXACT = {"flex", "any", "без", "безвремени"}
_FLEX_PREFIXES = ("без точ", "без времени", "просто просып")


@dataclass(frozen=True)
class WakeChoice:
    mode: str
    wake_time_local: str | None = None


def is_flex_keyword(raw: str) -> bool:
    text = " ".join(raw.strip().lower().split())
    return text in _FLEX_EXACT or text.startswith(_FLEX_PREFIXES)


def parse_wake_choice(raw: str | None) -> WakeChoice:
    """
    "flex" / "без времени" → flex; "7:00" / "07:00:00" → fixed 07:00.

    Raises:
        UserError(invalid_wake_time): время не из списка или не распознано
    """
    if raw is None or not raw.strip():
        raise UserError("Укажи время подъёма или режим без времени", code="invalid_wake_time")
    if is_flex_keyword(raw):
        return WakeChoice(WAKE_MODE_FLEX)

    parsed = parse_hhmm(raw)
    if parsed is None:
        raise UserError("Не понял время. Формат: 07:00", code="invalid_wake_time")
    normalized = fmt_hhmm(minutes_of_day(*parsed))
    if normalized not in ALLOWED_WAKE_TIMES:
        allowed = ", ".join(ALLOWED_WAKE_TIMES)
        raise UserError(f"Доступное время подъёма: {allowed}", code="invalid_wake_time")
    return WakeChoice(WAKE_MODE_FIXED, normalized)


def wake_minutes(wake_time_local: str | None) -> int | None:
    parsed = parse_hhmm(wake_time_local)
    if parsed is None:
        return None
    return minutes_of_day(*parsed)


def wake_utc_minutes(wake_time_local: str | None, tz: str | None, now: datetime) -> int | None:
    """(wake_local − offset + 1440) mod 1440, сдвиг берётся на момент now."""
    local_min = wake_minutes(wake_time_local)
    if local_min is None:
        return None
    return (local_min - offset_minutes(now, tz) + MINUTES_PER_DAY) % MINUTES_PER_DAY


def is_tap_in_window(now_min: int, wake_min: int) -> bool:
    return in_circular_range(now_min, wake_min - TAP_EARLY_MINUTES, wake_min + TAP_LATE_MINUTES)


def is_voice_cutoff_passed(now_min: int, wake_min: int) -> bool:
    return now_min > wake_min + PENALTY_GRACE_MINUTES


def is_penalty_due(now_min: int, wake_min: int) -> bool:
    return now_min >= wake_min + PENALTY_GRACE_MINUTES
