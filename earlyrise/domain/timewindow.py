"""
Time window evaluator — чистые функции над таймзонами и минутами суток.

Таймзона пользователя хранится либо как фиксированный сдвиг "GMT±HH:MM"
(каноническая форма), либо как географический идентификатор ("Europe/Moscow").
Для сдвига локальное время считается арифметикой, для идентификатора —
через zoneinfo (переходы на летнее время учитываются автоматически).
"""
import re
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone, tzinfo
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from earlyrise.domain.errors import InvalidTimezoneError

MINUTES_PER_DAY = 1440
DEFAULT_TZ = "GMT+00:00"
MAX_OFFSET_HOURS = 14

_OFFSET_RE = re.compile(r"^(?:GMT|UTC)\s*([+-])\s*(\d{1,2})(?::?(\d{2}))?$", re.IGNORECASE)
_HHMM_RE = re.compile(r"^(\d{1,2}):(\d{2})(?::(\d{2}))?$")


@dataclass(frozen=True)
class LocalParts:
    year: int
    month: int
    day: int
    hour: int
    minute: int

    @property
    def minutes(self) -> int:
        return minutes_of_day(self.hour, self.minute)

    @property
    def date_str(self) -> str:
        return f"{self.year:04d}-{self.month:02d}-{self.day:02d}"


@dataclass(frozen=True)
class LocalDayRange:
    start_utc: datetime
    end_utc: datetime
    local_date: str


# ---------------------------------------------------------------------------
# Time zones
# ---------------------------------------------------------------------------

def parse_gmt_offset(value: str | None) -> int | None:
    """
    "GMT+3", "UTC-05:30", "gmt+0300" → сдвиг в минутах.

    None если строка не похожа на сдвиг или вне ±14:00 / минуты > 59.
    """
    if not value:
        return None
    m = _OFFSET_RE.match(value.strip())
    if not m:
        return None
    sign, hh, mm = m.groups()
    hours = int(hh)
    minutes = int(mm) if mm else 0
    if hours > MAX_OFFSET_HOURS or minutes > 59:
        return None
    total = hours * 60 + minutes
    return -total if sign == "-" else total


def format_gmt_offset(offset_minutes: int) -> str:
    sign = "-" if offset_minutes < 0 else "+"
    total = abs(offset_minutes)
    return f"GMT{sign}{total // 60:02d}:{total % 60:02d}"


def ensure_utc(instant: datetime) -> datetime:
    """Naive datetime (например, прочитанный из SQLite) трактуется как UTC."""
    if instant.tzinfo is None:
        return instant.replace(tzinfo=timezone.utc)
    return instant.astimezone(timezone.utc)


def resolve_zone(tz: str | None) -> tzinfo:
    """
    Raises:
        InvalidTimezoneError: строка не сдвиг и не известная zoneinfo-зона
    """
    offset = parse_gmt_offset(tz)
    if offset is not None:
        return timezone(timedelta(minutes=offset))
    name = (tz or "").strip()
    if not name:
        raise InvalidTimezoneError("Таймзона не задана")
    try:
        return ZoneInfo(name)
    except (ZoneInfoNotFoundError, ValueError, OSError):
        raise InvalidTimezoneError(f"Неизвестная таймзона: {name}")


def normalize_timezone(value: str | None, now: datetime | None = None) -> str | None:
    """
    Привести таймзону к виду GMT±HH:MM.

    Географическая зона переводится в свой текущий сдвиг (на момент now).
    Нераспознанная строка возвращается без изменений — решать вызывающему.
    """
    if value is None:
        return None
    offset = parse_gmt_offset(value)
    if offset is not None:
        return format_gmt_offset(offset)
    if "/" in value:
        try:
            zone = resolve_zone(value)
        except InvalidTimezoneError:
            return value
        instant = ensure_utc(now or datetime.now(timezone.utc))
        return format_gmt_offset(offset_minutes(instant, value, zone=zone))
    return value


def local_parts(instant: datetime, tz: str | None) -> LocalParts:
    local = ensure_utc(instant).astimezone(resolve_zone(tz))
    return LocalParts(local.year, local.month, local.day, local.hour, local.minute)


def offset_minutes(instant: datetime, tz: str | None, zone: tzinfo | None = None) -> int:
    """Local time minus UTC, in signed minutes."""
    zone = zone or resolve_zone(tz)
    delta = ensure_utc(instant).astimezone(zone).utcoffset() or timedelta(0)
    return int(delta.total_seconds() // 60)


def utc_range_for_local_day(now: datetime, tz: str | None = None) -> LocalDayRange:
    """
    [start_utc, end_utc] локальных суток пользователя + дата "YYYY-MM-DD".

    Дата — ключ дедупликации "один чек-ин в локальный день".
    """
    zone = resolve_zone(tz or DEFAULT_TZ)
    local = ensure_utc(now).astimezone(zone)
    midnight = datetime(local.year, local.month, local.day, tzinfo=zone)
    next_day = midnight.date() + timedelta(days=1)
    next_midnight = datetime(next_day.year, next_day.month, next_day.day, tzinfo=zone)
    start_utc = midnight.astimezone(timezone.utc)
    end_utc = next_midnight.astimezone(timezone.utc) - timedelta(microseconds=1)
    return LocalDayRange(start_utc, end_utc, midnight.date().isoformat())


# ---------------------------------------------------------------------------
# Minutes of day
# ---------------------------------------------------------------------------

def parse_hhmm(value: str | None) -> tuple[int, int] | None:
    """"7:00", "07:00", "07:00:00" → (7, 0). Секунды отбрасываются."""
    if not value:
        return None
    m = _HHMM_RE.match(value.strip())
    if not m:
        return None
    hour, minute = int(m.group(1)), int(m.group(2))
    if hour > 23 or minute > 59:
        return None
    return hour, minute


def minutes_of_day(hour: int, minute: int) -> int:
    return hour * 60 + minute


def fmt_hhmm(minutes: int) -> str:
    minutes %= MINUTES_PER_DAY
    return f"{minutes // 60:02d}:{minutes % 60:02d}"


def is_in_window(now_min: int, start_min: int, window_len: int) -> bool:
    """Inclusive [start, start + window_len], wrapping past midnight."""
    start = start_min % MINUTES_PER_DAY
    end = start + window_len
    if end < MINUTES_PER_DAY:
        return start <= now_min <= end
    return now_min >= start or now_min <= end - MINUTES_PER_DAY


def in_circular_range(now_min: int, start_min: int, end_min: int) -> bool:
    """Inclusive range on a 24h clock; start > end means it wraps midnight."""
    start = start_min % MINUTES_PER_DAY
    end = end_min % MINUTES_PER_DAY
    if start <= end:
        return start <= now_min <= end
    return now_min >= start or now_min <= end
