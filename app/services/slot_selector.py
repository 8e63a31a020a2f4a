"""Queue slot selection.

Each day offers a fixed set of preset local posting hours determined by the
user's daily frequency. A slot is the absolute instant of one preset hour on one
local calendar day; queueing takes the earliest slot that is in the future and
not already occupied by another scheduled thread of the same account.
"""
from collections.abc import Callable, Iterable
from datetime import date, datetime, timedelta, timezone
from zoneinfo import ZoneInfo

SLOT_HOURS = {
    1: [12],
    2: [10, 12],
    3: [10, 12, 14],
}


def preset_hours(frequency: int) -> list[int]:
    """Local hours of the day's preset slots for a posts-per-day frequency.

    Frequencies above 3 get the three-slot preset.
    """
    if frequency < 1:
        raise ValueError(f"frequency must be at least 1, got {frequency}")
    return list(SLOT_HOURS[min(frequency, 3)])


def to_unix_ms(moment: datetime) -> int:
    if moment.tzinfo is None:
        moment = moment.replace(tzinfo=timezone.utc)
    return int(moment.timestamp() * 1000)


def from_unix_ms(value: int) -> datetime:
    return datetime.fromtimestamp(value / 1000, tz=timezone.utc)


def _ensure_aware(moment: datetime) -> datetime:
    return moment if moment.tzinfo is not None else moment.replace(tzinfo=timezone.utc)


def _slot_instant(day: date, hour: int, tz: ZoneInfo) -> datetime:
    return datetime(day.year, day.month, day.day, hour, tzinfo=tz).astimezone(timezone.utc)


def slot_hours(frequency: int, posting_window: tuple[int, int] | None = None) -> list[int]:
    """Preset hours, optionally limited to ``start <= hour < end``."""
    hours = preset_hours(frequency)
    if posting_window is not None:
        start, end = posting_window
        hours = [h for h in hours if start <= h < end]
    return hours


def iter_slots(
    now: datetime,
    tz_name: str,
    frequency: int,
    days: int,
    posting_window: tuple[int, int] | None = None,
) -> Iterable[datetime]:
    """Yield every slot for day offsets ``0..days`` in (day, hour) order."""
    tz = ZoneInfo(tz_name)
    today = _ensure_aware(now).astimezone(tz).date()
    hours = slot_hours(frequency, posting_window)
    for offset in range(days + 1):
        day = today + timedelta(days=offset)
        for hour in hours:
            yield _slot_instant(day, hour, tz)


def next_available_slot(
    now: datetime,
    tz_name: str,
    frequency: int,
    max_days_ahead: int,
    is_occupied: Callable[[datetime], bool],
    posting_window: tuple[int, int] | None = None,
) -> datetime | None:
    """Return the first slot strictly after ``now`` that is not occupied.

    Returns None when the horizon is exhausted; callers treat that as a
    capacity error and never fall back to an occupied slot.
    """
    now = _ensure_aware(now)
    for candidate in iter_slots(now, tz_name, frequency, max_days_ahead, posting_window):
        if candidate > now and not is_occupied(candidate):
            return candidate
    return None


def occupied_by(unix_ms: set[int]) -> Callable[[datetime], bool]:
    """Occupancy predicate over a set of scheduled epoch-millisecond instants."""
    return lambda candidate: to_unix_ms(candidate) in unix_ms


def daily_slots(
    now: datetime,
    tz_name: str,
    frequency: int,
    days: int,
    posting_window: tuple[int, int] | None = None,
) -> list[tuple[date, list[datetime]]]:
    """Preset slots grouped per local day for ``days`` days starting today."""
    tz = ZoneInfo(tz_name)
    today = _ensure_aware(now).astimezone(tz).date()
    hours = slot_hours(frequency, posting_window)
    result = []
    for offset in range(days):
        day = today + timedelta(days=offset)
        result.append((day, [_slot_instant(day, hour, tz) for hour in hours]))
    return result
