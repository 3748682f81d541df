# aether/automation/schedule.py
from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from typing import Any, FrozenSet, Optional

from .errors import ValidationError


@dataclass(frozen=True)
class Schedule:
    """
    Расписание правила: время "HH:MM" и (необязательно) дни недели.
    Дни: как в JS Date.getDay(): 0 = воскресенье ... 6 = суббота.
    """
    hour: int
    minute: int
    days: Optional[FrozenSet[int]] = None

    def matches(self, now: datetime) -> bool:
        if self.days and js_weekday(now) not in self.days:
            return False
        return now.hour == self.hour and now.minute == self.minute


def js_weekday(now: datetime) -> int:
    """datetime.weekday(): пн=0; переводим в вс=0."""
    return (now.weekday() + 1) % 7


def minute_key(now: datetime) -> str:
    """Ключ минуты для защиты от повторного срабатывания."""
    return now.strftime("%Y-%m-%d %H:%M")


def parse_schedule(raw: Any, path: str = "schedule") -> Schedule:
    if not isinstance(raw, dict):
        raise ValidationError(f"{path}: must be an object with 'time'")

    time_str = str(raw.get("time") or "").strip()
    parts = time_str.split(":")
    if len(parts) != 2 or not all(p.isdigit() for p in parts):
        raise ValidationError(f"{path}.time: expected HH:MM, got {raw.get('time')!r}")
    hour, minute = int(parts[0]), int(parts[1])
    if not (0 <= hour <= 23 and 0 <= minute <= 59):
        raise ValidationError(f"{path}.time: out of range {time_str!r}")

    days_raw = raw.get("days")
    days: Optional[FrozenSet[int]] = None
    if days_raw:
        if not isinstance(days_raw, list):
            raise ValidationError(f"{path}.days: must be a list of 0-6")
        for d in days_raw:
            if isinstance(d, bool) or not isinstance(d, int) or not 0 <= d <= 6:
                raise ValidationError(f"{path}.days: bad weekday {d!r}")
        days = frozenset(days_raw)

    return Schedule(hour=hour, minute=minute, days=days)


def should_trigger(raw: Any, now: datetime) -> bool:
    """Подходит ли текущая минута под расписание. Битое расписание → False."""
    try:
        return parse_schedule(raw).matches(now)
    except ValidationError:
        return False
