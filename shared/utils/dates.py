"""
shared/utils/dates.py
Date/time helpers shared by the slot registry and the booking workflow.
"""

from datetime import date, datetime, time, timedelta, timezone
from typing import Iterator

from config.settings import settings


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def ensure_utc(value: datetime) -> datetime:
    """SQLite hands back naive datetimes; treat them as UTC."""
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def parse_hhmm(value: str) -> time:
    return datetime.strptime(value, "%H:%M").time()


def format_time_slot(start_time: str, end_time: str) -> str:
    return f"{start_time} - {end_time}"


def format_date_dmy(value: date) -> str:
    """DD/MM/YYYY, the format the admin calendar displays."""
    return value.strftime("%d/%m/%Y")


def slot_start(slot_date: date, start_time: str) -> datetime:
    """Combine a slot's date and "HH:MM" start into an aware UTC datetime."""
    return datetime.combine(slot_date, parse_hhmm(start_time), tzinfo=timezone.utc)


def default_time_slots() -> list[tuple[str, str]]:
    """Hourly (start, end) pairs for the configured booking day."""
    slots = []
    step = timedelta(minutes=settings.SLOT_LENGTH_MINUTES)
    current = datetime.combine(date.min, time(hour=settings.SLOT_DAY_START_HOUR))
    end = datetime.combine(date.min, time()) + timedelta(hours=settings.SLOT_DAY_END_HOUR)
    while current + step <= end:
        slots.append((current.strftime("%H:%M"), (current + step).strftime("%H:%M")))
        current += step
    return slots


def daterange(start: date, end: date) -> Iterator[date]:
    """Inclusive day iterator."""
    current = start
    while current <= end:
        yield current
        current += timedelta(days=1)


def is_weekend(value: date) -> bool:
    return value.weekday() in (5, 6)
