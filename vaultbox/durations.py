# vaultbox/durations.py
"""
Typed durations for the free-text period fields ("24 hours", "3 days").

The text format is an external contract shared with existing clients and rows,
so parsing stays exactly as it always was: the first "<N> hour(s)|day(s)" found
anywhere in the string, case-insensitive, and 24 hours for anything else.
Callers parse once at the edge and pass Duration values around.
"""
import re
from datetime import timedelta
from typing import Optional

from vaultbox.config import REQUEST_LAPSE_DAYS

_DURATION_RE = re.compile(r"(\d+)\s*(hour|hours|day|days)", re.IGNORECASE)

DEFAULT_HOURS = 24
MAX_HOURS = 24 * 3650  # ten years


class Duration:
    """A whole number of hours, between 0 and MAX_HOURS."""

    __slots__ = ("hours",)

    def __init__(self, hours: int):
        if hours < 0:
            raise ValueError("duration cannot be negative")
        if hours > MAX_HOURS:
            raise ValueError("duration cannot exceed 3650 days")
        self.hours = int(hours)

    @classmethod
    def parse(cls, text: Optional[str]) -> "Duration":
        if not text:
            return cls(DEFAULT_HOURS)
        match = _DURATION_RE.search(text)
        if not match:
            return cls(DEFAULT_HOURS)
        value = int(match.group(1))
        unit = match.group(2).lower()
        if unit.startswith("day"):
            return cls(value * 24)
        return cls(value)

    @classmethod
    def days(cls, n: int) -> "Duration":
        return cls(n * 24)

    @classmethod
    def coerce(cls, value, int_unit: str = "hours") -> "Duration":
        """Accept a Duration, a bare number in `int_unit`, or period text."""
        if isinstance(value, Duration):
            return value
        if isinstance(value, bool):
            raise ValueError("period must be text or a whole number")
        if isinstance(value, int):
            return cls.days(value) if int_unit == "days" else cls(value)
        if isinstance(value, str):
            return cls.parse(value)
        raise ValueError("period must be text or a whole number")

    def to_timedelta(self) -> timedelta:
        return timedelta(hours=self.hours)

    def __str__(self):
        if self.hours and self.hours % 24 == 0:
            days = self.hours // 24
            return f"{days} day" if days == 1 else f"{days} days"
        return "1 hour" if self.hours == 1 else f"{self.hours} hours"

    def __repr__(self):
        return f"Duration({self.hours})"

    def __eq__(self, other):
        return isinstance(other, Duration) and other.hours == self.hours

    def __hash__(self):
        return hash(self.hours)


def parse_duration(text: Optional[str]) -> timedelta:
    return Duration.parse(text).to_timedelta()


# Unanswered requests lapse after REQUEST_LAPSE_DAYS, so a longer wait could
# never reach its auto-approval deadline.
MIN_WAITING = Duration(1)
MAX_WAITING = Duration.days(REQUEST_LAPSE_DAYS)
MIN_INACTIVITY = Duration.days(1)


def waiting_period(value) -> Duration:
    """Waiting period; bare numbers are hours."""
    period = Duration.coerce(value, int_unit="hours")
    if period.hours < MIN_WAITING.hours:
        raise ValueError(f"waiting period must be at least {MIN_WAITING}")
    if period.hours > MAX_WAITING.hours:
        raise ValueError(f"waiting period cannot exceed {MAX_WAITING}")
    return period


def inactivity_period(value) -> Duration:
    """Inactivity period; bare numbers are days, as the web client sends them."""
    period = Duration.coerce(value, int_unit="days")
    if period.hours < MIN_INACTIVITY.hours:
        raise ValueError(f"inactivity period must be at least {MIN_INACTIVITY}")
    return period
