"""Parsing and formatting of clock times and durations."""

import math
import re
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Literal

from timeledger.core.datetime_utils import Clock
from timeledger.core.errors import InvalidFormatError

CLOCK_TIME_PATTERN = "HH:MM (24-hour) or HH:MM AM/PM"

_CLOCK_RE = re.compile(r"^(\d{1,2}):(\d{2})\s*(AM|PM)?$", re.IGNORECASE)
_ADJUSTMENT_RE = re.compile(r"^([+-])(\d+)([mh])$", re.IGNORECASE)
_HHMM_RE = re.compile(r"^(\d{1,3}):(\d{2})$")
_DURATION_RE = re.compile(
    r"^(?:(\d+)\s*h)?\s*(?:(\d+)\s*m)?\s*(?:(\d+)\s*s)?$", re.IGNORECASE
)


@dataclass(frozen=True)
class Adjustment:
    """A signed relative shift such as ``+15m`` or ``-1h``."""

    amount: int
    unit: Literal["minute", "hour"]

    @property
    def delta(self) -> timedelta:
        if self.unit == "hour":
            return timedelta(hours=self.amount)
        return timedelta(minutes=self.amount)


def parse_clock_time(text: str, reference: datetime) -> datetime:
    """
    Combine a wall-clock time with the date of ``reference``.

    Accepts ``HH:MM`` (0-23) or ``HH:MM AM/PM`` (1-12). The result keeps the
    reference's date and tzinfo with seconds zeroed.

    Raises:
        InvalidFormatError: text does not match or hour/minute is out of range
    """
    match = _CLOCK_RE.match(text.strip())
    if not match:
        raise InvalidFormatError(text, CLOCK_TIME_PATTERN)

    hour = int(match.group(1))
    minute = int(match.group(2))
    meridiem = match.group(3)

    if minute > 59:
        raise InvalidFormatError(text, CLOCK_TIME_PATTERN, f'Invalid minute in time "{text}".')

    if meridiem:
        if not 1 <= hour <= 12:
            raise InvalidFormatError(
                text, CLOCK_TIME_PATTERN, f'Invalid 12-hour format hour {hour} in "{text}".'
            )
        meridiem = meridiem.upper()
        if meridiem == "PM" and hour != 12:
            hour += 12
        elif meridiem == "AM" and hour == 12:
            hour = 0
    elif hour > 23:
        raise InvalidFormatError(
            text, CLOCK_TIME_PATTERN, f'Invalid 24-hour format hour {hour} in "{text}".'
        )

    return reference.replace(hour=hour, minute=minute, second=0, microsecond=0)


def parse_relative_adjustment(text: str) -> Adjustment | None:
    """Parse ``[+-]N[mh]``; None when the text is not an adjustment."""
    match = _ADJUSTMENT_RE.match(text.strip())
    if not match:
        return None
    sign, amount, unit = match.groups()
    signed = int(amount) if sign == "+" else -int(amount)
    return Adjustment(signed, "hour" if unit.lower() == "h" else "minute")


def parse_duration(text: str) -> int | None:
    """
    Parse a duration into seconds.

    Accepts any of ``Nh``, ``Nm``, ``Ns`` in that order (``1h 30m``,
    ``45m``, ``2h5s``) or ``H:MM``. Returns None for empty text, text
    without a unit, or trailing garbage.
    """
    trimmed = text.strip().lower()
    if not trimmed:
        return None

    hhmm = _HHMM_RE.match(trimmed)
    if hhmm:
        hours, minutes = int(hhmm.group(1)), int(hhmm.group(2))
        if minutes >= 60:
            return None
        return hours * 3600 + minutes * 60

    match = _DURATION_RE.match(trimmed)
    if not match or not any(match.groups()):
        return None

    hours, minutes, seconds = (int(g) if g else 0 for g in match.groups())
    return hours * 3600 + minutes * 60 + seconds


def format_duration(total_seconds: float | None) -> str:
    """Render seconds as ``1h 23m 45s``; ``0s`` for zero, ``N/A`` if invalid."""
    if total_seconds is None:
        return "N/A"
    try:
        value = float(total_seconds)
    except (TypeError, ValueError):
        return "N/A"
    if math.isnan(value) or value < 0:
        return "N/A"

    seconds_int = int(math.floor(value))
    hours, remainder = divmod(seconds_int, 3600)
    minutes, seconds = divmod(remainder, 60)

    parts: list[str] = []
    if hours > 0:
        parts.append(f"{hours}h")
    if minutes > 0 or hours > 0:
        parts.append(f"{minutes}m")
    if seconds > 0 or not parts:
        parts.append(f"{seconds}s")
    return " ".join(parts)


def format_duration_hhmm(total_seconds: float | None) -> str:
    """Render seconds as zero-padded ``HH:MM``."""
    if total_seconds is None or math.isnan(total_seconds) or total_seconds < 0:
        return "N/A"
    total_minutes = int(total_seconds) // 60
    hours, minutes = divmod(total_minutes, 60)
    return f"{hours:02d}:{minutes:02d}"


def format_clock_time(instant: datetime | None, clock: Clock) -> str:
    if instant is None:
        return "--:--:--"
    return clock.to_local(instant).strftime("%H:%M:%S")


def format_time_ampm(instant: datetime, clock: Clock) -> str:
    return clock.to_local(instant).strftime("%I:%M %p")


def format_date(instant: datetime, clock: Clock) -> str:
    return clock.to_local(instant).strftime("%Y-%m-%d")


def shorten_id(value: object, length: int = 8) -> str:
    """First ``length`` characters of an id's string form."""
    return str(value)[:length]
