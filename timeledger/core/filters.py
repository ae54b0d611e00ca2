"""Filter grammar for session queries.

Filters are a closed ``field OP value`` grammar: each field has a fixed set
of operators and a typed value, so every expression is validated up front
instead of being matched ad hoc per command.
"""

import re
from dataclasses import dataclass
from datetime import date, timedelta
from enum import Enum

from timeledger.core.errors import InvalidFormatError
from timeledger.core.timeparse import parse_duration

DATE_PATTERN = "YYYY-MM-DD, 'today', 'yesterday' or 'tomorrow'"
FILTER_PATTERN = "key[=|>|>=]value with key 'date' or 'duration'"

_FILTER_RE = re.compile(r"^(\w+)\s*([=><!]=?)\s*(.+)$")
_MONTH_RE = re.compile(r"^\d{4}-(0[1-9]|1[0-2])$")
_YEAR_RE = re.compile(r"^\d{4}$")


class FilterField(str, Enum):
    DATE = "date"
    DURATION = "duration"


class FilterOperator(str, Enum):
    EQ = "="
    GT = ">"
    GE = ">="


ALLOWED_OPERATORS: dict[FilterField, frozenset[FilterOperator]] = {
    FilterField.DATE: frozenset({FilterOperator.EQ}),
    FilterField.DURATION: frozenset({FilterOperator.EQ, FilterOperator.GT, FilterOperator.GE}),
}


@dataclass(frozen=True)
class FilterExpression:
    """A validated ``{field, operator, value}`` triple.

    ``value`` is a ``date`` for the date field and seconds for duration.
    """

    field: FilterField
    operator: FilterOperator
    value: date | int


def parse_date(text: str, today: date) -> date:
    """Resolve ``YYYY-MM-DD`` or a relative keyword against ``today``."""
    lowered = text.strip().lower()
    if lowered == "today":
        return today
    if lowered == "yesterday":
        return today - timedelta(days=1)
    if lowered == "tomorrow":
        return today + timedelta(days=1)
    try:
        return date.fromisoformat(lowered)
    except ValueError:
        raise InvalidFormatError(text, DATE_PATTERN) from None


def parse_filter(text: str, today: date) -> FilterExpression:
    """Parse ``date=2024-01-01`` or ``duration>=1h30m``."""
    match = _FILTER_RE.match(text.strip())
    if not match:
        raise InvalidFormatError(text, FILTER_PATTERN)

    key, op, raw_value = match.group(1).lower(), match.group(2), match.group(3).strip()

    try:
        field = FilterField(key)
    except ValueError:
        raise InvalidFormatError(
            text, FILTER_PATTERN, f'Unsupported filter key "{key}" in "{text}".'
        ) from None
    try:
        operator = FilterOperator(op)
    except ValueError:
        raise InvalidFormatError(
            text, FILTER_PATTERN, f'Unsupported operator "{op}" in "{text}".'
        ) from None

    if operator not in ALLOWED_OPERATORS[field]:
        allowed = ", ".join(sorted(o.value for o in ALLOWED_OPERATORS[field]))
        raise InvalidFormatError(
            text,
            FILTER_PATTERN,
            f'Operator "{op}" is not supported for key "{key}". Supported: {allowed}.',
        )

    if field is FilterField.DATE:
        return FilterExpression(field, operator, parse_date(raw_value, today))

    seconds = parse_duration(raw_value)
    if seconds is None:
        raise InvalidFormatError(raw_value, 'a duration such as "1h", "30m" or "1h 45m"')
    return FilterExpression(field, operator, seconds)


@dataclass(frozen=True)
class Period:
    """A month (``YYYY-MM``) or year (``YYYY``) selector; at most one set."""

    month: str | None = None
    year: str | None = None

    def matches(self, day: date) -> bool:
        if self.month:
            return day.strftime("%Y-%m") == self.month
        if self.year:
            return day.strftime("%Y") == self.year
        return True


def validate_period(month: str | None = None, year: str | None = None) -> Period:
    """Build a Period, rejecting malformed values and month+year together."""
    if month and year:
        raise InvalidFormatError(
            f"--month {month} --year {year}",
            "either a month or a year",
            "Cannot filter by month and year together. Specify only one period.",
        )
    if month and not _MONTH_RE.match(month):
        raise InvalidFormatError(month, "YYYY-MM")
    if year and not _YEAR_RE.match(year):
        raise InvalidFormatError(year, "YYYY")
    return Period(month=month, year=year)
