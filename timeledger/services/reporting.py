"""Aggregation and reporting over recorded time.

Everything here except ``ReportService`` is a pure function of its inputs.
Days are always local calendar days as defined by the injected ``Clock``.
"""

from collections.abc import Iterable, Mapping, Sequence
from dataclasses import dataclass, field
from datetime import date, datetime, timedelta
from typing import TYPE_CHECKING

from timeledger.core.datetime_utils import Clock
from timeledger.core.filters import Period, validate_period
from timeledger.db.models import Session

if TYPE_CHECKING:
    from timeledger.services.store import TrackingStore

WEEKDAYS = ("Monday", "Tuesday", "Wednesday", "Thursday", "Friday", "Saturday", "Sunday")

ONE_DAY = timedelta(days=1)


@dataclass(frozen=True)
class DailySummary:
    date: date
    total_seconds: int
    goal_met: bool


@dataclass(frozen=True)
class StreakStats:
    current: int
    longest: int


@dataclass(frozen=True)
class GoalProgress:
    total_seconds: int
    goal_seconds: int
    remaining_seconds: int
    achieved: bool
    estimated_finish: datetime | None = None


@dataclass
class Report:
    """Whole-history statistics."""

    first_day: date
    last_day: date
    total_seconds: int
    active_days: int
    entry_count: int
    goal_met_days: int
    goal_success_rate: float
    average_entry_seconds: float
    average_daily_seconds: float
    streaks: StreakStats
    consistency: str
    best_day: tuple[date, int]
    worst_day: tuple[date, int]
    weekday_totals: dict[str, int] = field(default_factory=dict)


def aggregate_by_local_day(sessions: Iterable[Session], clock: Clock) -> dict[date, int]:
    """Sum closed-session durations by the local date of their start."""
    totals: dict[date, int] = {}
    for session in sessions:
        if session.end_time is None or session.duration is None:
            continue
        day = clock.local_date(session.start_time)
        totals[day] = totals.get(day, 0) + session.duration
    return dict(sorted(totals.items()))


def goal_status(total_seconds: int, goal_seconds: int) -> bool:
    return total_seconds >= goal_seconds


def compute_streaks(daily: Mapping[date, int], goal_seconds: int, today: date) -> StreakStats:
    """
    Current and longest runs of consecutive goal-met calendar days.

    A day with no entry counts as a miss. The current streak is the run
    ending at the last recorded day, and only counts when that day is today
    or yesterday and met the goal.
    """
    if not daily:
        return StreakStats(current=0, longest=0)

    longest = run = 0
    previous: date | None = None
    for day in sorted(daily):
        if not goal_status(daily[day], goal_seconds):
            continue
        run = run + 1 if previous is not None and day - previous == ONE_DAY else 1
        longest = max(longest, run)
        previous = day

    last_day = max(daily)
    current = 0
    if last_day in (today, today - ONE_DAY):
        day = last_day
        while day in daily and goal_status(daily[day], goal_seconds):
            current += 1
            day -= ONE_DAY

    return StreakStats(current=current, longest=longest)


def consistency(first_day: date, last_day: date, active_days: int) -> str:
    span = (last_day - first_day).days + 1
    return f"{active_days} / {span} days"


def best_and_worst_day(daily: Mapping[date, int]) -> tuple[tuple[date, int], tuple[date, int]] | None:
    """Highest and lowest days; ties go to the earliest date."""
    best: tuple[date, int] | None = None
    worst: tuple[date, int] | None = None
    for day in sorted(daily):
        total = daily[day]
        if best is None or total > best[1]:
            best = (day, total)
        if worst is None or total < worst[1]:
            worst = (day, total)
    if best is None or worst is None:
        return None
    return best, worst


def day_of_week_breakdown(daily: Mapping[date, int]) -> dict[str, int]:
    """Total seconds per weekday name, Monday first."""
    totals = dict.fromkeys(WEEKDAYS, 0)
    for day, total in daily.items():
        totals[WEEKDAYS[day.weekday()]] += total
    return totals


def filter_by_period(sessions: Iterable[Session], period: Period, clock: Clock) -> list[Session]:
    return [s for s in sessions if period.matches(clock.local_date(s.start_time))]


def filter_days_by_period(daily: Mapping[date, int], period: Period) -> dict[date, int]:
    return {day: total for day, total in daily.items() if period.matches(day)}


def summarize_days(daily: Mapping[date, int], goal_seconds: int) -> list[DailySummary]:
    return [
        DailySummary(date=day, total_seconds=total, goal_met=goal_status(total, goal_seconds))
        for day, total in sorted(daily.items())
    ]


def goal_progress(total_seconds: int, goal_seconds: int, now: datetime | None = None) -> GoalProgress:
    """How far today's total is from the goal, with a finish estimate from ``now``."""
    remaining = max(0, goal_seconds - total_seconds)
    achieved = remaining == 0
    estimated_finish = None
    if not achieved and now is not None:
        estimated_finish = now + timedelta(seconds=remaining)
    return GoalProgress(
        total_seconds=total_seconds,
        goal_seconds=goal_seconds,
        remaining_seconds=remaining,
        achieved=achieved,
        estimated_finish=estimated_finish,
    )


def build_report(
    daily: Mapping[date, int],
    entry_durations: Sequence[int],
    goal_seconds: int,
    today: date,
) -> Report | None:
    """Assemble the full report; None when nothing has been recorded."""
    extremes = best_and_worst_day(daily)
    if extremes is None:
        return None
    best, worst = extremes

    days = sorted(daily)
    total = sum(daily.values())
    met_days = sum(1 for d in days if goal_status(daily[d], goal_seconds))
    entry_count = len(entry_durations)

    return Report(
        first_day=days[0],
        last_day=days[-1],
        total_seconds=total,
        active_days=len(days),
        entry_count=entry_count,
        goal_met_days=met_days,
        goal_success_rate=met_days / len(days) * 100,
        average_entry_seconds=sum(entry_durations) / entry_count if entry_count else 0.0,
        average_daily_seconds=total / len(days),
        streaks=compute_streaks(daily, goal_seconds, today),
        consistency=consistency(days[0], days[-1], len(days)),
        best_day=best,
        worst_day=worst,
        weekday_totals=day_of_week_breakdown(daily),
    )


class ReportService:
    """Feeds the reporting functions from the configured store."""

    def __init__(self, store: "TrackingStore", clock: Clock, goal_seconds: int) -> None:
        self.store = store
        self.clock = clock
        self.goal_seconds = goal_seconds

    async def summary(self, month: str | None = None, year: str | None = None) -> list[DailySummary]:
        period = validate_period(month=month, year=year)
        daily = await self.store.daily_totals()
        return summarize_days(filter_days_by_period(daily, period), self.goal_seconds)

    async def report(self) -> Report | None:
        daily = await self.store.daily_totals()
        durations = await self.store.entry_durations()
        return build_report(daily, durations, self.goal_seconds, self.clock.today())

    async def eta(self) -> GoalProgress:
        today = self.clock.today()
        daily = await self.store.daily_totals(today, today)
        total = daily.get(today, 0) + await self.store.in_progress_seconds()
        return goal_progress(total, self.goal_seconds, self.clock.to_local(self.clock.now()))
