"""Earnings, idle time and hourly-worth rollups over closed sessions.

Everything here is a pure function of the sessions, the rate catalog and an
explicit ``now``; nothing reads the clock or the store.

Windows map to a start instant as follows: ``day`` is local midnight,
``week`` is exactly 7 x 24 h back, ``month`` and ``year`` are one calendar
month/year back. The "all hours" denominator uses fixed
allotments instead (elapsed-since-midnight, 7, 30 and 365 days), so month
and year averages are approximations by definition.
"""

from __future__ import annotations

from collections import defaultdict
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from enum import Enum
from typing import Iterable, Optional

from .models import Activity, ActivityCategory, ActivitySession, Project
from .timemath import (
    budget_percentage_used,
    calculate_earnings,
    effective_hourly_rate,
    hourly_worth,
    months_before,
    time_remaining_in_budget,
)


class Window(str, Enum):
    DAY = "day"
    WEEK = "week"
    MONTH = "month"
    YEAR = "year"


class Denominator(str, Enum):
    TRACKED_ONLY = "tracked_only"
    ALL_HOURS = "all_hours"


_FIXED_ALLOTMENTS: dict[Window, timedelta] = {
    Window.WEEK: timedelta(days=7),
    Window.MONTH: timedelta(days=30),
    Window.YEAR: timedelta(days=365),
}


def start_of_day(value: datetime) -> datetime:
    return value.replace(hour=0, minute=0, second=0, microsecond=0)


def window_start(window: Window, now: datetime) -> datetime:
    """First instant a session may start at to count toward ``window``."""
    window = Window(window)
    if window is Window.DAY:
        return start_of_day(now)
    if window is Window.WEEK:
        return now - timedelta(days=7)
    if window is Window.MONTH:
        return months_before(now, 1)
    return months_before(now, 12)


def available_seconds(window: Window, now: datetime) -> float:
    """Wall-clock allotment used by the all-hours denominator."""
    window = Window(window)
    if window is Window.DAY:
        return (now - start_of_day(now)).total_seconds()
    return _FIXED_ALLOTMENTS[window].total_seconds()


@dataclass(slots=True)
class RateCatalog:
    """Activities and projects by id, used to price sessions."""

    activities: dict[int, Activity] = field(default_factory=dict)
    projects: dict[int, Project] = field(default_factory=dict)

    @classmethod
    def build(
        cls, activities: Iterable[Activity], projects: Iterable[Project] = ()
    ) -> "RateCatalog":
        return cls(
            activities={activity.id: activity for activity in activities},
            projects={project.id: project for project in projects},
        )

    def activity_for(self, session: ActivitySession) -> Optional[Activity]:
        return self.activities.get(session.activity_id)

    def project_for(self, activity: Activity) -> Optional[Project]:
        if activity.project_id is None:
            return None
        return self.projects.get(activity.project_id)

    def session_rate(self, session: ActivitySession) -> float:
        """Activity rate, else project rate, else 0.

        Unlike live tracking there is no fallback to the user default.
        """
        activity = self.activity_for(session)
        if activity is None:
            return 0.0
        if activity.hourly_rate > 0:
            return activity.hourly_rate
        project = self.project_for(activity)
        if project is not None and project.hourly_rate > 0:
            return project.hourly_rate
        return 0.0

    def category_for(self, session: ActivitySession) -> ActivityCategory:
        activity = self.activity_for(session)
        return activity.category if activity else ActivityCategory.OTHER


def session_earnings(session: ActivitySession, catalog: RateCatalog) -> float:
    return calculate_earnings(catalog.session_rate(session), session.duration_seconds)


def sessions_in_window(
    sessions: Iterable[ActivitySession], start: datetime, now: datetime
) -> list[ActivitySession]:
    """Closed sessions that started at or after ``start`` and ended by ``now``."""
    return [
        session
        for session in sessions
        if session.end_time is not None
        and session.start_time >= start
        and session.end_time <= now
    ]


@dataclass(frozen=True, slots=True)
class WindowSummary:
    window: Window
    denominator: Denominator
    start: datetime
    end: datetime
    session_count: int
    tracked_seconds: float
    earnings: float
    available_seconds: float
    denominator_seconds: float
    average_hourly_worth: float
    idle_seconds: Optional[float] = None

    @property
    def tracked_hours(self) -> float:
        return self.tracked_seconds / 3600

    @property
    def denominator_hours(self) -> float:
        return self.denominator_seconds / 3600


def summarize(
    sessions: Iterable[ActivitySession],
    catalog: RateCatalog,
    window: Window,
    now: datetime,
    denominator: Denominator = Denominator.ALL_HOURS,
) -> WindowSummary:
    window = Window(window)
    denominator = Denominator(denominator)
    start = window_start(window, now)
    selected = sessions_in_window(sessions, start, now)

    tracked = sum(session.duration_seconds for session in selected)
    earnings = sum(session_earnings(session, catalog) for session in selected)
    allotment = available_seconds(window, now)
    denominator_seconds = tracked if denominator is Denominator.TRACKED_ONLY else allotment

    return WindowSummary(
        window=window,
        denominator=denominator,
        start=start,
        end=now,
        session_count=len(selected),
        tracked_seconds=tracked,
        earnings=earnings,
        available_seconds=allotment,
        denominator_seconds=denominator_seconds,
        average_hourly_worth=hourly_worth(earnings, denominator_seconds),
        idle_seconds=max(0.0, allotment - tracked) if window is Window.DAY else None,
    )


def idle_seconds_today(sessions: Iterable[ActivitySession], now: datetime) -> float:
    """Time since midnight not covered by a closed session."""
    selected = sessions_in_window(sessions, start_of_day(now), now)
    tracked = sum(session.duration_seconds for session in selected)
    return max(0.0, available_seconds(Window.DAY, now) - tracked)


def dashboard(
    sessions: Iterable[ActivitySession],
    catalog: RateCatalog,
    now: datetime,
    denominator: Denominator = Denominator.ALL_HOURS,
) -> list[WindowSummary]:
    """Day, week, month and year summaries, in that order."""
    sessions = list(sessions)
    return [summarize(sessions, catalog, window, now, denominator) for window in Window]


@dataclass(frozen=True, slots=True)
class CategorySummary:
    category: ActivityCategory
    total_seconds: float
    total_earnings: float
    effective_hourly_worth: float
    session_count: int
    activity_count: int


def category_breakdown(
    sessions: Iterable[ActivitySession],
    catalog: RateCatalog,
    now: datetime,
    window: Optional[Window] = None,
) -> list[CategorySummary]:
    """Totals per activity category, highest earnings first.

    Without a ``window`` every closed session ending by ``now`` counts.
    """
    start = window_start(window, now) if window is not None else datetime.min
    seconds: defaultdict[ActivityCategory, float] = defaultdict(float)
    earnings: defaultdict[ActivityCategory, float] = defaultdict(float)
    counts: defaultdict[ActivityCategory, int] = defaultdict(int)
    activity_ids: defaultdict[ActivityCategory, set[int]] = defaultdict(set)

    for session in sessions_in_window(sessions, start, now):
        category = catalog.category_for(session)
        seconds[category] += session.duration_seconds
        earnings[category] += session_earnings(session, catalog)
        counts[category] += 1
        activity_ids[category].add(session.activity_id)

    summaries = [
        CategorySummary(
            category=category,
            total_seconds=seconds[category],
            total_earnings=earnings[category],
            effective_hourly_worth=hourly_worth(earnings[category], seconds[category]),
            session_count=counts[category],
            activity_count=len(activity_ids[category]),
        )
        for category in seconds
    ]
    return sorted(summaries, key=lambda item: item.total_earnings, reverse=True)


@dataclass(frozen=True, slots=True)
class ProjectSummary:
    project: Project
    total_seconds: float
    earnings: float
    effective_hourly_rate: float
    budget_percentage: float
    budget_remaining_seconds: float


def project_summary(project: Project, sessions: Iterable[ActivitySession]) -> ProjectSummary:
    """Time, earnings and budget use for ``project`` at its own rate."""
    total = sum(session.duration_seconds for session in sessions if session.end_time is not None)
    earnings = calculate_earnings(project.hourly_rate, total)
    if project.is_fixed_budget:
        rate = effective_hourly_rate(project.budget, total) if total > 0 else project.hourly_rate
        percentage = budget_percentage_used(project.budget, project.hourly_rate, total)
        remaining = time_remaining_in_budget(project.budget, project.hourly_rate, total)
    else:
        rate = project.hourly_rate
        percentage = 0.0
        remaining = 0.0
    return ProjectSummary(
        project=project,
        total_seconds=total,
        earnings=earnings,
        effective_hourly_rate=rate,
        budget_percentage=percentage,
        budget_remaining_seconds=remaining,
    )


@dataclass(frozen=True, slots=True)
class ActivitySummary:
    activity: Activity
    session_count: int
    total_seconds: float
    earnings: float
    effective_hourly_worth: float


def activity_summary(
    activity: Activity, sessions: Iterable[ActivitySession], catalog: RateCatalog
) -> ActivitySummary:
    closed = [
        session
        for session in sessions
        if session.activity_id == activity.id and session.end_time is not None
    ]
    total = sum(session.duration_seconds for session in closed)
    earnings = sum(session_earnings(session, catalog) for session in closed)
    return ActivitySummary(
        activity=activity,
        session_count=len(closed),
        total_seconds=total,
        earnings=earnings,
        effective_hourly_worth=hourly_worth(earnings, total),
    )
