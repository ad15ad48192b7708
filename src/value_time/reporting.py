"""Console rendering for tracking status and earnings summaries."""

from __future__ import annotations

from datetime import datetime
from typing import Iterable, Optional

from .aggregation import (
    CategorySummary,
    Denominator,
    ProjectSummary,
    RateCatalog,
    WindowSummary,
    category_breakdown,
    dashboard,
)
from .db import SQLiteSessionStore
from .lifecycle import SessionSnapshot, TrackingState
from .models import ActivitySession
from .timemath import format_duration, format_duration_short


def format_money(amount: float, currency: str = "USD") -> str:
    return f"{currency} {amount:,.2f}"


def format_status(snapshot: SessionSnapshot, currency: str = "USD") -> str:
    if snapshot.state is TrackingState.IDLE:
        return "Not tracking."
    label = snapshot.activity_name or f"activity {snapshot.activity_id}"
    state = "Paused" if snapshot.state is TrackingState.PAUSED else "Tracking"
    return (
        f"{state}: {label}  {format_duration(snapshot.elapsed_seconds)}  "
        f"{format_money(snapshot.earnings, currency)} "
        f"@ {format_money(snapshot.hourly_rate, currency)}/h"
    )


def format_session(session: ActivitySession, label: str) -> str:
    start = session.start_time.strftime("%Y-%m-%d %H:%M")
    if session.end_time is None:
        suffix = "paused" if session.is_paused else "running"
        return f"#{session.id:<5} {label:<24} {start}  ({suffix})"
    return (
        f"#{session.id:<5} {label:<24} {start}  "
        f"{format_duration_short(session.duration_seconds)}"
        + (f"  {session.note}" if session.note else "")
    )


class SummaryPrinter:
    """Render human-readable summaries in the console."""

    def __init__(self, store: SQLiteSessionStore) -> None:
        self.store = store

    def catalog(self) -> RateCatalog:
        return RateCatalog.build(self.store.list_activities(), self.store.list_projects())

    def print_dashboard(
        self,
        now: Optional[datetime] = None,
        denominator: Denominator = Denominator.ALL_HOURS,
        snapshot: Optional[SessionSnapshot] = None,
    ) -> None:
        now = now or datetime.now()
        currency = self.store.get_user().preferred_currency
        sessions = self.store.get_closed_sessions()
        catalog = self.catalog()
        summaries = dashboard(sessions, catalog, now, denominator)

        print(f"Summary as of {now.strftime('%Y-%m-%d %H:%M')}")
        print("-" * 60)
        if snapshot is not None:
            print(format_status(snapshot, currency))
            print()

        method = "tracked hours" if denominator is Denominator.TRACKED_ONLY else "all hours"
        print(f"Average hourly worth ({method}):")
        for summary in summaries:
            print(_format_window(summary, currency))

        today = summaries[0]
        print()
        print(f"Tracked today: {format_duration(today.tracked_seconds)}")
        print(f"Idle today:    {format_duration(today.idle_seconds or 0.0)}")

        categories = category_breakdown(sessions, catalog, now)
        if categories:
            print()
            print("Activity categories:")
            for category in categories:
                print(_format_category(category, currency))

    def print_sessions(self, sessions: Iterable[ActivitySession]) -> None:
        names = {activity.id: activity.name for activity in self.store.list_activities()}
        printed = False
        for session in sessions:
            print(format_session(session, names.get(session.activity_id, "Unknown")))
            printed = True
        if not printed:
            print("No sessions.")

    def print_project(self, summary: ProjectSummary) -> None:
        currency = self.store.get_user().preferred_currency
        project = summary.project
        print(f"{project.name} ({project.budget_type.value})")
        print("-" * 40)
        print(f"Rate:        {format_money(project.hourly_rate, currency)}/h")
        print(f"Tracked:     {format_duration(summary.total_seconds)}")
        print(f"Earned:      {format_money(summary.earnings, currency)}")
        if project.is_fixed_budget:
            print(f"Budget:      {format_money(project.budget, currency)}")
            print(f"Budget used: {summary.budget_percentage:.1f}%")
            print(f"Remaining:   {format_duration(summary.budget_remaining_seconds)}")
            print(f"Effective:   {format_money(summary.effective_hourly_rate, currency)}/h")


def _format_window(summary: WindowSummary, currency: str) -> str:
    return (
        f"  {summary.window.value.capitalize():<6} "
        f"{format_money(summary.average_hourly_worth, currency):>14}/h  "
        f"({summary.tracked_hours:.2f}h tracked, "
        f"{format_money(summary.earnings, currency)} earned, "
        f"{summary.denominator_hours:.2f}h available)"
    )


def _format_category(category: CategorySummary, currency: str) -> str:
    return (
        f"  {category.category.value.capitalize():<10} "
        f"{format_duration_short(category.total_seconds)}  "
        f"{format_money(category.total_earnings, currency):>14}  "
        f"{format_money(category.effective_hourly_worth, currency)}/h"
    )
