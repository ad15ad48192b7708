"""Command-line interface for the value tracker."""

from __future__ import annotations

import logging
import time
from contextlib import contextmanager
from datetime import datetime
from logging.handlers import RotatingFileHandler
from pathlib import Path
from typing import Iterator, Optional, Tuple

import typer

from .aggregation import Denominator, activity_summary, project_summary
from .config import (
    INACTIVITY_INTERVAL_OPTIONS,
    LONG_SESSION_INTERVAL_OPTIONS,
    AppSettings,
    ReminderSettings,
    snap_interval,
)
from .db import SQLiteSessionStore
from .errors import ValueTimeError
from .lifecycle import EventKind, LifecycleEvent, SessionLifecycle, TrackingState
from .models import Activity, ActivityCategory, BudgetType, Project
from .notifications import LoggingNotificationScheduler
from .paths import log_path, resolve_db_path
from .reporting import SummaryPrinter, format_money, format_status
from .timemath import format_duration, format_interval

LOG_FORMAT = "%(asctime)s %(levelname)s %(name)s %(message)s"

app = typer.Typer(help="Track what your time is worth.")
project_app = typer.Typer(help="Manage projects.", no_args_is_help=True)
activity_app = typer.Typer(help="Manage activities.", no_args_is_help=True)
settings_app = typer.Typer(help="Show or change reminder settings.", no_args_is_help=True)
session_app = typer.Typer(help="Record or correct finished sessions.", no_args_is_help=True)
app.add_typer(project_app, name="project")
app.add_typer(activity_app, name="activity")
app.add_typer(session_app, name="session")
app.add_typer(settings_app, name="settings")

DbOption = typer.Option(
    None,
    "--db",
    path_type=Path,
    help="Location of the tracking SQLite database.",
)

DATE_FORMATS = ["%Y-%m-%d %H:%M", "%Y-%m-%dT%H:%M", "%Y-%m-%d"]


@app.callback(no_args_is_help=True)
def main(verbose: bool = typer.Option(False, "--verbose", "-v", help="Enable verbose logs.")) -> None:
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.INFO,
        format=LOG_FORMAT,
    )


def _add_file_logging() -> None:
    handler = RotatingFileHandler(
        log_path(), maxBytes=5 * 1024 * 1024, backupCount=3, encoding="utf-8"
    )
    handler.setFormatter(logging.Formatter(LOG_FORMAT))
    logging.getLogger().addHandler(handler)


@contextmanager
def _open_store(db_path: Optional[Path]) -> Iterator[SQLiteSessionStore]:
    store: Optional[SQLiteSessionStore] = None
    try:
        store = SQLiteSessionStore(resolve_db_path(db_path))
        yield store
    except ValueTimeError as exc:
        typer.secho(str(exc), fg=typer.colors.RED, err=True)
        raise typer.Exit(code=1) from exc
    finally:
        if store is not None:
            store.close()


@contextmanager
def _open_tracker(
    db_path: Optional[Path],
) -> Iterator[Tuple[SQLiteSessionStore, SessionLifecycle]]:
    """Open the store and adopt whatever session it still has open."""
    with _open_store(db_path) as store:
        lifecycle = SessionLifecycle(
            store,
            LoggingNotificationScheduler(),
            ReminderSettings.load(store),
            strict=True,
        )
        try:
            lifecycle.recover()
            yield store, lifecycle
        finally:
            lifecycle.shutdown()


def _currency(store: SQLiteSessionStore) -> str:
    return store.get_user().preferred_currency


# -- projects ---------------------------------------------------------------


@project_app.command("add")
def project_add(
    name: str = typer.Argument(..., help="Project name."),
    hourly_rate: float = typer.Option(0.0, "--rate", min=0.0, help="Hourly rate."),
    budget_type: BudgetType = typer.Option(BudgetType.HOURLY, "--budget-type"),
    budget: float = typer.Option(0.0, "--budget", min=0.0, help="Fixed budget amount."),
    color: str = typer.Option("#4285F4", "--color"),
    db_path: Optional[Path] = DbOption,
) -> None:
    """Create a project."""
    with _open_store(db_path) as store:
        project = store.create_project(
            Project(
                id=None,
                name=name,
                hourly_rate=hourly_rate,
                budget_type=budget_type,
                budget=budget,
                color=color,
            )
        )
    typer.echo(f"Created project #{project.id} {project.name}")


@project_app.command("list")
def project_list(db_path: Optional[Path] = DbOption) -> None:
    """List projects."""
    with _open_store(db_path) as store:
        projects = store.list_projects()
        currency = _currency(store)
    if not projects:
        typer.echo("No projects.")
        return
    for project in projects:
        budget = (
            f"  budget {format_money(project.budget, currency)}"
            if project.is_fixed_budget
            else ""
        )
        typer.echo(
            f"#{project.id:<4} {project.name:<24} "
            f"{format_money(project.hourly_rate, currency)}/h{budget}"
        )


@project_app.command("show")
def project_show(
    project_id: int = typer.Argument(...),
    db_path: Optional[Path] = DbOption,
) -> None:
    """Show time, earnings and budget use for a project."""
    with _open_store(db_path) as store:
        project = store.get_project(project_id)
        summary = project_summary(project, store.get_sessions_for_project(project_id))
        SummaryPrinter(store).print_project(summary)


@project_app.command("delete")
def project_delete(
    project_id: int = typer.Argument(...),
    db_path: Optional[Path] = DbOption,
) -> None:
    """Delete a project with its activities and sessions."""
    with _open_tracker(db_path) as (store, lifecycle):
        store.get_project(project_id)
        current = lifecycle.current_session
        if current is not None:
            if store.get_activity(current.activity_id).project_id == project_id:
                lifecycle.stop()
        store.delete_project(project_id)
    typer.echo(f"Deleted project #{project_id}")


@project_app.command("edit")
def project_edit(
    project_id: int = typer.Argument(...),
    name: Optional[str] = typer.Option(None, "--name"),
    hourly_rate: Optional[float] = typer.Option(None, "--rate", min=0.0),
    budget_type: Optional[BudgetType] = typer.Option(None, "--budget-type"),
    budget: Optional[float] = typer.Option(None, "--budget", min=0.0),
    color: Optional[str] = typer.Option(None, "--color"),
    start_date: Optional[datetime] = typer.Option(None, "--start", formats=DATE_FORMATS),
    end_date: Optional[datetime] = typer.Option(None, "--end", formats=DATE_FORMATS),
    db_path: Optional[Path] = DbOption,
) -> None:
    """Change a project; options left out keep their value."""
    with _open_store(db_path) as store:
        project = store.get_project(project_id)
        if name is not None:
            project.name = name
        if hourly_rate is not None:
            project.hourly_rate = hourly_rate
        if budget_type is not None:
            project.budget_type = budget_type
        if budget is not None:
            project.budget = budget
        if color is not None:
            project.color = color
        if start_date is not None:
            project.start_date = start_date
        if end_date is not None:
            project.end_date = end_date
        store.update_project(project)
    typer.echo(f"Updated project #{project.id} {project.name}")


# -- activities -------------------------------------------------------------


@activity_app.command("add")
def activity_add(
    name: str = typer.Argument(..., help="Activity name."),
    category: ActivityCategory = typer.Option(ActivityCategory.OTHER, "--category"),
    hourly_rate: float = typer.Option(
        0.0, "--rate", min=0.0, help="Hourly rate; 0 falls back to the project rate."
    ),
    project_id: Optional[int] = typer.Option(None, "--project", help="Owning project id."),
    color: str = typer.Option("#4285F4", "--color"),
    icon: str = typer.Option("clock", "--icon"),
    db_path: Optional[Path] = DbOption,
) -> None:
    """Create an activity."""
    with _open_store(db_path) as store:
        activity = store.create_activity(
            Activity(
                id=None,
                name=name,
                category=category,
                hourly_rate=hourly_rate,
                project_id=project_id,
                color=color,
                icon=icon,
            )
        )
    typer.echo(f"Created activity #{activity.id} {activity.name}")


@activity_app.command("list")
def activity_list(db_path: Optional[Path] = DbOption) -> None:
    """List activities."""
    with _open_store(db_path) as store:
        activities = store.list_activities()
        currency = _currency(store)
    if not activities:
        typer.echo("No activities.")
        return
    for activity in activities:
        typer.echo(
            f"#{activity.id:<4} {activity.name:<24} {activity.category.value:<9} "
            f"{format_money(activity.hourly_rate, currency)}/h"
        )


@activity_app.command("show")
def activity_show(
    activity_id: int = typer.Argument(...),
    db_path: Optional[Path] = DbOption,
) -> None:
    """Show an activity's sessions and totals."""
    with _open_store(db_path) as store:
        printer = SummaryPrinter(store)
        activity = store.get_activity(activity_id)
        sessions = store.get_sessions_for_activity(activity_id)
        summary = activity_summary(activity, sessions, printer.catalog())
        currency = _currency(store)
        typer.echo(f"{activity.name} ({activity.category.value})")
        typer.echo(f"Sessions: {summary.session_count}")
        typer.echo(f"Tracked:  {format_duration(summary.total_seconds)}")
        typer.echo(f"Earned:   {format_money(summary.earnings, currency)}")
        typer.echo(f"Worth:    {format_money(summary.effective_hourly_worth, currency)}/h")
        printer.print_sessions(sessions)


@activity_app.command("delete")
def activity_delete(
    activity_id: int = typer.Argument(...),
    db_path: Optional[Path] = DbOption,
) -> None:
    """Delete an activity and its sessions."""
    with _open_tracker(db_path) as (store, lifecycle):
        store.get_activity(activity_id)
        current = lifecycle.current_session
        if current is not None and current.activity_id == activity_id:
            lifecycle.stop()
        store.delete_activity(activity_id)
    typer.echo(f"Deleted activity #{activity_id}")


@activity_app.command("edit")
def activity_edit(
    activity_id: int = typer.Argument(...),
    name: Optional[str] = typer.Option(None, "--name"),
    category: Optional[ActivityCategory] = typer.Option(None, "--category"),
    hourly_rate: Optional[float] = typer.Option(None, "--rate", min=0.0),
    project_id: Optional[int] = typer.Option(None, "--project", help="Move to this project."),
    no_project: bool = typer.Option(False, "--no-project", help="Detach from its project."),
    color: Optional[str] = typer.Option(None, "--color"),
    icon: Optional[str] = typer.Option(None, "--icon"),
    db_path: Optional[Path] = DbOption,
) -> None:
    """Change an activity; options left out keep their value."""
    with _open_store(db_path) as store:
        activity = store.get_activity(activity_id)
        if name is not None:
            activity.name = name
        if category is not None:
            activity.category = category
        if hourly_rate is not None:
            activity.hourly_rate = hourly_rate
        if no_project:
            activity.project_id = None
        elif project_id is not None:
            activity.project_id = project_id
        if color is not None:
            activity.color = color
        if icon is not None:
            activity.icon = icon
        store.update_activity(activity)
    typer.echo(f"Updated activity #{activity.id} {activity.name}")


# -- tracking ---------------------------------------------------------------


@app.command()
def start(
    activity_id: int = typer.Argument(..., help="Activity to track."),
    db_path: Optional[Path] = DbOption,
) -> None:
    """Start tracking an activity, stopping whatever was running."""
    with _open_tracker(db_path) as (store, lifecycle):
        snapshot = lifecycle.start(activity_id)
    typer.echo(format_status(snapshot))


@app.command()
def pause(db_path: Optional[Path] = DbOption) -> None:
    """Pause the running session."""
    with _open_tracker(db_path) as (store, lifecycle):
        lifecycle.pause()
        typer.echo(format_status(lifecycle.snapshot()))


@app.command()
def resume(
    session_id: Optional[int] = typer.Option(
        None, "--session", help="Resume a specific paused session."
    ),
    db_path: Optional[Path] = DbOption,
) -> None:
    """Resume the paused session."""
    with _open_tracker(db_path) as (store, lifecycle):
        if session_id is not None:
            lifecycle.resume_session(session_id)
        else:
            lifecycle.resume()
        typer.echo(format_status(lifecycle.snapshot()))


@app.command()
def stop(
    note: Optional[str] = typer.Option(None, "--note", help="Note saved with the session."),
    db_path: Optional[Path] = DbOption,
) -> None:
    """Stop tracking and save the session."""
    with _open_tracker(db_path) as (store, lifecycle):
        closed = lifecycle.stop(note)
    typer.echo(f"Stopped session #{closed.id} after {format_duration(closed.duration_seconds)}")


@app.command()
def status(db_path: Optional[Path] = DbOption) -> None:
    """Show what is being tracked right now."""
    with _open_tracker(db_path) as (store, lifecycle):
        currency = _currency(store)
        typer.echo(format_status(lifecycle.snapshot(), currency))


@app.command()
def paused(db_path: Optional[Path] = DbOption) -> None:
    """List sessions that are paused and can be resumed."""
    with _open_store(db_path) as store:
        SummaryPrinter(store).print_sessions(store.get_paused_sessions())


@app.command()
def watch(db_path: Optional[Path] = DbOption) -> None:
    """Show the running session live until interrupted."""
    with _open_tracker(db_path) as (store, lifecycle):
        currency = _currency(store)
        if lifecycle.state is TrackingState.IDLE:
            typer.echo(format_status(lifecycle.snapshot(), currency))
            return

        def on_event(event: LifecycleEvent) -> None:
            if event.kind is EventKind.TICK:
                typer.echo("\r" + format_status(event.snapshot, currency), nl=False)
            elif event.kind is EventKind.LONG_SESSION_REMINDER:
                typer.echo(f"\nStill working on {event.snapshot.activity_name}?")

        unsubscribe = lifecycle.subscribe(on_event)
        typer.echo(format_status(lifecycle.snapshot(), currency))
        try:
            while True:
                time.sleep(0.5)
        except KeyboardInterrupt:
            typer.echo("")
        finally:
            unsubscribe()


@app.command("dashboard")
def dashboard_command(
    tracked_only: bool = typer.Option(
        False,
        "--tracked-only",
        help="Divide earnings by tracked hours instead of all hours.",
    ),
    db_path: Optional[Path] = DbOption,
) -> None:
    """Print average hourly worth per window and category totals."""
    denominator = Denominator.TRACKED_ONLY if tracked_only else Denominator.ALL_HOURS
    with _open_tracker(db_path) as (store, lifecycle):
        snapshot = lifecycle.snapshot()
        SummaryPrinter(store).print_dashboard(
            now=snapshot.taken_at, denominator=denominator, snapshot=snapshot
        )


# -- sessions ---------------------------------------------------------------


@session_app.command("list")
def session_list(
    activity_id: Optional[int] = typer.Option(None, "--activity", help="Only this activity."),
    db_path: Optional[Path] = DbOption,
) -> None:
    """List recorded sessions."""
    with _open_store(db_path) as store:
        sessions = (
            store.get_sessions_for_activity(activity_id)
            if activity_id is not None
            else store.get_closed_sessions()
        )
        SummaryPrinter(store).print_sessions(sessions)


@session_app.command("add")
def session_add(
    activity_id: int = typer.Argument(..., help="Activity the time was spent on."),
    start_time: datetime = typer.Option(..., "--start", formats=DATE_FORMATS),
    end_time: datetime = typer.Option(..., "--end", formats=DATE_FORMATS),
    note: Optional[str] = typer.Option(None, "--note"),
    db_path: Optional[Path] = DbOption,
) -> None:
    """Record a session that was not tracked live."""
    with _open_store(db_path) as store:
        session = store.add_session(activity_id, start_time, end_time, note)
    typer.echo(
        f"Added session #{session.id} of {format_duration(session.duration_seconds)}"
    )


@session_app.command("edit")
def session_edit(
    session_id: int = typer.Argument(...),
    start_time: Optional[datetime] = typer.Option(None, "--start", formats=DATE_FORMATS),
    end_time: Optional[datetime] = typer.Option(None, "--end", formats=DATE_FORMATS),
    note: Optional[str] = typer.Option(None, "--note", help="Empty string clears the note."),
    db_path: Optional[Path] = DbOption,
) -> None:
    """Correct the times or note of a finished session."""
    with _open_store(db_path) as store:
        if note is None:
            session = store.edit_session(session_id, start_time=start_time, end_time=end_time)
        else:
            session = store.edit_session(
                session_id, start_time=start_time, end_time=end_time, note=note
            )
    typer.echo(
        f"Updated session #{session.id}: {format_duration(session.duration_seconds)}"
    )


@session_app.command("delete")
def session_delete(
    session_id: int = typer.Argument(...),
    db_path: Optional[Path] = DbOption,
) -> None:
    """Delete a session, stopping it first if it is being tracked."""
    with _open_tracker(db_path) as (store, lifecycle):
        store.get_session(session_id)
        current = lifecycle.current_session
        if current is not None and current.id == session_id:
            lifecycle.stop()
        store.delete_session(session_id)
    typer.echo(f"Deleted session #{session_id}")


# -- settings ---------------------------------------------------------------


@settings_app.command("show")
def settings_show(db_path: Optional[Path] = DbOption) -> None:
    """Print reminder settings and preferences."""
    with _open_store(db_path) as store:
        reminders = ReminderSettings.load(store)
        prefs = AppSettings.load(store)
    typer.echo(
        "Inactivity reminder:   "
        + (format_interval(reminders.inactivity_interval.total_seconds())
           if reminders.inactivity_enabled else "off")
    )
    typer.echo(
        "Long session reminder: "
        + (format_interval(reminders.long_session_interval.total_seconds())
           if reminders.long_session_enabled else "off")
    )
    typer.echo(f"Currency:              {prefs.preferred_currency}")
    typer.echo(f"Default hourly rate:   {prefs.default_hourly_rate:.2f}")
    typer.echo(f"Tracking since:        {prefs.tracking_start_date:%Y-%m-%d}")


@settings_app.command("set")
def settings_set(
    inactivity_minutes: Optional[float] = typer.Option(
        None, "--inactivity-minutes", min=1.0, help="Snapped to the nearest preset."
    ),
    long_session_minutes: Optional[float] = typer.Option(
        None, "--long-session-minutes", min=1.0, help="Snapped to the nearest preset."
    ),
    inactivity: Optional[bool] = typer.Option(None, "--inactivity/--no-inactivity"),
    long_session: Optional[bool] = typer.Option(None, "--long-session/--no-long-session"),
    currency: Optional[str] = typer.Option(None, "--currency"),
    default_rate: Optional[float] = typer.Option(None, "--default-rate", min=0.0),
    tracking_start: Optional[datetime] = typer.Option(
        None, "--tracking-start", formats=DATE_FORMATS, help="Count history from this date."
    ),
    reset: bool = typer.Option(False, "--reset", help="Restore reminder defaults first."),
    db_path: Optional[Path] = DbOption,
) -> None:
    """Change reminder settings and preferences."""
    with _open_store(db_path) as store:
        reminders = ReminderSettings.load(store)
        if reset:
            reminders.reset_to_defaults()
        if inactivity is not None:
            reminders.inactivity_enabled = inactivity
        if long_session is not None:
            reminders.long_session_enabled = long_session
        if inactivity_minutes is not None:
            reminders.inactivity_interval = snap_interval(
                INACTIVITY_INTERVAL_OPTIONS, inactivity_minutes
            )
        if long_session_minutes is not None:
            reminders.long_session_interval = snap_interval(
                LONG_SESSION_INTERVAL_OPTIONS, long_session_minutes
            )
        reminders.save(store)
        if currency is not None or default_rate is not None:
            store.update_user(preferred_currency=currency, default_hourly_rate=default_rate)
        if tracking_start is not None:
            prefs = AppSettings.load(store)
            prefs.tracking_start_date = tracking_start
            prefs.save(store)
    settings_show(db_path)


# -- dashboard server -------------------------------------------------------


@app.command()
def web(
    host: str = typer.Option("127.0.0.1", "--host", help="Interface to bind the dashboard."),
    port: int = typer.Option(
        8765, "--port", min=1, max=65535, help="TCP port for the dashboard."
    ),
    db_path: Optional[Path] = DbOption,
    open_browser: bool = typer.Option(
        True,
        "--open-browser/--no-open-browser",
        help="Automatically launch the dashboard in your default browser.",
    ),
) -> None:
    """Serve the local HTTP API until interrupted."""
    from .server_runner import run_dashboard

    _add_file_logging()
    run_dashboard(
        host=host,
        port=port,
        db_path=resolve_db_path(db_path),
        open_browser=open_browser,
    )
