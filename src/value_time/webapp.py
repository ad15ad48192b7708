"""FastAPI application exposing the tracker over a local HTTP API."""

from __future__ import annotations

import logging
import threading
from contextlib import asynccontextmanager, contextmanager
from datetime import datetime
from pathlib import Path
from typing import Any, AsyncIterator, Dict, Iterator, Optional, Set

from fastapi import FastAPI, HTTPException, Query, Request
from fastapi.middleware.cors import CORSMiddleware
from pydantic import BaseModel, ConfigDict, Field, field_validator

from . import __version__
from .aggregation import (
    Denominator,
    RateCatalog,
    WindowSummary,
    activity_summary,
    category_breakdown,
    dashboard,
    project_summary,
)
from .config import (
    INACTIVITY_INTERVAL_OPTIONS,
    LONG_SESSION_INTERVAL_OPTIONS,
    AppSettings,
    ReminderSettings,
    snap_interval,
)
from .db import SQLiteSessionStore
from .errors import InvalidTransition, NotFoundError, StorageError, ValueTimeError
from .lifecycle import Clock, SessionLifecycle, SessionSnapshot
from .models import Activity, ActivityCategory, ActivitySession, BudgetType, Project
from .notifications import LoggingNotificationScheduler, NotificationScheduler, ReminderAction
from .paths import resolve_db_path
from .scheduling import TaskFactory, start_repeating
from .timemath import to_naive_local

logger = logging.getLogger(__name__)


class TrackerRuntime:
    """Own the store and the session lifecycle for the lifetime of the app."""

    def __init__(
        self,
        db_path: Path,
        settings: Optional[ReminderSettings] = None,
        *,
        notifier: Optional[NotificationScheduler] = None,
        clock: Clock = datetime.now,
        task_factory: TaskFactory = start_repeating,
    ) -> None:
        self._db_path = Path(db_path)
        self._settings = settings
        self._notifier = notifier or LoggingNotificationScheduler()
        self._clock = clock
        self._task_factory = task_factory
        self._lock = threading.Lock()
        self._store: Optional[SQLiteSessionStore] = None
        self._lifecycle: Optional[SessionLifecycle] = None

    @property
    def db_path(self) -> Path:
        return self._db_path

    @property
    def store(self) -> SQLiteSessionStore:
        if self._store is None:
            raise RuntimeError("Tracker runtime is not started")
        return self._store

    @property
    def lifecycle(self) -> SessionLifecycle:
        if self._lifecycle is None:
            raise RuntimeError("Tracker runtime is not started")
        return self._lifecycle

    def start(self) -> None:
        with self._lock:
            if self._lifecycle is not None:
                return
            store = SQLiteSessionStore(self._db_path)
            settings = self._settings or ReminderSettings.load(store)
            lifecycle = SessionLifecycle(
                store,
                self._notifier,
                settings,
                clock=self._clock,
                task_factory=self._task_factory,
            )
            lifecycle.recover()
            self._store = store
            self._lifecycle = lifecycle
            logger.info("Tracker runtime started on %s", self._db_path)

    def stop(self) -> None:
        with self._lock:
            if self._lifecycle is None or self._store is None:
                return
            self._lifecycle.shutdown()
            self._store.close()
            self._lifecycle = None
            self._store = None
            logger.info("Tracker runtime stopped.")


def _as_local_time(value: Optional[datetime]) -> Optional[datetime]:
    return to_naive_local(value) if value is not None else None


class StartPayload(BaseModel):
    activity_id: int

    model_config = ConfigDict(extra="forbid")


class ResumePayload(BaseModel):
    session_id: Optional[int] = None

    model_config = ConfigDict(extra="forbid")


class StopPayload(BaseModel):
    note: Optional[str] = None

    model_config = ConfigDict(extra="forbid")


class VisibilityPayload(BaseModel):
    foreground: bool

    model_config = ConfigDict(extra="forbid")


class ActivityPayload(BaseModel):
    name: str = Field(..., min_length=1, max_length=200)
    category: ActivityCategory = ActivityCategory.OTHER
    hourly_rate: float = Field(0.0, ge=0)
    project_id: Optional[int] = None
    color: str = "#4285F4"
    icon: str = "clock"

    model_config = ConfigDict(extra="forbid")


class ProjectPayload(BaseModel):
    name: str = Field(..., min_length=1, max_length=200)
    hourly_rate: float = Field(0.0, ge=0)
    budget_type: BudgetType = BudgetType.HOURLY
    budget: float = Field(0.0, ge=0)
    start_date: Optional[datetime] = None
    end_date: Optional[datetime] = None
    color: str = "#4285F4"

    model_config = ConfigDict(extra="forbid")

    local_dates = field_validator("start_date", "end_date")(_as_local_time)


class ActivityUpdatePayload(BaseModel):
    name: Optional[str] = Field(None, min_length=1, max_length=200)
    category: Optional[ActivityCategory] = None
    hourly_rate: Optional[float] = Field(None, ge=0)
    project_id: Optional[int] = None
    color: Optional[str] = None
    icon: Optional[str] = None

    model_config = ConfigDict(extra="forbid")


class ProjectUpdatePayload(BaseModel):
    name: Optional[str] = Field(None, min_length=1, max_length=200)
    hourly_rate: Optional[float] = Field(None, ge=0)
    budget_type: Optional[BudgetType] = None
    budget: Optional[float] = Field(None, ge=0)
    start_date: Optional[datetime] = None
    end_date: Optional[datetime] = None
    color: Optional[str] = None

    model_config = ConfigDict(extra="forbid")

    local_dates = field_validator("start_date", "end_date")(_as_local_time)


class SessionPayload(BaseModel):
    activity_id: int
    start_time: datetime
    end_time: datetime
    note: Optional[str] = None

    model_config = ConfigDict(extra="forbid")

    local_times = field_validator("start_time", "end_time")(_as_local_time)


class SessionUpdatePayload(BaseModel):
    start_time: Optional[datetime] = None
    end_time: Optional[datetime] = None
    note: Optional[str] = None

    model_config = ConfigDict(extra="forbid")

    local_times = field_validator("start_time", "end_time")(_as_local_time)


class SettingsPayload(BaseModel):
    """Partial settings change; interval minutes snap to the nearest preset."""

    inactivity_enabled: Optional[bool] = None
    inactivity_minutes: Optional[float] = Field(None, gt=0)
    long_session_enabled: Optional[bool] = None
    long_session_minutes: Optional[float] = Field(None, gt=0)
    preferred_currency: Optional[str] = Field(None, min_length=1, max_length=8)
    default_hourly_rate: Optional[float] = Field(None, ge=0)
    tracking_start_date: Optional[datetime] = None

    model_config = ConfigDict(extra="forbid")

    local_dates = field_validator("tracking_start_date")(_as_local_time)


def create_app(
    *,
    db_path: Optional[Path] = None,
    settings: Optional[ReminderSettings] = None,
    runtime: Optional[TrackerRuntime] = None,
) -> FastAPI:
    """Instantiate the FastAPI application."""
    runtime = runtime or TrackerRuntime(resolve_db_path(db_path), settings)

    @asynccontextmanager
    async def lifespan(app: FastAPI) -> AsyncIterator[None]:
        runtime.start()
        try:
            yield
        finally:
            runtime.stop()

    app = FastAPI(title="Value Time", version=__version__, lifespan=lifespan)
    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_methods=["*"],
        allow_headers=["*"],
    )
    app.state.runtime = runtime

    @app.get("/api/status")
    def status(request: Request) -> Dict[str, Any]:
        lifecycle = _runtime(request).lifecycle
        reminders = lifecycle.settings
        return {
            "tracking": _snapshot_payload(lifecycle.snapshot()),
            "foreground": lifecycle.is_foreground,
            "database_path": str(_runtime(request).db_path),
            "reminders": {
                "inactivity_enabled": reminders.inactivity_enabled,
                "inactivity_seconds": reminders.inactivity_interval.total_seconds(),
                "long_session_enabled": reminders.long_session_enabled,
                "long_session_seconds": reminders.long_session_interval.total_seconds(),
            },
        }

    @app.post("/api/start")
    def start(payload: StartPayload, request: Request) -> Dict[str, Any]:
        lifecycle = _runtime(request).lifecycle
        with _http_errors():
            snapshot = lifecycle.start(payload.activity_id)
        return {"tracking": _snapshot_payload(snapshot)}

    @app.post("/api/pause")
    def pause(request: Request) -> Dict[str, Any]:
        lifecycle = _runtime(request).lifecycle
        with _http_errors():
            applied = lifecycle.pause()
        return {"applied": applied, "tracking": _snapshot_payload(lifecycle.snapshot())}

    @app.post("/api/resume")
    def resume(request: Request, payload: Optional[ResumePayload] = None) -> Dict[str, Any]:
        lifecycle = _runtime(request).lifecycle
        with _http_errors():
            if payload is not None and payload.session_id is not None:
                applied = lifecycle.resume_session(payload.session_id)
            else:
                applied = lifecycle.resume()
        return {"applied": applied, "tracking": _snapshot_payload(lifecycle.snapshot())}

    @app.post("/api/stop")
    def stop(request: Request, payload: Optional[StopPayload] = None) -> Dict[str, Any]:
        lifecycle = _runtime(request).lifecycle
        with _http_errors():
            closed = lifecycle.stop(payload.note if payload else None)
        return {
            "session": _session_payload(closed) if closed else None,
            "tracking": _snapshot_payload(lifecycle.snapshot()),
        }

    @app.get("/api/paused-sessions")
    def paused_sessions(request: Request) -> Dict[str, Any]:
        with _http_errors():
            sessions = _runtime(request).lifecycle.paused_sessions()
        return {"sessions": [_session_payload(session) for session in sessions]}

    @app.post("/api/reminders/{action}")
    def reminder_action(action: str, request: Request) -> Dict[str, Any]:
        try:
            parsed = ReminderAction(action)
        except ValueError as exc:
            raise HTTPException(status_code=400, detail=f"Unknown action {action!r}") from exc
        lifecycle = _runtime(request).lifecycle
        with _http_errors():
            applied = lifecycle.handle_reminder_action(parsed)
        return {"applied": applied, "tracking": _snapshot_payload(lifecycle.snapshot())}

    @app.post("/api/visibility")
    def visibility(payload: VisibilityPayload, request: Request) -> Dict[str, Any]:
        lifecycle = _runtime(request).lifecycle
        if payload.foreground:
            snapshot = lifecycle.enter_foreground()
        else:
            lifecycle.enter_background()
            snapshot = lifecycle.snapshot()
        return {"foreground": lifecycle.is_foreground, "tracking": _snapshot_payload(snapshot)}

    @app.get("/api/dashboard")
    def dashboard_endpoint(
        request: Request,
        tracked_only: bool = Query(
            default=False,
            description="Divide earnings by tracked hours instead of all hours.",
        ),
    ) -> Dict[str, Any]:
        runtime = _runtime(request)
        store = runtime.store
        denominator = Denominator.TRACKED_ONLY if tracked_only else Denominator.ALL_HOURS
        with _http_errors():
            snapshot = runtime.lifecycle.snapshot()
            now = snapshot.taken_at
            sessions = store.get_closed_sessions()
            catalog = RateCatalog.build(store.list_activities(), store.list_projects())
            currency = store.get_user().preferred_currency
        summaries = dashboard(sessions, catalog, now, denominator)
        categories = category_breakdown(sessions, catalog, now)
        return {
            "as_of": now.isoformat(),
            "currency": currency,
            "denominator": denominator.value,
            "tracking": _snapshot_payload(snapshot),
            "windows": [_summary_payload(summary) for summary in summaries],
            "idle_seconds_today": summaries[0].idle_seconds,
            "categories": [
                {
                    "category": item.category.value,
                    "total_seconds": item.total_seconds,
                    "total_earnings": item.total_earnings,
                    "effective_hourly_worth": item.effective_hourly_worth,
                    "session_count": item.session_count,
                    "activity_count": item.activity_count,
                }
                for item in categories
            ],
        }

    @app.get("/api/activities")
    def list_activities(request: Request) -> Dict[str, Any]:
        with _http_errors():
            activities = _runtime(request).store.list_activities()
        return {"activities": [_activity_payload(activity) for activity in activities]}

    @app.post("/api/activities")
    def create_activity(payload: ActivityPayload, request: Request) -> Dict[str, Any]:
        with _http_errors():
            activity = _runtime(request).store.create_activity(
                Activity(id=None, **payload.model_dump())
            )
        return {"activity": _activity_payload(activity)}

    @app.get("/api/activities/{activity_id}/summary")
    def get_activity_summary(activity_id: int, request: Request) -> Dict[str, Any]:
        store = _runtime(request).store
        with _http_errors():
            activity = store.get_activity(activity_id)
            sessions = store.get_sessions_for_activity(activity_id)
            catalog = RateCatalog.build(store.list_activities(), store.list_projects())
        summary = activity_summary(activity, sessions, catalog)
        return {
            "activity": _activity_payload(activity),
            "session_count": summary.session_count,
            "total_seconds": summary.total_seconds,
            "earnings": summary.earnings,
            "effective_hourly_worth": summary.effective_hourly_worth,
            "sessions": [_session_payload(session) for session in sessions],
        }

    @app.delete("/api/activities/{activity_id}")
    def delete_activity(activity_id: int, request: Request) -> Dict[str, Any]:
        runtime = _runtime(request)
        with _http_errors():
            runtime.store.get_activity(activity_id)
            if runtime.lifecycle.snapshot().activity_id == activity_id:
                runtime.lifecycle.stop()
            runtime.store.delete_activity(activity_id)
        return {"deleted": activity_id}

    @app.put("/api/activities/{activity_id}")
    def update_activity(
        activity_id: int, payload: ActivityUpdatePayload, request: Request
    ) -> Dict[str, Any]:
        runtime = _runtime(request)
        with _http_errors():
            activity = runtime.store.get_activity(activity_id)
            for name, value in _changes(payload, nullable={"project_id"}).items():
                setattr(activity, name, value)
            runtime.store.update_activity(activity)
            snapshot = runtime.lifecycle.refresh_activity()
        return {"activity": _activity_payload(activity), "tracking": _snapshot_payload(snapshot)}

    @app.get("/api/projects")
    def list_projects(request: Request) -> Dict[str, Any]:
        with _http_errors():
            projects = _runtime(request).store.list_projects()
        return {"projects": [_project_payload(project) for project in projects]}

    @app.post("/api/projects")
    def create_project(payload: ProjectPayload, request: Request) -> Dict[str, Any]:
        with _http_errors():
            project = _runtime(request).store.create_project(
                Project(id=None, **payload.model_dump())
            )
        return {"project": _project_payload(project)}

    @app.get("/api/projects/{project_id}/summary")
    def get_project_summary(project_id: int, request: Request) -> Dict[str, Any]:
        store = _runtime(request).store
        with _http_errors():
            project = store.get_project(project_id)
            sessions = store.get_sessions_for_project(project_id)
        summary = project_summary(project, sessions)
        return {
            "project": _project_payload(project),
            "total_seconds": summary.total_seconds,
            "earnings": summary.earnings,
            "effective_hourly_rate": summary.effective_hourly_rate,
            "budget_percentage": summary.budget_percentage,
            "budget_remaining_seconds": summary.budget_remaining_seconds,
        }

    @app.delete("/api/projects/{project_id}")
    def delete_project(project_id: int, request: Request) -> Dict[str, Any]:
        runtime = _runtime(request)
        with _http_errors():
            runtime.store.get_project(project_id)
            current = runtime.lifecycle.snapshot().activity_id
            if current is not None and runtime.store.get_activity(current).project_id == project_id:
                runtime.lifecycle.stop()
            runtime.store.delete_project(project_id)
        return {"deleted": project_id}

    @app.put("/api/projects/{project_id}")
    def update_project(
        project_id: int, payload: ProjectUpdatePayload, request: Request
    ) -> Dict[str, Any]:
        runtime = _runtime(request)
        with _http_errors():
            project = runtime.store.get_project(project_id)
            for name, value in _changes(payload, nullable={"start_date", "end_date"}).items():
                setattr(project, name, value)
            runtime.store.update_project(project)
            snapshot = runtime.lifecycle.refresh_activity()
        return {"project": _project_payload(project), "tracking": _snapshot_payload(snapshot)}

    @app.post("/api/sessions")
    def add_session(payload: SessionPayload, request: Request) -> Dict[str, Any]:
        with _http_errors():
            session = _runtime(request).store.add_session(
                payload.activity_id, payload.start_time, payload.end_time, payload.note
            )
        return {"session": _session_payload(session)}

    @app.put("/api/sessions/{session_id}")
    def edit_session(
        session_id: int, payload: SessionUpdatePayload, request: Request
    ) -> Dict[str, Any]:
        changes = _changes(payload, nullable={"note"})
        with _http_errors():
            session = _runtime(request).store.edit_session(session_id, **changes)
        return {"session": _session_payload(session)}

    @app.delete("/api/sessions/{session_id}")
    def delete_session(session_id: int, request: Request) -> Dict[str, Any]:
        runtime = _runtime(request)
        with _http_errors():
            runtime.store.get_session(session_id)
            if runtime.lifecycle.snapshot().session_id == session_id:
                runtime.lifecycle.stop()
            runtime.store.delete_session(session_id)
        return {"deleted": session_id}

    @app.get("/api/settings")
    def get_settings(request: Request) -> Dict[str, Any]:
        runtime = _runtime(request)
        with _http_errors():
            prefs = AppSettings.load(runtime.store)
        return _settings_payload(runtime.lifecycle.settings, prefs)

    @app.put("/api/settings")
    def update_settings(payload: SettingsPayload, request: Request) -> Dict[str, Any]:
        runtime = _runtime(request)
        with _http_errors():
            reminders = ReminderSettings.load(runtime.store)
            if payload.inactivity_enabled is not None:
                reminders.inactivity_enabled = payload.inactivity_enabled
            if payload.inactivity_minutes is not None:
                reminders.inactivity_interval = snap_interval(
                    INACTIVITY_INTERVAL_OPTIONS, payload.inactivity_minutes
                )
            if payload.long_session_enabled is not None:
                reminders.long_session_enabled = payload.long_session_enabled
            if payload.long_session_minutes is not None:
                reminders.long_session_interval = snap_interval(
                    LONG_SESSION_INTERVAL_OPTIONS, payload.long_session_minutes
                )
            prefs = AppSettings.load(runtime.store)
            if payload.preferred_currency is not None:
                prefs.preferred_currency = payload.preferred_currency
            if payload.default_hourly_rate is not None:
                prefs.default_hourly_rate = payload.default_hourly_rate
            if payload.tracking_start_date is not None:
                prefs.tracking_start_date = payload.tracking_start_date
            with runtime.store.atomic():
                reminders.save(runtime.store)
                prefs.save(runtime.store)
            runtime.lifecycle.update_settings(reminders)
            runtime.lifecycle.refresh_activity()
        logger.info("Settings updated")
        return _settings_payload(reminders, prefs)

    return app


def _runtime(request: Request) -> TrackerRuntime:
    return request.app.state.runtime


def _changes(payload: BaseModel, nullable: Set[str] = frozenset()) -> Dict[str, Any]:
    """Fields the client sent; explicit nulls only count for ``nullable`` ones."""
    return {
        name: value
        for name, value in payload.model_dump(exclude_unset=True).items()
        if value is not None or name in nullable
    }


@contextmanager
def _http_errors() -> Iterator[None]:
    """Translate tracker errors into HTTP errors."""
    try:
        yield
    except NotFoundError as exc:
        raise HTTPException(status_code=404, detail=str(exc)) from exc
    except InvalidTransition as exc:
        raise HTTPException(status_code=409, detail=str(exc)) from exc
    except StorageError as exc:
        raise HTTPException(status_code=503, detail="Storage unavailable") from exc
    except ValueTimeError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc


def _isoformat(value: Optional[datetime]) -> Optional[str]:
    return value.isoformat() if value else None


def _snapshot_payload(snapshot: SessionSnapshot) -> Dict[str, Any]:
    return {
        "state": snapshot.state.value,
        "session_id": snapshot.session_id,
        "activity_id": snapshot.activity_id,
        "activity_name": snapshot.activity_name,
        "start_time": _isoformat(snapshot.start_time),
        "pause_time": _isoformat(snapshot.pause_time),
        "hourly_rate": snapshot.hourly_rate,
        "elapsed_seconds": snapshot.elapsed_seconds,
        "earnings": snapshot.earnings,
    }


def _session_payload(session: ActivitySession) -> Dict[str, Any]:
    return {
        "id": session.id,
        "activity_id": session.activity_id,
        "start_time": session.start_time.isoformat(),
        "end_time": _isoformat(session.end_time),
        "is_paused": session.is_paused,
        "pause_time": _isoformat(session.pause_time),
        "note": session.note,
        "duration_seconds": session.duration_seconds,
    }


def _activity_payload(activity: Activity) -> Dict[str, Any]:
    return {
        "id": activity.id,
        "name": activity.name,
        "category": activity.category.value,
        "hourly_rate": activity.hourly_rate,
        "project_id": activity.project_id,
        "color": activity.color,
        "icon": activity.icon,
    }


def _project_payload(project: Project) -> Dict[str, Any]:
    return {
        "id": project.id,
        "name": project.name,
        "hourly_rate": project.hourly_rate,
        "budget_type": project.budget_type.value,
        "budget": project.budget,
        "start_date": _isoformat(project.start_date),
        "end_date": _isoformat(project.end_date),
        "color": project.color,
    }


def _summary_payload(summary: WindowSummary) -> Dict[str, Any]:
    return {
        "window": summary.window.value,
        "start": summary.start.isoformat(),
        "end": summary.end.isoformat(),
        "session_count": summary.session_count,
        "tracked_seconds": summary.tracked_seconds,
        "earnings": summary.earnings,
        "available_seconds": summary.available_seconds,
        "denominator_seconds": summary.denominator_seconds,
        "average_hourly_worth": summary.average_hourly_worth,
        "idle_seconds": summary.idle_seconds,
    }


def _settings_payload(reminders: ReminderSettings, prefs: AppSettings) -> Dict[str, Any]:
    return {
        "inactivity_enabled": reminders.inactivity_enabled,
        "inactivity_minutes": reminders.inactivity_interval.total_seconds() / 60,
        "long_session_enabled": reminders.long_session_enabled,
        "long_session_minutes": reminders.long_session_interval.total_seconds() / 60,
        "preferred_currency": prefs.preferred_currency,
        "default_hourly_rate": prefs.default_hourly_rate,
        "tracking_start_date": prefs.tracking_start_date.isoformat(),
    }
