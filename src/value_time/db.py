"""SQLite persistence for projects, activities, sessions and settings."""

from __future__ import annotations

import json
import logging
import sqlite3
import threading
from contextlib import contextmanager
from datetime import datetime
from pathlib import Path
from typing import Any, Iterator, Optional, Union

from .errors import (
    ActivityNotFound,
    InvalidProject,
    InvalidSession,
    ProjectNotFound,
    SessionNotFound,
    StorageError,
)
from .models import (
    Activity,
    ActivityCategory,
    ActivitySession,
    BudgetType,
    Project,
    UserProfile,
)
from .timemath import to_naive_local

logger = logging.getLogger(__name__)

DATETIME_FMT = "%Y-%m-%d %H:%M:%S.%f"

_UNSET: Any = object()


def open_database(
    path: Union[Path, str], *, check_same_thread: bool = True
) -> sqlite3.Connection:
    """Open (and initialize) the SQLite database."""
    conn = sqlite3.connect(
        path,
        isolation_level=None,
        check_same_thread=check_same_thread,
    )
    conn.row_factory = sqlite3.Row
    enable_foreign_keys(conn)
    initialize_schema(conn)
    return conn


def enable_foreign_keys(conn: sqlite3.Connection) -> None:
    conn.execute("PRAGMA foreign_keys = ON;")


def initialize_schema(conn: sqlite3.Connection) -> None:
    conn.executescript(
        """
        CREATE TABLE IF NOT EXISTS users (
            id INTEGER PRIMARY KEY,
            name TEXT NOT NULL,
            default_hourly_rate REAL NOT NULL DEFAULT 25.0,
            preferred_currency TEXT NOT NULL DEFAULT 'USD'
        );

        CREATE TABLE IF NOT EXISTS projects (
            id INTEGER PRIMARY KEY,
            name TEXT NOT NULL,
            hourly_rate REAL NOT NULL DEFAULT 0,
            budget_type TEXT NOT NULL DEFAULT 'hourly',
            budget REAL NOT NULL DEFAULT 0,
            start_date TEXT,
            end_date TEXT,
            color TEXT NOT NULL DEFAULT '#4285F4'
        );

        CREATE TABLE IF NOT EXISTS activities (
            id INTEGER PRIMARY KEY,
            name TEXT NOT NULL,
            category TEXT NOT NULL DEFAULT 'other',
            hourly_rate REAL NOT NULL DEFAULT 0,
            project_id INTEGER REFERENCES projects(id) ON DELETE CASCADE,
            color TEXT NOT NULL DEFAULT '#4285F4',
            icon TEXT NOT NULL DEFAULT 'clock'
        );

        CREATE TABLE IF NOT EXISTS activity_sessions (
            id INTEGER PRIMARY KEY,
            activity_id INTEGER NOT NULL
                REFERENCES activities(id) ON DELETE CASCADE,
            start_time TEXT NOT NULL,
            end_time TEXT,
            is_paused INTEGER NOT NULL DEFAULT 0,
            pause_time TEXT,
            note TEXT
        );

        CREATE INDEX IF NOT EXISTS idx_sessions_start_time
            ON activity_sessions(start_time);

        CREATE INDEX IF NOT EXISTS idx_sessions_open
            ON activity_sessions(end_time) WHERE end_time IS NULL;

        CREATE TABLE IF NOT EXISTS settings (
            key TEXT PRIMARY KEY,
            value TEXT NOT NULL
        );
        """
    )


def format_datetime(value: Optional[datetime]) -> Optional[str]:
    """Serialize ``value`` as naive local time."""
    if value is None:
        return None
    return to_naive_local(value).strftime(DATETIME_FMT)


def parse_datetime(value: Optional[str]) -> Optional[datetime]:
    return datetime.strptime(value, DATETIME_FMT) if value else None


def row_to_project(row: sqlite3.Row) -> Project:
    return Project(
        id=row["id"],
        name=row["name"],
        hourly_rate=row["hourly_rate"],
        budget_type=BudgetType(row["budget_type"]),
        budget=row["budget"],
        start_date=parse_datetime(row["start_date"]),
        end_date=parse_datetime(row["end_date"]),
        color=row["color"],
    )


def row_to_activity(row: sqlite3.Row) -> Activity:
    return Activity(
        id=row["id"],
        name=row["name"],
        category=ActivityCategory(row["category"]),
        hourly_rate=row["hourly_rate"],
        project_id=row["project_id"],
        color=row["color"],
        icon=row["icon"],
    )


def row_to_session(row: sqlite3.Row) -> ActivitySession:
    return ActivitySession(
        id=row["id"],
        activity_id=row["activity_id"],
        start_time=datetime.strptime(row["start_time"], DATETIME_FMT),
        end_time=parse_datetime(row["end_time"]),
        is_paused=bool(row["is_paused"]),
        pause_time=parse_datetime(row["pause_time"]),
        note=row["note"],
    )


def _check_project_dates(project: Project) -> None:
    if project.start_date is not None:
        project.start_date = to_naive_local(project.start_date)
    if project.end_date is not None:
        project.end_date = to_naive_local(project.end_date)
    if project.start_date and project.end_date and project.end_date < project.start_date:
        raise InvalidProject("end date must not be before start date")


_SESSION_COLUMNS = "id, activity_id, start_time, end_time, is_paused, pause_time, note"


class SQLiteSessionStore:
    """Store for tracking data backed by a single SQLite connection.

    Every public call is serialized through one re-entrant lock so the store
    can be shared between the web worker threads and the lifecycle's timer
    threads. Failures are logged, rolled back and re-raised as
    :class:`StorageError`.
    """

    def __init__(self, db_path: Union[Path, str]) -> None:
        self.db_path = db_path
        self._lock = threading.RLock()
        with self._translate_errors("open database"):
            self._conn = open_database(db_path, check_same_thread=False)

    def close(self) -> None:
        with self._lock:
            self._conn.close()

    # -- plumbing -----------------------------------------------------------

    @contextmanager
    def _translate_errors(self, action: str) -> Iterator[None]:
        try:
            yield
        except sqlite3.Error as exc:
            logger.exception("Database operation failed: %s", action)
            raise StorageError(f"{action} failed: {exc}") from exc

    @contextmanager
    def atomic(self) -> Iterator[None]:
        """Run the enclosed calls as one transaction.

        Nested use joins the outer transaction.
        """
        with self._lock:
            if self._conn.in_transaction:
                yield
                return
            with self._translate_errors("begin transaction"):
                self._conn.execute("BEGIN IMMEDIATE")
            try:
                yield
            except BaseException:
                self._conn.rollback()
                logger.debug("Transaction rolled back")
                raise
            with self._translate_errors("commit"):
                self._conn.commit()

    def _execute(self, action: str, sql: str, params: tuple | list = ()) -> sqlite3.Cursor:
        with self._lock, self._translate_errors(action):
            return self._conn.execute(sql, params)

    def _fetchall(self, action: str, sql: str, params: tuple | list = ()) -> list[sqlite3.Row]:
        with self._lock, self._translate_errors(action):
            return list(self._conn.execute(sql, params))

    def _fetchone(self, action: str, sql: str, params: tuple | list = ()) -> Optional[sqlite3.Row]:
        with self._lock, self._translate_errors(action):
            return self._conn.execute(sql, params).fetchone()

    # -- sessions -----------------------------------------------------------

    def create_session(self, activity_id: int, start_time: datetime) -> int:
        self.get_activity(activity_id)
        cur = self._execute(
            "create session",
            """
            INSERT INTO activity_sessions (activity_id, start_time, is_paused)
            VALUES (?, ?, 0)
            """,
            (activity_id, format_datetime(start_time)),
        )
        return int(cur.lastrowid)

    def update_session(
        self,
        session_id: int,
        *,
        start_time: Optional[datetime] = None,
        is_paused: Optional[bool] = None,
        pause_time: Optional[datetime] = _UNSET,
    ) -> None:
        """Partially update an open session.

        Clearing the paused flag also clears the pause instant.
        """
        fields: list[str] = []
        params: list[object] = []

        if start_time is not None:
            fields.append("start_time = ?")
            params.append(format_datetime(start_time))
        if is_paused is not None:
            fields.append("is_paused = ?")
            params.append(1 if is_paused else 0)
        if is_paused is False:
            fields.append("pause_time = NULL")
        elif pause_time is not _UNSET:
            fields.append("pause_time = ?")
            params.append(format_datetime(pause_time))

        if not fields:
            return

        params.append(session_id)
        cur = self._execute(
            "update session",
            f"UPDATE activity_sessions SET {', '.join(fields)} WHERE id = ?",
            params,
        )
        if cur.rowcount == 0:
            raise SessionNotFound(session_id)

    def end_session(
        self, session_id: int, end_time: datetime, note: Optional[str] = None
    ) -> None:
        cur = self._execute(
            "end session",
            """
            UPDATE activity_sessions
            SET end_time = ?, note = ?, is_paused = 0, pause_time = NULL
            WHERE id = ?
            """,
            (format_datetime(end_time), note, session_id),
        )
        if cur.rowcount == 0:
            raise SessionNotFound(session_id)

    def get_session(self, session_id: int) -> ActivitySession:
        row = self._fetchone(
            "get session",
            f"SELECT {_SESSION_COLUMNS} FROM activity_sessions WHERE id = ?",
            (session_id,),
        )
        if row is None:
            raise SessionNotFound(session_id)
        return row_to_session(row)

    def get_open_sessions(self) -> list[ActivitySession]:
        """Sessions without an end time, most recently started first."""
        rows = self._fetchall(
            "get open sessions",
            f"""
            SELECT {_SESSION_COLUMNS} FROM activity_sessions
            WHERE end_time IS NULL
            ORDER BY start_time DESC, id DESC
            """,
        )
        return [row_to_session(row) for row in rows]

    def get_paused_sessions(self) -> list[ActivitySession]:
        return [session for session in self.get_open_sessions() if session.is_paused]

    def get_sessions_in_window(self, start: datetime, end: datetime) -> list[ActivitySession]:
        """Sessions overlapping ``[start, end]``, oldest first."""
        rows = self._fetchall(
            "get sessions in window",
            f"""
            SELECT {_SESSION_COLUMNS} FROM activity_sessions
            WHERE start_time <= ? AND (end_time IS NULL OR end_time >= ?)
            ORDER BY start_time
            """,
            (format_datetime(end), format_datetime(start)),
        )
        return [row_to_session(row) for row in rows]

    def get_closed_sessions(self) -> list[ActivitySession]:
        rows = self._fetchall(
            "get closed sessions",
            f"""
            SELECT {_SESSION_COLUMNS} FROM activity_sessions
            WHERE end_time IS NOT NULL
            ORDER BY start_time
            """,
        )
        return [row_to_session(row) for row in rows]

    def get_sessions_for_activity(self, activity_id: int) -> list[ActivitySession]:
        rows = self._fetchall(
            "get sessions for activity",
            f"""
            SELECT {_SESSION_COLUMNS} FROM activity_sessions
            WHERE activity_id = ?
            ORDER BY start_time DESC
            """,
            (activity_id,),
        )
        return [row_to_session(row) for row in rows]

    def get_sessions_for_project(self, project_id: int) -> list[ActivitySession]:
        rows = self._fetchall(
            "get sessions for project",
            """
            SELECT s.id, s.activity_id, s.start_time, s.end_time,
                   s.is_paused, s.pause_time, s.note
            FROM activity_sessions AS s
            JOIN activities AS a ON a.id = s.activity_id
            WHERE a.project_id = ?
            ORDER BY s.start_time DESC
            """,
            (project_id,),
        )
        return [row_to_session(row) for row in rows]

    def add_session(
        self,
        activity_id: int,
        start_time: datetime,
        end_time: datetime,
        note: Optional[str] = None,
    ) -> ActivitySession:
        """Record a finished session after the fact."""
        start_time = to_naive_local(start_time)
        end_time = to_naive_local(end_time)
        if end_time <= start_time:
            raise InvalidSession("end time must be after start time")
        with self.atomic():
            self.get_activity(activity_id)
            cur = self._execute(
                "add session",
                """
                INSERT INTO activity_sessions (activity_id, start_time, end_time, is_paused, note)
                VALUES (?, ?, ?, 0, ?)
                """,
                (activity_id, format_datetime(start_time), format_datetime(end_time), note or None),
            )
        logger.info("Added session for activity %s", activity_id)
        return self.get_session(int(cur.lastrowid))

    def edit_session(
        self,
        session_id: int,
        *,
        start_time: Optional[datetime] = None,
        end_time: Optional[datetime] = None,
        note: Optional[str] = _UNSET,
    ) -> ActivitySession:
        """Change the times or note of a finished session.

        Open sessions belong to the lifecycle and are rejected here. An empty
        note clears it.
        """
        with self.atomic():
            session = self.get_session(session_id)
            if session.is_open:
                raise InvalidSession(f"session {session_id} is still open")
            if start_time is not None:
                session.start_time = to_naive_local(start_time)
            if end_time is not None:
                session.end_time = to_naive_local(end_time)
            if note is not _UNSET:
                session.note = note or None
            if session.end_time <= session.start_time:
                raise InvalidSession("end time must be after start time")
            self._execute(
                "edit session",
                "UPDATE activity_sessions SET start_time = ?, end_time = ?, note = ? WHERE id = ?",
                (
                    format_datetime(session.start_time),
                    format_datetime(session.end_time),
                    session.note,
                    session_id,
                ),
            )
        return session

    def delete_session(self, session_id: int) -> None:
        cur = self._execute(
            "delete session", "DELETE FROM activity_sessions WHERE id = ?", (session_id,)
        )
        if cur.rowcount == 0:
            raise SessionNotFound(session_id)

    # -- user ---------------------------------------------------------------

    def get_user(self) -> UserProfile:
        """Return the single user profile, creating the default on first read."""
        with self._lock:
            row = self._fetchone(
                "get user",
                "SELECT id, name, default_hourly_rate, preferred_currency "
                "FROM users ORDER BY id LIMIT 1",
            )
            if row is None:
                default = UserProfile(id=None)
                cur = self._execute(
                    "create default user",
                    """
                    INSERT INTO users (name, default_hourly_rate, preferred_currency)
                    VALUES (?, ?, ?)
                    """,
                    (default.name, default.default_hourly_rate, default.preferred_currency),
                )
                default.id = int(cur.lastrowid)
                logger.info("Created default user profile")
                return default
        return UserProfile(
            id=row["id"],
            name=row["name"],
            default_hourly_rate=row["default_hourly_rate"],
            preferred_currency=row["preferred_currency"],
        )

    def update_user(
        self,
        *,
        name: Optional[str] = None,
        default_hourly_rate: Optional[float] = None,
        preferred_currency: Optional[str] = None,
    ) -> UserProfile:
        with self._lock:
            user = self.get_user()
            if name is not None:
                user.name = name
            if default_hourly_rate is not None:
                user.default_hourly_rate = default_hourly_rate
            if preferred_currency is not None:
                user.preferred_currency = preferred_currency
            self._execute(
                "update user",
                """
                UPDATE users
                SET name = ?, default_hourly_rate = ?, preferred_currency = ?
                WHERE id = ?
                """,
                (user.name, user.default_hourly_rate, user.preferred_currency, user.id),
            )
        return user

    # -- projects -----------------------------------------------------------

    def create_project(self, project: Project) -> Project:
        _check_project_dates(project)
        cur = self._execute(
            "create project",
            """
            INSERT INTO projects (
                name, hourly_rate, budget_type, budget, start_date, end_date, color
            ) VALUES (?, ?, ?, ?, ?, ?, ?)
            """,
            (
                project.name,
                project.hourly_rate,
                BudgetType(project.budget_type).value,
                project.budget,
                format_datetime(project.start_date),
                format_datetime(project.end_date),
                project.color,
            ),
        )
        project.id = int(cur.lastrowid)
        return project

    def get_project(self, project_id: int) -> Project:
        row = self._fetchone(
            "get project", "SELECT * FROM projects WHERE id = ?", (project_id,)
        )
        if row is None:
            raise ProjectNotFound(project_id)
        return row_to_project(row)

    def list_projects(self) -> list[Project]:
        rows = self._fetchall("list projects", "SELECT * FROM projects ORDER BY name")
        return [row_to_project(row) for row in rows]

    def update_project(self, project: Project) -> None:
        _check_project_dates(project)
        cur = self._execute(
            "update project",
            """
            UPDATE projects
            SET name = ?, hourly_rate = ?, budget_type = ?, budget = ?,
                start_date = ?, end_date = ?, color = ?
            WHERE id = ?
            """,
            (
                project.name,
                project.hourly_rate,
                BudgetType(project.budget_type).value,
                project.budget,
                format_datetime(project.start_date),
                format_datetime(project.end_date),
                project.color,
                project.id,
            ),
        )
        if cur.rowcount == 0:
            raise ProjectNotFound(project.id)

    def delete_project(self, project_id: int) -> None:
        """Delete a project together with its activities and their sessions."""
        with self.atomic():
            self._execute(
                "delete project sessions",
                """
                DELETE FROM activity_sessions
                WHERE activity_id IN (SELECT id FROM activities WHERE project_id = ?)
                """,
                (project_id,),
            )
            self._execute(
                "delete project activities",
                "DELETE FROM activities WHERE project_id = ?",
                (project_id,),
            )
            cur = self._execute(
                "delete project", "DELETE FROM projects WHERE id = ?", (project_id,)
            )
            if cur.rowcount == 0:
                raise ProjectNotFound(project_id)

    # -- activities ---------------------------------------------------------

    def create_activity(self, activity: Activity) -> Activity:
        """Insert ``activity``.

        An activity created under a project without a rate of its own
        inherits the project's rate.
        """
        with self._lock:
            if activity.project_id is not None:
                project = self.get_project(activity.project_id)
                if activity.hourly_rate == 0:
                    activity.hourly_rate = project.hourly_rate
            cur = self._execute(
                "create activity",
                """
                INSERT INTO activities (name, category, hourly_rate, project_id, color, icon)
                VALUES (?, ?, ?, ?, ?, ?)
                """,
                (
                    activity.name,
                    ActivityCategory(activity.category).value,
                    activity.hourly_rate,
                    activity.project_id,
                    activity.color,
                    activity.icon,
                ),
            )
        activity.id = int(cur.lastrowid)
        return activity

    def get_activity(self, activity_id: int) -> Activity:
        row = self._fetchone(
            "get activity", "SELECT * FROM activities WHERE id = ?", (activity_id,)
        )
        if row is None:
            raise ActivityNotFound(activity_id)
        return row_to_activity(row)

    def list_activities(self) -> list[Activity]:
        rows = self._fetchall(
            "list activities", "SELECT * FROM activities ORDER BY category, name"
        )
        return [row_to_activity(row) for row in rows]

    def update_activity(self, activity: Activity) -> None:
        with self._lock:
            if activity.project_id is not None:
                self.get_project(activity.project_id)
            cur = self._execute(
                "update activity",
                """
                UPDATE activities
                SET name = ?, category = ?, hourly_rate = ?, project_id = ?, color = ?, icon = ?
                WHERE id = ?
                """,
                (
                    activity.name,
                    ActivityCategory(activity.category).value,
                    activity.hourly_rate,
                    activity.project_id,
                    activity.color,
                    activity.icon,
                    activity.id,
                ),
            )
        if cur.rowcount == 0:
            raise ActivityNotFound(activity.id)

    def delete_activity(self, activity_id: int) -> None:
        """Delete an activity and all of its sessions."""
        with self.atomic():
            self._execute(
                "delete activity sessions",
                "DELETE FROM activity_sessions WHERE activity_id = ?",
                (activity_id,),
            )
            cur = self._execute(
                "delete activity", "DELETE FROM activities WHERE id = ?", (activity_id,)
            )
            if cur.rowcount == 0:
                raise ActivityNotFound(activity_id)

    # -- settings -----------------------------------------------------------

    def get_setting(self, key: str, default: Any = None) -> Any:
        row = self._fetchone("get setting", "SELECT value FROM settings WHERE key = ?", (key,))
        if row is None:
            return default
        return json.loads(row["value"])

    def set_setting(self, key: str, value: Any) -> None:
        self._execute(
            "set setting",
            """
            INSERT INTO settings (key, value) VALUES (?, ?)
            ON CONFLICT(key) DO UPDATE SET value = excluded.value
            """,
            (key, json.dumps(value)),
        )

    def get_settings(self) -> dict[str, Any]:
        rows = self._fetchall("get settings", "SELECT key, value FROM settings ORDER BY key")
        return {row["key"]: json.loads(row["value"]) for row in rows}
