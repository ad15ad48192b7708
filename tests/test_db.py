from datetime import datetime, timedelta, timezone

import pytest

from value_time.db import SQLiteSessionStore, format_datetime, parse_datetime
from value_time.errors import (
    ActivityNotFound,
    InvalidProject,
    InvalidSession,
    NotFoundError,
    ProjectNotFound,
    SessionNotFound,
    StorageError,
)
from value_time.models import Activity, ActivityCategory, BudgetType, Project

START = datetime(2024, 3, 15, 9, 0, 0, 123456)


def test_default_user_is_created_lazily(store):
    user = store.get_user()
    assert user.name == "Default User"
    assert user.default_hourly_rate == 25.0
    assert user.preferred_currency == "USD"
    assert store.get_user().id == user.id


def test_update_user(store):
    store.update_user(default_hourly_rate=40.0, preferred_currency="EUR")
    user = store.get_user()
    assert user.default_hourly_rate == 40.0
    assert user.preferred_currency == "EUR"
    assert user.name == "Default User"


def test_session_round_trip_keeps_microseconds(store, coding):
    session_id = store.create_session(coding.id, START)
    session = store.get_session(session_id)
    assert session.start_time == START
    assert session.is_open
    assert not session.is_paused

    store.end_session(session_id, START + timedelta(minutes=45), note="done")
    closed = store.get_session(session_id)
    assert closed.duration_seconds == 2700
    assert closed.note == "done"


def test_update_session_pause_and_unpause(store, coding):
    session_id = store.create_session(coding.id, START)
    store.update_session(session_id, is_paused=True, pause_time=START + timedelta(minutes=1))
    assert store.get_session(session_id).pause_time == START + timedelta(minutes=1)

    store.update_session(session_id, start_time=START + timedelta(minutes=2), is_paused=False)
    session = store.get_session(session_id)
    assert not session.is_paused
    assert session.pause_time is None
    assert session.start_time == START + timedelta(minutes=2)


def test_create_session_requires_activity(store):
    with pytest.raises(ActivityNotFound):
        store.create_session(42, START)


def test_missing_records_raise_lookup_errors(store):
    with pytest.raises(SessionNotFound):
        store.get_session(1)
    with pytest.raises(ProjectNotFound):
        store.get_project(1)
    with pytest.raises(LookupError):
        store.get_activity(1)
    with pytest.raises(NotFoundError, match="No session found for id=7"):
        store.end_session(7, START)


def test_open_sessions_most_recent_first(store, coding, reading):
    older = store.create_session(coding.id, START)
    newer = store.create_session(reading.id, START + timedelta(hours=1))
    assert [session.id for session in store.get_open_sessions()] == [newer, older]


def test_sessions_in_window_overlap(store, coding):
    before = store.create_session(coding.id, START - timedelta(hours=3))
    store.end_session(before, START - timedelta(hours=2))
    overlapping = store.create_session(coding.id, START - timedelta(minutes=30))
    store.end_session(overlapping, START + timedelta(minutes=30))
    still_open = store.create_session(coding.id, START + timedelta(hours=1))

    found = store.get_sessions_in_window(START, START + timedelta(hours=2))
    assert [session.id for session in found] == [overlapping, still_open]


def test_activity_inherits_project_rate(store):
    project = store.create_project(Project(id=None, name="Client", hourly_rate=80.0))
    activity = store.create_activity(
        Activity(id=None, name="Design", category=ActivityCategory.WORK, project_id=project.id)
    )
    assert activity.hourly_rate == 80.0
    assert store.get_activity(activity.id).project_id == project.id


def test_project_fields_round_trip(store):
    project = store.create_project(
        Project(
            id=None,
            name="Site",
            hourly_rate=50.0,
            budget_type=BudgetType.FIXED,
            budget=1000.0,
            start_date=START,
        )
    )
    loaded = store.get_project(project.id)
    assert loaded.is_fixed_budget
    assert loaded.budget == 1000.0
    assert loaded.start_date == START
    assert loaded.end_date is None


def test_delete_activity_removes_sessions(store, coding):
    session_id = store.create_session(coding.id, START)
    store.delete_activity(coding.id)
    with pytest.raises(SessionNotFound):
        store.get_session(session_id)
    with pytest.raises(ActivityNotFound):
        store.delete_activity(coding.id)


def test_delete_project_cascades(store):
    project = store.create_project(Project(id=None, name="Client", hourly_rate=20.0))
    activity = store.create_activity(Activity(id=None, name="Calls", project_id=project.id))
    other = store.create_activity(Activity(id=None, name="Walk"))
    session_id = store.create_session(activity.id, START)
    kept = store.create_session(other.id, START)

    store.delete_project(project.id)

    assert store.list_projects() == []
    assert [item.id for item in store.list_activities()] == [other.id]
    with pytest.raises(SessionNotFound):
        store.get_session(session_id)
    assert store.get_session(kept).activity_id == other.id


def test_sessions_for_project(store):
    project = store.create_project(Project(id=None, name="Client", hourly_rate=20.0))
    activity = store.create_activity(Activity(id=None, name="Calls", project_id=project.id))
    session_id = store.create_session(activity.id, START)
    assert [session.id for session in store.get_sessions_for_project(project.id)] == [session_id]


def test_atomic_rolls_back_on_error(store, coding):
    with pytest.raises(RuntimeError):
        with store.atomic():
            store.create_session(coding.id, START)
            raise RuntimeError("abort")
    assert store.get_open_sessions() == []


def test_nested_atomic_joins_outer_transaction(store, coding):
    with pytest.raises(RuntimeError):
        with store.atomic():
            with store.atomic():
                store.create_session(coding.id, START)
            raise RuntimeError("abort")
    assert store.get_open_sessions() == []


def test_sqlite_errors_become_storage_errors(store):
    with pytest.raises(StorageError):
        store._execute("broken", "SELECT * FROM missing_table")


def test_unwritable_path_raises_storage_error(tmp_path):
    with pytest.raises(StorageError):
        SQLiteSessionStore(tmp_path / "missing" / "dir" / "db.sqlite3")


def test_settings_store_json_values(store):
    store.set_setting("flag", True)
    store.set_setting("interval", 900.0)
    store.set_setting("interval", 1800.0)
    assert store.get_setting("flag") is True
    assert store.get_setting("interval") == 1800.0
    assert store.get_setting("absent", "fallback") == "fallback"
    assert store.get_settings() == {"flag": True, "interval": 1800.0}


def test_aware_datetimes_are_stored_as_local_time():
    aware = datetime(2024, 3, 15, 9, 0, tzinfo=timezone.utc)
    local = aware.astimezone().replace(tzinfo=None)
    assert parse_datetime(format_datetime(aware)) == local
    assert parse_datetime(format_datetime(local)) == local


def test_add_session_records_closed_session(store, coding):
    session = store.add_session(coding.id, START, START + timedelta(hours=2), "planning")
    assert not session.is_open
    assert session.duration_seconds == 7200
    assert session.note == "planning"
    assert store.get_closed_sessions() == [session]


def test_add_session_validation(store, coding):
    with pytest.raises(InvalidSession):
        store.add_session(coding.id, START, START)
    with pytest.raises(ActivityNotFound):
        store.add_session(999, START, START + timedelta(hours=1))
    assert store.get_closed_sessions() == []


def test_add_session_drops_empty_note(store, coding):
    session = store.add_session(coding.id, START, START + timedelta(minutes=5), "")
    assert session.note is None


def test_edit_session(store, coding):
    session = store.add_session(coding.id, START, START + timedelta(hours=1), "a")

    edited = store.edit_session(session.id, end_time=START + timedelta(hours=3))
    assert edited.duration_seconds == 3 * 3600
    assert edited.note == "a"

    store.edit_session(session.id, start_time=START + timedelta(hours=1), note="")
    stored = store.get_session(session.id)
    assert stored.start_time == START + timedelta(hours=1)
    assert stored.note is None


def test_edit_session_rejects_bad_ranges_and_open_sessions(store, coding):
    session = store.add_session(coding.id, START, START + timedelta(hours=1))
    with pytest.raises(InvalidSession):
        store.edit_session(session.id, start_time=START + timedelta(hours=2))
    assert store.get_session(session.id).start_time == START

    open_id = store.create_session(coding.id, START)
    with pytest.raises(InvalidSession):
        store.edit_session(open_id, note="x")
    with pytest.raises(SessionNotFound):
        store.edit_session(999, note="x")


def test_project_date_range_is_validated(store):
    with pytest.raises(InvalidProject):
        store.create_project(
            Project(
                id=None,
                name="Backwards",
                start_date=datetime(2024, 2, 1),
                end_date=datetime(2024, 1, 1),
            )
        )
    project = store.create_project(Project(id=None, name="Ok", start_date=datetime(2024, 1, 1)))
    project.end_date = datetime(2023, 12, 1)
    with pytest.raises(InvalidProject):
        store.update_project(project)


def test_update_activity_checks_project(store, coding):
    coding.project_id = 12345
    with pytest.raises(ProjectNotFound):
        store.update_activity(coding)
    assert store.get_activity(coding.id).project_id is None
