from datetime import timedelta

import pytest

from value_time.aggregation import RateCatalog, session_earnings
from value_time.config import ReminderSettings
from value_time.db import SQLiteSessionStore
from value_time.errors import ActivityNotFound, InvalidTransition, StorageError
from value_time.lifecycle import EventKind, TrackingState, resolve_live_rate
from value_time.models import Activity, Project
from value_time.notifications import ReminderAction


def record_events(lifecycle):
    events = []
    lifecycle.subscribe(events.append)
    return events


def kinds(events):
    return [event.kind for event in events]


def test_recover_with_empty_store_is_idle(lifecycle, scheduler):
    assert lifecycle.state is TrackingState.IDLE
    snapshot = lifecycle.snapshot()
    assert snapshot.elapsed_seconds == 0
    assert snapshot.earnings == 0
    assert scheduler.active("inactivity-reminder") is not None


def test_start_creates_running_session(lifecycle, store, coding, clock, notifier):
    snapshot = lifecycle.start(coding.id)

    assert snapshot.state is TrackingState.RUNNING
    assert snapshot.activity_name == "Coding"
    assert snapshot.hourly_rate == 30.0
    open_sessions = store.get_open_sessions()
    assert len(open_sessions) == 1
    assert open_sessions[0].start_time == clock.now
    assert ("tracking_started", "Coding") in notifier.calls


def test_start_unknown_activity_raises(lifecycle):
    with pytest.raises(ActivityNotFound):
        lifecycle.start(999)
    assert lifecycle.state is TrackingState.IDLE


def test_snapshot_elapsed_and_earnings(lifecycle, coding, clock):
    lifecycle.start(coding.id)
    clock.advance(1800)

    snapshot = lifecycle.snapshot()
    assert snapshot.elapsed_seconds == 1800
    assert snapshot.earnings == pytest.approx(15.0)


def test_pause_resume_conserves_tracked_time(lifecycle, store, coding, clock):
    lifecycle.start(coding.id)
    clock.advance(30)
    assert lifecycle.pause() is True
    clock.advance(100)
    assert lifecycle.snapshot().elapsed_seconds == 30
    assert lifecycle.resume() is True
    clock.advance(40)

    closed = lifecycle.stop()

    assert closed.duration_seconds == 70
    assert store.get_session(closed.id).duration_seconds == 70


def test_pause_is_persisted(lifecycle, store, coding, clock):
    lifecycle.start(coding.id)
    clock.advance(10)
    lifecycle.pause()

    session = store.get_open_sessions()[0]
    assert session.is_paused
    assert session.pause_time == clock.now
    assert store.get_paused_sessions()[0].id == session.id


def test_stop_while_paused_excludes_pause(lifecycle, coding, clock):
    lifecycle.start(coding.id)
    clock.advance(60)
    lifecycle.pause()
    clock.advance(100)

    closed = lifecycle.stop()

    assert closed.duration_seconds == 60
    assert closed.end_time == clock.now
    assert not closed.is_paused
    assert closed.pause_time is None


def test_round_trip_earnings(lifecycle, store, coding, clock):
    lifecycle.start(coding.id)
    clock.advance(3600)
    closed = lifecycle.stop("x")

    stored = store.get_session(closed.id)
    assert stored.note == "x"
    assert stored.duration_seconds == 3600
    catalog = RateCatalog.build(store.list_activities(), store.list_projects())
    assert round(session_earnings(stored, catalog), 2) == 30.00
    assert lifecycle.state is TrackingState.IDLE
    assert lifecycle.snapshot().earnings == 0


def test_stop_is_idempotent(lifecycle, store, coding, clock):
    lifecycle.start(coding.id)
    clock.advance(5)
    first = lifecycle.stop()
    clock.advance(5)

    assert lifecycle.stop() is None
    assert store.get_session(first.id).end_time == first.end_time
    assert store.get_open_sessions() == []


def test_invalid_transitions_are_no_ops(lifecycle, coding):
    assert lifecycle.pause() is False
    assert lifecycle.resume() is False
    assert lifecycle.stop() is None

    lifecycle.start(coding.id)
    assert lifecycle.resume() is False
    lifecycle.pause()
    assert lifecycle.pause() is False
    assert lifecycle.state is TrackingState.PAUSED


def test_strict_mode_raises(make_lifecycle, coding):
    lifecycle = make_lifecycle(strict=True)
    lifecycle.recover()

    with pytest.raises(InvalidTransition) as excinfo:
        lifecycle.pause()
    assert excinfo.value.state == "idle"
    with pytest.raises(InvalidTransition):
        lifecycle.stop()


def test_strict_resume_while_running_raises(make_lifecycle, coding):
    lifecycle = make_lifecycle(strict=True)
    lifecycle.recover()
    lifecycle.start(coding.id)

    with pytest.raises(InvalidTransition) as excinfo:
        lifecycle.resume()
    assert excinfo.value.operation == "resume"
    assert excinfo.value.state == "running"
    assert lifecycle.state is TrackingState.RUNNING


def test_start_closes_previous_session(lifecycle, store, coding, reading, clock):
    events = record_events(lifecycle)
    lifecycle.start(coding.id)
    clock.advance(120)
    lifecycle.start(reading.id)

    open_sessions = store.get_open_sessions()
    assert len(open_sessions) == 1
    assert open_sessions[0].activity_id == reading.id
    closed = store.get_sessions_for_activity(coding.id)[0]
    assert closed.duration_seconds == 120
    assert closed.note is None
    assert kinds(events) == [EventKind.STARTED, EventKind.STOPPED, EventKind.STARTED]


def test_rate_priority(store, make_lifecycle, clock):
    project = store.create_project(Project(id=None, name="Client", hourly_rate=20.0))
    own_rate = store.create_activity(Activity(id=None, name="Own", hourly_rate=10.0))
    project_rate = store.create_activity(
        Activity(id=None, name="Billed", project_id=project.id)
    )
    project_rate.hourly_rate = 0.0
    store.update_activity(project_rate)
    default_rate = store.create_activity(Activity(id=None, name="Plain"))
    store.update_user(default_hourly_rate=15.0)

    lifecycle = make_lifecycle()
    lifecycle.recover()
    assert lifecycle.start(own_rate.id).hourly_rate == 10.0
    assert lifecycle.start(project_rate.id).hourly_rate == 20.0
    assert lifecycle.start(default_rate.id).hourly_rate == 15.0


def test_resolve_live_rate_falls_back_to_zero():
    activity = Activity(id=1, name="Free")
    assert resolve_live_rate(activity, None, 0.0) == 0.0
    assert resolve_live_rate(activity, Project(id=2, name="P"), -5.0) == 0.0


def test_recover_running_session(store, coding, clock, make_lifecycle, scheduler):
    store.create_session(coding.id, clock.now - timedelta(minutes=5))

    lifecycle = make_lifecycle()
    snapshot = lifecycle.recover()

    assert snapshot.state is TrackingState.RUNNING
    assert snapshot.elapsed_seconds == pytest.approx(300)
    assert snapshot.hourly_rate == 30.0
    assert scheduler.active("session-tick") is not None
    assert scheduler.active("long-session-reminder") is not None
    assert scheduler.active("inactivity-reminder") is None


def test_recover_paused_session(store, coding, clock, make_lifecycle, scheduler):
    session_id = store.create_session(coding.id, clock.now - timedelta(minutes=10))
    store.update_session(session_id, is_paused=True, pause_time=clock.now - timedelta(minutes=4))

    lifecycle = make_lifecycle()
    snapshot = lifecycle.recover()

    assert snapshot.state is TrackingState.PAUSED
    assert snapshot.elapsed_seconds == 360
    assert scheduler.active("session-tick") is None


def test_recover_multiple_open_sessions_reports_anomaly(
    store, coding, reading, clock, make_lifecycle
):
    older = store.create_session(coding.id, clock.now - timedelta(hours=2))
    newer = store.create_session(reading.id, clock.now - timedelta(hours=1))

    lifecycle = make_lifecycle()
    events = record_events(lifecycle)
    snapshot = lifecycle.recover()

    assert snapshot.session_id == newer
    assert kinds(events) == [EventKind.ANOMALY, EventKind.RECOVERED]
    assert {session.id for session in store.get_open_sessions()} == {older, newer}

    lifecycle.start(coding.id)
    assert len(store.get_open_sessions()) == 1


def test_resume_session_switches_and_closes_others(
    store, coding, reading, clock, make_lifecycle
):
    paused_id = store.create_session(coding.id, clock.now - timedelta(minutes=10))
    store.update_session(paused_id, is_paused=True, pause_time=clock.now - timedelta(minutes=5))
    running_id = store.create_session(reading.id, clock.now - timedelta(seconds=100))

    lifecycle = make_lifecycle()
    lifecycle.recover()
    assert [session.id for session in lifecycle.paused_sessions()] == [paused_id]

    assert lifecycle.resume_session(paused_id) is True

    snapshot = lifecycle.snapshot()
    assert snapshot.state is TrackingState.RUNNING
    assert snapshot.session_id == paused_id
    assert snapshot.elapsed_seconds == 300
    assert store.get_session(running_id).duration_seconds == 100
    assert [session.id for session in store.get_open_sessions()] == [paused_id]


def test_storage_failure_leaves_state_untouched(tmp_path, coding, clock, make_lifecycle):
    class FailingStore(SQLiteSessionStore):
        fail = False

        def create_session(self, activity_id, start_time):
            if self.fail:
                raise StorageError("disk full")
            return super().create_session(activity_id, start_time)

    failing = FailingStore(tmp_path / "test.sqlite3")
    try:
        lifecycle = make_lifecycle(target_store=failing)
        lifecycle.recover()
        lifecycle.start(coding.id)
        first = lifecycle.snapshot().session_id

        failing.fail = True
        clock.advance(60)
        with pytest.raises(StorageError):
            lifecycle.start(coding.id)

        assert lifecycle.state is TrackingState.RUNNING
        assert lifecycle.snapshot().session_id == first
        assert [session.id for session in failing.get_open_sessions()] == [first]
    finally:
        failing.close()


def test_tick_publishes_and_stops_after_pause(lifecycle, coding, clock, scheduler):
    events = record_events(lifecycle)
    lifecycle.start(coding.id)
    tick = scheduler.active("session-tick")
    assert tick.delay == 1.0

    clock.advance(1)
    assert tick.fire() == 1.0
    assert events[-1].kind is EventKind.TICK
    assert events[-1].snapshot.elapsed_seconds == 1

    lifecycle.pause()
    assert tick.cancelled
    count = len(events)
    assert tick.fire() is None
    assert len(events) == count


def test_stale_tick_is_ignored_after_restart(lifecycle, coding, reading, scheduler):
    lifecycle.start(coding.id)
    stale = scheduler.active("session-tick")
    lifecycle.start(reading.id)

    events = record_events(lifecycle)
    assert stale.callback(stale) is None
    assert events == []


def test_subscriber_errors_do_not_break_lifecycle(lifecycle, coding):
    def broken(event):
        raise RuntimeError("boom")

    lifecycle.subscribe(broken)
    assert lifecycle.start(coding.id).state is TrackingState.RUNNING


def test_unsubscribe_stops_delivery(lifecycle, coding):
    events = []
    unsubscribe = lifecycle.subscribe(events.append)
    unsubscribe()
    lifecycle.start(coding.id)
    assert events == []


def test_long_session_reminder_in_foreground(lifecycle, coding, clock, scheduler):
    events = record_events(lifecycle)
    lifecycle.start(coding.id)
    reminder = scheduler.active("long-session-reminder")
    assert reminder.delay == 3600

    clock.advance(3600)
    assert reminder.fire() == 3605
    assert events[-1].kind is EventKind.LONG_SESSION_REMINDER


def test_long_session_reminder_in_background(lifecycle, coding, clock, scheduler, notifier):
    lifecycle.start(coding.id)
    lifecycle.enter_background()
    assert ("arm_long_session", 3600.0, "Coding") in notifier.calls

    reminder = scheduler.active("long-session-reminder")
    clock.advance(3600)
    assert reminder.fire() == 3660
    assert notifier.calls[-1] == ("arm_long_session", 1, "Coding")


def test_long_session_reminder_disabled(make_lifecycle, coding, scheduler):
    lifecycle = make_lifecycle(settings=ReminderSettings(long_session_enabled=False))
    lifecycle.recover()
    lifecycle.start(coding.id)
    assert scheduler.active("long-session-reminder") is None


def test_pause_and_stop_cancel_long_session_reminder(lifecycle, coding, scheduler, notifier):
    lifecycle.start(coding.id)
    reminder = scheduler.active("long-session-reminder")
    lifecycle.pause()
    assert reminder.cancelled
    assert notifier.names()[-1] in {"disarm_long_session", "disarm_inactivity"}

    lifecycle.resume()
    assert scheduler.active("long-session-reminder") is not None
    lifecycle.stop()
    assert scheduler.active("long-session-reminder") is None
    assert "disarm_long_session" in notifier.names()


def test_inactivity_reminder_cycle(lifecycle, coding, clock, scheduler, notifier):
    events = record_events(lifecycle)
    reminder = scheduler.active("inactivity-reminder")
    assert reminder.delay == 1800

    assert reminder.fire() == 1800
    assert events[-1].kind is EventKind.INACTIVITY_REMINDER

    clock.advance(600)
    lifecycle.start(coding.id)
    assert reminder.cancelled
    assert "disarm_inactivity" in notifier.names()

    lifecycle.stop()
    rearmed = scheduler.active("inactivity-reminder")
    assert rearmed is not reminder
    assert rearmed.delay == 1200


def test_inactivity_reminder_in_background(lifecycle, scheduler, notifier):
    lifecycle.enter_background()
    assert ("arm_inactivity", 1800.0) in notifier.calls

    scheduler.active("inactivity-reminder").fire()
    assert notifier.calls[-1] == ("arm_inactivity", 1)


def test_enter_foreground_recomputes_elapsed(lifecycle, coding, clock):
    events = record_events(lifecycle)
    lifecycle.start(coding.id)
    lifecycle.enter_background()
    clock.advance(7200)

    snapshot = lifecycle.enter_foreground()

    assert lifecycle.is_foreground
    assert snapshot.elapsed_seconds == 7200
    assert events[-1].kind is EventKind.TICK


def test_reminder_actions(lifecycle, coding, scheduler):
    assert lifecycle.handle_reminder_action(ReminderAction.STILL_WORKING) is False

    lifecycle.start(coding.id)
    first = scheduler.active("long-session-reminder")
    assert lifecycle.handle_reminder_action("still_working") is True
    assert first.cancelled
    assert scheduler.active("long-session-reminder") is not first

    assert lifecycle.handle_reminder_action(ReminderAction.START_TRACKING) is False
    assert lifecycle.handle_reminder_action(ReminderAction.STOP_TRACKING) is True
    assert lifecycle.state is TrackingState.IDLE


def test_update_settings_rearms_timers(lifecycle, coding, scheduler):
    lifecycle.start(coding.id)
    lifecycle.update_settings(ReminderSettings(long_session_interval=timedelta(minutes=15)))
    assert scheduler.active("long-session-reminder").delay == 900


def test_shutdown_cancels_all_tasks(lifecycle, coding, scheduler):
    lifecycle.start(coding.id)
    lifecycle.shutdown()
    assert scheduler.active("session-tick") is None
    assert scheduler.active("long-session-reminder") is None


def test_refresh_activity_picks_up_edited_rate(lifecycle, store, coding, clock):
    lifecycle.start(coding.id)
    coding.hourly_rate = 90.0
    coding.name = "Deep work"
    store.update_activity(coding)

    snapshot = lifecycle.refresh_activity()

    assert snapshot.hourly_rate == 90.0
    assert snapshot.activity_name == "Deep work"
    clock.advance(600)
    assert lifecycle.snapshot().earnings == pytest.approx(15.0)


def test_refresh_activity_while_idle(lifecycle):
    assert lifecycle.refresh_activity().state is TrackingState.IDLE
