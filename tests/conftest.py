from datetime import datetime, timedelta

import pytest

from value_time.config import ReminderSettings
from value_time.db import SQLiteSessionStore
from value_time.lifecycle import SessionLifecycle
from value_time.models import Activity, ActivityCategory


class FakeClock:
    def __init__(self, start):
        self.now = start

    def __call__(self):
        return self.now

    def advance(self, seconds):
        self.now += timedelta(seconds=seconds)


class ManualTask:
    """Scheduled task that only runs when a test calls ``fire``."""

    def __init__(self, name, delay, callback):
        self.name = name
        self.delay = delay
        self.callback = callback
        self._cancelled = False
        self.finished = False

    @property
    def cancelled(self):
        return self._cancelled

    def cancel(self):
        self._cancelled = True

    def fire(self):
        if self._cancelled or self.finished:
            return None
        next_delay = self.callback(self)
        if next_delay is None:
            self.finished = True
        else:
            self.delay = next_delay
        return next_delay


class ManualScheduler:
    def __init__(self):
        self.tasks = []

    def __call__(self, name, delay, callback):
        task = ManualTask(name, delay, callback)
        self.tasks.append(task)
        return task

    def active(self, name):
        for task in reversed(self.tasks):
            if task.name == name and not task.cancelled and not task.finished:
                return task
        return None


class RecordingNotifier:
    def __init__(self):
        self.calls = []

    def arm_inactivity_reminder(self, after_seconds):
        self.calls.append(("arm_inactivity", after_seconds))

    def disarm_inactivity_reminder(self):
        self.calls.append(("disarm_inactivity",))

    def arm_long_session_reminder(self, after_seconds, activity_label):
        self.calls.append(("arm_long_session", after_seconds, activity_label))

    def disarm_long_session_reminder(self):
        self.calls.append(("disarm_long_session",))

    def notify_tracking_started(self, activity_label):
        self.calls.append(("tracking_started", activity_label))

    def names(self):
        return [call[0] for call in self.calls]


T0 = datetime(2024, 3, 15, 12, 0, 0)


@pytest.fixture
def clock():
    return FakeClock(T0)


@pytest.fixture
def scheduler():
    return ManualScheduler()


@pytest.fixture
def notifier():
    return RecordingNotifier()


@pytest.fixture
def store(tmp_path):
    store = SQLiteSessionStore(tmp_path / "test.sqlite3")
    yield store
    store.close()


@pytest.fixture
def coding(store):
    return store.create_activity(
        Activity(id=None, name="Coding", category=ActivityCategory.WORK, hourly_rate=30.0)
    )


@pytest.fixture
def reading(store):
    return store.create_activity(
        Activity(id=None, name="Reading", category=ActivityCategory.STUDY, hourly_rate=10.0)
    )


@pytest.fixture
def make_lifecycle(store, notifier, clock, scheduler):
    created = []

    def factory(settings=None, strict=False, target_store=None):
        lifecycle = SessionLifecycle(
            target_store or store,
            notifier,
            settings or ReminderSettings(),
            clock=clock,
            task_factory=scheduler,
            strict=strict,
        )
        created.append(lifecycle)
        return lifecycle

    yield factory
    for lifecycle in created:
        lifecycle.shutdown()


@pytest.fixture
def lifecycle(make_lifecycle):
    lifecycle = make_lifecycle()
    lifecycle.recover()
    return lifecycle
