"""Session lifecycle: the single source of truth for what is being tracked.

A :class:`SessionLifecycle` is built once per process and owns the current
session, its effective hourly rate and the three background timers (the
1 second tick, the long-session reminder and the inactivity reminder).
Every transition is written to the store first and mirrored in memory only
once the store has accepted it, so a :class:`~value_time.errors.StorageError`
leaves the in-memory state untouched.

Elapsed time is always recomputed from absolute instants (``now -
start_time``); ticks only publish it. Resuming shifts ``start_time`` forward
by the pause length, which keeps that formula valid across pauses.
"""

from __future__ import annotations

import logging
import threading
from dataclasses import dataclass, replace
from datetime import datetime, timedelta
from enum import Enum
from typing import Callable, ContextManager, Iterable, Optional, Protocol, Union

from .config import ReminderSettings
from .errors import InvalidTransition
from .models import Activity, ActivitySession, Project, UserProfile
from .notifications import LoggingNotificationScheduler, NotificationScheduler, ReminderAction
from .scheduling import ScheduledTask, TaskFactory, start_repeating
from .timemath import calculate_earnings

logger = logging.getLogger(__name__)

Clock = Callable[[], datetime]


class SessionStore(Protocol):
    def atomic(self) -> ContextManager[None]: ...

    def create_session(self, activity_id: int, start_time: datetime) -> int: ...

    def update_session(
        self,
        session_id: int,
        *,
        start_time: Optional[datetime] = None,
        is_paused: Optional[bool] = None,
        pause_time: Optional[datetime] = ...,
    ) -> None: ...

    def end_session(
        self, session_id: int, end_time: datetime, note: Optional[str] = None
    ) -> None: ...

    def get_session(self, session_id: int) -> ActivitySession: ...

    def get_open_sessions(self) -> list[ActivitySession]: ...

    def get_paused_sessions(self) -> list[ActivitySession]: ...

    def get_activity(self, activity_id: int) -> Activity: ...

    def get_project(self, project_id: int) -> Project: ...

    def get_user(self) -> UserProfile: ...


class TrackingState(str, Enum):
    IDLE = "idle"
    RUNNING = "running"
    PAUSED = "paused"


class EventKind(str, Enum):
    STARTED = "started"
    PAUSED = "paused"
    RESUMED = "resumed"
    STOPPED = "stopped"
    RECOVERED = "recovered"
    TICK = "tick"
    LONG_SESSION_REMINDER = "long_session_reminder"
    INACTIVITY_REMINDER = "inactivity_reminder"
    ANOMALY = "anomaly"


@dataclass(frozen=True, slots=True)
class SessionSnapshot:
    """Consistent view of the tracked session at ``taken_at``."""

    state: TrackingState
    taken_at: datetime
    session_id: Optional[int] = None
    activity_id: Optional[int] = None
    activity_name: Optional[str] = None
    start_time: Optional[datetime] = None
    pause_time: Optional[datetime] = None
    hourly_rate: float = 0.0
    elapsed_seconds: float = 0.0
    earnings: float = 0.0


@dataclass(frozen=True, slots=True)
class LifecycleEvent:
    kind: EventKind
    snapshot: SessionSnapshot
    session: Optional[ActivitySession] = None
    detail: Optional[str] = None


Subscriber = Callable[[LifecycleEvent], None]


def resolve_live_rate(
    activity: Activity, project: Optional[Project], default_rate: float
) -> float:
    """Hourly rate for live tracking: activity, then project, then user default."""
    if activity.hourly_rate > 0:
        return activity.hourly_rate
    if project is not None and project.hourly_rate > 0:
        return project.hourly_rate
    return max(default_rate, 0.0)


def _unpaused_start(session: ActivitySession, now: datetime) -> datetime:
    """Start time with any pause in progress folded out of the elapsed time."""
    if not session.is_paused or session.pause_time is None:
        return session.start_time
    pause_duration = max(now - session.pause_time, timedelta(0))
    return session.start_time + pause_duration


class SessionLifecycle:
    """State machine over Idle, Running and Paused for one open session.

    Invalid transitions are logged no-ops (``pause``/``resume`` return
    ``False``, ``stop`` returns ``None``) unless ``strict`` is set, in which
    case they raise :class:`InvalidTransition`.

    Subscribers are called synchronously while the lifecycle lock is held so
    that events are delivered in transition order and a cancelled timer can
    never publish after the transition that cancelled it. They may read
    snapshots or issue commands but must not block.
    """

    def __init__(
        self,
        store: SessionStore,
        notifier: Optional[NotificationScheduler] = None,
        settings: Optional[ReminderSettings] = None,
        *,
        clock: Clock = datetime.now,
        task_factory: TaskFactory = start_repeating,
        tick_interval: float = 1.0,
        strict: bool = False,
    ) -> None:
        self._store = store
        self._notifier = notifier or LoggingNotificationScheduler()
        self._settings = settings or ReminderSettings()
        self._clock = clock
        self._task_factory = task_factory
        self._tick_interval = tick_interval
        self._strict = strict

        self._lock = threading.RLock()
        self._session: Optional[ActivitySession] = None
        self._activity: Optional[Activity] = None
        self._hourly_rate = 0.0
        self._foreground = True
        self._last_inactivity_notice: Optional[datetime] = None

        self._tick_task: Optional[ScheduledTask] = None
        self._long_session_task: Optional[ScheduledTask] = None
        self._inactivity_task: Optional[ScheduledTask] = None
        self._subscribers: list[Subscriber] = []

    # -- queries ------------------------------------------------------------

    @property
    def state(self) -> TrackingState:
        with self._lock:
            return self._state_locked()

    @property
    def settings(self) -> ReminderSettings:
        return self._settings

    @property
    def is_foreground(self) -> bool:
        return self._foreground

    @property
    def current_session(self) -> Optional[ActivitySession]:
        with self._lock:
            return replace(self._session) if self._session else None

    def snapshot(self) -> SessionSnapshot:
        with self._lock:
            return self._snapshot_locked(self._clock())

    def paused_sessions(self) -> list[ActivitySession]:
        return self._store.get_paused_sessions()

    def subscribe(self, callback: Subscriber) -> Callable[[], None]:
        """Register ``callback`` for lifecycle events; returns an unsubscriber."""
        with self._lock:
            self._subscribers.append(callback)

        def unsubscribe() -> None:
            with self._lock:
                if callback in self._subscribers:
                    self._subscribers.remove(callback)

        return unsubscribe

    # -- commands -----------------------------------------------------------

    def recover(self) -> SessionSnapshot:
        """Adopt whatever session the store still has open."""
        open_sessions = self._store.get_open_sessions()
        adopted = open_sessions[0] if open_sessions else None
        activity = self._store.get_activity(adopted.activity_id) if adopted else None
        rate = self._resolve_rate(activity) if activity else 0.0

        with self._lock:
            self._cancel_all_locked()
            now = self._clock()
            if len(open_sessions) > 1:
                others = ", ".join(str(session.id) for session in open_sessions[1:])
                logger.warning(
                    "Found %d open sessions; adopting session %s, leaving %s open",
                    len(open_sessions),
                    adopted.id,
                    others,
                )
                self._emit_locked(
                    EventKind.ANOMALY,
                    now,
                    detail=f"{len(open_sessions)} open sessions; also open: {others}",
                )

            self._session = adopted
            self._activity = activity
            self._hourly_rate = rate
            if adopted is None:
                logger.info("No open session found; idle")
                self._arm_inactivity_locked()
            elif adopted.is_paused:
                logger.info("Recovered paused session for %s", self._label())
            else:
                logger.info("Recovered running session for %s", self._label())
                self._start_tick_locked()
                self._arm_long_session_locked()
            return self._emit_locked(EventKind.RECOVERED, now).snapshot

    def start(self, activity_id: int) -> SessionSnapshot:
        """Start tracking ``activity_id``, closing any session still open."""
        activity = self._store.get_activity(activity_id)
        rate = self._resolve_rate(activity)

        with self._lock:
            now = self._clock()
            with self._store.atomic():
                closed = self._close_open_sessions(now, keep_id=None)
                session_id = self._store.create_session(activity_id, now)

            self._publish_closed_locked(closed, now)
            self._session = ActivitySession(id=session_id, activity_id=activity_id, start_time=now)
            self._activity = activity
            self._hourly_rate = rate
            logger.info("Started tracking %s at %.2f/h", self._label(), rate)

            self._disarm_inactivity_locked()
            self._notifier.notify_tracking_started(self._label())
            self._start_tick_locked()
            self._arm_long_session_locked()
            return self._emit_locked(EventKind.STARTED, now).snapshot

    def pause(self) -> bool:
        with self._lock:
            if self._state_locked() is not TrackingState.RUNNING:
                return self._reject("pause")
            session = self._session
            now = self._clock()
            self._store.update_session(session.id, is_paused=True, pause_time=now)

            session.is_paused = True
            session.pause_time = now
            self._cancel_tick_locked()
            self._disarm_long_session_locked()
            logger.info("Paused tracking %s", self._label())
            self._emit_locked(EventKind.PAUSED, now)
            return True

    def resume(self) -> bool:
        with self._lock:
            session = self._session
            if session is None or not session.is_paused:
                return self._reject("resume")
            now = self._clock()
            new_start = _unpaused_start(session, now)
            self._store.update_session(session.id, start_time=new_start, is_paused=False)

            session.start_time = new_start
            session.is_paused = False
            session.pause_time = None
            logger.info("Resumed tracking %s", self._label())
            self._start_tick_locked()
            self._arm_long_session_locked()
            self._emit_locked(EventKind.RESUMED, now)
            return True

    def resume_session(self, session_id: int) -> bool:
        """Make ``session_id`` current and resume it, closing any other open session."""
        target = self._store.get_session(session_id)
        if not target.is_open:
            return self._reject("resume a closed session")
        activity = self._store.get_activity(target.activity_id)
        rate = self._resolve_rate(activity)

        with self._lock:
            if self._session is not None and self._session.id == session_id:
                return self.resume()
            now = self._clock()
            new_start = _unpaused_start(target, now)
            with self._store.atomic():
                closed = self._close_open_sessions(now, keep_id=session_id)
                if target.is_paused:
                    self._store.update_session(session_id, start_time=new_start, is_paused=False)

            self._publish_closed_locked(closed, now)
            target.start_time = new_start
            target.is_paused = False
            target.pause_time = None
            self._session = target
            self._activity = activity
            self._hourly_rate = rate
            logger.info("Resumed session %s for %s", session_id, self._label())

            self._cancel_all_locked()
            self._disarm_inactivity_locked()
            self._start_tick_locked()
            self._arm_long_session_locked()
            self._emit_locked(EventKind.RESUMED, now)
            return True

    def stop(self, note: Optional[str] = None) -> Optional[ActivitySession]:
        """Close the current session and return it as stored history."""
        with self._lock:
            session = self._session
            if session is None:
                self._reject("stop")
                return None
            now = self._clock()
            closed = self._end_session(session, now, note)

            self._session = None
            self._activity = None
            self._hourly_rate = 0.0
            self._cancel_tick_locked()
            self._disarm_long_session_locked()
            logger.info(
                "Stopped tracking session %s after %.0f seconds",
                closed.id,
                closed.duration_seconds,
            )
            self._arm_inactivity_locked()
            self._emit_locked(EventKind.STOPPED, now, session=closed)
            return closed

    def handle_reminder_action(self, action: Union[ReminderAction, str]) -> bool:
        """Route a reminder response back into the lifecycle."""
        action = ReminderAction(action)
        logger.info("Handling reminder action %s", action.value)
        if action is ReminderAction.STILL_WORKING:
            with self._lock:
                if self._state_locked() is not TrackingState.RUNNING:
                    return False
                self._arm_long_session_locked()
                return self._long_session_task is not None
        if action is ReminderAction.STOP_TRACKING:
            return self.stop() is not None
        return False

    def enter_background(self) -> None:
        """Hand reminders to the notification scheduler while not interactive."""
        with self._lock:
            self._foreground = False
            state = self._state_locked()
            if state is TrackingState.RUNNING and self._settings.long_session_enabled:
                self._notifier.arm_long_session_reminder(
                    self._settings.long_session_interval.total_seconds(), self._label()
                )
            elif state is TrackingState.IDLE and self._settings.inactivity_enabled:
                self._notifier.arm_inactivity_reminder(self._inactivity_delay(self._clock()))
            logger.debug("Moved to background while %s", state.value)

    def enter_foreground(self) -> SessionSnapshot:
        """Recompute live values from the wall clock after a suspension."""
        with self._lock:
            self._foreground = True
            now = self._clock()
            state = self._state_locked()
            if state is TrackingState.RUNNING:
                snapshot = self._emit_locked(EventKind.TICK, now).snapshot
                logger.debug("Elapsed after returning to foreground: %.0fs", snapshot.elapsed_seconds)
                return snapshot
            if state is TrackingState.IDLE:
                self._arm_inactivity_locked()
            return self._snapshot_locked(now)

    def update_settings(self, settings: ReminderSettings) -> None:
        with self._lock:
            self._settings = settings
            state = self._state_locked()
            if state is TrackingState.RUNNING:
                self._arm_long_session_locked()
            elif state is TrackingState.IDLE:
                self._arm_inactivity_locked()

    def refresh_activity(self) -> SessionSnapshot:
        """Re-read the tracked activity and its rate after it was edited."""
        with self._lock:
            if self._session is not None:
                activity = self._store.get_activity(self._session.activity_id)
                self._activity = activity
                self._hourly_rate = self._resolve_rate(activity)
                logger.debug("Refreshed %s at %.2f/h", self._label(), self._hourly_rate)
            return self._snapshot_locked(self._clock())

    def shutdown(self) -> None:
        with self._lock:
            self._cancel_all_locked()

    # -- transitions --------------------------------------------------------

    def _state_locked(self) -> TrackingState:
        if self._session is None:
            return TrackingState.IDLE
        if self._session.is_paused:
            return TrackingState.PAUSED
        return TrackingState.RUNNING

    def _reject(self, operation: str) -> bool:
        state = self._state_locked()
        if self._strict:
            raise InvalidTransition(operation, state.value)
        logger.debug("Ignoring %s while %s", operation, state.value)
        return False

    def _resolve_rate(self, activity: Activity) -> float:
        project = (
            self._store.get_project(activity.project_id)
            if activity.project_id is not None
            else None
        )
        default_rate = 0.0
        if activity.hourly_rate <= 0 and (project is None or project.hourly_rate <= 0):
            default_rate = self._store.get_user().default_hourly_rate
        return resolve_live_rate(activity, project, default_rate)

    def _end_session(
        self, session: ActivitySession, now: datetime, note: Optional[str]
    ) -> ActivitySession:
        """Write the end of ``session``; a pause in progress is not counted."""
        start = _unpaused_start(session, now)
        with self._store.atomic():
            if start != session.start_time:
                self._store.update_session(session.id, start_time=start)
            self._store.end_session(session.id, now, note)
        return ActivitySession(
            id=session.id,
            activity_id=session.activity_id,
            start_time=start,
            end_time=now,
            note=note,
        )

    def _close_open_sessions(
        self, now: datetime, keep_id: Optional[int]
    ) -> list[ActivitySession]:
        return [
            self._end_session(session, now, None)
            for session in self._store.get_open_sessions()
            if session.id != keep_id
        ]

    def _publish_closed_locked(self, closed: Iterable[ActivitySession], now: datetime) -> None:
        current_id = self._session.id if self._session else None
        for session in closed:
            if session.id == current_id:
                logger.info("Stopped session %s before switching", session.id)
                self._session = None
                self._cancel_tick_locked()
                self._disarm_long_session_locked()
                self._emit_locked(EventKind.STOPPED, now, session=session)
            else:
                logger.warning("Closed stray open session %s", session.id)

    def _snapshot_locked(self, now: datetime) -> SessionSnapshot:
        session = self._session
        if session is None:
            return SessionSnapshot(state=TrackingState.IDLE, taken_at=now)
        elapsed = session.elapsed_at(now)
        return SessionSnapshot(
            state=self._state_locked(),
            taken_at=now,
            session_id=session.id,
            activity_id=session.activity_id,
            activity_name=self._activity.name if self._activity else None,
            start_time=session.start_time,
            pause_time=session.pause_time,
            hourly_rate=self._hourly_rate,
            elapsed_seconds=elapsed,
            earnings=calculate_earnings(self._hourly_rate, elapsed),
        )

    def _emit_locked(
        self,
        kind: EventKind,
        now: datetime,
        *,
        session: Optional[ActivitySession] = None,
        detail: Optional[str] = None,
    ) -> LifecycleEvent:
        event = LifecycleEvent(kind, self._snapshot_locked(now), session=session, detail=detail)
        for callback in list(self._subscribers):
            try:
                callback(event)
            except Exception:
                logger.exception("Lifecycle subscriber failed on %s", kind.value)
        return event

    def _label(self) -> str:
        if self._activity and self._activity.name:
            return self._activity.name
        return "Activity"

    # -- timers -------------------------------------------------------------

    def _start_tick_locked(self) -> None:
        self._cancel_tick_locked()
        self._tick_task = self._task_factory("session-tick", self._tick_interval, self._on_tick)

    def _cancel_tick_locked(self) -> None:
        if self._tick_task is not None:
            self._tick_task.cancel()
            self._tick_task = None

    def _on_tick(self, task: ScheduledTask) -> Optional[float]:
        with self._lock:
            if task.cancelled or task is not self._tick_task:
                return None
            if self._state_locked() is not TrackingState.RUNNING:
                return None
            self._emit_locked(EventKind.TICK, self._clock())
            return self._tick_interval

    def _arm_long_session_locked(self) -> None:
        self._cancel_long_session_locked()
        if not self._settings.long_session_enabled:
            return
        if self._state_locked() is not TrackingState.RUNNING:
            return
        self._long_session_task = self._task_factory(
            "long-session-reminder",
            self._settings.long_session_interval.total_seconds(),
            self._on_long_session_due,
        )

    def _cancel_long_session_locked(self) -> None:
        if self._long_session_task is not None:
            self._long_session_task.cancel()
            self._long_session_task = None

    def _disarm_long_session_locked(self) -> None:
        self._cancel_long_session_locked()
        self._notifier.disarm_long_session_reminder()

    def _on_long_session_due(self, task: ScheduledTask) -> Optional[float]:
        with self._lock:
            if task.cancelled or task is not self._long_session_task:
                return None
            if self._state_locked() is not TrackingState.RUNNING:
                return None
            interval = self._settings.long_session_interval.total_seconds()
            if self._foreground:
                logger.info("Long session reminder for %s", self._label())
                self._emit_locked(EventKind.LONG_SESSION_REMINDER, self._clock())
                return interval + self._settings.foreground_repeat_delay.total_seconds()
            self._notifier.arm_long_session_reminder(1, self._label())
            return interval + self._settings.background_repeat_delay.total_seconds()

    def _inactivity_delay(self, now: datetime) -> float:
        interval = self._settings.inactivity_interval.total_seconds()
        if self._last_inactivity_notice is None:
            return interval
        since_last = (now - self._last_inactivity_notice).total_seconds()
        if 0 <= since_last < interval:
            return interval - since_last
        return interval

    def _arm_inactivity_locked(self) -> None:
        self._cancel_inactivity_locked()
        if not self._settings.inactivity_enabled:
            return
        if self._state_locked() is not TrackingState.IDLE:
            return
        delay = self._inactivity_delay(self._clock())
        self._inactivity_task = self._task_factory(
            "inactivity-reminder", delay, self._on_inactivity_due
        )
        logger.debug("Inactivity reminder armed in %.0f seconds", delay)

    def _cancel_inactivity_locked(self) -> None:
        if self._inactivity_task is not None:
            self._inactivity_task.cancel()
            self._inactivity_task = None

    def _disarm_inactivity_locked(self) -> None:
        self._cancel_inactivity_locked()
        self._notifier.disarm_inactivity_reminder()

    def _on_inactivity_due(self, task: ScheduledTask) -> Optional[float]:
        with self._lock:
            if task.cancelled or task is not self._inactivity_task:
                return None
            if self._state_locked() is not TrackingState.IDLE:
                return None
            now = self._clock()
            if self._foreground:
                logger.info("Inactivity reminder")
                self._emit_locked(EventKind.INACTIVITY_REMINDER, now)
            else:
                self._notifier.arm_inactivity_reminder(1)
            self._last_inactivity_notice = now
            return self._settings.inactivity_interval.total_seconds()

    def _cancel_all_locked(self) -> None:
        self._cancel_tick_locked()
        self._cancel_long_session_locked()
        self._cancel_inactivity_locked()
