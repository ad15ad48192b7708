"""Notification scheduler interface used by the session lifecycle.

The lifecycle only emits intents ("arm this reminder in N seconds", "cancel
that one"). Delivering them through the operating system is the scheduler's
job.
"""

from __future__ import annotations

import logging
import threading
from enum import Enum
from typing import Optional, Protocol

logger = logging.getLogger(__name__)


class ReminderAction(str, Enum):
    """Actions a user can take from a delivered reminder."""

    STILL_WORKING = "still_working"
    STOP_TRACKING = "stop_tracking"
    START_TRACKING = "start_tracking"


class NotificationScheduler(Protocol):
    def arm_inactivity_reminder(self, after_seconds: float) -> None: ...

    def disarm_inactivity_reminder(self) -> None: ...

    def arm_long_session_reminder(self, after_seconds: float, activity_label: str) -> None: ...

    def disarm_long_session_reminder(self) -> None: ...

    def notify_tracking_started(self, activity_label: str) -> None: ...


class LoggingNotificationScheduler:
    """Scheduler that records pending reminders and logs every intent.

    Used by the CLI and the local dashboard, neither of which can post
    operating system notifications.
    """

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self.pending_inactivity: Optional[float] = None
        self.pending_long_session: Optional[tuple[float, str]] = None
        self.tracking_label: Optional[str] = None

    def arm_inactivity_reminder(self, after_seconds: float) -> None:
        with self._lock:
            self.pending_inactivity = after_seconds
        logger.info("Inactivity reminder scheduled in %.0f seconds", after_seconds)

    def disarm_inactivity_reminder(self) -> None:
        with self._lock:
            self.pending_inactivity = None
        logger.debug("Inactivity reminder cancelled")

    def arm_long_session_reminder(self, after_seconds: float, activity_label: str) -> None:
        with self._lock:
            self.pending_long_session = (after_seconds, activity_label)
        logger.info(
            "Long session reminder for %s scheduled in %.0f seconds",
            activity_label,
            after_seconds,
        )

    def disarm_long_session_reminder(self) -> None:
        with self._lock:
            self.pending_long_session = None
        logger.debug("Long session reminder cancelled")

    def notify_tracking_started(self, activity_label: str) -> None:
        with self._lock:
            self.tracking_label = activity_label
        logger.info("Tracking active: %s", activity_label)
