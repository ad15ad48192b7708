"""Configuration models and helpers for reminders and app preferences."""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Any, Optional, Protocol, Sequence

from .timemath import format_interval, months_before, to_naive_local

logger = logging.getLogger(__name__)

INACTIVITY_ENABLED_KEY = "inactivity_reminder_enabled"
INACTIVITY_INTERVAL_KEY = "inactivity_reminder_interval"
LONG_SESSION_ENABLED_KEY = "long_session_reminder_enabled"
LONG_SESSION_INTERVAL_KEY = "long_session_reminder_interval"
TRACKING_START_DATE_KEY = "tracking_start_date"

_MINUTE = timedelta(minutes=1)
_HOUR = timedelta(hours=1)

IntervalOption = tuple[str, timedelta]


def _options(*values: timedelta) -> tuple[IntervalOption, ...]:
    return tuple((format_interval(value.total_seconds()), value) for value in values)


INACTIVITY_INTERVAL_OPTIONS = _options(
    1 * _MINUTE, 5 * _MINUTE, 15 * _MINUTE, 30 * _MINUTE, 1 * _HOUR, 2 * _HOUR, 4 * _HOUR
)
LONG_SESSION_INTERVAL_OPTIONS = _options(
    1 * _MINUTE,
    5 * _MINUTE,
    15 * _MINUTE,
    30 * _MINUTE,
    1 * _HOUR,
    2 * _HOUR,
    4 * _HOUR,
    8 * _HOUR,
)


class SettingsSource(Protocol):
    def get_setting(self, key: str, default: Any = None) -> Any: ...

    def set_setting(self, key: str, value: Any) -> None: ...


def closest_option(options: Sequence[IntervalOption], target: timedelta) -> int:
    """Index of the preset nearest to ``target``."""
    return min(
        range(len(options)),
        key=lambda index: abs(options[index][1] - target),
    )


def snap_interval(options: Sequence[IntervalOption], minutes: float) -> timedelta:
    """The preset interval nearest to ``minutes``."""
    return options[closest_option(options, timedelta(minutes=minutes))][1]


@dataclass(slots=True)
class ReminderSettings:
    """Runtime configuration for inactivity and long-session reminders."""

    inactivity_enabled: bool = True
    inactivity_interval: timedelta = timedelta(minutes=30)
    long_session_enabled: bool = True
    long_session_interval: timedelta = timedelta(hours=1)
    foreground_repeat_delay: timedelta = timedelta(seconds=5)
    background_repeat_delay: timedelta = timedelta(seconds=60)

    @classmethod
    def from_intervals(
        cls,
        inactivity_minutes: float | None = None,
        long_session_minutes: float | None = None,
        *,
        inactivity_enabled: bool = True,
        long_session_enabled: bool = True,
    ) -> "ReminderSettings":
        defaults = cls()
        return cls(
            inactivity_enabled=inactivity_enabled,
            inactivity_interval=(
                timedelta(minutes=inactivity_minutes)
                if inactivity_minutes is not None
                else defaults.inactivity_interval
            ),
            long_session_enabled=long_session_enabled,
            long_session_interval=(
                timedelta(minutes=long_session_minutes)
                if long_session_minutes is not None
                else defaults.long_session_interval
            ),
        )

    @classmethod
    def load(cls, source: SettingsSource) -> "ReminderSettings":
        defaults = cls()
        settings = cls(
            inactivity_enabled=bool(
                source.get_setting(INACTIVITY_ENABLED_KEY, defaults.inactivity_enabled)
            ),
            inactivity_interval=timedelta(
                seconds=source.get_setting(
                    INACTIVITY_INTERVAL_KEY, defaults.inactivity_interval.total_seconds()
                )
            ),
            long_session_enabled=bool(
                source.get_setting(LONG_SESSION_ENABLED_KEY, defaults.long_session_enabled)
            ),
            long_session_interval=timedelta(
                seconds=source.get_setting(
                    LONG_SESSION_INTERVAL_KEY, defaults.long_session_interval.total_seconds()
                )
            ),
        )
        logger.debug(
            "Reminder settings: inactivity %s every %s, long session %s every %s",
            "on" if settings.inactivity_enabled else "off",
            settings.inactivity_interval,
            "on" if settings.long_session_enabled else "off",
            settings.long_session_interval,
        )
        return settings

    def save(self, source: SettingsSource) -> None:
        source.set_setting(INACTIVITY_ENABLED_KEY, self.inactivity_enabled)
        source.set_setting(INACTIVITY_INTERVAL_KEY, self.inactivity_interval.total_seconds())
        source.set_setting(LONG_SESSION_ENABLED_KEY, self.long_session_enabled)
        source.set_setting(
            LONG_SESSION_INTERVAL_KEY, self.long_session_interval.total_seconds()
        )

    def reset_to_defaults(self) -> None:
        defaults = type(self)()
        self.inactivity_enabled = defaults.inactivity_enabled
        self.inactivity_interval = defaults.inactivity_interval
        self.long_session_enabled = defaults.long_session_enabled
        self.long_session_interval = defaults.long_session_interval


@dataclass(slots=True)
class AppSettings:
    """User-facing preferences read alongside the user profile."""

    preferred_currency: str = "USD"
    default_hourly_rate: float = 25.0
    tracking_start_date: datetime = field(
        default_factory=lambda: months_before(datetime.now(), 1)
    )

    @classmethod
    def load(cls, store: Any) -> "AppSettings":
        user = store.get_user()
        raw_start: Optional[str] = store.get_setting(TRACKING_START_DATE_KEY)
        settings = cls(
            preferred_currency=user.preferred_currency,
            default_hourly_rate=user.default_hourly_rate,
        )
        if raw_start:
            settings.tracking_start_date = datetime.fromisoformat(raw_start)
        return settings

    def save(self, store: Any) -> None:
        store.update_user(
            default_hourly_rate=self.default_hourly_rate,
            preferred_currency=self.preferred_currency,
        )
        store.set_setting(
            TRACKING_START_DATE_KEY, to_naive_local(self.tracking_start_date).isoformat()
        )
