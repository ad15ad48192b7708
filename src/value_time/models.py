"""Domain models for tracked activities, projects and sessions."""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from typing import Optional

from .timemath import duration_seconds


class ActivityCategory(str, Enum):
    WORK = "work"
    LEISURE = "leisure"
    SLEEP = "sleep"
    EXERCISE = "exercise"
    STUDY = "study"
    PERSONAL = "personal"
    HOBBY = "hobby"
    OTHER = "other"


class BudgetType(str, Enum):
    HOURLY = "hourly"
    FIXED = "fixed"


@dataclass(slots=True)
class Project:
    """A billing container grouping activities under one rate and budget."""

    id: Optional[int]
    name: str
    hourly_rate: float = 0.0
    budget_type: BudgetType = BudgetType.HOURLY
    budget: float = 0.0
    start_date: datetime | None = None
    end_date: datetime | None = None
    color: str = "#4285F4"

    @property
    def is_fixed_budget(self) -> bool:
        return self.budget_type is BudgetType.FIXED


@dataclass(slots=True)
class Activity:
    """A trackable category of time use, optionally tied to a project."""

    id: Optional[int]
    name: str
    category: ActivityCategory = ActivityCategory.OTHER
    hourly_rate: float = 0.0
    project_id: Optional[int] = None
    color: str = "#4285F4"
    icon: str = "clock"


@dataclass(slots=True)
class ActivitySession:
    """One contiguous, possibly pause-interrupted, interval of tracked time.

    ``end_time`` is ``None`` while the session is open. While paused,
    ``pause_time`` holds the instant the pause began; resuming shifts
    ``start_time`` forward by the pause length so that the running elapsed
    time is always ``now - start_time``.
    """

    id: Optional[int]
    activity_id: int
    start_time: datetime
    end_time: Optional[datetime] = None
    is_paused: bool = False
    pause_time: Optional[datetime] = None
    note: Optional[str] = None

    @property
    def is_open(self) -> bool:
        return self.end_time is None

    @property
    def duration_seconds(self) -> float:
        if self.end_time is None:
            return 0.0
        return duration_seconds(self.start_time, self.end_time)

    def elapsed_at(self, now: datetime) -> float:
        """Tracked seconds as of ``now``, excluding any pause in progress."""
        if self.end_time is not None:
            return self.duration_seconds
        if self.is_paused and self.pause_time is not None:
            return max(0.0, duration_seconds(self.start_time, self.pause_time))
        return max(0.0, duration_seconds(self.start_time, now))


@dataclass(slots=True)
class UserProfile:
    id: Optional[int]
    name: str = "Default User"
    default_hourly_rate: float = 25.0
    preferred_currency: str = "USD"
