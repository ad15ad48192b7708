"""Where the tracker keeps its database and log file.

The data directory is the platform's per-user data directory unless
``VALUE_TIME_HOME`` points somewhere else. An explicit ``--db`` path always
wins over both.
"""

from __future__ import annotations

import os
from pathlib import Path
from typing import Optional, Union

from platformdirs import user_data_path

HOME_ENV = "VALUE_TIME_HOME"
DB_FILENAME = "value_time.sqlite3"
LOG_FILENAME = "value_time.log"


def data_dir() -> Path:
    override = os.environ.get(HOME_ENV, "").strip()
    if override:
        path = Path(override).expanduser()
        path.mkdir(parents=True, exist_ok=True)
        return path
    return user_data_path("ValueTime", appauthor=False, roaming=True, ensure_exists=True)


def resolve_db_path(explicit: Optional[Union[Path, str]] = None) -> Path:
    """Return ``explicit`` if given, else the database inside :func:`data_dir`."""
    if explicit is not None:
        return Path(explicit).expanduser()
    return data_dir() / DB_FILENAME


def log_path() -> Path:
    return data_dir() / LOG_FILENAME
