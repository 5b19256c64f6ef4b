"""Heartbeat-based advisory lock on a sync connection."""

from datetime import datetime, timedelta
from typing import Any

from engagesync.services.parsers import parse_datetime


def heartbeat_age(progress: Any, now: datetime) -> timedelta | None:
    """Age of the persisted heartbeat, None when there is none."""
    heartbeat = parse_datetime(progress.get("heartbeat")) if isinstance(progress, dict) else None
    if heartbeat is None:
        return None
    return now - heartbeat


def is_locked(sync_status: str | None, progress: Any, now: datetime, timeout_ms: int) -> bool:
    """
    True while another invocation holds the connection.

    Only a ``syncing`` status with a heartbeat younger than ``timeout_ms``
    counts; a missing or stale heartbeat means the holder died and the lock
    is released implicitly.
    """
    if sync_status != "syncing":
        return False
    age = heartbeat_age(progress, now)
    return age is not None and age < timedelta(milliseconds=timeout_ms)
