"""
Sync windows: temporal authority over when a source may be synced.

A window opens at every cron fire time of its schedule and stays open for
duration_seconds. Syncs are blocked while any deny window is open, or when
allow windows exist and none of them is open.
"""

from datetime import datetime, timedelta
from typing import List

from croniter import croniter

from sync_kernel.models.policy import SyncWindow, SyncWindowKind


def is_window_active(window: SyncWindow, current_time: datetime) -> bool:
    """Determine whether ``window`` is open at ``current_time``."""
    # Start one second later so a fire time equal to current_time counts as the last one
    cron = croniter(window.schedule, current_time + timedelta(seconds=1))
    opened_at = cron.get_prev(datetime)
    return opened_at <= current_time < opened_at + timedelta(seconds=window.duration_seconds)


def blocking_windows(windows: List[SyncWindow], current_time: datetime) -> List[SyncWindow]:
    """Windows currently preventing a sync."""
    blocking = [
        w for w in windows
        if w.kind == SyncWindowKind.DENY and is_window_active(w, current_time)
    ]
    allows = [w for w in windows if w.kind == SyncWindowKind.ALLOW]
    if allows and not any(is_window_active(w, current_time) for w in allows):
        blocking.extend(allows)
    return blocking


def sync_allowed(windows: List[SyncWindow], current_time: datetime, manual: bool = False) -> bool:
    """Manual syncs pass only if every blocking window permits them."""
    blocking = blocking_windows(windows, current_time)
    if not blocking:
        return True
    return manual and all(w.manual_sync for w in blocking)
