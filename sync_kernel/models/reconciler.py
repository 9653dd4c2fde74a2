"""Reconciler configuration and per-source status."""

from datetime import datetime
from enum import Enum
from typing import Optional

from pydantic import BaseModel, Field

from sync_kernel.models.sync import SyncState


class ReconcilerConfig(BaseModel):
    """Configuration for the sync controller."""

    heartbeat_interval_seconds: int = Field(ge=1, default=5)
    cooldown_seconds: int = Field(ge=0, default=5)
    max_parallel_operations: int = Field(ge=1, default=8)
    history_limit: int = Field(ge=1, default=10)
    history_db_path: str = ":memory:"
    tracking_label: Optional[str] = "app.kubernetes.io/instance"  # None disables ownership tracking


class SourcePhase(str, Enum):
    IDLE = "Idle"
    SYNCING = "Syncing"


class SourceStatus(BaseModel):
    """Where a managed source sits in the Idle -> Syncing -> terminal cycle."""

    name: str
    phase: SourcePhase = SourcePhase.IDLE
    sync_state: Optional[SyncState] = None  # Unknown until first compare or sync
    revision: Optional[str] = None
    syncing_revision: Optional[str] = None
    last_synced_at: Optional[datetime] = None
    last_compared_at: Optional[datetime] = None
    last_result_id: Optional[str] = None
    last_error: Optional[str] = None
    cooldown_until: Optional[datetime] = None
    consecutive_failures: int = 0


class SyncOutcome(str, Enum):
    """What the controller did with one sync trigger."""

    COMPLETED = "completed"
    COALESCED = "coalesced"           # Same revision already in flight
    SUPERSEDED = "superseded"         # In-flight pass cancelled; follow-up queued
    WINDOW_CLOSED = "window_closed"
    COOLING_DOWN = "cooling_down"
