"""Sync policy: how aggressively a source is converged."""

from enum import Enum
from typing import List, Optional

from croniter import croniter
from pydantic import BaseModel, Field, field_validator

from sync_kernel.models.resource import ResourceKey

DEFAULT_SERVER = "https://kubernetes.default.svc"


class RetryStrategy(BaseModel):
    """Bounded exponential backoff for transient per-resource failures."""

    max_attempts: int = Field(ge=1, default=5)
    backoff_seconds: float = Field(ge=0, default=5.0)
    factor: float = Field(ge=1, default=2.0)
    max_backoff_seconds: float = Field(ge=0, default=180.0)

    def delay_for(self, attempt: int) -> float:
        """Delay before the attempt following failed attempt number ``attempt`` (1-based)."""
        delay = self.backoff_seconds * (self.factor ** (attempt - 1))
        return min(delay, self.max_backoff_seconds)


class SyncWindowKind(str, Enum):
    ALLOW = "allow"
    DENY = "deny"


class SyncWindow(BaseModel):
    """A cron-scheduled period during which syncs are allowed or denied."""

    kind: SyncWindowKind
    schedule: str                           # Cron expression marking the window start
    duration_seconds: int = Field(gt=0)
    manual_sync: bool = False               # Manual syncs may bypass this window

    @field_validator("schedule")
    @classmethod
    def _valid_cron(cls, value: str) -> str:
        if not croniter.is_valid(value):
            raise ValueError(f"Invalid cron schedule: {value!r}")
        return value


class IgnoreDifference(BaseModel):
    """Spec paths excluded from drift detection for matching resources."""

    kind: Optional[str] = None              # None matches every kind
    name: Optional[str] = None
    namespace: Optional[str] = None
    json_pointers: List[str] = []           # e.g. "/spec/replicas"

    def matches(self, key: ResourceKey) -> bool:
        return (
            (self.kind is None or self.kind == key.kind)
            and (self.name is None or self.name == key.name)
            and (self.namespace is None or self.namespace == key.namespace)
        )


class SyncPolicy(BaseModel):
    """
    prune:     delete live resources absent from the source
    self_heal: overwrite live resources that drifted from the source
    automated: sync on poll/webhook without a manual trigger
    """

    prune: bool = False
    self_heal: bool = False
    automated: bool = False
    server: str = DEFAULT_SERVER
    namespace: str = "default"
    poll_interval_seconds: int = Field(ge=1, default=180)
    retry: RetryStrategy = RetryStrategy()
    ignore_differences: List[IgnoreDifference] = []
    sync_windows: List[SyncWindow] = []

    def ignored_pointers(self, key: ResourceKey) -> List[str]:
        pointers: List[str] = []
        for rule in self.ignore_differences:
            if rule.matches(key):
                pointers.extend(rule.json_pointers)
        return pointers
