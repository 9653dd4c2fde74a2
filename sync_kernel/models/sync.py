"""Sync results: the per-pass report consumed by status endpoints and history."""

from datetime import datetime
from enum import Enum
from typing import Dict, List, Optional

from pydantic import BaseModel

from sync_kernel.models.resource import ResourceDefinition, ResourceKey


class SyncState(str, Enum):
    IN_SYNC = "InSync"
    OUT_OF_SYNC = "OutOfSync"
    SYNCING = "Syncing"
    ERROR = "Error"


class Classification(str, Enum):
    TO_CREATE = "ToCreate"        # In source, not in live
    TO_UPDATE = "ToUpdate"        # In both, specs differ
    TO_DELETE = "ToDelete"        # In live, not in source
    IN_SYNC = "InSync"            # In both, specs equal


class SyncTrigger(str, Enum):
    POLL = "poll"
    WEBHOOK = "webhook"
    MANUAL = "manual"


class OperationAction(str, Enum):
    CREATE = "create"
    UPDATE = "update"
    DELETE = "delete"


class OperationStatus(str, Enum):
    SUCCEEDED = "Succeeded"
    FAILED = "Failed"
    SKIPPED = "Skipped"           # Policy forbids the operation
    CANCELLED = "Cancelled"       # Pass superseded before the operation started
    UNCHANGED = "Unchanged"       # Already in sync


class ResourceDiff(BaseModel):
    """Classification of a single key."""

    key: ResourceKey
    classification: Classification
    desired: Optional[ResourceDefinition] = None
    live: Optional[ResourceDefinition] = None
    changed_paths: List[str] = []


class PlannedOperation(BaseModel):
    """One apply or delete scheduled within a sync phase."""

    action: OperationAction
    key: ResourceKey
    resource: Optional[ResourceDefinition] = None   # None for deletes


class ResourceResult(BaseModel):
    key: ResourceKey
    classification: Classification
    status: OperationStatus
    attempts: int = 0
    message: str = ""


class ResourceError(BaseModel):
    key: ResourceKey
    kind: str                     # ApplyConflict | ApplyTimeout | ApplyRejected | Error
    message: str
    attempts: int


def classification_counts(classifications: List[Classification]) -> Dict[str, int]:
    counts = {c.value: 0 for c in Classification}
    for c in classifications:
        counts[c.value] += 1
    return counts


class ComparisonResult(BaseModel):
    """Outcome of diffing a source against the live set without mutating anything."""

    source_name: str
    revision: str
    diffs: List[ResourceDiff]
    sync_state: SyncState
    compared_at: datetime

    @property
    def counts(self) -> Dict[str, int]:
        return classification_counts([d.classification for d in self.diffs])

    def drifted(self) -> List[ResourceDiff]:
        return [d for d in self.diffs if d.classification != Classification.IN_SYNC]


class SyncResult(BaseModel):
    """Aggregated outcome of one reconciliation pass."""

    id: str
    source_name: str
    revision: str
    trigger: SyncTrigger
    started_at: datetime
    finished_at: datetime
    counts: Dict[str, int]                  # Per classification
    applied: Dict[str, int]                 # Succeeded operations per action
    resources: List[ResourceResult]
    errors: List[ResourceError] = []
    sync_state: SyncState
    cancelled: bool = False
    superseded_by: Optional[str] = None

    @property
    def applied_total(self) -> int:
        return sum(self.applied.values())

    def result_for(self, key: ResourceKey) -> Optional[ResourceResult]:
        for result in self.resources:
            if result.key == key:
                return result
        return None
