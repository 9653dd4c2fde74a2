"""Sync kernel data models."""

from sync_kernel.models.policy import (
    DEFAULT_SERVER,
    IgnoreDifference,
    RetryStrategy,
    SyncPolicy,
    SyncWindow,
    SyncWindowKind,
)
from sync_kernel.models.reconciler import ReconcilerConfig, SourcePhase, SourceStatus
from sync_kernel.models.resource import (
    CLUSTER_SCOPED_KINDS,
    ResourceDefinition,
    ResourceKey,
)
from sync_kernel.models.source import ApplicationSpec, DesiredStateSource
from sync_kernel.models.sync import (
    Classification,
    ComparisonResult,
    OperationAction,
    OperationStatus,
    PlannedOperation,
    ResourceDiff,
    ResourceError,
    ResourceResult,
    SyncResult,
    SyncState,
    SyncTrigger,
)

__all__ = [
    "ApplicationSpec",
    "CLUSTER_SCOPED_KINDS",
    "Classification",
    "ComparisonResult",
    "DEFAULT_SERVER",
    "DesiredStateSource",
    "IgnoreDifference",
    "OperationAction",
    "OperationStatus",
    "PlannedOperation",
    "ReconcilerConfig",
    "ResourceDefinition",
    "ResourceDiff",
    "ResourceError",
    "ResourceKey",
    "ResourceResult",
    "RetryStrategy",
    "SourcePhase",
    "SourceStatus",
    "SyncPolicy",
    "SyncResult",
    "SyncState",
    "SyncTrigger",
    "SyncWindow",
    "SyncWindowKind",
]
