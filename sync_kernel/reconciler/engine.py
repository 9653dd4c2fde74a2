"""
Reconciler: converges a live resource set toward a desired-state snapshot.

Contract: reconcile(source, live, policy) -> SyncResult

  1. Diff source against live, keyed by (kind, namespace, name)
  2. Classify: ToCreate | ToUpdate | ToDelete | InSync
  3. Creates always run; updates run with self_heal or on manual syncs;
     deletes run only with prune
  4. Phases run in order: creates, updates, deletes
  5. Per-resource failures are collected, never raised

The live set is read afresh on every call; nothing is cached between passes.
"""

import logging
import threading
from datetime import datetime, timezone
from typing import Dict, List, Optional
from uuid import uuid4

from sync_kernel.models.policy import SyncPolicy
from sync_kernel.models.reconciler import ReconcilerConfig
from sync_kernel.models.resource import ResourceDefinition, ResourceKey
from sync_kernel.models.source import DesiredStateSource
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
    classification_counts,
)
from sync_kernel.reconciler.diff import compute_diff
from sync_kernel.reconciler.executor import OperationExecutor
from sync_kernel.target.environment import TargetEnvironment

logger = logging.getLogger(__name__)

_PHASES = (
    (Classification.TO_CREATE, OperationAction.CREATE),
    (Classification.TO_UPDATE, OperationAction.UPDATE),
    (Classification.TO_DELETE, OperationAction.DELETE),
)


def _now() -> datetime:
    return datetime.now(timezone.utc)


class Reconciler:
    """Stateless diff-and-apply engine shared by every managed source."""

    def __init__(self, config: Optional[ReconcilerConfig] = None):
        self.config = config or ReconcilerConfig()

    def live_resources(
        self, source: DesiredStateSource, live: TargetEnvironment
    ) -> Dict[ResourceKey, ResourceDefinition]:
        """
        Read the live set for every namespace the source touches.

        Declared keys are always included. Any other resource must be owned by the
        source: labelled with its name, or unlabelled inside the destination namespace.
        Resources labelled for another source never enter the set, so prune cannot reach them.
        """
        label = self.config.tracking_label
        desired = source.by_key()
        found: Dict[ResourceKey, ResourceDefinition] = {}
        for namespace in source.namespaces():
            for resource in live.list(namespace):
                if resource.key in desired or self._owned(resource, source, label):
                    found[resource.key] = resource
        return found

    @staticmethod
    def _owned(resource: ResourceDefinition, source: DesiredStateSource, label: Optional[str]) -> bool:
        if not label:
            return True
        owner = resource.labels.get(label)
        if owner is not None:
            return owner == source.name
        return resource.namespace == source.namespace

    def compare(
        self,
        source: DesiredStateSource,
        live: TargetEnvironment,
        policy: SyncPolicy,
    ) -> ComparisonResult:
        """Diff only. Nothing in the target environment is touched."""
        diffs = compute_diff(source, self.live_resources(source, live), policy)
        drifted = any(d.classification != Classification.IN_SYNC for d in diffs)
        return ComparisonResult(
            source_name=source.name,
            revision=source.revision,
            diffs=diffs,
            sync_state=SyncState.OUT_OF_SYNC if drifted else SyncState.IN_SYNC,
            compared_at=_now(),
        )

    def reconcile(
        self,
        source: DesiredStateSource,
        live: TargetEnvironment,
        policy: SyncPolicy,
        trigger: SyncTrigger = SyncTrigger.POLL,
        cancel: Optional[threading.Event] = None,
    ) -> SyncResult:
        """Run one reconciliation pass and report what happened."""
        started_at = _now()
        cancel = cancel or threading.Event()
        manual = trigger == SyncTrigger.MANUAL

        diffs = compute_diff(source, self.live_resources(source, live), policy)
        executor = OperationExecutor(
            live, retry=policy.retry, max_workers=self.config.max_parallel_operations
        )

        results: List[ResourceResult] = []
        errors: List[ResourceError] = []

        for diff in diffs:
            if diff.classification == Classification.IN_SYNC:
                results.append(ResourceResult(
                    key=diff.key,
                    classification=diff.classification,
                    status=OperationStatus.UNCHANGED,
                ))

        for classification, action in _PHASES:
            entries = [d for d in diffs if d.classification == classification]
            if not entries:
                continue

            reason = self._skip_reason(classification, policy, manual)
            if reason:
                results.extend(self._skipped(entries, reason))
                continue

            if cancel.is_set():
                results.extend(self._cancelled(entries))
                continue

            operations = [self._plan(d, action, source) for d in entries]
            for result, error in executor.run_phase(operations, cancel):
                results.append(result)
                if error is not None:
                    errors.append(error)

        cancelled = any(r.status == OperationStatus.CANCELLED for r in results)
        sync_state = self._final_state(results, errors)
        applied = self._applied_counts(results)

        result = SyncResult(
            id=f"sync_{uuid4().hex[:12]}",
            source_name=source.name,
            revision=source.revision,
            trigger=trigger,
            started_at=started_at,
            finished_at=_now(),
            counts=classification_counts([d.classification for d in diffs]),
            applied=applied,
            resources=results,
            errors=errors,
            sync_state=sync_state,
            cancelled=cancelled,
        )
        logger.info(
            "Synced %s@%s (%s): %s, applied %s, %d error(s)%s",
            source.name, source.revision, trigger.value, sync_state.value,
            applied, len(errors), " [cancelled]" if cancelled else "",
        )
        return result

    def _plan(
        self, diff: ResourceDiff, action: OperationAction, source: DesiredStateSource
    ) -> PlannedOperation:
        resource = None
        if action != OperationAction.DELETE:
            resource = diff.desired.desired_copy()
            label = self.config.tracking_label
            if label:
                resource.labels = {**resource.labels, label: source.name}
        return PlannedOperation(action=action, key=diff.key, resource=resource)

    @staticmethod
    def _skip_reason(
        classification: Classification, policy: SyncPolicy, manual: bool
    ) -> Optional[str]:
        if classification == Classification.TO_UPDATE and not (policy.self_heal or manual):
            return "self-heal disabled; drift reported only"
        if classification == Classification.TO_DELETE and not policy.prune:
            return "prune disabled; extra resource reported only"
        return None

    @staticmethod
    def _skipped(entries: List[ResourceDiff], reason: str) -> List[ResourceResult]:
        return [
            ResourceResult(
                key=d.key,
                classification=d.classification,
                status=OperationStatus.SKIPPED,
                message=reason,
            )
            for d in entries
        ]

    @staticmethod
    def _cancelled(entries: List[ResourceDiff]) -> List[ResourceResult]:
        return [
            ResourceResult(
                key=d.key,
                classification=d.classification,
                status=OperationStatus.CANCELLED,
                message="superseded before start",
            )
            for d in entries
        ]

    @staticmethod
    def _final_state(results: List[ResourceResult], errors: List[ResourceError]) -> SyncState:
        if errors:
            return SyncState.ERROR
        if any(r.status in (OperationStatus.SKIPPED, OperationStatus.CANCELLED) for r in results):
            return SyncState.OUT_OF_SYNC
        return SyncState.IN_SYNC

    @staticmethod
    def _applied_counts(results: List[ResourceResult]) -> Dict[str, int]:
        applied = {action.value: 0 for action in OperationAction}
        for r in results:
            if r.status != OperationStatus.SUCCEEDED:
                continue
            for classification, action in _PHASES:
                if r.classification == classification:
                    applied[action.value] += 1
        return applied
