"""
Operation Executor: runs one sync phase against the target environment.

Behavioral Contract:
- Operations within a phase run concurrently on a bounded worker pool
- Each operation is isolated: its failure never blocks other resources
- Transient failures (conflict, timeout) are retried with exponential backoff
  up to the retry strategy's attempt bound; rejections are not retried
- Deleting an already absent resource counts as success
- Once the cancel event is set no further operation (or retry attempt) starts;
  attempts already in flight complete
"""

import logging
import threading
from concurrent.futures import ThreadPoolExecutor
from typing import List, Optional, Tuple

from sync_kernel.errors import ApplyError, DeleteNotFoundError
from sync_kernel.models.policy import RetryStrategy
from sync_kernel.models.sync import (
    Classification,
    OperationAction,
    OperationStatus,
    PlannedOperation,
    ResourceError,
    ResourceResult,
)
from sync_kernel.target.environment import TargetEnvironment

logger = logging.getLogger(__name__)

_CLASSIFICATION = {
    OperationAction.CREATE: Classification.TO_CREATE,
    OperationAction.UPDATE: Classification.TO_UPDATE,
    OperationAction.DELETE: Classification.TO_DELETE,
}


class OperationExecutor:
    """Dispatches planned apply/delete operations with retry and isolation."""

    def __init__(
        self,
        environment: TargetEnvironment,
        retry: Optional[RetryStrategy] = None,
        max_workers: int = 8,
    ):
        self.environment = environment
        self.retry = retry or RetryStrategy()
        self.max_workers = max(1, max_workers)

    def run_phase(
        self,
        operations: List[PlannedOperation],
        cancel: Optional[threading.Event] = None,
    ) -> List[Tuple[ResourceResult, Optional[ResourceError]]]:
        """Execute a phase; results keep the order of ``operations``."""
        if not operations:
            return []
        cancel = cancel or threading.Event()
        workers = min(self.max_workers, len(operations))
        with ThreadPoolExecutor(max_workers=workers, thread_name_prefix="sync-op") as pool:
            futures = [pool.submit(self.execute, op, cancel) for op in operations]
            return [f.result() for f in futures]

    def execute(
        self,
        operation: PlannedOperation,
        cancel: threading.Event,
    ) -> Tuple[ResourceResult, Optional[ResourceError]]:
        """Run one operation to completion, retrying transient failures."""
        classification = _CLASSIFICATION[operation.action]
        attempts = 0
        last_error: Optional[Exception] = None

        while attempts < self.retry.max_attempts:
            if cancel.is_set():
                return self._cancelled(operation, classification, attempts, last_error), None

            attempts += 1
            try:
                message = self._dispatch(operation)
                return ResourceResult(
                    key=operation.key,
                    classification=classification,
                    status=OperationStatus.SUCCEEDED,
                    attempts=attempts,
                    message=message,
                ), None
            except ApplyError as e:
                last_error = e
                if not e.retryable:
                    break
                if attempts < self.retry.max_attempts:
                    delay = self.retry.delay_for(attempts)
                    logger.info(
                        "%s %s failed (%s), retry %d/%d in %.1fs",
                        operation.action.value, operation.key, e.kind,
                        attempts, self.retry.max_attempts - 1, delay,
                    )
                    # Waiting on the cancel event lets a superseding revision cut the backoff short
                    cancel.wait(delay)
            except Exception as e:
                logger.exception("%s %s raised unexpectedly", operation.action.value, operation.key)
                last_error = e
                break

        return self._failed(operation, classification, attempts, last_error)

    def _dispatch(self, operation: PlannedOperation) -> str:
        if operation.action == OperationAction.DELETE:
            try:
                self.environment.delete(operation.key)
            except DeleteNotFoundError:
                return "already absent"
            return "deleted"

        stored = self.environment.apply(operation.resource)
        verb = "created" if operation.action == OperationAction.CREATE else "updated"
        return f"{verb} (resourceVersion {stored.resource_version})"

    def _cancelled(
        self,
        operation: PlannedOperation,
        classification: Classification,
        attempts: int,
        last_error: Optional[Exception],
    ) -> ResourceResult:
        message = "superseded before start"
        if last_error is not None:
            message = f"superseded while retrying: {last_error}"
        return ResourceResult(
            key=operation.key,
            classification=classification,
            status=OperationStatus.CANCELLED,
            attempts=attempts,
            message=message,
        )

    def _failed(
        self,
        operation: PlannedOperation,
        classification: Classification,
        attempts: int,
        error: Optional[Exception],
    ) -> Tuple[ResourceResult, ResourceError]:
        kind = error.kind if isinstance(error, ApplyError) else "Error"
        message = str(error) if error is not None else "unknown failure"
        logger.warning(
            "%s %s failed after %d attempt(s): %s", operation.action.value, operation.key, attempts, message
        )
        return (
            ResourceResult(
                key=operation.key,
                classification=classification,
                status=OperationStatus.FAILED,
                attempts=attempts,
                message=message,
            ),
            ResourceError(key=operation.key, kind=kind, message=message, attempts=attempts),
        )
