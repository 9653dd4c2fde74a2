"""
Error kinds raised across the sync kernel.

Only FetchError aborts a whole sync. Every ApplyError is scoped to a single
resource and is collected into the sync result instead of propagating.
"""

from typing import Optional


class SyncKernelError(Exception):
    """Base class for all sync kernel errors."""
    pass


class FetchError(SyncKernelError):
    """The desired-state source is unreachable or the revision is invalid."""

    def __init__(self, message: str, revision: Optional[str] = None):
        super().__init__(message)
        self.revision = revision


class ApplyError(SyncKernelError):
    """A single apply/delete against the target environment failed."""

    kind = "Error"
    retryable = False


class ApplyConflictError(ApplyError):
    """The live resource changed concurrently outside the reconciler."""

    kind = "ApplyConflict"
    retryable = True


class ApplyTimeoutError(ApplyError):
    """The target environment did not answer in time."""

    kind = "ApplyTimeout"
    retryable = True


class ApplyRejectedError(ApplyError):
    """The target environment rejected the definition (e.g. validation)."""

    kind = "ApplyRejected"


class DeleteNotFoundError(ApplyError):
    """The resource to delete is already absent."""

    kind = "DeleteNotFound"


class LiveStateError(SyncKernelError):
    """A live resource could not be read back from the target environment."""
    pass


class SyncWindowClosedError(SyncKernelError):
    """A sync window blocks the requested sync."""
    pass


class UnknownSourceError(SyncKernelError, KeyError):
    """No managed source is registered under the given name."""

    def __str__(self) -> str:
        return Exception.__str__(self)
