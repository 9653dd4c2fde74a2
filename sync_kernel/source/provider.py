"""
Desired State Providers: versioned repositories of resource definitions.

Behavioral Contract:
- fetch(revision) returns the ordered resource list declared at that revision
- latest_revision() returns the identifier of the newest revision
- Every failure to reach the source or resolve a revision raises FetchError
- Returned definitions are copies; callers may not mutate the repository through them
"""

import hashlib
import json
import logging
import threading
from pathlib import Path
from typing import Dict, List, Optional, Protocol, Sequence, Tuple

from pydantic import ValidationError

from sync_kernel.errors import FetchError
from sync_kernel.models.policy import SyncPolicy
from sync_kernel.models.resource import ResourceDefinition
from sync_kernel.models.source import DesiredStateSource
from sync_kernel.source.manifests import ManifestError, load_manifests

logger = logging.getLogger(__name__)

HEAD = "HEAD"


class DesiredStateProvider(Protocol):
    """Interface every source provider satisfies."""

    location: str

    def fetch(self, revision: str) -> List[ResourceDefinition]:
        ...

    def latest_revision(self) -> str:
        ...


def content_revision(resources: Sequence[ResourceDefinition]) -> str:
    """Deterministic revision id derived from resource content."""
    payload = [r.desired_copy().model_dump(mode="json") for r in resources]
    digest = hashlib.sha256(json.dumps(payload, sort_keys=True, default=str).encode())
    return digest.hexdigest()[:12]


class InMemorySourceRepository:
    """
    Commit-addressed repository held in memory.
    Every commit produces a new immutable revision; older revisions stay fetchable.
    """

    def __init__(self, location: str = "memory://default"):
        self.location = location
        self._revisions: Dict[str, Tuple[ResourceDefinition, ...]] = {}
        self._history: List[str] = []
        self._lock = threading.Lock()

    def commit(
        self,
        resources: Sequence[ResourceDefinition],
        revision: Optional[str] = None,
    ) -> str:
        """Record a new revision and return its identifier."""
        snapshot = tuple(r.desired_copy() for r in resources)
        revision = revision or content_revision(snapshot)
        with self._lock:
            if revision in self._revisions and self._revisions[revision] != snapshot:
                raise ValueError(f"Revision {revision} already exists with different content")
            self._revisions[revision] = snapshot
            if revision in self._history:
                self._history.remove(revision)
            self._history.append(revision)
        return revision

    @property
    def revisions(self) -> List[str]:
        with self._lock:
            return list(self._history)

    def latest_revision(self) -> str:
        with self._lock:
            if not self._history:
                raise FetchError(f"{self.location}: repository has no revisions")
            return self._history[-1]

    def fetch(self, revision: str) -> List[ResourceDefinition]:
        if revision == HEAD:
            revision = self.latest_revision()
        with self._lock:
            snapshot = self._revisions.get(revision)
        if snapshot is None:
            raise FetchError(f"{self.location}: unknown revision {revision}", revision=revision)
        return [r.model_copy(deep=True) for r in snapshot]


class ManifestDirectoryProvider:
    """
    Reads every *.yaml / *.yml file below a directory.
    The directory only holds its current revision: the SHA-256 of its files.
    """

    PATTERNS = ("*.yaml", "*.yml")

    def __init__(self, path, location: Optional[str] = None):
        self.path = Path(path)
        # A checkout may advertise the repository URL it was cloned from
        self.location = location or str(self.path)

    def _read_files(self) -> List[Tuple[str, str]]:
        if not self.path.is_dir():
            raise FetchError(f"{self.path}: manifest directory not found")
        files = set()
        for pattern in self.PATTERNS:
            files.update(self.path.rglob(pattern))
        try:
            return [
                (f.relative_to(self.path).as_posix(), f.read_text(encoding="utf-8"))
                for f in sorted(files)
            ]
        except OSError as e:
            raise FetchError(f"{self.location}: {e}") from e

    @staticmethod
    def _revision_of(files: List[Tuple[str, str]]) -> str:
        digest = hashlib.sha256()
        for name, text in files:
            digest.update(name.encode())
            digest.update(b"\0")
            digest.update(text.encode())
            digest.update(b"\0")
        return digest.hexdigest()[:12]

    def latest_revision(self) -> str:
        return self._revision_of(self._read_files())

    def fetch(self, revision: str) -> List[ResourceDefinition]:
        files = self._read_files()
        current = self._revision_of(files)
        if revision not in (HEAD, current):
            raise FetchError(
                f"{self.location}: revision {revision} is no longer available (current {current})",
                revision=revision,
            )
        resources: List[ResourceDefinition] = []
        for name, text in files:
            try:
                resources.extend(load_manifests(text, origin=name))
            except ManifestError as e:
                raise FetchError(f"{self.location}: {e}", revision=revision) from e
        return resources


def resolve_revision(provider: DesiredStateProvider, target_revision: str = HEAD) -> str:
    if target_revision in ("", HEAD):
        return provider.latest_revision()
    return target_revision


def fetch_source(
    provider: DesiredStateProvider,
    name: str,
    policy: SyncPolicy,
    revision: Optional[str] = None,
    path: str = "",
) -> DesiredStateSource:
    """Fetch one revision and freeze it into a DesiredStateSource snapshot."""
    revision = resolve_revision(provider, revision or HEAD)
    resources = provider.fetch(revision)
    try:
        source = DesiredStateSource(
            name=name,
            repo_url=provider.location,
            path=path,
            revision=revision,
            server=policy.server,
            namespace=policy.namespace,
            resources=tuple(resources),
        )
    except ValidationError as e:
        raise FetchError(f"{provider.location}@{revision}: invalid source: {e}", revision=revision) from e
    logger.debug("Fetched %s@%s (%d resources)", name, revision, len(source.resources))
    return source
