"""
Target Environment: the externally owned live resource set.

Updated by: the reconciler's apply/delete calls (and out-of-band edits)
Queried by: the reconciler at the start of every pass

The reconciler never caches what it reads here across passes.
"""

import threading
from datetime import datetime, timezone
from typing import Dict, List, Optional, Protocol

from sync_kernel.errors import ApplyRejectedError, DeleteNotFoundError
from sync_kernel.models.policy import DEFAULT_SERVER
from sync_kernel.models.resource import ResourceDefinition, ResourceKey


class TargetEnvironment(Protocol):
    """Interface every target environment satisfies."""

    server: str

    def get(self, key: ResourceKey) -> Optional[ResourceDefinition]:
        ...

    def list(self, namespace: str) -> List[ResourceDefinition]:
        ...

    def apply(self, resource: ResourceDefinition) -> ResourceDefinition:
        ...

    def delete(self, key: ResourceKey) -> None:
        ...


def validate_definition(resource: ResourceDefinition) -> None:
    """Reject definitions no environment could store."""
    if not resource.kind or not resource.name:
        raise ApplyRejectedError(f"{resource.key}: kind and name are required")
    if resource.cluster_scoped and resource.namespace:
        raise ApplyRejectedError(f"{resource.key}: {resource.kind} is cluster-scoped")
    if not resource.cluster_scoped and not resource.namespace:
        raise ApplyRejectedError(f"{resource.key}: namespace is required")


class InMemoryEnvironment:
    """
    Thread-safe in-memory cluster.
    Every write bumps a global resource version, like an API server would.
    """

    def __init__(self, server: str = DEFAULT_SERVER):
        self.server = server
        self._resources: Dict[ResourceKey, ResourceDefinition] = {}
        self._version = 0
        self._lock = threading.Lock()

    def __len__(self) -> int:
        with self._lock:
            return len(self._resources)

    def keys(self) -> List[ResourceKey]:
        with self._lock:
            return sorted(self._resources, key=lambda k: k.sort_key)

    def get(self, key: ResourceKey) -> Optional[ResourceDefinition]:
        with self._lock:
            resource = self._resources.get(key)
            return resource.model_copy(deep=True) if resource else None

    def list(self, namespace: str) -> List[ResourceDefinition]:
        with self._lock:
            found = [r for k, r in self._resources.items() if k.namespace == namespace]
            return [r.model_copy(deep=True) for r in sorted(found, key=lambda r: r.key.sort_key)]

    def apply(self, resource: ResourceDefinition) -> ResourceDefinition:
        """Create or replace a resource and return the stored object."""
        validate_definition(resource)
        now = datetime.now(timezone.utc)
        with self._lock:
            existing = self._resources.get(resource.key)
            self._version += 1
            stored = resource.model_copy(
                deep=True,
                update={
                    "resource_version": self._version,
                    "created_at": existing.created_at if existing else now,
                    "updated_at": now,
                },
            )
            self._resources[resource.key] = stored
            return stored.model_copy(deep=True)

    def delete(self, key: ResourceKey) -> None:
        with self._lock:
            if key not in self._resources:
                raise DeleteNotFoundError(f"{key} not found")
            del self._resources[key]
