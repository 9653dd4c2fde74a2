"""Resource definitions: the unit the reconciler diffs, applies and deletes."""

from datetime import datetime
from typing import Any, Dict, Optional

from pydantic import BaseModel, ConfigDict

# Kinds that live outside any namespace. They never inherit the source namespace.
CLUSTER_SCOPED_KINDS = frozenset({
    "APIService",
    "ClusterIssuer",
    "ClusterRole",
    "ClusterRoleBinding",
    "CustomResourceDefinition",
    "IngressClass",
    "MutatingWebhookConfiguration",
    "Namespace",
    "PersistentVolume",
    "PriorityClass",
    "StorageClass",
    "ValidatingWebhookConfiguration",
})


class ResourceKey(BaseModel):
    """Unique identity of a resource: (kind, namespace, name)."""

    model_config = ConfigDict(frozen=True)

    kind: str
    namespace: str = ""                     # "" for cluster-scoped resources
    name: str

    def __str__(self) -> str:
        if self.namespace:
            return f"{self.kind}/{self.namespace}/{self.name}"
        return f"{self.kind}/{self.name}"

    @property
    def sort_key(self) -> tuple:
        return (self.kind, self.namespace, self.name)

    @classmethod
    def parse(cls, value: str) -> "ResourceKey":
        """Parse ``Kind/namespace/name`` or ``Kind/name``."""
        parts = value.split("/")
        if len(parts) == 3 and all(parts[::2]):
            return cls(kind=parts[0], namespace=parts[1], name=parts[2])
        if len(parts) == 2 and all(parts):
            return cls(kind=parts[0], name=parts[1])
        raise ValueError(f"Invalid resource key: {value!r}")


class ResourceDefinition(BaseModel):
    """
    A declarative object. ``spec`` holds every manifest field other than
    apiVersion, kind, metadata and status, and is the only part compared
    during reconciliation.
    """

    api_version: str = "v1"
    kind: str
    name: str
    namespace: str = ""
    labels: Dict[str, str] = {}
    annotations: Dict[str, str] = {}
    spec: Dict[str, Any] = {}

    # Server-managed metadata, never compared
    resource_version: Optional[int] = None
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None

    @property
    def key(self) -> ResourceKey:
        return ResourceKey(kind=self.kind, namespace=self.namespace, name=self.name)

    @property
    def cluster_scoped(self) -> bool:
        return self.kind in CLUSTER_SCOPED_KINDS

    def desired_copy(self) -> "ResourceDefinition":
        """Deep copy without server-managed metadata."""
        return self.model_copy(
            deep=True,
            update={"resource_version": None, "created_at": None, "updated_at": None},
        )
