"""Desired State Source: one immutable revision of the declared resource set."""

from typing import Dict, List, Optional, Tuple

from pydantic import BaseModel, ConfigDict, ValidationInfo, field_validator

from sync_kernel.models.policy import DEFAULT_SERVER, SyncPolicy
from sync_kernel.models.resource import ResourceDefinition, ResourceKey


class DesiredStateSource(BaseModel):
    """
    A versioned snapshot of resource definitions for one managed source.
    A new revision supersedes the prior one as a whole; snapshots are never edited.
    """

    model_config = ConfigDict(frozen=True)

    name: str
    repo_url: str = ""
    path: str = ""
    revision: str
    server: str = DEFAULT_SERVER
    namespace: str = "default"
    resources: Tuple[ResourceDefinition, ...] = ()

    @field_validator("resources")
    @classmethod
    def _resolve_namespaces(
        cls, resources: Tuple[ResourceDefinition, ...], info: ValidationInfo
    ) -> Tuple[ResourceDefinition, ...]:
        """Default namespaced resources to the source namespace and reject duplicate keys."""
        namespace = info.data.get("namespace", "default")
        seen = set()
        resolved = []
        for resource in resources:
            if not resource.namespace and not resource.cluster_scoped:
                resource = resource.model_copy(update={"namespace": namespace})
            if resource.key in seen:
                raise ValueError(f"Duplicate resource in source: {resource.key}")
            seen.add(resource.key)
            resolved.append(resource)
        return tuple(resolved)

    def by_key(self) -> Dict[ResourceKey, ResourceDefinition]:
        return {r.key: r for r in self.resources}

    def namespaces(self) -> List[str]:
        """Every namespace this source touches; "" stands for the cluster scope."""
        found = {self.namespace}
        found.update(r.namespace for r in self.resources)
        return sorted(found)


class ApplicationSpec(BaseModel):
    """A managed source as declared in an Application manifest."""

    name: str
    repo_url: str
    path: str = ""
    target_revision: str = "HEAD"
    policy: SyncPolicy = SyncPolicy()
    project: Optional[str] = None
