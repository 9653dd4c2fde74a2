"""
Manifest codec: YAML documents <-> ResourceDefinition.

Follows the Kubernetes object layout: apiVersion, kind, metadata, and the
remaining top-level fields (spec, data, rules, ...) as the compared payload.
Multi-document streams and ``kind: List`` wrappers are flattened.
"""

from typing import Any, Dict, List

import yaml
from pydantic import ValidationError

from sync_kernel.models.resource import ResourceDefinition

_ENVELOPE_FIELDS = ("apiVersion", "kind", "metadata", "status")


class ManifestError(ValueError):
    """A document is not a valid resource manifest."""
    pass


def parse_manifest(doc: Dict[str, Any], origin: str = "<manifest>") -> ResourceDefinition:
    """Build a ResourceDefinition from one decoded manifest document."""
    if not isinstance(doc, dict):
        raise ManifestError(f"{origin}: expected a mapping, got {type(doc).__name__}")

    kind = doc.get("kind")
    metadata = doc.get("metadata") or {}
    if not kind:
        raise ManifestError(f"{origin}: missing 'kind'")
    if not isinstance(metadata, dict) or not metadata.get("name"):
        raise ManifestError(f"{origin}: {kind} is missing 'metadata.name'")

    spec = {k: v for k, v in doc.items() if k not in _ENVELOPE_FIELDS}
    try:
        return ResourceDefinition(
            api_version=doc.get("apiVersion", "v1"),
            kind=kind,
            name=metadata["name"],
            namespace=metadata.get("namespace") or "",
            labels=metadata.get("labels") or {},
            annotations=metadata.get("annotations") or {},
            spec=spec,
            resource_version=metadata.get("resourceVersion"),
            created_at=metadata.get("creationTimestamp"),
        )
    except ValidationError as e:
        raise ManifestError(f"{origin}: {kind}/{metadata['name']}: {e}") from e


def load_manifests(text: str, origin: str = "<manifest>") -> List[ResourceDefinition]:
    """Parse a (multi-document) YAML stream."""
    try:
        documents = list(yaml.safe_load_all(text))
    except yaml.YAMLError as e:
        raise ManifestError(f"{origin}: invalid YAML: {e}") from e

    resources: List[ResourceDefinition] = []
    for index, doc in enumerate(documents):
        if doc is None:
            continue
        where = f"{origin}#{index}"
        if isinstance(doc, dict) and doc.get("kind") == "List":
            for item_index, item in enumerate(doc.get("items") or []):
                resources.append(parse_manifest(item, f"{where}.items[{item_index}]"))
        else:
            resources.append(parse_manifest(doc, where))
    return resources


def to_manifest(resource: ResourceDefinition) -> Dict[str, Any]:
    """Render a ResourceDefinition back into Kubernetes object layout."""
    metadata: Dict[str, Any] = {"name": resource.name}
    if resource.namespace:
        metadata["namespace"] = resource.namespace
    if resource.labels:
        metadata["labels"] = dict(resource.labels)
    if resource.annotations:
        metadata["annotations"] = dict(resource.annotations)
    if resource.resource_version is not None:
        metadata["resourceVersion"] = str(resource.resource_version)
    if resource.created_at is not None:
        metadata["creationTimestamp"] = resource.created_at.isoformat()

    manifest: Dict[str, Any] = {
        "apiVersion": resource.api_version,
        "kind": resource.kind,
        "metadata": metadata,
    }
    manifest.update(resource.spec)
    return manifest


def dump_manifests(resources: List[ResourceDefinition]) -> str:
    return yaml.safe_dump_all(
        [to_manifest(r) for r in resources], sort_keys=False, default_flow_style=False
    )
