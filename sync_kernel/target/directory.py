"""Manifest directory environment: live resources persisted as one YAML file each."""

import logging
import threading
from datetime import datetime, timezone
from pathlib import Path
from typing import List, Optional

import yaml

from sync_kernel.errors import DeleteNotFoundError, LiveStateError
from sync_kernel.models.resource import ResourceDefinition, ResourceKey
from sync_kernel.source.manifests import ManifestError, parse_manifest, to_manifest
from sync_kernel.target.environment import validate_definition

logger = logging.getLogger(__name__)

CLUSTER_DIR = "_cluster"


class ManifestDirectoryEnvironment:
    """
    Layout: <root>/<namespace or _cluster>/<kind>.<name>.yaml

    Useful for dry runs and rendering: the directory shows exactly what a
    cluster would hold after the sync.
    """

    def __init__(self, root, server: Optional[str] = None):
        self.root = Path(root)
        self.server = server or f"file://{self.root.resolve()}"
        self._lock = threading.Lock()

    def _namespace_dir(self, namespace: str) -> Path:
        return self.root / (namespace or CLUSTER_DIR)

    def _path_for(self, key: ResourceKey) -> Path:
        return self._namespace_dir(key.namespace) / f"{key.kind.lower()}.{key.name}.yaml"

    def _read(self, path: Path) -> ResourceDefinition:
        try:
            return parse_manifest(yaml.safe_load(path.read_text(encoding="utf-8")), origin=str(path))
        except (yaml.YAMLError, ManifestError) as e:
            raise LiveStateError(f"{path}: unreadable live manifest: {e}") from e

    def get(self, key: ResourceKey) -> Optional[ResourceDefinition]:
        path = self._path_for(key)
        if not path.exists():
            return None
        resource = self._read(path)
        # File names are lower-cased; the stored kind is authoritative
        return resource if resource.key == key else None

    def list(self, namespace: str) -> List[ResourceDefinition]:
        directory = self._namespace_dir(namespace)
        if not directory.is_dir():
            return []
        resources = []
        for path in sorted(directory.glob("*.yaml")):
            try:
                resources.append(self._read(path))
            except LiveStateError as e:
                # Unreadable files are not part of the live set and are never pruned
                logger.warning("Skipping %s", e)
        return sorted(resources, key=lambda r: r.key.sort_key)

    def apply(self, resource: ResourceDefinition) -> ResourceDefinition:
        validate_definition(resource)
        path = self._path_for(resource.key)
        now = datetime.now(timezone.utc)
        with self._lock:
            try:
                existing = self.get(resource.key)
            except LiveStateError as e:
                logger.warning("Overwriting %s", e)
                existing = None
            version = (existing.resource_version or 0) + 1 if existing else 1
            stored = resource.model_copy(
                deep=True,
                update={
                    "resource_version": version,
                    "created_at": existing.created_at if existing and existing.created_at else now,
                    "updated_at": now,
                },
            )
            path.parent.mkdir(parents=True, exist_ok=True)
            path.write_text(
                yaml.safe_dump(to_manifest(stored), sort_keys=False), encoding="utf-8"
            )
        return stored

    def delete(self, key: ResourceKey) -> None:
        path = self._path_for(key)
        with self._lock:
            if not path.exists():
                raise DeleteNotFoundError(f"{key} not found")
            path.unlink()
