"""Shared builders and test doubles."""

import threading
from collections import defaultdict
from typing import Dict, List, Optional

from sync_kernel.models.policy import RetryStrategy
from sync_kernel.models.resource import ResourceDefinition, ResourceKey
from sync_kernel.target.environment import InMemoryEnvironment

# Retries without sleeping
FAST_RETRY = RetryStrategy(max_attempts=3, backoff_seconds=0, max_backoff_seconds=0)


def deployment(name: str, replicas: int = 1, namespace: str = "", image: str = "nginx:1.25") -> ResourceDefinition:
    return ResourceDefinition(
        api_version="apps/v1",
        kind="Deployment",
        name=name,
        namespace=namespace,
        spec={
            "spec": {
                "replicas": replicas,
                "template": {"spec": {"containers": [{"name": name, "image": image}]}},
            }
        },
    )


def config_map(name: str, data: Optional[Dict[str, str]] = None, namespace: str = "") -> ResourceDefinition:
    return ResourceDefinition(
        kind="ConfigMap",
        name=name,
        namespace=namespace,
        spec={"data": data or {"key": "value"}},
    )


def service(name: str, port: int = 80, namespace: str = "") -> ResourceDefinition:
    return ResourceDefinition(
        kind="Service",
        name=name,
        namespace=namespace,
        spec={"spec": {"selector": {"app": name}, "ports": [{"port": port}]}},
    )


def key(kind: str, name: str, namespace: str = "default") -> ResourceKey:
    return ResourceKey(kind=kind, namespace=namespace, name=name)


class ScriptedEnvironment(InMemoryEnvironment):
    """
    In-memory environment whose apply/delete calls can be scripted to fail.

    fail(key, *errors) queues errors raised by the next calls touching ``key``.
    block(key) makes calls for ``key`` wait until release() is called.
    """

    def __init__(self, *args, **kwargs):
        super().__init__(*args, **kwargs)
        self.calls: List[tuple] = []
        self._failures: Dict[ResourceKey, List[Exception]] = defaultdict(list)
        self._gates: Dict[ResourceKey, threading.Event] = {}
        self.entered: Dict[ResourceKey, threading.Event] = defaultdict(threading.Event)
        self._script_lock = threading.Lock()

    def seed(self, *resources: ResourceDefinition) -> None:
        for resource in resources:
            super().apply(resource)

    def fail(self, key: ResourceKey, *errors: Exception) -> None:
        with self._script_lock:
            self._failures[key].extend(errors)

    def block(self, key: ResourceKey) -> None:
        self._gates[key] = threading.Event()

    def release(self, key: ResourceKey) -> None:
        self._gates.pop(key).set()

    def _before(self, action: str, key: ResourceKey) -> None:
        with self._script_lock:
            self.calls.append((action, key))
        self.entered[key].set()
        gate = self._gates.get(key)
        if gate is not None:
            gate.wait(timeout=5)
        with self._script_lock:
            failures = self._failures.get(key)
            error = failures.pop(0) if failures else None
        if error is not None:
            raise error

    def apply(self, resource: ResourceDefinition) -> ResourceDefinition:
        self._before("apply", resource.key)
        return super().apply(resource)

    def delete(self, key: ResourceKey) -> None:
        self._before("delete", key)
        super().delete(key)

    def actions(self, action: str) -> List[ResourceKey]:
        return [k for a, k in self.calls if a == action]
