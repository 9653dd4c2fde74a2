"""
Structural diff between a desired-state snapshot and the live resource set.

Comparison covers the spec payload only. Paths listed in the policy's
ignore_differences (JSON pointers, e.g. "/spec/replicas") are removed from
both sides before comparing.
"""

import copy
from typing import Any, Dict, Iterable, List

from sync_kernel.models.policy import SyncPolicy
from sync_kernel.models.resource import ResourceDefinition, ResourceKey
from sync_kernel.models.source import DesiredStateSource
from sync_kernel.models.sync import Classification, ResourceDiff


def _unescape(token: str) -> str:
    return token.replace("~1", "/").replace("~0", "~")


def _escape(token: str) -> str:
    return str(token).replace("~", "~0").replace("/", "~1")


def _remove_pointer(document: Any, pointer: str) -> None:
    tokens = [_unescape(t) for t in pointer.lstrip("/").split("/") if t != ""]
    if not tokens:
        return
    parent = document
    for token in tokens[:-1]:
        if isinstance(parent, dict):
            parent = parent.get(token)
        elif isinstance(parent, list) and token.isdigit() and int(token) < len(parent):
            parent = parent[int(token)]
        else:
            return
        if parent is None:
            return
    last = tokens[-1]
    if isinstance(parent, dict):
        parent.pop(last, None)
    elif isinstance(parent, list) and last.isdigit() and int(last) < len(parent):
        del parent[int(last)]


def normalize_spec(spec: Dict[str, Any], ignore_pointers: Iterable[str] = ()) -> Dict[str, Any]:
    """Deep copy of ``spec`` with ignored paths removed."""
    normalized = copy.deepcopy(spec)
    for pointer in ignore_pointers:
        _remove_pointer(normalized, pointer)
    return normalized


def changed_paths(desired: Any, live: Any, prefix: str = "") -> List[str]:
    """JSON pointers of every leaf that differs between two documents."""
    if isinstance(desired, dict) and isinstance(live, dict):
        paths: List[str] = []
        for key in sorted(set(desired) | set(live), key=str):
            child = f"{prefix}/{_escape(key)}"
            if key not in desired or key not in live:
                paths.append(child)
            else:
                paths.extend(changed_paths(desired[key], live[key], child))
        return paths
    if isinstance(desired, list) and isinstance(live, list):
        if len(desired) != len(live):
            return [prefix or "/"]
        paths = []
        for index, (d, l) in enumerate(zip(desired, live)):
            paths.extend(changed_paths(d, l, f"{prefix}/{index}"))
        return paths
    if type(desired) is not type(live) or desired != live:
        return [prefix or "/"]
    return []


def diff_resource(
    desired: ResourceDefinition,
    live: ResourceDefinition,
    ignore_pointers: Iterable[str] = (),
) -> List[str]:
    pointers = list(ignore_pointers)
    return changed_paths(
        normalize_spec(desired.spec, pointers),
        normalize_spec(live.spec, pointers),
    )


def compute_diff(
    source: DesiredStateSource,
    live: Dict[ResourceKey, ResourceDefinition],
    policy: SyncPolicy,
) -> List[ResourceDiff]:
    """
    Classify every key present on either side.
    Source keys keep source order; live-only keys follow, sorted by key.
    """
    diffs: List[ResourceDiff] = []
    desired_keys = set()

    for desired in source.resources:
        key = desired.key
        desired_keys.add(key)
        current = live.get(key)
        if current is None:
            diffs.append(ResourceDiff(key=key, classification=Classification.TO_CREATE, desired=desired))
            continue
        paths = diff_resource(desired, current, policy.ignored_pointers(key))
        diffs.append(ResourceDiff(
            key=key,
            classification=Classification.TO_UPDATE if paths else Classification.IN_SYNC,
            desired=desired,
            live=current,
            changed_paths=paths,
        ))

    extras = sorted((k for k in live if k not in desired_keys), key=lambda k: k.sort_key)
    for key in extras:
        diffs.append(ResourceDiff(key=key, classification=Classification.TO_DELETE, live=live[key]))

    return diffs
