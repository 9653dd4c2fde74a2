"""
Configuration: environment variables and Application manifests.

Environment (all optional):
  SYNC_KERNEL_HEARTBEAT_INTERVAL_SECONDS   poll loop tick
  SYNC_KERNEL_COOLDOWN_SECONDS             minimum gap between same-revision automated syncs
  SYNC_KERNEL_MAX_PARALLEL_OPERATIONS      worker pool size per sync phase
  SYNC_KERNEL_HISTORY_LIMIT                sync records kept per source
  SYNC_KERNEL_HISTORY_DB_PATH              SQLite path for sync history
  SYNC_KERNEL_TRACKING_LABEL               label scoping the live set to its source

Application manifests follow the argoproj.io Application layout:
spec.source (repoURL, path, targetRevision), spec.destination (server,
namespace), spec.syncPolicy (automated.prune, automated.selfHeal, retry),
spec.ignoreDifferences and, as an extension, spec.syncWindows.
"""

import os
import re
from pathlib import Path
from typing import Any, Dict, Mapping, Optional

import yaml
from pydantic import ValidationError

from sync_kernel.models.policy import (
    DEFAULT_SERVER,
    IgnoreDifference,
    RetryStrategy,
    SyncPolicy,
    SyncWindow,
)
from sync_kernel.models.reconciler import ReconcilerConfig
from sync_kernel.models.source import ApplicationSpec
from sync_kernel.reconciler.loop import ManagedSource
from sync_kernel.source.provider import HEAD, ManifestDirectoryProvider

ENV_PREFIX = "SYNC_KERNEL_"

_DURATION = re.compile(r"(\d+(?:\.\d+)?)(ms|s|m|h)")
_UNIT_SECONDS = {"ms": 0.001, "s": 1.0, "m": 60.0, "h": 3600.0}


class ConfigError(ValueError):
    """An Application manifest or environment value is unusable."""
    pass


def _env_int(environ: Mapping[str, str], name: str, default: int) -> int:
    raw = environ.get(ENV_PREFIX + name)
    if raw is None:
        return default
    try:
        return int(raw)
    except ValueError:
        return default


def load_config(environ: Optional[Mapping[str, str]] = None) -> ReconcilerConfig:
    """Build the controller configuration from SYNC_KERNEL_* variables."""
    environ = os.environ if environ is None else environ
    defaults = ReconcilerConfig()
    try:
        return ReconcilerConfig(
            heartbeat_interval_seconds=_env_int(
                environ, "HEARTBEAT_INTERVAL_SECONDS", defaults.heartbeat_interval_seconds
            ),
            cooldown_seconds=_env_int(environ, "COOLDOWN_SECONDS", defaults.cooldown_seconds),
            max_parallel_operations=_env_int(
                environ, "MAX_PARALLEL_OPERATIONS", defaults.max_parallel_operations
            ),
            history_limit=_env_int(environ, "HISTORY_LIMIT", defaults.history_limit),
            history_db_path=environ.get(ENV_PREFIX + "HISTORY_DB_PATH", defaults.history_db_path),
            tracking_label=environ.get(ENV_PREFIX + "TRACKING_LABEL") or defaults.tracking_label,
        )
    except ValidationError as e:
        raise ConfigError(f"Invalid {ENV_PREFIX}* configuration: {e}") from e


def parse_duration(value: Any) -> float:
    """Seconds in a duration such as ``30``, ``"5s"``, ``"3m"`` or ``"1h30m"``."""
    if isinstance(value, (int, float)):
        return float(value)
    text = str(value).strip()
    if not text:
        raise ConfigError("Empty duration")
    if text.replace(".", "", 1).isdigit():
        return float(text)
    total = 0.0
    pos = 0
    for match in _DURATION.finditer(text):
        if match.start() != pos:
            break
        total += float(match.group(1)) * _UNIT_SECONDS[match.group(2)]
        pos = match.end()
    if pos != len(text):
        raise ConfigError(f"Invalid duration: {value!r}")
    return total


def _retry_from(raw: Dict[str, Any]) -> RetryStrategy:
    backoff = raw.get("backoff") or {}
    defaults = RetryStrategy()
    # Argo's limit counts retries; the first attempt comes on top
    limit = raw.get("limit")
    return RetryStrategy(
        max_attempts=int(limit) + 1 if limit is not None else defaults.max_attempts,
        backoff_seconds=parse_duration(backoff.get("duration", defaults.backoff_seconds)),
        factor=float(backoff.get("factor", defaults.factor)),
        max_backoff_seconds=parse_duration(backoff.get("maxDuration", defaults.max_backoff_seconds)),
    )


def _window_from(raw: Dict[str, Any]) -> SyncWindow:
    return SyncWindow(
        kind=raw.get("kind", "allow"),
        schedule=raw["schedule"],
        duration_seconds=int(parse_duration(raw["duration"])),
        manual_sync=bool(raw.get("manualSync", False)),
    )


def parse_application(doc: Dict[str, Any], origin: str = "<application>") -> ApplicationSpec:
    """Translate an Application manifest into an ApplicationSpec."""
    if not isinstance(doc, dict) or doc.get("kind") != "Application":
        raise ConfigError(f"{origin}: not an Application manifest")

    metadata = doc.get("metadata") or {}
    spec = doc.get("spec") or {}
    source = spec.get("source") or {}
    destination = spec.get("destination") or {}
    sync_policy = spec.get("syncPolicy") or {}
    # "automated: {}" still enables automation
    automated = sync_policy.get("automated")

    try:
        policy = SyncPolicy(
            automated=automated is not None,
            prune=bool((automated or {}).get("prune", False)),
            self_heal=bool((automated or {}).get("selfHeal", False)),
            server=destination.get("server", DEFAULT_SERVER),
            namespace=destination.get("namespace", "default"),
            retry=_retry_from(sync_policy["retry"]) if sync_policy.get("retry") else RetryStrategy(),
            ignore_differences=[
                IgnoreDifference(
                    kind=d.get("kind"),
                    name=d.get("name"),
                    namespace=d.get("namespace"),
                    json_pointers=d.get("jsonPointers", []),
                )
                for d in spec.get("ignoreDifferences") or []
            ],
            sync_windows=[_window_from(w) for w in spec.get("syncWindows") or []],
            poll_interval_seconds=int(spec.get("pollIntervalSeconds", 180)),
        )
        return ApplicationSpec(
            name=metadata["name"],
            repo_url=source.get("repoURL", ""),
            path=source.get("path", ""),
            target_revision=source.get("targetRevision") or "HEAD",
            policy=policy,
            project=spec.get("project"),
        )
    except (KeyError, TypeError, ValueError) as e:
        raise ConfigError(f"{origin}: invalid Application: {e}") from e


def load_application(path) -> ApplicationSpec:
    """Read one Application manifest from a YAML file."""
    path = Path(path)
    try:
        doc = yaml.safe_load(path.read_text(encoding="utf-8"))
    except (OSError, yaml.YAMLError) as e:
        raise ConfigError(f"{path}: {e}") from e
    return parse_application(doc, origin=str(path))


def build_managed_source(app: ApplicationSpec, checkout_dir=".") -> ManagedSource:
    """
    Bind an Application to a local checkout of its repository.
    Manifests are read from ``checkout_dir / app.path``.
    """
    provider = ManifestDirectoryProvider(
        Path(checkout_dir) / app.path, location=app.repo_url or None
    )
    return ManagedSource(
        name=app.name,
        provider=provider,
        policy=app.policy,
        # The checkout already sits at the target revision
        target_revision=HEAD,
        path=app.path,
        project=app.project,
    )
