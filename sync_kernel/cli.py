#!/usr/bin/env python3
"""CLI for declarative state reconciliation."""

import argparse
import json
import logging
import sys
from datetime import datetime, timezone
from typing import List, Optional

from sync_kernel.config import ConfigError, build_managed_source, load_application, load_config
from sync_kernel.errors import FetchError, LiveStateError
from sync_kernel.logging_config import setup_logging
from sync_kernel.models.policy import SyncPolicy
from sync_kernel.models.sync import Classification, ComparisonResult, OperationStatus, SyncResult, SyncTrigger
from sync_kernel.reconciler.engine import Reconciler
from sync_kernel.reconciler.loop import ManagedSource
from sync_kernel.reconciler.windows import sync_allowed
from sync_kernel.source.provider import ManifestDirectoryProvider, fetch_source
from sync_kernel.target.directory import ManifestDirectoryEnvironment

logger = logging.getLogger(__name__)

_DIFF_MARKS = {
    Classification.TO_CREATE: "+",
    Classification.TO_UPDATE: "~",
    Classification.TO_DELETE: "-",
    Classification.IN_SYNC: "=",
}

_STATUS_MARKS = {
    OperationStatus.SUCCEEDED: "✓",
    OperationStatus.FAILED: "✗",
    OperationStatus.SKIPPED: "·",
    OperationStatus.CANCELLED: "⊘",
    OperationStatus.UNCHANGED: "=",
}


def print_comparison(comparison: ComparisonResult, format_type: str = "text") -> None:
    """Print a diff."""
    if format_type == "json":
        data = comparison.model_dump(mode="json")
        data["counts"] = comparison.counts
        print(json.dumps(data, indent=2))
        return

    print(f"\n=== Diff: {comparison.source_name} @ {comparison.revision} ===")
    print(f"State: {comparison.sync_state.value}")
    print()
    for diff in comparison.diffs:
        print(f"  {_DIFF_MARKS[diff.classification]} {diff.key}")
        for path in diff.changed_paths:
            print(f"      {path}")
    counts = comparison.counts
    print()
    print(
        f"{counts['ToCreate']} to create, {counts['ToUpdate']} to update, "
        f"{counts['ToDelete']} to delete, {counts['InSync']} in sync"
    )


def print_result(result: SyncResult, format_type: str = "text") -> None:
    """Print a sync report."""
    if format_type == "json":
        print(json.dumps(result.model_dump(mode="json"), indent=2))
        return

    print(f"\n=== Sync {result.id}: {result.source_name} @ {result.revision} ===")
    print(f"State: {result.sync_state.value}")
    print()
    for r in result.resources:
        message = f" ({r.message})" if r.message else ""
        print(f"  {_STATUS_MARKS[r.status]} {r.key} {r.status.value}{message}")
    if result.errors:
        print("\nErrors:")
        for e in result.errors:
            print(f"  ✗ {e.key} [{e.kind}] after {e.attempts} attempt(s): {e.message}")
    applied = result.applied
    print()
    print(f"Applied: {applied['create']} created, {applied['update']} updated, {applied['delete']} deleted")


def _managed_source(args: argparse.Namespace) -> ManagedSource:
    """The source named on the command line, either an Application or a bare directory."""
    if args.app:
        source = build_managed_source(load_application(args.app), args.checkout)
        policy = source.policy
    else:
        policy = SyncPolicy()
        source = ManagedSource(
            name=args.name,
            provider=ManifestDirectoryProvider(args.source),
            policy=policy,
        )

    updates = {}
    if args.namespace:
        updates["namespace"] = args.namespace
    if getattr(args, "prune", False):
        updates["prune"] = True
    if updates:
        source.policy = policy.model_copy(update=updates)
    return source


def cmd_diff(args: argparse.Namespace) -> int:
    """Show drift between the source and the live directory."""
    source = _managed_source(args)
    snapshot = fetch_source(source.provider, source.name, source.policy, path=source.path)
    live = ManifestDirectoryEnvironment(args.live_dir)
    comparison = Reconciler(load_config()).compare(snapshot, live, source.policy)
    print_comparison(comparison, args.format)
    return 1 if comparison.drifted() else 0


def cmd_sync(args: argparse.Namespace) -> int:
    """Converge the live directory toward the source."""
    source = _managed_source(args)
    if not sync_allowed(source.policy.sync_windows, datetime.now(timezone.utc), manual=True):
        print(f"Error: sync windows block manual sync of {source.name}", file=sys.stderr)
        return 3
    snapshot = fetch_source(source.provider, source.name, source.policy, path=source.path)
    live = ManifestDirectoryEnvironment(args.live_dir)
    result = Reconciler(load_config()).reconcile(
        snapshot, live, source.policy, trigger=SyncTrigger.MANUAL
    )
    print_result(result, args.format)
    return 1 if result.errors else 0


def cmd_serve(args: argparse.Namespace) -> int:
    """Run the API with the poll loop."""
    import uvicorn

    from sync_kernel.api.app import create_app
    from sync_kernel.history.store import SyncHistoryStore
    from sync_kernel.reconciler.loop import SyncController
    from sync_kernel.target.environment import InMemoryEnvironment

    config = load_config()
    sources = [build_managed_source(load_application(path), args.checkout) for path in args.app]

    environments = {}
    for source in sources:
        server = source.policy.server
        if server not in environments:
            if args.live_dir:
                environments[server] = ManifestDirectoryEnvironment(args.live_dir, server=server)
            else:
                environments[server] = InMemoryEnvironment(server=server)
    if not environments:
        default_env = InMemoryEnvironment()
        environments[default_env.server] = default_env

    controller = SyncController(
        environments,
        history_store=SyncHistoryStore(config.history_db_path, history_limit=config.history_limit),
        config=config,
    )
    for source in sources:
        controller.register_source(source)
        logger.info("Managing %s from %s", source.name, source.provider.location)

    app = create_app(controller=controller, run_loop=True)
    uvicorn.run(app, host=args.host, port=args.port, log_config=None)
    return 0


def _add_source_args(parser: argparse.ArgumentParser) -> None:
    target = parser.add_mutually_exclusive_group(required=True)
    target.add_argument("--app", help="Path to an Application manifest")
    target.add_argument("--source", help="Path to a manifest directory")
    parser.add_argument("--checkout", default=".", help="Repository checkout an Application's path is relative to")
    parser.add_argument("--name", default="default", help="Source name when using --source")
    parser.add_argument("--namespace", help="Override the destination namespace")
    parser.add_argument("--live-dir", required=True, help="Directory holding the live resources")


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="sync-kernel",
        description="Declarative state reconciler",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  sync-kernel diff --app examples/application.yaml --live-dir live/
  sync-kernel sync --source examples/demo-stack --namespace demo --live-dir live/ --prune
  sync-kernel serve --app examples/application.yaml --port 8080
        """,
    )
    parser.add_argument(
        "--format",
        "-f",
        choices=["text", "json"],
        default="text",
        help="Output format",
    )
    parser.add_argument("--log-level", help="Log level (default: SYNC_KERNEL_LOG_LEVEL or INFO)")

    subparsers = parser.add_subparsers(dest="command", required=True)

    diff_parser = subparsers.add_parser("diff", help="Show drift from desired state")
    _add_source_args(diff_parser)
    diff_parser.set_defaults(func=cmd_diff)

    sync_parser = subparsers.add_parser("sync", help="Sync live state to desired state")
    _add_source_args(sync_parser)
    sync_parser.add_argument("--prune", action="store_true", help="Delete live resources absent from the source")
    sync_parser.set_defaults(func=cmd_sync)

    serve_parser = subparsers.add_parser("serve", help="Run the API and poll loop")
    serve_parser.add_argument("--app", action="append", default=[], help="Application manifest (repeatable)")
    serve_parser.add_argument("--checkout", default=".", help="Repository checkout Application paths are relative to")
    serve_parser.add_argument("--live-dir", help="Directory holding the live resources (default: in memory)")
    serve_parser.add_argument("--host", default="127.0.0.1")
    serve_parser.add_argument("--port", type=int, default=8080)
    serve_parser.set_defaults(func=cmd_serve)

    return parser


def main(argv: Optional[List[str]] = None) -> int:
    """Main entry point."""
    args = build_parser().parse_args(argv)
    setup_logging(args.log_level)
    try:
        return args.func(args)
    except (ConfigError, FetchError, LiveStateError) as e:
        print(f"Error: {e}", file=sys.stderr)
        return 2


if __name__ == "__main__":
    sys.exit(main())
