#!/usr/bin/env python3
"""CLI for the ConfigSync operator."""

import argparse
import asyncio
import json
import sys
from typing import Optional

from rich import box
from rich.console import Console
from rich.table import Table

from configsync.config import OperatorConfig, get_config, load_targets
from configsync.errors import ConfigError, ConfigSyncError
from configsync.git import GitSourceFactory
from configsync.kube import KubernetesClient, KubernetesStatusStore
from configsync.logging_config import setup_logging
from configsync.reporter import FileStatusStore, StatusReporter
from configsync.scheduler import Scheduler
from configsync.state import ConditionType, CycleOutcome, DriftOutcome, SyncState, Target
from configsync.validator import build_validator

console = Console()

# Outcomes that make the command exit non-zero
ERROR_OUTCOMES = {
    CycleOutcome.PARTIALLY_FAILED.value,
    CycleOutcome.VALIDATION_FAILED.value,
    CycleOutcome.MANIFEST_INVALID.value,
    CycleOutcome.PATH_NOT_FOUND.value,
    CycleOutcome.SOURCE_UNREACHABLE.value,
    DriftOutcome.AWAITING_APPROVAL.value,
    DriftOutcome.REMEDIATION_FAILED.value,
    DriftOutcome.SCAN_FAILED.value,
    CycleOutcome.ERROR.value,
}

STATUS_STYLE = {"True": "green", "False": "red", "Unknown": "yellow"}


class Runtime:
    """The collaborators one CLI invocation needs."""

    def __init__(self, scheduler: Scheduler, kube: Optional[KubernetesClient] = None):
        self.scheduler = scheduler
        self.kube = kube

    async def close(self):
        await self.scheduler.stop()
        if self.kube is not None:
            await self.kube.close()


def build_status_store(args: argparse.Namespace, config: OperatorConfig, kube: Optional[KubernetesClient]):
    if args.status_store == "cluster":
        return KubernetesStatusStore(kube or KubernetesClient.from_config(config))
    return FileStatusStore(args.state_dir or config.state_dir)


def build_runtime(args: argparse.Namespace, config: OperatorConfig) -> Runtime:
    """Wire the scheduler to git, the cluster and the configured status store."""
    kube = KubernetesClient.from_config(config)
    store = build_status_store(args, config, kube)
    scheduler = Scheduler(
        source_factory=GitSourceFactory(config.work_dir),
        cluster=kube,
        validator=build_validator(config.validator),
        reporter=StatusReporter(store),
        config=config,
    )
    return Runtime(scheduler, kube)


async def resolve_targets(
    args: argparse.Namespace, config: OperatorConfig, kube: Optional[KubernetesClient] = None
) -> list[Target]:
    """Targets from the target file or from the cluster, filtered by --target."""
    if getattr(args, "targets_from_cluster", False):
        client = kube or KubernetesClient.from_config(config)
        targets = await client.list_targets(args.namespace, config.default_sync_interval)
    elif args.targets:
        targets = load_targets(args.targets, config.default_sync_interval)
    else:
        raise ConfigError("No targets given: pass --targets FILE or --targets-from-cluster")

    if args.target:
        targets = [t for t in targets if t.key in args.target or t.name in args.target]
    return targets


def print_cycles(results: list[dict], format_type: str = "text") -> None:
    """Print sync cycle results."""
    if format_type == "json":
        print(json.dumps(results, indent=2))
        return

    table = Table(title="Sync Results", box=box.ROUNDED)
    table.add_column("Target", style="cyan")
    table.add_column("Outcome")
    table.add_column("Requeue", justify="right")
    table.add_column("Error")

    for result in results:
        outcome = result.get("outcome") or "-"
        style = "red" if outcome in ERROR_OUTCOMES else "green"
        requeue = result.get("requeue_after")
        table.add_row(
            result["target"],
            f"[{style}]{outcome}[/{style}]",
            f"{requeue:.0f}s" if requeue is not None else "-",
            result.get("error") or "",
        )

    console.print(table)


def print_drift(reports: list[dict], format_type: str = "text") -> None:
    """Print drift scan reports."""
    if format_type == "json":
        print(json.dumps(reports, indent=2))
        return

    for report in reports:
        outcome = report.get("outcome") or "-"
        style = "red" if outcome in ERROR_OUTCOMES else "green"
        console.print(f"[bold]{report['target']}[/bold]: [{style}]{outcome}[/{style}] {report['message']}")
        for drift in report["drifts"]:
            console.print(f"  [yellow]![/yellow] {drift['object']} ({drift['drift_type']})")
        for obj, error in report["errors"].items():
            console.print(f"  [red]?[/red] {obj}: {error}")


def print_status(states: list[tuple], format_type: str = "text") -> None:
    """Print persisted status of each target."""
    if format_type == "json":
        print(json.dumps({t.key: s.to_dict() for t, s in states}, indent=2))
        return

    table = Table(title="ConfigSync Status", box=box.ROUNDED)
    table.add_column("Target", style="cyan")
    table.add_column("Environment")
    table.add_column("Revision")
    table.add_column("Last Sync")
    for condition_type in ConditionType:
        table.add_column(condition_type.value, justify="center")
    table.add_column("Message")

    for target, state in states:
        row = [
            target.key,
            target.environment.value,
            state.last_synced_revision[:12] or "-",
            state.to_dict()["lastSyncTime"] or "-",
        ]
        for condition_type in ConditionType:
            condition = state.get_condition(condition_type)
            if condition is None:
                row.append("-")
            else:
                style = STATUS_STYLE[condition.status.value]
                row.append(f"[{style}]{condition.status.value}[/{style}]")
        row.append(_headline(state))
        table.add_row(*row)

    console.print(table)


def _headline(state: SyncState) -> str:
    for condition_type in (ConditionType.ERROR, ConditionType.DRIFTED):
        if state.is_true(condition_type):
            return state.get_condition(condition_type).message
    ready = state.get_condition(ConditionType.READY)
    return ready.message if ready else ""


async def cmd_sync(args: argparse.Namespace) -> int:
    """Run one sync cycle per target."""
    config = get_config()
    runtime = build_runtime(args, config)
    try:
        targets = await resolve_targets(args, config, runtime.kube)
        for target in targets:
            runtime.scheduler.upsert(target)

        requeues = await asyncio.gather(*(runtime.scheduler.reconcile(t.key) for t in targets))
        results = [dict(r.to_dict(), target=t.key) for t, r in zip(targets, requeues)]
    finally:
        await runtime.close()

    print_cycles(results, args.format)
    return 1 if any(r["outcome"] in ERROR_OUTCOMES for r in results) else 0


async def cmd_drift(args: argparse.Namespace) -> int:
    """Run one drift scan per target."""
    config = get_config()
    runtime = build_runtime(args, config)
    try:
        targets = await resolve_targets(args, config, runtime.kube)
        for target in targets:
            runtime.scheduler.upsert(target)

        reports = await asyncio.gather(*(runtime.scheduler.scan(t.key) for t in targets))
        results = [r.to_dict() for r in reports if r is not None]
    finally:
        await runtime.close()

    print_drift(results, args.format)
    failed = len(results) < len(targets)
    return 1 if failed or any(r["outcome"] in ERROR_OUTCOMES for r in results) else 0


async def cmd_status(args: argparse.Namespace) -> int:
    """Show persisted status."""
    config = get_config()
    kube = KubernetesClient.from_config(config) if (
        args.status_store == "cluster" or args.targets_from_cluster
    ) else None
    try:
        targets = await resolve_targets(args, config, kube)
        store = build_status_store(args, config, kube)
        states = [(t, await store.load(t)) for t in targets]
    finally:
        if kube is not None:
            await kube.close()

    print_status(states, args.format)
    return 1 if any(s.is_true(ConditionType.ERROR) for _, s in states) else 0


async def cmd_run(args: argparse.Namespace) -> int:
    """Run the scheduler until interrupted."""
    import uvicorn

    from configsync.api import create_app

    config = get_config()
    runtime = build_runtime(args, config)
    scheduler = runtime.scheduler

    provider = None
    if args.targets_from_cluster:
        async def provider():
            return await runtime.kube.list_targets(args.namespace, config.default_sync_interval)
        await scheduler.sync_targets(await provider())
    else:
        await scheduler.sync_targets(await resolve_targets(args, config, runtime.kube))

    scheduler.start(provider)
    try:
        if args.serve:
            server = uvicorn.Server(
                uvicorn.Config(
                    create_app(scheduler),
                    host=config.api_host,
                    port=config.api_port,
                    log_config=None,
                )
            )
            await server.serve()
        else:
            await asyncio.Event().wait()
    finally:
        await runtime.close()

    return 0


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        description="ConfigSync - keep cluster objects in sync with a git repository",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  configsync sync -t targets.yaml                # One sync cycle per target
  configsync sync -t targets.yaml --target prod/web
  configsync drift -t targets.yaml               # One drift scan per target
  configsync status -t targets.yaml              # Show persisted status
  configsync run --targets-from-cluster --serve  # Run the operator with the status API
        """,
    )
    parser.add_argument(
        "--format",
        "-f",
        choices=["text", "json"],
        default="text",
        help="Output format",
    )
    parser.add_argument(
        "--status-store",
        choices=["file", "cluster"],
        default="file",
        help="Where target status is persisted (default: file)",
    )
    parser.add_argument(
        "--state-dir",
        help="Directory for the file status store (default: CONFIGSYNC_STATE_DIR)",
    )

    subparsers = parser.add_subparsers(dest="command", required=True)

    def add_target_args(sub: argparse.ArgumentParser):
        sub.add_argument("-t", "--targets", help="Path to target declarations YAML file")
        sub.add_argument(
            "--targets-from-cluster",
            action="store_true",
            help="List ConfigSync resources from the cluster instead of a file",
        )
        sub.add_argument("-n", "--namespace", help="Namespace to list ConfigSync resources from")
        sub.add_argument(
            "--target",
            action="append",
            help="Only this target (name or namespace/name, repeatable)",
        )

    sync_parser = subparsers.add_parser("sync", help="Run one sync cycle per target")
    add_target_args(sync_parser)
    sync_parser.set_defaults(func=cmd_sync)

    drift_parser = subparsers.add_parser("drift", help="Run one drift scan per target")
    add_target_args(drift_parser)
    drift_parser.set_defaults(func=cmd_drift)

    status_parser = subparsers.add_parser("status", help="Show persisted target status")
    add_target_args(status_parser)
    status_parser.set_defaults(func=cmd_status)

    run_parser = subparsers.add_parser("run", help="Run the operator until interrupted")
    add_target_args(run_parser)
    run_parser.add_argument(
        "--serve",
        action="store_true",
        help="Also serve the status API (CONFIGSYNC_API_HOST/PORT)",
    )
    run_parser.set_defaults(func=cmd_run)

    return parser


def main(argv: Optional[list[str]] = None) -> int:
    """Main entry point."""
    parser = build_parser()
    args = parser.parse_args(argv)

    try:
        config = get_config()
        setup_logging(config.log_level, config.log_json if args.command == "run" else False)
        return asyncio.run(args.func(args))
    except ConfigSyncError as e:
        print(f"Error: {e.message}", file=sys.stderr)
        return 1
    except KeyboardInterrupt:
        return 130


if __name__ == "__main__":
    sys.exit(main())
