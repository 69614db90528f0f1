"""
Command line interface -- Android Debloater

Thin argparse shell over the core: device listing, adb version check,
package list status/refresh, bulk actions and the self-update check.

CLI:
    debloater devices
    debloater version
    debloater list status
    debloater list refresh [--force]
    debloater apply disable com.facebook.appmanager com.facebook.services
    debloater apply uninstall com.example.bloat --device R5CT123ABCD --device emulator-5554
    debloater apply restore com.example.bloat --force
    debloater update check

Exit status is 1 when any requested action failed or a command could not
complete, 0 otherwise.
"""

from __future__ import annotations

import argparse
import asyncio
import logging
import sys
from typing import List, Optional

from debloater import __version__
from debloater.actions import Action
from debloater.config import MAX_LIST_AGE_DAYS, setup_logging
from debloater.errors import TransportUnavailableError
from debloater.executor import CommandExecutor
from debloater.orchestrator import ActionOrchestrator, ActionRequest, ActionResult, Outcome
from debloater.package_list import PackageListCache, RemovalTier
from debloater.registry import DeviceRegistry
from debloater.update import check_latest

logger = logging.getLogger("debloater")


# ===================================================================
# CLI HELPERS
# ===================================================================

def _format_table(headers: List[str], rows: List[List[str]], max_col_width: int = 40) -> str:
    """Format a simple ASCII table for CLI output."""
    if not rows:
        return "(no results)"

    truncated_rows = [
        [val[:max_col_width - 3] + "..." if len(val) > max_col_width else val for val in row]
        for row in rows
    ]

    col_widths = [len(h) for h in headers]
    for row in truncated_rows:
        for i, val in enumerate(row):
            if i < len(col_widths):
                col_widths[i] = max(col_widths[i], len(val))

    fmt = "  ".join(f"{{:<{w}}}" for w in col_widths)
    lines = [fmt.format(*headers), "  ".join("-" * w for w in col_widths)]
    for row in truncated_rows:
        row = row + [""] * (len(headers) - len(row))
        lines.append(fmt.format(*row))
    return "\n".join(lines)


def _result_line(result: ActionResult) -> str:
    line = f"  [{result.outcome.value:<18}] {result.device_id}  {result.request.action.value} {result.package}"
    if result.error is not None and result.outcome != Outcome.ALREADY_IN_STATE:
        line += f"  -- {result.error}"
    return line


# ===================================================================
# CLI COMMANDS
# ===================================================================

def _cmd_devices(args: argparse.Namespace) -> int:
    """List attached devices."""

    async def _run() -> List[List[str]]:
        registry = DeviceRegistry(CommandExecutor())
        rows = []
        for dev in await registry.refresh():
            api = await registry.api_level(dev.serial)
            rows.append([dev.serial, dev.state.value, dev.model or "-", str(api) if api else "-"])
        return rows

    try:
        rows = asyncio.run(_run())
    except TransportUnavailableError as exc:
        print(f"adb is not available: {exc.context.message}")
        return 1

    if not rows:
        print("No devices attached. Enable USB debugging and check the cable.")
        return 0
    print(f"\n  Devices  --  {len(rows)} attached\n")
    print(_format_table(["Serial", "State", "Model", "API"], rows))
    print()
    return 0


def _cmd_version(args: argparse.Namespace) -> int:
    """Show this tool's version and the adb version."""
    version = asyncio.run(CommandExecutor().version())
    print(f"debloater {__version__}")
    if not version.ok:
        print(f"adb: not available ({version.error})")
        return 1
    print(f"adb: {version.version}")
    if version.detail:
        print(f"     {version.detail}")
    return 0


def _cmd_list(args: argparse.Namespace) -> int:
    """Show or refresh the package list."""
    cache = PackageListCache()
    loaded = cache.load()
    if loaded.warning is not None:
        label = "Note" if loaded.warning.informational else "Warning"
        print(f"{label}: {loaded.warning.message}")

    if args.list_command == "refresh":
        if args.force:
            outcome = asyncio.run(cache.force_refresh())
        else:
            outcome = asyncio.run(cache.refresh_if_stale(MAX_LIST_AGE_DAYS))
        print(f"Refresh: {outcome}")
        if not outcome.ok:
            return 1

    snapshot = cache.snapshot
    stale = cache.is_stale(MAX_LIST_AGE_DAYS)
    print(f"\n  Package list  --  {len(snapshot)} packages, "
          f"date {snapshot.date or 'never'}{' (stale)' if stale else ''}\n")
    rows = [[tier.value, str(len(snapshot.by_tier(tier)))] for tier in RemovalTier]
    print(_format_table(["Tier", "Packages"], rows))
    print()
    return 0


def _cmd_apply(args: argparse.Namespace) -> int:
    """Apply an action to packages across devices."""
    action = Action(args.action)

    async def _run() -> int:
        executor = CommandExecutor()
        registry = DeviceRegistry(executor)
        await registry.refresh()

        serials = args.device or [d.serial for d in registry.devices() if d.is_ready]
        if not serials:
            print("No online devices to act on.")
            return 1

        requests = [ActionRequest(s, pkg, action) for s in serials for pkg in args.packages]
        orchestrator = ActionOrchestrator(executor, registry, force=args.force)
        run = orchestrator.apply(requests)
        print(f"Applying '{action.value}' to {len(args.packages)} package(s) on {len(serials)} device(s)...")
        async for result in run:
            print(_result_line(result))

        report = run.report()
        counts = report.counts()
        print()
        print(_format_table(
            ["Outcome", "Count"],
            [[name, str(n)] for name, n in counts.items()],
        ))
        return 0 if report.all_succeeded else 1

    try:
        return asyncio.run(_run())
    except TransportUnavailableError as exc:
        print(f"adb is not available: {exc.context.message}")
        return 1


def _cmd_update(args: argparse.Namespace) -> int:
    """Check for a newer release."""
    release = asyncio.run(check_latest(__version__))
    if release is None:
        print(f"debloater {__version__}: no update available")
        return 0
    print(f"Update available: {__version__} -> {release.version}")
    if release.html_url:
        print(f"  {release.html_url}")
    return 0


# ===================================================================
# CLI ENTRY POINT
# ===================================================================

def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="debloater",
        description="Android Debloater -- disable, uninstall and restore packages over adb",
    )
    parser.add_argument("--log-level", default=None, help="DEBUG, INFO, WARNING or ERROR")
    subparsers = parser.add_subparsers(dest="command", help="Available commands")

    # devices
    sp_devices = subparsers.add_parser("devices", help="List attached devices")
    sp_devices.set_defaults(func=_cmd_devices)

    # version
    sp_version = subparsers.add_parser("version", help="Show tool and adb versions")
    sp_version.set_defaults(func=_cmd_version)

    # list
    sp_list = subparsers.add_parser("list", help="Package list status and refresh")
    list_sub = sp_list.add_subparsers(dest="list_command")
    list_sub.add_parser("status", help="Show the cached package list")
    sp_refresh = list_sub.add_parser("refresh", help="Download the package list if stale")
    sp_refresh.add_argument("--force", action="store_true", help="Download even when fresh")
    sp_list.set_defaults(func=_cmd_list, list_command="status")

    # apply
    sp_apply = subparsers.add_parser("apply", help="Apply an action to packages")
    sp_apply.add_argument("action", choices=[a.value for a in Action])
    sp_apply.add_argument("packages", nargs="+", metavar="PKG")
    sp_apply.add_argument("--device", action="append", metavar="SERIAL",
                          help="Target device (repeatable, default: every online device)")
    sp_apply.add_argument("--force", action="store_true",
                          help="Also target offline and unauthorized devices")
    sp_apply.set_defaults(func=_cmd_apply)

    # update
    sp_update = subparsers.add_parser("update", help="Self-update")
    update_sub = sp_update.add_subparsers(dest="update_command")
    update_sub.add_parser("check", help="Check for a newer release")
    sp_update.set_defaults(func=_cmd_update, update_command="check")

    return parser


def main(argv: Optional[List[str]] = None) -> int:
    """CLI entry point."""
    parser = build_parser()
    args = parser.parse_args(argv)
    setup_logging(args.log_level)

    if args.command is None:
        parser.print_help()
        return 0

    return args.func(args)


if __name__ == "__main__":
    sys.exit(main())
