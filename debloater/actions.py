"""
Debloat Actions -- Android Debloater

The closed set of batch actions (disable / uninstall / restore), the
device-scoped installed state of a package, and the translation of an
action into concrete package-manager commands for a given API level.

Every Action member must have a target state and a command plan builder;
the module refuses to import otherwise.

Command plans (U = Android user id):

    action     API >= 26                          23-25                      21-22             <= 20
    disable    am force-stop; pm disable-user --user U                       (same)            pm disable
    uninstall  am force-stop; pm uninstall --user U                          pm hide --user U  pm block
    restore    cmd package install-existing       pm install-existing        pm unhide         pm unblock
               (from uninstalled)
    restore    pm enable --user U                                            (same)            pm enable
               (from disabled)
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from enum import Enum
from typing import Callable, Dict, List, Optional, Sequence, Tuple

from debloater.config import USER_ID
from debloater.errors import ErrorCode, ErrorContext
from debloater.executor import CommandExecutor, CommandOutcome

logger = logging.getLogger("actions")

# API level assumed when the device will not tell us
NEWEST_API_LEVEL = 99

# pm reports many failures on stdout with exit status 0
_PM_FAILURE_PREFIXES = ("Failure", "Error", "Exception occurred", "java.lang.")


# ===================================================================
# ENUMS
# ===================================================================

class Action(str, Enum):
    """Batch action kinds."""
    DISABLE = "disable"
    UNINSTALL = "uninstall"
    RESTORE = "restore"


class PackageState(str, Enum):
    """Installed state of a package on one device, for the acting user."""
    ENABLED = "enabled"
    DISABLED = "disabled"
    UNINSTALLED = "uninstalled"   # kept by the system, removed for the user
    ABSENT = "absent"             # unknown to the package manager


TARGET_STATE: Dict[Action, PackageState] = {
    Action.DISABLE: PackageState.DISABLED,
    Action.UNINSTALL: PackageState.UNINSTALLED,
    Action.RESTORE: PackageState.ENABLED,
}


# ===================================================================
# STATE QUERY
# ===================================================================

@dataclass(frozen=True)
class StateQuery:
    state: Optional[PackageState] = None
    error: Optional[ErrorContext] = field(default=None, compare=False)

    @property
    def ok(self) -> bool:
        return self.error is None


def _lists_package(outcome: CommandOutcome, package: str) -> bool:
    """``pm list packages <filter>`` matches substrings; require the exact name."""
    target = f"package:{package}"
    return any(line.strip() == target for line in outcome.stdout_lines)


async def query_state(
    executor: CommandExecutor,
    serial: str,
    package: str,
    user_id: int = USER_ID,
    timeout: Optional[float] = None,
) -> StateQuery:
    """
    Ask the device for the current state of ``package``.

    ``-u`` lists everything the system knows (including packages uninstalled
    for the user); ``-d`` and ``-e`` narrow that to disabled and enabled.
    """
    user = ["--user", str(user_id)]

    known = await executor.shell(serial, "pm", "list", "packages", "-u", *user, package, timeout=timeout)
    if not known.ok:
        return StateQuery(error=known.error)
    if not _lists_package(known, package):
        return StateQuery(PackageState.ABSENT)

    disabled = await executor.shell(serial, "pm", "list", "packages", "-d", *user, package, timeout=timeout)
    if not disabled.ok:
        return StateQuery(error=disabled.error)
    if _lists_package(disabled, package):
        return StateQuery(PackageState.DISABLED)

    enabled = await executor.shell(serial, "pm", "list", "packages", "-e", *user, package, timeout=timeout)
    if not enabled.ok:
        return StateQuery(error=enabled.error)
    if _lists_package(enabled, package):
        return StateQuery(PackageState.ENABLED)
    return StateQuery(PackageState.UNINSTALLED)


# ===================================================================
# COMMAND PLANS
# ===================================================================

Plan = List[Tuple[str, ...]]


def _disable_plan(package: str, api: int, current: PackageState, user: str) -> Plan:
    if api <= 20:
        return [("pm", "disable", package)]
    return [
        ("am", "force-stop", package),
        ("pm", "disable-user", "--user", user, package),
    ]


def _uninstall_plan(package: str, api: int, current: PackageState, user: str) -> Plan:
    if api <= 20:
        return [("pm", "block", package)]
    if api <= 22:
        return [("pm", "hide", "--user", user, package)]
    return [
        ("am", "force-stop", package),
        ("pm", "uninstall", "--user", user, package),
    ]


def _restore_plan(package: str, api: int, current: PackageState, user: str) -> Plan:
    if current == PackageState.DISABLED:
        if api <= 20:
            return [("pm", "enable", package)]
        return [("pm", "enable", "--user", user, package)]
    if api <= 20:
        return [("pm", "unblock", package)]
    if api <= 22:
        return [("pm", "unhide", "--user", user, package)]
    if api <= 25:
        return [("pm", "install-existing", "--user", user, package)]
    return [("cmd", "package", "install-existing", "--user", user, package)]


_PLAN_BUILDERS: Dict[Action, Callable[[str, int, PackageState, str], Plan]] = {
    Action.DISABLE: _disable_plan,
    Action.UNINSTALL: _uninstall_plan,
    Action.RESTORE: _restore_plan,
}

_unwired = [a.value for a in Action if a not in _PLAN_BUILDERS or a not in TARGET_STATE]
if _unwired:
    raise RuntimeError(f"Actions without a target state or command plan: {', '.join(_unwired)}")


def build_plan(
    action: Action,
    package: str,
    api_level: Optional[int],
    current: PackageState,
    user_id: int = USER_ID,
) -> Plan:
    """Shell argv sequence that moves ``package`` into the action's target state."""
    api = NEWEST_API_LEVEL if api_level is None else int(api_level)
    return _PLAN_BUILDERS[action](package, api, current, str(user_id))


def pm_reported_failure(outcome: CommandOutcome) -> Optional[ErrorContext]:
    """Detect a package-manager failure printed on stdout behind exit status 0."""
    for line in outcome.stdout_lines:
        if line.strip().startswith(_PM_FAILURE_PREFIXES):
            return ErrorContext(
                ErrorCode.NON_ZERO_EXIT,
                line.strip(),
                outcome.diagnostics(),
            )
    return None


@dataclass(frozen=True)
class PlanResult:
    outcomes: Tuple[CommandOutcome, ...] = ()
    error: Optional[ErrorContext] = field(default=None, compare=False)

    @property
    def ok(self) -> bool:
        return self.error is None

    @property
    def elapsed_ms(self) -> float:
        return round(sum(o.elapsed_ms for o in self.outcomes), 2)


async def run_plan(
    executor: CommandExecutor,
    serial: str,
    plan: Sequence[Sequence[str]],
    timeout: Optional[float] = None,
) -> PlanResult:
    """Run the plan's commands in order, stopping at the first failure."""
    outcomes: List[CommandOutcome] = []
    for step in plan:
        outcome = await executor.shell(serial, *step, timeout=timeout)
        outcomes.append(outcome)
        error = outcome.error or pm_reported_failure(outcome)
        if error is not None:
            logger.debug("%s: step %s failed: %s", serial, " ".join(step), error)
            return PlanResult(tuple(outcomes), error)
    return PlanResult(tuple(outcomes))
