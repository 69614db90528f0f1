"""
Device Registry -- Android Debloater

Tracks the devices adb reports and their connection state.  The registry
holds exactly one immutable snapshot (serial -> Device) produced by the
most recent refresh; a refresh builds a new snapshot and swaps it in with a
single assignment, so concurrent readers see either the old or the new set,
never a mix.

State rules:
    adb "device"                    -> online
    adb "offline"                   -> offline
    adb "unauthorized"/"authorizing" -> unauthorized
    anything else adb reports       -> offline
    known but no longer reported    -> missing (dropped on the next refresh
                                       that still does not report it)

Usage:
    from debloater.registry import DeviceRegistry

    registry = DeviceRegistry()
    devices = await registry.refresh()
    for dev in devices:
        print(dev.serial, dev.state.value, await registry.api_level(dev.serial))
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import asdict, dataclass, replace
from datetime import datetime, timezone
from enum import Enum
from types import MappingProxyType
from typing import Iterable, List, Mapping, Optional, Tuple

from debloater.config import DEVICES_TIMEOUT
from debloater.errors import ErrorCode, ErrorContext, TransportUnavailableError
from debloater.executor import CommandExecutor

logger = logging.getLogger("registry")


def _now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


# ===================================================================
# ENUMS & DATA CLASSES
# ===================================================================

class DeviceState(str, Enum):
    """Connection state of a device as last seen by the registry."""
    ONLINE = "online"
    OFFLINE = "offline"
    UNAUTHORIZED = "unauthorized"
    MISSING = "missing"


ADB_STATE_MAP = {
    "device": DeviceState.ONLINE,
    "offline": DeviceState.OFFLINE,
    "unauthorized": DeviceState.UNAUTHORIZED,
    "authorizing": DeviceState.UNAUTHORIZED,
}


@dataclass(frozen=True)
class Device:
    """One device known to the registry.  Replaced, never mutated."""
    serial: str
    state: DeviceState = DeviceState.OFFLINE
    model: str = ""
    api_level: Optional[int] = None
    last_seen: Optional[str] = None

    @property
    def is_ready(self) -> bool:
        return self.state == DeviceState.ONLINE

    def to_dict(self) -> dict:
        d = asdict(self)
        d["state"] = self.state.value
        return d


def parse_devices_output(lines: Iterable[str]) -> List[Tuple[str, DeviceState, str]]:
    """
    Parse ``adb devices -l`` output into (serial, state, model) tuples.

    Example lines:
        emulator-5554          device product:sdk_gphone64 model:sdk_gphone64 transport_id:1
        R5CT123ABCD            unauthorized usb:1-1 transport_id:2
        0123456789             no permissions (missing udev rules?); see [...]
    """
    parsed: List[Tuple[str, DeviceState, str]] = []
    for raw in lines:
        line = raw.strip()
        if not line or line.startswith("List of devices") or line.startswith("*"):
            continue
        parts = line.split()
        if len(parts) < 2:
            continue
        serial, adb_state = parts[0], parts[1]
        state = ADB_STATE_MAP.get(adb_state, DeviceState.OFFLINE)
        model = ""
        for p in parts[2:]:
            if p.startswith("model:"):
                model = p.split(":", 1)[1]
                break
        parsed.append((serial, state, model))
    return parsed


# ===================================================================
# REGISTRY
# ===================================================================

class DeviceRegistry:
    """
    Owner of device connection state.

    Consumers (the orchestrator, a CLI) read snapshots; only ``refresh()``
    and the lazy ``api_level()`` lookup replace them.
    """

    def __init__(
        self,
        executor: Optional[CommandExecutor] = None,
        timeout: float = DEVICES_TIMEOUT,
    ) -> None:
        self._executor = executor or CommandExecutor()
        self._timeout = float(timeout)
        self._snapshot: Mapping[str, Device] = MappingProxyType({})
        self._refresh_lock = asyncio.Lock()

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    @property
    def snapshot(self) -> Mapping[str, Device]:
        """Read-only view of the current snapshot."""
        return self._snapshot

    def get(self, serial: str) -> Optional[Device]:
        return self._snapshot.get(serial)

    def devices(self) -> List[Device]:
        return sorted(self._snapshot.values(), key=lambda d: d.serial)

    def targetable(self, serial: str, force: bool = False) -> bool:
        """
        Whether a batch may act on this device.

        Online devices always qualify.  Offline and unauthorized devices only
        when the caller forces it; missing or unknown devices never do.
        """
        dev = self._snapshot.get(serial)
        if dev is None or dev.state == DeviceState.MISSING:
            return False
        if dev.state == DeviceState.ONLINE:
            return True
        return force

    # ------------------------------------------------------------------
    # Refresh
    # ------------------------------------------------------------------

    async def refresh(self) -> List[Device]:
        """
        Re-query adb for attached devices and swap in a new snapshot.

        Raises TransportUnavailableError if adb cannot answer; the previous
        snapshot is kept in that case.
        """
        async with self._refresh_lock:
            outcome = await self._executor.run(None, ["devices", "-l"], timeout=self._timeout)
            if not outcome.ok:
                error = outcome.error or ErrorContext(
                    ErrorCode.TRANSPORT_UNAVAILABLE, "adb devices failed",
                )
                logger.error("Device refresh failed: %s", error)
                raise TransportUnavailableError(error)

            now = _now_iso()
            previous = self._snapshot
            updated: dict = {}

            for serial, state, model in parse_devices_output(outcome.stdout_lines):
                old = previous.get(serial)
                updated[serial] = Device(
                    serial=serial,
                    state=state,
                    model=model or (old.model if old else ""),
                    api_level=old.api_level if old else None,
                    last_seen=now,
                )
                if old is None:
                    logger.info("New device: %s (%s)", serial, state.value)
                elif old.state != state:
                    logger.info("Device %s: %s -> %s", serial, old.state.value, state.value)

            for serial, old in previous.items():
                if serial in updated:
                    continue
                if old.state == DeviceState.MISSING:
                    logger.info("Dropping device %s (missing for two refreshes)", serial)
                    continue
                logger.warning("Device %s no longer reported; marking missing", serial)
                updated[serial] = replace(old, state=DeviceState.MISSING)

            self._snapshot = MappingProxyType(updated)
            return self.devices()

    # ------------------------------------------------------------------
    # Lazy attributes
    # ------------------------------------------------------------------

    async def api_level(self, serial: str) -> Optional[int]:
        """
        Android API level of a device, queried on first use and memoised on
        its registry record.  None when unknown or the device is not online.
        """
        dev = self._snapshot.get(serial)
        if dev is None:
            return None
        if dev.api_level is not None or not dev.is_ready:
            return dev.api_level

        outcome = await self._executor.shell(serial, "getprop", "ro.build.version.sdk")
        if not outcome.ok:
            logger.debug("API level query failed for %s: %s", serial, outcome.error)
            return None
        try:
            level = int(outcome.stdout.strip())
        except ValueError:
            logger.debug("Unparseable API level for %s: %r", serial, outcome.stdout)
            return None

        current = self._snapshot.get(serial)
        if current is not None:
            updated = dict(self._snapshot)
            updated[serial] = replace(current, api_level=level)
            self._snapshot = MappingProxyType(updated)
        return level
