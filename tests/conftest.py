"""
Shared fixtures for the debloater test suite.

Provides a scriptable fake adb executor backed by simulated devices, aiohttp
mocks and temp cache paths, so that all tests run WITHOUT adb, devices or
network access.
"""

import asyncio
from typing import Dict, List, Optional, Sequence, Tuple
from unittest.mock import AsyncMock, MagicMock

import pytest

from debloater.actions import PackageState
from debloater.errors import ErrorCode, ErrorContext
from debloater.executor import CommandExecutor, CommandOutcome


# ---------------------------------------------------------------------------
# Fake adb
# ---------------------------------------------------------------------------

class FakeDevice:
    """Package manager state of one simulated device."""

    def __init__(self, serial, adb_state="device", model="Pixel_7", api=34, packages=None):
        self.serial = serial
        self.adb_state = adb_state
        self.model = model
        self.api = api
        self.packages: Dict[str, PackageState] = dict(packages or {})
        self.error: Optional[ErrorCode] = None   # every command fails with this
        self.fail_commands: Dict[str, str] = {}  # "pm uninstall" -> stdout to print


class FakeExecutor(CommandExecutor):
    """
    CommandExecutor stand-in that answers from FakeDevice state.

    Records every call as (serial, argv tuple) and tracks the peak number of
    concurrent commands per device and overall.
    """

    def __init__(self, devices: Sequence[FakeDevice] = (), delay: float = 0.0):
        super().__init__(adb_path="adb", default_timeout=5)
        self.devices: Dict[str, FakeDevice] = {d.serial: d for d in devices}
        self.delay = delay
        self.calls: List[Tuple[Optional[str], Tuple[str, ...]]] = []
        self.transport_down = False
        self.raise_on: Optional[str] = None
        self._active: Dict[Optional[str], int] = {}
        self.peak_per_device: Dict[Optional[str], int] = {}
        self.peak_total = 0
        self.gate: Optional[asyncio.Event] = None

    def add(self, device: FakeDevice) -> FakeDevice:
        self.devices[device.serial] = device
        return device

    def shell_calls(self, serial: str) -> List[Tuple[str, ...]]:
        return [argv[1:] for s, argv in self.calls if s == serial and argv and argv[0] == "shell"]

    def mutating_calls(self, serial: str) -> List[Tuple[str, ...]]:
        return [
            argv for argv in self.shell_calls(serial)
            if not (argv[:3] == ("pm", "list", "packages") or argv[0] == "getprop")
        ]

    async def run(self, device_id, command, timeout=None):
        argv = tuple(str(c) for c in command)
        self.calls.append((device_id, argv))
        self._active[device_id] = self._active.get(device_id, 0) + 1
        self.peak_per_device[device_id] = max(self.peak_per_device.get(device_id, 0), self._active[device_id])
        self.peak_total = max(self.peak_total, sum(self._active.values()))
        try:
            if self.gate is not None:
                await self.gate.wait()
            if self.delay:
                await asyncio.sleep(self.delay)
            return self._answer(device_id, argv)
        finally:
            self._active[device_id] -= 1

    def _answer(self, serial, argv) -> CommandOutcome:
        if self.raise_on and self.raise_on in " ".join(argv):
            raise RuntimeError(f"boom on {self.raise_on}")
        if self.transport_down:
            return self._fail(serial, argv, ErrorCode.TRANSPORT_UNAVAILABLE, "cannot connect to daemon")

        if serial is None:
            if argv == ("devices", "-l"):
                lines = ["List of devices attached"]
                for d in self.devices.values():
                    lines.append(f"{d.serial}\t{d.adb_state} product:x model:{d.model} transport_id:1")
                return self._ok(serial, argv, lines)
            if argv == ("version",):
                return self._ok(serial, argv, ["Android Debug Bridge version 1.0.41", "Version 35.0.1-11580240"])
            return self._ok(serial, argv, [])

        dev = self.devices.get(serial)
        if dev is None:
            return self._fail(serial, argv, ErrorCode.DEVICE_NOT_FOUND, f"error: device '{serial}' not found")
        if dev.error is not None:
            return self._fail(serial, argv, dev.error, "error: device offline")
        if dev.adb_state == "unauthorized":
            return self._fail(serial, argv, ErrorCode.DEVICE_UNAUTHORIZED, "error: device unauthorized.")
        if dev.adb_state == "offline":
            return self._fail(serial, argv, ErrorCode.DEVICE_OFFLINE, "error: device offline")

        cmd = argv[1:]
        if cmd == ("getprop", "ro.build.version.sdk"):
            return self._ok(serial, argv, [str(dev.api)])
        if cmd[:3] == ("pm", "list", "packages"):
            return self._ok(serial, argv, self._list(dev, cmd[3], cmd[-1]))

        for prefix, stdout in dev.fail_commands.items():
            if " ".join(cmd).startswith(prefix):
                return self._ok(serial, argv, [stdout])

        pkg = cmd[-1]
        if cmd[0] == "am":
            return self._ok(serial, argv, [])
        if cmd[:2] in (("pm", "disable-user"), ("pm", "disable")):
            dev.packages[pkg] = PackageState.DISABLED
            return self._ok(serial, argv, [f"Package {pkg} new state: disabled-user"])
        if cmd[:2] in (("pm", "uninstall"), ("pm", "hide"), ("pm", "block")):
            dev.packages[pkg] = PackageState.UNINSTALLED
            return self._ok(serial, argv, ["Success"])
        if "install-existing" in cmd or cmd[:2] in (("pm", "unhide"), ("pm", "unblock"), ("pm", "enable")):
            dev.packages[pkg] = PackageState.ENABLED
            return self._ok(serial, argv, [f"Package {pkg} installed for user: 0"])
        return self._ok(serial, argv, [])

    @staticmethod
    def _list(dev: FakeDevice, flag: str, pkg: str) -> List[str]:
        state = dev.packages.get(pkg)
        if state is None:
            return []
        listed = {
            "-u": True,
            "-d": state == PackageState.DISABLED,
            "-e": state == PackageState.ENABLED,
        }[flag]
        # pm filters by substring, so a longer name sharing the prefix also shows up
        lines = [f"package:{pkg}.overlay"]
        if listed:
            lines.append(f"package:{pkg}")
        return lines

    @staticmethod
    def _ok(serial, argv, lines) -> CommandOutcome:
        return CommandOutcome(args=argv, device_id=serial, stdout_lines=tuple(lines), returncode=0)

    @staticmethod
    def _fail(serial, argv, code, stderr) -> CommandOutcome:
        return CommandOutcome(
            args=argv, device_id=serial, stderr=stderr, returncode=1,
            error=ErrorContext(code, stderr, {"args": list(argv)}),
        )


@pytest.fixture
def fake_executor():
    """FakeExecutor with no devices attached."""
    return FakeExecutor()


@pytest.fixture
def make_device():
    """FakeDevice factory."""
    return FakeDevice


@pytest.fixture
def make_executor():
    """FakeExecutor factory: make_executor([devices], delay=0.0)."""
    return FakeExecutor


# ---------------------------------------------------------------------------
# Cache fixtures
# ---------------------------------------------------------------------------

@pytest.fixture
def cache_path(tmp_path):
    """Package list path inside an isolated cache dir."""
    return tmp_path / "cache" / "uad_lists.json"


@pytest.fixture
def uad_records():
    """A small package list in the upstream UAD mapping format."""
    return {
        "com.facebook.appmanager": {
            "list": "Misc",
            "description": "Facebook app manager",
            "dependencies": [],
            "neededBy": [],
            "labels": [],
            "removal": "Recommended",
        },
        "com.android.systemui": {
            "list": "Aosp",
            "description": "System UI. Removing this bootloops the device.",
            "dependencies": [],
            "neededBy": [],
            "labels": [],
            "removal": "Unsafe",
        },
        "com.google.android.youtube": {
            "list": "Google",
            "description": "YouTube",
            "dependencies": [],
            "neededBy": [],
            "labels": [],
            "removal": "Advanced",
        },
    }


# ---------------------------------------------------------------------------
# aiohttp mock fixtures
# ---------------------------------------------------------------------------

@pytest.fixture
def mock_aiohttp_response():
    """Create a mock aiohttp response factory."""

    def _make(status=200, json_data=None, text="", headers=None, body=b""):
        resp = AsyncMock()
        resp.status = status
        resp.json = AsyncMock(return_value=json_data if json_data is not None else {})
        resp.text = AsyncMock(return_value=text)
        resp.read = AsyncMock(return_value=body)
        resp.headers = headers or {"Content-Type": "application/json"}
        resp.__aenter__ = AsyncMock(return_value=resp)
        resp.__aexit__ = AsyncMock(return_value=False)
        return resp

    return _make


@pytest.fixture
def mock_aiohttp_session(mock_aiohttp_response):
    """Create a mock aiohttp ClientSession."""
    session = AsyncMock()
    default_resp = mock_aiohttp_response(200, {"ok": True})
    session.get = MagicMock(return_value=default_resp)
    session.close = AsyncMock()
    session.__aenter__ = AsyncMock(return_value=session)
    session.__aexit__ = AsyncMock(return_value=False)
    return session
