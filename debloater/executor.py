"""
Command Executor -- Android Debloater

Runs a single adb command, optionally targeted at one device serial, with a
hard timeout.  Captures stdout (as lines), stderr, exit code and elapsed
time, and classifies failures into transport problems (adb server down,
device offline / unauthorized / not found), timeouts and plain non-zero
exits.

The child process is always reaped: on timeout it is killed, and if the
awaiting task is cancelled the process is killed before the cancellation
propagates.

Usage:
    from debloater.executor import CommandExecutor

    executor = CommandExecutor()
    outcome = await executor.run("R5CT123ABCD", ["shell", "pm", "list", "packages"], timeout=10)
    if outcome.ok:
        print(outcome.stdout_lines)
    else:
        print(outcome.error.code, outcome.error.message)

    version = await executor.version()
    print(version.version or "adb not installed")
"""

from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import dataclass, field
from typing import List, Optional, Sequence, Tuple

from debloater.config import ADB_PATH, COMMAND_TIMEOUT
from debloater.errors import ErrorCode, ErrorContext, classify_adb_output

logger = logging.getLogger("executor")

# Grace period for a killed child to be reaped
KILL_GRACE_S = 5.0


# ===================================================================
# DATA CLASSES
# ===================================================================

@dataclass(frozen=True)
class CommandOutcome:
    """Everything captured from one adb invocation."""
    args: Tuple[str, ...]
    device_id: Optional[str] = None
    stdout_lines: Tuple[str, ...] = ()
    stderr: str = ""
    returncode: Optional[int] = None
    elapsed_ms: float = 0.0
    error: Optional[ErrorContext] = field(default=None, compare=False)

    @property
    def ok(self) -> bool:
        return self.error is None

    @property
    def stdout(self) -> str:
        return "\n".join(self.stdout_lines)

    def diagnostics(self) -> dict:
        """Raw output for ErrorContext.details."""
        return {
            "args": list(self.args),
            "stdout": list(self.stdout_lines),
            "stderr": self.stderr,
            "returncode": self.returncode,
        }


@dataclass(frozen=True)
class TransportVersion:
    """Result of ``adb version``.

    ``version`` is the first output line; ``detail`` the second, which on
    current platform-tools carries the build number.
    """
    version: str = ""
    detail: str = ""
    error: Optional[ErrorContext] = field(default=None, compare=False)

    @property
    def ok(self) -> bool:
        return self.error is None


def _split_lines(raw: bytes) -> Tuple[str, ...]:
    text = raw.decode("utf-8", errors="replace")
    return tuple(line.rstrip("\r") for line in text.splitlines())


# ===================================================================
# EXECUTOR
# ===================================================================

class CommandExecutor:
    """
    Spawns adb as a child process per command.

    Stateless apart from configuration, so one instance can be shared by any
    number of concurrent callers.
    """

    def __init__(
        self,
        adb_path: str = ADB_PATH,
        default_timeout: float = COMMAND_TIMEOUT,
    ) -> None:
        self.adb_path = adb_path
        self.default_timeout = float(default_timeout)

    def build_argv(self, device_id: Optional[str], command: Sequence[str]) -> List[str]:
        argv = [self.adb_path]
        if device_id:
            argv += ["-s", device_id]
        argv += [str(part) for part in command]
        return argv

    async def run(
        self,
        device_id: Optional[str],
        command: Sequence[str],
        timeout: Optional[float] = None,
    ) -> CommandOutcome:
        """
        Run ``adb [-s device_id] <command...>`` and classify the result.

        Never raises for command or transport failures; those come back as
        ``outcome.error``.  ``asyncio.CancelledError`` is re-raised after the
        child has been killed.
        """
        argv = self.build_argv(device_id, command)
        bound = self.default_timeout if timeout is None else float(timeout)
        start = time.monotonic()

        def _elapsed() -> float:
            return round((time.monotonic() - start) * 1000, 2)

        logger.debug("exec: %s (timeout=%.1fs)", " ".join(argv), bound)

        try:
            proc = await asyncio.create_subprocess_exec(
                *argv,
                stdin=asyncio.subprocess.DEVNULL,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
            )
        except FileNotFoundError:
            logger.error("adb binary not found at '%s'. Install adb or set ADB_PATH.", self.adb_path)
            return CommandOutcome(
                args=tuple(argv),
                device_id=device_id,
                elapsed_ms=_elapsed(),
                error=ErrorContext(
                    ErrorCode.TRANSPORT_UNAVAILABLE,
                    f"adb binary not found: {self.adb_path}",
                    {"args": argv},
                ),
            )
        except OSError as exc:
            logger.error("Failed to spawn adb: %s", exc)
            return CommandOutcome(
                args=tuple(argv),
                device_id=device_id,
                elapsed_ms=_elapsed(),
                error=ErrorContext(
                    ErrorCode.TRANSPORT_UNAVAILABLE,
                    f"cannot spawn adb: {exc}",
                    {"args": argv},
                ),
            )

        try:
            stdout, stderr = await asyncio.wait_for(proc.communicate(), timeout=bound)
        except asyncio.TimeoutError:
            await self._kill(proc)
            logger.warning("Command timed out after %.1fs: %s", bound, " ".join(argv))
            return CommandOutcome(
                args=tuple(argv),
                device_id=device_id,
                returncode=proc.returncode,
                elapsed_ms=_elapsed(),
                error=ErrorContext(
                    ErrorCode.TIMEOUT,
                    f"command exceeded {bound:.1f}s and was killed",
                    {"args": argv, "timeout_s": bound},
                ),
            )
        finally:
            if proc.returncode is None:
                # Cancelled while waiting: do not leave the child behind.
                await self._kill(proc)

        outcome = CommandOutcome(
            args=tuple(argv),
            device_id=device_id,
            stdout_lines=_split_lines(stdout),
            stderr=stderr.decode("utf-8", errors="replace"),
            returncode=proc.returncode,
            elapsed_ms=_elapsed(),
        )
        error = classify_adb_output(outcome.stderr, outcome.returncode, outcome.diagnostics())
        if error is not None:
            logger.debug("Command failed (%s): %s", error.code.value, " ".join(argv))
            outcome = CommandOutcome(
                args=outcome.args,
                device_id=device_id,
                stdout_lines=outcome.stdout_lines,
                stderr=outcome.stderr,
                returncode=outcome.returncode,
                elapsed_ms=outcome.elapsed_ms,
                error=error,
            )
        return outcome

    async def shell(
        self,
        device_id: str,
        *args: str,
        timeout: Optional[float] = None,
    ) -> CommandOutcome:
        """Run ``adb -s device_id shell <args...>``."""
        return await self.run(device_id, ["shell", *args], timeout=timeout)

    async def version(self, timeout: Optional[float] = None) -> TransportVersion:
        """
        Run ``adb version`` (no target device).

        An empty answer (adb missing, broken install) is a recoverable,
        non-ok result, never an exception.
        """
        outcome = await self.run(None, ["version"], timeout=timeout)
        if not outcome.ok:
            return TransportVersion(error=outcome.error)

        lines = [line.strip() for line in outcome.stdout_lines if line.strip()]
        if not lines:
            return TransportVersion(
                error=ErrorContext(
                    ErrorCode.TRANSPORT_UNAVAILABLE,
                    "adb version returned no output",
                    outcome.diagnostics(),
                ),
            )
        return TransportVersion(
            version=lines[0],
            detail=lines[1] if len(lines) > 1 else "",
        )

    @staticmethod
    async def _kill(proc: asyncio.subprocess.Process) -> None:
        if proc.returncode is not None:
            return
        try:
            proc.kill()
        except ProcessLookupError:
            pass
        try:
            await asyncio.wait_for(proc.wait(), timeout=KILL_GRACE_S)
        except asyncio.TimeoutError:
            logger.error("Child process %s did not exit after kill", proc.pid)
