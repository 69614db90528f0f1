"""
Error Taxonomy -- Android Debloater

Structured error classification shared by every component.  Per-request
failures travel as ErrorContext data inside results; only a handful of
subsystem-fatal conditions are raised as exceptions.

Taxonomy:
    Transport  -- TRANSPORT_UNAVAILABLE, DEVICE_OFFLINE, DEVICE_UNAUTHORIZED,
                  DEVICE_NOT_FOUND, TIMEOUT, NON_ZERO_EXIT
    Batch      -- DEVICE_UNAVAILABLE, PACKAGE_NOT_FOUND, CANCELLED
    Cache      -- CACHE_MISSING, CACHE_STALE, CACHE_PARSE_ERROR, REFRESH_FAILED
    Internal   -- INTERNAL_ERROR

Usage:
    from debloater.errors import ErrorCode, ErrorContext, classify_adb_output

    ctx = classify_adb_output("error: device offline", returncode=1)
    assert ctx.code is ErrorCode.DEVICE_OFFLINE
"""

from __future__ import annotations

from dataclasses import asdict, dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, FrozenSet, Optional


def _now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


# ===================================================================
# ENUMS
# ===================================================================

class ErrorCode(str, Enum):
    """Every failure class the core can report."""

    # Transport / command execution
    TRANSPORT_UNAVAILABLE = "transport_unavailable"
    DEVICE_OFFLINE = "device_offline"
    DEVICE_UNAUTHORIZED = "device_unauthorized"
    DEVICE_NOT_FOUND = "device_not_found"
    TIMEOUT = "timeout"
    NON_ZERO_EXIT = "non_zero_exit"

    # Batch level
    DEVICE_UNAVAILABLE = "device_unavailable"
    PACKAGE_NOT_FOUND = "package_not_found"
    CANCELLED = "cancelled"

    # Package list cache
    CACHE_MISSING = "cache_missing"
    CACHE_STALE = "cache_stale"
    CACHE_PARSE_ERROR = "cache_parse_error"
    REFRESH_FAILED = "refresh_failed"

    # Internal
    INTERNAL_ERROR = "internal_error"


# Informational codes: reported, never treated as a failure
INFORMATIONAL_CODES: FrozenSet[ErrorCode] = frozenset({
    ErrorCode.CACHE_MISSING,
    ErrorCode.CACHE_STALE,
})

# Failures that say something about the device rather than the command
DEVICE_LEVEL_CODES: FrozenSet[ErrorCode] = frozenset({
    ErrorCode.DEVICE_OFFLINE,
    ErrorCode.DEVICE_UNAUTHORIZED,
    ErrorCode.DEVICE_NOT_FOUND,
})

# Worth re-submitting later (caller-level retry policy)
RECOVERABLE_CODES: FrozenSet[ErrorCode] = frozenset({
    ErrorCode.TRANSPORT_UNAVAILABLE,
    ErrorCode.DEVICE_OFFLINE,
    ErrorCode.DEVICE_UNAUTHORIZED,
    ErrorCode.DEVICE_NOT_FOUND,
    ErrorCode.TIMEOUT,
    ErrorCode.DEVICE_UNAVAILABLE,
    ErrorCode.CANCELLED,
    ErrorCode.REFRESH_FAILED,
})


# ===================================================================
# ERROR CONTEXT
# ===================================================================

@dataclass
class ErrorContext:
    """Structured failure report.

    ``details`` carries the raw captured output (stdout lines, stderr, exit
    code, argv) so a failure can always be diagnosed after the fact.
    """

    code: ErrorCode
    message: str
    details: Dict[str, Any] = field(default_factory=dict)
    timestamp: str = ""

    def __post_init__(self) -> None:
        if isinstance(self.code, str) and not isinstance(self.code, ErrorCode):
            self.code = ErrorCode(self.code)
        if not self.timestamp:
            self.timestamp = _now_iso()

    @property
    def recoverable(self) -> bool:
        return self.code in RECOVERABLE_CODES

    @property
    def device_level(self) -> bool:
        return self.code in DEVICE_LEVEL_CODES

    @property
    def informational(self) -> bool:
        return self.code in INFORMATIONAL_CODES

    def to_dict(self) -> Dict[str, Any]:
        d = asdict(self)
        d["code"] = self.code.value
        return d

    @classmethod
    def from_dict(cls, d: Dict[str, Any]) -> ErrorContext:
        try:
            code = ErrorCode(d.get("code", ErrorCode.INTERNAL_ERROR.value))
        except ValueError:
            code = ErrorCode.INTERNAL_ERROR
        return cls(
            code=code,
            message=d.get("message", ""),
            details=dict(d.get("details") or {}),
            timestamp=d.get("timestamp", ""),
        )

    def __str__(self) -> str:
        return f"[{self.code.value}] {self.message}"


# ===================================================================
# EXCEPTIONS
# ===================================================================

class DebloaterError(Exception):
    """Base class for the few conditions that are raised, not returned."""

    def __init__(self, context: ErrorContext) -> None:
        super().__init__(str(context))
        self.context = context

    @property
    def code(self) -> ErrorCode:
        return self.context.code


class TransportUnavailableError(DebloaterError):
    """The adb server cannot be reached at all (registry refresh)."""


class CacheParseError(DebloaterError):
    """A package list document is structurally invalid."""

    @classmethod
    def build(cls, message: str, **details: Any) -> CacheParseError:
        return cls(ErrorContext(ErrorCode.CACHE_PARSE_ERROR, message, details=details))


# ===================================================================
# CLASSIFIERS
# ===================================================================

_TRANSPORT_MARKERS = (
    "cannot connect to daemon",
    "server didn't ack",
    "cannot bind",
    "could not install *smartsocket* listener",
)

_OFFLINE_MARKERS = ("device offline", "error: closed")
_UNAUTHORIZED_MARKERS = ("unauthorized", "still authorizing")
_NOT_FOUND_MARKERS = (
    "not found",
    "no devices/emulators found",
    "no devices found",
)


def classify_adb_output(
    stderr: str,
    returncode: Optional[int],
    details: Optional[Dict[str, Any]] = None,
) -> Optional[ErrorContext]:
    """
    Map adb's stderr and exit status to an ErrorContext.

    Returns None when the command succeeded (exit status 0).  On failure,
    transport and device markers win over the plain exit code: ``adb -s X
    shell ...`` against an unauthorized device exits 1, but the failure is
    about the device, not the command.

    Lines starting with ``*`` are daemon status banners (auto-start, server
    restart after a version mismatch) and never indicate a failure.
    """
    if returncode in (0, None):
        return None

    meta = dict(details or {})
    text = "\n".join(
        line for line in (stderr or "").lower().splitlines()
        if not line.strip().startswith("*")
    )

    if any(marker in text for marker in _TRANSPORT_MARKERS):
        return ErrorContext(ErrorCode.TRANSPORT_UNAVAILABLE, "adb server unreachable", meta)

    # Only adb's own "error:" lines carry device-state markers; a failing
    # shell command may print anything to stderr.
    adb_errors = " ".join(
        line for line in text.splitlines() if line.strip().startswith(("error:", "adb: error:"))
    )
    if any(marker in adb_errors for marker in _UNAUTHORIZED_MARKERS):
        return ErrorContext(ErrorCode.DEVICE_UNAUTHORIZED, "device is not authorized", meta)
    if any(marker in adb_errors for marker in _OFFLINE_MARKERS):
        return ErrorContext(ErrorCode.DEVICE_OFFLINE, "device is offline", meta)
    if any(marker in adb_errors for marker in _NOT_FOUND_MARKERS):
        return ErrorContext(ErrorCode.DEVICE_NOT_FOUND, "device not found", meta)

    return ErrorContext(
        ErrorCode.NON_ZERO_EXIT,
        f"command exited with status {returncode}",
        meta,
    )
