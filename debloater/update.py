"""
Self-Update -- Android Debloater

Checks the project's release feed for a newer version and, on request,
downloads the matching release asset and swaps it in place of the running
executable.  The orchestrator never depends on this module.

Nothing here raises for network or filesystem trouble: ``check_latest``
returns None when it cannot tell, ``apply_update`` reports failures in its
UpdateOutcome.

Usage:
    from debloater.update import check_latest, apply_update

    release = await check_latest("1.0.0")
    if release:
        outcome = await apply_update(release, Path(sys.argv[0]))
        print(outcome.status.value, outcome.message)

CLI:
    debloater update check
"""

from __future__ import annotations

import asyncio
import logging
import os
import re
import stat
import sys
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional, Tuple

import aiohttp

from debloater.config import FETCH_TIMEOUT, RELEASES_URL
from debloater.errors import ErrorCode, ErrorContext
from debloater.package_list import write_atomic

logger = logging.getLogger("update")

# Asset name fragments per platform, first match wins
_PLATFORM_HINTS: Dict[str, Tuple[str, ...]] = {
    "linux": ("linux",),
    "win32": ("windows", "win64", ".exe"),
    "darwin": ("macos", "darwin", "apple"),
}


# ===================================================================
# DATA CLASSES
# ===================================================================

class UpdateStatus(str, Enum):
    DONE = "done"
    FAILED = "failed"


@dataclass(frozen=True)
class ReleaseAsset:
    name: str
    url: str
    size: int = 0


@dataclass(frozen=True)
class ReleaseInfo:
    """A published release newer than the running version."""
    version: str
    tag: str
    html_url: str = ""
    published_at: str = ""
    assets: Tuple[ReleaseAsset, ...] = ()

    @classmethod
    def from_api(cls, payload: Dict[str, Any]) -> ReleaseInfo:
        tag = str(payload.get("tag_name") or "")
        assets = tuple(
            ReleaseAsset(
                name=str(a.get("name", "")),
                url=str(a.get("browser_download_url", "")),
                size=int(a.get("size") or 0),
            )
            for a in payload.get("assets") or []
            if isinstance(a, dict)
        )
        return cls(
            version=tag.lstrip("vV"),
            tag=tag,
            html_url=str(payload.get("html_url") or ""),
            published_at=str(payload.get("published_at") or ""),
            assets=assets,
        )

    def pick_asset(self, name_hint: Optional[str] = None) -> Optional[ReleaseAsset]:
        hints = (name_hint,) if name_hint else _PLATFORM_HINTS.get(sys.platform, ())
        for hint in hints:
            for asset in self.assets:
                if hint.lower() in asset.name.lower():
                    return asset
        return None


@dataclass(frozen=True)
class UpdateOutcome:
    status: UpdateStatus
    message: str = ""
    path: Optional[Path] = None
    error: Optional[ErrorContext] = field(default=None, compare=False)

    @property
    def ok(self) -> bool:
        return self.status == UpdateStatus.DONE


# ===================================================================
# VERSION COMPARISON
# ===================================================================

def parse_version(text: str) -> Tuple[int, ...]:
    """'v1.2.10-beta' -> (1, 2, 10).  Non-numeric parts count as 0."""
    parts: List[int] = []
    for chunk in text.strip().lstrip("vV").split("-", 1)[0].split("."):
        m = re.match(r"\d+", chunk)
        parts.append(int(m.group()) if m else 0)
    while len(parts) > 1 and parts[-1] == 0:
        parts.pop()
    return tuple(parts)


def is_newer(candidate: str, current: str) -> bool:
    return parse_version(candidate) > parse_version(current)


# ===================================================================
# NETWORK
# ===================================================================

SessionFactory = Callable[[], aiohttp.ClientSession]


def _new_session(session_factory: Optional[SessionFactory], timeout: float) -> aiohttp.ClientSession:
    if session_factory is not None:
        return session_factory()
    return aiohttp.ClientSession(timeout=aiohttp.ClientTimeout(total=timeout))


async def check_latest(
    current_version: str,
    releases_url: str = RELEASES_URL,
    session_factory: Optional[SessionFactory] = None,
    timeout: float = FETCH_TIMEOUT,
) -> Optional[ReleaseInfo]:
    """Return the latest release if it is newer than ``current_version``."""
    headers = {"Accept": "application/vnd.github+json"}
    try:
        session = _new_session(session_factory, timeout)
        async with session:
            async with session.get(releases_url, headers=headers) as resp:
                if resp.status != 200:
                    logger.warning("Release check failed: HTTP %s", resp.status)
                    return None
                payload = await resp.json(content_type=None)
    except asyncio.TimeoutError:
        logger.warning("Release check timed out after %.0fs", timeout)
        return None
    except (aiohttp.ClientError, ValueError) as exc:
        logger.warning("Release check failed: %s", exc)
        return None

    if not isinstance(payload, dict) or not payload.get("tag_name"):
        logger.warning("Release feed returned no tag")
        return None

    release = ReleaseInfo.from_api(payload)
    if not is_newer(release.version, current_version):
        logger.info("Up to date (%s, latest %s)", current_version, release.version)
        return None
    logger.info("Update available: %s -> %s", current_version, release.version)
    return release


async def apply_update(
    release: ReleaseInfo,
    target: Path,
    asset_name: Optional[str] = None,
    session_factory: Optional[SessionFactory] = None,
    timeout: float = FETCH_TIMEOUT * 4,
) -> UpdateOutcome:
    """
    Download the release asset for this platform and atomically replace
    ``target`` with it.  The previous file stays in place on any failure.
    """
    target = Path(target)

    def _failed(code: ErrorCode, message: str, **details: Any) -> UpdateOutcome:
        logger.error("Self-update failed: %s", message)
        return UpdateOutcome(
            UpdateStatus.FAILED,
            message=message,
            path=target,
            error=ErrorContext(code, message, {"version": release.version, **details}),
        )

    asset = release.pick_asset(asset_name)
    if asset is None:
        return _failed(
            ErrorCode.REFRESH_FAILED,
            f"no release asset for platform {sys.platform}",
            assets=[a.name for a in release.assets],
        )

    logger.info("Downloading %s (%d bytes)", asset.name, asset.size)
    try:
        session = _new_session(session_factory, timeout)
        async with session:
            async with session.get(asset.url) as resp:
                if resp.status != 200:
                    return _failed(ErrorCode.REFRESH_FAILED, f"HTTP {resp.status} downloading {asset.name}")
                body = await resp.read()
    except asyncio.TimeoutError:
        return _failed(ErrorCode.TIMEOUT, f"download of {asset.name} timed out")
    except aiohttp.ClientError as exc:
        return _failed(ErrorCode.REFRESH_FAILED, f"connection error: {exc}")

    if not body:
        return _failed(ErrorCode.REFRESH_FAILED, f"{asset.name} is empty")
    if asset.size and len(body) != asset.size:
        return _failed(
            ErrorCode.REFRESH_FAILED,
            f"{asset.name} size mismatch ({len(body)} != {asset.size})",
        )

    try:
        mode = stat.S_IMODE(target.stat().st_mode) if target.exists() else 0o755
        write_atomic(target, body)
        os.chmod(target, mode)
    except OSError as exc:
        return _failed(ErrorCode.INTERNAL_ERROR, f"cannot replace {target}: {exc}")

    logger.info("Updated %s to %s", target, release.version)
    return UpdateOutcome(UpdateStatus.DONE, message=f"updated to {release.version}", path=target)
