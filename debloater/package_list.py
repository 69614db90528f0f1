"""
Package List Cache -- Android Debloater

Holds the package classification list (package name -> removal tier,
description, dependencies, side effects) as an immutable Snapshot, backed by
a JSON file in the cache directory and refreshable from a remote source.

Consistency rules:
    * A refresh downloads, validates, writes the file atomically (temp file +
      os.replace) and only then swaps the in-memory snapshot.  Any failure
      before the swap leaves both the file and the snapshot untouched.
    * Duplicate package names are a hard parse failure, including duplicate
      keys in the upstream mapping format (json would silently keep the last).
    * Freshness is tracked per calendar day.  A stale list stays usable until
      a refresh succeeds; reads never wait on the network.

Accepted document shapes:
    {"date": "2026-10-19", "etag": "...", "checksum": "...", "packages": [ {record}, ... ]}
    [ {"id": "com.example", "removal": "Recommended", ...}, ... ]
    {"com.example": {"removal": "Recommended", ...}, ...}          (upstream UAD)

Usage:
    from debloater.package_list import PackageListCache

    cache = PackageListCache()
    loaded = cache.load()
    outcome = await cache.refresh_if_stale(timedelta(days=7))
    pkg = cache.snapshot.get("com.facebook.appmanager")
"""

from __future__ import annotations

import asyncio
import hashlib
import json
import logging
import os
from dataclasses import dataclass, field
from datetime import date, timedelta
from enum import Enum
from pathlib import Path
from types import MappingProxyType
from typing import Any, Callable, Dict, Iterator, List, Mapping, Optional, Tuple, Union

import aiohttp

from debloater.config import FETCH_TIMEOUT, LIST_CACHE_FILE, LIST_SOURCE_URL, MAX_LIST_AGE_DAYS
from debloater.errors import CacheParseError, ErrorCode, ErrorContext

logger = logging.getLogger("package_list")


# ===================================================================
# ENUMS & DATA CLASSES
# ===================================================================

class RemovalTier(str, Enum):
    """Recommendation tier driving default guidance for a package."""
    RECOMMENDED = "Recommended"
    ADVANCED = "Advanced"
    EXPERT = "Expert"
    UNSAFE = "Unsafe"
    UNLISTED = "Unlisted"


@dataclass(frozen=True)
class Package:
    """Classification record for one package name.  Immutable."""
    name: str
    tier: RemovalTier = RemovalTier.UNLISTED
    description: str = ""
    list_name: str = ""
    dependencies: Tuple[str, ...] = ()
    needed_by: Tuple[str, ...] = ()
    labels: Tuple[str, ...] = ()
    side_effects: Tuple[str, ...] = ()

    def to_record(self) -> Dict[str, Any]:
        return {
            "id": self.name,
            "list": self.list_name,
            "description": self.description,
            "dependencies": list(self.dependencies),
            "neededBy": list(self.needed_by),
            "labels": list(self.labels),
            "removal": self.tier.value,
            "sideEffects": list(self.side_effects),
        }

    @classmethod
    def from_record(cls, record: Any, name: Optional[str] = None) -> Package:
        """Validate one record; raises CacheParseError on anything malformed."""
        if not isinstance(record, dict):
            raise CacheParseError.build("package record is not an object", record=repr(record)[:200])

        pkg_name = name if name is not None else record.get("id")
        if not isinstance(pkg_name, str) or not pkg_name.strip() or any(c.isspace() for c in pkg_name):
            raise CacheParseError.build("package record has no valid id", record=repr(record)[:200])

        raw_tier = record.get("removal")
        try:
            tier = RemovalTier(raw_tier)
        except ValueError:
            raise CacheParseError.build(
                f"unknown removal tier {raw_tier!r} for {pkg_name}", package=pkg_name,
            ) from None

        def _text(key: str) -> str:
            value = record.get(key, "")
            if value is None:
                return ""
            if not isinstance(value, str):
                raise CacheParseError.build(f"{key} of {pkg_name} is not a string", package=pkg_name)
            return value

        def _strings(key: str) -> Tuple[str, ...]:
            value = record.get(key) or []
            if not isinstance(value, list) or not all(isinstance(v, str) for v in value):
                raise CacheParseError.build(f"{key} of {pkg_name} is not a list of strings", package=pkg_name)
            return tuple(value)

        return cls(
            name=pkg_name,
            tier=tier,
            description=_text("description"),
            list_name=_text("list"),
            dependencies=_strings("dependencies"),
            needed_by=_strings("neededBy"),
            labels=_strings("labels"),
            side_effects=_strings("sideEffects"),
        )


@dataclass(frozen=True)
class Snapshot:
    """Immutable, fully-formed copy of the package list."""
    packages: Mapping[str, Package] = field(default_factory=lambda: MappingProxyType({}))
    date: Optional[date] = None
    etag: Optional[str] = None
    checksum: str = ""

    def get(self, name: str) -> Optional[Package]:
        return self.packages.get(name)

    def by_tier(self, tier: RemovalTier) -> List[Package]:
        return [p for p in self.packages.values() if p.tier == tier]

    def names(self) -> List[str]:
        return list(self.packages.keys())

    def __len__(self) -> int:
        return len(self.packages)

    def __contains__(self, name: object) -> bool:
        return name in self.packages

    def __iter__(self) -> Iterator[Package]:
        return iter(self.packages.values())

    def to_document(self) -> Dict[str, Any]:
        return {
            "date": self.date.isoformat() if self.date else None,
            "etag": self.etag,
            "checksum": self.checksum,
            "packages": [p.to_record() for p in self.packages.values()],
        }


EMPTY_SNAPSHOT = Snapshot()


class RefreshStatus(str, Enum):
    FRESH = "fresh"                # not stale, nothing fetched
    UPDATED = "updated"            # new list applied
    NOT_MODIFIED = "not_modified"  # remote unchanged, freshness date bumped
    FAILED = "failed"              # previous snapshot kept


@dataclass(frozen=True)
class RefreshOutcome:
    status: RefreshStatus
    reason: str = ""
    error: Optional[ErrorContext] = field(default=None, compare=False)
    package_count: int = 0

    @property
    def ok(self) -> bool:
        return self.status != RefreshStatus.FAILED

    def __str__(self) -> str:
        if self.status == RefreshStatus.FAILED:
            return f"failed: {self.reason}"
        if self.status == RefreshStatus.UPDATED:
            return f"updated ({self.package_count} packages)"
        return self.status.value.replace("_", " ")


@dataclass(frozen=True)
class CacheLoad:
    """Result of reading the persisted list.

    ``warning`` is None, CACHE_MISSING (first run), CACHE_STALE (list older
    than the age limit, still served) or CACHE_PARSE_ERROR (file unreadable;
    an empty snapshot is served instead).
    """
    snapshot: Snapshot
    warning: Optional[ErrorContext] = field(default=None, compare=False)


# ===================================================================
# PARSING
# ===================================================================

def _reject_duplicate_keys(pairs: List[Tuple[str, Any]]) -> Dict[str, Any]:
    obj: Dict[str, Any] = {}
    for key, value in pairs:
        if key in obj:
            raise CacheParseError.build(f"duplicate key {key!r}", key=key)
        obj[key] = value
    return obj


def parse_document(raw: Union[bytes, str]) -> Tuple[List[Package], Dict[str, Any]]:
    """
    Parse and validate a package list document.

    Returns (packages in document order, file-level metadata).  Raises
    CacheParseError for malformed JSON, malformed records or duplicates.
    """
    try:
        payload = json.loads(raw, object_pairs_hook=_reject_duplicate_keys)
    except CacheParseError:
        raise
    except (ValueError, UnicodeDecodeError) as exc:
        raise CacheParseError.build(f"malformed JSON: {exc}") from exc

    meta: Dict[str, Any] = {}
    if isinstance(payload, dict) and isinstance(payload.get("packages"), list):
        meta = {k: payload.get(k) for k in ("date", "etag", "checksum")}
        records: List[Tuple[Optional[str], Any]] = [(None, r) for r in payload["packages"]]
    elif isinstance(payload, list):
        records = [(None, r) for r in payload]
    elif isinstance(payload, dict):
        records = list(payload.items())
    else:
        raise CacheParseError.build("document is neither a list nor an object")

    packages: List[Package] = []
    seen: set = set()
    for name, record in records:
        pkg = Package.from_record(record, name=name)
        if pkg.name in seen:
            raise CacheParseError.build(f"duplicate package {pkg.name}", package=pkg.name)
        seen.add(pkg.name)
        packages.append(pkg)
    return packages, meta


def _parse_date(value: Any) -> Optional[date]:
    if not value:
        return None
    try:
        return date.fromisoformat(str(value)[:10])
    except ValueError:
        raise CacheParseError.build(f"invalid freshness date {value!r}") from None


def _build_snapshot(
    packages: List[Package],
    *,
    fresh_on: Optional[date],
    etag: Optional[str],
    checksum: str,
) -> Snapshot:
    return Snapshot(
        packages=MappingProxyType({p.name: p for p in packages}),
        date=fresh_on,
        etag=etag,
        checksum=checksum,
    )


# ===================================================================
# PERSISTENCE (atomic writes)
# ===================================================================

def write_atomic(path: Path, data: bytes) -> None:
    """Write *data* to *path* via a temp file and os.replace."""
    path.parent.mkdir(parents=True, exist_ok=True)
    tmp = path.with_suffix(path.suffix + ".tmp")
    try:
        with open(tmp, "wb") as fh:
            fh.write(data)
            fh.flush()
            os.fsync(fh.fileno())
        os.replace(tmp, path)
    except Exception:
        try:
            tmp.unlink(missing_ok=True)
        except OSError:
            pass
        raise


def _serialize(snapshot: Snapshot) -> bytes:
    return json.dumps(snapshot.to_document(), indent=2, ensure_ascii=False).encode("utf-8")


class _FetchFailed(Exception):
    """Internal: remote fetch could not produce a usable body."""


# ===================================================================
# CACHE
# ===================================================================

class PackageListCache:
    """
    Owner of the package list snapshot.

    Readers use ``snapshot`` (no locking).  At most one refresh runs at a
    time; it never exposes a partially applied list.
    """

    def __init__(
        self,
        path: Path = LIST_CACHE_FILE,
        source_url: str = LIST_SOURCE_URL,
        fetch_timeout: float = FETCH_TIMEOUT,
        session_factory: Optional[Callable[[], aiohttp.ClientSession]] = None,
        clock: Callable[[], date] = date.today,
    ) -> None:
        self.path = Path(path)
        self.source_url = source_url
        self.fetch_timeout = float(fetch_timeout)
        self._session_factory = session_factory
        self._clock = clock
        self._snapshot: Snapshot = EMPTY_SNAPSHOT
        self._refresh_lock = asyncio.Lock()

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    @property
    def snapshot(self) -> Snapshot:
        return self._snapshot

    def load(
        self,
        strict: bool = False,
        max_age: Union[timedelta, int] = MAX_LIST_AGE_DAYS,
    ) -> CacheLoad:
        """
        Read the persisted list and install it as the current snapshot.

        A missing file is the expected first-run case.  A corrupt file logs a
        warning and serves an empty snapshot, or raises CacheParseError when
        ``strict`` is set.  A list older than ``max_age`` is still installed
        and comes back with an informational CACHE_STALE warning.
        """
        try:
            raw = self.path.read_bytes()
        except FileNotFoundError:
            logger.info("No cached package list at %s", self.path)
            self._snapshot = EMPTY_SNAPSHOT
            return CacheLoad(
                EMPTY_SNAPSHOT,
                ErrorContext(ErrorCode.CACHE_MISSING, "no local package list", {"path": str(self.path)}),
            )

        try:
            packages, meta = parse_document(raw)
            snapshot = _build_snapshot(
                packages,
                fresh_on=_parse_date(meta.get("date")),
                etag=meta.get("etag"),
                checksum=meta.get("checksum") or hashlib.sha256(raw).hexdigest(),
            )
        except CacheParseError as exc:
            if strict:
                raise
            logger.warning("Cached package list %s is unusable: %s", self.path, exc.context.message)
            self._snapshot = EMPTY_SNAPSHOT
            return CacheLoad(EMPTY_SNAPSHOT, exc.context)

        self._snapshot = snapshot
        logger.info("Loaded %d packages (list date %s)", len(snapshot), snapshot.date)
        if self.is_stale(max_age):
            return CacheLoad(snapshot, self._stale_warning(max_age))
        return CacheLoad(snapshot)

    def last_modified_date(self) -> Optional[date]:
        return self._snapshot.date

    def is_stale(
        self,
        max_age: Union[timedelta, int] = MAX_LIST_AGE_DAYS,
        today: Optional[date] = None,
    ) -> bool:
        """Calendar-day staleness: older than ``max_age`` whole days, or undated."""
        max_days = max_age.days if isinstance(max_age, timedelta) else int(max_age)
        fresh_on = self._snapshot.date
        if fresh_on is None:
            return True
        return ((today or self._clock()) - fresh_on).days > max_days

    def _stale_warning(self, max_age: Union[timedelta, int]) -> ErrorContext:
        max_days = max_age.days if isinstance(max_age, timedelta) else int(max_age)
        fresh_on = self._snapshot.date
        details: Dict[str, Any] = {"path": str(self.path), "max_age_days": max_days}
        if fresh_on is None:
            return ErrorContext(ErrorCode.CACHE_STALE, "local package list is undated", details)
        details["date"] = fresh_on.isoformat()
        details["age_days"] = (self._clock() - fresh_on).days
        return ErrorContext(
            ErrorCode.CACHE_STALE,
            f"local package list is {details['age_days']} days old",
            details,
        )

    # ------------------------------------------------------------------
    # Refresh
    # ------------------------------------------------------------------

    async def refresh_if_stale(
        self,
        max_age: Union[timedelta, int] = MAX_LIST_AGE_DAYS,
    ) -> RefreshOutcome:
        async with self._refresh_lock:
            if not self.is_stale(max_age):
                return RefreshOutcome(RefreshStatus.FRESH, package_count=len(self._snapshot))
            logger.info("Package list is stale (date %s); refreshing", self._snapshot.date)
            return await self._refresh_locked()

    async def force_refresh(self) -> RefreshOutcome:
        async with self._refresh_lock:
            return await self._refresh_locked()

    async def _refresh_locked(self) -> RefreshOutcome:
        current = self._snapshot
        try:
            status, body, etag = await self._download(current.etag)
        except _FetchFailed as exc:
            return self._failed(str(exc))

        today = self._clock()

        if status == 304:
            candidate = Snapshot(
                packages=current.packages, date=today, etag=current.etag, checksum=current.checksum,
            )
            return self._commit(candidate, RefreshStatus.NOT_MODIFIED)

        checksum = hashlib.sha256(body).hexdigest()
        if current.checksum and checksum == current.checksum and len(current):
            candidate = Snapshot(
                packages=current.packages, date=today, etag=etag or current.etag, checksum=checksum,
            )
            return self._commit(candidate, RefreshStatus.NOT_MODIFIED)

        try:
            packages, _meta = parse_document(body)
        except CacheParseError as exc:
            return self._failed(f"invalid package list: {exc.context.message}", exc.context.details)
        if not packages:
            return self._failed("remote package list is empty")

        candidate = _build_snapshot(packages, fresh_on=today, etag=etag, checksum=checksum)
        return self._commit(candidate, RefreshStatus.UPDATED)

    def _commit(self, candidate: Snapshot, status: RefreshStatus) -> RefreshOutcome:
        """Persist, then swap.  Either both happen or neither."""
        try:
            write_atomic(self.path, _serialize(candidate))
        except OSError as exc:
            return self._failed(f"cannot persist package list: {exc}")
        self._snapshot = candidate
        logger.info("Package list %s: %d packages, date %s", status.value, len(candidate), candidate.date)
        return RefreshOutcome(status, package_count=len(candidate))

    def _failed(self, reason: str, details: Optional[Dict[str, Any]] = None) -> RefreshOutcome:
        logger.warning("Package list refresh failed: %s", reason)
        meta = {"url": self.source_url}
        meta.update(details or {})
        return RefreshOutcome(
            RefreshStatus.FAILED,
            reason=reason,
            error=ErrorContext(ErrorCode.REFRESH_FAILED, reason, meta),
            package_count=len(self._snapshot),
        )

    def _new_session(self) -> aiohttp.ClientSession:
        if self._session_factory is not None:
            return self._session_factory()
        return aiohttp.ClientSession(timeout=aiohttp.ClientTimeout(total=self.fetch_timeout))

    async def _download(self, etag: Optional[str]) -> Tuple[int, bytes, Optional[str]]:
        headers = {"Accept": "application/json"}
        if etag:
            headers["If-None-Match"] = etag
        try:
            session = self._new_session()
            async with session:
                async with session.get(self.source_url, headers=headers) as resp:
                    if resp.status == 304:
                        return 304, b"", etag
                    if not 200 <= resp.status < 300:
                        raise _FetchFailed(f"HTTP {resp.status} from {self.source_url}")
                    body = await asyncio.wait_for(resp.read(), timeout=self.fetch_timeout)
                    return resp.status, body, resp.headers.get("ETag")
        except asyncio.TimeoutError:
            raise _FetchFailed(f"download timed out after {self.fetch_timeout:.0f}s") from None
        except aiohttp.ClientError as exc:
            raise _FetchFailed(f"connection error: {exc}") from exc
