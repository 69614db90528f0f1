"""
Tests for the Package List Cache.

Parsing and validation, persistence, calendar-day staleness, and refresh
behaviour against a mocked aiohttp session (updated, not modified, failed,
atomic on failure).
"""
from __future__ import annotations

import asyncio
import json
from datetime import date, timedelta
from unittest.mock import MagicMock, patch

import aiohttp
import pytest

from debloater.errors import CacheParseError, ErrorCode
from debloater.package_list import (
    EMPTY_SNAPSHOT,
    Package,
    PackageListCache,
    RefreshStatus,
    RemovalTier,
    parse_document,
)

TODAY = date(2026, 10, 19)


def _cache(path, session=None, today=TODAY):
    return PackageListCache(
        path=path,
        source_url="https://lists.example.test/uad_lists.json",
        fetch_timeout=5,
        session_factory=(lambda: session) if session is not None else None,
        clock=lambda: today,
    )


def _write_list(path, records, list_date):
    path.parent.mkdir(parents=True, exist_ok=True)
    doc = {
        "date": list_date.isoformat(),
        "etag": '"abc"',
        "checksum": "0" * 64,
        "packages": [dict(record, id=name) for name, record in records.items()],
    }
    path.write_text(json.dumps(doc), encoding="utf-8")


# ===================================================================
# Parsing
# ===================================================================

class TestParseDocument:
    """Document shapes and validation."""

    def test_upstream_mapping(self, uad_records):
        packages, meta = parse_document(json.dumps(uad_records))
        assert [p.name for p in packages] == list(uad_records)
        assert packages[0].tier is RemovalTier.RECOMMENDED
        assert packages[1].list_name == "Aosp"
        assert meta == {}

    def test_array_shape(self):
        raw = json.dumps([{"id": "com.a", "removal": "Expert", "sideEffects": ["No SMS"]}])
        packages, _ = parse_document(raw)
        assert packages[0].side_effects == ("No SMS",)

    def test_wrapper_shape_keeps_metadata(self):
        raw = json.dumps({"date": "2026-10-01", "etag": "x", "packages": [{"id": "com.a", "removal": "Unsafe"}]})
        packages, meta = parse_document(raw)
        assert meta["date"] == "2026-10-01"
        assert meta["etag"] == "x"

    def test_duplicate_key_rejected(self):
        raw = '{"com.a": {"removal": "Recommended"}, "com.a": {"removal": "Unsafe"}}'
        with pytest.raises(CacheParseError) as exc_info:
            parse_document(raw)
        assert exc_info.value.code is ErrorCode.CACHE_PARSE_ERROR
        assert "duplicate" in exc_info.value.context.message

    def test_duplicate_id_in_array_rejected(self):
        raw = json.dumps([{"id": "com.a", "removal": "Expert"}, {"id": "com.a", "removal": "Unsafe"}])
        with pytest.raises(CacheParseError):
            parse_document(raw)

    def test_unknown_tier_rejected(self):
        with pytest.raises(CacheParseError):
            parse_document(json.dumps([{"id": "com.a", "removal": "Maybe"}]))

    def test_bad_id_rejected(self):
        with pytest.raises(CacheParseError):
            parse_document(json.dumps([{"id": "com a", "removal": "Expert"}]))

    def test_malformed_json(self):
        with pytest.raises(CacheParseError):
            parse_document(b"{not json")

    def test_bad_list_field(self):
        with pytest.raises(CacheParseError):
            parse_document(json.dumps([{"id": "com.a", "removal": "Expert", "labels": "x"}]))


class TestPackage:
    """Package record conversion."""

    def test_record_round_trip(self):
        pkg = Package("com.a", RemovalTier.ADVANCED, "desc", "Oem", ("x",), ("y",), ("l",), ("s",))
        assert Package.from_record(pkg.to_record()) == pkg


# ===================================================================
# Load & staleness
# ===================================================================

class TestLoad:
    """Reading the persisted list."""

    def test_missing_file(self, cache_path):
        cache = _cache(cache_path)
        loaded = cache.load()
        assert loaded.snapshot is EMPTY_SNAPSHOT
        assert loaded.warning.code is ErrorCode.CACHE_MISSING
        assert cache.is_stale()

    def test_valid_file(self, cache_path, uad_records):
        _write_list(cache_path, uad_records, TODAY - timedelta(days=2))
        cache = _cache(cache_path)
        loaded = cache.load()
        assert loaded.warning is None
        assert len(cache.snapshot) == 3
        assert "com.android.systemui" in cache.snapshot
        assert cache.last_modified_date() == TODAY - timedelta(days=2)
        assert cache.snapshot.etag == '"abc"'

    def test_old_list_served_with_stale_warning(self, cache_path, uad_records):
        _write_list(cache_path, uad_records, TODAY - timedelta(days=40))
        cache = _cache(cache_path)
        loaded = cache.load()
        assert len(loaded.snapshot) == 3
        assert cache.snapshot is loaded.snapshot
        assert loaded.warning.code is ErrorCode.CACHE_STALE
        assert loaded.warning.informational
        assert loaded.warning.details["age_days"] == 40
        assert loaded.warning.details["date"] == (TODAY - timedelta(days=40)).isoformat()

    def test_stale_warning_follows_max_age(self, cache_path, uad_records):
        _write_list(cache_path, uad_records, TODAY - timedelta(days=10))
        assert _cache(cache_path).load(max_age=30).warning is None
        assert _cache(cache_path).load(max_age=7).warning.code is ErrorCode.CACHE_STALE

    def test_corrupt_file_serves_empty(self, cache_path):
        cache_path.parent.mkdir(parents=True)
        cache_path.write_text("{oops", encoding="utf-8")
        cache = _cache(cache_path)
        loaded = cache.load()
        assert len(loaded.snapshot) == 0
        assert loaded.warning.code is ErrorCode.CACHE_PARSE_ERROR

    def test_corrupt_file_strict_raises(self, cache_path):
        cache_path.parent.mkdir(parents=True)
        cache_path.write_text("[]garbage", encoding="utf-8")
        with pytest.raises(CacheParseError):
            _cache(cache_path).load(strict=True)

    def test_by_tier(self, cache_path, uad_records):
        _write_list(cache_path, uad_records, TODAY)
        cache = _cache(cache_path)
        cache.load()
        assert [p.name for p in cache.snapshot.by_tier(RemovalTier.UNSAFE)] == ["com.android.systemui"]


class TestStaleness:
    """Calendar-day freshness."""

    @pytest.mark.parametrize("age,stale", [(0, False), (7, False), (8, True), (40, True)])
    def test_boundary(self, cache_path, uad_records, age, stale):
        _write_list(cache_path, uad_records, TODAY - timedelta(days=age))
        cache = _cache(cache_path)
        cache.load()
        assert cache.is_stale(timedelta(days=7)) is stale

    def test_integer_max_age(self, cache_path, uad_records):
        _write_list(cache_path, uad_records, TODAY - timedelta(days=2))
        cache = _cache(cache_path)
        cache.load()
        assert cache.is_stale(1)
        assert not cache.is_stale(2)


# ===================================================================
# Refresh
# ===================================================================

class TestRefresh:
    """Remote refresh with a mocked aiohttp session."""

    @pytest.mark.asyncio
    async def test_stale_list_updated_and_persisted(
        self, cache_path, uad_records, mock_aiohttp_session, mock_aiohttp_response,
    ):
        _write_list(cache_path, {"com.old": {"removal": "Expert"}}, TODAY - timedelta(days=40))
        body = json.dumps(uad_records).encode()
        mock_aiohttp_session.get = MagicMock(
            return_value=mock_aiohttp_response(200, body=body, headers={"ETag": '"v2"'})
        )
        cache = _cache(cache_path, mock_aiohttp_session)
        cache.load()
        old_snapshot = cache.snapshot

        outcome = await cache.refresh_if_stale(timedelta(days=7))

        assert outcome.status is RefreshStatus.UPDATED
        assert outcome.package_count == 3
        assert cache.last_modified_date() == TODAY
        assert not cache.is_stale(timedelta(days=7))
        assert "com.old" not in cache.snapshot
        assert "com.old" in old_snapshot

        on_disk = json.loads(cache_path.read_text(encoding="utf-8"))
        assert on_disk["date"] == TODAY.isoformat()
        assert on_disk["etag"] == '"v2"'
        assert len(on_disk["packages"]) == 3
        assert not cache_path.with_suffix(".json.tmp").exists()

    @pytest.mark.asyncio
    async def test_fresh_list_not_fetched(self, cache_path, uad_records, mock_aiohttp_session):
        _write_list(cache_path, uad_records, TODAY - timedelta(days=1))
        cache = _cache(cache_path, mock_aiohttp_session)
        cache.load()
        outcome = await cache.refresh_if_stale(timedelta(days=7))
        assert outcome.status is RefreshStatus.FRESH
        mock_aiohttp_session.get.assert_not_called()

    @pytest.mark.asyncio
    async def test_not_modified_bumps_date(
        self, cache_path, uad_records, mock_aiohttp_session, mock_aiohttp_response,
    ):
        _write_list(cache_path, uad_records, TODAY - timedelta(days=10))
        mock_aiohttp_session.get = MagicMock(return_value=mock_aiohttp_response(304))
        cache = _cache(cache_path, mock_aiohttp_session)
        cache.load()

        outcome = await cache.force_refresh()

        assert outcome.status is RefreshStatus.NOT_MODIFIED
        assert cache.last_modified_date() == TODAY
        assert len(cache.snapshot) == 3
        sent_headers = mock_aiohttp_session.get.call_args.kwargs["headers"]
        assert sent_headers["If-None-Match"] == '"abc"'

    @pytest.mark.asyncio
    async def test_timeout_keeps_everything(self, cache_path, uad_records, mock_aiohttp_session):
        _write_list(cache_path, uad_records, TODAY - timedelta(days=40))
        before_bytes = cache_path.read_bytes()
        mock_aiohttp_session.get = MagicMock(side_effect=asyncio.TimeoutError())
        cache = _cache(cache_path, mock_aiohttp_session)
        cache.load()
        before = cache.snapshot

        outcome = await cache.refresh_if_stale(timedelta(days=7))

        assert outcome.status is RefreshStatus.FAILED
        assert outcome.error.code is ErrorCode.REFRESH_FAILED
        assert "timed out" in outcome.reason
        assert cache.snapshot is before
        assert cache.is_stale(timedelta(days=7))
        assert cache_path.read_bytes() == before_bytes

    @pytest.mark.asyncio
    async def test_connection_error(self, cache_path, mock_aiohttp_session):
        mock_aiohttp_session.get = MagicMock(side_effect=aiohttp.ClientConnectionError("refused"))
        cache = _cache(cache_path, mock_aiohttp_session)
        cache.load()
        outcome = await cache.force_refresh()
        assert not outcome.ok
        assert not cache_path.exists()

    @pytest.mark.asyncio
    async def test_http_error(self, cache_path, mock_aiohttp_session, mock_aiohttp_response):
        mock_aiohttp_session.get = MagicMock(return_value=mock_aiohttp_response(503))
        cache = _cache(cache_path, mock_aiohttp_session)
        outcome = await cache.force_refresh()
        assert outcome.status is RefreshStatus.FAILED
        assert "503" in outcome.reason

    @pytest.mark.asyncio
    async def test_duplicate_in_remote_rejected(
        self, cache_path, uad_records, mock_aiohttp_session, mock_aiohttp_response,
    ):
        _write_list(cache_path, uad_records, TODAY - timedelta(days=40))
        before_bytes = cache_path.read_bytes()
        body = b'{"com.a": {"removal": "Recommended"}, "com.a": {"removal": "Unsafe"}}'
        mock_aiohttp_session.get = MagicMock(return_value=mock_aiohttp_response(200, body=body))
        cache = _cache(cache_path, mock_aiohttp_session)
        cache.load()
        before = cache.snapshot

        outcome = await cache.force_refresh()

        assert outcome.status is RefreshStatus.FAILED
        assert cache.snapshot is before
        assert cache_path.read_bytes() == before_bytes

    @pytest.mark.asyncio
    async def test_empty_remote_rejected(self, cache_path, mock_aiohttp_session, mock_aiohttp_response):
        mock_aiohttp_session.get = MagicMock(return_value=mock_aiohttp_response(200, body=b"[]"))
        cache = _cache(cache_path, mock_aiohttp_session)
        outcome = await cache.force_refresh()
        assert outcome.status is RefreshStatus.FAILED

    @pytest.mark.asyncio
    async def test_write_failure_keeps_snapshot(
        self, cache_path, uad_records, mock_aiohttp_session, mock_aiohttp_response,
    ):
        body = json.dumps(uad_records).encode()
        mock_aiohttp_session.get = MagicMock(return_value=mock_aiohttp_response(200, body=body))
        cache = _cache(cache_path, mock_aiohttp_session)
        cache.load()

        with patch("debloater.package_list.os.replace", side_effect=OSError("disk full")):
            outcome = await cache.force_refresh()

        assert outcome.status is RefreshStatus.FAILED
        assert "disk full" in outcome.reason
        assert len(cache.snapshot) == 0
        assert not cache_path.exists()
        assert not cache_path.with_suffix(".json.tmp").exists()

    @pytest.mark.asyncio
    async def test_identical_body_is_not_modified(
        self, cache_path, uad_records, mock_aiohttp_session, mock_aiohttp_response,
    ):
        body = json.dumps(uad_records).encode()
        mock_aiohttp_session.get = MagicMock(return_value=mock_aiohttp_response(200, body=body))
        cache = _cache(cache_path, mock_aiohttp_session)
        assert (await cache.force_refresh()).status is RefreshStatus.UPDATED
        assert (await cache.force_refresh()).status is RefreshStatus.NOT_MODIFIED

    @pytest.mark.asyncio
    async def test_concurrent_refreshes_fetch_once(
        self, cache_path, uad_records, mock_aiohttp_session, mock_aiohttp_response,
    ):
        body = json.dumps(uad_records).encode()
        mock_aiohttp_session.get = MagicMock(return_value=mock_aiohttp_response(200, body=body))
        cache = _cache(cache_path, mock_aiohttp_session)
        outcomes = await asyncio.gather(*(cache.refresh_if_stale(7) for _ in range(3)))
        statuses = sorted(o.status.value for o in outcomes)
        assert statuses == ["fresh", "fresh", "updated"]
        assert mock_aiohttp_session.get.call_count == 1

    @pytest.mark.asyncio
    async def test_reload_after_refresh(
        self, cache_path, uad_records, mock_aiohttp_session, mock_aiohttp_response,
    ):
        body = json.dumps(uad_records).encode()
        mock_aiohttp_session.get = MagicMock(return_value=mock_aiohttp_response(200, body=body))
        await _cache(cache_path, mock_aiohttp_session).force_refresh()

        reloaded = _cache(cache_path)
        assert reloaded.load().warning is None
        assert len(reloaded.snapshot) == 3
        assert reloaded.last_modified_date() == TODAY
