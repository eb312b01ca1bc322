"""Tests for session-scoped analytics recording and the beacon merge."""

import datetime
from unittest.mock import AsyncMock, MagicMock

from sqlalchemy import select

from storeguard.core.analytics import AnalyticsRecorder, BeaconPayload, VisitRecord
from storeguard.models.tables import PerformanceSample, VisitSession

SHOP = "test-store.myshopify.com"
CHROME_UA = (
    "Mozilla/5.0 (Macintosh; Intel Mac OS X 10_15_7) "
    "AppleWebKit/537.36 (KHTML, like Gecko) Chrome/120.0.0.0 Safari/537.36"
)
T0 = datetime.datetime(2026, 3, 1, 12, 0, 0, tzinfo=datetime.timezone.utc)


def _visit(session_id="sess-1", shop=SHOP, page_url="https://shop/a", **kwargs) -> VisitRecord:
    return VisitRecord(
        shop=shop,
        session_id=session_id,
        ip="8.8.8.8",
        country_code="US",
        user_agent=CHROME_UA,
        page_url=page_url,
        referrer="https://google.com",
        **kwargs,
    )


async def _rows(db, shop=SHOP, session_id="sess-1"):
    result = await db.execute(
        select(VisitSession)
        .where(VisitSession.shop_domain == shop, VisitSession.session_id == session_id)
        .order_by(VisitSession.id)
        .execution_options(populate_existing=True)
    )
    return result.scalars().all()


class TestVisitRecord:
    def test_enriches_device_and_browser(self):
        v = _visit()
        assert v.device_type == "desktop"
        assert v.browser_name == "Chrome"
        assert v.browser_version.startswith("120")


class TestRecord:
    async def test_first_request_inserts_row(self, db):
        await AnalyticsRecorder().record(db, _visit(blocked_reason="IP address blocked"), now=T0)

        rows = await _rows(db)
        assert len(rows) == 1
        row = rows[0]
        assert row.page_views == 1
        assert row.visit_duration == 0
        assert row.ip_address == "8.8.8.8"
        assert row.country_code == "US"
        assert row.device_type == "desktop"
        assert row.browser_name == "Chrome"
        assert row.blocked_reason == "IP address blocked"

    async def test_repeat_within_window_merges(self, db):
        recorder = AnalyticsRecorder()
        await recorder.record(db, _visit(page_url="https://shop/a"), now=T0)
        await recorder.record(db, _visit(page_url="https://shop/b"), now=T0 + datetime.timedelta(minutes=5))

        rows = await _rows(db)
        assert len(rows) == 1
        assert rows[0].page_views == 2
        assert rows[0].visit_duration == 300
        assert rows[0].page_url == "https://shop/b"

    async def test_new_row_after_window(self, db):
        recorder = AnalyticsRecorder()
        await recorder.record(db, _visit(), now=T0)
        await recorder.record(db, _visit(), now=T0 + datetime.timedelta(minutes=31))

        rows = await _rows(db)
        assert len(rows) == 2
        assert [r.page_views for r in rows] == [1, 1]

    async def test_window_is_configurable(self, db):
        recorder = AnalyticsRecorder(window_seconds=60)
        await recorder.record(db, _visit(), now=T0)
        await recorder.record(db, _visit(), now=T0 + datetime.timedelta(seconds=90))
        assert len(await _rows(db)) == 2

    async def test_sessions_scoped_by_shop(self, db):
        recorder = AnalyticsRecorder()
        await recorder.record(db, _visit(), now=T0)
        await recorder.record(db, _visit(shop="other.myshopify.com"), now=T0)

        assert len(await _rows(db)) == 1
        assert len(await _rows(db, shop="other.myshopify.com")) == 1

    async def test_errors_swallowed_and_rolled_back(self):
        db = MagicMock()
        db.execute = AsyncMock(side_effect=RuntimeError("database is gone"))
        db.rollback = AsyncMock()

        await AnalyticsRecorder().record(db, _visit(), now=T0)

        db.rollback.assert_awaited_once()


class TestTrack:
    async def test_beacon_creates_row(self, db):
        ok = await AnalyticsRecorder().track(db, BeaconPayload(
            shop=SHOP, session_id="sess-1", user_agent=CHROME_UA,
            visit_duration=12, page_views=2, screen_resolution="1920x1080",
            timezone="Europe/Berlin", language="de-DE",
        ), now=T0)

        assert ok is True
        row = (await _rows(db))[0]
        assert row.visit_duration == 12
        assert row.page_views == 2
        assert row.screen_resolution == "1920x1080"
        assert row.timezone == "Europe/Berlin"

    async def test_beacon_merges_with_max(self, db):
        recorder = AnalyticsRecorder()
        await recorder.track(db, BeaconPayload(shop=SHOP, session_id="sess-1",
                                               visit_duration=120, page_views=5), now=T0)
        await recorder.track(db, BeaconPayload(shop=SHOP, session_id="sess-1",
                                               visit_duration=30, page_views=7),
                             now=T0 + datetime.timedelta(hours=2))

        rows = await _rows(db)
        assert len(rows) == 1
        assert rows[0].visit_duration == 120
        assert rows[0].page_views == 7

    async def test_beacon_never_blanks_client_fields(self, db):
        recorder = AnalyticsRecorder()
        await recorder.track(db, BeaconPayload(shop=SHOP, session_id="sess-1",
                                               language="en-US", viewport_size="800x600"), now=T0)
        await recorder.track(db, BeaconPayload(shop=SHOP, session_id="sess-1",
                                               viewport_size="1024x768"),
                             now=T0 + datetime.timedelta(minutes=1))

        row = (await _rows(db))[0]
        assert row.language == "en-US"
        assert row.viewport_size == "1024x768"

    async def test_beacon_merges_into_check_access_row(self, db):
        recorder = AnalyticsRecorder()
        await recorder.record(db, _visit(), now=T0)
        await recorder.track(db, BeaconPayload(shop=SHOP, session_id="sess-1",
                                               visit_duration=45, page_views=1),
                             now=T0 + datetime.timedelta(minutes=1))

        rows = await _rows(db)
        assert len(rows) == 1
        assert rows[0].visit_duration == 45
        assert rows[0].page_views == 1
        assert rows[0].ip_address == "8.8.8.8"

    async def test_beacon_window_is_four_hours(self, db):
        recorder = AnalyticsRecorder()
        await recorder.track(db, BeaconPayload(shop=SHOP, session_id="sess-1"), now=T0)
        await recorder.track(db, BeaconPayload(shop=SHOP, session_id="sess-1"),
                             now=T0 + datetime.timedelta(hours=5))
        assert len(await _rows(db)) == 2

    async def test_performance_sample_appended(self, db):
        await AnalyticsRecorder().track(db, BeaconPayload(
            shop=SHOP, session_id="sess-1", page_url="https://shop/a",
            performance={"load_time": 1234, "dom_ready": "456"},
        ), now=T0)

        result = await db.execute(select(PerformanceSample))
        samples = result.scalars().all()
        assert len(samples) == 1
        assert samples[0].load_time == 1234
        assert samples[0].dom_ready_time == 456

    async def test_no_performance_sample_without_load_time(self, db):
        await AnalyticsRecorder().track(db, BeaconPayload(shop=SHOP, session_id="sess-1",
                                                          performance={"dom_ready": 10}), now=T0)
        result = await db.execute(select(PerformanceSample))
        assert result.scalars().all() == []

    async def test_track_failure_returns_false(self):
        db = MagicMock()
        db.execute = AsyncMock(side_effect=RuntimeError("boom"))
        db.rollback = AsyncMock()

        ok = await AnalyticsRecorder().track(db, BeaconPayload(shop=SHOP, session_id="s"), now=T0)

        assert ok is False
        db.rollback.assert_awaited_once()
