"""
Session-scoped visit analytics.

Two writers feed user_analytics:
  - record(): called by the access decider on every storefront check.
    30-minute window. A repeat request bumps page_views by one in SQL and
    overwrites visit_duration, page_url and updated_at.
  - track(): the storefront beacon. 4-hour window. Counters merge with
    max(existing, incoming); client environment fields are only filled in,
    never blanked.

Neither raises. Failures are logged and rolled back; analytics must never
turn an allowed visit into an error.

The lookup-then-write is not atomic. Two concurrent first requests for the
same session can both insert; reporting tolerates the duplicate row.
"""

import datetime
from dataclasses import dataclass, field

from sqlalchemy import case, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from storeguard.config import get_settings
from storeguard.core.bot_detection import detect_device, parse_browser
from storeguard.core.failsafe import bounded
from storeguard.models.tables import PerformanceSample, VisitSession

import structlog

logger = structlog.get_logger()


def utcnow() -> datetime.datetime:
    return datetime.datetime.now(datetime.timezone.utc)


def as_utc(value: datetime.datetime) -> datetime.datetime:
    # sqlite hands back naive datetimes; they were written as UTC
    if value.tzinfo is None:
        return value.replace(tzinfo=datetime.timezone.utc)
    return value


def _greatest(column, value: int):
    return case((column < value, value), else_=column)


@dataclass
class VisitRecord:
    """Everything the decider knows about one storefront request."""
    shop: str
    session_id: str
    ip: str | None = None
    country_code: str | None = None
    user_agent: str | None = None
    page_url: str | None = None
    referrer: str | None = None
    is_bot: bool = False
    bot_name: str | None = None
    blocked_reason: str | None = None
    device_type: str | None = None
    browser_name: str | None = None
    browser_version: str | None = None

    def __post_init__(self):
        if self.device_type is None:
            self.device_type = detect_device(self.user_agent)
        if self.browser_name is None or self.browser_version is None:
            name, version = parse_browser(self.user_agent)
            self.browser_name = self.browser_name or name
            self.browser_version = self.browser_version or version


@dataclass
class BeaconPayload:
    shop: str
    session_id: str
    ip: str | None = None
    country_code: str | None = None
    user_agent: str | None = None
    device_type: str | None = None
    browser_name: str | None = None
    is_bot: bool = False
    page_url: str | None = None
    referrer: str | None = None
    visit_duration: int = 0
    page_views: int = 1
    screen_resolution: str | None = None
    viewport_size: str | None = None
    timezone: str | None = None
    language: str | None = None
    performance: dict = field(default_factory=dict)


class AnalyticsRecorder:
    def __init__(self, window_seconds: int | None = None, beacon_window_seconds: int | None = None):
        settings = get_settings()
        self.window = datetime.timedelta(
            seconds=window_seconds if window_seconds is not None else settings.session_window_seconds
        )
        self.beacon_window = datetime.timedelta(
            seconds=beacon_window_seconds
            if beacon_window_seconds is not None
            else settings.beacon_session_window_seconds
        )

    async def _find_open_session(
        self,
        db: AsyncSession,
        shop: str,
        session_id: str,
        cutoff: datetime.datetime,
    ):
        stmt = (
            select(VisitSession.id, VisitSession.created_at)
            .where(
                VisitSession.shop_domain == shop,
                VisitSession.session_id == session_id,
                VisitSession.created_at > cutoff,
            )
            .order_by(VisitSession.created_at.desc())
            .limit(1)
        )
        result = await bounded(db.execute(stmt))
        return result.first()

    async def record(
        self,
        db: AsyncSession,
        visit: VisitRecord,
        now: datetime.datetime | None = None,
    ) -> None:
        """Upsert the visit into the shop's open session row. Never raises."""
        now = now or utcnow()
        try:
            existing = await self._find_open_session(db, visit.shop, visit.session_id, now - self.window)

            if existing is not None:
                duration = int((now - as_utc(existing.created_at)).total_seconds())
                await bounded(db.execute(
                    update(VisitSession)
                    .where(VisitSession.id == existing.id)
                    .values(
                        page_views=VisitSession.page_views + 1,
                        visit_duration=max(duration, 0),
                        page_url=visit.page_url,
                        updated_at=now,
                    )
                    .execution_options(synchronize_session=False)
                ))
            else:
                db.add(VisitSession(
                    shop_domain=visit.shop,
                    session_id=visit.session_id,
                    ip_address=visit.ip,
                    country_code=visit.country_code,
                    user_agent=visit.user_agent,
                    device_type=visit.device_type,
                    browser_name=visit.browser_name,
                    browser_version=visit.browser_version,
                    page_url=visit.page_url,
                    referrer=visit.referrer,
                    visit_duration=0,
                    page_views=1,
                    is_bot=visit.is_bot,
                    bot_name=visit.bot_name,
                    blocked_reason=visit.blocked_reason,
                    created_at=now,
                    updated_at=now,
                ))

            await bounded(db.commit())
        except Exception as e:
            logger.warning(
                "analytics_record_failed",
                shop=visit.shop,
                session_id=visit.session_id,
                error=str(e) or type(e).__name__,
            )
            await _rollback(db)

    async def track(
        self,
        db: AsyncSession,
        beacon: BeaconPayload,
        now: datetime.datetime | None = None,
    ) -> bool:
        """Merge a storefront beacon into its session row. Returns False on failure."""
        now = now or utcnow()
        try:
            existing = await self._find_open_session(
                db, beacon.shop, beacon.session_id, now - self.beacon_window,
            )

            if existing is not None:
                values = {
                    "visit_duration": _greatest(VisitSession.visit_duration, beacon.visit_duration),
                    "page_views": _greatest(VisitSession.page_views, beacon.page_views),
                    "page_url": beacon.page_url,
                    "updated_at": now,
                }
                for name in ("user_agent", "screen_resolution", "viewport_size", "timezone", "language"):
                    value = getattr(beacon, name)
                    if value:
                        values[name] = value

                await bounded(db.execute(
                    update(VisitSession)
                    .where(VisitSession.id == existing.id)
                    .values(**values)
                    .execution_options(synchronize_session=False)
                ))
            else:
                browser_name = beacon.browser_name or parse_browser(beacon.user_agent)[0]
                db.add(VisitSession(
                    shop_domain=beacon.shop,
                    session_id=beacon.session_id,
                    ip_address=beacon.ip,
                    country_code=beacon.country_code,
                    user_agent=beacon.user_agent,
                    device_type=beacon.device_type or detect_device(beacon.user_agent),
                    browser_name=browser_name,
                    page_url=beacon.page_url,
                    referrer=beacon.referrer,
                    visit_duration=beacon.visit_duration,
                    page_views=beacon.page_views,
                    is_bot=beacon.is_bot,
                    screen_resolution=beacon.screen_resolution,
                    viewport_size=beacon.viewport_size,
                    timezone=beacon.timezone,
                    language=beacon.language,
                    created_at=now,
                    updated_at=now,
                ))

            load_time = _int_or_none(beacon.performance.get("load_time"))
            if load_time:
                db.add(PerformanceSample(
                    shop_domain=beacon.shop,
                    session_id=beacon.session_id,
                    page_url=beacon.page_url,
                    load_time=load_time,
                    dom_ready_time=_int_or_none(beacon.performance.get("dom_ready")),
                    created_at=now,
                ))

            await bounded(db.commit())
            return True
        except Exception as e:
            logger.warning(
                "analytics_track_failed",
                shop=beacon.shop,
                session_id=beacon.session_id,
                error=str(e) or type(e).__name__,
            )
            await _rollback(db)
            return False


def _int_or_none(value) -> int | None:
    if value is None:
        return None
    try:
        return int(value)
    except (TypeError, ValueError):
        return None


async def _rollback(db: AsyncSession) -> None:
    try:
        await db.rollback()
    except Exception as e:
        logger.error("analytics_rollback_failed", error=str(e))
