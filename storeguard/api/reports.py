"""
Analytics reporting, session-token authenticated, scoped to the token's shop.

GET /v1/analytics/summary   → visits, unique sessions/IPs, page views, bots, blocks
GET /v1/analytics/blocking  → block counts by kind (classified on the reason prefix)
GET /v1/analytics/bots      → top bots with their blocked counts
GET /v1/analytics/visitors  → paginated visit rows, optional bot / blocked exclusion
GET /v1/analytics/realtime  → last 30 minutes of activity
GET /v1/analytics/export    → visit rows as CSV or JSON
"""

import datetime
from collections import Counter
from typing import Literal

from fastapi import APIRouter, Depends, Query
from sqlalchemy import and_, func, select
from sqlalchemy.ext.asyncio import AsyncSession

from storeguard.core.analytics import as_utc, utcnow
from storeguard.core.csv_export import csv_response, rows_to_csv
from storeguard.middleware.shopify_auth import ShopSession, require_shop_session
from storeguard.models.database import get_db
from storeguard.models.tables import VisitSession

import structlog

logger = structlog.get_logger()
router = APIRouter(prefix="/v1/analytics", tags=["analytics"])

REALTIME_WINDOW_MINUTES = 30
MAX_EXPORT_ROWS = 50000

ANALYTICS_EXPORT_HEADERS = [
    "Date", "IP", "Country", "Device", "Browser", "Browser Version", "Page URL",
    "Referrer", "Duration", "Page Views", "Is Bot", "Bot Name", "Blocked Reason",
]


def _period_filter(shop: str, days: int = 30):
    """Return a WHERE clause for shop + last N days."""
    cutoff = datetime.datetime.now(datetime.timezone.utc) - datetime.timedelta(days=days)
    return and_(
        VisitSession.shop_domain == shop,
        VisitSession.created_at >= cutoff,
    )


def _blocked():
    return VisitSession.blocked_reason.is_not(None)


@router.get("/summary")
async def analytics_summary(
    session: ShopSession = Depends(require_shop_session),
    db: AsyncSession = Depends(get_db),
    days: int = Query(30, ge=1, le=365),
):
    result = await db.execute(
        select(
            func.count(VisitSession.id).label("visits"),
            func.count(func.distinct(VisitSession.session_id)).label("unique_sessions"),
            func.count(func.distinct(VisitSession.ip_address)).label("unique_ips"),
            func.coalesce(func.sum(VisitSession.page_views), 0).label("page_views"),
            func.count(VisitSession.id).filter(VisitSession.is_bot == True).label("bot_visits"),
            func.count(VisitSession.id).filter(_blocked()).label("blocked_visits"),
        ).where(_period_filter(session.shop, days))
    )
    row = result.one()

    return {
        "visits": row.visits,
        "unique_sessions": row.unique_sessions,
        "unique_ips": row.unique_ips,
        "page_views": int(row.page_views or 0),
        "bot_visits": row.bot_visits,
        "blocked_visits": row.blocked_visits,
        "period_days": days,
    }


@router.get("/blocking")
async def analytics_blocking(
    session: ShopSession = Depends(require_shop_session),
    db: AsyncSession = Depends(get_db),
    days: int = Query(30, ge=1, le=365),
):
    """Blocks per kind. Reasons start with the kind: "Bot ", "IP " or "Country "."""
    reason = VisitSession.blocked_reason
    result = await db.execute(
        select(
            func.count(VisitSession.id).filter(reason.like("Country %")).label("country_blocks"),
            func.count(VisitSession.id).filter(reason.like("IP %")).label("ip_blocks"),
            func.count(VisitSession.id).filter(reason.like("Bot %")).label("bot_blocks"),
            func.count(VisitSession.id).filter(_blocked()).label("total_blocks"),
        ).where(_period_filter(session.shop, days))
    )
    row = result.one()

    top = await db.execute(
        select(reason, func.count(VisitSession.id).label("count"))
        .where(_period_filter(session.shop, days), _blocked())
        .group_by(reason)
        .order_by(func.count(VisitSession.id).desc())
        .limit(10)
    )

    return {
        "country_blocks": row.country_blocks,
        "ip_blocks": row.ip_blocks,
        "bot_blocks": row.bot_blocks,
        "total_blocks": row.total_blocks,
        "top_reasons": [{"reason": r.blocked_reason, "count": r.count} for r in top.all()],
        "period_days": days,
    }


@router.get("/bots")
async def analytics_bots(
    session: ShopSession = Depends(require_shop_session),
    db: AsyncSession = Depends(get_db),
    days: int = Query(30, ge=1, le=365),
    limit: int = Query(10, ge=1, le=100),
):
    """Bot visits grouped by bot_name, with how many were blocked."""
    result = await db.execute(
        select(
            VisitSession.bot_name,
            func.count(VisitSession.id).label("visits"),
            func.count(VisitSession.id).filter(_blocked()).label("blocked"),
        )
        .where(_period_filter(session.shop, days), VisitSession.is_bot == True)
        .group_by(VisitSession.bot_name)
        .order_by(func.count(VisitSession.id).desc())
        .limit(limit)
    )
    return [
        {"bot_name": row.bot_name or "Unknown", "visits": row.visits, "blocked": row.blocked}
        for row in result.all()
    ]


def _visitor(row: VisitSession) -> dict:
    return {
        "id": row.id,
        "session_id": row.session_id,
        "ip_address": row.ip_address,
        "country_code": row.country_code,
        "device_type": row.device_type,
        "browser_name": row.browser_name,
        "browser_version": row.browser_version,
        "page_url": row.page_url,
        "referrer": row.referrer,
        "visit_duration": row.visit_duration,
        "page_views": row.page_views,
        "is_bot": row.is_bot,
        "bot_name": row.bot_name,
        "blocked_reason": row.blocked_reason,
        "created_at": row.created_at,
    }


@router.get("/visitors")
async def analytics_visitors(
    session: ShopSession = Depends(require_shop_session),
    db: AsyncSession = Depends(get_db),
    days: int = Query(7, ge=1, le=365),
    page: int = Query(1, ge=1),
    limit: int = Query(50, ge=1, le=200),
    exclude_bots: bool = False,
    exclude_blocked: bool = False,
):
    """Paginated visit rows, newest first."""
    conditions = [_period_filter(session.shop, days)]
    if exclude_bots:
        conditions.append(VisitSession.is_bot.is_not(True))
    if exclude_blocked:
        conditions.append(VisitSession.blocked_reason.is_(None))

    total = (await db.execute(
        select(func.count(VisitSession.id)).where(*conditions)
    )).scalar_one()

    result = await db.execute(
        select(VisitSession)
        .where(*conditions)
        .order_by(VisitSession.created_at.desc(), VisitSession.id.desc())
        .offset((page - 1) * limit)
        .limit(limit)
    )

    return {
        "visitors": [_visitor(row) for row in result.scalars().all()],
        "total": total,
        "page": page,
        "limit": limit,
        "pages": (total + limit - 1) // limit,
    }


@router.get("/realtime")
async def analytics_realtime(
    session: ShopSession = Depends(require_shop_session),
    db: AsyncSession = Depends(get_db),
):
    """Activity over the last 30 minutes, plus page views per minute for the last hour."""
    now = utcnow()
    window = and_(
        VisitSession.shop_domain == session.shop,
        VisitSession.created_at >= now - datetime.timedelta(minutes=REALTIME_WINDOW_MINUTES),
    )

    stats = (await db.execute(
        select(
            func.count(func.distinct(VisitSession.session_id)).label("current_visitors"),
            func.count(func.distinct(VisitSession.ip_address)).label("unique_visitors"),
            func.count(VisitSession.id).filter(VisitSession.is_bot == True).label("bot_visits"),
            func.count(VisitSession.id).filter(_blocked()).label("blocked_visits"),
        ).where(window)
    )).one()

    recent = await db.execute(
        select(VisitSession)
        .where(window)
        .order_by(VisitSession.created_at.desc(), VisitSession.id.desc())
        .limit(10)
    )

    last_hour = await db.execute(
        select(VisitSession.created_at, VisitSession.page_views).where(
            VisitSession.shop_domain == session.shop,
            VisitSession.created_at >= now - datetime.timedelta(hours=1),
        )
    )
    per_minute = Counter()
    for created_at, page_views in last_hour.all():
        per_minute[as_utc(created_at).replace(second=0, microsecond=0)] += page_views or 0

    return {
        "current_visitors": stats.current_visitors,
        "unique_visitors": stats.unique_visitors,
        "bot_visits": stats.bot_visits,
        "blocked_visits": stats.blocked_visits,
        "window_minutes": REALTIME_WINDOW_MINUTES,
        "recent_visitors": [_visitor(row) for row in recent.scalars().all()],
        "page_views_per_minute": [
            {"minute": minute, "page_views": views} for minute, views in sorted(per_minute.items())
        ],
    }


@router.get("/export")
async def analytics_export(
    session: ShopSession = Depends(require_shop_session),
    db: AsyncSession = Depends(get_db),
    days: int = Query(30, ge=1, le=365),
    fmt: Literal["csv", "json"] = Query("csv", alias="format"),
):
    result = await db.execute(
        select(VisitSession)
        .where(_period_filter(session.shop, days))
        .order_by(VisitSession.created_at.desc(), VisitSession.id.desc())
        .limit(MAX_EXPORT_ROWS)
    )
    visits = result.scalars().all()
    logger.info("analytics_exported", shop=session.shop, format=fmt, count=len(visits), days=days)

    if fmt == "json":
        return {"visitors": [_visitor(row) for row in visits], "count": len(visits), "period_days": days}

    rows = [
        {
            "Date": row.created_at,
            "IP": row.ip_address,
            "Country": row.country_code,
            "Device": row.device_type,
            "Browser": row.browser_name,
            "Browser Version": row.browser_version,
            "Page URL": row.page_url,
            "Referrer": row.referrer,
            "Duration": row.visit_duration,
            "Page Views": row.page_views,
            "Is Bot": row.is_bot,
            "Bot Name": row.bot_name,
            "Blocked Reason": row.blocked_reason,
        }
        for row in visits
    ]
    return csv_response(rows_to_csv(rows, ANALYTICS_EXPORT_HEADERS), f"analytics-{session.shop}-{days}d.csv")
