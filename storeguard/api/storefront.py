"""
Storefront endpoints, served through the Shopify app proxy.

GET|POST {proxy}/check_access     → access verdict for the current visitor
POST     {proxy}/track_analytics  → analytics beacon, always 204
GET      {proxy}/storefront.js    → the storefront module

check_access never errors towards the visitor: anything that goes wrong
inside the decision comes back as "not blocked".
"""

from functools import lru_cache

from fastapi import APIRouter, Depends, Request
from fastapi.responses import Response
from sqlalchemy.ext.asyncio import AsyncSession

from storeguard.config import get_settings
from storeguard.core.analytics import AnalyticsRecorder, BeaconPayload
from storeguard.core.decision import AccessDecider, content_protection_disabled
from storeguard.core.signals import (
    SESSION_ID_MAX_LENGTH,
    extract_signals,
    fingerprint_session_id,
    get_client_ip,
    get_country_code,
    get_shop,
    normalize_country_code,
)
from storeguard.core.storefront_script import render_storefront_script
from storeguard.models.database import get_db

import structlog

logger = structlog.get_logger()
router = APIRouter(prefix=get_settings().shopify_app_proxy_prefix, tags=["storefront"])


_decider: AccessDecider | None = None
_recorder: AnalyticsRecorder | None = None


def get_access_decider() -> AccessDecider:
    global _decider
    if _decider is None:
        _decider = AccessDecider()
    return _decider


def get_analytics_recorder() -> AnalyticsRecorder:
    global _recorder
    if _recorder is None:
        _recorder = AnalyticsRecorder()
    return _recorder


async def _json_body(request: Request) -> dict:
    if request.method != "POST":
        return {}
    try:
        body = await request.json()
    except Exception:
        return {}
    return body if isinstance(body, dict) else {}


def _int(value, default: int) -> int:
    try:
        return max(int(value), 0)
    except (TypeError, ValueError):
        return default


def _str(value, limit: int | None = None) -> str | None:
    if value is None:
        return None
    value = str(value).strip()
    if not value:
        return None
    return value[:limit] if limit else value


# ---------------------------------------------------------------------------
# Access check
# ---------------------------------------------------------------------------

@router.api_route("/check_access", methods=["GET", "POST"])
async def check_access(
    request: Request,
    db: AsyncSession = Depends(get_db),
    decider: AccessDecider = Depends(get_access_decider),
):
    body = await _json_body(request)
    signals = extract_signals(request, body)

    verdict = await decider.check(db, signals) if signals is not None else None

    if verdict is None:
        session_id = None
        if signals is not None:
            session_id = signals.session_id or fingerprint_session_id(signals.ip, signals.user_agent)
        return {
            "blocked": False,
            "reason": None,
            "message": None,
            "session_id": session_id,
            "content_protection": content_protection_disabled(),
        }

    return verdict.to_response()


# ---------------------------------------------------------------------------
# Beacon
# ---------------------------------------------------------------------------

@router.post("/track_analytics", status_code=204)
async def track_analytics(
    request: Request,
    db: AsyncSession = Depends(get_db),
    recorder: AnalyticsRecorder = Depends(get_analytics_recorder),
):
    body = await _json_body(request)

    shop = get_shop(request, body)
    session_id = _str(body.get("session_id"), SESSION_ID_MAX_LENGTH)
    if not shop or not session_id:
        logger.debug("beacon_ignored", has_shop=bool(shop), has_session=bool(session_id))
        return Response(status_code=204)

    performance = body.get("performance") if isinstance(body.get("performance"), dict) else {}
    # the storefront module reports its timezone guess as country_code
    beacon_country = normalize_country_code(_str(body.get("country_code")))

    beacon = BeaconPayload(
        shop=shop,
        session_id=session_id,
        ip=get_client_ip(request),
        country_code=beacon_country or get_country_code(request, body),
        user_agent=_str(body.get("user_agent")) or request.headers.get("user-agent"),
        device_type=_str(body.get("device_type"), 20),
        browser_name=_str(body.get("browser"), 50),
        is_bot=bool(body.get("is_bot")),
        page_url=_str(body.get("page_url")),
        referrer=_str(body.get("referrer")),
        visit_duration=_int(body.get("duration"), 0),
        page_views=_int(body.get("page_views"), 1),
        screen_resolution=_str(body.get("screen_resolution"), 20),
        viewport_size=_str(body.get("viewport_size"), 20),
        timezone=_str(body.get("timezone"), 100),
        language=_str(body.get("language"), 20),
        performance={
            "load_time": performance.get("load_time", performance.get("loadTime")),
            "dom_ready": performance.get("dom_ready", performance.get("domReady")),
        },
    )

    await recorder.track(db, beacon)
    return Response(status_code=204)


# ---------------------------------------------------------------------------
# Storefront module
# ---------------------------------------------------------------------------

@lru_cache
def _storefront_script(proxy_prefix: str) -> str:
    return render_storefront_script(proxy_prefix)


@router.get("/storefront.js")
async def storefront_js():
    return Response(
        content=_storefront_script(get_settings().shopify_app_proxy_prefix),
        media_type="application/javascript",
        headers={"Cache-Control": "public, max-age=300"},
    )
