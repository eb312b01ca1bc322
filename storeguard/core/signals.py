"""
Client signal extraction — who is asking, for which shop, from where.

IP resolution order (first non-empty wins):
  1. X-Forwarded-For (first hop)
  2. X-Real-IP
  3. CF-Connecting-IP
  4. request.state.client_ip (set by a trusted proxy layer)
  5. raw socket peer

Country resolution order:
  1. explicit ?country= / body param
  2. CF-IPCountry header
  3. guess_country_from_timezone(): the client-reported ?timezone= mapped
     through the timezone table

Trust boundary: country blocking is only as trustworthy as the edge header or
the client. The storefront module guesses the country from the browser
timezone and sends it as a parameter; a visitor can spoof either. There is no
server-side geolocation.
"""

import hashlib
from dataclasses import dataclass

from fastapi import Request

from storeguard.core.ip_utils import normalize_ip
from storeguard.core.timezones import country_for_timezone

# Cloudflare sends XX when it cannot place the address
_UNKNOWN_COUNTRY_CODES = {"XX", ""}

# user_analytics.session_id is String(100)
SESSION_ID_MAX_LENGTH = 100


@dataclass
class ClientSignals:
    """Raw signals for one storefront request."""
    shop: str
    ip: str | None
    user_agent: str
    country_code: str | None = None
    session_id: str | None = None
    page_url: str | None = None
    referrer: str | None = None


def _param(request: Request, body: dict | None, name: str) -> str | None:
    value = request.query_params.get(name)
    if not value and body:
        raw = body.get(name)
        value = str(raw) if raw is not None else None
    if value is None:
        return None
    value = value.strip()
    return value or None


def get_client_ip(request: Request) -> str | None:
    """Resolve the client IP from proxy headers, falling back to the peer address."""
    forwarded = request.headers.get("x-forwarded-for")
    if forwarded:
        first = forwarded.split(",")[0].strip()
        if first:
            return normalize_ip(first)

    for header in ("x-real-ip", "cf-connecting-ip"):
        value = request.headers.get(header)
        if value and value.strip():
            return normalize_ip(value)

    resolved = getattr(request.state, "client_ip", None)
    if resolved:
        return normalize_ip(resolved)

    if request.client and request.client.host:
        return normalize_ip(request.client.host)
    return None


def normalize_country_code(value: str | None) -> str | None:
    if not value:
        return None
    code = value.strip().upper()
    if code in _UNKNOWN_COUNTRY_CODES or len(code) != 2 or not code.isalpha():
        return None
    return code


def guess_country_from_timezone(request: Request, body: dict | None = None) -> str | None:
    """Last-resort guess from the IANA timezone the browser reported."""
    return country_for_timezone(_param(request, body, "timezone"))


def get_country_code(request: Request, body: dict | None = None) -> str | None:
    return (
        normalize_country_code(_param(request, body, "country"))
        or normalize_country_code(request.headers.get("cf-ipcountry"))
        or guess_country_from_timezone(request, body)
    )


def get_shop(request: Request, body: dict | None = None) -> str | None:
    shop = _param(request, body, "shop") or getattr(request.state, "shop", None)
    return shop.strip().lower() if shop else None


def fingerprint_session_id(ip: str | None, user_agent: str) -> str:
    """Stable id for clients that did not send one, so repeat requests merge."""
    return hashlib.sha256(f"{ip}:{user_agent}".encode()).hexdigest()[:32]


def extract_signals(request: Request, body: dict | None = None) -> ClientSignals | None:
    """Collect request signals. Returns None when the shop cannot be identified."""
    shop = get_shop(request, body)
    if not shop:
        return None

    ip = get_client_ip(request)
    user_agent = request.headers.get("user-agent", "")
    session_id = _param(request, body, "session_id")

    return ClientSignals(
        shop=shop,
        ip=ip,
        user_agent=user_agent,
        country_code=get_country_code(request, body),
        session_id=session_id[:SESSION_ID_MAX_LENGTH] if session_id else None,
        page_url=_param(request, body, "page_url") or str(request.url),
        referrer=_param(request, body, "referrer") or request.headers.get("referer"),
    )
