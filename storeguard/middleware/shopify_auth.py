"""
Shopify authentication.

Two mechanisms, both keyed on the app's API secret:

  - App proxy signature (storefront traffic). Shopify forwards proxy requests
    with a `signature` query param: HMAC-SHA256 hex over the remaining params,
    sorted by key, each rendered "key=value" (multi-values joined with ","),
    concatenated with no separator. A valid signature sets request.state.shop.
    An invalid one is logged and ignored; the explicit shop param still applies.

  - Session tokens (admin routes). HS256 JWTs issued by Shopify App Bridge.
    `dest` carries the shop URL, `aud` must equal the API key, exp/nbf enforced.
    All admin data access is scoped to the shop from the verified token.
"""

import hashlib
import hmac
from dataclasses import dataclass
from urllib.parse import urlparse

import jwt
from fastapi import HTTPException, Request
from starlette.datastructures import QueryParams
from starlette.middleware.base import BaseHTTPMiddleware

from storeguard.config import get_settings

import structlog

logger = structlog.get_logger()


# ─── App proxy signature ───────────────────────────────────────────

def compute_app_proxy_signature(params: QueryParams | dict, secret: str) -> str:
    if isinstance(params, QueryParams):
        items = {key: params.getlist(key) for key in params.keys()}
    else:
        items = {key: value if isinstance(value, list) else [value] for key, value in params.items()}

    message = "".join(
        f"{key}={','.join(str(v) for v in values)}"
        for key, values in sorted(items.items())
        if key != "signature"
    )
    return hmac.new(secret.encode("utf-8"), message.encode("utf-8"), hashlib.sha256).hexdigest()


def verify_app_proxy_signature(params: QueryParams | dict, secret: str) -> bool:
    signature = params.get("signature")
    if not signature or not secret:
        return False
    return hmac.compare_digest(compute_app_proxy_signature(params, secret), signature)


class AppProxyAuthMiddleware(BaseHTTPMiddleware):
    """Sets request.state.shop for correctly signed app proxy requests."""

    async def dispatch(self, request: Request, call_next):
        settings = get_settings()
        params = request.query_params

        if request.url.path.startswith(settings.shopify_app_proxy_prefix) and "signature" in params:
            if verify_app_proxy_signature(params, settings.shopify_api_secret):
                shop = params.get("shop")
                if shop:
                    request.state.shop = shop.strip().lower()
            else:
                logger.warning("app_proxy_signature_invalid", path=request.url.path,
                               shop=params.get("shop"))

        return await call_next(request)


# ─── Session tokens ────────────────────────────────────────────────

@dataclass
class ShopSession:
    """Verified admin session."""
    shop: str
    user_id: str | None = None


def shop_from_dest(dest: str | None) -> str | None:
    if not dest:
        return None
    host = urlparse(dest).hostname if "://" in dest else dest
    return host.lower() if host else None


def decode_session_token(token: str) -> dict:
    settings = get_settings()
    options = {"require": ["exp", "dest"]}
    kwargs = {}
    if settings.shopify_api_key:
        kwargs["audience"] = settings.shopify_api_key
    else:
        options["verify_aud"] = False

    return jwt.decode(
        token,
        settings.shopify_api_secret,
        algorithms=["HS256"],
        options=options,
        leeway=10,
        **kwargs,
    )


async def require_shop_session(request: Request) -> ShopSession:
    """FastAPI dependency: verify the Bearer session token, return its shop."""
    auth_header = request.headers.get("Authorization", "")
    if not auth_header.startswith("Bearer "):
        raise HTTPException(
            status_code=401,
            detail="Missing session token. Include Authorization: Bearer <token>.",
            headers={"WWW-Authenticate": "Bearer"},
        )

    token = auth_header[len("Bearer "):].strip()
    try:
        payload = decode_session_token(token)
    except jwt.ExpiredSignatureError:
        raise HTTPException(status_code=401, detail="Session token expired.")
    except jwt.InvalidTokenError as e:
        logger.warning("session_token_invalid", error=str(e))
        raise HTTPException(status_code=401, detail="Invalid session token.")

    shop = shop_from_dest(payload.get("dest"))
    if not shop:
        raise HTTPException(status_code=401, detail="Session token has no shop.")

    return ShopSession(shop=shop, user_id=payload.get("sub"))
