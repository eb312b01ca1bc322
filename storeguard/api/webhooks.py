"""
Shopify webhooks.

POST /v1/webhooks/app-uninstalled → verify X-Shopify-Hmac-Sha256, then purge
every row the shop owns (rules, settings, analytics).
"""

import base64
import hashlib
import hmac
import json

from fastapi import APIRouter, Depends, HTTPException, Request
from sqlalchemy import delete
from sqlalchemy.ext.asyncio import AsyncSession

from storeguard.config import get_settings
from storeguard.models.database import get_db
from storeguard.models.tables import GLOBAL_SHOP, SHOP_SCOPED_TABLES

import structlog

logger = structlog.get_logger()
router = APIRouter(prefix="/v1/webhooks", tags=["webhooks"])


def verify_shopify_hmac(body: bytes, secret: str, hmac_header: str) -> bool:
    """Validate X-Shopify-Hmac-Sha256 against the raw request body."""
    if not hmac_header or not secret:
        return False
    digest = hmac.new(
        secret.encode("utf-8"),
        body,
        hashlib.sha256,
    ).digest()
    computed = base64.b64encode(digest).decode("utf-8")
    return hmac.compare_digest(computed, hmac_header)


def _shop_from_webhook(request: Request, body: bytes) -> str | None:
    shop = request.headers.get("X-Shopify-Shop-Domain")
    if not shop:
        try:
            payload = json.loads(body or b"{}")
        except ValueError:
            payload = {}
        if isinstance(payload, dict):
            shop = payload.get("myshopify_domain") or payload.get("domain")
    return shop.strip().lower() if shop else None


async def purge_shop(db: AsyncSession, shop: str) -> dict[str, int]:
    """Delete every row owned by `shop`. Returns deleted counts per table."""
    deleted = {}
    for model in SHOP_SCOPED_TABLES:
        result = await db.execute(delete(model).where(model.shop_domain == shop))
        deleted[model.__tablename__] = result.rowcount or 0
    await db.commit()
    return deleted


@router.post("/app-uninstalled", status_code=200)
async def webhook_app_uninstalled(
    request: Request,
    db: AsyncSession = Depends(get_db),
):
    body = await request.body()

    hmac_header = request.headers.get("X-Shopify-Hmac-Sha256", "")
    if not verify_shopify_hmac(body, get_settings().shopify_api_secret, hmac_header):
        raise HTTPException(status_code=401, detail="Invalid HMAC signature.")

    shop = _shop_from_webhook(request, body)
    if not shop or shop == GLOBAL_SHOP:
        raise HTTPException(status_code=400, detail="Missing shop domain.")

    deleted = await purge_shop(db, shop)
    logger.info("shop_data_purged", shop=shop, **deleted)

    return {"status": "ok", "shop": shop, "deleted": deleted}
