"""
Per-shop presentation settings, returned alongside access verdicts.

GET/PUT /v1/settings/content-protection
GET/PUT /v1/settings/block/{category}   (category: ip, country, bot)
"""

from typing import Literal

from fastapi import APIRouter, Depends
from pydantic import BaseModel, field_validator
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from storeguard.api.rules import validate_redirect_url
from storeguard.middleware.shopify_auth import ShopSession, require_shop_session
from storeguard.models.database import get_db
from storeguard.models.tables import BlockSettings, ContentProtectionSettings

import structlog

logger = structlog.get_logger()
router = APIRouter(prefix="/v1/settings", tags=["settings"])

BlockCategory = Literal["ip", "country", "bot"]


class ContentProtectionRequest(BaseModel):
    disable_right_click: bool = False
    disable_text_selection: bool = False
    disable_image_drag: bool = False
    disable_copy_paste: bool = False
    disable_dev_tools: bool = False
    custom_protection_message: str | None = None


class BlockSettingsRequest(BaseModel):
    redirect_url: str | None = None
    custom_message: str | None = None

    @field_validator("redirect_url")
    @classmethod
    def validate_redirect(cls, v: str | None) -> str | None:
        return validate_redirect_url(v)


def _content_protection_body(row: ContentProtectionSettings | None) -> dict:
    if row is None:
        return {**ContentProtectionRequest().model_dump(), "enabled": False}
    flags = row.flags()
    return {
        **flags,
        "custom_protection_message": row.custom_protection_message,
        "enabled": any(flags.values()),
    }


@router.get("/content-protection")
async def get_content_protection(
    session: ShopSession = Depends(require_shop_session),
    db: AsyncSession = Depends(get_db),
):
    result = await db.execute(
        select(ContentProtectionSettings).where(ContentProtectionSettings.shop_domain == session.shop)
    )
    return _content_protection_body(result.scalar_one_or_none())


@router.put("/content-protection")
async def put_content_protection(
    req: ContentProtectionRequest,
    session: ShopSession = Depends(require_shop_session),
    db: AsyncSession = Depends(get_db),
):
    result = await db.execute(
        select(ContentProtectionSettings).where(ContentProtectionSettings.shop_domain == session.shop)
    )
    row = result.scalar_one_or_none()
    if row is None:
        row = ContentProtectionSettings(shop_domain=session.shop)
        db.add(row)

    values = req.model_dump()
    if values["custom_protection_message"] is None:
        values.pop("custom_protection_message")
    for field, value in values.items():
        setattr(row, field, value)

    await db.commit()
    await db.refresh(row)
    logger.info("content_protection_updated", shop=session.shop, **row.flags())
    return _content_protection_body(row)


@router.get("/block/{category}")
async def get_block_settings(
    category: BlockCategory,
    session: ShopSession = Depends(require_shop_session),
    db: AsyncSession = Depends(get_db),
):
    result = await db.execute(
        select(BlockSettings).where(
            BlockSettings.shop_domain == session.shop,
            BlockSettings.category == category,
        )
    )
    row = result.scalar_one_or_none()
    return {
        "category": category,
        "redirect_url": row.redirect_url if row else None,
        "custom_message": row.custom_message if row else None,
    }


@router.put("/block/{category}")
async def put_block_settings(
    category: BlockCategory,
    req: BlockSettingsRequest,
    session: ShopSession = Depends(require_shop_session),
    db: AsyncSession = Depends(get_db),
):
    result = await db.execute(
        select(BlockSettings).where(
            BlockSettings.shop_domain == session.shop,
            BlockSettings.category == category,
        )
    )
    row = result.scalar_one_or_none()
    if row is None:
        row = BlockSettings(shop_domain=session.shop, category=category)
        db.add(row)

    row.redirect_url = req.redirect_url
    row.custom_message = req.custom_message
    await db.commit()

    logger.info("block_settings_updated", shop=session.shop, category=category,
                has_redirect=bool(req.redirect_url))
    return {"category": category, "redirect_url": row.redirect_url, "custom_message": row.custom_message}
