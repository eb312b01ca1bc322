"""
Rule management API — whitelist / blacklist rules for bots, IPs and countries.

Security:
  - Requires a verified Shopify session token
  - Every query is scoped to the token's shop; shop_domain never comes from the body
  - Global ("*") bot rules are visible read-only and cannot be edited here

Subjects are stored normalized (IP canonical form, upper-case country code)
so the request path can match them exactly.

Besides CRUD, IPs and countries support bulk import and CSV export, and
GET /ips/check/{ip} reports how the IP rules would treat an address.
"""

from typing import Literal

from fastapi import APIRouter, Depends, HTTPException, Query
from pydantic import BaseModel, Field, field_validator
from sqlalchemy import or_, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from storeguard.core.csv_export import csv_response, rows_to_csv
from storeguard.core.ip_utils import is_valid_ip, normalize_ip
from storeguard.core.list_rules import IpListResolver
from storeguard.middleware.shopify_auth import ShopSession, require_shop_session
from storeguard.models.database import get_db
from storeguard.models.tables import GLOBAL_SHOP, BotRule, CountryRule, IpRule

import structlog

logger = structlog.get_logger()
router = APIRouter(prefix="/v1/rules", tags=["rules"])

ListTypeField = Literal["whitelist", "blacklist"]

MAX_BULK_IMPORT = 1000

IP_EXPORT_HEADERS = ["IP Address", "Note", "Rule Type", "Redirect URL", "Enabled", "Created At"]
COUNTRY_EXPORT_HEADERS = ["Country Code", "Rule Type", "Redirect URL", "Enabled", "Created At"]


def validate_redirect_url(url: str | None) -> str | None:
    if url is None:
        return None
    url = url.strip()
    if not url:
        return None
    if not url.startswith(("https://", "http://")):
        raise ValueError("redirect_url must start with https:// or http://")
    return url


def canonical_ip(value: str | None) -> str | None:
    normalized = normalize_ip(value)
    if not normalized or not is_valid_ip(normalized):
        return None
    return normalized


def canonical_country_code(value: str | None) -> str | None:
    code = (value or "").strip().upper()
    if len(code) != 2 or not code.isalpha():
        return None
    return code


# ---------------------------------------------------------------------------
# Request / response models
# ---------------------------------------------------------------------------

class CreateBotRuleRequest(BaseModel):
    user_agent_pattern: str
    bot_name: str | None = None
    bot_url: str | None = None
    list_type: ListTypeField = "whitelist"
    is_enabled: bool = True

    @field_validator("user_agent_pattern")
    @classmethod
    def normalize_pattern(cls, v: str) -> str:
        v = v.strip().lower()
        if not v:
            raise ValueError("user_agent_pattern cannot be empty")
        return v


class UpdateBotRuleRequest(BaseModel):
    bot_name: str | None = None
    bot_url: str | None = None
    list_type: ListTypeField | None = None
    is_enabled: bool | None = None


class BotRuleResponse(BaseModel):
    id: int
    shop_domain: str
    user_agent_pattern: str
    bot_name: str | None
    bot_url: str | None
    list_type: str
    is_enabled: bool
    is_global: bool = False

    model_config = {"from_attributes": True}


class CreateIpRuleRequest(BaseModel):
    ip_address: str
    note: str | None = None
    list_type: ListTypeField = "blacklist"
    redirect_url: str | None = None
    is_enabled: bool = True

    @field_validator("ip_address")
    @classmethod
    def validate_ip(cls, v: str) -> str:
        normalized = canonical_ip(v)
        if normalized is None:
            raise ValueError(f"invalid IP address: {v!r}")
        return normalized

    @field_validator("redirect_url")
    @classmethod
    def validate_redirect(cls, v: str | None) -> str | None:
        return validate_redirect_url(v)


class UpdateIpRuleRequest(BaseModel):
    note: str | None = None
    list_type: ListTypeField | None = None
    redirect_url: str | None = None
    is_enabled: bool | None = None

    @field_validator("redirect_url")
    @classmethod
    def validate_redirect(cls, v: str | None) -> str | None:
        return validate_redirect_url(v)


class IpRuleResponse(BaseModel):
    id: int
    shop_domain: str
    ip_address: str
    note: str | None
    list_type: str
    redirect_url: str | None
    is_enabled: bool

    model_config = {"from_attributes": True}


class CreateCountryRuleRequest(BaseModel):
    country_code: str
    list_type: ListTypeField = "blacklist"
    redirect_url: str | None = None
    is_enabled: bool = True

    @field_validator("country_code")
    @classmethod
    def validate_country(cls, v: str) -> str:
        code = canonical_country_code(v)
        if code is None:
            raise ValueError(f"country_code must be a 2-letter ISO code, got {v!r}")
        return code

    @field_validator("redirect_url")
    @classmethod
    def validate_redirect(cls, v: str | None) -> str | None:
        return validate_redirect_url(v)


class UpdateCountryRuleRequest(BaseModel):
    list_type: ListTypeField | None = None
    redirect_url: str | None = None
    is_enabled: bool | None = None

    @field_validator("redirect_url")
    @classmethod
    def validate_redirect(cls, v: str | None) -> str | None:
        return validate_redirect_url(v)


class CountryRuleResponse(BaseModel):
    id: int
    shop_domain: str
    country_code: str
    list_type: str
    redirect_url: str | None
    is_enabled: bool

    model_config = {"from_attributes": True}


class BulkIpImportRequest(BaseModel):
    ips: list[str] = Field(min_length=1, max_length=MAX_BULK_IMPORT)
    list_type: ListTypeField = "blacklist"
    note: str | None = None
    redirect_url: str | None = None

    @field_validator("redirect_url")
    @classmethod
    def validate_redirect(cls, v: str | None) -> str | None:
        return validate_redirect_url(v)


class BulkCountryImportRequest(BaseModel):
    countries: list[str] = Field(min_length=1, max_length=MAX_BULK_IMPORT)
    list_type: ListTypeField = "blacklist"
    redirect_url: str | None = None

    @field_validator("redirect_url")
    @classmethod
    def validate_redirect(cls, v: str | None) -> str | None:
        return validate_redirect_url(v)


class BulkImportError(BaseModel):
    value: str
    error: str


class BulkImportResponse(BaseModel):
    added: list[str] = Field(default_factory=list)
    skipped: list[str] = Field(default_factory=list)
    errors: list[BulkImportError] = Field(default_factory=list)


class IpCheckResponse(BaseModel):
    ip: str
    blocked: bool
    reason: str | None = None
    list_type: str | None = None
    redirect_url: str | None = None


# ---------------------------------------------------------------------------
# Shared helpers
# ---------------------------------------------------------------------------

async def _get_owned(db: AsyncSession, model, rule_id: int, shop: str):
    stmt = select(model).where(model.id == rule_id, model.shop_domain == shop)
    result = await db.execute(stmt)
    rule = result.scalar_one_or_none()
    if not rule:
        raise HTTPException(status_code=404, detail="Rule not found")
    return rule


async def _ensure_unique(db: AsyncSession, model, column, value: str, shop: str):
    stmt = select(model.id).where(model.shop_domain == shop, column == value)
    result = await db.execute(stmt)
    if result.scalar_one_or_none() is not None:
        raise HTTPException(status_code=409, detail=f"A rule for {value!r} already exists")


async def _commit(db: AsyncSession):
    try:
        await db.commit()
    except IntegrityError:
        await db.rollback()
        raise HTTPException(status_code=409, detail="Rule conflicts with an existing rule")


async def _create(db: AsyncSession, rule, kind: str):
    db.add(rule)
    await _commit(db)
    await db.refresh(rule)
    logger.info("rule_created", kind=kind, shop=rule.shop_domain, rule_id=rule.id,
                list_type=rule.list_type)
    return rule


async def _update(db: AsyncSession, rule, changes: dict, kind: str):
    for field, value in changes.items():
        setattr(rule, field, value)
    await _commit(db)
    await db.refresh(rule)
    logger.info("rule_updated", kind=kind, shop=rule.shop_domain, rule_id=rule.id,
                fields=sorted(changes))
    return rule


async def _delete(db: AsyncSession, rule, kind: str):
    await db.delete(rule)
    await db.commit()
    logger.info("rule_deleted", kind=kind, shop=rule.shop_domain, rule_id=rule.id)


def _changes(req: BaseModel) -> dict:
    changes = req.model_dump(exclude_unset=True)
    # list_type / is_enabled are NOT NULL columns
    for field in ("list_type", "is_enabled"):
        if field in changes and changes[field] is None:
            del changes[field]
    return changes


async def _bulk_import(db: AsyncSession, model, column, shop: str, values: list[str],
                       canonical, invalid: str, make_rule, kind: str) -> BulkImportResponse:
    """Add one rule per new subject. Existing and repeated subjects are skipped."""
    existing = set((await db.execute(select(column).where(model.shop_domain == shop))).scalars().all())
    outcome = BulkImportResponse()

    for raw in values:
        value = canonical(raw)
        if value is None:
            outcome.errors.append(BulkImportError(value=raw, error=invalid))
            continue
        if value in existing:
            outcome.skipped.append(value)
            continue
        db.add(make_rule(value))
        existing.add(value)
        outcome.added.append(value)

    if outcome.added:
        await _commit(db)
    logger.info("rules_bulk_imported", kind=kind, shop=shop, added=len(outcome.added),
                skipped=len(outcome.skipped), errors=len(outcome.errors))
    return outcome


def _export(rows: list[dict], headers: list[str], filename: str, kind: str, shop: str):
    logger.info("rules_exported", kind=kind, shop=shop, count=len(rows))
    return csv_response(rows_to_csv(rows, headers), filename)


# ---------------------------------------------------------------------------
# Bots
# ---------------------------------------------------------------------------

@router.get("/bots", response_model=list[BotRuleResponse])
async def list_bot_rules(
    session: ShopSession = Depends(require_shop_session),
    db: AsyncSession = Depends(get_db),
    include_global: bool = Query(True),
):
    shops = [session.shop, GLOBAL_SHOP] if include_global else [session.shop]
    stmt = (
        select(BotRule)
        .where(or_(*(BotRule.shop_domain == s for s in shops)))
        .order_by(BotRule.shop_domain, BotRule.id)
    )
    result = await db.execute(stmt)
    return [
        BotRuleResponse.model_validate(rule).model_copy(update={"is_global": rule.shop_domain == GLOBAL_SHOP})
        for rule in result.scalars().all()
    ]


@router.post("/bots", response_model=BotRuleResponse, status_code=201)
async def create_bot_rule(
    req: CreateBotRuleRequest,
    session: ShopSession = Depends(require_shop_session),
    db: AsyncSession = Depends(get_db),
):
    await _ensure_unique(db, BotRule, BotRule.user_agent_pattern, req.user_agent_pattern, session.shop)
    rule = BotRule(shop_domain=session.shop, **req.model_dump())
    return await _create(db, rule, "bot")


@router.patch("/bots/{rule_id}", response_model=BotRuleResponse)
async def update_bot_rule(
    rule_id: int,
    req: UpdateBotRuleRequest,
    session: ShopSession = Depends(require_shop_session),
    db: AsyncSession = Depends(get_db),
):
    rule = await _get_owned(db, BotRule, rule_id, session.shop)
    return await _update(db, rule, _changes(req), "bot")


@router.delete("/bots/{rule_id}", status_code=204)
async def delete_bot_rule(
    rule_id: int,
    session: ShopSession = Depends(require_shop_session),
    db: AsyncSession = Depends(get_db),
):
    rule = await _get_owned(db, BotRule, rule_id, session.shop)
    await _delete(db, rule, "bot")


# ---------------------------------------------------------------------------
# IPs
# ---------------------------------------------------------------------------

@router.get("/ips", response_model=list[IpRuleResponse])
async def list_ip_rules(
    session: ShopSession = Depends(require_shop_session),
    db: AsyncSession = Depends(get_db),
    list_type: ListTypeField | None = None,
):
    stmt = select(IpRule).where(IpRule.shop_domain == session.shop)
    if list_type:
        stmt = stmt.where(IpRule.list_type == list_type)
    result = await db.execute(stmt.order_by(IpRule.id))
    return result.scalars().all()


@router.post("/ips", response_model=IpRuleResponse, status_code=201)
async def create_ip_rule(
    req: CreateIpRuleRequest,
    session: ShopSession = Depends(require_shop_session),
    db: AsyncSession = Depends(get_db),
):
    await _ensure_unique(db, IpRule, IpRule.ip_address, req.ip_address, session.shop)
    rule = IpRule(shop_domain=session.shop, **req.model_dump())
    return await _create(db, rule, "ip")


@router.patch("/ips/{rule_id}", response_model=IpRuleResponse)
async def update_ip_rule(
    rule_id: int,
    req: UpdateIpRuleRequest,
    session: ShopSession = Depends(require_shop_session),
    db: AsyncSession = Depends(get_db),
):
    rule = await _get_owned(db, IpRule, rule_id, session.shop)
    return await _update(db, rule, _changes(req), "ip")


@router.delete("/ips/{rule_id}", status_code=204)
async def delete_ip_rule(
    rule_id: int,
    session: ShopSession = Depends(require_shop_session),
    db: AsyncSession = Depends(get_db),
):
    rule = await _get_owned(db, IpRule, rule_id, session.shop)
    await _delete(db, rule, "ip")


@router.post("/ips/bulk-import", response_model=BulkImportResponse)
async def bulk_import_ip_rules(
    req: BulkIpImportRequest,
    session: ShopSession = Depends(require_shop_session),
    db: AsyncSession = Depends(get_db),
):
    def make_rule(ip: str) -> IpRule:
        return IpRule(shop_domain=session.shop, ip_address=ip, note=req.note,
                      list_type=req.list_type, redirect_url=req.redirect_url)

    return await _bulk_import(db, IpRule, IpRule.ip_address, session.shop, req.ips,
                              canonical_ip, "Invalid IP address", make_rule, "ip")


@router.get("/ips/export")
async def export_ip_rules(
    session: ShopSession = Depends(require_shop_session),
    db: AsyncSession = Depends(get_db),
):
    """CSV of the shop's IP rules, whitelist first."""
    result = await db.execute(
        select(IpRule)
        .where(IpRule.shop_domain == session.shop)
        .order_by(IpRule.list_type.desc(), IpRule.ip_address)
    )
    rows = [
        {
            "IP Address": rule.ip_address,
            "Note": rule.note,
            "Rule Type": rule.list_type,
            "Redirect URL": rule.redirect_url,
            "Enabled": rule.is_enabled,
            "Created At": rule.created_at,
        }
        for rule in result.scalars().all()
    ]
    return _export(rows, IP_EXPORT_HEADERS, f"ip-rules-{session.shop}.csv", "ip", session.shop)


@router.get("/ips/check/{ip}", response_model=IpCheckResponse)
async def check_ip(
    ip: str,
    session: ShopSession = Depends(require_shop_session),
    db: AsyncSession = Depends(get_db),
):
    """How the storefront would treat this IP right now (IP rules only)."""
    normalized = canonical_ip(ip)
    if normalized is None:
        raise HTTPException(status_code=400, detail="Invalid IP address")

    result = await IpListResolver().resolve(db, session.shop, normalized)
    return IpCheckResponse(
        ip=normalized,
        blocked=result.blocked,
        reason=result.reason,
        list_type=result.list_type,
        redirect_url=result.redirect_url,
    )


# ---------------------------------------------------------------------------
# Countries
# ---------------------------------------------------------------------------

@router.get("/countries", response_model=list[CountryRuleResponse])
async def list_country_rules(
    session: ShopSession = Depends(require_shop_session),
    db: AsyncSession = Depends(get_db),
    list_type: ListTypeField | None = None,
):
    stmt = select(CountryRule).where(CountryRule.shop_domain == session.shop)
    if list_type:
        stmt = stmt.where(CountryRule.list_type == list_type)
    result = await db.execute(stmt.order_by(CountryRule.country_code))
    return result.scalars().all()


@router.post("/countries", response_model=CountryRuleResponse, status_code=201)
async def create_country_rule(
    req: CreateCountryRuleRequest,
    session: ShopSession = Depends(require_shop_session),
    db: AsyncSession = Depends(get_db),
):
    await _ensure_unique(db, CountryRule, CountryRule.country_code, req.country_code, session.shop)
    rule = CountryRule(shop_domain=session.shop, **req.model_dump())
    return await _create(db, rule, "country")


@router.patch("/countries/{rule_id}", response_model=CountryRuleResponse)
async def update_country_rule(
    rule_id: int,
    req: UpdateCountryRuleRequest,
    session: ShopSession = Depends(require_shop_session),
    db: AsyncSession = Depends(get_db),
):
    rule = await _get_owned(db, CountryRule, rule_id, session.shop)
    return await _update(db, rule, _changes(req), "country")


@router.delete("/countries/{rule_id}", status_code=204)
async def delete_country_rule(
    rule_id: int,
    session: ShopSession = Depends(require_shop_session),
    db: AsyncSession = Depends(get_db),
):
    rule = await _get_owned(db, CountryRule, rule_id, session.shop)
    await _delete(db, rule, "country")


@router.post("/countries/bulk-import", response_model=BulkImportResponse)
async def bulk_import_country_rules(
    req: BulkCountryImportRequest,
    session: ShopSession = Depends(require_shop_session),
    db: AsyncSession = Depends(get_db),
):
    def make_rule(code: str) -> CountryRule:
        return CountryRule(shop_domain=session.shop, country_code=code,
                           list_type=req.list_type, redirect_url=req.redirect_url)

    return await _bulk_import(db, CountryRule, CountryRule.country_code, session.shop, req.countries,
                              canonical_country_code, "Invalid country code", make_rule, "country")


@router.get("/countries/export")
async def export_country_rules(
    session: ShopSession = Depends(require_shop_session),
    db: AsyncSession = Depends(get_db),
):
    result = await db.execute(
        select(CountryRule)
        .where(CountryRule.shop_domain == session.shop)
        .order_by(CountryRule.list_type.desc(), CountryRule.country_code)
    )
    rows = [
        {
            "Country Code": rule.country_code,
            "Rule Type": rule.list_type,
            "Redirect URL": rule.redirect_url,
            "Enabled": rule.is_enabled,
            "Created At": rule.created_at,
        }
        for rule in result.scalars().all()
    ]
    return _export(rows, COUNTRY_EXPORT_HEADERS, f"country-rules-{session.shop}.csv", "country",
                   session.shop)
