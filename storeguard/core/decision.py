"""
Access decision — the request-time orchestrator.

Pipeline (first block wins, later checks never run):

  signals → classify(UA)
          → bot resolver      (only when the UA classifies as a bot)
          → IP resolver       (only when an IP is known)
          → country resolver  (only when a country is known)
          → analytics recorder (always, with the winning reason)
          → verdict

Every check and the orchestration as a whole run under fail_open: a datastore
error or timeout means "allow", and the visitor never sees it.
"""

from dataclasses import dataclass, field

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from storeguard.config import get_settings
from storeguard.core.analytics import AnalyticsRecorder, VisitRecord
from storeguard.core.bot_detection import classify, detect_device, parse_browser
from storeguard.core.failsafe import bounded, fail_open
from storeguard.core.ip_utils import is_loopback_ip, is_private_ip
from storeguard.core.list_rules import (
    ALLOWED,
    BotListResolver,
    CountryListResolver,
    IpListResolver,
    ResolveResult,
)
from storeguard.core.signals import ClientSignals, fingerprint_session_id
from storeguard.models.tables import BlockSettings, ContentProtectionSettings

import structlog

logger = structlog.get_logger()


# --- Visitor-facing copy ---
BOT_BLOCK_MESSAGE = "This bot is not allowed to access this store."
IP_BLOCK_MESSAGE = "Your IP address has been blocked from accessing this store."
COUNTRY_BLOCK_MESSAGE = "This store is not available in your country."
GENERIC_BLOCK_MESSAGE = "Access to this store has been restricted."


def block_message(reason: str | None) -> str:
    """Pick visitor copy from the block reason."""
    if not reason:
        return GENERIC_BLOCK_MESSAGE
    if reason.startswith("Bot "):
        return BOT_BLOCK_MESSAGE
    if reason.startswith("IP "):
        return IP_BLOCK_MESSAGE
    if reason.startswith("Country "):
        return COUNTRY_BLOCK_MESSAGE
    return GENERIC_BLOCK_MESSAGE


def content_protection_disabled() -> dict:
    return {"enabled": False, "settings": None}


@dataclass
class BlockVerdict:
    blocked: bool
    reason: str | None
    session_id: str | None
    ip: str | None = None
    country_code: str | None = None
    device_type: str | None = None
    browser_name: str | None = None
    is_bot: bool = False
    bot_name: str | None = None
    redirect_info: dict | None = None
    content_protection: dict = field(default_factory=content_protection_disabled)

    @property
    def message(self) -> str | None:
        return block_message(self.reason) if self.blocked else None

    def to_response(self) -> dict:
        body = {
            "blocked": self.blocked,
            "reason": self.reason,
            "message": self.message,
            "session_id": self.session_id,
            "content_protection": self.content_protection,
        }
        if self.blocked:
            body["redirect_info"] = self.redirect_info or {
                "redirect_url": None,
                "custom_message": None,
                "has_redirect": False,
            }
        return body


def allow_verdict(signals: ClientSignals) -> BlockVerdict:
    return BlockVerdict(
        blocked=False,
        reason=None,
        session_id=signals.session_id or fingerprint_session_id(signals.ip, signals.user_agent),
        ip=signals.ip,
        country_code=signals.country_code,
    )


class ShopPresentation:
    """Per-shop pass-through settings attached to a verdict."""

    async def redirect_info(
        self,
        db: AsyncSession,
        shop: str,
        category: str,
        result: ResolveResult,
    ) -> dict:
        redirect_url = result.redirect_url
        custom_message = None

        row = (await bounded(db.execute(
            select(BlockSettings).where(
                BlockSettings.shop_domain == shop,
                BlockSettings.category == category,
            )
        ))).scalar_one_or_none()
        if row is not None:
            redirect_url = redirect_url or row.redirect_url
            custom_message = row.custom_message

        return {
            "redirect_url": redirect_url,
            "custom_message": custom_message,
            "has_redirect": bool(redirect_url),
        }

    async def content_protection(self, db: AsyncSession, shop: str) -> dict:
        row = (await bounded(db.execute(
            select(ContentProtectionSettings).where(ContentProtectionSettings.shop_domain == shop)
        ))).scalar_one_or_none()
        if row is None:
            return content_protection_disabled()

        flags = row.flags()
        return {
            "enabled": any(flags.values()),
            "settings": {**flags, "custom_message": row.custom_protection_message},
        }


class AccessDecider:
    """Combines the three list resolvers into one allow/block verdict.

    Collaborators are injectable so call order and short-circuiting can be
    asserted without a database.
    """

    def __init__(
        self,
        bots: BotListResolver | None = None,
        ips: IpListResolver | None = None,
        countries: CountryListResolver | None = None,
        recorder: AnalyticsRecorder | None = None,
        presentation: ShopPresentation | None = None,
    ):
        self.bots = bots or BotListResolver()
        self.ips = ips or IpListResolver()
        self.countries = countries or CountryListResolver()
        self.recorder = recorder or AnalyticsRecorder()
        self.presentation = presentation or ShopPresentation()

    def should_skip(self, signals: ClientSignals | None) -> bool:
        """No decision at all: unidentified shop or IP, or a local dev address."""
        if signals is None or not signals.shop or not signals.ip:
            return True
        if get_settings().is_development and (
            is_private_ip(signals.ip) or is_loopback_ip(signals.ip)
        ):
            return True
        return False

    async def check(self, db: AsyncSession, signals: ClientSignals | None) -> BlockVerdict | None:
        """decide(), or None when the request cannot or should not be decided."""
        if self.should_skip(signals):
            return None
        return await self.decide(db, signals)

    async def decide(self, db: AsyncSession, signals: ClientSignals) -> BlockVerdict:
        return await fail_open(
            self._decide(db, signals),
            allow_verdict(signals),
            "access_check_failed",
            shop=signals.shop,
            stage="orchestration",
        )

    async def _run_check(self, stage: str, awaitable, shop: str) -> ResolveResult:
        return await fail_open(awaitable, ALLOWED, "access_check_failed", shop=shop, stage=stage)

    async def _decide(self, db: AsyncSession, signals: ClientSignals) -> BlockVerdict:
        shop = signals.shop
        classification = classify(signals.user_agent)

        result = ALLOWED
        blocked_by = None

        if classification.is_bot:
            result = await self._run_check(
                self.bots.kind,
                self.bots.resolve(db, shop, signals.user_agent, classification.name),
                shop,
            )
            if result.blocked:
                blocked_by = self.bots.kind

        if not result.blocked and signals.ip:
            result = await self._run_check(self.ips.kind, self.ips.resolve(db, shop, signals.ip), shop)
            if result.blocked:
                blocked_by = self.ips.kind

        if not result.blocked and signals.country_code:
            result = await self._run_check(
                self.countries.kind,
                self.countries.resolve(db, shop, signals.country_code),
                shop,
            )
            if result.blocked:
                blocked_by = self.countries.kind

        session_id = signals.session_id or fingerprint_session_id(signals.ip, signals.user_agent)
        device_type = detect_device(signals.user_agent)
        browser_name, browser_version = parse_browser(signals.user_agent)

        await self.recorder.record(db, VisitRecord(
            shop=shop,
            session_id=session_id,
            ip=signals.ip,
            country_code=signals.country_code,
            user_agent=signals.user_agent,
            page_url=signals.page_url,
            referrer=signals.referrer,
            is_bot=classification.is_bot,
            bot_name=classification.name,
            blocked_reason=result.reason if result.blocked else None,
            device_type=device_type,
            browser_name=browser_name,
            browser_version=browser_version,
        ))

        redirect_info = None
        if result.blocked:
            redirect_info = await fail_open(
                self.presentation.redirect_info(db, shop, blocked_by, result),
                None,
                "redirect_info_lookup_failed",
                shop=shop,
            )

        content_protection = await fail_open(
            self.presentation.content_protection(db, shop),
            content_protection_disabled(),
            "content_protection_lookup_failed",
            shop=shop,
        )

        verdict = BlockVerdict(
            blocked=result.blocked,
            reason=result.reason if result.blocked else None,
            session_id=session_id,
            ip=signals.ip,
            country_code=signals.country_code,
            device_type=device_type,
            browser_name=browser_name,
            is_bot=classification.is_bot,
            bot_name=classification.name,
            redirect_info=redirect_info,
            content_protection=content_protection,
        )

        if verdict.blocked:
            logger.info("access_blocked", shop=shop, blocked_by=blocked_by,
                        reason=verdict.reason, ip=verdict.ip, country=verdict.country_code,
                        bot_name=verdict.bot_name)
        return verdict
