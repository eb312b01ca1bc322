"""
Whitelist / blacklist resolution for bots, IPs and countries.

All three resolvers share one shape:
  1. find the enabled rules matching (shop, subject)
  2. pick the effective rule with prefer_whitelist_over_blacklist
  3. bots only: fall back to the global ("*") rule set
  4. apply the resolver's default policy when nothing matched

Default policies differ, and that difference is the point:
  - bots:          unmatched → BLOCKED (bot access is whitelist-only)
  - IPs/countries: unmatched → blocked only in "whitelist mode", i.e. when
                   the shop has at least one enabled whitelist rule of that kind

Block reasons always start with "Bot ", "IP " or "Country "; downstream
message selection and reporting classify on that prefix.
"""

from dataclasses import dataclass
from enum import Enum
from typing import Sequence, TypeVar

from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession

from storeguard.core.failsafe import bounded
from storeguard.core.ip_utils import normalize_ip
from storeguard.core.signals import normalize_country_code
from storeguard.models.tables import GLOBAL_SHOP, BotRule, CountryRule, IpRule


class ListType(str, Enum):
    WHITELIST = "whitelist"
    BLACKLIST = "blacklist"


@dataclass(frozen=True)
class ResolveResult:
    blocked: bool
    reason: str | None = None
    redirect_url: str | None = None
    list_type: str | None = None  # list that decided, None when no rule applied


ALLOWED = ResolveResult(blocked=False)

R = TypeVar("R")


def prefer_whitelist_over_blacklist(rules: Sequence[R]) -> R | None:
    """Effective rule among several matches for the same subject.

    A whitelist match always wins over a blacklist match.
    """
    for rule in rules:
        if rule.list_type == ListType.WHITELIST.value:
            return rule
    for rule in rules:
        if rule.list_type == ListType.BLACKLIST.value:
            return rule
    return None


# ---------------------------------------------------------------------------
# Bots
# ---------------------------------------------------------------------------

class BotListResolver:
    """Substring rules against the user agent, shop tier then global tier."""

    kind = "bot"

    async def _effective_rule(self, db: AsyncSession, shop: str, ua_lower: str) -> BotRule | None:
        stmt = select(BotRule).where(
            BotRule.shop_domain == shop,
            BotRule.is_enabled == True,
        )
        result = await bounded(db.execute(stmt))
        matches = [
            rule for rule in result.scalars().all()
            if rule.user_agent_pattern and rule.user_agent_pattern.lower() in ua_lower
        ]
        return prefer_whitelist_over_blacklist(matches)

    async def resolve(
        self,
        db: AsyncSession,
        shop: str,
        user_agent: str,
        bot_name: str | None = None,
    ) -> ResolveResult:
        ua_lower = (user_agent or "").lower()

        rule = await self._effective_rule(db, shop, ua_lower)
        if rule is None and shop != GLOBAL_SHOP:
            rule = await self._effective_rule(db, GLOBAL_SHOP, ua_lower)

        if rule is None:
            return ResolveResult(
                blocked=True,
                reason=f"Bot blocked: {bot_name or 'Unknown bot'} - not in whitelist",
            )

        if rule.list_type == ListType.WHITELIST.value:
            return ResolveResult(blocked=False, list_type=rule.list_type)

        return ResolveResult(
            blocked=True,
            reason=f"Bot blocked: {rule.bot_name or bot_name or 'Unknown bot'}",
            list_type=rule.list_type,
        )


# ---------------------------------------------------------------------------
# IPs and countries (exact match, shop tier only)
# ---------------------------------------------------------------------------

class _ExactListResolver:
    model = None
    subject_column = None
    kind = ""

    def normalize(self, subject: str | None) -> str | None:
        return subject

    def blocked_reason(self, rule, subject: str) -> str:
        raise NotImplementedError

    def whitelist_mode_reason(self, subject: str) -> str:
        raise NotImplementedError

    async def is_whitelist_mode(self, db: AsyncSession, shop: str) -> bool:
        """True when the shop has any enabled whitelist rule of this kind."""
        stmt = select(func.count()).select_from(self.model).where(
            self.model.shop_domain == shop,
            self.model.list_type == ListType.WHITELIST.value,
            self.model.is_enabled == True,
        )
        result = await bounded(db.execute(stmt))
        return result.scalar_one() > 0

    async def resolve(self, db: AsyncSession, shop: str, subject: str | None) -> ResolveResult:
        subject = self.normalize(subject)
        if not subject:
            return ALLOWED

        stmt = select(self.model).where(
            self.model.shop_domain == shop,
            getattr(self.model, self.subject_column) == subject,
            self.model.is_enabled == True,
        )
        result = await bounded(db.execute(stmt))
        rule = prefer_whitelist_over_blacklist(result.scalars().all())

        if rule is None:
            if await self.is_whitelist_mode(db, shop):
                return ResolveResult(
                    blocked=True,
                    reason=self.whitelist_mode_reason(subject),
                    list_type=ListType.WHITELIST.value,
                )
            return ALLOWED

        if rule.list_type == ListType.WHITELIST.value:
            return ResolveResult(blocked=False, list_type=rule.list_type)

        return ResolveResult(
            blocked=True,
            reason=self.blocked_reason(rule, subject),
            redirect_url=rule.redirect_url,
            list_type=rule.list_type,
        )


class IpListResolver(_ExactListResolver):
    model = IpRule
    subject_column = "ip_address"
    kind = "ip"

    def normalize(self, subject: str | None) -> str | None:
        return normalize_ip(subject)

    def blocked_reason(self, rule: IpRule, subject: str) -> str:
        if rule.note:
            return f"IP address blocked: {rule.note}"
        return "IP address blocked"

    def whitelist_mode_reason(self, subject: str) -> str:
        return "IP not in whitelist"


class CountryListResolver(_ExactListResolver):
    model = CountryRule
    subject_column = "country_code"
    kind = "country"

    def normalize(self, subject: str | None) -> str | None:
        return normalize_country_code(subject)

    def blocked_reason(self, rule: CountryRule, subject: str) -> str:
        return f"Country blocked: {subject}"

    def whitelist_mode_reason(self, subject: str) -> str:
        return f"Country not in whitelist: {subject}"
