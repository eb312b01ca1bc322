"""
Bot classification from the User-Agent string.

Two passes:
  1. Ordered signature table, first match wins. Specific names come first,
     generic terms ("bot", "crawler", curl, HTTP client libraries) last, so
     "Googlebot/2.1" resolves to Googlebot and never to Generic Bot.
  2. Suspicion heuristics for anything unmatched: empty UA, a bare
     "name/version" UA, or headless / phantom / automation / test markers.

Pure functions: no I/O, case-insensitive matching. Device and browser parsing
use the user_agents library.
"""

import re
from dataclasses import dataclass

from user_agents import parse as parse_ua


@dataclass(frozen=True)
class BotSignature:
    pattern: re.Pattern
    name: str
    category: str  # search, social, seo, monitoring, commerce, automation, generic


def _sig(pattern: str, name: str, category: str) -> BotSignature:
    return BotSignature(re.compile(pattern, re.IGNORECASE), name, category)


# --- Ordered signature table (order matters) ---
BOT_SIGNATURES: tuple[BotSignature, ...] = (
    # Search engines
    _sig(r"googlebot", "Googlebot", "search"),
    _sig(r"bingbot", "BingBot", "search"),
    _sig(r"slurp", "Yahoo Slurp", "search"),
    _sig(r"duckduckbot", "DuckDuckBot", "search"),
    _sig(r"baiduspider", "Baidu Spider", "search"),
    _sig(r"yandexbot", "YandexBot", "search"),

    # Social media crawlers
    _sig(r"facebookexternalhit", "Facebook External Hit", "social"),
    _sig(r"twitterbot", "TwitterBot", "social"),
    _sig(r"linkedinbot", "LinkedIn Bot", "social"),
    _sig(r"pinterest", "Pinterest", "social"),
    _sig(r"whatsapp", "WhatsApp", "social"),
    _sig(r"telegrambot", "Telegram Bot", "social"),

    # SEO tools
    _sig(r"ahrefsbot", "aHrefs Bot", "seo"),
    _sig(r"semrushbot", "Semrush Bot", "seo"),
    _sig(r"mj12bot", "Majestic Bot", "seo"),
    _sig(r"dotbot", "DotBot", "seo"),
    _sig(r"sistrix", "SISTRIX Crawler", "seo"),
    _sig(r"screaming frog", "Screaming Frog", "seo"),

    # Monitoring / dev tooling
    _sig(r"lighthouse", "Lighthouse", "monitoring"),
    _sig(r"pagespeed", "PageSpeed Insights", "monitoring"),
    _sig(r"gtmetrix", "GTmetrix", "monitoring"),
    _sig(r"pingdom", "Pingdom", "monitoring"),
    _sig(r"uptimerobot", "UptimeRobot", "monitoring"),

    # E-commerce
    _sig(r"applebot", "Applebot", "commerce"),
    _sig(r"shopify", "Shopify Bot", "commerce"),

    # Generic terms, keep last
    _sig(r"bot", "Generic Bot", "generic"),
    _sig(r"crawler", "Generic Crawler", "generic"),
    _sig(r"spider", "Generic Spider", "generic"),
    _sig(r"scraper", "Generic Scraper", "generic"),
    _sig(r"curl", "cURL", "automation"),
    _sig(r"wget", "Wget", "automation"),
    _sig(r"python-requests", "Python Requests", "automation"),
    _sig(r"node-fetch", "Node Fetch", "automation"),
    _sig(r"axios", "Axios", "automation"),
    _sig(r"go-http-client", "Go HTTP Client", "automation"),
    _sig(r"aiohttp", "aiohttp", "automation"),
    _sig(r"scrapy", "Scrapy", "automation"),
    _sig(r"libwww-perl", "libwww-perl", "automation"),
)

SUSPICIOUS_BOT_NAME = "Suspicious Bot"

SUSPICIOUS_UA_PATTERNS: tuple[re.Pattern, ...] = (
    re.compile(r"^[a-zA-Z0-9\-.]+/[0-9.]+$"),  # bare "name/version"
    re.compile(r"headless", re.IGNORECASE),
    re.compile(r"phantom", re.IGNORECASE),
    re.compile(r"automation", re.IGNORECASE),
    re.compile(r"test", re.IGNORECASE),
)


@dataclass(frozen=True)
class BotClassification:
    is_bot: bool
    name: str | None = None
    category: str | None = None


NOT_A_BOT = BotClassification(is_bot=False)


def classify(user_agent: str | None) -> BotClassification:
    """Classify a user agent as bot or human."""
    ua = (user_agent or "").strip()

    if not ua:
        return BotClassification(is_bot=True, name=SUSPICIOUS_BOT_NAME, category="suspicious")

    for sig in BOT_SIGNATURES:
        if sig.pattern.search(ua):
            return BotClassification(is_bot=True, name=sig.name, category=sig.category)

    for pattern in SUSPICIOUS_UA_PATTERNS:
        if pattern.search(ua):
            return BotClassification(is_bot=True, name=SUSPICIOUS_BOT_NAME, category="suspicious")

    return NOT_A_BOT


# --- Device / browser ---

def detect_device(user_agent: str | None) -> str:
    """mobile, tablet, desktop or unknown."""
    if not user_agent:
        return "unknown"
    parsed = parse_ua(user_agent)
    if parsed.is_tablet:
        return "tablet"
    if parsed.is_mobile:
        return "mobile"
    return "desktop"


def parse_browser(user_agent: str | None) -> tuple[str, str]:
    """(browser name, version) with "Unknown" for anything unparseable."""
    if not user_agent:
        return "Unknown", "Unknown"
    parsed = parse_ua(user_agent)
    family = parsed.browser.family
    name = family if family and family != "Other" else "Unknown"
    version = parsed.browser.version_string or "Unknown"
    return name[:50], version[:20]
