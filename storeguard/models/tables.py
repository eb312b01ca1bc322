"""
Database models — the "truth layer."

Design principles:
  - Rule tables are owned by the admin routes; the request path only reads them
  - user_analytics is owned by the analytics recorder (one row per session window)
  - Every table is scoped by shop_domain and purged on app uninstall
  - shop_domain = "*" marks a global rule (bot rules only)
"""

from sqlalchemy import (
    Boolean,
    CheckConstraint,
    Column,
    DateTime,
    Index,
    Integer,
    String,
    Text,
    UniqueConstraint,
    func,
)
from sqlalchemy.orm import DeclarativeBase


GLOBAL_SHOP = "*"

LIST_TYPES = ("whitelist", "blacklist")

# (pattern, bot_name, bot_url): seeded as global whitelist entries
DEFAULT_GLOBAL_BOT_RULES: tuple[tuple[str, str, str], ...] = (
    ("googlebot", "Googlebot", "http://www.google.com/bot.html"),
    ("bingbot", "BingBot", "http://search.msn.com/msnbot.htm"),
    ("facebookexternalhit", "Facebook External Hit", "https://www.facebook.com/externalhit_uatext.php"),
    ("twitterbot", "Twitter Bot", "https://developer.twitter.com/en/docs/twitter-for-websites/cards/guides/getting-started"),
    ("linkedinbot", "LinkedIn Bot", "http://www.linkedin.com"),
    ("pinterest", "Pinterest", "http://www.pinterest.com"),
    ("applebot", "Applebot", "https://support.apple.com/en-us/HT204683"),
    ("slurp", "Yahoo Slurp", "https://help.yahoo.com/kb/search/slurp-crawling-page-sln22600.html"),
)


class Base(DeclarativeBase):
    pass


def _list_type_check(name: str) -> CheckConstraint:
    return CheckConstraint("list_type IN ('whitelist', 'blacklist')", name=name)


# ---------------------------------------------------------------------------
# List rules (whitelist / blacklist)
# ---------------------------------------------------------------------------

class BotRule(Base):
    """UA substring rule. Matched by containment in the lowercased user agent."""
    __tablename__ = "bot_settings"

    id = Column(Integer, primary_key=True, autoincrement=True)
    shop_domain = Column(String(255), nullable=False)
    user_agent_pattern = Column(Text, nullable=False)
    bot_name = Column(String(100), nullable=True)
    bot_url = Column(Text, nullable=True)
    list_type = Column(String(10), nullable=False, default="whitelist")
    is_enabled = Column(Boolean, nullable=False, default=True)
    created_at = Column(DateTime(timezone=True), server_default=func.now())
    updated_at = Column(DateTime(timezone=True), server_default=func.now(), onupdate=func.now())

    __table_args__ = (
        UniqueConstraint("shop_domain", "user_agent_pattern", name="uq_bot_settings_shop_pattern"),
        _list_type_check("ck_bot_settings_list_type"),
        Index("ix_bot_settings_shop_enabled", "shop_domain", "is_enabled"),
    )


class IpRule(Base):
    __tablename__ = "blocked_ips"

    id = Column(Integer, primary_key=True, autoincrement=True)
    shop_domain = Column(String(255), nullable=False)
    ip_address = Column(String(45), nullable=False)          # normalized form
    note = Column(Text, nullable=True)
    list_type = Column(String(10), nullable=False, default="blacklist")
    redirect_url = Column(Text, nullable=True)
    is_enabled = Column(Boolean, nullable=False, default=True)
    created_at = Column(DateTime(timezone=True), server_default=func.now())
    updated_at = Column(DateTime(timezone=True), server_default=func.now(), onupdate=func.now())

    __table_args__ = (
        UniqueConstraint("shop_domain", "ip_address", name="uq_blocked_ips_shop_ip"),
        _list_type_check("ck_blocked_ips_list_type"),
        Index("ix_blocked_ips_shop_list_type", "shop_domain", "list_type"),
    )


class CountryRule(Base):
    __tablename__ = "blocked_countries"

    id = Column(Integer, primary_key=True, autoincrement=True)
    shop_domain = Column(String(255), nullable=False)
    country_code = Column(String(2), nullable=False)         # ISO 3166-1 alpha-2, upper case
    list_type = Column(String(10), nullable=False, default="blacklist")
    redirect_url = Column(Text, nullable=True)
    is_enabled = Column(Boolean, nullable=False, default=True)
    created_at = Column(DateTime(timezone=True), server_default=func.now())
    updated_at = Column(DateTime(timezone=True), server_default=func.now(), onupdate=func.now())

    __table_args__ = (
        UniqueConstraint("shop_domain", "country_code", name="uq_blocked_countries_shop_country"),
        _list_type_check("ck_blocked_countries_list_type"),
        Index("ix_blocked_countries_shop_list_type", "shop_domain", "list_type"),
    )


# ---------------------------------------------------------------------------
# Per-shop presentation settings (passed through on block)
# ---------------------------------------------------------------------------

class BlockSettings(Base):
    """Default redirect + message per block category ("ip", "country", "bot")."""
    __tablename__ = "block_settings"

    id = Column(Integer, primary_key=True, autoincrement=True)
    shop_domain = Column(String(255), nullable=False)
    category = Column(String(10), nullable=False)
    redirect_url = Column(Text, nullable=True)
    custom_message = Column(Text, nullable=True)
    created_at = Column(DateTime(timezone=True), server_default=func.now())
    updated_at = Column(DateTime(timezone=True), server_default=func.now(), onupdate=func.now())

    __table_args__ = (
        UniqueConstraint("shop_domain", "category", name="uq_block_settings_shop_category"),
    )


class ContentProtectionSettings(Base):
    __tablename__ = "content_protection_settings"

    id = Column(Integer, primary_key=True, autoincrement=True)
    shop_domain = Column(String(255), nullable=False, unique=True)
    disable_right_click = Column(Boolean, default=False)
    disable_text_selection = Column(Boolean, default=False)
    disable_image_drag = Column(Boolean, default=False)
    disable_copy_paste = Column(Boolean, default=False)
    disable_dev_tools = Column(Boolean, default=False)
    custom_protection_message = Column(Text, default="Content is protected")
    created_at = Column(DateTime(timezone=True), server_default=func.now())
    updated_at = Column(DateTime(timezone=True), server_default=func.now(), onupdate=func.now())

    def flags(self) -> dict[str, bool]:
        return {
            "disable_right_click": bool(self.disable_right_click),
            "disable_text_selection": bool(self.disable_text_selection),
            "disable_image_drag": bool(self.disable_image_drag),
            "disable_copy_paste": bool(self.disable_copy_paste),
            "disable_dev_tools": bool(self.disable_dev_tools),
        }


# ---------------------------------------------------------------------------
# Analytics
# ---------------------------------------------------------------------------

class VisitSession(Base):
    """
    One row per (shop, session_id) per session window.
    Repeat requests inside the window update the row in place.
    No unique constraint on (shop, session_id): a session that outlives
    the window starts a fresh row.
    """
    __tablename__ = "user_analytics"

    id = Column(Integer, primary_key=True, autoincrement=True)
    shop_domain = Column(String(255), nullable=False)
    session_id = Column(String(100), nullable=False)

    # --- Request signals ---
    ip_address = Column(String(45), nullable=True)
    country_code = Column(String(2), nullable=True)
    user_agent = Column(Text, nullable=True)
    device_type = Column(String(20), nullable=True)          # mobile, tablet, desktop, unknown
    browser_name = Column(String(50), nullable=True)
    browser_version = Column(String(20), nullable=True)
    page_url = Column(Text, nullable=True)
    referrer = Column(Text, nullable=True)

    # --- Engagement ---
    visit_duration = Column(Integer, nullable=False, default=0)  # seconds
    page_views = Column(Integer, nullable=False, default=1)

    # --- Bot / blocking ---
    is_bot = Column(Boolean, nullable=False, default=False)
    bot_name = Column(String(100), nullable=True)
    blocked_reason = Column(Text, nullable=True)

    # --- Client environment (from the beacon) ---
    screen_resolution = Column(String(20), nullable=True)
    viewport_size = Column(String(20), nullable=True)
    timezone = Column(String(100), nullable=True)
    language = Column(String(20), nullable=True)

    created_at = Column(DateTime(timezone=True), server_default=func.now(), nullable=False)
    updated_at = Column(DateTime(timezone=True), server_default=func.now(), nullable=False)

    __table_args__ = (
        Index("ix_user_analytics_shop_session_created", "shop_domain", "session_id", "created_at"),
        Index("ix_user_analytics_shop_created", "shop_domain", "created_at"),
        Index("ix_user_analytics_shop_bot", "shop_domain", "is_bot"),
    )


class PerformanceSample(Base):
    """Append-only page timing samples from the beacon."""
    __tablename__ = "performance_analytics"

    id = Column(Integer, primary_key=True, autoincrement=True)
    shop_domain = Column(String(255), nullable=False)
    session_id = Column(String(100), nullable=True)
    page_url = Column(Text, nullable=True)
    load_time = Column(Integer, nullable=True)               # ms
    dom_ready_time = Column(Integer, nullable=True)          # ms
    created_at = Column(DateTime(timezone=True), server_default=func.now())

    __table_args__ = (
        Index("ix_performance_analytics_shop_created", "shop_domain", "created_at"),
    )


# Every table holding per-shop rows; purged together on uninstall.
SHOP_SCOPED_TABLES = (
    BotRule,
    IpRule,
    CountryRule,
    BlockSettings,
    ContentProtectionSettings,
    VisitSession,
    PerformanceSample,
)
