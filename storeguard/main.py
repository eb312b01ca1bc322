"""
Storeguard — storefront access control and visit analytics for Shopify.
Main application entry point.
"""

from contextlib import asynccontextmanager

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from storeguard.api.reports import router as reports_router
from storeguard.api.rules import router as rules_router
from storeguard.api.shop_settings import router as shop_settings_router
from storeguard.api.storefront import router as storefront_router
from storeguard.api.webhooks import router as webhooks_router
from storeguard.middleware.access_gate import AccessGateMiddleware
from storeguard.middleware.security import SecurityHeadersMiddleware
from storeguard.middleware.shopify_auth import AppProxyAuthMiddleware
from storeguard.models.database import get_session_maker, init_models, seed_global_bot_rules
from storeguard.config import get_settings

import structlog

structlog.configure(
    processors=[
        structlog.processors.TimeStamper(fmt="iso"),
        structlog.processors.add_log_level,
        structlog.dev.ConsoleRenderer() if get_settings().debug else structlog.processors.JSONRenderer(),
    ],
)

logger = structlog.get_logger()

VERSION = "1.0.0"


@asynccontextmanager
async def lifespan(app: FastAPI):
    settings = get_settings()
    logger.info("storeguard_starting", environment=settings.environment)

    if settings.create_tables_on_startup:
        await init_models()
    if settings.seed_global_bot_rules:
        async with get_session_maker()() as session:
            await seed_global_bot_rules(session)

    yield
    logger.info("storeguard_shutting_down")


app = FastAPI(
    title="Storeguard",
    description="Storefront access control with bot, IP and country rules with visit analytics.",
    version=VERSION,
    lifespan=lifespan,
    docs_url="/docs" if get_settings().debug else None,
    redoc_url="/redoc" if get_settings().debug else None,
    openapi_url="/openapi.json" if get_settings().debug else None,
)

# Outermost last: proxy auth must set request.state.shop before the gate reads it
app.add_middleware(AccessGateMiddleware)
app.add_middleware(AppProxyAuthMiddleware)
app.add_middleware(SecurityHeadersMiddleware)

ALLOWED_ORIGINS = ["*"] if get_settings().debug else [
    "https://admin.shopify.com",
]
app.add_middleware(
    CORSMiddleware,
    allow_origins=ALLOWED_ORIGINS,
    allow_origin_regex=r"https://[a-z0-9][a-z0-9\-]*\.myshopify\.com",
    allow_credentials=True,
    allow_methods=["GET", "POST", "PATCH", "PUT", "DELETE"],
    allow_headers=["Authorization", "Content-Type"],
)

# --- Routes ---
app.include_router(storefront_router)
app.include_router(rules_router)
app.include_router(shop_settings_router)
app.include_router(reports_router)
app.include_router(webhooks_router)


@app.get("/health")
async def health():
    return {"status": "ok", "service": "storeguard", "version": VERSION}
