import logging
import os
from contextlib import asynccontextmanager
from dataclasses import dataclass
from typing import Optional

from dotenv import load_dotenv
from fastapi import FastAPI, HTTPException
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware

if "PYTEST_CURRENT_TEST" not in os.environ:
    load_dotenv()

from paywall.api import checkout, entitlements, health, metrics, subscriptions, webhooks
from paywall.core.config import Settings, settings, validate_config
from paywall.core.database import dispose_engine
from paywall.core.errors import (
    AppError,
    app_error_handler,
    http_error_handler,
    request_validation_handler,
    unhandled_exception_handler,
)
from paywall.core.logging import configure_logging
from paywall.core.middleware.request_id import RequestIdMiddleware
from paywall.features.billing.client_cache import ProviderClientCache
from paywall.features.billing.credentials import SettingsCredentialSource
from paywall.features.checkout.service import CheckoutService
from paywall.features.entitlements.models import FreshnessWindows
from paywall.features.entitlements.resolver import EntitlementResolver
from paywall.features.entitlements.store import EntitlementStore, build_entitlement_store
from paywall.features.subscriptions.service import SubscriptionService
from paywall.features.webhooks.audit import WebhookAuditStore
from paywall.features.webhooks.service import WebhookReconciler


@dataclass
class Services:
    """Everything the routes need, built once per application."""
    settings: Settings
    store: EntitlementStore
    providers: ProviderClientCache
    resolver: EntitlementResolver
    subscriptions: SubscriptionService
    checkout: CheckoutService
    webhooks: WebhookReconciler


def build_services(
    cfg: Settings,
    *,
    store: Optional[EntitlementStore] = None,
    providers: Optional[ProviderClientCache] = None,
    audit: Optional[WebhookAuditStore] = None,
) -> Services:
    # Injected collaborators may be empty (len 0); compare against None
    if store is None:
        store = build_entitlement_store(cfg)
    if providers is None:
        providers = ProviderClientCache(
            SettingsCredentialSource(cfg),
            ttl_seconds=cfg.STRIPE_CLIENT_CACHE_TTL_SECONDS,
            max_entries=cfg.STRIPE_CLIENT_CACHE_MAX_ENTRIES,
        )
    if audit is None:
        audit = WebhookAuditStore(ttl_days=cfg.WEBHOOK_AUDIT_TTL_DAYS)
    windows = FreshnessWindows(
        active_ttl_seconds=cfg.ENTITLEMENT_ACTIVE_TTL_SECONDS,
        inactive_ttl_seconds=cfg.ENTITLEMENT_INACTIVE_TTL_SECONDS,
    )
    return Services(
        settings=cfg,
        store=store,
        providers=providers,
        resolver=EntitlementResolver(store, providers, windows),
        subscriptions=SubscriptionService(
            store,
            providers,
            windows,
            callback_timeout=cfg.PRODUCT_CALLBACK_TIMEOUT_SECONDS,
        ),
        checkout=CheckoutService(providers),
        webhooks=WebhookReconciler(store, providers, audit, windows),
    )


@asynccontextmanager
async def lifespan(app: FastAPI):
    logger = logging.getLogger("paywall")
    logger.info("Starting paywall service...")
    try:
        yield
    finally:
        app.state.services.providers.clear()
        dispose_engine()
        logger.info("Stopping paywall service...")


def create_app(services: Optional[Services] = None) -> FastAPI:
    app = FastAPI(title="Paywall Entitlements", lifespan=lifespan)
    app.state.services = services if services is not None else build_services(settings)

    app.add_middleware(RequestIdMiddleware)

    app.add_exception_handler(AppError, app_error_handler)
    app.add_exception_handler(HTTPException, http_error_handler)
    app.add_exception_handler(RequestValidationError, request_validation_handler)
    app.add_exception_handler(Exception, unhandled_exception_handler)

    origins = [o.strip() for o in settings.CORS_ALLOWED_ORIGINS.split(",") if o.strip()]
    app.add_middleware(
        CORSMiddleware,
        allow_origins=origins,
        allow_credentials="*" not in origins,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    app.include_router(entitlements.router)
    app.include_router(subscriptions.router)
    app.include_router(checkout.router)
    app.include_router(webhooks.router)
    app.include_router(health.router)
    app.include_router(metrics.router)
    return app


configure_logging(settings.ENV)
validate_config(strict=getattr(settings, "CONFIG_STRICT", False))

app = create_app()
