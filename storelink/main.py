from __future__ import annotations

import json
import logging
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from typing import Any
from urllib.parse import urlencode

from fastapi import Depends, FastAPI, Header, Request
from fastapi.responses import ORJSONResponse, PlainTextResponse, RedirectResponse
from sqlalchemy import select
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import Session

from storelink.config import Settings, get_settings
from storelink.db import create_db_engine, create_session_factory, get_session, init_db
from storelink.errors import (
    PersistenceError,
    SessionTokenInvalid,
    SignatureInvalid,
    StorelinkError,
    ValidationError,
)
from storelink.install import InstallOrchestrator
from storelink.models import ProcessedWebhookEvent
from storelink.oauth_state import OAuthStateStore
from storelink.registry import InMemoryShopRegistry, ShopRegistry, SqlShopRegistry
from storelink.schemas import ShopProfile, ShopResponse
from storelink.security import normalize_shop_domain, verify_session_token, verify_webhook_signature
from storelink.shopify_api import ShopifyApiClient
from storelink.subscriptions import WebhookSubscriber

logger = logging.getLogger(__name__)


def get_app_settings(request: Request) -> Settings:
    return request.app.state.settings


def get_shopify_api(request: Request) -> ShopifyApiClient:
    return request.app.state.shopify_api


def get_shop_registry(request: Request, session: Session = Depends(get_session)) -> ShopRegistry:
    memory_registry = request.app.state.memory_registry
    if memory_registry is not None:
        return memory_registry
    return SqlShopRegistry(session)


def require_session_shop(
    authorization: str | None = Header(default=None, alias="Authorization"),
    settings: Settings = Depends(get_app_settings),
) -> str:
    if not authorization or not authorization.startswith("Bearer "):
        raise SessionTokenInvalid(message="Missing Bearer authorization header")
    token = authorization[7:].strip()
    return verify_session_token(token, api_key=settings.SHOPIFY_API_KEY, secret=settings.SHOPIFY_API_SECRET)


def _build_shopify_oauth_url(*, settings: Settings, shop_domain: str, state: str) -> str:
    query = urlencode(
        {
            "client_id": settings.SHOPIFY_API_KEY,
            "scope": settings.SHOPIFY_SCOPES,
            "redirect_uri": f"{settings.app_base_url}/callback",
            "state": state,
        }
    )
    return f"https://{shop_domain}/admin/oauth/authorize?{query}"


async def _read_verified_webhook(request: Request, settings: Settings) -> tuple[str, bytes]:
    body = await request.body()
    if not verify_webhook_signature(
        body=body,
        supplied_hmac=request.headers.get("x-shopify-hmac-sha256"),
        secret=settings.SHOPIFY_API_SECRET,
    ):
        raise SignatureInvalid(message=f"Invalid webhook HMAC on {request.url.path}")

    shop_header = request.headers.get("x-shopify-shop-domain")
    if not shop_header:
        raise ValidationError(message="Missing x-shopify-shop-domain header")
    return normalize_shop_domain(shop_header), body


def _parse_webhook_json(body: bytes) -> dict[str, Any]:
    try:
        payload = json.loads(body)
    except ValueError as exc:
        raise ValidationError(message="Invalid JSON webhook payload") from exc
    if not isinstance(payload, dict):
        raise ValidationError(message="Webhook payload must be a JSON object")
    return payload


def _is_duplicate_event(session: Session, *, shop_domain: str, topic: str, event_id: str | None) -> bool:
    if not event_id:
        return False
    existing = session.scalars(
        select(ProcessedWebhookEvent).where(
            ProcessedWebhookEvent.shop_domain == shop_domain,
            ProcessedWebhookEvent.topic == topic,
            ProcessedWebhookEvent.event_id == event_id,
        )
    ).first()
    return existing is not None


def _record_event(session: Session, *, shop_domain: str, topic: str, event_id: str | None, status: str) -> None:
    if not event_id:
        return
    session.add(
        ProcessedWebhookEvent(
            shop_domain=shop_domain,
            topic=topic,
            event_id=event_id,
            status=status,
        )
    )
    try:
        session.commit()
    except IntegrityError:
        # a concurrent redelivery already recorded it
        session.rollback()
    except SQLAlchemyError as exc:
        session.rollback()
        raise PersistenceError(message=f"Failed to record webhook event {event_id}: {exc}") from exc


def _webhook_ok(*, duplicate: bool = False) -> PlainTextResponse:
    return PlainTextResponse("duplicate" if duplicate else "ok")


def create_app(settings: Settings | None = None, *, shopify_api: ShopifyApiClient | None = None) -> FastAPI:
    settings = settings or get_settings()
    engine = create_db_engine(settings)

    @asynccontextmanager
    async def _app_lifespan(_app: FastAPI) -> AsyncIterator[None]:
        init_db(engine)
        try:
            yield
        finally:
            engine.dispose()

    app = FastAPI(
        title="Storelink Shopify App",
        default_response_class=ORJSONResponse,
        lifespan=_app_lifespan,
    )
    app.state.settings = settings
    app.state.engine = engine
    app.state.session_factory = create_session_factory(engine)
    app.state.shopify_api = shopify_api or ShopifyApiClient(settings)
    app.state.memory_registry = InMemoryShopRegistry() if settings.CREDENTIAL_STORE == "memory" else None

    @app.exception_handler(StorelinkError)
    async def storelink_error_handler(request: Request, exc: StorelinkError) -> PlainTextResponse:
        if exc.status_code >= 500:
            logger.error(
                "Request failed",
                extra={"path": request.url.path, "error_type": type(exc).__name__, "error": str(exc)},
            )
        else:
            logger.warning(
                "Request rejected",
                extra={"path": request.url.path, "error_type": type(exc).__name__, "error": str(exc)},
            )
        headers = None
        if isinstance(exc, SessionTokenInvalid):
            headers = {"X-Shopify-Retry-Invalid-Session-Request": "1"}
        return PlainTextResponse(exc.public_message, status_code=exc.status_code, headers=headers)

    @app.exception_handler(SQLAlchemyError)
    async def database_error_handler(request: Request, exc: SQLAlchemyError) -> PlainTextResponse:
        logger.exception("Database error", exc_info=exc)
        return PlainTextResponse("Internal server error", status_code=500)

    @app.get("/health")
    def health() -> dict[str, bool]:
        return {"ok": True}

    @app.get("/install")
    def install(
        shop: str | None = None,
        session: Session = Depends(get_session),
        settings: Settings = Depends(get_app_settings),
    ):
        if not shop:
            raise ValidationError(message="Missing shop parameter")
        shop_domain = normalize_shop_domain(shop)
        oauth_states = OAuthStateStore(session, max_age_seconds=settings.SHOPIFY_OAUTH_STATE_MAX_AGE_SECONDS)
        state = oauth_states.issue(shop_domain)
        return RedirectResponse(
            url=_build_shopify_oauth_url(settings=settings, shop_domain=shop_domain, state=state),
            status_code=302,
        )

    @app.get("/callback")
    async def callback(
        request: Request,
        session: Session = Depends(get_session),
        settings: Settings = Depends(get_app_settings),
        shopify_api: ShopifyApiClient = Depends(get_shopify_api),
        registry: ShopRegistry = Depends(get_shop_registry),
    ):
        orchestrator = InstallOrchestrator(
            settings=settings,
            shopify_api=shopify_api,
            registry=registry,
            subscriber=WebhookSubscriber(shopify_api),
            oauth_states=OAuthStateStore(session, max_age_seconds=settings.SHOPIFY_OAUTH_STATE_MAX_AGE_SECONDS),
        )
        outcome = await orchestrator.run(request.query_params.multi_items())
        if outcome.failed_subscriptions:
            logger.warning(
                "Install completed with missing webhook subscriptions",
                extra={
                    "shop_domain": outcome.shop_domain,
                    "topics": [result.topic for result in outcome.failed_subscriptions],
                },
            )
        return RedirectResponse(url=outcome.redirect_url, status_code=302)

    @app.post("/webhooks/app/uninstalled")
    async def app_uninstalled_webhook(
        request: Request,
        session: Session = Depends(get_session),
        settings: Settings = Depends(get_app_settings),
        registry: ShopRegistry = Depends(get_shop_registry),
    ):
        shop_domain, _body = await _read_verified_webhook(request, settings)
        event_id = request.headers.get("x-shopify-event-id")
        if _is_duplicate_event(session, shop_domain=shop_domain, topic="app/uninstalled", event_id=event_id):
            return _webhook_ok(duplicate=True)

        registry.delete_shop(shop_domain)
        _record_event(session, shop_domain=shop_domain, topic="app/uninstalled", event_id=event_id, status="deleted")
        return _webhook_ok()

    @app.post("/webhooks/shop/update")
    async def shop_update_webhook(
        request: Request,
        session: Session = Depends(get_session),
        settings: Settings = Depends(get_app_settings),
        registry: ShopRegistry = Depends(get_shop_registry),
    ):
        shop_domain, body = await _read_verified_webhook(request, settings)
        event_id = request.headers.get("x-shopify-event-id")
        if _is_duplicate_event(session, shop_domain=shop_domain, topic="shop/update", event_id=event_id):
            return _webhook_ok(duplicate=True)

        profile = ShopProfile.from_shop_payload(_parse_webhook_json(body))
        updated = registry.update_profile(shop_domain, profile)
        _record_event(
            session,
            shop_domain=shop_domain,
            topic="shop/update",
            event_id=event_id,
            status="updated" if updated else "ignored_not_installed",
        )
        return _webhook_ok()

    @app.post("/webhooks/customers/data_request")
    async def customers_data_request_webhook(
        request: Request,
        session: Session = Depends(get_session),
        settings: Settings = Depends(get_app_settings),
    ):
        shop_domain, body = await _read_verified_webhook(request, settings)
        event_id = request.headers.get("x-shopify-event-id")
        if _is_duplicate_event(session, shop_domain=shop_domain, topic="customers/data_request", event_id=event_id):
            return _webhook_ok(duplicate=True)

        payload = _parse_webhook_json(body)
        # no customer data is stored, so there is nothing to export
        logger.info(
            "Customer data request received",
            extra={"shop_domain": shop_domain, "data_request": (payload.get("data_request") or {}).get("id")},
        )
        _record_event(
            session,
            shop_domain=shop_domain,
            topic="customers/data_request",
            event_id=event_id,
            status="acknowledged",
        )
        return _webhook_ok()

    @app.post("/webhooks/customers/redact")
    async def customers_redact_webhook(
        request: Request,
        session: Session = Depends(get_session),
        settings: Settings = Depends(get_app_settings),
    ):
        shop_domain, body = await _read_verified_webhook(request, settings)
        event_id = request.headers.get("x-shopify-event-id")
        if _is_duplicate_event(session, shop_domain=shop_domain, topic="customers/redact", event_id=event_id):
            return _webhook_ok(duplicate=True)

        payload = _parse_webhook_json(body)
        logger.info(
            "Customer redaction received",
            extra={"shop_domain": shop_domain, "customer_id": (payload.get("customer") or {}).get("id")},
        )
        _record_event(
            session,
            shop_domain=shop_domain,
            topic="customers/redact",
            event_id=event_id,
            status="acknowledged",
        )
        return _webhook_ok()

    @app.post("/webhooks/shop/redact")
    async def shop_redact_webhook(
        request: Request,
        session: Session = Depends(get_session),
        settings: Settings = Depends(get_app_settings),
        registry: ShopRegistry = Depends(get_shop_registry),
    ):
        shop_domain, _body = await _read_verified_webhook(request, settings)
        event_id = request.headers.get("x-shopify-event-id")
        if _is_duplicate_event(session, shop_domain=shop_domain, topic="shop/redact", event_id=event_id):
            return _webhook_ok(duplicate=True)

        registry.delete_shop(shop_domain)
        _record_event(session, shop_domain=shop_domain, topic="shop/redact", event_id=event_id, status="deleted")
        return _webhook_ok()

    @app.get("/api/shop", response_model=ShopResponse)
    def current_shop(
        shop_domain: str = Depends(require_session_shop),
        registry: ShopRegistry = Depends(get_shop_registry),
    ):
        shop = registry.get_shop(shop_domain)
        return ShopResponse(
            shopDomain=shop.credential.shop_domain,
            scopes=shop.credential.scopes,
            issuedAt=shop.credential.issued_at,
            profile=shop.profile,
        )

    return app


def run() -> None:
    import uvicorn

    uvicorn.run("storelink.main:create_app", factory=True, host="0.0.0.0", port=8000)
