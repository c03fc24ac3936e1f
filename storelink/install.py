"""The install handshake as an explicit state machine.

A fresh :class:`InstallOrchestrator` is built for every callback request and
runs exactly once, ending in ``COMPLETE`` or ``REJECTED``.
"""

from __future__ import annotations

import logging
from collections.abc import Mapping
from dataclasses import dataclass, field
from enum import Enum

import httpx

from storelink.config import Settings
from storelink.errors import (
    ExchangeError,
    PersistenceError,
    ProfileFetchError,
    SignatureInvalid,
    ValidationError,
)
from storelink.oauth_state import OAuthStateStore
from storelink.registry import ShopRegistry
from storelink.schemas import InstallRequest, ShopProfile, SubscriptionResult
from storelink.security import QueryItems, normalize_shop_domain, verify_install_signature
from storelink.shopify_api import ShopifyApiClient
from storelink.subscriptions import WebhookSubscriber

logger = logging.getLogger(__name__)

_REQUIRED_CALLBACK_PARAMS = ("shop", "code", "hmac", "timestamp")


class InstallState(str, Enum):
    AWAITING_CALLBACK = "awaiting_callback"
    SIGNATURE_VERIFIED = "signature_verified"
    TOKEN_EXCHANGED = "token_exchanged"
    PROFILE_FETCHED = "profile_fetched"
    PERSISTED = "persisted"
    WEBHOOKS_ENSURED = "webhooks_ensured"
    COMPLETE = "complete"
    REJECTED = "rejected"


_TERMINAL_STATES = frozenset({InstallState.COMPLETE, InstallState.REJECTED})

_ALLOWED_TRANSITIONS: dict[InstallState, frozenset[InstallState]] = {
    InstallState.AWAITING_CALLBACK: frozenset({InstallState.SIGNATURE_VERIFIED, InstallState.REJECTED}),
    InstallState.SIGNATURE_VERIFIED: frozenset({InstallState.TOKEN_EXCHANGED, InstallState.REJECTED}),
    InstallState.TOKEN_EXCHANGED: frozenset({InstallState.PROFILE_FETCHED}),
    InstallState.PROFILE_FETCHED: frozenset({InstallState.PERSISTED, InstallState.REJECTED}),
    InstallState.PERSISTED: frozenset({InstallState.WEBHOOKS_ENSURED}),
    InstallState.WEBHOOKS_ENSURED: frozenset({InstallState.COMPLETE}),
}


@dataclass
class InstallOutcome:
    state: InstallState
    shop_domain: str
    shop_id: int
    redirect_url: str
    profile_error: str | None = None
    subscriptions: list[SubscriptionResult] = field(default_factory=list)

    @property
    def failed_subscriptions(self) -> list[SubscriptionResult]:
        return [result for result in self.subscriptions if not result.ok]


def parse_install_request(query_items: QueryItems) -> InstallRequest:
    items = query_items.items() if isinstance(query_items, Mapping) else query_items
    pairs: list[tuple[str, str]] = []
    for key, value in items:
        if isinstance(value, (list, tuple)):
            pairs.extend((key, str(item)) for item in value)
        else:
            pairs.append((key, str(value)))

    first: dict[str, str] = {}
    for key, value in pairs:
        first.setdefault(key, value)

    missing = [name for name in _REQUIRED_CALLBACK_PARAMS if not first.get(name)]
    if missing:
        raise ValidationError(message=f"Missing required OAuth callback params: {', '.join(missing)}")

    return InstallRequest(
        shop=normalize_shop_domain(first["shop"]),
        code=first["code"],
        hmac=first["hmac"],
        timestamp=first["timestamp"],
        host=first.get("host"),
        state=first.get("state"),
        query_items=tuple(pairs),
    )


class InstallOrchestrator:
    def __init__(
        self,
        *,
        settings: Settings,
        shopify_api: ShopifyApiClient,
        registry: ShopRegistry,
        subscriber: WebhookSubscriber,
        oauth_states: OAuthStateStore | None = None,
    ) -> None:
        self._settings = settings
        self._shopify_api = shopify_api
        self._registry = registry
        self._subscriber = subscriber
        self._oauth_states = oauth_states
        self.state = InstallState.AWAITING_CALLBACK

    def _advance(self, target: InstallState) -> None:
        if self.state in _TERMINAL_STATES:
            raise RuntimeError(f"Install handshake already finished in state {self.state.value}")
        if target not in _ALLOWED_TRANSITIONS[self.state]:
            raise RuntimeError(f"Illegal install transition {self.state.value} -> {target.value}")
        self.state = target

    def _redirect_url(self, request: InstallRequest) -> str:
        params = {"shop": request.shop}
        if request.host:
            params["host"] = request.host
        return str(httpx.URL(self._settings.dashboard_url(request.shop)).copy_merge_params(params))

    async def _fetch_profile(self, request: InstallRequest, access_token: str) -> tuple[ShopProfile, str | None]:
        try:
            profile = await self._shopify_api.fetch_shop_profile(
                shop_domain=request.shop,
                access_token=access_token,
            )
        except ProfileFetchError as exc:
            logger.warning(
                "Shop profile fetch failed; continuing with partial profile",
                extra={"shop_domain": request.shop, "error": str(exc)},
            )
            return ShopProfile(), str(exc)
        return profile, None

    async def run(self, query_items: QueryItems) -> InstallOutcome:
        if self.state is not InstallState.AWAITING_CALLBACK:
            raise RuntimeError("An install orchestrator runs exactly once")
        try:
            return await self._run(query_items)
        except (ValidationError, SignatureInvalid, ExchangeError, PersistenceError) as exc:
            logger.warning(
                "Install rejected",
                extra={"install_state": self.state.value, "error": str(exc)},
            )
            self._advance(InstallState.REJECTED)
            raise

    async def _run(self, query_items: QueryItems) -> InstallOutcome:
        request = parse_install_request(query_items)
        if not verify_install_signature(request.query_items, self._settings.SHOPIFY_API_SECRET):
            raise SignatureInvalid(message=f"Install callback HMAC mismatch for {request.shop}")
        self._advance(InstallState.SIGNATURE_VERIFIED)

        if request.state and self._oauth_states is not None:
            if not self._oauth_states.consume(request.state, request.shop):
                raise ValidationError(message=f"Unknown or reused OAuth state for {request.shop}")

        credential = await self._shopify_api.exchange_code_for_token(
            shop_domain=request.shop,
            code=request.code,
        )
        self._advance(InstallState.TOKEN_EXCHANGED)

        profile, profile_error = await self._fetch_profile(request, credential.access_token)
        self._advance(InstallState.PROFILE_FETCHED)

        shop_id = self._registry.upsert_shop(request.shop, credential, profile)
        self._advance(InstallState.PERSISTED)
        logger.info("Shop installed", extra={"shop_domain": request.shop, "shop_id": shop_id})

        subscriptions = await self._subscriber.ensure_required(
            shop_domain=request.shop,
            credential=credential,
            settings=self._settings,
        )
        self._advance(InstallState.WEBHOOKS_ENSURED)
        self._advance(InstallState.COMPLETE)

        return InstallOutcome(
            state=self.state,
            shop_domain=request.shop,
            shop_id=shop_id,
            redirect_url=self._redirect_url(request),
            profile_error=profile_error,
            subscriptions=subscriptions,
        )
