from __future__ import annotations

import logging
from typing import Any

import httpx

from storelink.config import Settings
from storelink.errors import ExchangeError, ProfileFetchError, ShopifyApiError, SubscriptionError
from storelink.schemas import Credential, ShopProfile

logger = logging.getLogger(__name__)

_UPSTREAM_BODY_LIMIT = 2000

_WEBHOOK_SUBSCRIPTION_CREATE = """
mutation webhookSubscriptionCreate(
    $topic: WebhookSubscriptionTopic!
    $webhookSubscription: WebhookSubscriptionInput!
) {
    webhookSubscriptionCreate(topic: $topic, webhookSubscription: $webhookSubscription) {
        webhookSubscription {
            id
        }
        userErrors {
            field
            message
        }
    }
}
"""

_WEBHOOK_SUBSCRIPTIONS_BY_TOPIC = """
query webhookSubscriptionsByTopic($topics: [WebhookSubscriptionTopic!]) {
    webhookSubscriptions(first: 50, topics: $topics) {
        edges {
            node {
                id
                endpoint {
                    __typename
                    ... on WebhookHttpEndpoint {
                        callbackUrl
                    }
                }
            }
        }
    }
}
"""


class ShopifyApiClient:
    def __init__(self, settings: Settings, *, transport: httpx.AsyncBaseTransport | None = None) -> None:
        self._settings = settings
        self._timeout = settings.SHOPIFY_REQUEST_TIMEOUT_SECONDS
        self._transport = transport

    def _admin_url(self, shop_domain: str, path: str) -> str:
        return f"https://{shop_domain}/admin/api/{self._settings.SHOPIFY_ADMIN_API_VERSION}/{path}"

    async def exchange_code_for_token(self, *, shop_domain: str, code: str) -> Credential:
        """Trade a one-time authorization code for an offline access token.

        Authorization codes are single use, so nothing here is retried: a
        second exchange with the same code fails upstream and surfaces as
        ``ExchangeError``.
        """
        url = f"https://{shop_domain}/admin/oauth/access_token"
        form = {
            "client_id": self._settings.SHOPIFY_API_KEY,
            "client_secret": self._settings.SHOPIFY_API_SECRET,
            "code": code,
        }
        body = await self._request("POST", url, data=form, error_cls=ExchangeError)
        access_token = body.get("access_token")
        scope = body.get("scope") or ""
        if not isinstance(access_token, str) or not access_token:
            raise ExchangeError(message="OAuth token exchange response is missing access_token")
        if not isinstance(scope, str):
            raise ExchangeError(message="OAuth token exchange response has a non-string scope")
        return Credential(shop_domain=shop_domain, access_token=access_token, scope=scope)

    async def fetch_shop_profile(self, *, shop_domain: str, access_token: str) -> ShopProfile:
        body = await self._request(
            "GET",
            self._admin_url(shop_domain, "shop.json"),
            headers={"X-Shopify-Access-Token": access_token},
            error_cls=ProfileFetchError,
        )
        shop = body.get("shop")
        if not isinstance(shop, dict):
            raise ProfileFetchError(message="shop.json response is missing shop")
        return ShopProfile.from_shop_payload(shop)

    async def find_webhook_subscription(
        self,
        *,
        shop_domain: str,
        access_token: str,
        topic: str,
        callback_url: str,
    ) -> str | None:
        payload = {"query": _WEBHOOK_SUBSCRIPTIONS_BY_TOPIC, "variables": {"topics": [topic]}}
        response = await self._admin_graphql(
            shop_domain=shop_domain,
            access_token=access_token,
            payload=payload,
        )
        target_url = callback_url.rstrip("/")
        subscriptions = response.get("webhookSubscriptions") or {}
        if not isinstance(subscriptions, dict):
            raise SubscriptionError(message="webhookSubscriptions response is not an object")
        edges = subscriptions.get("edges") or []
        if not isinstance(edges, list):
            raise SubscriptionError(message="webhookSubscriptions edges is not a list")
        for edge in edges:
            if not isinstance(edge, dict):
                raise SubscriptionError(message="webhookSubscriptions edge is not an object")
            node = edge.get("node") or {}
            if not isinstance(node, dict):
                raise SubscriptionError(message="webhookSubscriptions node is not an object")
            endpoint = node.get("endpoint") or {}
            if not isinstance(endpoint, dict) or endpoint.get("__typename") != "WebhookHttpEndpoint":
                continue
            endpoint_callback = endpoint.get("callbackUrl")
            if isinstance(endpoint_callback, str) and endpoint_callback.rstrip("/") == target_url:
                webhook_id = node.get("id")
                if isinstance(webhook_id, str) and webhook_id:
                    return webhook_id
        return None

    async def create_webhook_subscription(
        self,
        *,
        shop_domain: str,
        access_token: str,
        topic: str,
        callback_url: str,
    ) -> str:
        payload = {
            "query": _WEBHOOK_SUBSCRIPTION_CREATE,
            "variables": {
                "topic": topic,
                "webhookSubscription": {
                    "callbackUrl": callback_url,
                    "format": "JSON",
                },
            },
        }
        response = await self._admin_graphql(
            shop_domain=shop_domain,
            access_token=access_token,
            payload=payload,
        )
        create_data = response.get("webhookSubscriptionCreate") or {}
        if not isinstance(create_data, dict):
            raise SubscriptionError(message="webhookSubscriptionCreate response is not an object")
        user_errors = create_data.get("userErrors") or []
        if not isinstance(user_errors, list) or not all(isinstance(error, dict) for error in user_errors):
            raise SubscriptionError(message="webhookSubscriptionCreate userErrors is malformed")
        if user_errors:
            if self._has_duplicate_webhook_address_error(user_errors):
                # a concurrent install registered it between our lookup and create
                existing_id = await self.find_webhook_subscription(
                    shop_domain=shop_domain,
                    access_token=access_token,
                    topic=topic,
                    callback_url=callback_url,
                )
                if existing_id:
                    return existing_id
            messages = "; ".join(str(error.get("message")) for error in user_errors)
            raise SubscriptionError(message=f"Webhook registration failed for {topic}: {messages}")
        webhook = create_data.get("webhookSubscription") or {}
        webhook_id = webhook.get("id") if isinstance(webhook, dict) else None
        if not isinstance(webhook_id, str) or not webhook_id:
            raise SubscriptionError(message=f"Webhook registration for {topic} returned no id")
        return webhook_id

    @staticmethod
    def _has_duplicate_webhook_address_error(user_errors: list[dict[str, Any]]) -> bool:
        for error in user_errors:
            message = error.get("message")
            if isinstance(message, str) and "already been taken" in message.lower():
                return True
        return False

    async def _admin_graphql(
        self,
        *,
        shop_domain: str,
        access_token: str,
        payload: dict[str, Any],
    ) -> dict[str, Any]:
        headers = {
            "Content-Type": "application/json",
            "X-Shopify-Access-Token": access_token,
        }
        response = await self._request(
            "POST",
            self._admin_url(shop_domain, "graphql.json"),
            json=payload,
            headers=headers,
            error_cls=SubscriptionError,
        )
        data = response.get("data")
        errors = response.get("errors")
        if errors:
            raise SubscriptionError(message=f"Admin GraphQL errors: {errors}")
        if not isinstance(data, dict):
            raise SubscriptionError(message="Admin GraphQL response is missing data")
        return data

    async def _request(
        self,
        method: str,
        url: str,
        *,
        error_cls: type[ShopifyApiError] = ShopifyApiError,
        headers: dict[str, str] | None = None,
        json: dict[str, Any] | None = None,
        data: dict[str, str] | None = None,
    ) -> dict[str, Any]:
        try:
            async with httpx.AsyncClient(timeout=self._timeout, transport=self._transport) as client:
                response = await client.request(method, url, headers=headers, json=json, data=data)
        except httpx.TimeoutException as exc:
            raise error_cls(message=f"Timed out calling Shopify {method} {url}") from exc
        except httpx.RequestError as exc:
            raise error_cls(message=f"Network error while calling Shopify: {exc}") from exc

        if response.status_code >= 400:
            upstream_body = response.text[:_UPSTREAM_BODY_LIMIT]
            logger.warning(
                "Shopify API call failed",
                extra={"url": url, "status_code": response.status_code, "body": upstream_body},
            )
            raise error_cls(
                message=f"Shopify API call failed ({response.status_code}): {upstream_body}",
                upstream_status=response.status_code,
                upstream_body=upstream_body,
            )

        try:
            body = response.json()
        except ValueError as exc:
            raise error_cls(
                message="Shopify API returned invalid JSON",
                upstream_status=response.status_code,
                upstream_body=response.text[:_UPSTREAM_BODY_LIMIT],
            ) from exc

        if not isinstance(body, dict):
            raise error_cls(
                message="Shopify API response must be a JSON object",
                upstream_status=response.status_code,
            )
        return body
