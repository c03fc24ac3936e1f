from __future__ import annotations

import asyncio
import json

import httpx

from storelink.errors import SubscriptionError
from storelink.schemas import Credential
from storelink.shopify_api import ShopifyApiClient
from storelink.subscriptions import WebhookSubscriber, required_webhook_topics

SHOP = "example.myshopify.com"
CALLBACK_URL = "https://example.ngrok.app/webhooks/app/uninstalled"
CREDENTIAL = Credential(shop_domain=SHOP, access_token="tok123")


class FakeShopifyApi:
    def __init__(self, *, existing: dict[tuple[str, str], str] | None = None, fail_create: bool = False) -> None:
        self.existing = existing or {}
        self.fail_create = fail_create
        self.created: list[tuple[str, str]] = []

    async def find_webhook_subscription(self, *, shop_domain, access_token, topic, callback_url):
        assert access_token == "tok123"
        return self.existing.get((topic, callback_url))

    async def create_webhook_subscription(self, *, shop_domain, access_token, topic, callback_url):
        if self.fail_create:
            raise SubscriptionError(message=f"Webhook registration failed for {topic}: Address is invalid")
        self.created.append((topic, callback_url))
        return f"gid://shopify/WebhookSubscription/{len(self.created)}"


def test_ensure_subscription_skips_existing_pair():
    api = FakeShopifyApi(existing={("APP_UNINSTALLED", CALLBACK_URL): "gid://shopify/WebhookSubscription/77"})

    result = asyncio.run(
        WebhookSubscriber(api).ensure_subscription(
            shop_domain=SHOP,
            credential=CREDENTIAL,
            topic="APP_UNINSTALLED",
            callback_url=CALLBACK_URL,
        )
    )

    assert result.status == "existing"
    assert result.subscriptionId == "gid://shopify/WebhookSubscription/77"
    assert api.created == []


def test_ensure_subscription_creates_missing_pair():
    api = FakeShopifyApi()

    result = asyncio.run(
        WebhookSubscriber(api).ensure_subscription(
            shop_domain=SHOP,
            credential=CREDENTIAL,
            topic="APP_UNINSTALLED",
            callback_url=CALLBACK_URL,
        )
    )

    assert result.status == "created"
    assert result.ok
    assert api.created == [("APP_UNINSTALLED", CALLBACK_URL)]


def test_ensure_subscription_reports_failure_without_raising():
    api = FakeShopifyApi(fail_create=True)

    result = asyncio.run(
        WebhookSubscriber(api).ensure_subscription(
            shop_domain=SHOP,
            credential=CREDENTIAL,
            topic="APP_UNINSTALLED",
            callback_url=CALLBACK_URL,
        )
    )

    assert result.status == "failed"
    assert not result.ok
    assert "Address is invalid" in result.error


def test_required_webhook_topics_follow_settings(settings):
    assert required_webhook_topics(settings) == [
        ("APP_UNINSTALLED", "https://example.ngrok.app/webhooks/app/uninstalled"),
        ("SHOP_UPDATE", "https://example.ngrok.app/webhooks/shop/update"),
    ]

    without_shop_update = settings.model_copy(update={"SHOPIFY_SUBSCRIBE_SHOP_UPDATE": False})
    assert required_webhook_topics(without_shop_update) == [
        ("APP_UNINSTALLED", "https://example.ngrok.app/webhooks/app/uninstalled"),
    ]


def test_ensure_required_attempts_every_topic_independently(settings):
    class PartiallyFailingApi(FakeShopifyApi):
        async def create_webhook_subscription(self, *, shop_domain, access_token, topic, callback_url):
            if topic == "APP_UNINSTALLED":
                raise SubscriptionError(message="Admin GraphQL errors: throttled")
            return await super().create_webhook_subscription(
                shop_domain=shop_domain,
                access_token=access_token,
                topic=topic,
                callback_url=callback_url,
            )

    api = PartiallyFailingApi()

    results = asyncio.run(
        WebhookSubscriber(api).ensure_required(shop_domain=SHOP, credential=CREDENTIAL, settings=settings)
    )

    assert [result.status for result in results] == ["failed", "created"]
    assert api.created == [("SHOP_UPDATE", "https://example.ngrok.app/webhooks/shop/update")]


def test_malformed_lookup_reply_becomes_failed_result(settings):
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(200, json={"data": {"webhookSubscriptions": {"edges": [None]}}})

    api = ShopifyApiClient(settings, transport=httpx.MockTransport(handler))

    result = asyncio.run(
        WebhookSubscriber(api).ensure_subscription(
            shop_domain=SHOP,
            credential=CREDENTIAL,
            topic="APP_UNINSTALLED",
            callback_url=CALLBACK_URL,
        )
    )

    assert result.status == "failed"
    assert "edge is not an object" in result.error


def test_malformed_create_reply_becomes_failed_result(settings):
    def handler(request: httpx.Request) -> httpx.Response:
        if "webhookSubscriptionCreate" in json.loads(request.content)["query"]:
            return httpx.Response(200, json={"data": {"webhookSubscriptionCreate": ["unexpected"]}})
        return httpx.Response(200, json={"data": {"webhookSubscriptions": {"edges": []}}})

    api = ShopifyApiClient(settings, transport=httpx.MockTransport(handler))

    result = asyncio.run(
        WebhookSubscriber(api).ensure_subscription(
            shop_domain=SHOP,
            credential=CREDENTIAL,
            topic="APP_UNINSTALLED",
            callback_url=CALLBACK_URL,
        )
    )

    assert result.status == "failed"
    assert "webhookSubscriptionCreate" in result.error
