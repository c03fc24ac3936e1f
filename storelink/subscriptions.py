from __future__ import annotations

import logging

from storelink.config import Settings
from storelink.errors import ShopifyApiError
from storelink.schemas import Credential, SubscriptionResult
from storelink.shopify_api import ShopifyApiClient

logger = logging.getLogger(__name__)


def required_webhook_topics(settings: Settings) -> list[tuple[str, str]]:
    """(GraphQL topic, callback URL) pairs every installed shop should have."""
    topics = [("APP_UNINSTALLED", f"{settings.app_base_url}/webhooks/app/uninstalled")]
    if settings.SHOPIFY_SUBSCRIBE_SHOP_UPDATE:
        topics.append(("SHOP_UPDATE", f"{settings.app_base_url}/webhooks/shop/update"))
    return topics


class WebhookSubscriber:
    def __init__(self, shopify_api: ShopifyApiClient) -> None:
        self._shopify_api = shopify_api

    async def ensure_subscription(
        self,
        *,
        shop_domain: str,
        credential: Credential,
        topic: str,
        callback_url: str,
    ) -> SubscriptionResult:
        """Create the subscription unless one already points at ``callback_url``.

        Failures are returned as a ``failed`` result rather than raised: a
        missing subscription leaves the shop installed but degraded.
        """
        try:
            existing_id = await self._shopify_api.find_webhook_subscription(
                shop_domain=shop_domain,
                access_token=credential.access_token,
                topic=topic,
                callback_url=callback_url,
            )
            if existing_id:
                logger.info(
                    "Webhook subscription already present",
                    extra={"shop_domain": shop_domain, "topic": topic, "subscription_id": existing_id},
                )
                return SubscriptionResult(
                    topic=topic,
                    callbackUrl=callback_url,
                    status="existing",
                    subscriptionId=existing_id,
                )

            created_id = await self._shopify_api.create_webhook_subscription(
                shop_domain=shop_domain,
                access_token=credential.access_token,
                topic=topic,
                callback_url=callback_url,
            )
        except ShopifyApiError as exc:
            logger.warning(
                "Webhook subscription failed",
                extra={"shop_domain": shop_domain, "topic": topic, "error": str(exc)},
            )
            return SubscriptionResult(
                topic=topic,
                callbackUrl=callback_url,
                status="failed",
                error=str(exc),
            )

        logger.info(
            "Webhook subscription created",
            extra={"shop_domain": shop_domain, "topic": topic, "subscription_id": created_id},
        )
        return SubscriptionResult(
            topic=topic,
            callbackUrl=callback_url,
            status="created",
            subscriptionId=created_id,
        )

    async def ensure_required(
        self, *, shop_domain: str, credential: Credential, settings: Settings
    ) -> list[SubscriptionResult]:
        results = []
        for topic, callback_url in required_webhook_topics(settings):
            results.append(
                await self.ensure_subscription(
                    shop_domain=shop_domain,
                    credential=credential,
                    topic=topic,
                    callback_url=callback_url,
                )
            )
        return results
