from __future__ import annotations

from datetime import datetime, timezone
from typing import Any, Literal

from pydantic import BaseModel, ConfigDict, Field


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class InstallRequest(BaseModel):
    model_config = ConfigDict(frozen=True)

    shop: str
    code: str
    hmac: str
    timestamp: str
    host: str | None = None
    state: str | None = None
    query_items: tuple[tuple[str, str], ...] = Field(default=(), repr=False)


class Credential(BaseModel):
    model_config = ConfigDict(frozen=True)

    shop_domain: str
    access_token: str = Field(min_length=1, repr=False)
    scope: str = ""
    issued_at: datetime = Field(default_factory=utcnow)

    @property
    def scopes(self) -> list[str]:
        return [scope.strip() for scope in self.scope.split(",") if scope.strip()]


_PROFILE_SOURCE_KEYS = {
    "email": "email",
    "shop_owner": "shop_owner",
    "name": "name",
    "domain": "domain",
    "myshopify_domain": "myshopify_domain",
    "plan_name": "plan_name",
    "country": "country_name",
    "province": "province",
    "city": "city",
    "phone": "phone",
    "currency": "currency",
    "money_format": "money_format",
    "timezone": "iana_timezone",
    "created_at_shop": "created_at",
}


class ShopProfile(BaseModel):
    email: str | None = None
    shop_owner: str | None = None
    name: str | None = None
    domain: str | None = None
    myshopify_domain: str | None = None
    plan_name: str | None = None
    country: str | None = None
    province: str | None = None
    city: str | None = None
    phone: str | None = None
    currency: str | None = None
    money_format: str | None = None
    timezone: str | None = None
    created_at_shop: str | None = None

    @classmethod
    def from_shop_payload(cls, payload: dict[str, Any]) -> "ShopProfile":
        """Build a profile from a REST ``shop`` object or a ``shop/update`` webhook body."""
        values: dict[str, str | None] = {}
        for field_name, source_key in _PROFILE_SOURCE_KEYS.items():
            raw = payload.get(source_key)
            if raw is None and field_name == "timezone":
                raw = payload.get("timezone")
            if raw is None or raw == "":
                continue
            values[field_name] = str(raw)
        return cls(**values)

    @property
    def is_empty(self) -> bool:
        return not self.model_dump(exclude_none=True)


class SubscriptionResult(BaseModel):
    topic: str
    callbackUrl: str
    format: Literal["JSON"] = "JSON"
    status: Literal["created", "existing", "failed"]
    subscriptionId: str | None = None
    error: str | None = None

    @property
    def ok(self) -> bool:
        return self.status != "failed"


class ShopResponse(BaseModel):
    shopDomain: str
    scopes: list[str]
    issuedAt: datetime
    profile: ShopProfile


class InstalledShop(BaseModel):
    shop_id: int
    credential: Credential
    profile: ShopProfile
    user_email: str | None = None
