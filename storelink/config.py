from __future__ import annotations

from functools import lru_cache
from typing import Literal

from pydantic import AnyHttpUrl, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    SHOPIFY_API_KEY: str
    SHOPIFY_API_SECRET: str
    SHOPIFY_SCOPES: str
    SHOPIFY_APP_BASE_URL: AnyHttpUrl
    SHOPIFY_ADMIN_API_VERSION: str = "2025-07"
    SHOPIFY_REQUEST_TIMEOUT_SECONDS: float = 20.0
    SHOPIFY_DASHBOARD_URL: AnyHttpUrl | None = None
    SHOPIFY_SUBSCRIBE_SHOP_UPDATE: bool = True
    SHOPIFY_OAUTH_STATE_MAX_AGE_SECONDS: int = 600

    STORELINK_DB_URL: str = "sqlite:///./storelink.db"
    CREDENTIAL_STORE: Literal["sql", "memory"] = "sql"

    @field_validator("SHOPIFY_SCOPES")
    @classmethod
    def validate_scopes(cls, value: str) -> str:
        scopes = [scope.strip() for scope in value.split(",") if scope.strip()]
        if not scopes:
            raise ValueError("SHOPIFY_SCOPES must include at least one scope")
        return ",".join(scopes)

    @field_validator("SHOPIFY_API_SECRET")
    @classmethod
    def validate_secret(cls, value: str) -> str:
        if not value.strip():
            raise ValueError("SHOPIFY_API_SECRET must not be blank")
        return value

    @property
    def app_base_url(self) -> str:
        return str(self.SHOPIFY_APP_BASE_URL).rstrip("/")

    def dashboard_url(self, shop_domain: str) -> str:
        if self.SHOPIFY_DASHBOARD_URL:
            return str(self.SHOPIFY_DASHBOARD_URL).rstrip("/")
        return f"https://{shop_domain}/admin/apps/{self.SHOPIFY_API_KEY}"

    model_config = SettingsConfigDict(env_file=".env", extra="ignore")


@lru_cache
def get_settings() -> Settings:
    return Settings()
