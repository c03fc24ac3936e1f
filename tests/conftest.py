import os
import sys
from pathlib import Path

import pytest

ROOT_DIR = Path(__file__).resolve().parents[1]
sys.path.insert(0, str(ROOT_DIR))

os.environ.setdefault("SHOPIFY_API_KEY", "test_key")
os.environ.setdefault("SHOPIFY_API_SECRET", "test_secret")
os.environ.setdefault("SHOPIFY_SCOPES", "read_products,write_products,read_orders")
os.environ.setdefault("SHOPIFY_APP_BASE_URL", "https://example.ngrok.app")
os.environ.setdefault("STORELINK_DB_URL", "sqlite:///./test_storelink.db")

from storelink.config import Settings  # noqa: E402


@pytest.fixture()
def settings(tmp_path) -> Settings:
    return Settings(
        SHOPIFY_API_KEY="test_key",
        SHOPIFY_API_SECRET="test_secret",
        SHOPIFY_SCOPES="read_products,write_products,read_orders",
        SHOPIFY_APP_BASE_URL="https://example.ngrok.app",
        SHOPIFY_ADMIN_API_VERSION="2025-07",
        STORELINK_DB_URL=f"sqlite:///{tmp_path / 'storelink.db'}",
    )
