from __future__ import annotations

from concurrent.futures import ThreadPoolExecutor

import pytest
from sqlalchemy import func, select
from sqlalchemy.dialects import mysql

from storelink.db import create_db_engine, create_session_factory, init_db
from storelink.errors import PersistenceError, ShopNotFoundError
from storelink.models import Shop, User
from storelink.registry import InMemoryShopRegistry, SqlShopRegistry
from storelink.schemas import Credential, ShopProfile

SHOP = "example.myshopify.com"


@pytest.fixture()
def db_session(settings):
    engine = create_db_engine(settings)
    init_db(engine)
    session = create_session_factory(engine)()
    try:
        yield session
    finally:
        session.close()
        engine.dispose()


@pytest.fixture(params=["sql", "memory"])
def registry(request, db_session):
    if request.param == "sql":
        return SqlShopRegistry(db_session)
    return InMemoryShopRegistry()


def _profile(**overrides) -> ShopProfile:
    values = {
        "email": "owner@example.com",
        "shop_owner": "Ada Owner",
        "name": "Example Shop",
        "currency": "USD",
        "timezone": "America/New_York",
    }
    values.update(overrides)
    return ShopProfile(**values)


def test_upsert_twice_keeps_one_shop_with_latest_credential(registry):
    first_id = registry.upsert_shop(SHOP, Credential(shop_domain=SHOP, access_token="tok_1"), _profile())
    second_id = registry.upsert_shop(SHOP, Credential(shop_domain=SHOP, access_token="tok_2"), _profile())

    assert first_id == second_id
    assert registry.get_credential(SHOP).access_token == "tok_2"


def test_upsert_twice_leaves_exactly_one_row(db_session):
    registry = SqlShopRegistry(db_session)
    registry.upsert_shop(SHOP, Credential(shop_domain=SHOP, access_token="tok_1", scope="read_products"), _profile())
    registry.upsert_shop(SHOP, Credential(shop_domain=SHOP, access_token="tok_2", scope="write_products"), _profile())

    assert db_session.scalar(select(func.count()).select_from(Shop)) == 1
    row = db_session.scalars(select(Shop).where(Shop.shop_domain == SHOP)).one()
    assert row.access_token == "tok_2"
    assert row.scope == "write_products"


def test_upsert_overwrites_profile_fields_in_place(registry):
    registry.upsert_shop(SHOP, Credential(shop_domain=SHOP, access_token="tok_1"), _profile(currency="USD"))
    registry.upsert_shop(SHOP, Credential(shop_domain=SHOP, access_token="tok_2"), _profile(currency="EUR"))

    assert registry.get_shop(SHOP).profile.currency == "EUR"


def test_partial_profile_does_not_blank_stored_fields(registry):
    registry.upsert_shop(SHOP, Credential(shop_domain=SHOP, access_token="tok_1"), _profile())
    registry.upsert_shop(SHOP, Credential(shop_domain=SHOP, access_token="tok_2"), ShopProfile())

    shop = registry.get_shop(SHOP)
    assert shop.credential.access_token == "tok_2"
    assert shop.profile.name == "Example Shop"
    assert shop.user_email == "owner@example.com"


def test_user_identity_is_reused_across_shops(db_session):
    registry = SqlShopRegistry(db_session)
    registry.upsert_shop(SHOP, Credential(shop_domain=SHOP, access_token="tok_1"), _profile(email="Owner@Example.com"))
    registry.upsert_shop(
        "second.myshopify.com",
        Credential(shop_domain="second.myshopify.com", access_token="tok_2"),
        _profile(email="owner@example.com"),
    )

    assert db_session.scalar(select(func.count()).select_from(User)) == 1
    user_ids = set(db_session.scalars(select(Shop.user_id)).all())
    assert len(user_ids) == 1
    assert None not in user_ids


def test_get_credential_raises_not_found(registry):
    with pytest.raises(ShopNotFoundError):
        registry.get_credential("missing.myshopify.com")


def test_delete_shop_removes_credential(registry):
    registry.upsert_shop(SHOP, Credential(shop_domain=SHOP, access_token="tok_1"), _profile())

    registry.delete_shop(SHOP)

    with pytest.raises(ShopNotFoundError):
        registry.get_credential(SHOP)


def test_delete_shop_is_idempotent_for_unknown_shop(registry):
    registry.delete_shop("missing.myshopify.com")
    registry.delete_shop("missing.myshopify.com")


def test_update_profile_only_touches_installed_shops(registry):
    assert registry.update_profile(SHOP, _profile(plan_name="plus")) is False

    registry.upsert_shop(SHOP, Credential(shop_domain=SHOP, access_token="tok_1"), _profile())
    assert registry.update_profile(SHOP, ShopProfile(plan_name="plus")) is True

    shop = registry.get_shop(SHOP)
    assert shop.profile.plan_name == "plus"
    assert shop.profile.name == "Example Shop"


def test_concurrent_upserts_for_same_shop_converge_on_one_row(settings):
    engine = create_db_engine(settings)
    init_db(engine)
    session_factory = create_session_factory(engine)

    def install(token: str) -> int:
        session = session_factory()
        try:
            return SqlShopRegistry(session).upsert_shop(
                SHOP, Credential(shop_domain=SHOP, access_token=token), _profile()
            )
        finally:
            session.close()

    try:
        with ThreadPoolExecutor(max_workers=4) as pool:
            shop_ids = list(pool.map(install, [f"tok_{index}" for index in range(8)]))

        with session_factory() as session:
            assert session.scalar(select(func.count()).select_from(Shop)) == 1
            assert session.scalar(select(func.count()).select_from(User)) == 1
            assert session.scalar(select(Shop.access_token)).startswith("tok_")
        assert len(set(shop_ids)) == 1
    finally:
        engine.dispose()


class RecordingSession:
    def __init__(self) -> None:
        self.statements = []

    def execute(self, statement):
        self.statements.append(statement)

    def scalar(self, statement):
        return 1


def test_mysql_upsert_uses_on_duplicate_key_update(monkeypatch):
    registry = SqlShopRegistry(RecordingSession())
    monkeypatch.setattr(registry, "_dialect_name", lambda: "mysql")

    shop_sql = str(
        registry._upsert_statement(
            {"shop_domain": SHOP, "access_token": "tok_1", "scope": ""},
            {"access_token": "tok_1", "scope": ""},
        ).compile(dialect=mysql.dialect())
    )
    assert registry._resolve_user_id(_profile()) == 1
    user_sql = str(registry.session.statements[0].compile(dialect=mysql.dialect()))

    assert "ON DUPLICATE KEY UPDATE" in shop_sql
    assert "INSERT INTO shops" in shop_sql
    assert "ON DUPLICATE KEY UPDATE" in user_sql
    assert "INSERT INTO users" in user_sql


def test_unknown_dialect_is_a_persistence_error(monkeypatch):
    registry = SqlShopRegistry(RecordingSession())
    monkeypatch.setattr(registry, "_dialect_name", lambda: "oracle")

    with pytest.raises(PersistenceError):
        registry._upsert_statement({"shop_domain": SHOP}, {})
