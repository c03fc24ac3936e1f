"""Shop registry: the one place install credentials are stored.

Two interchangeable stores implement :class:`ShopRegistry`. The SQL store is
the production one and relies on the ``shops.shop_domain`` unique key plus a
single-statement upsert, so concurrent installs for the same shop converge on
one row without application-level locking. The in-memory store is meant for
local development and tests.
"""

from __future__ import annotations

import logging
import threading
from datetime import datetime, timezone
from typing import Any, Protocol

from sqlalchemy import delete, select, update
from sqlalchemy.dialects import mysql, postgresql, sqlite
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from storelink.errors import PersistenceError, ShopNotFoundError
from storelink.models import Shop, User
from storelink.schemas import Credential, InstalledShop, ShopProfile

logger = logging.getLogger(__name__)

_PROFILE_FIELDS = tuple(ShopProfile.model_fields)


class ShopRegistry(Protocol):
    def upsert_shop(self, shop_domain: str, credential: Credential, profile: ShopProfile) -> int: ...

    def get_credential(self, shop_domain: str) -> Credential: ...

    def get_shop(self, shop_domain: str) -> InstalledShop: ...

    def update_profile(self, shop_domain: str, profile: ShopProfile) -> bool: ...

    def delete_shop(self, shop_domain: str) -> None: ...


def _present_profile_fields(profile: ShopProfile) -> dict[str, str]:
    # fields missing from a partial profile never blank out stored values
    return profile.model_dump(exclude_none=True)


def _normalize_email(email: str | None) -> str | None:
    if not email:
        return None
    cleaned = email.strip().lower()
    return cleaned or None


class SqlShopRegistry:
    def __init__(self, session: Session) -> None:
        self.session = session

    def _dialect_name(self) -> str:
        return self.session.get_bind().dialect.name

    def _resolve_user_id(self, profile: ShopProfile) -> int | None:
        email = _normalize_email(profile.email)
        if not email:
            return None
        values = {"email": email, "name": profile.shop_owner, "created_at": datetime.now(timezone.utc)}
        dialect = self._dialect_name()
        if dialect == "postgresql":
            stmt = postgresql.insert(User).values(**values).on_conflict_do_nothing(index_elements=[User.email])
        elif dialect == "sqlite":
            stmt = sqlite.insert(User).values(**values).on_conflict_do_nothing(index_elements=[User.email])
        elif dialect in {"mysql", "mariadb"}:
            insert_stmt = mysql.insert(User).values(**values)
            stmt = insert_stmt.on_duplicate_key_update(email=insert_stmt.inserted.email)
        else:
            raise PersistenceError(message=f"Unsupported database dialect for upsert: {dialect}")
        self.session.execute(stmt)
        return self.session.scalar(select(User.id).where(User.email == email))

    def _upsert_statement(self, values: dict[str, Any], updates: dict[str, Any]):
        dialect = self._dialect_name()
        if dialect == "postgresql":
            return (
                postgresql.insert(Shop)
                .values(**values)
                .on_conflict_do_update(index_elements=[Shop.shop_domain], set_=updates)
            )
        if dialect == "sqlite":
            return (
                sqlite.insert(Shop)
                .values(**values)
                .on_conflict_do_update(index_elements=[Shop.shop_domain], set_=updates)
            )
        if dialect in {"mysql", "mariadb"}:
            return mysql.insert(Shop).values(**values).on_duplicate_key_update(**updates)
        raise PersistenceError(message=f"Unsupported database dialect for upsert: {dialect}")

    def upsert_shop(self, shop_domain: str, credential: Credential, profile: ShopProfile) -> int:
        now = datetime.now(timezone.utc)
        try:
            user_id = self._resolve_user_id(profile)
            updates: dict[str, Any] = {
                "access_token": credential.access_token,
                "scope": credential.scope,
                "issued_at": credential.issued_at,
                "updated_at": now,
                **_present_profile_fields(profile),
            }
            if user_id is not None:
                updates["user_id"] = user_id
            values = {
                **updates,
                "shop_domain": shop_domain,
                "user_id": user_id,
                "installed_at": now,
            }
            self.session.execute(self._upsert_statement(values, updates))
            shop_id = self.session.scalar(select(Shop.id).where(Shop.shop_domain == shop_domain))
            self.session.commit()
        except SQLAlchemyError as exc:
            self.session.rollback()
            logger.exception("Shop upsert failed", extra={"shop_domain": shop_domain})
            raise PersistenceError(message=f"Failed to persist shop {shop_domain}: {exc}") from exc
        if shop_id is None:
            raise PersistenceError(message=f"Shop {shop_domain} was not found after upsert")
        return shop_id

    def _get_row(self, shop_domain: str) -> Shop:
        try:
            shop = self.session.scalars(select(Shop).where(Shop.shop_domain == shop_domain)).first()
        except SQLAlchemyError as exc:
            raise PersistenceError(message=f"Failed to load shop {shop_domain}: {exc}") from exc
        if shop is None:
            raise ShopNotFoundError(message=f"No installed shop for {shop_domain}")
        return shop

    def get_credential(self, shop_domain: str) -> Credential:
        shop = self._get_row(shop_domain)
        return Credential(
            shop_domain=shop.shop_domain,
            access_token=shop.access_token,
            scope=shop.scope,
            issued_at=shop.issued_at,
        )

    def get_shop(self, shop_domain: str) -> InstalledShop:
        shop = self._get_row(shop_domain)
        user_email = None
        if shop.user_id is not None:
            user_email = self.session.scalar(select(User.email).where(User.id == shop.user_id))
        return InstalledShop(
            shop_id=shop.id,
            credential=Credential(
                shop_domain=shop.shop_domain,
                access_token=shop.access_token,
                scope=shop.scope,
                issued_at=shop.issued_at,
            ),
            profile=ShopProfile(**{field: getattr(shop, field) for field in _PROFILE_FIELDS}),
            user_email=user_email,
        )

    def update_profile(self, shop_domain: str, profile: ShopProfile) -> bool:
        fields = _present_profile_fields(profile)
        if not fields:
            return False
        try:
            result = self.session.execute(
                update(Shop)
                .where(Shop.shop_domain == shop_domain)
                .values(**fields, updated_at=datetime.now(timezone.utc))
            )
            self.session.commit()
        except SQLAlchemyError as exc:
            self.session.rollback()
            raise PersistenceError(message=f"Failed to update profile for {shop_domain}: {exc}") from exc
        return result.rowcount > 0

    def delete_shop(self, shop_domain: str) -> None:
        try:
            result = self.session.execute(delete(Shop).where(Shop.shop_domain == shop_domain))
            self.session.commit()
        except SQLAlchemyError as exc:
            self.session.rollback()
            raise PersistenceError(message=f"Failed to delete shop {shop_domain}: {exc}") from exc
        logger.info("Shop deleted", extra={"shop_domain": shop_domain, "rows": result.rowcount})


class InMemoryShopRegistry:
    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._shops: dict[str, InstalledShop] = {}
        self._users: dict[str, int] = {}
        self._next_shop_id = 1

    def upsert_shop(self, shop_domain: str, credential: Credential, profile: ShopProfile) -> int:
        with self._lock:
            email = _normalize_email(profile.email)
            if email and email not in self._users:
                self._users[email] = len(self._users) + 1

            existing = self._shops.get(shop_domain)
            if existing is None:
                shop_id = self._next_shop_id
                self._next_shop_id += 1
                merged = profile
            else:
                shop_id = existing.shop_id
                merged = existing.profile.model_copy(update=_present_profile_fields(profile))
                email = email or existing.user_email

            self._shops[shop_domain] = InstalledShop(
                shop_id=shop_id,
                credential=credential,
                profile=merged,
                user_email=email,
            )
            return shop_id

    def get_shop(self, shop_domain: str) -> InstalledShop:
        with self._lock:
            shop = self._shops.get(shop_domain)
        if shop is None:
            raise ShopNotFoundError(message=f"No installed shop for {shop_domain}")
        return shop

    def get_credential(self, shop_domain: str) -> Credential:
        return self.get_shop(shop_domain).credential

    def update_profile(self, shop_domain: str, profile: ShopProfile) -> bool:
        fields = _present_profile_fields(profile)
        with self._lock:
            shop = self._shops.get(shop_domain)
            if shop is None or not fields:
                return False
            self._shops[shop_domain] = shop.model_copy(
                update={"profile": shop.profile.model_copy(update=fields)}
            )
            return True

    def delete_shop(self, shop_domain: str) -> None:
        with self._lock:
            self._shops.pop(shop_domain, None)
