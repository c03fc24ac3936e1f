from __future__ import annotations

from datetime import datetime, timezone

from sqlalchemy import DateTime, ForeignKey, Integer, String, Text, UniqueConstraint
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column


class Base(DeclarativeBase):
    pass


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class User(Base):
    __tablename__ = "users"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    email: Mapped[str] = mapped_column(String(length=320), unique=True, nullable=False, index=True)
    name: Mapped[str | None] = mapped_column(String(length=255), nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=utcnow)


class Shop(Base):
    __tablename__ = "shops"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    shop_domain: Mapped[str] = mapped_column(String(length=255), unique=True, nullable=False, index=True)
    access_token: Mapped[str] = mapped_column(Text, nullable=False)
    scope: Mapped[str] = mapped_column(Text, nullable=False, default="")
    issued_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=utcnow)
    user_id: Mapped[int | None] = mapped_column(
        Integer, ForeignKey("users.id", ondelete="SET NULL"), nullable=True, index=True
    )

    email: Mapped[str | None] = mapped_column(String(length=320), nullable=True)
    shop_owner: Mapped[str | None] = mapped_column(String(length=255), nullable=True)
    name: Mapped[str | None] = mapped_column(String(length=255), nullable=True)
    domain: Mapped[str | None] = mapped_column(String(length=255), nullable=True)
    myshopify_domain: Mapped[str | None] = mapped_column(String(length=255), nullable=True)
    plan_name: Mapped[str | None] = mapped_column(String(length=128), nullable=True)
    country: Mapped[str | None] = mapped_column(String(length=128), nullable=True)
    province: Mapped[str | None] = mapped_column(String(length=128), nullable=True)
    city: Mapped[str | None] = mapped_column(String(length=128), nullable=True)
    phone: Mapped[str | None] = mapped_column(String(length=64), nullable=True)
    currency: Mapped[str | None] = mapped_column(String(length=16), nullable=True)
    money_format: Mapped[str | None] = mapped_column(String(length=64), nullable=True)
    timezone: Mapped[str | None] = mapped_column(String(length=64), nullable=True)
    created_at_shop: Mapped[str | None] = mapped_column(String(length=64), nullable=True)

    installed_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=utcnow)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utcnow, onupdate=utcnow
    )


class OAuthState(Base):
    __tablename__ = "oauth_states"

    state: Mapped[str] = mapped_column(String(length=128), primary_key=True)
    shop_domain: Mapped[str] = mapped_column(String(length=255), nullable=False)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=utcnow)


class ProcessedWebhookEvent(Base):
    __tablename__ = "processed_webhook_events"
    __table_args__ = (
        UniqueConstraint("shop_domain", "topic", "event_id", name="uq_processed_webhook_event"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    shop_domain: Mapped[str] = mapped_column(String(length=255), nullable=False, index=True)
    topic: Mapped[str] = mapped_column(String(length=128), nullable=False)
    event_id: Mapped[str] = mapped_column(String(length=128), nullable=False)
    status: Mapped[str] = mapped_column(String(length=64), nullable=False)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=utcnow)
