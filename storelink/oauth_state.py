from __future__ import annotations

from datetime import datetime, timedelta, timezone
from uuid import uuid4

from sqlalchemy import delete
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from storelink.errors import PersistenceError
from storelink.models import OAuthState


class OAuthStateStore:
    """Single-use nonces handed to Shopify on ``/install`` and checked on ``/callback``.

    A nonce older than ``max_age_seconds`` is treated as unknown. Expired rows
    are purged whenever a new nonce is issued.
    """

    def __init__(self, session: Session, *, max_age_seconds: int = 600) -> None:
        self.session = session
        self.max_age = timedelta(seconds=max_age_seconds)

    def _cutoff(self) -> datetime:
        return datetime.now(timezone.utc) - self.max_age

    def issue(self, shop_domain: str) -> str:
        state = uuid4().hex
        try:
            self.session.execute(
                delete(OAuthState)
                .where(OAuthState.created_at < self._cutoff())
                .execution_options(synchronize_session=False)
            )
            self.session.add(OAuthState(state=state, shop_domain=shop_domain))
            self.session.commit()
        except SQLAlchemyError as exc:
            self.session.rollback()
            raise PersistenceError(message=f"Failed to store OAuth state for {shop_domain}: {exc}") from exc
        return state

    def consume(self, state: str, shop_domain: str) -> bool:
        try:
            result = self.session.execute(
                delete(OAuthState).where(
                    OAuthState.state == state,
                    OAuthState.shop_domain == shop_domain,
                    OAuthState.created_at >= self._cutoff(),
                ).execution_options(synchronize_session=False)
            )
            self.session.commit()
        except SQLAlchemyError as exc:
            self.session.rollback()
            raise PersistenceError(message=f"Failed to consume OAuth state for {shop_domain}: {exc}") from exc
        return result.rowcount == 1
