from __future__ import annotations

import base64
import hashlib
import hmac
import logging
import re
from collections.abc import Mapping, Sequence
from typing import Any, Union
from urllib.parse import urlsplit

from jose import jwt
from jose.exceptions import JWTError

from storelink.errors import SessionTokenInvalid, ValidationError

logger = logging.getLogger(__name__)

_SHOP_DOMAIN_RE = re.compile(r"^[a-z0-9][a-z0-9-]*\.myshopify\.com$")
_EXCLUDED_INSTALL_KEYS = frozenset({"hmac", "signature"})

QueryItems = Union[Mapping[str, Any], Sequence[tuple[str, Any]]]


def normalize_shop_domain(shop: str) -> str:
    normalized = shop.strip().lower()
    if not _SHOP_DOMAIN_RE.fullmatch(normalized):
        raise ValidationError(message=f"shop must be a valid *.myshopify.com domain, got {shop!r}")
    return normalized


def _iter_items(query_items: QueryItems):
    if isinstance(query_items, Mapping):
        return query_items.items()
    return query_items


def canonical_install_message(query_items: QueryItems) -> str:
    """Serialize install callback params the way Shopify signs them.

    ``hmac`` and the legacy ``signature`` param are dropped, repeated keys and
    list values collapse into one comma-joined value, and keys are sorted.
    """
    grouped: dict[str, list[str]] = {}
    for key, value in _iter_items(query_items):
        if key in _EXCLUDED_INSTALL_KEYS:
            continue
        values = grouped.setdefault(key, [])
        if isinstance(value, (list, tuple)):
            values.extend(str(item) for item in value)
        else:
            values.append(str(value))
    return "&".join(f"{key}={','.join(values)}" for key, values in sorted(grouped.items()))


def _supplied_install_hmac(query_items: QueryItems) -> str | None:
    for key, value in _iter_items(query_items):
        if key == "hmac":
            return value if isinstance(value, str) else None
    return None


def sign_install_params(query_items: QueryItems, secret: str) -> str:
    message = canonical_install_message(query_items)
    return hmac.new(secret.encode("utf-8"), message.encode("utf-8"), hashlib.sha256).hexdigest()


def verify_install_signature(query_items: QueryItems, secret: str) -> bool:
    supplied_hmac = _supplied_install_hmac(query_items)
    if not supplied_hmac:
        return False
    digest = sign_install_params(query_items, secret)
    # compare bytes so non-ASCII input fails instead of raising TypeError
    return hmac.compare_digest(digest.encode("ascii"), supplied_hmac.encode("utf-8"))


def sign_webhook_body(body: bytes, secret: str) -> str:
    digest = hmac.new(secret.encode("utf-8"), body, hashlib.sha256).digest()
    return base64.b64encode(digest).decode("utf-8")


def verify_webhook_signature(*, body: bytes, supplied_hmac: str | None, secret: str) -> bool:
    if not supplied_hmac:
        return False
    encoded = sign_webhook_body(body, secret)
    return hmac.compare_digest(encoded.encode("ascii"), supplied_hmac.strip().encode("utf-8"))


def _shop_from_url(value: Any) -> str | None:
    if not isinstance(value, str) or not value:
        return None
    host = urlsplit(value).hostname
    if not host or not _SHOP_DOMAIN_RE.fullmatch(host):
        return None
    return host


def verify_session_token(token: str, *, api_key: str, secret: str) -> str:
    """Decode an App Bridge session token and return the shop it was issued for."""
    try:
        claims = jwt.decode(
            token,
            secret,
            algorithms=["HS256"],
            audience=api_key,
            options={"require_aud": True, "require_exp": True, "require_nbf": True},
        )
    except JWTError as exc:
        logger.info("Session token rejected", extra={"error": str(exc)})
        raise SessionTokenInvalid(message=f"Invalid session token: {exc}") from exc

    shop_domain = _shop_from_url(claims.get("dest"))
    if not shop_domain:
        raise SessionTokenInvalid(message="Session token dest is not a shop domain")
    issuer_shop = _shop_from_url(claims.get("iss"))
    if issuer_shop != shop_domain:
        raise SessionTokenInvalid(message="Session token iss does not match dest")
    return shop_domain
