"""Error taxonomy for the install handshake and webhook lifecycle.

Every error carries the HTTP status it maps to and a short public message.
The exception's own ``str()`` is the detailed server-side message and is only
ever logged, never sent to the merchant.
"""

from __future__ import annotations


class StorelinkError(RuntimeError):
    status_code = 500
    public_message = "Internal server error"

    def __init__(self, *, message: str, status_code: int | None = None) -> None:
        super().__init__(message)
        if status_code is not None:
            self.status_code = status_code


class ValidationError(StorelinkError):
    status_code = 400
    public_message = "Bad request"


class SignatureInvalid(StorelinkError):
    status_code = 401
    public_message = "Unauthorized"


class SessionTokenInvalid(StorelinkError):
    status_code = 401
    public_message = "Unauthorized"


class ShopNotFoundError(StorelinkError):
    status_code = 404
    public_message = "Not found"


class PersistenceError(StorelinkError):
    status_code = 500
    public_message = "Install failed"


class ShopifyApiError(StorelinkError):
    status_code = 502
    public_message = "Upstream request failed"

    def __init__(
        self,
        *,
        message: str,
        status_code: int | None = None,
        upstream_status: int | None = None,
        upstream_body: str | None = None,
    ) -> None:
        super().__init__(message=message, status_code=status_code)
        self.upstream_status = upstream_status
        self.upstream_body = upstream_body


class ExchangeError(ShopifyApiError):
    status_code = 500
    public_message = "Install failed"


class ProfileFetchError(ShopifyApiError):
    pass


class SubscriptionError(ShopifyApiError):
    pass
