"""
Domain errors raised by the marketplace operations.

Every error carries a human-readable message for the caller plus the HTTP
status the API layer renders it with. Errors that report a violated bound
(``InvalidBid``, ``CapacityExceeded``) expose it through ``extra`` so clients
can display it.
"""

from typing import Any, Dict, Optional


class MarketplaceError(Exception):
    """Base exception for marketplace operations."""

    status_code = 400
    code = "marketplace_error"

    def __init__(self, message: str, extra: Optional[Dict[str, Any]] = None):
        super().__init__(message)
        self.message = message
        self.extra = extra or {}

    def to_dict(self) -> Dict[str, Any]:
        return {"detail": self.message, "code": self.code, **self.extra}


class Unauthenticated(MarketplaceError):
    status_code = 401
    code = "unauthenticated"

    def __init__(self, message: str = "Not authenticated"):
        super().__init__(message)


class Forbidden(MarketplaceError):
    status_code = 403
    code = "forbidden"


class NotFound(MarketplaceError):
    status_code = 404
    code = "not_found"


class InvalidState(MarketplaceError):
    status_code = 409
    code = "invalid_state"


class InvalidBid(MarketplaceError):
    """Bid amount does not improve on the current price."""

    status_code = 422
    code = "invalid_bid"

    def __init__(self, message: str, bound: float, auction_type: str):
        super().__init__(message, {"bound": bound, "auction_type": auction_type})
        self.bound = bound
        self.auction_type = auction_type


class CapacityExceeded(MarketplaceError):
    """Claim would take more units of an item than remain."""

    status_code = 409
    code = "capacity_exceeded"

    def __init__(self, item: str, remaining: int, requested: int):
        super().__init__(
            f'Only {remaining} units of "{item}" remain (requested {requested})',
            {"item": item, "remaining": remaining, "requested": requested},
        )
        self.item = item
        self.remaining = remaining
        self.requested = requested


class Expired(MarketplaceError):
    status_code = 410
    code = "expired"


class InvalidCredential(MarketplaceError):
    status_code = 403
    code = "invalid_credential"


class InvalidArgument(MarketplaceError):
    status_code = 400
    code = "invalid_argument"


class PreconditionFailed(MarketplaceError):
    status_code = 412
    code = "precondition_failed"


class ConcurrencyConflict(MarketplaceError):
    status_code = 409
    code = "concurrency_conflict"
