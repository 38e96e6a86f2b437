"""Error kinds raised by the marketplace services.

Each error is an ``HTTPException`` so route handlers can let it propagate
unchanged; ``code`` is the stable, machine-readable kind the UI switches on.
"""

from typing import Optional

from fastapi import HTTPException


class MarketplaceError(HTTPException):
    status_code = 400
    code = "MARKETPLACE_ERROR"
    default_detail = "Request could not be processed"

    def __init__(self, detail: Optional[str] = None) -> None:
        super().__init__(status_code=type(self).status_code, detail=detail or self.default_detail)


class NotFound(MarketplaceError):
    status_code = 404
    code = "NOT_FOUND"
    default_detail = "Not found"


class Forbidden(MarketplaceError):
    status_code = 403
    code = "FORBIDDEN"
    default_detail = "Forbidden"


class InvalidTransition(MarketplaceError):
    status_code = 409
    code = "INVALID_TRANSITION"
    default_detail = "Status transition is not allowed"


class NotEligible(MarketplaceError):
    status_code = 409
    code = "NOT_ELIGIBLE"
    default_detail = "Request is not eligible for review"


class InvalidRating(MarketplaceError):
    status_code = 422
    code = "INVALID_RATING"
    default_detail = "Rating must be an integer from 1 to 5"


class ValidationError(MarketplaceError):
    status_code = 422
    code = "VALIDATION_ERROR"
    default_detail = "Invalid input"
