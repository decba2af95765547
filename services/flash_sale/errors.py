"""
Error taxonomy for the reservation pipeline.

Every error carries the HTTP status code the presentation layer renders it
with, so handlers can raise them and let the exception handler format
``{"error": message}``.
"""

from typing import Optional


class FlashSaleError(Exception):
    """Base error for expected (operational) failures."""

    status_code = 500
    default_message = "Internal error"

    def __init__(self, message: Optional[str] = None, status_code: Optional[int] = None):
        self.message = message or self.default_message
        if status_code is not None:
            self.status_code = status_code
        super().__init__(self.message)


class ValidationError(FlashSaleError):
    """Malformed request, rejected before touching any core state."""

    status_code = 400
    default_message = "Invalid request"


class SoldOut(FlashSaleError):
    status_code = 400
    default_message = "Product sold out"


class AlreadyPurchased(FlashSaleError):
    status_code = 400
    default_message = "Already purchased"

    def __init__(self, existing_order_id: Optional[str] = None, message: Optional[str] = None):
        self.existing_order_id = existing_order_id
        super().__init__(message)


class SaleNotActive(FlashSaleError):
    status_code = 400
    default_message = "Sale is not active"


class SaleNotFound(FlashSaleError):
    status_code = 404
    default_message = "Flash sale not found"


class SettlementFailure(FlashSaleError):
    """Durable insert failed; handled by compensation, never sent to the buyer."""

    status_code = 500
    default_message = "Order settlement failed"


class AmbiguousReservation(FlashSaleError):
    """Queue hand-off failed after a token was reserved (already compensated)."""

    status_code = 503
    default_message = "Purchase attempt failed, please retry"
