from __future__ import annotations


class DomainError(Exception):
    """Business precondition failure. Callers must not retry blindly."""

    code = "DOMAIN_ERROR"
    http_status = 409

    def __init__(self, message: str = "", *, code: str | None = None, http_status: int | None = None, details: dict | None = None):
        super().__init__(message or self.code)
        self.message = message or self.code
        if code:
            self.code = code
        if http_status:
            self.http_status = int(http_status)
        self.details = details or {}

    def to_dict(self) -> dict:
        payload = {
            "ok": False,
            "error": self.code,
            "message": self.message,
            "status": int(self.http_status),
        }
        if self.details:
            payload["details"] = self.details
        return payload


class ValidationError(DomainError):
    code = "VALIDATION_ERROR"
    http_status = 400


class NotFoundError(DomainError):
    code = "NOT_FOUND"
    http_status = 404


class EscrowNotFound(NotFoundError):
    code = "ESCROW_NOT_FOUND"


class EscrowAlreadyReleased(DomainError):
    code = "ESCROW_ALREADY_RELEASED"


class InvalidTransition(DomainError):
    code = "INVALID_TRANSITION"


class OrderNotPaid(DomainError):
    code = "ORDER_NOT_PAID"


class DeliveryAlreadyExists(DomainError):
    code = "DELIVERY_ALREADY_EXISTS"


class MerchantLocationMissing(DomainError):
    code = "MERCHANT_LOCATION_MISSING"
    http_status = 422


class RiderUnavailable(DomainError):
    code = "RIDER_UNAVAILABLE"


class InsufficientStock(DomainError):
    code = "INSUFFICIENT_STOCK"


class InsufficientBalance(DomainError):
    code = "INSUFFICIENT_BALANCE"
    http_status = 422


class WithdrawalFailed(DomainError):
    code = "WITHDRAWAL_FAILED"
    http_status = 502
