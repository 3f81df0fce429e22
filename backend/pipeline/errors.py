"""
Commerce error taxonomy.

Every error raised across the pipeline boundary is a CommerceError carrying
the HTTP status and a machine-readable code; the API layer renders them as
{"success": false, "error": {"code": ..., "message": ...}}.
"""

from typing import Optional


class CommerceError(Exception):
    status_code: int = 400
    code: str = "commerce_error"

    def __init__(self, message: str, *, details: Optional[dict] = None):
        super().__init__(message)
        self.message = message
        self.details = details or {}

    def to_dict(self) -> dict:
        body = {"code": self.code, "message": self.message}
        if self.details:
            body["details"] = self.details
        return body


class ValidationError(CommerceError):
    code = "validation_error"


class NotFound(CommerceError):
    status_code = 404
    code = "not_found"


class Unauthorized(CommerceError):
    status_code = 401
    code = "unauthorized"


class Forbidden(CommerceError):
    status_code = 403
    code = "forbidden"


class InsufficientStock(CommerceError):
    code = "insufficient_stock"


# Coupons

class CouponInvalid(CommerceError):
    code = "coupon_invalid"


class CouponInactive(CouponInvalid):
    code = "coupon_inactive"


class CouponExpired(CouponInvalid):
    code = "coupon_expired"


class CouponLimitReached(CouponInvalid):
    code = "coupon_limit_reached"


class MinimumNotMet(CouponInvalid):
    code = "minimum_not_met"


# Lifecycle

class InvalidTransition(CommerceError):
    code = "invalid_transition"


class RefundAlreadyRequested(CommerceError):
    code = "refund_already_requested"


class ConcurrentUpdate(CommerceError):
    """The record changed between read and write"""
    status_code = 409
    code = "concurrent_update"


# Gateway

class GatewaySignatureInvalid(CommerceError):
    code = "gateway_signature_invalid"


class GatewayError(CommerceError):
    status_code = 502
    code = "gateway_error"


class FulfillmentError(CommerceError):
    status_code = 500
    code = "fulfillment_error"
