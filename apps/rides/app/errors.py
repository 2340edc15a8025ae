from __future__ import annotations


class MedRideError(Exception):
    """
    Base class for caller-visible domain errors.

    ``kind`` is the stable machine-readable name returned to clients,
    ``status_code`` the HTTP status it maps to and ``message`` a human
    readable explanation safe to show to end users.
    """

    kind = "Error"
    status_code = 400
    default_message = "request failed"

    def __init__(self, message: str | None = None):
        self.message = message or self.default_message
        super().__init__(self.message)

    def to_dict(self) -> dict:
        return {"error": self.kind, "detail": self.message}


# Validation / state errors (400)


class InvalidDistance(MedRideError):
    kind = "InvalidDistance"
    default_message = "distance must be between 0.1 and 1000 miles"


class InvalidAmount(MedRideError):
    kind = "InvalidAmount"
    default_message = "amount must be positive"


class DuplicateBid(MedRideError):
    kind = "DuplicateBid"
    default_message = "driver already has an active bid on this ride"


class RideNotBiddable(MedRideError):
    kind = "RideNotBiddable"
    default_message = "ride is not accepting bids"


class ChainLimitReached(MedRideError):
    kind = "ChainLimitReached"
    default_message = "maximum number of counter offers reached"


class BidNotPending(MedRideError):
    kind = "BidNotPending"
    default_message = "bid is not open for this action"


class InvalidWithdraw(MedRideError):
    kind = "InvalidWithdraw"
    default_message = "bid can only be withdrawn while pending or countered"


class InvalidTransition(MedRideError):
    kind = "InvalidTransition"
    default_message = "ride status does not allow this transition"


class InvalidRetryState(MedRideError):
    kind = "InvalidRetryState"
    default_message = "only failed payouts can be retried"


class InvalidRefund(MedRideError):
    kind = "InvalidRefund"
    default_message = "only succeeded payments can be refunded"


# Missing entities (404)


class NotFound(MedRideError):
    status_code = 404


class RideNotFound(NotFound):
    kind = "RideNotFound"
    default_message = "ride not found"


class BidNotFound(NotFound):
    kind = "BidNotFound"
    default_message = "bid not found"


class PayoutNotFound(NotFound):
    kind = "PayoutNotFound"
    default_message = "payout not found"


class DriverNotFound(NotFound):
    kind = "DriverNotFound"
    default_message = "driver not found"


class RiderNotFound(NotFound):
    kind = "RiderNotFound"
    default_message = "rider not found"


class RideEditNotFound(NotFound):
    kind = "RideEditNotFound"
    default_message = "edit request not found"


class TransactionNotFound(NotFound):
    kind = "TransactionNotFound"
    default_message = "payment transaction not found"


# Auth


class Unauthenticated(MedRideError):
    kind = "Unauthenticated"
    status_code = 401
    default_message = "authentication required"


class Forbidden(MedRideError):
    kind = "Forbidden"
    status_code = 403
    default_message = "not allowed"


# Payment method / gateway


class NoPaymentMethod(MedRideError):
    kind = "NoPaymentMethod"
    default_message = "no saved payment method"


class GatewayRejected(MedRideError):
    """The gateway definitively refused the request (4xx); retrying as-is will not help."""

    kind = "GatewayRejected"
    default_message = "payment provider rejected the request"

    def __init__(self, message: str | None = None, code: str | None = None):
        super().__init__(message)
        self.code = code or "gateway_rejected"


class PaymentDeclined(GatewayRejected):
    kind = "PaymentDeclined"
    default_message = "payment was declined"

    def __init__(self, message: str | None = None, code: str | None = None):
        super().__init__(message, code or "card_declined")


class GatewayUnavailable(MedRideError):
    """Transient gateway failure (5xx, transport error); the outcome is unknown."""

    kind = "GatewayUnavailable"
    status_code = 500
    default_message = "payment provider unavailable, please try again"


class GatewayTimeout(GatewayUnavailable):
    kind = "GatewayTimeout"
    default_message = "payment provider timed out, please try again"
