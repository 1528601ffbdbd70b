"""
Domain errors raised by the booking core. Each carries the HTTP status the API
answers with and any structured detail the caller needs to render a targeted
message (the host's name when their payment setup is incomplete, for example).
"""
from typing import Any, Dict


class HerdError(Exception):
    http_status = 500

    def __init__(self, message: str, **extra: Any):
        super().__init__(message)
        self.message = message
        self.extra = extra

    def detail(self) -> Dict[str, Any]:
        return {"message": self.message, **self.extra}


class BookingValidationError(HerdError):
    http_status = 400


class CapacityExceededError(BookingValidationError):
    pass


class AuthenticationRequired(HerdError):
    http_status = 401


class AuthorizationError(HerdError):
    http_status = 403


class NotFoundError(HerdError):
    http_status = 404


class HostPaymentNotReadyError(HerdError):
    http_status = 400

    def __init__(self, host: Dict[str, Any]):
        name = host.get("name") or "this host"
        super().__init__(
            f"The host of this class ({name}) hasn't completed their payment setup yet. "
            "Classes can only be booked from hosts who have connected their Stripe account "
            "for payment processing.",
            hostName=name,
            hostStripeStatus={
                "connected": bool(host.get("stripeConnected")),
                "hasAccountId": bool(host.get("stripeAccountId")),
            },
        )


class InvalidTransitionError(HerdError):
    http_status = 409


class ActiveBookingsError(HerdError):
    http_status = 400


class SettlementError(HerdError):
    """Payment capture failed. The booking has already been stored as failed."""

    http_status = 402
