"""Error taxonomy of the booking engine.

Every error carries an ``ErrorKind`` so callers branch on the kind, never on
message text. ``status_code`` is the HTTP rendering used by the API layer.
"""
from enum import Enum


class ErrorKind(str, Enum):
    VALIDATION_ERROR = "ValidationError"
    ROOM_UNAVAILABLE = "RoomUnavailable"
    INVALID_TRANSITION = "InvalidTransition"
    FORBIDDEN = "Forbidden"
    ACCOUNT_INACTIVE = "AccountInactive"
    PAYMENT_VERIFICATION_FAILED = "PaymentVerificationFailed"
    AMOUNT_MISMATCH = "AmountMismatch"
    NOT_FOUND = "NotFound"
    GATEWAY_ERROR = "GatewayError"
    SERVICE_TIMEOUT = "ServiceTimeout"


class StayDeskError(Exception):
    kind: ErrorKind
    status_code: int = 400
    retryable: bool = False

    def __init__(self, message: str, **details):
        super().__init__(message)
        self.message = message
        self.details = details

    def to_dict(self) -> dict:
        out = {"error": self.kind.value, "detail": self.message}
        if self.details:
            out["context"] = self.details
        return out


class ValidationError(StayDeskError):
    kind = ErrorKind.VALIDATION_ERROR
    status_code = 400


class RoomUnavailable(StayDeskError):
    kind = ErrorKind.ROOM_UNAVAILABLE
    status_code = 409


class InvalidTransition(StayDeskError):
    kind = ErrorKind.INVALID_TRANSITION
    status_code = 409


class Forbidden(StayDeskError):
    kind = ErrorKind.FORBIDDEN
    status_code = 403


class AccountInactive(StayDeskError):
    kind = ErrorKind.ACCOUNT_INACTIVE
    status_code = 403


class PaymentVerificationFailed(StayDeskError):
    kind = ErrorKind.PAYMENT_VERIFICATION_FAILED
    status_code = 401


class AmountMismatch(StayDeskError):
    kind = ErrorKind.AMOUNT_MISMATCH
    status_code = 422


class NotFound(StayDeskError):
    kind = ErrorKind.NOT_FOUND
    status_code = 404


class GatewayError(StayDeskError):
    kind = ErrorKind.GATEWAY_ERROR
    status_code = 502
    retryable = True


class ServiceTimeout(StayDeskError):
    kind = ErrorKind.SERVICE_TIMEOUT
    status_code = 503
    retryable = True
