"""Domain errors raised by the service layer.

Each error carries the HTTP status the API layer answers with, so services stay free of
FastAPI imports and routes do not need a try/except per call.
"""

from fastapi import status


class BookingError(Exception):
    status_code: int = status.HTTP_400_BAD_REQUEST

    def __init__(self, detail: str) -> None:
        super().__init__(detail)
        self.detail = detail


class ValidationFailed(BookingError):
    status_code = status.HTTP_400_BAD_REQUEST


class PermissionDenied(BookingError):
    status_code = status.HTTP_403_FORBIDDEN


class NotFound(BookingError):
    status_code = status.HTTP_404_NOT_FOUND


class Conflict(BookingError):
    status_code = status.HTTP_409_CONFLICT


class PaymentFailed(BookingError):
    """The payment provider answered but refused or errored."""

    status_code = status.HTTP_502_BAD_GATEWAY


class PaymentUnavailable(BookingError):
    """The payment provider is not configured or cannot be reached."""

    status_code = status.HTTP_503_SERVICE_UNAVAILABLE


class DeliveryUnavailable(BookingError):
    """Email delivery is required for this request but is not configured."""

    status_code = status.HTTP_503_SERVICE_UNAVAILABLE
