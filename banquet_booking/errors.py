from fastapi import status


class BookingError(Exception):
    """Base class for errors reported to the client as ``{"success": false}``."""

    status_code = status.HTTP_500_INTERNAL_SERVER_ERROR
    default_message = "Internal server error"

    def __init__(self, message: str | None = None):
        self.message = message or self.default_message
        super().__init__(self.message)


class InvalidRequest(BookingError):
    status_code = status.HTTP_400_BAD_REQUEST
    default_message = "Invalid request"


class Conflict(BookingError):
    status_code = status.HTTP_409_CONFLICT
    default_message = "The selected slot was just taken, please choose another time and retry"


class NotFound(BookingError):
    status_code = status.HTTP_404_NOT_FOUND
    default_message = "Booking not found"


class StorageError(BookingError):
    # Message stays generic, details go to the log only
    status_code = status.HTTP_500_INTERNAL_SERVER_ERROR
    default_message = "Storage is temporarily unavailable, please try again later"


class UpstreamError(BookingError):
    status_code = status.HTTP_502_BAD_GATEWAY
    default_message = "Payment provider error"
