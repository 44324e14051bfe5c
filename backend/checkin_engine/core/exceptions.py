"""
Domain errors raised by the check-in and reward services.

Every error carries a stable machine-readable ``kind`` plus a human message.
The API layer renders them as ``{"error", "kind", "message"}`` with the
mapped HTTP status, so callers never see an unhandled failure.
"""

from typing import Optional

from fastapi import status


class CheckinEngineError(Exception):
    kind = "Internal"
    status_code = status.HTTP_500_INTERNAL_SERVER_ERROR
    error = "Internal server error"
    default_message = "Something went wrong. Please try again."
    retryable = False

    def __init__(self, message: Optional[str] = None):
        self.message = message or self.default_message
        super().__init__(self.message)

    def to_dict(self) -> dict:
        return {"error": self.error, "kind": self.kind, "message": self.message}


class BadRequest(CheckinEngineError):
    kind = "BadRequest"
    status_code = status.HTTP_400_BAD_REQUEST
    error = "Bad request"
    default_message = "The request is missing a required field."


class VenueNotFound(CheckinEngineError):
    kind = "VenueNotFound"
    status_code = status.HTTP_404_NOT_FOUND
    error = "Venue not found"
    default_message = "This venue does not exist or is not accepting check-ins."


class AlreadyCheckedIn(CheckinEngineError):
    kind = "AlreadyCheckedIn"
    status_code = status.HTTP_429_TOO_MANY_REQUESTS
    error = "Already checked in"
    default_message = "You already checked in here recently. Try again in a bit!"


class NotAuthenticated(CheckinEngineError):
    kind = "NotAuthenticated"
    status_code = status.HTTP_401_UNAUTHORIZED
    error = "Not authenticated"
    default_message = "Missing or invalid authorization."


class NotFound(CheckinEngineError):
    kind = "NotFound"
    status_code = status.HTTP_404_NOT_FOUND
    error = "Reward not found"
    default_message = "Reward not found."


class NotRedeemable(CheckinEngineError):
    kind = "NotRedeemable"
    status_code = status.HTTP_400_BAD_REQUEST
    error = "Reward not redeemable"
    default_message = "This reward cannot be redeemed."


class StorageFailure(CheckinEngineError):
    kind = "StorageFailure"
    status_code = status.HTTP_500_INTERNAL_SERVER_ERROR
    error = "Storage failure"
    default_message = "The data store is unavailable. Please retry."
    retryable = True
